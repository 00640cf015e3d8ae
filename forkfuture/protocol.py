"""Wire protocol between a forked child and its parent.

The child runs the work and writes exactly one serialized outcome:

- ``Success(value)``: the work returned ``value``
- ``Failure(error, traceback)``: the work raised ``error``
- ``Unencodable(reason, kind)``: neither could be serialized

Success is always wrapped so that a work function returning an exception
object is not mistaken for one that raised it.

The parent reads the bytes, reaps the child, and turns the outcome into
either a value or one of the ForkFutureError subclasses.
"""

from __future__ import annotations

import traceback
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from forkfuture.constants import UNENCODABLE_EXCEPTION, UNENCODABLE_RESULT
from forkfuture.exceptions import ChildError, ResultTypeError, TransportError
from forkfuture.serialization import deserialize, serialize


@dataclass(frozen=True, slots=True)
class Success[T]:
    value: T


@dataclass(frozen=True, slots=True)
class Failure:
    error: BaseException
    traceback: str = ""


@dataclass(frozen=True, slots=True)
class Unencodable:
    reason: str
    kind: str


type Outcome[T] = Success[T] | Failure | Unencodable


def type_name(obj: object) -> str:
    cls = type(obj)
    if cls.__module__ == "builtins":
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


# =============================================================================
# Child side
# =============================================================================


def run_and_encode(fn: Callable[[], Any], compress: bool = True) -> bytes:
    """Run ``fn`` and return its serialized outcome.

    Never raises for anything ``fn`` does: SystemExit and KeyboardInterrupt
    become Failures too, since the caller must reach its ``os._exit``.
    """
    try:
        value = fn()
    except BaseException as e:
        try:
            return _encode_checked(Failure(e, traceback.format_exc()), compress)
        except Exception:
            return serialize(Unencodable(UNENCODABLE_EXCEPTION, type_name(e)), compress)

    try:
        return _encode_checked(Success(value), compress)
    except Exception:
        return serialize(Unencodable(UNENCODABLE_RESULT, type_name(value)), compress)


def _encode_checked(outcome: Outcome[Any], compress: bool) -> bytes:
    data = serialize(outcome, compress)
    # Some objects pickle fine but cannot be rebuilt (an exception whose
    # __init__ does not accept its own args), so the parent must be able
    # to load what we send.
    deserialize(data)
    return data


# =============================================================================
# Parent side
# =============================================================================


def _load(data: bytes, pid: int) -> object:
    try:
        return deserialize(data)
    except Exception as e:
        raise TransportError(f"Corrupt result payload from child {pid}: {e}", pid=pid) from e


def decode_outcome(data: bytes, exit_code: int, pid: int) -> Any:
    """Classify what a child wrote and return its value or raise.

    Args:
        data: Every byte read from the pipe.
        exit_code: Exit code from ``os.waitstatus_to_exitcode``.
        pid: Child process id, for error messages.

    Returns:
        The value the work returned.

    Raises:
        TransportError: The child crashed or wrote an invalid payload.
        ChildError: The work raised; the original is the cause.
        ResultTypeError: The value or raised exception was not serializable.
    """
    if exit_code != 0 or not data:
        raise TransportError(
            f"Error in child process {pid}! (exit code {exit_code}, {len(data)} bytes)",
            pid=pid,
            exit_code=exit_code,
        )

    outcome = _load(data, pid)
    match outcome:
        case Success(value=value):
            return value
        case Failure(error=error, traceback=tb):
            raise ChildError("Child process failed with an exception.", error, tb) from error
        case Unencodable(reason=reason, kind=kind):
            raise ResultTypeError(reason, kind)
        case _:
            raise TransportError(
                f"Invalid result object type: {type_name(outcome)}",
                pid=pid,
                exit_code=exit_code,
            )
