"""Exception hierarchy for forkfuture.

All forkfuture-specific exceptions inherit from ForkFutureError, enabling
users to catch every failure of a future with a single except clause, or
each kind specifically.
"""

from __future__ import annotations

from typing import Self


class ForkFutureError(Exception):
    """Base exception for all forkfuture errors."""


class TransportError(ForkFutureError):
    """Raised when a result could not be recovered from the child process.

    The child crashed, exited with a non-zero status, wrote nothing, or
    wrote something that is not a recognized outcome. This indicates an
    environment or protocol problem, not a problem with the work itself.
    """

    def __init__(self, message: str, pid: int | None = None, exit_code: int | None = None) -> None:
        self.pid = pid
        self.exit_code = exit_code
        super().__init__(message)

    def __reduce__(self) -> tuple[type[Self], tuple[object, ...]]:
        return (type(self), (self.args[0], self.pid, self.exit_code))


class ChildError(ForkFutureError):
    """Raised when the work raised an uncaught exception in the child.

    The original exception is available as ``cause`` (and ``__cause__``).
    """

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        remote_traceback: str = "",
    ) -> None:
        self.cause = cause
        self.remote_traceback = remote_traceback
        super().__init__(message)

    def __reduce__(self) -> tuple[type[Self], tuple[object, ...]]:
        return (type(self), (self.args[0], self.cause, self.remote_traceback))

    def __str__(self) -> str:
        text = super().__str__()
        if self.cause is not None:
            text += f" (cause: {type(self.cause).__name__} '{self.cause}')"
        return text


class ResultTypeError(ForkFutureError):
    """Raised when the result, or the raised exception, cannot be serialized."""

    def __init__(self, reason: str, type_name: str) -> None:
        self.reason = reason
        self.type_name = type_name
        super().__init__(f"Type {type_name} cannot be returned: {reason}")

    def __reduce__(self) -> tuple[type[Self], tuple[object, ...]]:
        return (type(self), (self.reason, self.type_name))


class ConfigurationError(ForkFutureError):
    """Raised for invalid configuration."""
