"""A future whose work runs in a forked child process.

    future = ForkFuture(lambda: slow_thing())
    ... do other stuff ...
    use(future.result())

The child runs the work, writes its serialized outcome to a pipe and exits
with ``os._exit``. The parent reads and reaps on the first call to
``wait``/``result`` (or a successful ``check_if_ready``) and caches the
outcome from then on.
"""

from __future__ import annotations

import os
import selectors
import signal
import sys
import threading
from collections.abc import Callable
from contextlib import suppress
from typing import TYPE_CHECKING

from loguru import logger

from forkfuture.constants import CHILD_WRITE_FAILED, READ_CHUNK_SIZE
from forkfuture.exceptions import ForkFutureError, TransportError
from forkfuture.protocol import decode_outcome, run_and_encode

if TYPE_CHECKING:
    from forkfuture.pool import ForkPool

log = logger.bind(component="future")

# Held from pipe creation until the parent has closed the write end, across
# every pool, so no child inherits another future's write end.
_fork_lock = threading.Lock()


def _reset_fork_lock() -> None:
    global _fork_lock
    _fork_lock = threading.Lock()


os.register_at_fork(after_in_child=_reset_fork_lock)


def _flush_std_streams() -> None:
    # Buffered output would otherwise be written twice, once by each process.
    for stream in (sys.stdout, sys.stderr):
        with suppress(AttributeError, ValueError):
            stream.flush()


def _readable(fd: int) -> bool:
    # Read descriptors can exceed FD_SETSIZE, the limit of select.select().
    with selectors.DefaultSelector() as selector:
        selector.register(fd, selectors.EVENT_READ)
        return bool(selector.select(timeout=0))


def _discard_child(pid: int) -> None:
    with suppress(ProcessLookupError):
        os.kill(pid, signal.SIGKILL)
    with suppress(ChildProcessError):
        os.waitpid(pid, 0)


class ForkFuture[T]:
    """Holds the eventual result of ``fn``, evaluated in a child process.

    The child is forked inside the constructor, after the pool has admitted
    the work (which may block until an older future finishes). ``fn`` takes
    no arguments; use ``ForkPool.submit`` to pass some.

    ``fn`` must return something cloudpickle can encode and must not replace
    the child's process image. Exceptions raised by ``fn`` surface in the
    parent as ``ChildError`` with the original as its cause.

    Every future must eventually be waited on, directly or through
    ``ForkPool.wait_for_all``/``ForkPool.all_done``, or its child stays a
    zombie until the parent exits.
    """

    def __init__(self, fn: Callable[[], T], *, pool: ForkPool | None = None) -> None:
        if pool is None:
            from forkfuture.pool import default_pool

            pool = default_pool()

        self._lock = threading.Lock()
        self._pid: int | None = None
        self._read_fd: int | None = None
        self._complete = False
        self._value: T | None = None
        self._error: ForkFutureError | None = None

        with pool.admit(self):
            self._launch(fn, pool.compress)

    def __repr__(self) -> str:
        state = "complete" if self._complete else "pending"
        return f"<ForkFuture pid={self._pid} {state}>"

    @property
    def pid(self) -> int | None:
        return self._pid

    @property
    def complete(self) -> bool:
        """True once the child's result has been read and the child reaped.

        A child that has merely finished does not count until ``wait`` (or a
        successful ``check_if_ready``) has collected it.
        """
        return self._complete

    @property
    def value(self) -> T:
        return self.result()

    def result(self) -> T:
        """Return the work's result, blocking until it is available.

        Raises:
            ChildError: The work raised an exception.
            ResultTypeError: The result could not be serialized.
            TransportError: The child crashed or the payload was invalid.
        """
        self.wait()
        return self._value  # type: ignore[return-value]

    def wait(self) -> None:
        """Block until the child finishes, then collect its result and reap it.

        Safe to call any number of times; only the first call touches the
        pipe. A failed outcome is raised on every call.
        """
        with self._lock:
            if not self._complete:
                self._consume()

        self._raise_cached()

    def check_if_ready(self) -> bool:
        """Return True if the result is available, without blocking.

        If the pipe has data (or was closed) the result is collected right
        away, so ``wait``/``result`` will not block afterwards. Readable pipe
        is a heuristic: a child that writes and keeps running can still make
        the collection block until it exits.
        """
        if self._complete:
            return True

        # Someone else is collecting; that only happens once the pipe is ready
        # or they chose to block, neither of which we should wait on.
        if not self._lock.acquire(blocking=False):
            return False

        try:
            if self._complete:
                return True
            if not _readable(self._read_fd):
                return False
            self._consume()
        finally:
            self._lock.release()

        self._raise_cached()
        return True

    def _raise_cached(self) -> None:
        if self._error is not None:
            # Same instance every time; drop the frames of earlier raises.
            raise self._error.with_traceback(None)

    def _launch(self, fn: Callable[[], T], compress: bool) -> None:
        with _fork_lock:
            read_fd, write_fd = os.pipe()
            _flush_std_streams()

            pid = os.fork()
            if pid == 0:
                code = CHILD_WRITE_FAILED
                try:
                    os.close(read_fd)
                    data = run_and_encode(fn, compress)
                    with os.fdopen(write_fd, "wb") as pipe:
                        pipe.write(data)
                    code = 0
                finally:
                    os._exit(code)

            os.close(write_fd)

        self._pid = pid
        self._read_fd = read_fd
        log.debug("Forked child {pid}", pid=pid)

    def _consume(self) -> None:
        assert self._read_fd is not None and self._pid is not None
        pid = self._pid

        try:
            data = self._read_all(self._read_fd)
            _, status = os.waitpid(pid, 0)
        except ChildProcessError as e:
            self._error = TransportError(f"Lost child process {pid}: {e}", pid=pid)
            return
        except OSError as e:
            self._error = TransportError(f"Lost child process {pid}: {e}", pid=pid)
            _discard_child(pid)
            return
        except BaseException:
            # A partial read can't be resumed: the result is gone for good.
            self._error = TransportError(f"Interrupted while collecting child {pid}", pid=pid)
            _discard_child(pid)
            log.warning("Collection of child {pid} interrupted; child killed", pid=pid)
            raise
        finally:
            # Complete regardless of what happens next, so a failure here
            # can't lead to a second read of a closed pipe.
            self._complete = True
            os.close(self._read_fd)
            self._read_fd = None

        exit_code = os.waitstatus_to_exitcode(status)
        if exit_code != 0:
            log.warning("Child {pid} exited with code {code}", pid=pid, code=exit_code)
        log.debug("Collected {size} bytes from child {pid}", size=len(data), pid=pid)

        try:
            self._value = decode_outcome(data, exit_code, pid)
        except ForkFutureError as e:
            self._error = e

    @staticmethod
    def _read_all(fd: int) -> bytes:
        chunks: list[bytes] = []
        while chunk := os.read(fd, READ_CHUNK_SIZE):
            chunks.append(chunk)
        return b"".join(chunks)
