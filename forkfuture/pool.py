"""Admission control and bookkeeping for forked futures.

A ForkPool bounds how many children may be alive at once. When a new
future is submitted at capacity, the pool retires the *oldest* outstanding
future (blocking until it finishes) before forking a new child. This is not
work-conserving: a newer future that already finished does not unblock
submission, but retirement order is simple and deterministic.

Example:
    from forkfuture import ForkPool

    with ForkPool(max_tasks=4) as pool:
        futures = [pool.submit(crunch, chunk) for chunk in chunks]
        results = [f.result() for f in futures]

Module-level ``submit``/``all_done``/``wait_for_all`` use a process-wide
default pool whose ceiling starts at the number of CPUs.
"""

from __future__ import annotations

import atexit
import functools
import os
import threading
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager, suppress
from types import TracebackType
from typing import Any

from loguru import logger

from forkfuture.exceptions import ForkFutureError
from forkfuture.future import ForkFuture
from forkfuture.logging import LogSetting, disable_logging, enable_logging

log = logger.bind(component="pool")


def _cpu_count() -> int:
    return os.cpu_count() or 1


class ForkPool:
    """Registry of outstanding futures with a concurrency ceiling.

    Args:
        max_tasks: Maximum number of live children. ``None`` means the
            number of CPUs; zero or negative means no limit.
        compress: Whether results are zlib-compressed on the wire.
        logging: Logging to switch on while the pool is used as a context
            manager. ``True`` for the defaults, or a ``LogConfig``.
    """

    def __init__(
        self,
        max_tasks: int | None = None,
        compress: bool = True,
        logging: LogSetting = False,
    ) -> None:
        self._max_tasks = _cpu_count() if max_tasks is None else max_tasks
        self.compress = compress
        self.logging = logging
        self._log_handler_ids: list[int] = []
        self._live: deque[ForkFuture[Any]] = deque()
        self._lock = threading.RLock()
        self._owner_pid = os.getpid()

    def __repr__(self) -> str:
        return f"ForkPool(max_tasks={self._max_tasks}, live={len(self._live)})"

    def __enter__(self) -> ForkPool:
        if self.logging:
            self._log_handler_ids = enable_logging(self.logging)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        try:
            if exc_type is None:
                self.wait_for_all()
                return
            # Don't mask the exception already in flight.
            with suppress(ForkFutureError):
                self.wait_for_all()
        finally:
            if self._log_handler_ids:
                disable_logging(self._log_handler_ids)
                self._log_handler_ids = []

    @property
    def max_tasks(self) -> int:
        """Maximum number of live children. Less than 1 means no limit.

        Changing it does not affect futures already admitted.
        """
        return self._max_tasks

    @max_tasks.setter
    def max_tasks(self, value: int) -> None:
        with self._lock:
            self._max_tasks = value

    @property
    def live_count(self) -> int:
        return len(self._live)

    def submit[R](self, fn: Callable[..., R], /, *args: Any, **kwargs: Any) -> ForkFuture[R]:
        """Run ``fn(*args, **kwargs)`` in a child process.

        Blocks if the pool is at capacity until the oldest outstanding
        future finishes.

        Raises:
            ForkFutureError: Retiring an older future surfaced its failure.
                The new work is not started.
        """
        work = functools.partial(fn, *args, **kwargs) if args or kwargs else fn
        return ForkFuture(work, pool=self)

    def map[I, R](self, fn: Callable[[I], R], items: Iterable[I]) -> list[R]:
        """Apply ``fn`` to each item in its own child, preserving order."""
        futures = [self.submit(fn, item) for item in items]
        return [future.result() for future in futures]

    @contextmanager
    def admit(self, future: ForkFuture[Any]) -> Iterator[None]:
        """Hold the registry while ``future`` launches, then register it.

        Reclaims finished children and, at capacity, retires the oldest
        ones before yielding. Nothing is registered if the launch raises.
        """
        self._reset_after_fork()
        with self._lock:
            self._sweep()
            while self._max_tasks > 0 and len(self._live) >= self._max_tasks:
                oldest = self._live.popleft()
                log.debug(
                    "At capacity ({limit}), retiring oldest child {pid}",
                    limit=self._max_tasks, pid=oldest.pid,
                )
                oldest.wait()
            yield
            self._live.append(future)

    def all_done(self) -> bool:
        """Test whether every submitted future has finished.

        Collects any children that have finished along the way, so this
        doubles as a non-blocking way to reap them.
        """
        self._reset_after_fork()
        with self._lock:
            self._sweep()
            return not self._live

    def wait_for_all(self) -> None:
        """Block until every outstanding future has finished and been reaped.

        Call this before exiting if some futures may never have been waited
        on. Every child is reaped even if some failed; the first failure is
        raised afterwards.
        """
        self._reset_after_fork()
        with self._lock:
            pending, self._live = self._live, deque()
            first_error: ForkFutureError | None = None
            for future in pending:
                try:
                    future.wait()
                except ForkFutureError as e:
                    if first_error is None:
                        first_error = e
            if pending:
                log.debug("Drained {n} futures", n=len(pending))
            if first_error is not None:
                raise first_error

    def _sweep(self) -> None:
        remaining: deque[ForkFuture[Any]] = deque()
        first_error: ForkFutureError | None = None
        for future in self._live:
            try:
                if not future.check_if_ready():
                    remaining.append(future)
            except ForkFutureError as e:
                if first_error is None:
                    first_error = e

        reclaimed = len(self._live) - len(remaining)
        self._live = remaining
        if reclaimed:
            log.debug("Reclaimed {n} finished children", n=reclaimed)
        if first_error is not None:
            raise first_error

    def _reset_after_fork(self) -> None:
        # A child inherits a copy of its parent's registry: those futures
        # belong to the parent and the lock may be held by the forking call.
        pid = os.getpid()
        if pid != self._owner_pid:
            self._owner_pid = pid
            self._live = deque()
            self._lock = threading.RLock()


# =============================================================================
# Process-wide default pool
# =============================================================================

_default_pool: ForkPool | None = None
_default_lock = threading.Lock()


def _drain_at_exit(pool: ForkPool) -> None:
    if pool._owner_pid != os.getpid():
        return
    try:
        pool.wait_for_all()
    except ForkFutureError as e:
        log.warning("Unobserved child failure at exit: {err}", err=e)


def default_pool() -> ForkPool:
    """Return the process-wide pool, creating it on first use."""
    global _default_pool
    with _default_lock:
        if _default_pool is None:
            _default_pool = ForkPool()
            atexit.register(_drain_at_exit, _default_pool)
        return _default_pool


def submit[R](fn: Callable[..., R], /, *args: Any, **kwargs: Any) -> ForkFuture[R]:
    return default_pool().submit(fn, *args, **kwargs)


def max_tasks() -> int:
    return default_pool().max_tasks


def set_max_tasks(value: int) -> None:
    default_pool().max_tasks = value


def all_done() -> bool:
    return default_pool().all_done()


def wait_for_all() -> None:
    default_pool().wait_for_all()
