from __future__ import annotations

import os
import resource
import time
from collections.abc import Callable, Iterator
from contextlib import suppress

import pytest

from forkfuture import ForkFutureError, ForkPool

# select.select() cannot watch descriptors at or above this.
FD_SETSIZE = 1024


@pytest.fixture
def pool() -> Iterator[ForkPool]:
    p = ForkPool(max_tasks=4)
    yield p
    # Reap whatever a test left behind so no zombies leak between tests.
    with suppress(ForkFutureError):
        p.wait_for_all()


@pytest.fixture
def high_descriptors() -> Iterator[None]:
    """Occupy the low descriptors so new pipes land above FD_SETSIZE."""
    needed = FD_SETSIZE + 256
    soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    if hard != resource.RLIM_INFINITY and hard < needed:
        pytest.skip(f"RLIMIT_NOFILE hard limit {hard} is too low")
    if soft != resource.RLIM_INFINITY and soft < needed:
        resource.setrlimit(resource.RLIMIT_NOFILE, (needed, hard))

    fillers: list[int] = []
    try:
        while not fillers or fillers[-1] < FD_SETSIZE + 16:
            fillers.append(os.open(os.devnull, os.O_RDONLY))
        yield
    finally:
        for fd in fillers:
            os.close(fd)
        resource.setrlimit(resource.RLIMIT_NOFILE, (soft, hard))


def time_it(fn: Callable[[], object]) -> float:
    before = time.monotonic()
    fn()
    return time.monotonic() - before


def sleep_then[T](seconds: float, value: T) -> T:
    time.sleep(seconds)
    return value
