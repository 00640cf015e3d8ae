from __future__ import annotations

import os
import signal
import threading
import time
import traceback

import pytest

import forkfuture.future
from forkfuture import (
    ChildError,
    ForkFuture,
    ForkFutureError,
    ForkPool,
    ResultTypeError,
    TransportError,
)
from forkfuture.constants import UNENCODABLE_EXCEPTION, UNENCODABLE_RESULT
from tests.conftest import FD_SETSIZE, sleep_then, time_it


class ScratchError(RuntimeError):
    pass


class BogoError(RuntimeError):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.unpicklable = threading.Lock()


class Endpoint(Exception):
    def __init__(self, host: str, port: int) -> None:
        super().__init__(f"{host}:{port}")


def _raise(error: BaseException):
    def work():
        raise error

    return work


class TestResults:
    def test_executes_without_changing_parent_state(self, pool):
        foo = [42]

        def bump():
            foo[0] += 1
            return foo[0]

        assert pool.submit(bump).result() == 43
        assert foo == [42]

    def test_returns_results_in_submission_order(self, pool):
        futures = [pool.submit(sleep_then, 0.2, i) for i in range(1, 5)]
        assert [f.result() for f in futures] == [1, 2, 3, 4]

    def test_passes_arguments(self, pool):
        def describe(a, b, *, sep):
            return f"{a}{sep}{b}"

        assert pool.submit(describe, 1, 2, sep="-").result() == "1-2"

    def test_keyword_named_pool_reaches_the_work(self, pool):
        def echo(pool):
            return pool

        assert pool.submit(echo, pool="shared").result() == "shared"

    def test_value_property(self, pool):
        assert pool.submit(lambda: "v").value == "v"

    def test_direct_construction(self, pool):
        future = ForkFuture(lambda: 7, pool=pool)
        assert future.result() == 7
        assert future.pid is not None

    def test_returns_exception_objects_if_requested(self, pool):
        f = pool.submit(lambda: ScratchError("not thrown!"))
        f.wait()
        assert isinstance(f.result(), ScratchError)
        assert str(f.result()) == "not thrown!"

    def test_returns_callables(self, pool):
        factor = 3
        triple = pool.submit(lambda: lambda x: x * factor).result()
        assert triple(5) == 15

    def test_large_result(self, pool):
        payload = os.urandom(4 * 1024 * 1024)
        assert pool.submit(lambda: payload).result() == payload

    def test_none_result(self, pool):
        f = pool.submit(lambda: None)
        assert f.result() is None
        assert f.complete


class TestWait:
    def test_allows_multiple_calls_to_wait(self, pool):
        f = pool.submit(lambda: 42)
        for _ in range(3):
            f.wait()
            assert f.result() == 42

    def test_complete_only_after_wait(self, pool):
        f = pool.submit(lambda: 12345)
        assert f.complete is False
        time.sleep(0.2)
        assert f.complete is False

        f.wait()
        assert f.complete is True
        assert f.result() == 12345

    def test_result_does_not_reread_the_pipe(self, pool, monkeypatch):
        reads = []
        original = ForkFuture._read_all

        def counting(fd):
            reads.append(fd)
            return original(fd)

        monkeypatch.setattr(ForkFuture, "_read_all", staticmethod(counting))

        f = pool.submit(lambda: {"k": [1, 2]})
        first = f.result()
        second = f.result()
        assert first == second == {"k": [1, 2]}
        assert first is second
        assert len(reads) == 1

    def test_concurrent_waiters_consume_once(self, pool, monkeypatch):
        reads = []
        original = ForkFuture._read_all

        def counting(fd):
            reads.append(fd)
            return original(fd)

        monkeypatch.setattr(ForkFuture, "_read_all", staticmethod(counting))

        f = pool.submit(sleep_then, 0.3, "done")
        results = []
        threads = [threading.Thread(target=lambda: results.append(f.result())) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == ["done"] * 4
        assert len(reads) == 1

    @pytest.mark.timing
    def test_interrupted_wait_loses_the_result(self, pool, monkeypatch):
        def interrupted(fd):
            raise KeyboardInterrupt

        monkeypatch.setattr(ForkFuture, "_read_all", staticmethod(interrupted))

        f = pool.submit(sleep_then, 30, 42)
        before = time.monotonic()
        with pytest.raises(KeyboardInterrupt):
            f.wait()
        # The child is killed rather than waited for.
        assert time.monotonic() - before < 5
        assert f.complete is True

        with pytest.raises(TransportError, match="Interrupted") as exc_info:
            f.result()
        assert exc_info.value.pid == f.pid
        with pytest.raises(ChildProcessError):
            os.waitpid(f.pid, os.WNOHANG)


class TestCheckIfReady:
    @pytest.mark.timing
    def test_allows_non_blocking_polling(self, pool):
        f = pool.submit(sleep_then, 0.5, 42)

        assert f.check_if_ready() is False
        time.sleep(1.0)
        assert f.check_if_ready() is True
        assert f.complete is True
        assert time_it(f.result) < 0.05
        assert f.result() == 42

    @pytest.mark.timing
    def test_polling_does_not_block(self, pool):
        f = pool.submit(sleep_then, 1.0, "slow")
        assert time_it(f.check_if_ready) < 0.1
        assert f.result() == "slow"

    def test_ready_after_complete(self, pool):
        f = pool.submit(lambda: 1)
        f.wait()
        assert f.check_if_ready() is True

    def test_consuming_poll_raises_child_failure(self, pool):
        f = pool.submit(_raise(ScratchError("late")))
        time.sleep(0.5)
        with pytest.raises(ChildError, match="late"):
            f.check_if_ready()
        assert f.complete is True
        # Already collected: further polls just report readiness.
        assert f.check_if_ready() is True

    def test_descriptors_above_fd_setsize(self, pool, high_descriptors):
        f = pool.submit(lambda: "high")
        assert f._read_fd >= FD_SETSIZE
        time.sleep(0.3)
        assert f.check_if_ready() is True
        assert f.result() == "high"


class TestChildErrors:
    def test_gracefully_handles_exceptions_thrown_by_the_child(self, pool):
        f = pool.submit(_raise(ScratchError("Foo!")))
        with pytest.raises(ChildError, match="Foo!"):
            f.wait()

    def test_attaches_the_original_exception(self, pool):
        f = pool.submit(_raise(ScratchError("Foo!")))
        with pytest.raises(ChildError) as exc_info:
            f.result()

        err = exc_info.value
        assert type(err.cause) is ScratchError
        assert str(err.cause) == "Foo!"
        assert err.__cause__ is err.cause
        assert "ScratchError: Foo!" in err.remote_traceback

    def test_failure_is_cached(self, pool):
        f = pool.submit(_raise(ScratchError("once")))
        with pytest.raises(ChildError) as first:
            f.result()
        with pytest.raises(ChildError) as second:
            f.result()
        assert first.value is second.value

    def test_reraising_does_not_grow_the_traceback(self, pool):
        f = pool.submit(_raise(ScratchError("again")))
        depths = []
        for _ in range(3):
            with pytest.raises(ChildError) as exc_info:
                f.result()
            depths.append(len(traceback.extract_tb(exc_info.value.__traceback__)))
        assert depths[0] == depths[1] == depths[2]

    def test_errors_share_a_family(self, pool):
        f = pool.submit(_raise(ValueError("bad")))
        with pytest.raises(ForkFutureError):
            f.result()

    def test_system_exit_in_work(self, pool):
        def leave():
            raise SystemExit(5)

        with pytest.raises(ChildError) as exc_info:
            pool.submit(leave).result()
        assert isinstance(exc_info.value.cause, SystemExit)


class TestResultTypeErrors:
    def test_unserializable_result(self, pool):
        f = pool.submit(lambda: (i for i in range(3)))
        with pytest.raises(ResultTypeError, match="generator") as exc_info:
            f.result()
        assert exc_info.value.type_name == "generator"

    def test_result_that_cannot_be_rebuilt(self, pool):
        # Pickles fine, but unpickling calls Endpoint("localhost:80").
        f = pool.submit(lambda: Endpoint("localhost", 80))
        with pytest.raises(ResultTypeError) as exc_info:
            f.result()

        err = exc_info.value
        assert err.reason == UNENCODABLE_RESULT
        assert err.type_name.endswith("Endpoint")

    def test_unserializable_exception_payload(self, pool):
        f = pool.submit(_raise(BogoError("Foo!")))
        with pytest.raises(ResultTypeError) as exc_info:
            f.result()

        err = exc_info.value
        assert err.reason == UNENCODABLE_EXCEPTION
        assert err.type_name.endswith("BogoError")
        assert "exception payload cannot be serialized" in str(err)


class TestTransportErrors:
    def test_child_exits_before_writing(self, pool):
        f = pool.submit(lambda: os._exit(3))
        with pytest.raises(TransportError) as exc_info:
            f.result()
        assert exc_info.value.exit_code == 3
        assert exc_info.value.pid == f.pid

    def test_child_killed_by_signal(self, pool):
        f = pool.submit(lambda: os.kill(os.getpid(), signal.SIGKILL))
        with pytest.raises(TransportError) as exc_info:
            f.result()
        assert exc_info.value.exit_code == -signal.SIGKILL

    def test_crashed_child_is_ready(self, pool):
        f = pool.submit(lambda: os._exit(0))
        time.sleep(0.3)
        with pytest.raises(TransportError):
            f.check_if_ready()
        assert f.complete


class TestForkIsolation:
    @pytest.mark.timing
    @pytest.mark.filterwarnings("ignore::DeprecationWarning")
    def test_pools_do_not_leak_pipes_into_each_others_children(self, monkeypatch):
        gate = threading.Event()
        flush = forkfuture.future._flush_std_streams

        def held_open():
            # Stall the first launch after its pipe exists but before it forks.
            if threading.current_thread().name == "held":
                gate.wait(5)
            flush()

        monkeypatch.setattr(forkfuture.future, "_flush_std_streams", held_open)

        first, second = ForkPool(max_tasks=2), ForkPool(max_tasks=2)
        fast: list[ForkFuture[str]] = []
        held = threading.Thread(
            target=lambda: fast.append(first.submit(lambda: "fast")), name="held"
        )
        slow = threading.Thread(target=lambda: second.submit(sleep_then, 3.0, None))
        try:
            held.start()
            time.sleep(0.2)
            slow.start()
            time.sleep(0.2)
            gate.set()
            held.join()
            slow.join()

            # A slow child holding the fast future's write end would delay EOF.
            assert time_it(fast[0].result) < 1.5
        finally:
            gate.set()
            first.wait_for_all()
            second.wait_for_all()


class TestNesting:
    def test_work_can_submit_to_an_inherited_pool(self, pool):
        outer = pool.submit(lambda: pool.submit(lambda: 21 * 2).result())
        assert outer.result() == 42
        assert pool.live_count <= 1

    def test_repr(self, pool):
        f = pool.submit(lambda: 1)
        assert "pending" in repr(f)
        f.wait()
        assert repr(f) == f"<ForkFuture pid={f.pid} complete>"
