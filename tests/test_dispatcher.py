"""Tests for the parallel tool dispatcher."""

import contextvars
import threading
import time

import pytest

from agent.dispatcher import ToolDispatcher
from agent.errors import BatchCancelledError, BatchTooLargeError
from agent.messages import ToolCallRequest, ToolCallResult

request_tag = contextvars.ContextVar("request_tag", default="unset")


def echo(name, args):
    return ToolCallResult(name, True, output=str(args.get("value")))


@pytest.fixture
def release():
    """Event that blocking tools wait on; set at teardown so pools drain."""
    event = threading.Event()
    yield event
    event.set()


def make(executor_fn, **kwargs):
    kwargs.setdefault("pool_size", 10)
    kwargs.setdefault("call_timeout_s", 5)
    kwargs.setdefault("max_batch", 10)
    kwargs.setdefault("shutdown_grace_s", 1)
    return ToolDispatcher(executor_fn, **kwargs)


class TestExecuteBatch:

    def test_results_follow_request_order(self):
        def slow_first(name, args):
            time.sleep(0.05 * (3 - args["value"]))
            return echo(name, args)

        with make(slow_first) as dispatcher:
            requests = [ToolCallRequest("t", {"value": i}) for i in range(3)]
            results = dispatcher.execute_batch(requests)
        assert [r.output for r in results] == ["0", "1", "2"]

    def test_calls_run_concurrently(self):
        barrier = threading.Barrier(3, timeout=2)

        def meet(name, args):
            barrier.wait()
            return echo(name, args)

        with make(meet) as dispatcher:
            results = dispatcher.execute_batch([ToolCallRequest("t", {"value": i}) for i in range(3)])
        assert all(r.success for r in results)

    def test_exception_is_isolated(self):
        def flaky(name, args):
            if args["value"] == 1:
                raise OSError("disk on fire")
            return echo(name, args)

        with make(flaky) as dispatcher:
            results = dispatcher.execute_batch([ToolCallRequest("t", {"value": i}) for i in range(3)])
        assert [r.success for r in results] == [True, False, True]
        assert results[1].error == "OSError: disk on fire"
        assert results[1].to_content() == "Error: OSError: disk on fire"

    def test_plain_return_values_are_wrapped(self):
        with make(lambda name, args: "plain text") as dispatcher:
            (result,) = dispatcher.execute_batch([ToolCallRequest("t")])
        assert result.success
        assert result.output == "plain text"
        assert result.tool_name == "t"

    def test_empty_batch(self):
        with make(echo) as dispatcher:
            assert dispatcher.execute_batch([]) == []

    def test_oversized_batch_runs_nothing(self):
        invoked = []

        def record(name, args):
            invoked.append(name)
            return echo(name, args)

        with make(record) as dispatcher:
            with pytest.raises(BatchTooLargeError) as exc_info:
                dispatcher.execute_batch([ToolCallRequest("t", {"value": i}) for i in range(11)])
        assert exc_info.value.size == 11
        assert exc_info.value.limit == 10
        assert invoked == []

    def test_context_variables_reach_workers(self):
        def read_tag(name, args):
            return ToolCallResult(name, True, output=request_tag.get())

        token = request_tag.set("session-42")
        try:
            with make(read_tag) as dispatcher:
                (result,) = dispatcher.execute_batch([ToolCallRequest("t")])
        finally:
            request_tag.reset(token)
        assert result.output == "session-42"


class TestTimeoutAndCancel:

    def test_slow_call_times_out_alone(self, release):
        def maybe_hang(name, args):
            if args["value"] == 0:
                release.wait(5)
            return echo(name, args)

        dispatcher = make(maybe_hang, call_timeout_s=0.3)
        results = dispatcher.execute_batch([ToolCallRequest("t", {"value": i}) for i in range(2)])
        assert not results[0].success
        assert "timed out after" in results[0].error
        assert results[1].success
        release.set()
        dispatcher.shutdown()

    def test_cancel_event_interrupts_batch(self, release):
        cancel = threading.Event()

        def hang(name, args):
            release.wait(5)
            return echo(name, args)

        dispatcher = make(hang)
        threading.Timer(0.2, cancel.set).start()
        started = time.monotonic()
        with pytest.raises(BatchCancelledError):
            dispatcher.execute_batch([ToolCallRequest("t", {"value": 1})], cancel_event=cancel)
        assert time.monotonic() - started < 2
        release.set()
        dispatcher.shutdown()

    def test_cancel_before_dispatch_runs_nothing(self):
        invoked = []
        cancel = threading.Event()
        cancel.set()

        def record(name, args):
            invoked.append(name)
            return echo(name, args)

        with make(record) as dispatcher:
            with pytest.raises(BatchCancelledError):
                dispatcher.execute_batch([ToolCallRequest("t", {"value": 1})], cancel_event=cancel)
        assert invoked == []

    def test_hung_worker_starves_next_batch(self, release):
        def maybe_hang(name, args):
            if name == "hang":
                release.wait(5)
            return echo(name, args)

        dispatcher = make(maybe_hang, pool_size=1, call_timeout_s=0.3)
        (hung,) = dispatcher.execute_batch([ToolCallRequest("hang")])
        assert not hung.success
        assert dispatcher.busy_workers() == 1

        (queued,) = dispatcher.execute_batch([ToolCallRequest("t", {"value": 1})])
        assert not queued.success
        assert "waiting for a free worker (1 of 1 busy)" in queued.error
        release.set()
        assert dispatcher.shutdown()


class TestShutdown:

    def test_rejects_work_after_shutdown(self):
        dispatcher = make(echo)
        assert dispatcher.shutdown()
        assert dispatcher.closed
        with pytest.raises(RuntimeError):
            dispatcher.execute_batch([ToolCallRequest("t")])

    def test_grace_period_reports_stragglers(self, release):
        started = threading.Event()

        def hang(name, args):
            started.set()
            release.wait(5)
            return echo(name, args)

        dispatcher = make(hang, call_timeout_s=0.1)
        dispatcher.execute_batch([ToolCallRequest("t")])
        assert started.is_set()
        assert dispatcher.shutdown(grace_s=0.1) is False
