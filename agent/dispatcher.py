"""
Parallel tool dispatcher.

Runs one turn's allowed tool calls concurrently on a bounded thread pool and
returns their results in request order.  A call that raises or overruns its
timeout becomes a failed ``ToolCallResult``; siblings are unaffected.

The waiting thread polls in short slices so that a session-level
``cancel_event`` interrupts a batch promptly.
"""

from __future__ import annotations

import contextvars
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError, wait
from typing import Callable, Optional

from .errors import BatchCancelledError, BatchTooLargeError, ToolTimeoutError
from .messages import ToolCallRequest, ToolCallResult
from .turn_limits import get_limit

logger = logging.getLogger("reactor")

ExecutorFn = Callable[[str, dict], ToolCallResult]

# How often the waiting thread re-checks the cancel event
_POLL_INTERVAL_S = 0.1


class ToolTimer:
    """Context manager for timing tool execution."""
    def __init__(self):
        self._start = 0.0
        self.elapsed_ms = 0

    def __enter__(self):
        self._start = time.monotonic()
        return self

    def __exit__(self, *exc):
        self.elapsed_ms = int((time.monotonic() - self._start) * 1000)
        return False


class ToolDispatcher:
    """Bounded-pool executor for batches of tool calls.

    Args:
        executor_fn: ``(name, arguments) -> ToolCallResult``, usually
            ``ToolRegistry.execute``.
        pool_size: Worker threads.
        call_timeout_s: Per-call deadline, counted from submission.  A call
            that overruns it is reported as failed, but a thread already
            running it cannot be interrupted and keeps its pool slot until
            the tool returns.  Calls queued behind such workers can time out
            before they start; the error says how many workers were busy.
        max_batch: Largest batch accepted.
        shutdown_grace_s: How long ``shutdown`` waits for in-flight calls.
    """

    def __init__(
        self,
        executor_fn: ExecutorFn,
        pool_size: int | None = None,
        call_timeout_s: float | None = None,
        max_batch: int | None = None,
        shutdown_grace_s: float | None = None,
    ):
        self.executor_fn = executor_fn
        self.pool_size = pool_size or get_limit("dispatcher.pool_size")
        self.call_timeout_s = call_timeout_s if call_timeout_s is not None else get_limit("dispatcher.call_timeout_s")
        self.max_batch = max_batch or get_limit("dispatcher.max_batch")
        self.shutdown_grace_s = (
            shutdown_grace_s if shutdown_grace_s is not None else get_limit("dispatcher.shutdown_grace_s")
        )
        self._pool = ThreadPoolExecutor(max_workers=self.pool_size, thread_name_prefix="reactor-tool")
        self._inflight: set[Future] = set()
        self._lock = threading.Lock()
        self._closed = False

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_batch(
        self,
        requests: list[ToolCallRequest],
        cancel_event: Optional[threading.Event] = None,
    ) -> list[ToolCallResult]:
        """Execute *requests* concurrently; results align with the input order.

        Raises:
            BatchTooLargeError: more than ``max_batch`` requests (nothing runs).
            BatchCancelledError: *cancel_event* was set while waiting.
        """
        if not requests:
            return []
        if len(requests) > self.max_batch:
            raise BatchTooLargeError(len(requests), self.max_batch)
        if self._closed:
            raise RuntimeError("dispatcher has been shut down")
        if cancel_event is not None and cancel_event.is_set():
            raise BatchCancelledError("tool batch cancelled before dispatch")

        logger.debug("Dispatching %d tool call(s): %s", len(requests), [r.name for r in requests])
        futures = [self._submit(req) for req in requests]
        deadline = time.monotonic() + self.call_timeout_s
        try:
            return [
                self._collect(req, fut, deadline, cancel_event)
                for req, fut in zip(requests, futures)
            ]
        except BatchCancelledError:
            for fut in futures:
                fut.cancel()
            raise

    def _submit(self, req: ToolCallRequest) -> Future:
        # Workers inherit the caller's context variables
        fut = self._pool.submit(contextvars.copy_context().run, self._run_one, req)
        with self._lock:
            self._inflight.add(fut)
        fut.add_done_callback(self._discard)
        return fut

    def _discard(self, fut: Future) -> None:
        with self._lock:
            self._inflight.discard(fut)

    def _run_one(self, req: ToolCallRequest) -> ToolCallResult:
        with ToolTimer() as timer:
            try:
                result = self.executor_fn(req.name, dict(req.arguments))
            except Exception as e:
                logger.warning("Tool %s raised: %s", req.name, e)
                result = ToolCallResult(req.name, False, error=f"{type(e).__name__}: {e}")
        if not isinstance(result, ToolCallResult):
            result = ToolCallResult(req.name, True, output="" if result is None else str(result))
        if not result.duration_ms:
            result.duration_ms = timer.elapsed_ms
        return result

    def _collect(
        self,
        req: ToolCallRequest,
        fut: Future,
        deadline: float,
        cancel_event: Optional[threading.Event],
    ) -> ToolCallResult:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise BatchCancelledError("tool batch cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                if fut.cancel():
                    busy = self.busy_workers()
                    err = ToolTimeoutError(
                        req.name,
                        f"Tool '{req.name}' timed out after {self.call_timeout_s}s waiting for a free "
                        f"worker ({busy} of {self.pool_size} busy)",
                    )
                else:
                    err = ToolTimeoutError(req.name, f"Tool '{req.name}' timed out after {self.call_timeout_s}s")
                logger.warning("%s", err)
                return ToolCallResult(
                    req.name, False, error=str(err), duration_ms=int(self.call_timeout_s * 1000),
                )
            try:
                return fut.result(timeout=min(_POLL_INTERVAL_S, remaining))
            except TimeoutError:
                continue

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shutdown(self, grace_s: float | None = None) -> bool:
        """Stop accepting work and wait up to *grace_s* for in-flight calls.

        Returns True if everything finished within the grace period.
        """
        if grace_s is None:
            grace_s = self.shutdown_grace_s
        self._closed = True
        with self._lock:
            pending = set(self._inflight)
        self._pool.shutdown(wait=False, cancel_futures=True)
        if not pending:
            return True
        _done, not_done = wait(pending, timeout=grace_s)
        if not_done:
            logger.warning("%d tool call(s) still running after %.0fs shutdown grace", len(not_done), grace_s)
        return not not_done

    def busy_workers(self) -> int:
        """Worker threads currently running a call, timed-out ones included."""
        with self._lock:
            return sum(1 for fut in self._inflight if fut.running())

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "ToolDispatcher":
        return self

    def __exit__(self, *exc) -> bool:
        self.shutdown()
        return False
