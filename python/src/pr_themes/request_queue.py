"""
Request queue and rate limiter for model calls.

One instance is shared by every component in a run. It enforces:
- A global cap on in-flight requests
- A minimum spacing between successive dispatches
- Priority ordering (lower number first, FIFO within a priority)
- A circuit breaker that pauses dispatching after a burst of rate-limit
  errors, while queued items keep accumulating
- Retries for transient failures via RetryPolicy, and front-of-queue
  requeueing with exponential backoff for rate-limit failures

The dispatch loop runs only while the queue is non-empty and is
restarted on demand, so no background task outlives pending work.
"""

import asyncio
import heapq
import itertools
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .config import QueueConfig
from .errors import (
    QueueClearedError,
    QueueFullError,
    RetryExhaustedError,
    is_rate_limit_error,
    is_retryable_error,
)
from .retry import RetryPolicy
from .utils import Clock, SystemClock

logger = logging.getLogger(__name__)

CONTEXT_CATEGORIES = {
    "similarity-analysis": "similarity",
    "batch-similarity": "similarity",
    "cross-level-analysis": "similarity",
    "theme-expansion": "expansion",
    "batch-expansion": "expansion",
    "domain-classification": "domain",
    "theme-naming": "naming",
    "code-analysis": "analysis",
    "theme-extraction": "analysis",
}


def context_category(context: str) -> str:
    return CONTEXT_CATEGORIES.get(context, "general")


def retry_budget_for(context: str) -> str:
    """Batch contexts get the looser ai_batch budget; theme work the stricter one."""
    if context.startswith("batch"):
        return "ai_batch"
    if context_category(context) in ("similarity", "expansion", "domain", "analysis"):
        return "theme_processing"
    return "general"


class CircuitBreaker:
    """Circuit breaker that opens after consecutive failures and resets after a cooldown."""

    def __init__(self, threshold: int, reset_time: float, clock: Clock | None = None):
        self.threshold = threshold
        self.reset_time = reset_time
        self.clock = clock or SystemClock()
        self.failure_count = 0
        self.last_failure_time = 0.0
        self.is_open = False
        self.times_opened = 0

    def record_failure(self) -> None:
        """Record a failure and potentially open the circuit."""
        self.failure_count += 1
        self.last_failure_time = self.clock.monotonic()
        if self.failure_count >= self.threshold and not self.is_open:
            self.is_open = True
            self.times_opened += 1

    def record_success(self) -> None:
        """Record a success and reset failure count."""
        self.failure_count = 0
        self.is_open = False

    def can_proceed(self) -> bool:
        """Check if we can proceed with a request."""
        if not self.is_open:
            return True

        if self.clock.monotonic() - self.last_failure_time >= self.reset_time:
            self.is_open = False
            self.failure_count = 0
            return True

        return False

    def remaining_cooldown(self) -> float:
        if not self.is_open:
            return 0.0
        return max(0.0, self.reset_time - (self.clock.monotonic() - self.last_failure_time))

    def get_status(self) -> dict[str, Any]:
        """Get circuit breaker status."""
        return {
            "is_open": self.is_open,
            "failure_count": self.failure_count,
            "threshold": self.threshold,
            "times_opened": self.times_opened,
            "remaining_cooldown": self.remaining_cooldown(),
        }


@dataclass
class QueueItem:
    """
    One pending call. Its future is resolved or rejected exactly once.
    """
    id: str
    context: str
    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    enqueued_at: float
    priority: int = 0
    rate_limit_retries: int = 0
    attempts: int = 0


class RequestQueue:
    """Process-run-wide queue in front of the model endpoint."""

    def __init__(
        self,
        config: QueueConfig | None = None,
        clock: Clock | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.config = config or QueueConfig()
        self.clock = clock or SystemClock()
        self.retry_policy = retry_policy or RetryPolicy(clock=self.clock)
        self.circuit_breaker = CircuitBreaker(
            threshold=self.config.circuit_breaker_threshold,
            reset_time=self.config.circuit_breaker_cooldown,
            clock=self.clock,
        )

        self._heap: list[tuple[int, int, QueueItem]] = []
        self._sequence = itertools.count()
        self._front_sequence = itertools.count(-1, -1)
        self._active = 0
        self._active_by_context: dict[str, int] = defaultdict(int)
        self._last_dispatch = float("-inf")
        self._loop_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._requeues: dict[asyncio.Task, QueueItem] = {}

        # Stats
        self._total_enqueued = 0
        self._total_processed = 0
        self._total_failed = 0
        self._total_wait = 0.0
        self._dispatched = 0
        self._max_queue_length = 0
        self._rate_limit_hits = 0

    def __len__(self) -> int:
        return len(self._heap)

    @property
    def active_requests(self) -> int:
        return self._active

    async def enqueue(
        self,
        operation: Callable[[], Awaitable[Any]],
        context: str = "general",
        priority: int = 0,
    ) -> Any:
        """
        Queue a call and wait for its result.

        Args:
            operation: Zero-argument coroutine factory performing the call
            context: Logical context label (drives tracking and retry budget)
            priority: Lower value dispatches first; FIFO among equals

        Returns:
            The operation's result

        Raises:
            QueueFullError: max_queue_depth reached
            RetryExhaustedError: retry budget spent
            QueueClearedError: clear_queue() was called while waiting
            Any non-retryable error raised by the operation
        """
        max_depth = self.config.max_queue_depth
        if max_depth is not None and len(self._heap) >= max_depth:
            raise QueueFullError(f"Request queue is full ({max_depth} pending)")

        loop = asyncio.get_running_loop()
        item = QueueItem(
            id=uuid.uuid4().hex[:12],
            context=context,
            operation=operation,
            future=loop.create_future(),
            enqueued_at=self.clock.monotonic(),
            priority=priority,
        )
        self._push(item, front=False)
        self._total_enqueued += 1
        self._ensure_processing()
        return await item.future

    def _push(self, item: QueueItem, front: bool) -> None:
        sequence = next(self._front_sequence) if front else next(self._sequence)
        heapq.heappush(self._heap, (item.priority, sequence, item))
        self._max_queue_length = max(self._max_queue_length, len(self._heap))

    def _ensure_processing(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._process_loop())

    async def _process_loop(self) -> None:
        while self._heap:
            if not self.circuit_breaker.can_proceed():
                await self.clock.sleep(self.config.circuit_breaker_poll_interval)
                continue

            now = self.clock.monotonic()
            if (
                self._active >= self.config.max_concurrent_requests
                or now - self._last_dispatch < self.config.min_request_interval
            ):
                await self.clock.sleep(self.config.poll_interval)
                continue

            # No await between the checks above and these mutations
            _, _, item = heapq.heappop(self._heap)
            if item.future.done():
                # Caller went away; nothing to dispatch
                continue
            self._active += 1
            self._active_by_context[context_category(item.context)] += 1
            self._last_dispatch = now
            self._dispatched += 1
            self._total_wait += now - item.enqueued_at

            task = asyncio.create_task(self._dispatch(item))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _retry_on(self, error: BaseException) -> bool:
        # Rate-limit errors go back through the queue so the breaker sees them
        return is_retryable_error(error) and not is_rate_limit_error(error)

    async def _dispatch(self, item: QueueItem) -> None:
        category = context_category(item.context)

        async def attempt() -> Any:
            item.attempts += 1
            return await item.operation()

        try:
            result = await self.retry_policy.run(
                attempt, context=retry_budget_for(item.context), retry_on=self._retry_on
            )
        except Exception as e:
            if is_rate_limit_error(e):
                self._handle_rate_limit(item, e)
            else:
                self._fail(item, e)
        else:
            self.circuit_breaker.record_success()
            self._total_processed += 1
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._active -= 1
            self._active_by_context[category] -= 1

    def _handle_rate_limit(self, item: QueueItem, error: BaseException) -> None:
        self._rate_limit_hits += 1
        was_open = self.circuit_breaker.is_open
        self.circuit_breaker.record_failure()
        if self.circuit_breaker.is_open and not was_open:
            logger.warning(
                f"[QUEUE] circuit breaker open for {self.config.circuit_breaker_cooldown:.1f}s "
                f"after {self.circuit_breaker.failure_count} consecutive rate-limit errors"
            )

        if item.rate_limit_retries >= self.config.max_rate_limit_retries:
            self._fail(item, RetryExhaustedError(item.attempts, error, item.context))
            return

        delay = self.config.rate_limit_base_delay * (2 ** item.rate_limit_retries)
        item.rate_limit_retries += 1
        logger.info(
            f"[QUEUE] rate limited ({item.context}); requeueing {item.id} in {delay:.1f}s "
            f"(retry {item.rate_limit_retries}/{self.config.max_rate_limit_retries})"
        )
        task = asyncio.create_task(self._requeue_later(item, delay))
        self._requeues[task] = item
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _requeue_later(self, item: QueueItem, delay: float) -> None:
        try:
            await self.clock.sleep(delay)
        finally:
            self._requeues.pop(asyncio.current_task(), None)
        if item.future.done():
            return
        self._push(item, front=True)
        self._ensure_processing()

    def _fail(self, item: QueueItem, error: BaseException) -> None:
        self._total_failed += 1
        logger.error(f"[QUEUE] request {item.id} ({item.context}) failed: {type(error).__name__}: {error}")
        if not item.future.done():
            item.future.set_exception(error)

    def clear_queue(self) -> int:
        """Reject every pending item; returns how many were rejected."""
        rejected = 0
        while self._heap:
            _, _, item = heapq.heappop(self._heap)
            if not item.future.done():
                item.future.set_exception(QueueClearedError("Request queue cleared"))
                rejected += 1
        self._total_failed += rejected
        if rejected:
            logger.warning(f"[QUEUE] cleared {rejected} pending requests")
        return rejected

    async def wait_idle(self) -> None:
        """Wait until nothing is queued, in flight, or waiting to be requeued."""
        while self._heap or self._active or self._requeues or self._tasks:
            pending = [t for t in (self._loop_task, *self._tasks) if t is not None and not t.done()]
            if pending:
                await asyncio.wait(pending)
            else:
                await asyncio.sleep(0)

    async def close(self) -> None:
        """Reject pending work and wait for in-flight calls to settle."""
        self.clear_queue()
        for task, item in list(self._requeues.items()):
            task.cancel()
            if not item.future.done():
                item.future.set_exception(QueueClearedError("Request queue closed"))
                self._total_failed += 1
        tasks = [t for t in (self._loop_task, *self._tasks) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_queue_status(self) -> dict[str, Any]:
        """Queue depth, in-flight counts and historical tallies."""
        return {
            "queue_length": len(self._heap),
            "active_requests": self._active,
            "total_enqueued": self._total_enqueued,
            "total_processed": self._total_processed,
            "total_failed": self._total_failed,
            "average_wait_time": self._total_wait / self._dispatched if self._dispatched else 0.0,
            "max_queue_length": self._max_queue_length,
            "is_processing": self._loop_task is not None and not self._loop_task.done(),
            "pending_requeues": len(self._requeues),
            "rate_limit_hits": self._rate_limit_hits,
            "circuit_breaker": self.circuit_breaker.get_status(),
            "active_by_context": {k: v for k, v in self._active_by_context.items() if v},
            "max_queue_depth": self.config.max_queue_depth,
        }
