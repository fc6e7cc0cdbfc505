"""
Batch processor for model requests.

Features:
- One pending queue per prompt type, drained by a per-type loop that
  starts on demand and exits when its queue is empty
- Flush when the queue reaches the adaptive batch size or when the oldest
  item has waited past the type's timeout
- Optional grouping key per type; the largest group is batched first
- One prompt per batch with a correlation id per item; results are routed
  back by id
- Failed or malformed batches, and items missing from a reply, fall back
  to individual requests so every caller is resolved exactly once
- Per-type circuit breaker: repeated batch failures switch the type to
  individual requests for a cooldown
"""

import asyncio
import itertools
import logging
import uuid
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Callable

from .adaptive_batching import AdaptiveBatchingController, SystemMetrics
from .config import BatchConfig
from .errors import QueueClearedError, QueueFullError, SchemaValidationError
from .models import PromptType
from .prompt_service import FallbackStrategy, PromptResponse, PromptService
from .prompts import build_batch_prompt, correlation_field
from .request_queue import CircuitBreaker
from .schemas import parse_batch_envelope, validate_data
from .utils import Clock, SystemClock, count_tokens

logger = logging.getLogger(__name__)


def _count(value: Any) -> int:
    if isinstance(value, (list, tuple, set, frozenset)):
        return len(value)
    if isinstance(value, str):
        return len([part for part in value.split(",") if part.strip()])
    return 0


def similarity_group(variables: dict[str, Any]) -> str:
    domains = sorted((str(variables.get("theme1Domain", "general")), str(variables.get("theme2Domain", "general"))))
    return "-".join(domains)


def file_size_group(variables: dict[str, Any]) -> str:
    size = len(str(variables.get("diffContent", "")))
    if size < 1000:
        return "small"
    if size < 5000:
        return "medium"
    return "large"


def complexity_group(variables: dict[str, Any]) -> str:
    files = _count(variables.get("affectedFiles"))
    if files < 5:
        return "simple"
    if files < 20:
        return "moderate"
    return "complex"


@dataclass(frozen=True)
class BatchStrategy:
    """Flush rules for one prompt type."""
    flush_size: int
    timeout: float  # seconds the oldest item may wait
    max_batch: int
    context: str
    group_key: Callable[[dict[str, Any]], str] | None = None


BATCH_STRATEGIES: dict[PromptType, BatchStrategy] = {
    PromptType.SIMILARITY_CHECK: BatchStrategy(10, 0.5, 15, "batch-similarity", similarity_group),
    PromptType.THEME_EXPANSION: BatchStrategy(5, 1.0, 10, "batch-expansion", complexity_group),
    PromptType.DOMAIN_EXTRACTION: BatchStrategy(15, 2.0, 50, "batch-domain"),
    PromptType.CROSS_LEVEL_SIMILARITY: BatchStrategy(8, 0.8, 15, "batch-cross-level"),
    PromptType.CODE_ANALYSIS: BatchStrategy(3, 0.3, 5, "batch-code-analysis", file_size_group),
}


@dataclass
class BatchItem:
    """One logical request waiting for a batch. Resolved exactly once."""
    id: str
    prompt_type: PromptType
    variables: dict[str, Any]
    future: asyncio.Future
    enqueued_at: float
    priority: int = 0
    sequence: int = 0
    fallback: FallbackStrategy = FallbackStrategy.THROW_ERROR


class BatchProcessor:
    """Groups logical requests of the same type into fewer model calls."""

    def __init__(
        self,
        prompt_service: PromptService,
        adaptive: AdaptiveBatchingController | None = None,
        config: BatchConfig | None = None,
        clock: Clock | None = None,
    ):
        self.prompt_service = prompt_service
        self.config = config or BatchConfig()
        self.clock = clock or SystemClock()
        self.adaptive = adaptive or AdaptiveBatchingController(self.config, self.clock)

        self._queues: dict[PromptType, list[BatchItem]] = {t: [] for t in BATCH_STRATEGIES}
        self._loops: dict[PromptType, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._sequence = itertools.count()
        self._breakers = {
            t: CircuitBreaker(
                threshold=self.config.circuit_breaker_threshold,
                reset_time=self.config.circuit_breaker_cooldown,
                clock=self.clock,
            )
            for t in BATCH_STRATEGIES
        }
        self._history: deque = deque(maxlen=self.config.history_size)

        # Stats
        self._batches_sent = 0
        self._batch_failures = 0
        self._items_batched = 0
        self._items_individual = 0

    def is_batchable(self, prompt_type: PromptType) -> bool:
        return prompt_type in BATCH_STRATEGIES

    async def add(
        self,
        prompt_type: PromptType,
        variables: dict[str, Any],
        priority: int = 0,
        fallback: FallbackStrategy = FallbackStrategy.THROW_ERROR,
    ) -> PromptResponse:
        """
        Queue one logical request and wait for its response.

        Non-batchable types and cache hits skip the batch queue.

        Raises:
            QueueFullError: the type's pending queue is at max_queue_depth
            Model-call errors when fallback is THROW_ERROR
        """
        if not self.is_batchable(prompt_type):
            return await self.prompt_service.execute(prompt_type, variables, fallback=fallback, priority=priority)

        cached = self.prompt_service.cache.get(prompt_type, variables)
        if cached is not None:
            return replace(cached, cached=True)

        queue = self._queues[prompt_type]
        max_depth = self.config.max_queue_depth
        if max_depth is not None and len(queue) >= max_depth:
            raise QueueFullError(f"Batch queue for {prompt_type.value} is full ({max_depth} pending)")

        item = BatchItem(
            id=uuid.uuid4().hex[:8],
            prompt_type=prompt_type,
            variables=variables,
            future=asyncio.get_running_loop().create_future(),
            enqueued_at=self.clock.monotonic(),
            priority=priority,
            sequence=next(self._sequence),
            fallback=fallback,
        )
        queue.append(item)
        self._ensure_loop(prompt_type)
        return await item.future

    async def add_batch(
        self,
        prompt_type: PromptType,
        items: list[dict[str, Any]],
        priority: int = 0,
        fallback: FallbackStrategy = FallbackStrategy.THROW_ERROR,
    ) -> list[PromptResponse]:
        """Queue several requests of one type; responses keep input order."""
        return list(await asyncio.gather(
            *(self.add(prompt_type, variables, priority, fallback) for variables in items)
        ))

    def _ensure_loop(self, prompt_type: PromptType) -> None:
        task = self._loops.get(prompt_type)
        if task is None or task.done():
            self._loops[prompt_type] = asyncio.create_task(self._process_loop(prompt_type))

    def _target_size(self, prompt_type: PromptType) -> int:
        strategy = BATCH_STRATEGIES[prompt_type]
        if self.adaptive.get_config(prompt_type) is None:
            target = strategy.flush_size
        else:
            metrics = SystemMetrics(queue_depth=len(self.prompt_service.queue))
            target = self.adaptive.get_optimal_batch_size(prompt_type, metrics)
        return max(1, min(target, strategy.max_batch))

    async def _process_loop(self, prompt_type: PromptType) -> None:
        strategy = BATCH_STRATEGIES[prompt_type]
        queue = self._queues[prompt_type]
        while queue:
            target = self._target_size(prompt_type)
            waited = self.clock.monotonic() - min(item.enqueued_at for item in queue)
            if len(queue) < target and waited < strategy.timeout:
                await self.clock.sleep(min(self.config.poll_interval, strategy.timeout - waited))
                continue

            # No await between the checks above and the extraction
            batch = self._extract_batch(prompt_type, target)
            if batch:
                self._spawn(self._process_batch(prompt_type, batch))

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _extract_batch(self, prompt_type: PromptType, size: int) -> list[BatchItem]:
        """Take up to `size` items, from the largest group when the type groups."""
        queue = self._queues[prompt_type]
        queue.sort(key=lambda item: (item.priority, item.sequence))
        group_key = BATCH_STRATEGIES[prompt_type].group_key

        if group_key is None:
            selected = queue[:size]
        else:
            groups: dict[str, list[BatchItem]] = {}
            for item in queue:
                groups.setdefault(group_key(item.variables), []).append(item)
            selected = max(groups.values(), key=len)[:size]

        chosen = {id(item) for item in selected}
        queue[:] = [item for item in queue if id(item) not in chosen]
        return selected

    async def _process_batch(self, prompt_type: PromptType, items: list[BatchItem]) -> None:
        items = [item for item in items if not item.future.done()]
        if not items:
            return

        breaker = self._breakers[prompt_type]
        if len(items) == 1 or not breaker.can_proceed():
            await self._process_individually(items)
            return

        strategy = BATCH_STRATEGIES[prompt_type]
        id_field = correlation_field(prompt_type)
        prompt = build_batch_prompt(prompt_type, [(item.id, item.variables) for item in items])
        start = self.clock.monotonic()
        self._batches_sent += 1

        try:
            raw = await self.prompt_service.call_raw(
                prompt, strategy.context, priority=min(item.priority for item in items)
            )
            envelope = parse_batch_envelope(prompt_type, raw)
        except Exception as e:
            # Every failure falls back per item so each caller resolves
            latency_ms = (self.clock.monotonic() - start) * 1000
            self._batch_failures += 1
            breaker.record_failure()
            self.adaptive.update_metrics(prompt_type, len(items), False, latency_ms)
            self._record(prompt_type, len(items), 0, latency_ms, False, f"{type(e).__name__}: {e}")
            logger.warning(
                f"[BATCH] {prompt_type.value} batch of {len(items)} failed ({type(e).__name__}: {e}); "
                f"processing items individually"
            )
            await self._process_individually(items)
            return

        latency_ms = (self.clock.monotonic() - start) * 1000
        per_item_tokens = (count_tokens(prompt) + count_tokens(raw)) // len(items)
        by_id = {item.id: item for item in items}
        resolved = 0
        for result in envelope.results:
            item = by_id.get(str(result.get(id_field, "")))
            if item is None or item.future.done():
                continue
            try:
                data = validate_data(prompt_type, result)
            except SchemaValidationError as e:
                logger.debug(f"[BATCH] result {item.id} invalid: {e}")
                continue
            response = PromptResponse(
                success=True,
                data=data,
                confidence=float(getattr(data, "confidence", 0.5)),
                tokens_used=per_item_tokens,
            )
            self.prompt_service.cache.set(prompt_type, item.variables, response)
            item.future.set_result(response)
            del by_id[item.id]
            resolved += 1

        self._items_batched += resolved
        breaker.record_success()
        self.adaptive.update_metrics(prompt_type, len(items), resolved == len(items), latency_ms)
        self._record(prompt_type, len(items), resolved, latency_ms, True, None)

        missing = [item for item in by_id.values() if not item.future.done()]
        if missing:
            logger.warning(
                f"[BATCH] {prompt_type.value} reply covered {resolved}/{len(items)} items; "
                f"reprocessing {len(missing)} individually"
            )
            await self._process_individually(missing)

    async def _process_individually(self, items: list[BatchItem]) -> None:
        await asyncio.gather(*(self._process_one(item) for item in items))

    async def _process_one(self, item: BatchItem) -> None:
        if item.future.done():
            return
        self._items_individual += 1
        try:
            response = await self.prompt_service.execute(
                item.prompt_type, item.variables, fallback=item.fallback, priority=item.priority
            )
        except Exception as e:
            if not item.future.done():
                item.future.set_exception(e)
        else:
            if not item.future.done():
                item.future.set_result(response)

    def _record(
        self,
        prompt_type: PromptType,
        size: int,
        resolved: int,
        latency_ms: float,
        success: bool,
        error: str | None,
    ) -> None:
        self._history.append({
            "type": prompt_type.value,
            "size": size,
            "resolved": resolved,
            "latency_ms": round(latency_ms, 1),
            "success": success,
            "error": error,
            "timestamp": self.clock.now(),
        })

    async def flush(self, prompt_type: PromptType | None = None) -> None:
        """Send everything pending now, ignoring size and timeout thresholds."""
        types = [prompt_type] if prompt_type is not None else list(self._queues)
        batches = []
        for t in types:
            queue = self._queues.get(t)
            if not queue:
                continue
            max_batch = BATCH_STRATEGIES[t].max_batch
            while queue:
                batches.append(self._spawn(self._process_batch(t, self._extract_batch(t, max_batch))))
        if batches:
            await asyncio.gather(*batches)

    async def close(self) -> None:
        """Reject pending items and wait for batches already in flight."""
        rejected = 0
        for queue in self._queues.values():
            for item in queue:
                if not item.future.done():
                    item.future.set_exception(QueueClearedError("Batch processor closed"))
                    rejected += 1
            queue.clear()
        if rejected:
            logger.warning(f"[BATCH] closed with {rejected} pending items rejected")
        tasks = [t for t in (*self._loops.values(), *self._tasks) if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_queue_stats(self) -> dict[str, Any]:
        """Pending counts per type plus batch tallies."""
        return {
            "queues": {
                t.value: {
                    "pending": len(queue),
                    "target_size": self._target_size(t),
                    "circuit_breaker": self._breakers[t].get_status(),
                }
                for t, queue in self._queues.items()
            },
            "batches_sent": self._batches_sent,
            "batch_failures": self._batch_failures,
            "items_batched": self._items_batched,
            "items_individual": self._items_individual,
        }

    def get_batch_history(self) -> list[dict[str, Any]]:
        return list(self._history)
