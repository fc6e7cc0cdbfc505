"""
Response cache for model calls.

Features:
- One LRU partition per PromptType, each with its own TTL, entry cap and
  cache predicate
- Deterministic keys: sha256 over canonical (recursively key-sorted) JSON
- Order-independent keys for similarity checks
- Adaptive TTL: high-confidence responses live longer
- Global memory budget enforced across all partitions by evicting the
  globally least recently used entries
- Periodic sweep of expired entries
- Never-cache prompt types bypass the cache entirely
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .config import CacheConfig
from .models import PromptType
from .utils import Clock, SystemClock, canonical_json, sha256_hex

logger = logging.getLogger(__name__)

MINUTE = 60.0
HOUR = 60 * MINUTE

KEY_LENGTH = 16


def _field(value: Any, name: str, default: Any = None) -> Any:
    if isinstance(value, dict):
        return value.get(name, default)
    return getattr(value, name, default)


def response_confidence(value: Any) -> float | None:
    """Confidence carried by a cached value, if any."""
    confidence = _field(value, "confidence")
    if confidence is None:
        data = _field(value, "data")
        if data is not None:
            confidence = _field(data, "confidence")
    return float(confidence) if isinstance(confidence, (int, float)) else None


def is_successful(value: Any) -> bool:
    return _field(value, "success", True) is True


def adaptive_ttl(base_ttl: float, value: Any) -> float:
    """
    Scale TTL by response confidence.

    > 0.9 -> x4, > 0.8 -> x2, < 0.5 -> x0.25, < 0.7 -> x0.5, otherwise x1.
    """
    confidence = response_confidence(value)
    if confidence is None:
        return base_ttl
    if confidence > 0.9:
        return base_ttl * 4
    if confidence > 0.8:
        return base_ttl * 2
    if confidence < 0.5:
        return base_ttl * 0.25
    if confidence < 0.7:
        return base_ttl * 0.5
    return base_ttl


@dataclass(frozen=True)
class CacheStrategy:
    """Eviction policy for one prompt type."""
    ttl: float
    max_entries: int
    should_cache: Callable[[Any], bool] | None = None
    use_adaptive_ttl: bool = False
    never_cache: bool = False


DEFAULT_STRATEGY = CacheStrategy(ttl=30 * MINUTE, max_entries=100)

STRATEGIES: dict[PromptType, CacheStrategy] = {
    PromptType.CODE_ANALYSIS: CacheStrategy(
        ttl=24 * HOUR, max_entries=1000, should_cache=is_successful,
    ),
    PromptType.SIMILARITY_CHECK: CacheStrategy(
        ttl=HOUR,
        max_entries=500,
        should_cache=lambda v: is_successful(v) and (response_confidence(v) or 0.0) > 0.7,
        use_adaptive_ttl=True,
    ),
    PromptType.THEME_EXTRACTION: CacheStrategy(ttl=HOUR, max_entries=500, use_adaptive_ttl=True),
    PromptType.THEME_EXPANSION: CacheStrategy(ttl=30 * MINUTE, max_entries=200, use_adaptive_ttl=True),
    PromptType.DOMAIN_EXTRACTION: CacheStrategy(ttl=30 * MINUTE, max_entries=100),
    PromptType.BATCH_SIMILARITY: CacheStrategy(ttl=HOUR, max_entries=200),
    PromptType.CROSS_LEVEL_SIMILARITY: CacheStrategy(ttl=HOUR, max_entries=200, use_adaptive_ttl=True),
    # Name generation is deliberately non-deterministic
    PromptType.THEME_NAMING: CacheStrategy(ttl=0.0, max_entries=0, never_cache=True),
}


def make_cache_key(prompt_type: PromptType, inputs: Any) -> str:
    """
    Cache key for a logical request.

    similarity_check sorts the two theme names so (A, B) and (B, A) share
    a key; code_analysis keys on filename plus a short diff hash.
    """
    if prompt_type == PromptType.SIMILARITY_CHECK and isinstance(inputs, dict):
        name1 = str(inputs.get("theme1Name", ""))
        name2 = str(inputs.get("theme2Name", ""))
        if name1 or name2:
            first, second = sorted((name1, name2))
            return sha256_hex(f"{prompt_type.value}:{first}:{second}", KEY_LENGTH)

    if prompt_type == PromptType.CODE_ANALYSIS and isinstance(inputs, dict) and "filename" in inputs:
        diff_hash = sha256_hex(str(inputs.get("diffContent", "")), 8)
        return f"{prompt_type.value}:{inputs['filename']}:{diff_hash}"

    return sha256_hex(canonical_json({"type": prompt_type.value, "inputs": inputs}), KEY_LENGTH)


def estimate_size(value: Any) -> int:
    """Approximate bytes: two per character of the JSON form."""
    return len(canonical_json(value)) * 2


@dataclass
class CacheEntry:
    """One cached response. Visible only while now < expires_at."""
    key: str
    value: Any
    created_at: float
    expires_at: float
    size: int
    access_count: int = 0
    last_accessed: float = 0.0


@dataclass
class CacheMetrics:
    """Hit/miss/eviction counters, overall and per prompt type."""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    expirations: int = 0
    rejected: int = 0
    total_hit_age: float = 0.0
    per_type: dict[str, dict[str, int]] = field(default_factory=dict)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def bump(self, prompt_type: PromptType, counter: str, amount: int = 1) -> None:
        setattr(self, counter, getattr(self, counter) + amount)
        bucket = self.per_type.setdefault(prompt_type.value, {"hits": 0, "misses": 0, "sets": 0, "evictions": 0})
        if counter in bucket:
            bucket[counter] += amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "rejected": self.rejected,
            "hit_rate": self.hit_rate,
            "average_hit_age": self.total_hit_age / self.hits if self.hits else 0.0,
            "per_type": {name: dict(counts) for name, counts in self.per_type.items()},
        }


class ResponseCache:
    """
    Partitioned LRU cache with TTL and a global memory budget.

    All mutations are synchronous, so concurrent tasks on one event loop
    never observe a half-applied insert or eviction.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        clock: Clock | None = None,
        strategies: dict[PromptType, CacheStrategy] | None = None,
    ):
        self.config = config or CacheConfig()
        self.clock = clock or SystemClock()
        self.strategies = dict(STRATEGIES)
        if strategies:
            self.strategies.update(strategies)
        self.max_memory_bytes = self.config.max_memory_bytes

        self._partitions: dict[PromptType, OrderedDict[str, CacheEntry]] = {}
        self._memory_used = 0
        self.metrics = CacheMetrics()
        self._cleanup_task: asyncio.Task | None = None

    def strategy_for(self, prompt_type: PromptType) -> CacheStrategy:
        return self.strategies.get(prompt_type, DEFAULT_STRATEGY)

    def is_cacheable_type(self, prompt_type: PromptType | str) -> bool:
        return not self.strategy_for(PromptType(prompt_type)).never_cache

    def _partition(self, prompt_type: PromptType) -> OrderedDict[str, CacheEntry]:
        partition = self._partitions.get(prompt_type)
        if partition is None:
            partition = OrderedDict()
            self._partitions[prompt_type] = partition
        return partition

    def _remove(self, partition: OrderedDict[str, CacheEntry], key: str) -> CacheEntry | None:
        entry = partition.pop(key, None)
        if entry is not None:
            self._memory_used -= entry.size
        return entry

    def get(self, prompt_type: PromptType | str, inputs: Any) -> Any | None:
        """Return the cached value, or None on miss or expiry."""
        prompt_type = PromptType(prompt_type)
        if self.strategy_for(prompt_type).never_cache:
            return None

        partition = self._partitions.get(prompt_type)
        key = make_cache_key(prompt_type, inputs)
        entry = partition.get(key) if partition is not None else None
        now = self.clock.now()

        if entry is None:
            self.metrics.bump(prompt_type, "misses")
            return None

        if now >= entry.expires_at:
            self._remove(partition, key)
            self.metrics.expirations += 1
            self.metrics.bump(prompt_type, "misses")
            return None

        entry.access_count += 1
        entry.last_accessed = now
        partition.move_to_end(key)
        self.metrics.bump(prompt_type, "hits")
        self.metrics.total_hit_age += now - entry.created_at
        logger.debug(f"[CACHE] hit {prompt_type.value}:{key}")
        return entry.value

    def set(self, prompt_type: PromptType | str, inputs: Any, value: Any) -> bool:
        """
        Store a value. Returns False when the type or the value is not cacheable.
        """
        prompt_type = PromptType(prompt_type)
        strategy = self.strategy_for(prompt_type)
        if strategy.never_cache:
            return False
        if strategy.should_cache is not None and not strategy.should_cache(value):
            self.metrics.rejected += 1
            return False

        key = make_cache_key(prompt_type, inputs)
        size = estimate_size(value)
        if size > self.max_memory_bytes:
            logger.warning(f"[CACHE] entry of {size} bytes exceeds the memory budget; not cached")
            self.metrics.rejected += 1
            return False

        partition = self._partition(prompt_type)
        self._remove(partition, key)

        # A full partition evicts its own LRU entry before the global check
        while strategy.max_entries and len(partition) >= strategy.max_entries:
            evicted_key, _ = next(iter(partition.items()))
            self._remove(partition, evicted_key)
            self.metrics.bump(prompt_type, "evictions")

        if self._memory_used + size > self.max_memory_bytes:
            self._evict_global(size)

        now = self.clock.now()
        ttl = adaptive_ttl(strategy.ttl, value) if strategy.use_adaptive_ttl else strategy.ttl
        partition[key] = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + ttl,
            size=size,
            last_accessed=now,
        )
        self._memory_used += size
        self.metrics.bump(prompt_type, "sets")
        return True

    def _evict_global(self, required: int) -> None:
        """Evict globally least-recently-used entries until `required` bytes fit."""
        while self._memory_used + required > self.max_memory_bytes:
            oldest: tuple[PromptType, str, float] | None = None
            for prompt_type, partition in self._partitions.items():
                if not partition:
                    continue
                # Each partition is kept in access order; its head is its LRU entry
                key, entry = next(iter(partition.items()))
                if oldest is None or entry.last_accessed < oldest[2]:
                    oldest = (prompt_type, key, entry.last_accessed)
            if oldest is None:
                return
            self._remove(self._partitions[oldest[0]], oldest[1])
            self.metrics.bump(oldest[0], "evictions")

    def get_batch(self, prompt_type: PromptType | str, inputs_list: list[Any]) -> list[Any | None]:
        return [self.get(prompt_type, inputs) for inputs in inputs_list]

    def set_batch(self, prompt_type: PromptType | str, inputs_list: list[Any], values: list[Any | None]) -> int:
        """Store each non-None value; returns how many were cached."""
        if len(inputs_list) != len(values):
            raise ValueError("inputs_list and values must have the same length")
        stored = 0
        for inputs, value in zip(inputs_list, values):
            if value is not None and self.set(prompt_type, inputs, value):
                stored += 1
        return stored

    async def warm_cache(
        self,
        prompt_type: PromptType | str,
        predicted_inputs: list[Any],
        producer: Callable[[Any], Awaitable[Any]],
    ) -> int:
        """Pre-compute and store values for inputs not cached yet."""
        prompt_type = PromptType(prompt_type)
        if self.strategy_for(prompt_type).never_cache:
            return 0
        missing = [inputs for inputs in predicted_inputs if self.get(prompt_type, inputs) is None]
        values = await asyncio.gather(*(producer(inputs) for inputs in missing))
        return self.set_batch(prompt_type, missing, list(values))

    def clear(self, prompt_type: PromptType | str | None = None) -> None:
        if prompt_type is None:
            self._partitions.clear()
            self._memory_used = 0
            return
        partition = self._partitions.pop(PromptType(prompt_type), None)
        if partition:
            self._memory_used -= sum(entry.size for entry in partition.values())

    def cleanup_expired(self) -> int:
        """Remove every expired entry; returns how many were removed."""
        now = self.clock.now()
        removed = 0
        for partition in self._partitions.values():
            for key in [k for k, e in partition.items() if now >= e.expires_at]:
                self._remove(partition, key)
                removed += 1
        self.metrics.expirations += removed
        if removed:
            logger.debug(f"[CACHE] swept {removed} expired entries")
        return removed

    def start_cleanup(self) -> None:
        """Start the periodic expiry sweep on the running loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        while True:
            await self.clock.sleep(self.config.cleanup_interval)
            self.cleanup_expired()

    async def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    def size(self, prompt_type: PromptType | str | None = None) -> int:
        if prompt_type is None:
            return sum(len(p) for p in self._partitions.values())
        return len(self._partitions.get(PromptType(prompt_type), {}))

    def get_memory_usage(self) -> dict[str, Any]:
        return {
            "used": self._memory_used,
            "max": self.max_memory_bytes,
            "percentage": 100.0 * self._memory_used / self.max_memory_bytes if self.max_memory_bytes else 0.0,
        }

    def set_max_memory_usage(self, max_bytes: int) -> None:
        """Change the budget, evicting immediately if already over it."""
        self.max_memory_bytes = max_bytes
        if self._memory_used > max_bytes:
            self._evict_global(0)

    def get_metrics(self) -> dict[str, Any]:
        stats = self.metrics.to_dict()
        stats["entries"] = self.size()
        stats["memory"] = self.get_memory_usage()
        return stats

    def get_efficiency_report(self) -> str:
        metrics = self.metrics
        memory = self.get_memory_usage()
        lines = [
            f"Cache hit rate: {metrics.hit_rate:.1%} ({metrics.hits} hits / {metrics.misses} misses)",
            f"Entries: {self.size()}, evictions: {metrics.evictions}, expirations: {metrics.expirations}",
            f"Memory: {memory['used'] / 1024:.1f}KB of {memory['max'] / 1024 / 1024:.0f}MB "
            f"({memory['percentage']:.1f}%)",
        ]
        for name, counts in sorted(metrics.per_type.items()):
            total = counts["hits"] + counts["misses"]
            rate = counts["hits"] / total if total else 0.0
            lines.append(f"  {name}: {rate:.1%} hit rate, {counts['sets']} stored")
        return "\n".join(lines)
