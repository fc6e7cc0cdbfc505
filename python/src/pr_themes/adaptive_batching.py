"""
Adaptive batch sizing per prompt type.

Observes batch outcomes (success, latency) and nudges the batch size:
shrink when failures or latency rise, grow when batches are fast and
reliable. Adjustments are rate-limited by a cooldown so a single bad
batch cannot thrash the size. Coarse system load signals can shrink the
size further at read time. The result is advisory; callers fall back to
a default size for types without an adaptive config.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .config import BatchConfig
from .models import PromptType
from .utils import Clock, SystemClock, to_iso

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5

TARGET_SUCCESS_RATE = 0.95
TARGET_LATENCY_MS = 3000.0
MAX_LATENCY_MS = 10000.0

BATCH_CONSTRAINTS: dict[PromptType, tuple[int, int]] = {
    PromptType.SIMILARITY_CHECK: (1, 20),
    PromptType.THEME_EXPANSION: (1, 10),
    PromptType.DOMAIN_EXTRACTION: (5, 50),
    PromptType.CROSS_LEVEL_SIMILARITY: (1, 15),
    PromptType.CODE_ANALYSIS: (1, 5),
    PromptType.THEME_EXTRACTION: (1, 1),
    PromptType.THEME_NAMING: (1, 1),
    PromptType.BATCH_SIMILARITY: (5, 30),
}
DEFAULT_CONSTRAINTS = (1, 10)

BATCHABLE_TYPES = (
    PromptType.SIMILARITY_CHECK,
    PromptType.THEME_EXPANSION,
    PromptType.DOMAIN_EXTRACTION,
    PromptType.CROSS_LEVEL_SIMILARITY,
    PromptType.CODE_ANALYSIS,
)


@dataclass
class SystemMetrics:
    """Coarse load signals; percentages 0-100, response time in ms."""
    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    api_response_time: float = 0.0
    queue_depth: int = 0
    time_of_day: int | None = None  # 0-23


@dataclass
class BatchingConfig:
    """Live adaptive state for one prompt type."""
    current_batch_size: int
    success_rate: float = 1.0
    avg_latency: float = 0.0  # ms
    error_rate: float = 0.0
    throughput: float = 0.0  # items per second
    last_adjustment: float = 0.0
    outcomes: deque = field(default_factory=lambda: deque(maxlen=20))


def batch_constraints(prompt_type: PromptType) -> tuple[int, int]:
    return BATCH_CONSTRAINTS.get(prompt_type, DEFAULT_CONSTRAINTS)


class AdaptiveBatchingController:
    """Tracks per-type batch performance and recommends batch sizes."""

    def __init__(self, config: BatchConfig | None = None, clock: Clock | None = None):
        self.config = config or BatchConfig()
        self.clock = clock or SystemClock()
        self._configs: dict[PromptType, BatchingConfig] = {}
        self._initialize()

    def _initialize(self, only: PromptType | None = None) -> None:
        now = self.clock.monotonic()
        for prompt_type in BATCHABLE_TYPES:
            if only is not None and prompt_type != only:
                continue
            low, high = batch_constraints(prompt_type)
            self._configs[prompt_type] = BatchingConfig(
                current_batch_size=max(low, min(high, self.config.initial_batch_size)),
                last_adjustment=now,
                outcomes=deque(maxlen=self.config.window_size),
            )

    def get_config(self, prompt_type: PromptType) -> BatchingConfig | None:
        return self._configs.get(prompt_type)

    def get_optimal_batch_size(self, prompt_type: PromptType, system_metrics: SystemMetrics | None = None) -> int:
        """Current recommendation, optionally shrunk for system load."""
        state = self._configs.get(prompt_type)
        if state is None:
            return DEFAULT_BATCH_SIZE
        if system_metrics is None:
            return state.current_batch_size
        return self._adjust_for_system_load(state.current_batch_size, system_metrics)

    def update_metrics(self, prompt_type: PromptType, batch_size: int, success: bool, latency_ms: float) -> None:
        """Fold one batch outcome into the EMAs and maybe adjust the size."""
        state = self._configs.get(prompt_type)
        if state is None:
            return

        alpha = self.config.ema_alpha
        outcome = 1.0 if success else 0.0
        state.avg_latency = state.avg_latency * (1 - alpha) + latency_ms * alpha
        state.success_rate = state.success_rate * (1 - alpha) + outcome * alpha
        state.error_rate = state.error_rate * (1 - alpha) + (1.0 - outcome) * alpha
        items_per_second = batch_size / (latency_ms / 1000.0) if latency_ms > 0 else float(batch_size)
        state.throughput = state.throughput * (1 - alpha) + items_per_second * alpha
        state.outcomes.append((success, latency_ms, batch_size))

        if self.clock.monotonic() - state.last_adjustment > self.config.adjustment_cooldown:
            self._adjust_batch_size(prompt_type, state)

    def _adjust_batch_size(self, prompt_type: PromptType, state: BatchingConfig) -> None:
        size = state.current_batch_size
        if state.success_rate < TARGET_SUCCESS_RATE:
            new_size = max(1, math.floor(size * 0.8))
        elif state.avg_latency > MAX_LATENCY_MS:
            new_size = max(1, math.floor(size * 0.7))
        elif state.success_rate > TARGET_SUCCESS_RATE and state.avg_latency < TARGET_LATENCY_MS:
            new_size = math.ceil(size * 1.2)
        else:
            new_size = size

        low, high = batch_constraints(prompt_type)
        new_size = max(low, min(high, new_size))

        if new_size != size:
            logger.info(
                f"[ADAPTIVE] {prompt_type.value} batch size {size} -> {new_size} "
                f"(success: {state.success_rate:.1%}, latency: {state.avg_latency:.0f}ms)"
            )
            state.current_batch_size = new_size
            state.last_adjustment = self.clock.monotonic()

    def _adjust_for_system_load(self, base_size: int, metrics: SystemMetrics) -> int:
        factor = 1.0
        if metrics.cpu_usage > 80 or metrics.memory_usage > 85:
            factor *= 0.7
        elif metrics.cpu_usage > 60 or metrics.memory_usage > 70:
            factor *= 0.85

        if metrics.api_response_time > 5000:
            factor *= 0.8

        if metrics.queue_depth > 100:
            factor *= 0.75

        if self.config.use_time_of_day and metrics.time_of_day is not None:
            factor *= 0.9 if 9 <= metrics.time_of_day <= 17 else 1.1

        return max(1, round(base_size * factor))

    def set_batch_size(self, prompt_type: PromptType, size: int) -> None:
        """Manual override, clamped to the type's bounds."""
        state = self._configs.get(prompt_type)
        if state is None:
            return
        low, high = batch_constraints(prompt_type)
        state.current_batch_size = max(low, min(high, size))
        state.last_adjustment = self.clock.monotonic()

    def reset(self, prompt_type: PromptType | None = None) -> None:
        self._initialize(only=prompt_type)

    def get_performance_report(self) -> dict[str, Any]:
        report = {}
        wall_offset = self.clock.now() - self.clock.monotonic()
        for prompt_type, state in self._configs.items():
            recent = list(state.outcomes)
            report[prompt_type.value] = {
                "current_batch_size": state.current_batch_size,
                "success_rate": round(state.success_rate, 4),
                "avg_latency_ms": round(state.avg_latency, 1),
                "error_rate": round(state.error_rate, 4),
                "throughput": round(state.throughput, 2),
                "recent_success_rate": (
                    sum(1 for ok, _, _ in recent if ok) / len(recent) if recent else None
                ),
                "last_adjustment": to_iso(
                    datetime.fromtimestamp(state.last_adjustment + wall_offset, tz=timezone.utc)
                ),
            }
        return report
