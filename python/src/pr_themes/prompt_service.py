"""
Prompt execution service.

Runs one logical request end to end:
cache lookup -> prompt build -> RequestQueue -> JSON extraction ->
schema validation -> cache store.

What happens when the model output is unusable is decided at each call
site through FallbackStrategy: advisory callers take the documented
default, decision-making callers get the typed error.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from .errors import MODEL_CALL_ERRORS
from .models import PromptType
from .prompts import build_prompt
from .request_queue import RequestQueue
from .response_cache import ResponseCache
from .schemas import fallback_response, parse_response
from .utils import Clock, SystemClock, count_tokens

logger = logging.getLogger(__name__)

# async (prompt, context_label) -> raw model text
CallModel = Callable[[str, str], Awaitable[str]]

PROMPT_CONTEXTS: dict[PromptType, str] = {
    PromptType.CODE_ANALYSIS: "code-analysis",
    PromptType.THEME_EXTRACTION: "theme-extraction",
    PromptType.SIMILARITY_CHECK: "similarity-analysis",
    PromptType.THEME_EXPANSION: "theme-expansion",
    PromptType.DOMAIN_EXTRACTION: "domain-classification",
    PromptType.THEME_NAMING: "theme-naming",
    PromptType.BATCH_SIMILARITY: "batch-similarity",
    PromptType.CROSS_LEVEL_SIMILARITY: "cross-level-analysis",
}

METRICS_WEIGHT = 0.1


class FallbackStrategy(Enum):
    USE_DEFAULT = "use_default"  # degrade to fallback_response()
    THROW_ERROR = "throw_error"  # propagate the typed error


@dataclass
class PromptResponse:
    """Validated result of one logical request."""
    success: bool
    data: BaseModel | None
    confidence: float = 0.5
    cached: bool = False
    fallback: bool = False
    error: str | None = None
    tokens_used: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data.model_dump(by_alias=True) if self.data is not None else None,
            "confidence": self.confidence,
            "cached": self.cached,
            "fallback": self.fallback,
            "error": self.error,
            "tokensUsed": self.tokens_used,
        }


@dataclass
class PromptMetrics:
    execution_time: float = 0.0  # seconds, EMA
    success_rate: float = 0.0
    cache_hit_rate: float = 0.0
    calls: int = 0
    fallbacks: int = 0


class PromptService:
    """Shared entry point for single (unbatched) model requests."""

    def __init__(
        self,
        call_model: CallModel,
        queue: RequestQueue,
        cache: ResponseCache,
        clock: Clock | None = None,
    ):
        self.call_model = call_model
        self.queue = queue
        self.cache = cache
        self.clock = clock or SystemClock()
        self._metrics: dict[PromptType, PromptMetrics] = {t: PromptMetrics() for t in PromptType}

    async def call_raw(self, prompt: str, context: str, priority: int = 0) -> str:
        """Send a prepared prompt through the shared queue."""
        return await self.queue.enqueue(lambda: self.call_model(prompt, context), context=context, priority=priority)

    async def execute(
        self,
        prompt_type: PromptType,
        variables: dict[str, Any],
        fallback: FallbackStrategy = FallbackStrategy.THROW_ERROR,
        priority: int = 0,
    ) -> PromptResponse:
        """
        Execute a prompt with caching, validation and an explicit fallback policy.

        Args:
            prompt_type: Logical request type (selects template, schema, cache policy)
            variables: Template variables; also the cache key input
            fallback: USE_DEFAULT degrades to the documented default, THROW_ERROR raises
            priority: Queue priority (lower first)

        Returns:
            PromptResponse with validated data

        Raises:
            JsonExtractionError, SchemaValidationError, RetryExhaustedError and other
            model-call errors, only when fallback is THROW_ERROR
        """
        start = self.clock.monotonic()

        cached = self.cache.get(prompt_type, variables)
        if cached is not None:
            self._update_metrics(prompt_type, True, self.clock.monotonic() - start, cache_hit=True)
            return replace(cached, cached=True)

        prompt = build_prompt(prompt_type, variables)
        context = PROMPT_CONTEXTS[prompt_type]
        try:
            raw = await self.call_raw(prompt, context, priority)
            data = parse_response(prompt_type, raw)
        except MODEL_CALL_ERRORS as e:
            self._update_metrics(prompt_type, False, self.clock.monotonic() - start)
            if fallback == FallbackStrategy.THROW_ERROR:
                raise
            return self.fallback_result(prompt_type, variables, e)

        response = PromptResponse(
            success=True,
            data=data,
            confidence=float(getattr(data, "confidence", 0.5)),
            tokens_used=count_tokens(prompt) + count_tokens(raw),
        )
        self.cache.set(prompt_type, variables, response)
        self._update_metrics(prompt_type, True, self.clock.monotonic() - start)
        return response

    def fallback_result(
        self, prompt_type: PromptType, variables: dict[str, Any], error: BaseException
    ) -> PromptResponse:
        """Documented default for advisory call sites; marked as a fallback."""
        self._metrics[prompt_type].fallbacks += 1
        logger.warning(
            f"[PROMPT] {prompt_type.value} degraded to default result: {type(error).__name__}: {error}"
        )
        data = fallback_response(prompt_type, variables)
        return PromptResponse(
            success=False,
            data=data,
            confidence=min(0.3, float(getattr(data, "confidence", 0.3))),
            fallback=True,
            error=f"{type(error).__name__}: {error}",
        )

    def _update_metrics(self, prompt_type: PromptType, success: bool, elapsed: float, cache_hit: bool = False) -> None:
        metrics = self._metrics[prompt_type]
        w = METRICS_WEIGHT
        metrics.calls += 1
        metrics.execution_time = metrics.execution_time * (1 - w) + elapsed * w
        metrics.success_rate = metrics.success_rate * (1 - w) + (1.0 if success else 0.0) * w
        metrics.cache_hit_rate = metrics.cache_hit_rate * (1 - w) + (1.0 if cache_hit else 0.0) * w

    def get_metrics(self) -> dict[str, dict[str, Any]]:
        return {
            prompt_type.value: {
                "execution_time": m.execution_time,
                "success_rate": m.success_rate,
                "cache_hit_rate": m.cache_hit_rate,
                "calls": m.calls,
                "fallbacks": m.fallbacks,
            }
            for prompt_type, m in self._metrics.items()
            if m.calls or m.fallbacks
        }
