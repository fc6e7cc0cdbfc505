"""
Run context: one set of shared services per analysis run.

ThemeRunContext builds exactly one request queue, response cache, semantic
cache, adaptive controller, batch processor and prompt service, and hands
them to the similarity, consolidation and expansion engines by
constructor. Nothing is global; two contexts never share state.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from .adaptive_batching import AdaptiveBatchingController
from .batch_processor import BatchProcessor
from .config import ThemesConfig
from .consolidation import ConsolidationEngine, ConsolidationReport
from .errors import HierarchyIntegrityError
from .expansion import ExpansionCircuitBreaker, ExpansionEngine
from .hierarchy import (
    CoverageReport,
    CrossLevelDeduplicator,
    HierarchyReport,
    count_themes,
    validate_hierarchy_integrity,
    verify_coverage,
)
from .llm_client import create_call_model
from .models import ConsolidatedTheme, ThemeCandidate
from .prompt_service import CallModel, PromptService
from .request_queue import RequestQueue
from .response_cache import ResponseCache
from .retry import RetryPolicy
from .semantic_cache import SemanticCache
from .similarity import SimilarityEngine
from .utils import Clock, SystemClock

logger = logging.getLogger(__name__)


@dataclass
class ThemeRunResult:
    """Final forest plus everything needed to judge how it was produced."""
    themes: list[ConsolidatedTheme]
    consolidation: ConsolidationReport
    integrity: HierarchyReport
    coverage: CoverageReport
    expansion: dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0

    @property
    def theme_count(self) -> int:
        return count_themes(self.themes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "themes": [theme.to_dict() for theme in self.themes],
            "themeCount": self.theme_count,
            "consolidation": self.consolidation.to_dict(),
            "integrity": self.integrity.to_dict(),
            "coverage": self.coverage.to_dict(),
            "expansion": self.expansion,
            "duration": round(self.duration, 3),
        }


class ThemeRunContext:
    """
    Owns the shared services for one run.

    Pass call_model to use any `async (prompt, context) -> str`; without it
    an OpenAI-compatible client is built from config.llm and closed by close().
    """

    def __init__(
        self,
        config: ThemesConfig | None = None,
        call_model: CallModel | None = None,
        clock: Clock | None = None,
    ):
        self.config = config or ThemesConfig()
        problems = self.config.validate()
        if problems:
            raise ValueError(f"Invalid configuration: {'; '.join(problems)}")
        self.clock = clock or SystemClock()

        self._llm_client = None
        if call_model is None:
            self._llm_client = create_call_model(self.config.llm)
            call_model = self._llm_client

        self.retry_policy = RetryPolicy(clock=self.clock)
        self.queue = RequestQueue(self.config.queue, self.clock, self.retry_policy)
        self.response_cache = ResponseCache(self.config.cache, self.clock)
        self.semantic_cache = SemanticCache(self.config.cache, self.clock)
        self.adaptive = AdaptiveBatchingController(self.config.batch, self.clock)
        self.prompt_service = PromptService(call_model, self.queue, self.response_cache, self.clock)
        self.batch_processor = BatchProcessor(self.prompt_service, self.adaptive, self.config.batch, self.clock)

        self.similarity = SimilarityEngine(self.batch_processor, self.config.similarity)
        self.consolidation = ConsolidationEngine(
            self.similarity,
            self.batch_processor,
            self.config.consolidation,
            self.config.similarity,
            self.semantic_cache,
        )
        self.deduplicator = CrossLevelDeduplicator(self.batch_processor, self.config.expansion)
        self.expansion = ExpansionEngine(
            self.batch_processor,
            self.config.expansion,
            self.deduplicator,
            ExpansionCircuitBreaker(self.config.expansion),
            self.clock,
        )
        self._closed = False

    async def __aenter__(self) -> "ThemeRunContext":
        self.response_cache.start_cleanup()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def analyze(self, candidates: list[ThemeCandidate], expand: bool = True) -> ThemeRunResult:
        """
        Consolidate candidates, expand the result, and check the final forest.

        Args:
            candidates: Upstream theme candidates (ids must be unique)
            expand: Skip the expansion pass when False

        Returns:
            ThemeRunResult with the forest, reports and stats

        Raises:
            HierarchyIntegrityError: the final forest is malformed, or coverage
                is incomplete while strict_coverage is set
        """
        if self._closed:
            raise RuntimeError("ThemeRunContext is closed")
        start = self.clock.monotonic()

        consolidated = await self.consolidation.consolidate(candidates)
        themes = consolidated.themes
        expansion_stats: dict[str, Any] = {}
        if expand and themes:
            themes = await self.expansion.expand_themes_hierarchically(themes)
            expansion_stats = self.expansion.get_metrics()

        integrity = validate_hierarchy_integrity(themes)
        if not integrity.is_valid:
            raise HierarchyIntegrityError("Final theme forest is malformed", integrity.problems)
        coverage = verify_coverage(
            [c.id for c in candidates], themes, strict=self.config.consolidation.strict_coverage
        )

        result = ThemeRunResult(
            themes=themes,
            consolidation=consolidated.report,
            integrity=integrity,
            coverage=coverage,
            expansion=expansion_stats,
            duration=self.clock.monotonic() - start,
        )
        logger.info(
            f"[PIPELINE] {len(candidates)} candidates -> {len(themes)} roots, "
            f"{result.theme_count} themes in {result.duration:.2f}s"
        )
        return result

    def invalidate_files(self, modified_files: list[str]) -> int:
        """Drop semantic-cache entries that mention any of the modified files."""
        return self.semantic_cache.invalidate_by_files(modified_files)

    def get_stats(self) -> dict[str, Any]:
        stats = {
            "queue": self.queue.get_queue_status(),
            "retry": self.retry_policy.get_stats(),
            "response_cache": self.response_cache.get_metrics(),
            "semantic_cache": self.semantic_cache.get_cache_stats(),
            "batching": self.batch_processor.get_queue_stats(),
            "adaptive": self.adaptive.get_performance_report(),
            "prompts": self.prompt_service.get_metrics(),
            "similarity": self.similarity.get_stats(),
        }
        if self._llm_client is not None:
            stats["llm"] = self._llm_client.get_stats()
        return stats

    async def close(self) -> None:
        """Reject pending work, stop background tasks and release the client."""
        if self._closed:
            return
        self._closed = True
        await self.batch_processor.close()
        await self.queue.close()
        await self.response_cache.stop()
        if self._llm_client is not None:
            await self._llm_client.close()
