"""
Recursive theme expansion.

Every leaf of the consolidated forest walks a small state machine:

    candidate -> analyzed -> validated -> expanded | atomic
    (any step)                         -> error

- The circuit breaker stops a node before any model call when it is at
  the depth limit, was already expanded too often, or matches a cheap
  atomic rule
- Analysis is structural and local (function/class counts, separable
  concerns) and carries no depth bias
- The model proposes an expansion; validation scores it, biasing deep
  nodes toward staying whole
- Generated sub-themes re-enter as candidates one level deeper, so
  recursion is bounded by max_depth
- A model failure turns only that node into an error node, kept unexpanded

Afterwards cross-level deduplication runs per original batch of roots and
then once more across batches.
"""

import asyncio
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from .batch_processor import BatchProcessor
from .config import ExpansionConfig
from .errors import MODEL_CALL_ERRORS
from .hierarchy import CrossLevelDeduplicator, flatten, max_depth, propagate_sources, relink
from .models import (
    ConsolidatedTheme,
    ConsolidationMethod,
    ExpansionState,
    ExpansionStopReason,
    PromptType,
    new_theme_id,
)
from .schemas import ThemeExpansionResponse
from .utils import Clock, SystemClock, utc_now

logger = logging.getLogger(__name__)

ATOMIC_KEYWORDS = (
    "single line",
    "one line",
    "typo",
    "rename",
    "fix spelling",
    "update version",
    "change value",
    "modify constant",
)

ATOMIC_NAME_PATTERNS = (
    re.compile(r"^(add|remove|update|fix|change) \w+ (constant|variable|value|parameter)$"),
    re.compile(r"^(fix|correct) (typo|spelling)"),
    re.compile(r"^rename \w+$"),
    re.compile(r"^update \w+ to \w+$"),
)

FUNCTION_PATTERN = re.compile(
    r"^\s*[+-]?\s*(?:async\s+)?(?:def|function|func|fn)\s+\w+"
    r"|^\s*[+-]?\s*(?:public|private|protected|static|\s)*\w+\s*\([^)]*\)\s*\{",
    re.MULTILINE,
)
CLASS_PATTERN = re.compile(r"^\s*[+-]?\s*(?:export\s+)?(?:abstract\s+)?(?:class|interface|struct)\s+\w+", re.MULTILINE)
OPERATION_PATTERN = re.compile(r"\b(if|for|while|switch|match|return|await|try|catch|except|raise|throw)\b")
TEST_PATTERN = re.compile(r"\b(it|test|describe|def test_\w+)\s*\(", re.IGNORECASE)

DEPTH_PENALTY_START = 8
VALIDATION_THRESHOLD = 0.45
MAX_SUB_THEMES = 10
MAX_CODE_CONTEXT = 4000


@dataclass
class CodeMetrics:
    function_count: int = 0
    class_count: int = 0
    distinct_operations: int = 0
    has_multiple_algorithms: bool = False
    has_natural_boundaries: bool = False


@dataclass
class ThemeAnalysis:
    """Structural view of a theme, independent of its depth."""
    actual_purpose: str
    code_complexity: str  # low, medium, high
    separable_concerns: list[str]
    test_scenarios: int
    total_lines: int
    file_count: int
    code_metrics: CodeMetrics = field(default_factory=CodeMetrics)


@dataclass
class ValidationResult:
    should_expand: bool
    confidence: float
    reasoning: str
    corrected_from_initial: bool
    granularity_score: float
    depth_appropriateness_score: float
    business_value_score: float
    test_boundary_score: float

    @property
    def score(self) -> float:
        return (
            self.granularity_score
            + self.depth_appropriateness_score
            + self.business_value_score
            + self.test_boundary_score
        ) / 4


@dataclass
class ExpansionPermission:
    allowed: bool
    reason: str
    confidence: float
    stop_reason: ExpansionStopReason | None = None


def analyze_theme(theme: ConsolidatedTheme) -> ThemeAnalysis:
    """Local structural analysis of a theme's files and snippets."""
    code = "\n".join(theme.code_snippets)
    functions = len(FUNCTION_PATTERN.findall(code))
    classes = len(CLASS_PATTERN.findall(code))
    operations = set(OPERATION_PATTERN.findall(code))

    directories = {path.rsplit("/", 1)[0] if "/" in path else "." for path in theme.affected_files}
    if len(directories) > 1:
        concerns = sorted(directories)
    elif len(theme.affected_files) > 1:
        concerns = sorted(theme.affected_files)
    else:
        concerns = [f"function {i + 1}" for i in range(functions)] if functions > 1 else []

    total_lines = theme.total_lines
    if total_lines > 200 or functions > 8:
        complexity = "high"
    elif total_lines > 50 or functions > 2:
        complexity = "medium"
    else:
        complexity = "low"

    return ThemeAnalysis(
        actual_purpose=theme.description or theme.name,
        code_complexity=complexity,
        separable_concerns=concerns,
        test_scenarios=max(len(TEST_PATTERN.findall(code)), len(concerns)),
        total_lines=total_lines,
        file_count=len(theme.affected_files),
        code_metrics=CodeMetrics(
            function_count=functions,
            class_count=classes,
            distinct_operations=len(operations),
            has_multiple_algorithms=functions > 1 and len(operations) > 3,
            has_natural_boundaries=len(concerns) > 1,
        ),
    )


def validate_expansion(
    analysis: ThemeAnalysis,
    depth: int,
    proposal: ThemeExpansionResponse,
) -> ValidationResult:
    """
    Score the model's proposal; deep nodes need a stronger case to expand.

    The initial inclination comes from the structural analysis alone.
    """
    initial = len(analysis.separable_concerns) > 1
    granularity = 0.6 if analysis.code_metrics.distinct_operations > 1 else 0.3
    if len(proposal.sub_themes) > 1:
        granularity = min(1.0, granularity + 0.2)
    depth_score = max(0.1, 1.0 - depth * 0.08)
    business_value = 0.7 if len(analysis.separable_concerns) > 1 else 0.3
    test_boundary = 0.7 if analysis.test_scenarios > 1 else 0.4

    confidence = max(0.2, proposal.confidence - max(0, depth - DEPTH_PENALTY_START) * 0.1)
    result = ValidationResult(
        should_expand=proposal.should_expand,
        confidence=confidence,
        reasoning=proposal.reasoning,
        corrected_from_initial=False,
        granularity_score=granularity,
        depth_appropriateness_score=depth_score,
        business_value_score=business_value,
        test_boundary_score=test_boundary,
    )
    if result.should_expand and result.score < VALIDATION_THRESHOLD:
        result.should_expand = False
        result.reasoning = f"Validation score {result.score:.2f} too low at depth {depth}"
    result.corrected_from_initial = result.should_expand != initial
    return result


class ExpansionCircuitBreaker:
    """Per-theme expansion limits and deterministic atomic rules."""

    def __init__(self, config: ExpansionConfig | None = None):
        self.config = config or ExpansionConfig()
        self._expansions: dict[str, int] = {}
        self._atomic: set[str] = set()

    def should_allow_expansion(
        self, theme: ConsolidatedTheme, depth: int, analysis: ThemeAnalysis | None = None
    ) -> ExpansionPermission:
        """Check limits in order; records the attempt when allowed."""
        if depth >= self.config.max_depth:
            return ExpansionPermission(
                False, f"Maximum depth {self.config.max_depth} reached", 1.0, ExpansionStopReason.MAX_DEPTH
            )

        previous = self._expansions.get(theme.id, 0)
        if previous >= self.config.same_theme_expansion_limit:
            return ExpansionPermission(
                False, f"Theme already expanded {previous} times", 0.95, ExpansionStopReason.CIRCUIT_BREAKER
            )

        atomic_reason = self.check_atomic_thresholds(theme, analysis)
        if atomic_reason is not None:
            self._atomic.add(theme.id)
            reason, confidence = atomic_reason
            return ExpansionPermission(False, reason, confidence, ExpansionStopReason.ATOMIC)

        if theme.id in self._atomic:
            return ExpansionPermission(False, "Previously determined to be atomic", 0.9, ExpansionStopReason.ATOMIC)

        self._expansions[theme.id] = previous + 1
        return ExpansionPermission(True, "Expansion allowed", 0.7)

    def check_atomic_thresholds(
        self, theme: ConsolidatedTheme, analysis: ThemeAnalysis | None = None
    ) -> tuple[str, float] | None:
        """(reason, confidence) when a cheap rule says the theme is atomic."""
        if analysis is not None:
            if analysis.total_lines == 1:
                return "Single line change is atomic", 1.0
            if analysis.file_count == 1 and 0 < analysis.total_lines <= self.config.atomic_max_lines:
                if analysis.code_metrics.function_count == 1:
                    return f"Single method change ({analysis.total_lines} lines)", 0.95
                return f"Small single-file change ({analysis.total_lines} lines)", 0.9

        description = theme.description.lower()
        if any(keyword in description for keyword in ATOMIC_KEYWORDS):
            return "Description indicates atomic change", 0.85

        name = theme.name.lower()
        if any(pattern.search(name) for pattern in ATOMIC_NAME_PATTERNS):
            return "Theme name indicates atomic change", 0.8
        return None

    def mark_as_atomic(self, theme_id: str) -> None:
        self._atomic.add(theme_id)

    def is_marked_atomic(self, theme_id: str) -> bool:
        return theme_id in self._atomic

    def attempts(self, theme_id: str) -> int:
        return self._expansions.get(theme_id, 0)

    def reset(self) -> None:
        self._expansions.clear()
        self._atomic.clear()

    def get_stats(self) -> dict[str, Any]:
        counts = list(self._expansions.values())
        return {
            "total_themes": len(counts),
            "average_expansions": sum(counts) / len(counts) if counts else 0.0,
            "atomic_themes": len(self._atomic),
            "max_expansions": max(counts, default=0),
        }


@dataclass
class ExpansionMetrics:
    themes_processed: int = 0
    expanded: int = 0
    atomic: int = 0
    errors: int = 0
    llm_calls: int = 0
    max_depth_reached: int = 0
    duplicates_removed: int = 0
    overlaps_resolved: int = 0
    processing_time: float = 0.0
    stop_reasons: Counter = field(default_factory=Counter)

    def to_dict(self) -> dict[str, Any]:
        return {
            "themes_processed": self.themes_processed,
            "expanded": self.expanded,
            "atomic": self.atomic,
            "errors": self.errors,
            "llm_calls": self.llm_calls,
            "max_depth_reached": self.max_depth_reached,
            "duplicates_removed": self.duplicates_removed,
            "overlaps_resolved": self.overlaps_resolved,
            "processing_time": round(self.processing_time, 3),
            "stop_reasons": dict(self.stop_reasons),
        }


class ExpansionEngine:
    """Drives every node of the forest to a terminal expansion state."""

    def __init__(
        self,
        batch_processor: BatchProcessor,
        config: ExpansionConfig | None = None,
        deduplicator: CrossLevelDeduplicator | None = None,
        circuit_breaker: ExpansionCircuitBreaker | None = None,
        clock: Clock | None = None,
    ):
        self.batch_processor = batch_processor
        self.config = config or ExpansionConfig()
        self.deduplicator = deduplicator
        self.circuit_breaker = circuit_breaker or ExpansionCircuitBreaker(self.config)
        self.clock = clock or SystemClock()
        self.metrics = ExpansionMetrics()
        self._semaphore: asyncio.Semaphore | None = None

    async def expand_themes_hierarchically(self, themes: list[ConsolidatedTheme]) -> list[ConsolidatedTheme]:
        """
        Expand every node in place, then deduplicate across levels.

        Returns:
            The (possibly restructured) forest
        """
        start = self.clock.monotonic()
        self.metrics = ExpansionMetrics()
        self._semaphore = asyncio.Semaphore(self.config.concurrency)
        relink(themes)
        logger.info(f"[EXPANSION] Expanding {len(themes)} root themes (max depth {self.config.max_depth})")

        size = self.config.concurrency
        chunks = [themes[i:i + size] for i in range(0, len(themes), size)]
        forest: list[ConsolidatedTheme] = []
        for chunk in chunks:
            await asyncio.gather(*(self._process(theme) for theme in chunk))
            if self.deduplicator is not None:
                chunk = await self._deduplicate(chunk)
            forest.extend(chunk)

        if self.deduplicator is not None and len(chunks) > 1:
            forest = await self._deduplicate(forest, self._cross_batch_filter(forest, chunks))

        relink(forest)
        propagate_sources(forest)
        self.metrics.max_depth_reached = max_depth(forest)
        self.metrics.processing_time = self.clock.monotonic() - start
        logger.info(
            f"[EXPANSION] Done: {self.metrics.themes_processed} processed, {self.metrics.expanded} expanded, "
            f"{self.metrics.atomic} atomic, {self.metrics.errors} errors, "
            f"max depth {self.metrics.max_depth_reached}"
        )
        return forest

    def _cross_batch_filter(self, forest: list[ConsolidatedTheme], chunks: list[list[ConsolidatedTheme]]):
        batch_of: dict[str, int] = {}
        for root in forest:
            index = next((i for i, chunk in enumerate(chunks) if any(r is root for r in chunk)), -1)
            for node in flatten([root]):
                batch_of[node.id] = index
        return lambda a, b: batch_of.get(a.id) != batch_of.get(b.id)

    async def _deduplicate(self, forest: list[ConsolidatedTheme], pair_filter=None) -> list[ConsolidatedTheme]:
        result = await self.deduplicator.deduplicate(forest, pair_filter)
        self.metrics.duplicates_removed += result.duplicates_removed
        self.metrics.overlaps_resolved += result.overlaps_resolved
        return result.forest

    async def _process(self, theme: ConsolidatedTheme) -> None:
        depth = theme.level
        self.metrics.themes_processed += 1

        if theme.child_themes:
            # Already grouped by consolidation; only the children need work
            theme.expansion_state = ExpansionState.EXPANDED
            theme.expansion_reason = theme.expansion_reason or "Grouped during consolidation"
            self.metrics.expanded += 1
            await asyncio.gather(*(self._process(child) for child in theme.child_themes))
            return

        analysis = analyze_theme(theme)
        theme.expansion_state = ExpansionState.ANALYZED

        permission = self.circuit_breaker.should_allow_expansion(theme, depth, analysis)
        if not permission.allowed:
            self._finish_atomic(theme, permission.stop_reason or ExpansionStopReason.ATOMIC, permission.reason)
            return

        try:
            async with self._semaphore:
                proposal = await self._propose(theme, depth)
        except MODEL_CALL_ERRORS as e:
            theme.expansion_state = ExpansionState.ERROR
            theme.expansion_reason = f"{ExpansionStopReason.ERROR.value}: {type(e).__name__}: {e}"
            theme.last_analysis = utc_now()
            self.metrics.errors += 1
            self.metrics.stop_reasons[ExpansionStopReason.ERROR.value] += 1
            logger.warning(f"[EXPANSION] '{theme.name}' kept unexpanded after model failure: {e}")
            return

        validation = validate_expansion(analysis, depth, proposal)
        theme.expansion_state = ExpansionState.VALIDATED
        if not validation.should_expand or self.circuit_breaker.is_marked_atomic(theme.id):
            self._finish_atomic(theme, ExpansionStopReason.AI_DECISION, validation.reasoning or "Model chose not to expand")
            return

        children = self._build_children(theme, proposal)
        if not children:
            self._finish_atomic(theme, ExpansionStopReason.AI_DECISION, "No distinct sub-themes proposed")
            return

        theme.child_themes = children
        theme.is_atomic = False
        theme.expansion_state = ExpansionState.EXPANDED
        theme.expansion_reason = validation.reasoning or f"Expanded into {len(children)} sub-themes"
        theme.last_analysis = utc_now()
        self.metrics.expanded += 1
        logger.debug(f"[EXPANSION] '{theme.name}' at depth {depth} -> {len(children)} sub-themes")

        await asyncio.gather(*(self._process(child) for child in children))

    async def _propose(self, theme: ConsolidatedTheme, depth: int) -> ThemeExpansionResponse:
        self.metrics.llm_calls += 1
        code_context = "\n\n".join(theme.code_snippets)[:MAX_CODE_CONTEXT]
        response = await self.batch_processor.add(
            PromptType.THEME_EXPANSION,
            {
                "themeName": theme.name,
                "themeDescription": theme.description,
                "depth": depth,
                "affectedFiles": list(theme.affected_files),
                "codeContext": code_context,
            },
        )
        return response.data

    def _build_children(self, parent: ConsolidatedTheme, proposal: ThemeExpansionResponse) -> list[ConsolidatedTheme]:
        children = []
        seen = {parent.name.strip().lower()}
        for sub in proposal.sub_themes[:MAX_SUB_THEMES]:
            key = sub.name.strip().lower()
            if key in seen:
                continue
            seen.add(key)
            files = [f for f in sub.related_files if f in parent.affected_files] or list(parent.affected_files)
            snippets = [s for s in parent.code_snippets if any(f in s for f in files)] if sub.related_files else []
            children.append(ConsolidatedTheme(
                id=new_theme_id("sub"),
                name=sub.name,
                description=sub.description,
                level=parent.level + 1,
                parent_id=parent.id,
                affected_files=files,
                code_snippets=snippets,
                confidence=min(parent.confidence, proposal.confidence),
                business_impact=sub.business_value,
                source_themes=list(parent.source_themes),
                consolidation_method=ConsolidationMethod.AI_EXPANSION,
            ))
        return children

    def _finish_atomic(self, theme: ConsolidatedTheme, stop_reason: ExpansionStopReason, reason: str) -> None:
        theme.is_atomic = True
        theme.expansion_state = ExpansionState.ATOMIC
        theme.expansion_reason = f"{stop_reason.value}: {reason}"
        theme.last_analysis = utc_now()
        self.metrics.atomic += 1
        self.metrics.stop_reasons[stop_reason.value] += 1

    def get_metrics(self) -> dict[str, Any]:
        return {**self.metrics.to_dict(), "circuit_breaker": self.circuit_breaker.get_stats()}
