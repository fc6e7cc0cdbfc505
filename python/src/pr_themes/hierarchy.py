"""
Theme forest utilities and cross-level deduplication.

Contains:
- Traversal helpers (walk, flatten, find) that never follow parent_id
- relink(): rewrite parent_id and level from the ownership structure
- validate_hierarchy_integrity(): orphans, cycles, level consistency,
  duplicate ids
- verify_coverage(): every input candidate id is accounted for
- CrossLevelDeduplicator: finds duplicate or overlapping themes across
  adjacent hierarchy levels and merges them in place
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator

from .batch_processor import BatchProcessor
from .config import ExpansionConfig
from .errors import HierarchyIntegrityError
from .models import ConsolidatedTheme, ConsolidationMethod, ExpansionState, PromptType
from .prompt_service import FallbackStrategy
from .similarity import file_overlap, name_similarity
from .utils import utc_now

logger = logging.getLogger(__name__)

PREFILTER_NAME_SIMILARITY = 0.3
MERGEABLE_RELATIONSHIPS = ("duplicate", "overlap")


def walk(forest: Iterable[ConsolidatedTheme]) -> Iterator[tuple[ConsolidatedTheme, ConsolidatedTheme | None]]:
    """Pre-order (node, owning parent) pairs, following child_themes only."""
    stack: list[tuple[ConsolidatedTheme, ConsolidatedTheme | None]] = [(t, None) for t in reversed(list(forest))]
    seen: set[int] = set()
    while stack:
        node, parent = stack.pop()
        if id(node) in seen:
            # Shared or cyclic ownership; report once, never loop
            raise HierarchyIntegrityError(f"Theme {node.id} is owned more than once", [node.id])
        seen.add(id(node))
        yield node, parent
        stack.extend((child, node) for child in reversed(node.child_themes))


def flatten(forest: Iterable[ConsolidatedTheme]) -> list[ConsolidatedTheme]:
    return [node for node, _ in walk(forest)]


def count_themes(forest: Iterable[ConsolidatedTheme]) -> int:
    return sum(1 for _ in walk(forest))


def find(forest: Iterable[ConsolidatedTheme], theme_id: str) -> ConsolidatedTheme | None:
    for node, _ in walk(forest):
        if node.id == theme_id:
            return node
    return None


def max_depth(forest: Iterable[ConsolidatedTheme]) -> int:
    return max((node.level for node in flatten(forest)), default=0)


def is_descendant(ancestor: ConsolidatedTheme, node: ConsolidatedTheme) -> bool:
    """True when `node` sits anywhere below `ancestor`."""
    return any(candidate is node for candidate in flatten(ancestor.child_themes))


def subtree_height(node: ConsolidatedTheme) -> int:
    """Levels below `node`; 0 for a leaf."""
    return max((subtree_height(child) + 1 for child in node.child_themes), default=0)


def relink(forest: list[ConsolidatedTheme]) -> None:
    """Recompute parent_id and level from ownership; roots become level 0."""
    for node, parent in walk(forest):
        node.parent_id = parent.id if parent is not None else None
        node.level = parent.level + 1 if parent is not None else 0


def _unique(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def propagate_sources(forest: list[ConsolidatedTheme]) -> None:
    """Make every node's source_themes include all of its descendants' sources."""

    def visit(node: ConsolidatedTheme) -> list[str]:
        collected = list(node.source_themes)
        for child in node.child_themes:
            collected.extend(visit(child))
        node.source_themes = _unique(collected)
        return node.source_themes

    for root in forest:
        visit(root)


@dataclass
class HierarchyReport:
    """Outcome of validate_hierarchy_integrity()."""
    theme_count: int = 0
    orphans: list[str] = field(default_factory=list)
    cycles: list[str] = field(default_factory=list)
    level_errors: list[str] = field(default_factory=list)
    duplicate_ids: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not (self.orphans or self.cycles or self.level_errors or self.duplicate_ids)

    @property
    def problems(self) -> list[str]:
        return (
            [f"orphan: {p}" for p in self.orphans]
            + [f"cycle: {p}" for p in self.cycles]
            + [f"level: {p}" for p in self.level_errors]
            + [f"duplicate id: {p}" for p in self.duplicate_ids]
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.is_valid,
            "theme_count": self.theme_count,
            "orphans": self.orphans,
            "cycles": self.cycles,
            "level_errors": self.level_errors,
            "duplicate_ids": self.duplicate_ids,
        }


def validate_hierarchy_integrity(forest: list[ConsolidatedTheme]) -> HierarchyReport:
    """
    Check the forest without trusting parent_id.

    Orphans are nodes whose parent_id does not name their owner, cycles are
    parent_id chains that revisit a node (or ownership that does), and level
    errors are children not exactly one level below their owner.
    """
    report = HierarchyReport()
    try:
        pairs = list(walk(forest))
    except HierarchyIntegrityError as e:
        report.cycles.extend(e.problems)
        return report

    report.theme_count = len(pairs)
    by_id: dict[str, ConsolidatedTheme] = {}
    for node, parent in pairs:
        if node.id in by_id:
            report.duplicate_ids.append(node.id)
        by_id[node.id] = node

        expected_parent = parent.id if parent is not None else None
        if node.parent_id != expected_parent:
            report.orphans.append(
                f"{node.name} ({node.id}) parent_id={node.parent_id}, owner={expected_parent}"
            )
        if parent is not None and node.level != parent.level + 1:
            report.level_errors.append(
                f"{node.name} level {node.level}, parent level {parent.level}"
            )

    for node, _ in pairs:
        visited = {node.id}
        current = node
        while current.parent_id is not None:
            parent = by_id.get(current.parent_id)
            if parent is None:
                break
            if parent.id in visited:
                report.cycles.append(node.id)
                break
            visited.add(parent.id)
            current = parent

    if not report.is_valid:
        logger.warning(f"[HIERARCHY] integrity problems: {report.problems}")
    return report


@dataclass
class CoverageReport:
    expected: int
    covered: int
    missing: list[str] = field(default_factory=list)
    unknown: list[str] = field(default_factory=list)
    shared: list[str] = field(default_factory=list)  # ids under more than one root

    @property
    def is_complete(self) -> bool:
        return not (self.missing or self.unknown)

    def to_dict(self) -> dict[str, Any]:
        return {
            "expected": self.expected,
            "covered": self.covered,
            "complete": self.is_complete,
            "missing": self.missing,
            "unknown": self.unknown,
            "shared": self.shared,
        }


def verify_coverage(
    candidate_ids: Iterable[str],
    forest: list[ConsolidatedTheme],
    strict: bool = False,
    exclusive_roots: bool = False,
) -> CoverageReport:
    """
    Compare the candidate ids traced by the forest against the input ids.

    Args:
        candidate_ids: Ids of every input candidate
        forest: Output roots
        strict: Raise instead of warning on a gap
        exclusive_roots: Also treat an id under two roots as a violation

    Raises:
        HierarchyIntegrityError: on a gap when strict is set
    """
    expected = _unique(candidate_ids)
    expected_set = set(expected)
    owners: dict[str, int] = {}
    traced: set[str] = set()
    for root in forest:
        root_ids = {source for node in flatten([root]) for source in node.source_themes}
        traced |= root_ids
        for source in root_ids:
            owners[source] = owners.get(source, 0) + 1

    report = CoverageReport(
        expected=len(expected),
        covered=len(expected_set & traced),
        missing=[i for i in expected if i not in traced],
        unknown=sorted(traced - expected_set),
        shared=sorted(i for i, n in owners.items() if n > 1),
    )
    problems = [f"missing: {i}" for i in report.missing] + [f"unknown: {i}" for i in report.unknown]
    if exclusive_roots:
        problems += [f"shared: {i}" for i in report.shared]
    if problems:
        message = f"Coverage {report.covered}/{report.expected}: {len(problems)} problem(s)"
        if strict:
            raise HierarchyIntegrityError(message, problems)
        logger.warning(f"[HIERARCHY] {message}: {problems[:10]}")
    return report


@dataclass
class CrossLevelMatch:
    """Model judgment for one cross-level pair."""
    theme1_id: str
    theme2_id: str
    level_difference: int
    similarity_score: float
    relationship_type: str
    action: str
    confidence: float
    reasoning: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "theme1Id": self.theme1_id,
            "theme2Id": self.theme2_id,
            "levelDifference": self.level_difference,
            "similarityScore": self.similarity_score,
            "relationshipType": self.relationship_type,
            "action": self.action,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }


@dataclass
class DeduplicationResult:
    forest: list[ConsolidatedTheme]
    original_count: int
    deduplicated_count: int
    merged: list[dict[str, Any]] = field(default_factory=list)
    duplicates_removed: int = 0
    overlaps_resolved: int = 0
    comparisons: int = 0


def choose_primary(
    theme1: ConsolidatedTheme, theme2: ConsolidatedTheme, action: str
) -> tuple[ConsolidatedTheme, ConsolidatedTheme]:
    """
    (kept, absorbed) for a cross-level merge.

    Higher confidence is kept; ties prefer the deeper node, then the
    model's merge direction, then the smaller id.
    """
    if theme1.confidence != theme2.confidence:
        return (theme1, theme2) if theme1.confidence > theme2.confidence else (theme2, theme1)
    if theme1.level != theme2.level:
        return (theme1, theme2) if theme1.level > theme2.level else (theme2, theme1)
    if action == "merge_up":
        return (theme1, theme2) if theme1.level <= theme2.level else (theme2, theme1)
    return (theme1, theme2) if theme1.id <= theme2.id else (theme2, theme1)


def absorb(primary: ConsolidatedTheme, secondary: ConsolidatedTheme) -> None:
    """Fold `secondary`'s content into `primary` (children are moved separately)."""
    if secondary.description and secondary.description not in primary.description:
        primary.description = f"{primary.description} {secondary.description}".strip()
    if secondary.business_impact and secondary.business_impact not in primary.business_impact:
        primary.business_impact = f"{primary.business_impact} {secondary.business_impact}".strip()
    primary.affected_files = _unique([*primary.affected_files, *secondary.affected_files])
    primary.code_snippets = _unique([*primary.code_snippets, *secondary.code_snippets])
    primary.confidence = max(primary.confidence, secondary.confidence)
    primary.source_themes = _unique([*primary.source_themes, *secondary.source_themes])
    primary.consolidation_method = ConsolidationMethod.PAIRWISE_MERGE
    primary.last_analysis = utc_now()


class CrossLevelDeduplicator:
    """Detects and merges duplicates that sit on adjacent hierarchy levels."""

    def __init__(self, batch_processor: BatchProcessor, config: ExpansionConfig | None = None):
        self.batch_processor = batch_processor
        self.config = config or ExpansionConfig()

    @staticmethod
    def should_compare(theme1: ConsolidatedTheme, theme2: ConsolidatedTheme) -> bool:
        if theme1.level == theme2.level and theme1.parent_id == theme2.parent_id:
            return False
        if theme1.parent_id == theme2.id or theme2.parent_id == theme1.id:
            return False
        return abs(theme1.level - theme2.level) <= 1

    @staticmethod
    def prefiltered(theme1: ConsolidatedTheme, theme2: ConsolidatedTheme) -> bool:
        """True when the pair is too unrelated to spend a model call on."""
        return (
            file_overlap(theme1.affected_files, theme2.affected_files) == 0
            and name_similarity(theme1.name, theme2.name) < PREFILTER_NAME_SIMILARITY
        )

    def candidate_pairs(
        self,
        forest: list[ConsolidatedTheme],
        pair_filter: Callable[[ConsolidatedTheme, ConsolidatedTheme], bool] | None = None,
    ) -> list[tuple[ConsolidatedTheme, ConsolidatedTheme]]:
        themes = flatten(forest)
        pairs = []
        for i, theme1 in enumerate(themes):
            for theme2 in themes[i + 1:]:
                if not self.should_compare(theme1, theme2) or self.prefiltered(theme1, theme2):
                    continue
                if pair_filter is not None and not pair_filter(theme1, theme2):
                    continue
                pairs.append((theme1, theme2))
        if len(pairs) > self.config.max_cross_level_pairs:
            logger.warning(
                f"[CROSS-LEVEL-DEDUP] {len(pairs)} candidate pairs; comparing the first "
                f"{self.config.max_cross_level_pairs}"
            )
            pairs = pairs[: self.config.max_cross_level_pairs]
        return pairs

    async def compare(self, theme1: ConsolidatedTheme, theme2: ConsolidatedTheme) -> CrossLevelMatch:
        """Advisory model judgment; failures degrade to 'distinct, keep separate'."""
        variables = {
            "theme1Level": theme1.level,
            "theme1Name": theme1.name,
            "theme1Description": theme1.description,
            "theme1Files": list(theme1.affected_files),
            "theme2Level": theme2.level,
            "theme2Name": theme2.name,
            "theme2Description": theme2.description,
            "theme2Files": list(theme2.affected_files),
        }
        response = await self.batch_processor.add(
            PromptType.CROSS_LEVEL_SIMILARITY, variables, fallback=FallbackStrategy.USE_DEFAULT
        )
        data = response.data
        return CrossLevelMatch(
            theme1_id=theme1.id,
            theme2_id=theme2.id,
            level_difference=abs(theme1.level - theme2.level),
            similarity_score=data.similarity_score,
            relationship_type=data.relationship_type,
            action=data.action,
            confidence=data.confidence,
            reasoning=data.reasoning,
        )

    def is_mergeable(self, match: CrossLevelMatch) -> bool:
        if match.similarity_score <= self.config.cross_level_threshold:
            return False
        if match.relationship_type == "duplicate":
            return True
        return match.relationship_type == "overlap" and self.config.allow_overlap_merging

    async def deduplicate(
        self,
        forest: list[ConsolidatedTheme],
        pair_filter: Callable[[ConsolidatedTheme, ConsolidatedTheme], bool] | None = None,
    ) -> DeduplicationResult:
        """
        Merge cross-level duplicates in place and return the resulting forest.

        Each node takes part in at most one merge per pass. The absorbed
        node's children move under the kept node, so nothing is dropped, and
        the kept node stops being a leaf. Merges that would push those
        children past max_depth are skipped.
        """
        original_count = count_themes(forest)
        relink(forest)
        pairs = self.candidate_pairs(forest, pair_filter)
        if not pairs:
            return DeduplicationResult(forest, original_count, original_count)

        matches = await asyncio.gather(*(self.compare(a, b) for a, b in pairs))
        by_id = {node.id: node for node in flatten(forest)}
        result = DeduplicationResult(forest, original_count, original_count, comparisons=len(pairs))
        processed: set[str] = set()

        for match in sorted(matches, key=lambda m: -m.similarity_score):
            if not self.is_mergeable(match):
                continue
            if match.theme1_id in processed or match.theme2_id in processed:
                continue
            theme1, theme2 = by_id[match.theme1_id], by_id[match.theme2_id]
            primary, secondary = choose_primary(theme1, theme2, match.action)
            if is_descendant(secondary, primary) or is_descendant(primary, secondary):
                continue
            if primary.level + subtree_height(secondary) > self.config.max_depth:
                logger.debug(
                    f"[CROSS-LEVEL-DEDUP] skipped merge of '{secondary.name}' into '{primary.name}': "
                    f"children would pass max depth {self.config.max_depth}"
                )
                continue

            forest = self._apply_merge(forest, primary, secondary)
            relink(forest)
            processed.update((theme1.id, theme2.id))
            result.merged.append({
                "source_ids": [theme1.id, theme2.id],
                "kept_id": primary.id,
                "relationship": match.relationship_type,
                "reason": match.reasoning,
            })
            if match.relationship_type == "duplicate":
                result.duplicates_removed += 1
            else:
                result.overlaps_resolved += 1
            logger.info(
                f"[CROSS-LEVEL-DEDUP] merged '{secondary.name}' into '{primary.name}' "
                f"({match.relationship_type}, {match.similarity_score:.2f})"
            )

        relink(forest)
        propagate_sources(forest)
        result.forest = forest
        result.deduplicated_count = count_themes(forest)
        return result

    @staticmethod
    def _apply_merge(
        forest: list[ConsolidatedTheme], primary: ConsolidatedTheme, secondary: ConsolidatedTheme
    ) -> list[ConsolidatedTheme]:
        absorb(primary, secondary)
        if secondary.child_themes:
            primary.child_themes.extend(secondary.child_themes)
            primary.is_atomic = False
            primary.expansion_state = ExpansionState.EXPANDED
            secondary.child_themes = []

        if any(root is secondary for root in forest):
            return [root for root in forest if root is not secondary]
        for node, _ in walk(forest):
            if any(child is secondary for child in node.child_themes):
                node.child_themes = [child for child in node.child_themes if child is not secondary]
                break
        return forest
