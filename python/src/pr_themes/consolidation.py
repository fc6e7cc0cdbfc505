"""
Theme consolidation.

Turns a flat list of ThemeCandidates into a forest of ConsolidatedThemes:

1. Score candidate pairs (quick checks locally, the rest through the
   BatchProcessor), capped at max_pairs
2. Form merge groups by union-find: merges are transitive, so A~B and
   B~C put A, B and C in one group even when A-C was judged "do not
   merge". Such contradictions are reported, never used to split a group
3. One node per group: passthrough for singletons, a merged node for
   small groups, a synthetic parent with the members as children for
   groups larger than max_themes_per_parent
4. Optionally a business-domain layer above the groups
5. Integrity and coverage checks: every candidate id must be traced by
   exactly one root
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from .batch_processor import BatchProcessor
from .config import ConsolidationConfig, SimilarityConfig
from .errors import HierarchyIntegrityError
from .hierarchy import (
    CoverageReport,
    HierarchyReport,
    propagate_sources,
    relink,
    validate_hierarchy_integrity,
    verify_coverage,
)
from .models import ConsolidatedTheme, ConsolidationMethod, PromptType, SimilarityResult, ThemeCandidate
from .prompt_service import FallbackStrategy
from .semantic_cache import SemanticCache
from .similarity import DOMAIN_KEYWORDS, SimilarityEngine, file_overlap, infer_domain, name_similarity
from .utils import sha256_hex

logger = logging.getLogger(__name__)

DOMAIN_CONTEXT = "domain-classification"
DOMAIN_REQUEST_SIZE = 20
AVAILABLE_DOMAINS = [domain for domain, _ in DOMAIN_KEYWORDS]


class UnionFind:
    """Disjoint sets over string ids with path compression and union by size."""

    def __init__(self, ids: list[str]):
        self.parent = {i: i for i in ids}
        self.size = {i: 1 for i in ids}

    def find(self, item: str) -> str:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: str, b: str) -> bool:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return False
        if self.size[root_a] < self.size[root_b]:
            root_a, root_b = root_b, root_a
        self.parent[root_b] = root_a
        self.size[root_a] += self.size[root_b]
        return True

    def groups(self, order: list[str]) -> list[list[str]]:
        """Groups in order of their first member; members keep input order."""
        grouped: dict[str, list[str]] = {}
        for item in order:
            grouped.setdefault(self.find(item), []).append(item)
        return list(grouped.values())


def is_valid_domain_name(domain: str) -> bool:
    lowered = domain.lower()
    return (
        3 <= len(domain) <= 30
        and "error" not in lowered
        and "failed" not in lowered
        and domain.strip() == domain
    )


def is_valid_theme_name(name: str) -> bool:
    lowered = name.lower()
    return 3 <= len(name) <= 50 and "error" not in lowered and "failed" not in lowered and name.strip() == name


@dataclass
class Contradiction:
    """A pair judged "do not merge" that transitive grouping put together."""
    theme1_id: str
    theme2_id: str
    confidence: float
    reasoning: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "theme1Id": self.theme1_id,
            "theme2Id": self.theme2_id,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }


@dataclass
class ConsolidationReport:
    candidate_count: int = 0
    pair_count: int = 0
    pairs_skipped: int = 0
    merges: int = 0
    group_count: int = 0
    output_count: int = 0
    domains: dict[str, int] = field(default_factory=dict)
    contradictions: list[Contradiction] = field(default_factory=list)
    integrity: HierarchyReport | None = None
    coverage: CoverageReport | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidateCount": self.candidate_count,
            "pairCount": self.pair_count,
            "pairsSkipped": self.pairs_skipped,
            "merges": self.merges,
            "groupCount": self.group_count,
            "outputCount": self.output_count,
            "domains": dict(self.domains),
            "contradictions": [c.to_dict() for c in self.contradictions],
            "integrity": self.integrity.to_dict() if self.integrity else None,
            "coverage": self.coverage.to_dict() if self.coverage else None,
        }


@dataclass
class ConsolidationResult:
    themes: list[ConsolidatedTheme]
    report: ConsolidationReport


class ConsolidationEngine:
    """Merges candidates into groups and builds the initial theme forest."""

    def __init__(
        self,
        similarity: SimilarityEngine,
        batch_processor: BatchProcessor,
        config: ConsolidationConfig | None = None,
        similarity_config: SimilarityConfig | None = None,
        semantic_cache: SemanticCache | None = None,
    ):
        self.similarity = similarity
        self.batch_processor = batch_processor
        self.config = config or ConsolidationConfig()
        self.similarity_config = similarity_config or similarity.config
        self.semantic_cache = semantic_cache

    async def consolidate_themes(self, candidates: list[ThemeCandidate]) -> list[ConsolidatedTheme]:
        return (await self.consolidate(candidates)).themes

    async def consolidate(self, candidates: list[ThemeCandidate]) -> ConsolidationResult:
        """
        Run the full consolidation pass.

        Raises:
            ValueError: duplicate candidate ids
            HierarchyIntegrityError: the built forest is malformed, or coverage
                is incomplete while strict_coverage is set
        """
        report = ConsolidationReport(candidate_count=len(candidates))
        if not candidates:
            return ConsolidationResult([], report)

        ids = [c.id for c in candidates]
        if len(set(ids)) != len(ids):
            raise ValueError("ThemeCandidate ids must be unique")
        logger.info(f"[CONSOLIDATION] Starting with {len(candidates)} themes")

        pairs = self._select_pairs(candidates, report)
        results = await self.similarity.calculate_batch_similarity(pairs)

        union_find = UnionFind(ids)
        for result in results:
            if result.should_merge and union_find.union(result.theme1_id, result.theme2_id):
                report.merges += 1

        groups = union_find.groups(ids)
        report.group_count = len(groups)
        report.contradictions = self._find_contradictions(results, union_find)

        by_id = {c.id: c for c in candidates}
        nodes: list[ConsolidatedTheme] = []
        for group in groups:
            nodes.extend(await self._build_group([by_id[i] for i in group]))

        if self.config.enable_domain_grouping and len(nodes) > 1:
            nodes = await self._group_by_domain(nodes, report)

        relink(nodes)
        propagate_sources(nodes)

        report.integrity = validate_hierarchy_integrity(nodes)
        if not report.integrity.is_valid:
            raise HierarchyIntegrityError("Consolidated forest is malformed", report.integrity.problems)
        report.coverage = verify_coverage(
            ids, nodes, strict=self.config.strict_coverage, exclusive_roots=True
        )
        report.output_count = len(nodes)

        logger.info(
            f"[CONSOLIDATION] Final result: {len(nodes)} root themes from {len(candidates)} "
            f"({(len(candidates) - len(nodes)) / len(candidates):.1%} reduction)"
        )
        return ConsolidationResult(nodes, report)

    def _select_pairs(
        self, candidates: list[ThemeCandidate], report: ConsolidationReport
    ) -> list[tuple[ThemeCandidate, ThemeCandidate]]:
        pairs = [
            (candidates[i], candidates[j])
            for i in range(len(candidates))
            for j in range(i + 1, len(candidates))
        ]
        limit = self.similarity_config.max_pairs
        if len(pairs) > limit:
            # Most promising pairs first
            pairs.sort(
                key=lambda p: file_overlap(p[0].affected_files, p[1].affected_files)
                + name_similarity(p[0].name, p[1].name),
                reverse=True,
            )
            report.pairs_skipped = len(pairs) - limit
            logger.warning(
                f"[CONSOLIDATION] {len(pairs)} pairs exceed the cap of {limit}; "
                f"{report.pairs_skipped} least similar pairs not compared"
            )
            pairs = pairs[:limit]
        report.pair_count = len(pairs)
        return pairs

    def _find_contradictions(
        self, results: list[SimilarityResult], union_find: UnionFind
    ) -> list[Contradiction]:
        contradictions = [
            Contradiction(r.theme1_id, r.theme2_id, r.confidence, r.reasoning)
            for r in results
            if not r.should_merge and union_find.find(r.theme1_id) == union_find.find(r.theme2_id)
        ]
        if contradictions and self.config.flag_contradictions:
            logger.warning(
                f"[CONSOLIDATION] {len(contradictions)} pair(s) judged 'do not merge' were grouped "
                f"transitively: {[(c.theme1_id, c.theme2_id) for c in contradictions[:5]]}"
            )
        return contradictions

    async def _build_group(self, members: list[ThemeCandidate]) -> list[ConsolidatedTheme]:
        if len(members) < self.config.min_themes_for_parent:
            return [ConsolidatedTheme.from_candidate(m) for m in members]

        if len(members) > self.config.max_themes_per_parent:
            children = [ConsolidatedTheme.from_candidate(m) for m in members]
            lead = max(members, key=lambda m: m.confidence)
            parent = ConsolidatedTheme(
                id=f"parent-{uuid.uuid4().hex[:12]}",
                name=lead.name,
                description=f"Consolidated: {', '.join(m.name for m in members)}",
                affected_files=sorted({f for m in members for f in m.affected_files}),
                confidence=sum(m.confidence for m in members) / len(members),
                business_impact=lead.business_impact,
                source_themes=[m.id for m in members],
                consolidation_method=ConsolidationMethod.HIERARCHY_GROUP,
                child_themes=children,
            )
            return [parent]

        return [await self._merge_members(members)]

    async def _merge_members(self, members: list[ThemeCandidate]) -> ConsolidatedTheme:
        lead = max(members, key=lambda m: m.confidence)
        name = lead.name
        description = f"Consolidated: {', '.join(m.name for m in members)}"
        if self.config.refine_merged_names:
            name = await self._refine_name(lead.name, description, members)

        files: list[str] = []
        snippets: list[str] = []
        for member in members:
            files.extend(f for f in sorted(member.affected_files) if f not in files)
            snippets.extend(member.code_snippets)

        return ConsolidatedTheme(
            id=f"merged-{uuid.uuid4().hex[:12]}",
            name=name,
            description=description,
            affected_files=files,
            code_snippets=snippets,
            confidence=sum(m.confidence for m in members) / len(members),
            business_impact=lead.business_impact,
            source_themes=[m.id for m in members],
            consolidation_method=ConsolidationMethod.PAIRWISE_MERGE,
        )

    async def _refine_name(self, current: str, description: str, members: list[ThemeCandidate]) -> str:
        response = await self.batch_processor.add(
            PromptType.THEME_NAMING,
            {
                "currentName": current,
                "description": description,
                "affectedFiles": sorted({f for m in members for f in m.affected_files}),
            },
            fallback=FallbackStrategy.USE_DEFAULT,
        )
        name = response.data.theme_name
        if not is_valid_theme_name(name):
            logger.warning(f"[CONSOLIDATION] generated name invalid, keeping '{current}': '{name}'")
            return current
        return name

    async def classify_domains(self, themes: list[ConsolidatedTheme]) -> dict[str, str]:
        """Theme id -> business domain, from cache, the model, then keywords."""
        domains: dict[str, str] = {}
        pending: list[ConsolidatedTheme] = []
        for theme in themes:
            cached = self._cached_domain(theme)
            if cached is not None:
                domains[theme.id] = cached
            else:
                pending.append(theme)

        chunks = [pending[i:i + DOMAIN_REQUEST_SIZE] for i in range(0, len(pending), DOMAIN_REQUEST_SIZE)]
        for chunk in chunks:
            response = await self.batch_processor.add(
                PromptType.DOMAIN_EXTRACTION,
                {
                    "themes": "\n".join(f"- {t.name}: {t.description}" for t in chunk),
                    "availableDomains": AVAILABLE_DOMAINS,
                },
                fallback=FallbackStrategy.USE_DEFAULT,
            )
            # The model answers by name; themes sharing a name share its answer
            by_name: dict[str, list[ConsolidatedTheme]] = {}
            for t in chunk:
                by_name.setdefault(t.name, []).append(t)
            for group in response.data.domains:
                if not is_valid_domain_name(group.domain):
                    logger.debug(f"[DOMAIN] invalid domain name '{group.domain}' ignored")
                    continue
                for theme_name in group.themes:
                    for theme in by_name.get(theme_name, []):
                        if theme.id not in domains:
                            domains[theme.id] = group.domain
                            self._cache_domain(theme, group.domain)

        for theme in themes:
            if theme.id not in domains:
                domains[theme.id] = infer_domain(theme.name, theme.description)
        return domains

    def _domain_key(self, theme: ConsolidatedTheme) -> str:
        return sha256_hex(f"{theme.name}\n{theme.description}", 16)

    def _cached_domain(self, theme: ConsolidatedTheme) -> str | None:
        if self.semantic_cache is None:
            return None
        value = {"name": theme.name, "description": theme.description}
        return self.semantic_cache.get_cached_result(value, self._domain_key(theme), DOMAIN_CONTEXT)

    def _cache_domain(self, theme: ConsolidatedTheme, domain: str) -> None:
        if self.semantic_cache is None:
            return
        value = {"name": theme.name, "description": theme.description, "affectedFiles": theme.affected_files}
        self.semantic_cache.set_cached_result(value, self._domain_key(theme), domain, DOMAIN_CONTEXT)

    async def _group_by_domain(
        self, nodes: list[ConsolidatedTheme], report: ConsolidationReport
    ) -> list[ConsolidatedTheme]:
        domains = await self.classify_domains(nodes)
        by_domain: dict[str, list[ConsolidatedTheme]] = {}
        for node in nodes:
            by_domain.setdefault(domains[node.id], []).append(node)

        result: list[ConsolidatedTheme] = []
        for domain, members in by_domain.items():
            report.domains[domain] = len(members)
            if len(members) < self.config.min_themes_for_parent:
                result.extend(members)
                continue
            logger.debug(f"[HIERARCHY] creating parent theme for '{domain}' ({len(members)} themes)")
            result.append(ConsolidatedTheme(
                id=f"parent-{uuid.uuid4().hex[:12]}",
                name=domain,
                description=f"{domain}: {len(members)} related changes",
                affected_files=sorted({f for m in members for f in m.affected_files}),
                confidence=sum(m.confidence for m in members) / len(members),
                business_impact=", ".join(m.name for m in members[:5]),
                source_themes=[s for m in members for s in m.source_themes],
                consolidation_method=ConsolidationMethod.HIERARCHY_GROUP,
                child_themes=members,
            ))
        return result
