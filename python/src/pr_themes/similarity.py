"""
Pairwise theme similarity.

A cheap local quick check settles obvious pairs (near-identical names,
unrelated files) without a model call. Every other pair is judged by the
model through the BatchProcessor; local heuristic scores are kept for
reference and for the combination rules, but when the model explicitly
and confidently says "do not merge" that wins.

Pairs are canonicalised (sorted by name, then id) before anything is
computed, so similarity(A, B) and similarity(B, A) always agree.
"""

import asyncio
import logging
import re
from typing import Any, Iterable, Protocol

from .batch_processor import BatchProcessor
from .config import SimilarityConfig
from .errors import MODEL_CALL_ERRORS
from .models import PromptType, SimilarityResult

logger = logging.getLogger(__name__)

# Quick-check results
QUICK_MERGE_SCORE = 0.92
DIFFERENT_TYPES_SCORE = 0.15
DIFFERENT_NAMES_SCORE = 0.18
DIFFERENT_NAMES_MAX = 0.1

# Combination weights and rules
SEMANTIC_WEIGHT = 0.8
FILE_WEIGHT = 0.2
NAME_MERGE = 0.9
STRONG_BUSINESS = (0.7, 0.4)  # (business >=, name >=)
RELATED_NAMES = (0.6, 0.5)  # (name >=, business >=)
LLM_VETO_CONFIDENCE = 0.8

# Fallback when the model is unavailable; never merges
FALLBACK_CONFIDENCE = 0.3

PATTERN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "addition": ("add", "implement"),
    "removal": ("remove", "delete"),
    "modification": ("update", "modify"),
    "refactoring": ("refactor",),
    "type_definition": ("interface", "type"),
    "service_implementation": ("service", "class"),
    "testing": ("test",),
    "configuration": ("configuration", "config"),
}

BUSINESS_KEYWORDS: dict[str, tuple[str, ...]] = {
    "greeting": ("greeting",),
    "authentication": ("authentication", "auth"),
    "user_experience": ("user", "customer"),
    "api_service": ("api", "service"),
    "data_management": ("data", "storage"),
    "security": ("security",),
    "performance": ("performance",),
    "integration": ("integration",),
    "workflow": ("workflow", "process"),
}

# Ordered: first matching domain wins
DOMAIN_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Remove Demo/Scaffolding Content", ("greeting", "demo", "scaffolding", "example")),
    ("Improve Code Review Experience", ("review", "analysis", "feedback")),
    ("Streamline Development Workflow", ("workflow", "action", "automation")),
    ("Simplify Configuration & Setup", ("config", "setup", "install")),
    ("Add User Feedback Features", ("comment", "pr", "pull request")),
    ("Enhance Automation Capabilities", ("test", "validation", "quality")),
    ("Improve Documentation & Onboarding", ("documentation", "readme", "guide")),
    ("Optimize Performance for Users", ("performance", "speed", "optimization")),
    ("Enable New Integrations", ("integration", "api", "service")),
    ("Modernize User Interface", ("interface", "ui", "user")),
    ("Clean Up Legacy Code", ("remove", "delete", "cleanup")),
    ("Fix User-Facing Issues", ("fix", "bug", "error")),
)
DEFAULT_DOMAIN = "General Improvements"

_WORD = re.compile(r"[a-z0-9]+")


class ThemeLike(Protocol):
    id: str
    name: str
    description: str
    affected_files: Any
    code_snippets: Any
    business_impact: str


def words(text: str) -> set[str]:
    return set(_WORD.findall((text or "").lower()))


def _jaccard(a: set[str], b: set[str]) -> float:
    union = a | b
    return len(a & b) / len(union) if union else 0.0


def name_similarity(name1: str, name2: str) -> float:
    return _jaccard(words(name1), words(name2))


def description_similarity(desc1: str, desc2: str) -> float:
    return _jaccard(words(desc1), words(desc2))


def file_overlap(files1: Iterable[str], files2: Iterable[str]) -> float:
    return _jaccard(set(files1), set(files2))


def file_types(files: Iterable[str]) -> set[str]:
    return {f.rsplit(".", 1)[-1].lower() if "." in f.rsplit("/", 1)[-1] else "unknown" for f in files}


def has_different_file_types(files1: Iterable[str], files2: Iterable[str]) -> bool:
    types1, types2 = file_types(files1), file_types(files2)
    return bool(types1 and types2) and not (types1 & types2)


def _matches(text: str, tokens: set[str], keyword: str) -> bool:
    # Multi-word keywords match as phrases, single words as whole tokens
    return keyword in text if " " in keyword else keyword in tokens


def _keyword_labels(text: str, table: dict[str, tuple[str, ...]]) -> set[str]:
    lowered = (text or "").lower()
    tokens = words(lowered)
    return {label for label, keywords in table.items() if any(_matches(lowered, tokens, k) for k in keywords)}


def extract_patterns(text: str) -> set[str]:
    return _keyword_labels(text, PATTERN_KEYWORDS)


def extract_business_keywords(text: str) -> set[str]:
    return _keyword_labels(text, BUSINESS_KEYWORDS)


def infer_domain(name: str, description: str = "") -> str:
    """Keyword fallback for business-domain classification."""
    text = f"{name} {description}".lower()
    tokens = words(text)
    for domain, keywords in DOMAIN_KEYWORDS:
        if any(_matches(text, tokens, k) for k in keywords):
            return domain
    return DEFAULT_DOMAIN


def _context_text(theme: ThemeLike) -> str:
    return " ".join([theme.name, theme.description, *list(theme.code_snippets)[:3]])


class SimilarityEngine:
    """Decides whether two themes describe the same change."""

    def __init__(self, batch_processor: BatchProcessor, config: SimilarityConfig | None = None):
        self.batch_processor = batch_processor
        self.config = config or SimilarityConfig()
        self._results: dict[tuple[str, str], SimilarityResult] = {}

        # Stats
        self._comparisons = 0
        self._quick_filtered = 0
        self._memo_hits = 0
        self._cache_hits = 0
        self._llm_calls = 0
        self._fallbacks = 0

    @staticmethod
    def _ordered(a: ThemeLike, b: ThemeLike) -> tuple[ThemeLike, ThemeLike]:
        return (a, b) if (a.name, a.id) <= (b.name, b.id) else (b, a)

    def local_scores(self, a: ThemeLike, b: ThemeLike) -> dict[str, float]:
        """Heuristic sub-scores; all symmetric in (a, b)."""
        return {
            "name": name_similarity(a.name, b.name),
            "description": description_similarity(a.description, b.description),
            "file_overlap": file_overlap(a.affected_files, b.affected_files),
            "pattern": _jaccard(extract_patterns(_context_text(a)), extract_patterns(_context_text(b))),
            "business": _jaccard(
                extract_business_keywords(f"{a.description} {a.business_impact}"),
                extract_business_keywords(f"{b.description} {b.business_impact}"),
            ),
        }

    def quick_check(self, a: ThemeLike, b: ThemeLike) -> SimilarityResult | None:
        """Settle obvious pairs locally; None means the model must decide."""
        a, b = self._ordered(a, b)
        name = name_similarity(a.name, b.name)
        files = file_overlap(a.affected_files, b.affected_files)

        if name >= self.config.quick_name_match:
            return SimilarityResult(
                theme1_id=a.id, theme2_id=b.id,
                name_score=name, description_score=0.9, file_overlap=files,
                pattern_score=0.8, business_score=0.9, semantic_score=QUICK_MERGE_SCORE,
                combined_score=QUICK_MERGE_SCORE, should_merge=True, confidence=name,
                reasoning="Near-identical names", source="quick-check",
            )
        if files == 0 and has_different_file_types(a.affected_files, b.affected_files):
            return SimilarityResult(
                theme1_id=a.id, theme2_id=b.id,
                name_score=name, description_score=0.2, pattern_score=0.1, business_score=0.2,
                semantic_score=DIFFERENT_TYPES_SCORE, combined_score=DIFFERENT_TYPES_SCORE,
                should_merge=False, confidence=0.8,
                reasoning="No file overlap and different file types", source="quick-check",
            )
        if name < DIFFERENT_NAMES_MAX and files == 0:
            return SimilarityResult(
                theme1_id=a.id, theme2_id=b.id,
                name_score=name, description_score=0.2, pattern_score=0.2, business_score=0.2,
                semantic_score=DIFFERENT_NAMES_SCORE, combined_score=DIFFERENT_NAMES_SCORE,
                should_merge=False, confidence=0.8,
                reasoning="Very different names and no file overlap", source="quick-check",
            )
        return None

    def _variables(self, a: ThemeLike, b: ThemeLike) -> dict[str, Any]:
        return {
            "theme1Name": a.name,
            "theme1Description": a.description,
            "theme1Files": sorted(a.affected_files),
            "theme1Domain": infer_domain(a.name, a.description),
            "theme2Name": b.name,
            "theme2Description": b.description,
            "theme2Files": sorted(b.affected_files),
            "theme2Domain": infer_domain(b.name, b.description),
        }

    def decide(self, scores: dict[str, float], llm: Any) -> tuple[bool, float, str]:
        """
        Combine the model's judgment with the merge rules.

        Returns:
            (should_merge, confidence, reason)
        """
        combined = scores["combined"]
        if not llm.should_merge and llm.confidence >= LLM_VETO_CONFIDENCE:
            return False, llm.confidence, f"Model says keep separate: {llm.reasoning}"
        if llm.should_merge:
            return True, llm.confidence, f"Model says merge: {llm.reasoning}"
        if scores["name"] >= NAME_MERGE:
            return True, scores["name"], f"Near-identical names: {scores['name']:.2f}"
        if combined >= self.config.similarity_threshold:
            return True, combined, f"High similarity score: {combined:.2f}"
        business_min, name_min = STRONG_BUSINESS
        if scores["business"] >= business_min and scores["name"] >= name_min:
            return True, (scores["business"] + scores["name"]) / 2, "Strong business domain similarity"
        name_min, business_min = RELATED_NAMES
        if scores["name"] >= name_min and scores["business"] >= business_min:
            return True, (scores["name"] + scores["business"]) / 2, "Related themes"
        return False, combined, (
            f"Insufficient similarity: combined={combined:.2f}, name={scores['name']:.2f}, "
            f"business={scores['business']:.2f}"
        )

    async def calculate_similarity(self, theme_a: ThemeLike, theme_b: ThemeLike) -> SimilarityResult:
        """
        Similarity of one pair. Never raises for model failures: a pair whose
        model call fails degrades to the conservative local fallback.
        """
        a, b = self._ordered(theme_a, theme_b)
        memo_key = (a.id, b.id)
        if memo_key in self._results:
            self._memo_hits += 1
            return self._results[memo_key]

        self._comparisons += 1
        result = self.quick_check(a, b)
        if result is not None:
            self._quick_filtered += 1
            logger.debug(f"[SIMILARITY] quick: {result.reasoning} for '{a.name}' vs '{b.name}'")
        else:
            result = await self._model_similarity(a, b)

        self._results[memo_key] = result
        return result

    async def _model_similarity(self, a: ThemeLike, b: ThemeLike) -> SimilarityResult:
        try:
            response = await self.batch_processor.add(PromptType.SIMILARITY_CHECK, self._variables(a, b))
        except MODEL_CALL_ERRORS as e:
            logger.warning(
                f"[SIMILARITY] model judgment failed for '{a.name}' vs '{b.name}' "
                f"({type(e).__name__}: {e}); using fallback"
            )
            return self.fallback_similarity(a, b)

        if response.cached:
            self._cache_hits += 1
        else:
            self._llm_calls += 1

        llm = response.data
        files = file_overlap(a.affected_files, b.affected_files)
        scores = {
            "name": llm.name_score,
            "business": llm.business_score,
            "combined": llm.semantic_score * SEMANTIC_WEIGHT + files * FILE_WEIGHT,
        }
        should_merge, confidence, reason = self.decide(scores, llm)
        logger.debug(
            f"[SIMILARITY] '{a.name}' vs '{b.name}': {scores['combined']:.2f} "
            f"({'MERGE' if should_merge else 'SEPARATE'})"
        )
        return SimilarityResult(
            theme1_id=a.id,
            theme2_id=b.id,
            name_score=llm.name_score,
            description_score=llm.description_score,
            file_overlap=files,
            pattern_score=llm.pattern_score,
            business_score=llm.business_score,
            semantic_score=llm.semantic_score,
            combined_score=scores["combined"],
            should_merge=should_merge,
            confidence=confidence,
            reasoning=reason,
            source="cache" if response.cached else "llm",
        )

    def fallback_similarity(self, theme_a: ThemeLike, theme_b: ThemeLike) -> SimilarityResult:
        """Low-confidence do-not-merge result used when the model is unavailable."""
        self._fallbacks += 1
        a, b = self._ordered(theme_a, theme_b)
        local = self.local_scores(a, b)
        semantic = (local["name"] + local["description"]) / 2
        return SimilarityResult(
            theme1_id=a.id,
            theme2_id=b.id,
            name_score=local["name"],
            description_score=local["description"],
            file_overlap=local["file_overlap"],
            pattern_score=local["pattern"],
            business_score=local["business"],
            semantic_score=semantic,
            combined_score=semantic * SEMANTIC_WEIGHT + local["file_overlap"] * FILE_WEIGHT,
            should_merge=False,
            confidence=FALLBACK_CONFIDENCE,
            reasoning="Model analysis failed, used basic string matching fallback",
            source="fallback",
        )

    async def calculate_batch_similarity(
        self, pairs: list[tuple[ThemeLike, ThemeLike]]
    ) -> list[SimilarityResult]:
        """Score many pairs concurrently; the BatchProcessor groups the model calls."""
        return list(await asyncio.gather(*(self.calculate_similarity(a, b) for a, b in pairs)))

    def clear(self) -> None:
        self._results.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            "comparisons": self._comparisons,
            "quick_filtered": self._quick_filtered,
            "memo_hits": self._memo_hits,
            "cache_hits": self._cache_hits,
            "llm_calls": self._llm_calls,
            "fallbacks": self._fallbacks,
        }
