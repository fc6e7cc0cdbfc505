"""
Core data model for theme consolidation and expansion.

Contains:
- Enums: PromptType, ConsolidationMethod, ExpansionState, ExpansionStopReason
- Dataclasses: ThemeCandidate, ConsolidatedTheme, SimilarityResult
- JSON round-trip helpers (dates as ISO-8601 strings)
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from .utils import from_iso, to_iso, utc_now


class PromptType(Enum):
    """Logical request types; each has its own cache partition and schema."""
    CODE_ANALYSIS = "code_analysis"
    THEME_EXTRACTION = "theme_extraction"
    SIMILARITY_CHECK = "similarity_check"
    THEME_EXPANSION = "theme_expansion"
    DOMAIN_EXTRACTION = "domain_extraction"
    THEME_NAMING = "theme_naming"
    BATCH_SIMILARITY = "batch_similarity"
    CROSS_LEVEL_SIMILARITY = "cross_level_similarity"


class ConsolidationMethod(Enum):
    DIRECT_SINGLE = "direct-single"
    PAIRWISE_MERGE = "pairwise-merge"
    HIERARCHY_GROUP = "hierarchy-group"
    AI_EXPANSION = "ai-expansion"


class ExpansionState(Enum):
    CANDIDATE = "candidate"
    ANALYZED = "analyzed"
    VALIDATED = "validated"
    EXPANDED = "expanded"
    ATOMIC = "atomic"
    ERROR = "error"


class ExpansionStopReason(Enum):
    ATOMIC = "atomic"
    AI_DECISION = "ai-decision"
    MAX_DEPTH = "max-depth"
    CIRCUIT_BREAKER = "circuit-breaker"
    ERROR = "error"


def new_theme_id(prefix: str = "theme") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class ThemeCandidate:
    """Pre-consolidation unit produced by upstream analysis. Immutable."""
    id: str
    name: str
    description: str
    affected_files: frozenset[str] = frozenset()
    code_snippets: tuple[str, ...] = ()
    confidence: float = 0.5
    business_impact: str = ""
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        # Accept any iterable from callers; store the immutable forms
        if not isinstance(self.affected_files, frozenset):
            object.__setattr__(self, "affected_files", frozenset(self.affected_files))
        if not isinstance(self.code_snippets, tuple):
            object.__setattr__(self, "code_snippets", tuple(self.code_snippets))
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "affectedFiles": sorted(self.affected_files),
            "codeSnippets": list(self.code_snippets),
            "confidence": self.confidence,
            "businessImpact": self.business_impact,
            "createdAt": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ThemeCandidate":
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            affected_files=frozenset(data.get("affectedFiles", [])),
            code_snippets=tuple(data.get("codeSnippets", [])),
            confidence=float(data.get("confidence", 0.5)),
            business_impact=data.get("businessImpact", ""),
            created_at=from_iso(data["createdAt"]) if data.get("createdAt") else utc_now(),
        )


@dataclass
class ConsolidatedTheme:
    """
    Post-merge node of the theme forest.

    A parent exclusively owns its child_themes list. parent_id is an id
    lookup only, never a live reference, so no cycle can be built through it.
    """
    id: str
    name: str
    description: str
    level: int = 0
    parent_id: str | None = None
    child_themes: list["ConsolidatedTheme"] = field(default_factory=list)
    affected_files: list[str] = field(default_factory=list)
    code_snippets: list[str] = field(default_factory=list)
    confidence: float = 0.5
    business_impact: str = ""
    source_themes: list[str] = field(default_factory=list)
    consolidation_method: ConsolidationMethod = ConsolidationMethod.DIRECT_SINGLE
    is_atomic: bool | None = None
    expansion_reason: str | None = None
    expansion_state: ExpansionState = ExpansionState.CANDIDATE
    last_analysis: datetime = field(default_factory=utc_now)

    @classmethod
    def from_candidate(cls, candidate: ThemeCandidate) -> "ConsolidatedTheme":
        return cls(
            id=new_theme_id(),
            name=candidate.name,
            description=candidate.description,
            affected_files=sorted(candidate.affected_files),
            code_snippets=list(candidate.code_snippets),
            confidence=candidate.confidence,
            business_impact=candidate.business_impact,
            source_themes=[candidate.id],
            consolidation_method=ConsolidationMethod.DIRECT_SINGLE,
        )

    @property
    def total_lines(self) -> int:
        """Changed lines across all snippets."""
        return sum(len([line for line in s.splitlines() if line.strip()]) for s in self.code_snippets)

    def copy_with(self, **changes: Any) -> "ConsolidatedTheme":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "level": self.level,
            "parentId": self.parent_id,
            "childThemes": [child.to_dict() for child in self.child_themes],
            "affectedFiles": list(self.affected_files),
            "codeSnippets": list(self.code_snippets),
            "confidence": self.confidence,
            "businessImpact": self.business_impact,
            "sourceThemes": list(self.source_themes),
            "consolidationMethod": self.consolidation_method.value,
            "isAtomic": self.is_atomic,
            "expansionReason": self.expansion_reason,
            "expansionState": self.expansion_state.value,
            "lastAnalysis": to_iso(self.last_analysis),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConsolidatedTheme":
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            level=int(data.get("level", 0)),
            parent_id=data.get("parentId"),
            child_themes=[cls.from_dict(child) for child in data.get("childThemes", [])],
            affected_files=list(data.get("affectedFiles", [])),
            code_snippets=list(data.get("codeSnippets", [])),
            confidence=float(data.get("confidence", 0.5)),
            business_impact=data.get("businessImpact", ""),
            source_themes=list(data.get("sourceThemes", [])),
            consolidation_method=ConsolidationMethod(
                data.get("consolidationMethod", ConsolidationMethod.DIRECT_SINGLE.value)
            ),
            is_atomic=data.get("isAtomic"),
            expansion_reason=data.get("expansionReason"),
            expansion_state=ExpansionState(data.get("expansionState", ExpansionState.CANDIDATE.value)),
            last_analysis=from_iso(data["lastAnalysis"]) if data.get("lastAnalysis") else utc_now(),
        )


@dataclass
class SimilarityResult:
    """Outcome of one pairwise comparison. Symmetric in (theme1_id, theme2_id)."""
    theme1_id: str
    theme2_id: str
    name_score: float = 0.0
    description_score: float = 0.0
    file_overlap: float = 0.0
    pattern_score: float = 0.0
    business_score: float = 0.0
    semantic_score: float = 0.0
    combined_score: float = 0.0
    should_merge: bool = False
    confidence: float = 0.0
    reasoning: str = ""
    source: str = "llm"  # llm, quick-check, fallback, cache

    def to_dict(self) -> dict[str, Any]:
        return {
            "theme1Id": self.theme1_id,
            "theme2Id": self.theme2_id,
            "nameScore": self.name_score,
            "descriptionScore": self.description_score,
            "fileOverlap": self.file_overlap,
            "patternScore": self.pattern_score,
            "businessScore": self.business_score,
            "semanticScore": self.semantic_score,
            "combinedScore": self.combined_score,
            "shouldMerge": self.should_merge,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "source": self.source,
        }
