"""
Response schemas per prompt type.

Each PromptType maps to exactly one pydantic model (a tagged union keyed
by PromptType). Model output is extracted with extract_json() and then
validated strictly: a shape mismatch raises SchemaValidationError and a
partially valid object is never returned.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import SchemaValidationError
from .json_extraction import extract_json
from .models import PromptType

Score = float


class _ResponseModel(BaseModel):
    """Shared config: camelCase wire names, unknown keys ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CodeAnalysisResponse(_ResponseModel):
    functions_changed: list[str] = Field(default_factory=list, alias="functionsChanged")
    classes_changed: list[str] = Field(default_factory=list, alias="classesChanged")
    imports_changed: list[str] = Field(default_factory=list, alias="importsChanged")
    file_type: str = Field(alias="fileType")
    is_test_file: bool = Field(alias="isTestFile")
    is_config_file: bool = Field(alias="isConfigFile")
    architectural_patterns: list[str] = Field(default_factory=list, alias="architecturalPatterns")
    business_domain: str | None = Field(default=None, alias="businessDomain")
    code_complexity: Literal["low", "medium", "high"] | None = Field(default=None, alias="codeComplexity")
    semantic_description: str | None = Field(default=None, alias="semanticDescription")


class ThemeExtractionResponse(_ResponseModel):
    theme_name: str = Field(alias="themeName", min_length=1)
    description: str
    business_impact: str = Field(alias="businessImpact")
    confidence: Score = Field(ge=0.0, le=1.0)
    code_pattern: str = Field(default="", alias="codePattern")
    detailed_description: str | None = Field(default=None, alias="detailedDescription")
    technical_summary: str | None = Field(default=None, alias="technicalSummary")
    key_changes: list[str] = Field(default_factory=list, alias="keyChanges")
    user_scenario: str | None = Field(default=None, alias="userScenario")
    suggested_parent: str | None = Field(default=None, alias="suggestedParent")


class SimilarityCheckResponse(_ResponseModel):
    should_merge: bool = Field(alias="shouldMerge")
    confidence: Score = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    name_score: Score = Field(alias="nameScore", ge=0.0, le=1.0)
    description_score: Score = Field(alias="descriptionScore", ge=0.0, le=1.0)
    pattern_score: Score = Field(alias="patternScore", ge=0.0, le=1.0)
    business_score: Score = Field(alias="businessScore", ge=0.0, le=1.0)
    semantic_score: Score = Field(alias="semanticScore", ge=0.0, le=1.0)

    @model_validator(mode="before")
    @classmethod
    def flatten_scores(cls, data: Any) -> Any:
        """Accept the batch shape {scores: {name, description, ...}}."""
        if isinstance(data, dict) and isinstance(data.get("scores"), dict):
            scores = data["scores"]
            flattened = dict(data)
            for short, wire in (
                ("name", "nameScore"),
                ("description", "descriptionScore"),
                ("pattern", "patternScore"),
                ("business", "businessScore"),
                ("semantic", "semanticScore"),
            ):
                if short in scores and wire not in flattened:
                    flattened[wire] = scores[short]
            return flattened
        return data


class SubTheme(_ResponseModel):
    name: str = Field(min_length=1)
    description: str = ""
    business_value: str = Field(default="", alias="businessValue")
    affected_components: list[str] = Field(default_factory=list, alias="affectedComponents")
    related_files: list[str] = Field(default_factory=list, alias="relatedFiles")


class ThemeExpansionResponse(_ResponseModel):
    should_expand: bool = Field(alias="shouldExpand")
    confidence: Score = Field(ge=0.0, le=1.0)
    sub_themes: list[SubTheme] = Field(default_factory=list, alias="subThemes")
    reasoning: str = ""

    @model_validator(mode="after")
    def sub_themes_required_when_expanding(self) -> ThemeExpansionResponse:
        if self.should_expand and not self.sub_themes:
            raise ValueError("shouldExpand is true but subThemes is empty")
        return self


class DomainGroup(_ResponseModel):
    domain: str = Field(min_length=1)
    themes: list[str]
    confidence: Score = Field(default=0.5, ge=0.0, le=1.0)
    user_value: str = Field(default="", alias="userValue")


class DomainExtractionResponse(_ResponseModel):
    domains: list[DomainGroup]


class ThemeNamingResponse(_ResponseModel):
    theme_name: str = Field(alias="themeName", min_length=1)
    alternative_names: list[str] = Field(default_factory=list, alias="alternativeNames")
    reasoning: str = ""


class BatchSimilarityItem(SimilarityCheckResponse):
    pair_id: str = Field(alias="pairId")
    reasoning: str = ""


class BatchSimilarityResponse(_ResponseModel):
    results: list[BatchSimilarityItem]


class CrossLevelSimilarityResponse(_ResponseModel):
    similarity_score: Score = Field(alias="similarityScore", ge=0.0, le=1.0)
    relationship_type: Literal["duplicate", "overlap", "related", "distinct"] = Field(
        alias="relationshipType"
    )
    action: Literal["merge_up", "merge_down", "merge_sibling", "keep_separate"]
    confidence: Score = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class BatchEnvelope(_ResponseModel):
    """Generic batch reply: one result object per correlation id."""

    results: list[dict[str, Any]]


RESPONSE_MODELS: dict[PromptType, type[BaseModel]] = {
    PromptType.CODE_ANALYSIS: CodeAnalysisResponse,
    PromptType.THEME_EXTRACTION: ThemeExtractionResponse,
    PromptType.SIMILARITY_CHECK: SimilarityCheckResponse,
    PromptType.THEME_EXPANSION: ThemeExpansionResponse,
    PromptType.DOMAIN_EXTRACTION: DomainExtractionResponse,
    PromptType.THEME_NAMING: ThemeNamingResponse,
    PromptType.BATCH_SIMILARITY: BatchSimilarityResponse,
    PromptType.CROSS_LEVEL_SIMILARITY: CrossLevelSimilarityResponse,
}


def _issues(error: ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(part) for part in issue['loc']) or '<root>'}: {issue['msg']}"
        for issue in error.errors()
    ]


def validate_data(prompt_type: PromptType, data: Any) -> BaseModel:
    """
    Validate an already-parsed JSON value against the prompt type's schema.

    Raises:
        SchemaValidationError: on any shape mismatch
    """
    model = RESPONSE_MODELS[prompt_type]
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise SchemaValidationError(prompt_type, _issues(e)) from e


def parse_response(prompt_type: PromptType, text: str) -> BaseModel:
    """
    Extract JSON from raw model text and validate it.

    Raises:
        JsonExtractionError: no JSON object in the text
        SchemaValidationError: JSON present but wrongly shaped
    """
    return validate_data(prompt_type, extract_json(text, "object"))


def parse_batch_envelope(prompt_type: PromptType, text: str) -> BatchEnvelope:
    """Extract and validate the {results: [...]} wrapper of a batch reply."""
    data = extract_json(text, "object")
    try:
        return BatchEnvelope.model_validate(data)
    except ValidationError as e:
        raise SchemaValidationError(prompt_type, _issues(e)) from e


def fallback_response(prompt_type: PromptType, variables: dict[str, Any] | None = None) -> BaseModel:
    """
    Documented default result for advisory call sites.

    Only used where a call site explicitly opts into USE_DEFAULT; merge and
    expand decisions made from these defaults are always conservative.
    """
    variables = variables or {}
    if prompt_type == PromptType.SIMILARITY_CHECK:
        return SimilarityCheckResponse(
            should_merge=False,
            confidence=0.5,
            reasoning="Fallback: analysis unavailable",
            name_score=0.0,
            description_score=0.0,
            pattern_score=0.0,
            business_score=0.0,
            semantic_score=0.0,
        )
    if prompt_type == PromptType.THEME_EXPANSION:
        return ThemeExpansionResponse(
            should_expand=False, confidence=0.3, reasoning="Fallback: expansion analysis unavailable"
        )
    if prompt_type == PromptType.DOMAIN_EXTRACTION:
        return DomainExtractionResponse(domains=[])
    if prompt_type == PromptType.THEME_NAMING:
        return ThemeNamingResponse(
            theme_name=str(variables.get("currentName") or "Code Changes"),
            reasoning="Fallback: kept current name",
        )
    if prompt_type == PromptType.CROSS_LEVEL_SIMILARITY:
        return CrossLevelSimilarityResponse(
            similarity_score=0.2,
            relationship_type="distinct",
            action="keep_separate",
            confidence=0.3,
            reasoning="Fallback: analysis unavailable",
        )
    if prompt_type == PromptType.BATCH_SIMILARITY:
        return BatchSimilarityResponse(results=[])
    if prompt_type == PromptType.CODE_ANALYSIS:
        filename = str(variables.get("filename", ""))
        lowered = filename.lower()
        return CodeAnalysisResponse(
            file_type=filename.rsplit(".", 1)[-1] if "." in filename else "",
            is_test_file=".test." in lowered or ".spec." in lowered or "/test" in lowered,
            is_config_file=lowered.endswith((".json", ".yaml", ".yml", ".toml", ".ini", ".cfg")),
        )
    return ThemeExtractionResponse(
        theme_name=str(variables.get("filename") or "Code Changes"),
        description="Fallback: theme extraction unavailable",
        business_impact="",
        confidence=0.3,
    )
