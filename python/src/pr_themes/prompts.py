"""
Prompt templates per prompt type.

Templates use {placeholders} filled from the request variables. Batch
prompts embed a correlation id per item so results can be routed back
to their callers.
"""

import json
from typing import Any

from .models import PromptType

JSON_ONLY = "\n\nIMPORTANT: Respond with ONLY valid JSON starting with { or ["

TEMPLATES: dict[PromptType, str] = {
    PromptType.CODE_ANALYSIS: """Analyze this code change and extract structural information:

File: {filename}
Change Type: {changeType}
Language: {language}

Code Diff:
{diffContent}

Respond with JSON containing: functionsChanged, classesChanged, importsChanged (arrays of
names), fileType, isTestFile, isConfigFile, architecturalPatterns, businessDomain (one word),
codeComplexity (low/medium/high), semanticDescription.""",

    PromptType.THEME_EXTRACTION: """{context}

Analyze this code change. Be specific but concise.

File: {filename}
Code changes:
{content}

Respond with JSON containing: themeName (max 10 words), description (max 20 words),
businessImpact (max 15 words), technicalSummary, keyChanges (max 3), confidence (0.0-1.0),
codePattern (max 3 words).""",

    PromptType.SIMILARITY_CHECK: """Analyze if these two themes should be merged:

Theme 1: {theme1Name}
Description: {theme1Description}
Files: {theme1Files}

Theme 2: {theme2Name}
Description: {theme2Description}
Files: {theme2Files}

Consider whether they address the same feature or capability, share significant code
changes, and whether merging gives a clearer understanding.

Respond with JSON containing: shouldMerge (boolean), confidence, reasoning, nameScore,
descriptionScore, patternScore, businessScore, semanticScore (all scores 0.0-1.0).""",

    PromptType.THEME_EXPANSION: """Analyze this theme for potential sub-themes:

Theme: {themeName}
Description: {themeDescription}
Depth: {depth}
Files: {affectedFiles}
Code Context:
{codeContext}

Identify distinct sub-concerns that could be reviewed and tested separately. Do not
split cohesive changes.

Respond with JSON containing: shouldExpand (boolean), confidence (0.0-1.0),
subThemes (array of {{name, description, businessValue, affectedComponents, relatedFiles}}),
reasoning.""",

    PromptType.DOMAIN_EXTRACTION: """Group these themes by business domain:

Themes:
{themes}

Available domains: {availableDomains}

Respond with JSON containing: domains (array of {{domain, themes (theme names), confidence,
userValue}}).""",

    PromptType.THEME_NAMING: """Generate a concise, user-focused name for this theme:

Current name: {currentName}
Description: {description}
Affected files: {affectedFiles}

The name focuses on user value, is 2-5 words long and uses business terminology.

Respond with JSON containing: themeName, alternativeNames (2-3), reasoning.""",

    PromptType.CROSS_LEVEL_SIMILARITY: """Compare these themes from different hierarchy levels:

Theme 1 (level {theme1Level}): {theme1Name}
Description: {theme1Description}
Files: {theme1Files}

Theme 2 (level {theme2Level}): {theme2Name}
Description: {theme2Description}
Files: {theme2Files}

relationshipType: duplicate (same theme), overlap (significant shared scope), related
(related but distinct), distinct (different themes).
action: merge_up, merge_down, merge_sibling, keep_separate.

Respond with JSON containing: similarityScore (0.0-1.0), relationshipType, action,
confidence (0.0-1.0), reasoning.""",
}

BATCH_TEMPLATES: dict[PromptType, str] = {
    PromptType.SIMILARITY_CHECK: """Analyze multiple theme pairs for similarity.

{items}

For each pair, determine if the two themes should be merged.

Respond with JSON containing: results (array of {{pairId, shouldMerge, confidence, reasoning,
scores: {{name, description, pattern, business, semantic}}}}), one entry per pairId.""",

    PromptType.THEME_EXPANSION: """Analyze each theme below for potential sub-themes.

{items}

Respond with JSON containing: results (array, one entry per itemId, each with itemId,
shouldExpand, confidence, subThemes (array of {{name, description, businessValue,
affectedComponents, relatedFiles}}), reasoning).""",

    PromptType.CROSS_LEVEL_SIMILARITY: """Compare each theme pair below (themes come from
different hierarchy levels).

{items}

Respond with JSON containing: results (array, one entry per itemId, each with itemId,
similarityScore, relationshipType (duplicate|overlap|related|distinct), action
(merge_up|merge_down|merge_sibling|keep_separate), confidence, reasoning).""",

    PromptType.CODE_ANALYSIS: """Analyze each code change below.

{items}

Respond with JSON containing: results (array, one entry per itemId, each with itemId,
functionsChanged, classesChanged, importsChanged, fileType, isTestFile, isConfigFile,
architecturalPatterns, businessDomain, codeComplexity, semanticDescription).""",

    PromptType.DOMAIN_EXTRACTION: """Group the themes of each request below by business domain.

{items}

Respond with JSON containing: results (array, one entry per itemId, each with itemId and
domains (array of {{domain, themes, confidence, userValue}})).""",
}


class _Defaults(dict):
    """format_map helper: missing placeholders render empty."""

    def __missing__(self, key: str) -> str:
        return ""


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return ", ".join(str(v) for v in value)
    return json.dumps(value, default=str)


def build_prompt(prompt_type: PromptType, variables: dict[str, Any]) -> str:
    template = TEMPLATES[prompt_type]
    rendered = _Defaults({key: _render(value) for key, value in variables.items()})
    return template.format_map(rendered) + JSON_ONLY


def correlation_field(prompt_type: PromptType) -> str:
    return "pairId" if prompt_type == PromptType.SIMILARITY_CHECK else "itemId"


def build_batch_prompt(prompt_type: PromptType, items: list[tuple[str, dict[str, Any]]]) -> str:
    """One prompt covering every (correlation_id, variables) item."""
    id_field = correlation_field(prompt_type)
    sections = []
    for correlation_id, variables in items:
        body = TEMPLATES[prompt_type].split("Respond with JSON")[0].strip()
        rendered = body.format_map(_Defaults({k: _render(v) for k, v in variables.items()}))
        sections.append(f"--- {id_field}: {correlation_id} ---\n{rendered}")
    return BATCH_TEMPLATES[prompt_type].format(items="\n\n".join(sections)) + JSON_ONLY
