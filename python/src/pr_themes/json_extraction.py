"""
Extract a JSON value from free-form model output.

Models often wrap JSON in prose or markdown fences. Strategies are tried
in order until one parses:
1. The whole (stripped) text
2. A ```json fenced block
3. Any ``` fenced block
4. The first {...} or [...] span found by regex
5. A balanced-brace scan that respects string literals and escapes
"""

import json
import logging
import re
from typing import Any, Literal

from .errors import JsonExtractionError

logger = logging.getLogger(__name__)

ExpectedKind = Literal["object", "array", "any"]

_JSON_FENCE = re.compile(r"```json\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_ANY_FENCE = re.compile(r"```[a-zA-Z]*\s*(.*?)```", re.DOTALL)
_OBJECT_SPAN = re.compile(r"\{.*\}", re.DOTALL)
_ARRAY_SPAN = re.compile(r"\[.*\]", re.DOTALL)


def _try_parse(text: str) -> tuple[bool, Any]:
    text = text.strip()
    if not text:
        return False, None
    try:
        return True, json.loads(text)
    except json.JSONDecodeError:
        return False, None


def _matches_kind(value: Any, expected: ExpectedKind) -> bool:
    if expected == "object":
        return isinstance(value, dict)
    if expected == "array":
        return isinstance(value, list)
    return isinstance(value, (dict, list))


def _balanced_candidates(text: str) -> list[str]:
    """Collect every top-level balanced {...} / [...] substring."""
    candidates = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    opener = ""

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"' and depth > 0:
            in_string = True
        elif ch in "{[":
            if depth == 0:
                start = i
                opener = ch
            if ch == opener:
                depth += 1
        elif ch in "}]" and depth > 0:
            if (opener == "{" and ch == "}") or (opener == "[" and ch == "]"):
                depth -= 1
                if depth == 0:
                    candidates.append(text[start:i + 1])
    return candidates


def extract_json(text: str, expected: ExpectedKind = "object") -> Any:
    """
    Extract the first JSON value of the expected kind from model output.

    Args:
        text: Raw model response
        expected: "object", "array" or "any"

    Returns:
        The parsed JSON value

    Raises:
        JsonExtractionError: if no strategy produced a value of the expected kind
    """
    if not text or not text.strip():
        raise JsonExtractionError("Empty response", text or "")

    attempts: list[str] = [text]
    attempts.extend(m.group(1) for m in _JSON_FENCE.finditer(text))
    attempts.extend(m.group(1) for m in _ANY_FENCE.finditer(text))
    for pattern in (_OBJECT_SPAN, _ARRAY_SPAN):
        match = pattern.search(text)
        if match:
            attempts.append(match.group(0))

    for candidate in attempts:
        ok, value = _try_parse(candidate)
        if ok and _matches_kind(value, expected):
            return value

    for candidate in _balanced_candidates(text):
        ok, value = _try_parse(candidate)
        if ok and _matches_kind(value, expected):
            return value

    logger.debug(f"[JSON] extraction failed for response starting: {text[:120]!r}")
    raise JsonExtractionError(f"No valid JSON {expected} found in response", text)
