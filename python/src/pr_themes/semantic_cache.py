"""
Semantic cache layered above exact-key caching.

A lookup first tries the exact "<context>:<key>" entry. On a miss it
scans entries of the same context label and returns the first whose
token set has Jaccard similarity >= the threshold with the query's.

Tokens come from the name, description, business impact and content
text (lowercased, punctuation stripped, stop words and tokens of two
characters or fewer removed) and from file-path basenames and extensions.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any

from .config import CacheConfig
from .utils import Clock, SystemClock

logger = logging.getLogger(__name__)

MINUTE = 60.0
HOUR = 60 * MINUTE

CONTEXT_TTLS: dict[str, float] = {
    "file-analysis": 2 * HOUR,
    "domain-classification": 2 * HOUR,
    "pattern-recognition": 2 * HOUR,
    "similarity-calculation": HOUR,
    "theme-expansion": HOUR,
    "cross-level-analysis": 30 * MINUTE,
    "hierarchy-analysis": 30 * MINUTE,
    "consolidation": 30 * MINUTE,
}
DEFAULT_CONTEXT_TTL = HOUR

STOP_WORDS = frozenset({
    "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
    "by", "is", "are", "was", "were", "be", "been", "have", "has", "had",
    "do", "does", "did", "will", "would", "could", "should", "may", "might",
    "this", "that", "these", "those", "a", "an",
})

TEXT_FIELDS = (("name",), ("description",), ("businessImpact", "business_impact"), ("content",))
FILE_FIELDS = ("affectedFiles", "affected_files")
STORED_FIELDS = (
    "name", "description", "businessImpact", "content", "affectedFiles", "themeName", "changeType",
)
SNAKE_ALIASES = {
    "businessImpact": "business_impact",
    "affectedFiles": "affected_files",
    "themeName": "theme_name",
    "changeType": "change_type",
}

_PUNCTUATION = re.compile(r"[^\w\s]")


def _read(source: Any, *names: str) -> Any:
    for name in names:
        if isinstance(source, dict):
            if name in source:
                return source[name]
        elif hasattr(source, name):
            return getattr(source, name)
    return None


def text_tokens(text: str) -> list[str]:
    cleaned = _PUNCTUATION.sub(" ", text.lower())
    return [t for t in cleaned.split() if len(t) > 2 and t not in STOP_WORDS]


def file_tokens(path: str) -> list[str]:
    """Basename stem and extension of a path."""
    parts = path.split("/")[-1].split(".")
    stem = parts[0].lower() if parts and parts[0] else ""
    extension = parts[-1].lower() if len(parts) > 1 else ""
    tokens = []
    if stem:
        tokens.append(stem)
    if extension and extension != stem:
        tokens.append(extension)
    return tokens


def semantic_tokens(value: Any) -> frozenset[str]:
    """Normalized token set used for semantic matching."""
    tokens: list[str] = []
    if isinstance(value, str):
        tokens.extend(text_tokens(value))
    elif value is not None:
        for names in TEXT_FIELDS:
            text = _read(value, *names)
            if isinstance(text, str):
                tokens.extend(text_tokens(text))
        files = _read(value, *FILE_FIELDS)
        if isinstance(files, (list, tuple, set, frozenset)):
            for path in files:
                if isinstance(path, str):
                    tokens.extend(file_tokens(path))
    return frozenset(t for t in tokens if len(t) > 2)


def semantic_key(value: Any) -> str:
    return "|".join(sorted(semantic_tokens(value)))


def jaccard(a: frozenset[str] | set[str], b: frozenset[str] | set[str]) -> float:
    """Jaccard index; 1.0 when both are empty, 0.0 when only one is."""
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


@dataclass
class SemanticEntry:
    result: Any
    tokens: frozenset[str]
    context_type: str
    original_input: Any
    created_at: float
    expires_at: float
    hits: int = 0


class SemanticCache:
    """Exact-then-approximate cache, partitioned by context label."""

    def __init__(self, config: CacheConfig | None = None, clock: Clock | None = None):
        self.config = config or CacheConfig()
        self.clock = clock or SystemClock()
        self.threshold = self.config.semantic_threshold
        self._entries: dict[str, SemanticEntry] = {}

        self._exact_hits = 0
        self._semantic_hits = 0
        self._misses = 0
        self._invalidations = 0

    @staticmethod
    def _full_key(key: str, context_type: str) -> str:
        return f"{context_type}:{key}"

    def _sanitize(self, value: Any) -> Any:
        """Keep only fields used for matching and invalidation, truncated.

        File lists are stored whole so invalidation sees every path.
        """
        limit = self.config.semantic_max_string_length
        max_items = self.config.semantic_max_list_items

        def clip(item: Any) -> Any:
            if isinstance(item, str):
                return item[:limit]
            if isinstance(item, (list, tuple, set, frozenset)):
                items = sorted(item, key=str) if isinstance(item, (set, frozenset)) else list(item)
                return [clip(i) for i in items[:max_items]]
            return item

        if isinstance(value, str):
            return value[:limit]
        sanitized = {}
        for name in STORED_FIELDS:
            field_value = _read(value, name, SNAKE_ALIASES.get(name, name))
            if field_value is None:
                continue
            if name == "affectedFiles" and isinstance(field_value, (list, tuple, set, frozenset)):
                sanitized[name] = sorted(field_value, key=str) if isinstance(field_value, (set, frozenset)) else list(field_value)
            else:
                sanitized[name] = clip(field_value)
        return sanitized

    def _is_live(self, entry: SemanticEntry, now: float) -> bool:
        return now < entry.expires_at

    def get_cached_result(self, value: Any, key: str, context_type: str) -> Any | None:
        """
        Look up by exact key, then by token-set similarity within the context.

        Returns:
            The cached result, or None on miss
        """
        now = self.clock.now()
        full_key = self._full_key(key, context_type)

        entry = self._entries.get(full_key)
        if entry is not None:
            if self._is_live(entry, now):
                entry.hits += 1
                self._exact_hits += 1
                return entry.result
            del self._entries[full_key]

        query_tokens = semantic_tokens(value)
        expired = []
        match: SemanticEntry | None = None
        for stored_key, candidate in self._entries.items():
            if candidate.context_type != context_type:
                continue
            if not self._is_live(candidate, now):
                expired.append(stored_key)
                continue
            if jaccard(query_tokens, candidate.tokens) >= self.threshold:
                match = candidate
                break
        for stored_key in expired:
            del self._entries[stored_key]

        if match is not None:
            match.hits += 1
            self._semantic_hits += 1
            logger.debug(f"[SEMANTIC-CACHE] semantic hit for {context_type}:{key}")
            return match.result

        self._misses += 1
        return None

    def set_cached_result(
        self,
        value: Any,
        key: str,
        result: Any,
        context_type: str,
        ttl: float | None = None,
    ) -> None:
        now = self.clock.now()
        if ttl is None:
            ttl = CONTEXT_TTLS.get(context_type, DEFAULT_CONTEXT_TTL)
        self._entries[self._full_key(key, context_type)] = SemanticEntry(
            result=result,
            tokens=semantic_tokens(value),
            context_type=context_type,
            original_input=self._sanitize(value),
            created_at=now,
            expires_at=now + ttl,
        )

    def invalidate_by_files(self, modified_files: list[str]) -> int:
        """Drop every entry whose original input referenced a modified file."""
        modified = set(modified_files)
        doomed = []
        for stored_key, entry in self._entries.items():
            files = _read(entry.original_input, "affectedFiles") if isinstance(entry.original_input, dict) else None
            if files and modified.intersection(files):
                doomed.append(stored_key)
        for stored_key in doomed:
            del self._entries[stored_key]
        self._invalidations += len(doomed)
        if doomed:
            logger.info(f"[SEMANTIC-CACHE] invalidated {len(doomed)} entries for {len(modified)} modified files")
        return len(doomed)

    def warm_cache(self, entries: list[tuple[Any, str, Any, str]]) -> int:
        """Preload (input, key, result, context_type) tuples with the warm TTL."""
        for value, key, result, context_type in entries:
            self.set_cached_result(value, key, result, context_type, ttl=self.config.warm_ttl)
        return len(entries)

    def cleanup_expired(self) -> int:
        now = self.clock.now()
        doomed = [k for k, e in self._entries.items() if not self._is_live(e, now)]
        for stored_key in doomed:
            del self._entries[stored_key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def get_cache_stats(self) -> dict[str, Any]:
        """Get semantic cache statistics."""
        breakdown: dict[str, int] = {}
        for entry in self._entries.values():
            breakdown[entry.context_type] = breakdown.get(entry.context_type, 0) + 1
        hits = self._exact_hits + self._semantic_hits
        total = hits + self._misses
        return {
            "entries": len(self._entries),
            "hits": hits,
            "exact_hits": self._exact_hits,
            "semantic_hits": self._semantic_hits,
            "misses": self._misses,
            "hit_rate": hits / total if total > 0 else 0.0,
            "invalidations": self._invalidations,
            "context_breakdown": breakdown,
        }
