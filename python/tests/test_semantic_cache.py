"""
Unit tests for the semantic cache.

Tests cover:
- Exact hits and Jaccard-threshold semantic hits
- Context isolation and TTLs
- File-based invalidation, warming and stats
"""

from pr_themes.config import CacheConfig
from pr_themes.semantic_cache import (
    CONTEXT_TTLS,
    SemanticCache,
    file_tokens,
    jaccard,
    semantic_tokens,
)

from conftest import FakeClock


class TestTokens:
    """Tests for token extraction and Jaccard."""

    def test_stop_words_and_short_tokens_removed(self):
        """Test stop words and tokens of two characters or fewer are dropped."""
        tokens = semantic_tokens("The user is on a login page for auth")

        assert tokens == frozenset({"user", "login", "page", "auth"})

    def test_file_paths_contribute_stem_and_extension(self):
        """Test file paths add basename stem and extension tokens."""
        assert file_tokens("src/auth/LoginForm.tsx") == ["loginform", "tsx"]

    def test_structured_input_tokens(self):
        """Test dict inputs read name, description and affected files."""
        tokens = semantic_tokens({
            "name": "Add caching",
            "description": "Cache responses",
            "affectedFiles": ["src/cache.tsx"],
        })

        assert {"add", "caching", "cache", "responses", "tsx"} <= tokens

    def test_jaccard_edge_cases(self):
        """Test Jaccard is 1.0 for two empty sets and 0.0 when one is empty."""
        assert jaccard(frozenset(), frozenset()) == 1.0
        assert jaccard(frozenset({"a"}), frozenset()) == 0.0
        assert jaccard(frozenset({"abc", "def"}), frozenset({"abc"})) == 0.5


class TestLookups:
    """Tests for exact and semantic lookups."""

    def test_exact_hit(self):
        """Test the exact key is returned regardless of token similarity."""
        cache = SemanticCache(clock=FakeClock())
        cache.set_cached_result("user login auth", "k1", {"domain": "Auth"}, "domain-classification")

        assert cache.get_cached_result("something else", "k1", "domain-classification") == {"domain": "Auth"}
        assert cache.get_cached_result("something else", "k1", "domain-classification") is not None

    def test_identical_tokens_hit_semantically(self):
        """Test a different key with identical tokens hits at threshold 0.85."""
        cache = SemanticCache(clock=FakeClock())
        cache.set_cached_result("user login auth", "k1", "stored", "theme-expansion")

        assert cache.get_cached_result("auth login user", "k2", "theme-expansion") == "stored"
        assert cache.get_cache_stats()["semantic_hits"] == 1

    def test_near_duplicates_below_threshold_miss(self):
        """Test Jaccard 0.5 and 0.75 inputs do not hit at threshold 0.85."""
        cache = SemanticCache(clock=FakeClock())
        cache.set_cached_result("user login auth", "k1", "stored", "theme-expansion")

        assert cache.get_cached_result("user login authentication", "k2", "theme-expansion") is None
        assert cache.get_cached_result("user login auth flow", "k3", "theme-expansion") is None

    def test_lower_threshold_allows_near_duplicates(self):
        """Test the threshold is configurable."""
        cache = SemanticCache(CacheConfig(semantic_threshold=0.7), FakeClock())
        cache.set_cached_result("user login auth", "k1", "stored", "theme-expansion")

        assert cache.get_cached_result("user login auth flow", "k2", "theme-expansion") == "stored"

    def test_contexts_are_isolated(self):
        """Test a semantic match never crosses context labels."""
        cache = SemanticCache(clock=FakeClock())
        cache.set_cached_result("user login auth", "k1", "stored", "theme-expansion")

        assert cache.get_cached_result("user login auth", "k2", "domain-classification") is None

    def test_entries_expire_per_context_ttl(self):
        """Test entries disappear after their context TTL."""
        clock = FakeClock()
        cache = SemanticCache(clock=clock)
        cache.set_cached_result("user login auth", "k1", "stored", "cross-level-analysis")

        clock.advance(CONTEXT_TTLS["cross-level-analysis"])

        assert cache.get_cached_result("user login auth", "k1", "cross-level-analysis") is None
        assert cache.get_cache_stats()["entries"] == 0


class TestMaintenance:
    """Tests for invalidation, warming and cleanup."""

    def test_invalidate_by_files(self):
        """Test entries referencing a modified file are dropped."""
        cache = SemanticCache(clock=FakeClock())
        cache.set_cached_result(
            {"name": "Auth", "affectedFiles": ["src/auth.ts"]}, "k1", "a", "domain-classification"
        )
        cache.set_cached_result(
            {"name": "Docs", "affectedFiles": ["README.md"]}, "k2", "b", "domain-classification"
        )

        removed = cache.invalidate_by_files(["src/auth.ts"])

        assert removed == 1
        assert cache.get_cached_result({"name": "Docs"}, "k2", "domain-classification") == "b"

    def test_stored_input_is_sanitized(self):
        """Test only matching fields are kept, truncated to the configured lengths."""
        cache = SemanticCache(CacheConfig(semantic_max_string_length=5, semantic_max_list_items=2), FakeClock())
        cache.set_cached_result(
            {"name": "abcdefgh", "secret": "x", "content": ["p", "q", "r"], "affectedFiles": ["a", "b", "c"]},
            "k",
            "v",
            "consolidation",
        )

        stored = cache._entries["consolidation:k"].original_input

        assert stored == {"name": "abcde", "content": ["p", "q"], "affectedFiles": ["a", "b", "c"]}

    def test_invalidation_sees_files_past_the_list_limit(self):
        """Test a file beyond semantic_max_list_items still invalidates its entry."""
        cache = SemanticCache(clock=FakeClock())
        files = [f"src/f{i}.ts" for i in range(30)]
        cache.set_cached_result({"name": "Wide change", "affectedFiles": files}, "k", "v", "consolidation")

        removed = cache.invalidate_by_files(["src/f25.ts"])

        assert removed == 1
        assert cache.get_cache_stats()["entries"] == 0

    def test_warm_cache_uses_warm_ttl(self):
        """Test warmed entries live for warm_ttl."""
        clock = FakeClock()
        cache = SemanticCache(CacheConfig(warm_ttl=10.0), clock)

        cache.warm_cache([("user login auth", "k1", "v", "consolidation")])
        clock.advance(10.0)

        assert cache.cleanup_expired() == 1
