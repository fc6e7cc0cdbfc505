"""
Tests for pairwise theme similarity.

Tests cover:
- Local quick checks
- Model judgments, the confident-veto rule and the merge rules
- Symmetry and memoization
- Fallback when the model output is unusable or the model is down
"""

from types import SimpleNamespace

import pytest

from pr_themes.errors import TransientError
from pr_themes.similarity import (
    DEFAULT_DOMAIN,
    SimilarityEngine,
    has_different_file_types,
    infer_domain,
    name_similarity,
)

from conftest import make_candidate


@pytest.fixture
def engine(batch_processor) -> SimilarityEngine:
    return SimilarityEngine(batch_processor)


class TestHeuristics:
    """Tests for local scoring helpers."""

    def test_name_similarity_is_word_jaccard(self):
        """Test names compare as lowercase word sets."""
        assert name_similarity("User Login", "login user") == 1.0
        assert name_similarity("User Login", "User Logout") == pytest.approx(1 / 3)

    def test_file_type_difference_needs_both_sides(self):
        """Test an empty file list never counts as a different type."""
        assert has_different_file_types(["a.ts"], ["b.md"])
        assert not has_different_file_types([], ["b.md"])

    def test_infer_domain_keywords(self):
        """Test the keyword fallback picks the first matching domain."""
        assert infer_domain("Fix crash", "bug in parser") == "Fix User-Facing Issues"
        assert infer_domain("Zebra") == DEFAULT_DOMAIN


class TestQuickCheck:
    """Tests for pairs settled without the model."""

    @pytest.mark.asyncio
    async def test_identical_names_merge_without_model(self, engine, scripted_model):
        """Test near-identical names merge locally."""
        a = make_candidate("a", "User Login")
        b = make_candidate("b", "user login")

        result = await engine.calculate_similarity(a, b)

        assert result.should_merge
        assert result.source == "quick-check"
        assert scripted_model.calls == []

    @pytest.mark.asyncio
    async def test_different_file_types_are_separate(self, engine, scripted_model):
        """Test disjoint files of different types score 0.15."""
        a = make_candidate("a", "Update auth", files=["src/auth.ts"])
        b = make_candidate("b", "Update docs", files=["docs/auth.md"])

        result = await engine.calculate_similarity(a, b)

        assert not result.should_merge
        assert result.combined_score == 0.15
        assert scripted_model.calls == []

    @pytest.mark.asyncio
    async def test_unrelated_names_are_separate(self, engine):
        """Test unrelated names with disjoint files score 0.18."""
        result = await engine.calculate_similarity(make_candidate("a", "Alpha"), make_candidate("b", "Beta"))

        assert result.combined_score == 0.18
        assert engine.get_stats()["quick_filtered"] == 1


class TestModelJudgment:
    """Tests for pairs judged by the model."""

    @pytest.mark.asyncio
    async def test_model_merge(self, engine, scripted_model):
        """Test the model's merge verdict is followed."""
        a = make_candidate("a", "Login form", files=["src/login.ts"])
        b = make_candidate("b", "Login validation", files=["src/login.ts"])
        scripted_model.merge_pairs.add(frozenset(("Login form", "Login validation")))

        result = await engine.calculate_similarity(a, b)

        assert result.should_merge
        assert result.source == "llm"
        assert result.combined_score == pytest.approx(0.9 * 0.8 + 1.0 * 0.2)

    @pytest.mark.asyncio
    async def test_confident_no_merge_vetoes(self, engine, scripted_model):
        """Test a confident model "no" wins over the local rules."""
        a = make_candidate("a", "Login form", files=["src/login.ts"])
        b = make_candidate("b", "Login form styles", files=["src/login.ts"])
        scripted_model.veto_pairs.add(frozenset(("Login form", "Login form styles")))

        result = await engine.calculate_similarity(a, b)

        assert not result.should_merge
        assert result.confidence == 0.9
        assert result.reasoning.startswith("Model says keep separate")

    def test_combined_threshold_rule(self, engine):
        """Test a hesitant model "no" can be overruled by a high combined score."""
        llm = SimpleNamespace(should_merge=False, confidence=0.5, reasoning="unsure")

        merge, confidence, reason = engine.decide({"name": 0.3, "business": 0.1, "combined": 0.7}, llm)

        assert merge
        assert confidence == 0.7
        assert reason.startswith("High similarity score")

    def test_related_names_rule(self, engine):
        """Test related names with some business overlap merge."""
        llm = SimpleNamespace(should_merge=False, confidence=0.5, reasoning="unsure")

        merge, _, reason = engine.decide({"name": 0.6, "business": 0.5, "combined": 0.3}, llm)

        assert merge
        assert reason == "Related themes"

    @pytest.mark.asyncio
    async def test_similarity_is_symmetric_and_memoized(self, engine, scripted_model):
        """Test (A, B) and (B, A) give the same result with one model call."""
        a = make_candidate("a", "Login form", files=["src/login.ts"])
        b = make_candidate("b", "Login validation", files=["src/login.ts"])

        forward = await engine.calculate_similarity(a, b)
        backward = await engine.calculate_similarity(b, a)

        assert forward is backward
        assert (forward.theme1_id, forward.theme2_id) == ("a", "b")
        assert len(scripted_model.calls) == 1
        assert engine.get_stats()["memo_hits"] == 1

    @pytest.mark.asyncio
    async def test_unusable_output_degrades_to_fallback(self, engine, scripted_model):
        """Test a pair whose model output cannot be parsed uses string matching."""
        scripted_model.malformed_contexts.add("similarity-analysis")
        a = make_candidate("a", "Login form", files=["src/login.ts"])
        b = make_candidate("b", "Login validation", files=["src/login.ts"])

        result = await engine.calculate_similarity(a, b)

        assert result.source == "fallback"
        assert result.confidence == 0.3
        assert not result.should_merge

    @pytest.mark.asyncio
    async def test_model_outage_never_merges(self, engine, scripted_model):
        """Test close names are kept apart when every model call fails."""
        scripted_model.fail_contexts["batch-similarity"] = TransientError("provider unavailable")
        scripted_model.fail_contexts["similarity-analysis"] = TransientError("provider unavailable")
        files = ["src/auth/login.ts"]
        a = make_candidate("a", "Add user login form", files=files)
        b = make_candidate("b", "Add user login", files=files)

        result = await engine.calculate_similarity(a, b)

        assert result.source == "fallback"
        assert result.name_score > 0.7
        assert not result.should_merge
        assert engine.get_stats()["fallbacks"] == 1

    @pytest.mark.asyncio
    async def test_batch_similarity_groups_calls(self, engine, scripted_model):
        """Test many pairs are judged through one batch call."""
        pairs = [
            (
                make_candidate(f"x{i}", f"Feature {i} api", files=[f"src/f{i}.ts"]),
                make_candidate(f"y{i}", f"Feature {i} client", files=[f"src/f{i}.ts"]),
            )
            for i in range(5)
        ]

        results = await engine.calculate_batch_similarity(pairs)

        assert len(results) == 5
        assert scripted_model.contexts() == ["batch-similarity"]
