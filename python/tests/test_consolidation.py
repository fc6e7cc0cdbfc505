"""
Tests for theme consolidation.

Tests cover:
- Transitive merge groups and contradiction reporting
- Passthrough, merged and synthetic-parent nodes
- Domain grouping with the semantic cache, including repeated names
- Coverage, pair caps and input validation
"""

import pytest

from pr_themes.config import ConsolidationConfig, SimilarityConfig
from pr_themes.consolidation import (
    ConsolidationEngine,
    UnionFind,
    is_valid_domain_name,
    is_valid_theme_name,
)
from pr_themes.hierarchy import flatten, validate_hierarchy_integrity
from pr_themes.models import ConsolidatedTheme, ConsolidationMethod
from pr_themes.semantic_cache import SemanticCache
from pr_themes.similarity import SimilarityEngine

from conftest import make_candidate


def make_engine(batch_processor, config=None, similarity_config=None, semantic_cache=None) -> ConsolidationEngine:
    config = config or ConsolidationConfig(enable_domain_grouping=False)
    similarity = SimilarityEngine(batch_processor, similarity_config or SimilarityConfig())
    return ConsolidationEngine(similarity, batch_processor, config, semantic_cache=semantic_cache)


class TestUnionFind:
    """Tests for the grouping structure."""

    def test_groups_are_transitive_and_ordered(self):
        """Test unions chain and groups keep input order."""
        uf = UnionFind(["a", "b", "c", "d"])
        uf.union("c", "b")
        uf.union("b", "a")

        assert uf.groups(["a", "b", "c", "d"]) == [["a", "b", "c"], ["d"]]
        assert uf.union("a", "c") is False


class TestNameValidation:
    """Tests for generated name checks."""

    def test_domain_names(self):
        """Test domain names reject error text and bad lengths."""
        assert is_valid_domain_name("Payments")
        assert not is_valid_domain_name("Error classifying")
        assert not is_valid_domain_name("ab")

    def test_theme_names(self):
        """Test theme names reject failures and padding."""
        assert is_valid_theme_name("Faster checkout")
        assert not is_valid_theme_name("Analysis failed")
        assert not is_valid_theme_name(" padded ")


class TestGrouping:
    """Tests for merge groups."""

    @pytest.mark.asyncio
    async def test_transitive_closure_wins_and_reports_contradiction(self, batch_processor, scripted_model):
        """Test A~B and B~C group A, B, C even though A-C was vetoed."""
        files = ["src/login.ts"]
        candidates = [
            make_candidate("a", "Login form", files=files),
            make_candidate("b", "Login flow", files=files),
            make_candidate("c", "Login session", files=files),
        ]
        scripted_model.merge_pairs |= {frozenset(("Login form", "Login flow")), frozenset(("Login flow", "Login session"))}
        scripted_model.veto_pairs.add(frozenset(("Login form", "Login session")))

        result = await make_engine(batch_processor).consolidate(candidates)

        assert len(result.themes) == 1
        merged = result.themes[0]
        assert merged.consolidation_method == ConsolidationMethod.PAIRWISE_MERGE
        assert sorted(merged.source_themes) == ["a", "b", "c"]
        assert result.report.merges == 2
        assert [(c.theme1_id, c.theme2_id) for c in result.report.contradictions] == [("a", "c")]
        assert result.report.coverage.is_complete

    @pytest.mark.asyncio
    async def test_unrelated_candidates_pass_through(self, batch_processor, scripted_model):
        """Test singletons keep their content and trace their candidate."""
        candidates = [make_candidate("a", "Alpha"), make_candidate("b", "Beta", snippets=["+x"])]

        themes = await make_engine(batch_processor).consolidate_themes(candidates)

        assert [t.name for t in themes] == ["Alpha", "Beta"]
        assert themes[1].code_snippets == ["+x"]
        assert all(t.consolidation_method == ConsolidationMethod.DIRECT_SINGLE for t in themes)
        assert scripted_model.calls == []

    @pytest.mark.asyncio
    async def test_large_group_gets_synthetic_parent(self, batch_processor, scripted_model):
        """Test a group above max_themes_per_parent keeps members as children."""
        files = ["src/checkout.ts"]
        candidates = [make_candidate(f"c{i}", f"Checkout step {i}", files=files) for i in range(6)]
        for i in range(5):
            scripted_model.merge_pairs.add(frozenset((f"Checkout step {i}", f"Checkout step {i + 1}")))

        result = await make_engine(batch_processor).consolidate(candidates)

        assert len(result.themes) == 1
        parent = result.themes[0]
        assert parent.consolidation_method == ConsolidationMethod.HIERARCHY_GROUP
        assert len(parent.child_themes) == 6
        assert all(child.parent_id == parent.id and child.level == 1 for child in parent.child_themes)
        assert validate_hierarchy_integrity(result.themes).is_valid
        assert sorted(parent.source_themes) == [f"c{i}" for i in range(6)]

    @pytest.mark.asyncio
    async def test_merged_name_refinement(self, batch_processor, scripted_model):
        """Test refine_merged_names asks the model for the group's name."""
        files = ["src/login.ts"]
        candidates = [make_candidate("a", "Login form", files=files), make_candidate("b", "Login flow", files=files)]
        scripted_model.merge_pairs.add(frozenset(("Login form", "Login flow")))
        config = ConsolidationConfig(enable_domain_grouping=False, refine_merged_names=True)

        themes = await make_engine(batch_processor, config).consolidate_themes(candidates)

        assert themes[0].name == "Refined Login form"


class TestDomains:
    """Tests for the business-domain layer."""

    @pytest.mark.asyncio
    async def test_domain_parents(self, batch_processor, scripted_model, fake_clock):
        """Test themes sharing a model-assigned domain get a parent node."""
        scripted_model.domain_handler = lambda names: {
            "domains": [{"domain": "Payments", "themes": ["Alpha", "Beta"], "confidence": 0.9}]
        }
        cache = SemanticCache(clock=fake_clock)
        engine = make_engine(
            batch_processor, ConsolidationConfig(enable_domain_grouping=True), semantic_cache=cache
        )
        candidates = [make_candidate("a", "Alpha"), make_candidate("b", "Beta"), make_candidate("g", "Gamma")]

        result = await engine.consolidate(candidates)

        assert result.report.domains == {"Payments": 2, "General Improvements": 1}
        payments = next(t for t in result.themes if t.name == "Payments")
        assert [c.name for c in payments.child_themes] == ["Alpha", "Beta"]
        assert cache.get_cache_stats()["entries"] == 2

    @pytest.mark.asyncio
    async def test_invalid_domain_falls_back_to_keywords(self, batch_processor, scripted_model):
        """Test an invalid model domain is ignored in favour of keyword inference."""
        scripted_model.domain_handler = lambda names: {
            "domains": [{"domain": "Error: unknown", "themes": names}]
        }
        engine = make_engine(batch_processor, ConsolidationConfig(enable_domain_grouping=True))
        themes = await make_engine(batch_processor).consolidate_themes(
            [make_candidate("a", "Fix crash"), make_candidate("b", "Alpha")]
        )

        domains = await engine.classify_domains(themes)

        assert sorted(domains.values()) == ["Fix User-Facing Issues", "General Improvements"]

    @pytest.mark.asyncio
    async def test_themes_sharing_a_name_share_the_domain(self, batch_processor, scripted_model):
        """Test a domain answered once by name reaches every theme with that name."""
        scripted_model.domain_handler = lambda names: {
            "domains": [{"domain": "Payments", "themes": sorted(set(names)), "confidence": 0.9}]
        }
        engine = make_engine(batch_processor, ConsolidationConfig(enable_domain_grouping=True))
        themes = [
            ConsolidatedTheme(id="t1", name="Alpha", description="Checkout api", affected_files=["src/api.ts"]),
            ConsolidatedTheme(id="t2", name="Alpha", description="Checkout page", affected_files=["src/page.ts"]),
        ]

        domains = await engine.classify_domains(themes)

        assert domains == {"t1": "Payments", "t2": "Payments"}


class TestValidation:
    """Tests for input checks and limits."""

    @pytest.mark.asyncio
    async def test_duplicate_ids_rejected(self, batch_processor):
        """Test duplicate candidate ids raise ValueError."""
        with pytest.raises(ValueError):
            await make_engine(batch_processor).consolidate(
                [make_candidate("a", "Alpha"), make_candidate("a", "Beta")]
            )

    @pytest.mark.asyncio
    async def test_empty_input(self, batch_processor):
        """Test no candidates give an empty forest."""
        result = await make_engine(batch_processor).consolidate([])

        assert result.themes == []
        assert result.report.candidate_count == 0

    @pytest.mark.asyncio
    async def test_pair_cap_skips_least_similar_pairs(self, batch_processor):
        """Test max_pairs bounds the number of comparisons."""
        candidates = [make_candidate(c, name) for c, name in zip("abcd", ["Alpha", "Beta", "Gamma", "Delta"])]

        result = await make_engine(batch_processor, similarity_config=SimilarityConfig(max_pairs=2)).consolidate(
            candidates
        )

        assert result.report.pair_count == 2
        assert result.report.pairs_skipped == 4
        assert len(flatten(result.themes)) == 4
        assert result.report.coverage.is_complete
