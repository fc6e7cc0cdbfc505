"""
Tests for theme forest utilities and cross-level deduplication.

Tests cover:
- relink() and source propagation
- Integrity checks: orphans, cycles, shared ownership, levels, duplicate ids
- Coverage verification
- Cross-level duplicate detection and merging, including moved subtrees
"""

import pytest

from pr_themes.config import ExpansionConfig
from pr_themes.errors import HierarchyIntegrityError
from pr_themes.hierarchy import (
    CrossLevelDeduplicator,
    choose_primary,
    count_themes,
    find,
    flatten,
    max_depth,
    propagate_sources,
    relink,
    validate_hierarchy_integrity,
    verify_coverage,
)
from pr_themes.models import ConsolidatedTheme, ExpansionState

from conftest import ScriptedModel


def theme(theme_id: str, name: str | None = None, children=None, files=None, confidence=0.7, sources=None):
    return ConsolidatedTheme(
        id=theme_id,
        name=name or theme_id.title(),
        description=f"{theme_id} changes",
        child_themes=children or [],
        affected_files=files or [f"src/{theme_id}.ts"],
        confidence=confidence,
        source_themes=sources if sources is not None else [theme_id],
    )


def sample_forest() -> list[ConsolidatedTheme]:
    forest = [theme("root", children=[theme("child", children=[theme("leaf")])]), theme("other")]
    relink(forest)
    return forest


def leaf_and_parent_forest() -> list[ConsolidatedTheme]:
    login = theme("c1", "Login", files=["src/login.ts"], confidence=0.8)
    login.is_atomic = True
    login.expansion_state = ExpansionState.ATOMIC
    forest = [
        theme("r1", "Auth", children=[login]),
        theme("r2", "Login handler", files=["src/login.ts"], confidence=0.6,
              children=[theme("x", "Handler tests", files=["tests/handler.ts"])]),
    ]
    relink(forest)
    return forest


def duplicate_logins(name1: str, name2: str) -> dict:
    if {name1, name2} == {"Login", "Login handler"}:
        return {
            "similarityScore": 0.95, "relationshipType": "duplicate", "action": "merge_down",
            "confidence": 0.9, "reasoning": "same change",
        }
    return ScriptedModel.always_distinct(name1, name2)


class TestTraversal:
    """Tests for walking and relinking."""

    def test_relink_sets_levels_and_parent_ids(self):
        """Test levels and parent ids follow ownership."""
        forest = sample_forest()

        leaf = find(forest, "leaf")
        assert leaf.level == 2
        assert leaf.parent_id == "child"
        assert forest[1].parent_id is None
        assert max_depth(forest) == 2
        assert count_themes(forest) == 4

    def test_flatten_is_pre_order(self):
        """Test flatten visits parents before children."""
        assert [t.id for t in flatten(sample_forest())] == ["root", "child", "leaf", "other"]

    def test_propagate_sources(self):
        """Test every ancestor traces its descendants' candidates."""
        forest = sample_forest()

        propagate_sources(forest)

        assert forest[0].source_themes == ["root", "child", "leaf"]


class TestIntegrity:
    """Tests for validate_hierarchy_integrity()."""

    def test_valid_forest(self):
        """Test a relinked forest is valid."""
        report = validate_hierarchy_integrity(sample_forest())

        assert report.is_valid
        assert report.theme_count == 4

    def test_stale_parent_id_is_an_orphan(self):
        """Test a parent_id that does not name the owner is reported."""
        forest = sample_forest()
        find(forest, "leaf").parent_id = "other"

        report = validate_hierarchy_integrity(forest)

        assert not report.is_valid
        assert len(report.orphans) == 1

    def test_level_mismatch(self):
        """Test a child not one level below its owner is reported."""
        forest = sample_forest()
        find(forest, "leaf").level = 5

        assert validate_hierarchy_integrity(forest).level_errors

    def test_ownership_cycle(self):
        """Test a node owning its own ancestor is reported without looping."""
        a = theme("a")
        b = theme("b", children=[a])
        a.child_themes.append(b)

        report = validate_hierarchy_integrity([a])

        assert report.cycles == ["a"]

    def test_parent_id_cycle(self):
        """Test parent_id chains that loop are reported."""
        a, b = theme("a"), theme("b")
        a.parent_id, b.parent_id = "b", "a"

        report = validate_hierarchy_integrity([a, b])

        assert sorted(report.cycles) == ["a", "b"]

    def test_duplicate_ids(self):
        """Test two nodes with one id are reported."""
        report = validate_hierarchy_integrity([theme("x"), theme("x")])

        assert report.duplicate_ids == ["x"]

    def test_shared_child_raises_during_walk(self):
        """Test flatten refuses a node owned twice."""
        shared = theme("shared")

        with pytest.raises(HierarchyIntegrityError):
            flatten([theme("p1", children=[shared]), theme("p2", children=[shared])])


class TestCoverage:
    """Tests for verify_coverage()."""

    def test_complete_coverage(self):
        """Test every candidate traced exactly once."""
        forest = [theme("r", sources=["a", "b"]), theme("s", sources=["c"])]

        report = verify_coverage(["a", "b", "c"], forest)

        assert report.is_complete
        assert report.covered == 3

    def test_missing_candidate_warns_or_raises(self):
        """Test a gap is reported, and raised when strict."""
        forest = [theme("r", sources=["a"])]

        assert verify_coverage(["a", "b"], forest).missing == ["b"]
        with pytest.raises(HierarchyIntegrityError):
            verify_coverage(["a", "b"], forest, strict=True)

    def test_shared_ids_under_exclusive_roots(self):
        """Test an id under two roots is a violation only with exclusive_roots."""
        forest = [theme("r", sources=["a"]), theme("s", sources=["a"])]

        assert verify_coverage(["a"], forest).shared == ["a"]
        verify_coverage(["a"], forest, strict=True)
        with pytest.raises(HierarchyIntegrityError):
            verify_coverage(["a"], forest, strict=True, exclusive_roots=True)


class TestCrossLevel:
    """Tests for cross-level deduplication."""

    def test_pair_selection(self, batch_processor):
        """Test siblings, parent-child pairs and unrelated pairs are skipped."""
        forest = [
            theme("auth", "Auth", children=[theme("login", "Login", files=["src/login.ts"])]),
            theme("handler", "Login handler", files=["src/login.ts"]),
            theme("docs", "Docs", files=["README.md"]),
        ]
        relink(forest)

        pairs = CrossLevelDeduplicator(batch_processor).candidate_pairs(forest)

        assert [(a.id, b.id) for a, b in pairs] == [("login", "handler")]

    def test_choose_primary(self):
        """Test higher confidence wins, then the deeper node."""
        high, low = theme("h", confidence=0.9), theme("l", confidence=0.5)
        assert choose_primary(low, high, "merge_up") == (high, low)

        shallow, deep = theme("s"), theme("d")
        deep.level = 1
        assert choose_primary(shallow, deep, "merge_up") == (deep, shallow)

    @pytest.mark.asyncio
    async def test_duplicate_is_merged_across_levels(self, batch_processor, scripted_model):
        """Test a root duplicating a nested theme is absorbed into it."""
        forest = [
            theme("auth", "Auth", children=[theme("login", "Login", files=["src/login.ts"], confidence=0.8)]),
            theme("handler", "Login handler", files=["src/login.ts", "src/handler.ts"], confidence=0.6),
        ]

        def judge(name1, name2):
            if {name1, name2} == {"Login", "Login handler"}:
                return {
                    "similarityScore": 0.95, "relationshipType": "duplicate", "action": "merge_down",
                    "confidence": 0.9, "reasoning": "same change",
                }
            return scripted_model.always_distinct(name1, name2)

        scripted_model.cross_level_handler = judge

        result = await CrossLevelDeduplicator(batch_processor).deduplicate(forest)

        assert [t.id for t in result.forest] == ["auth"]
        login = find(result.forest, "login")
        assert "handler" in login.source_themes
        assert "src/handler.ts" in login.affected_files
        assert result.duplicates_removed == 1
        assert result.original_count == 3
        assert result.deduplicated_count == 2
        assert validate_hierarchy_integrity(result.forest).is_valid

    @pytest.mark.asyncio
    async def test_overlap_respects_configuration(self, batch_processor, scripted_model):
        """Test overlaps are kept separate when overlap merging is disabled."""
        forest = [
            theme("auth", "Auth", children=[theme("login", "Login", files=["src/login.ts"])]),
            theme("handler", "Login handler", files=["src/login.ts"]),
        ]
        scripted_model.cross_level_handler = lambda n1, n2: {
            "similarityScore": 0.9, "relationshipType": "overlap", "action": "merge_sibling",
            "confidence": 0.8, "reasoning": "shared scope",
        }
        deduplicator = CrossLevelDeduplicator(batch_processor, ExpansionConfig(allow_overlap_merging=False))

        result = await deduplicator.deduplicate(forest)

        assert result.deduplicated_count == 3
        assert result.comparisons == 1

    @pytest.mark.asyncio
    async def test_kept_leaf_gaining_children_is_no_longer_atomic(self, batch_processor, scripted_model):
        """Test an atomic leaf that absorbs a parent theme becomes an expanded parent."""
        forest = leaf_and_parent_forest()
        scripted_model.cross_level_handler = duplicate_logins

        result = await CrossLevelDeduplicator(batch_processor).deduplicate(forest)

        kept = find(result.forest, "c1")
        assert [t.id for t in result.forest] == ["r1"]
        assert [child.id for child in kept.child_themes] == ["x"]
        assert kept.is_atomic is False
        assert kept.expansion_state == ExpansionState.EXPANDED
        moved = find(result.forest, "x")
        assert moved.level == 2
        assert moved.parent_id == "c1"
        assert validate_hierarchy_integrity(result.forest).is_valid

    @pytest.mark.asyncio
    async def test_merge_past_max_depth_is_skipped(self, batch_processor, scripted_model):
        """Test a merge that would move children below max_depth leaves the forest alone."""
        forest = leaf_and_parent_forest()
        scripted_model.cross_level_handler = duplicate_logins
        deduplicator = CrossLevelDeduplicator(batch_processor, ExpansionConfig(max_depth=1))

        result = await deduplicator.deduplicate(forest)

        assert result.deduplicated_count == result.original_count == 4
        assert result.duplicates_removed == 0
        assert find(result.forest, "c1").is_atomic is True
        assert max_depth(result.forest) == 1
