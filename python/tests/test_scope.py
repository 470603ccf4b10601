"""
Unit tests for the jurisdiction tree snapshot and the Access Scope Resolver.
"""

import logging

import pytest

from registry.errors import AccessDenied, EntityNotFoundError, InvalidHierarchyError
from registry.models import JurisdictionLevel, Role
from registry.scope import JurisdictionTree, Principal, ScopeKind, ScopeResolver, TreeNode


# ============================================
# TREE SNAPSHOT
# ============================================

class TestJurisdictionTree:
    """Tests for the in-memory tree."""

    def test_load_reads_every_node(self, tree, seeded):
        assert len(tree) == 10
        assert tree.root.id == seeded.n

    def test_descendants_include_self_by_default(self, tree, seeded):
        assert tree.descendants(seeded.d1) == {seeded.d1, seeded.g1, seeded.g2}
        assert tree.descendants(seeded.d1, include_self=False) == {seeded.g1, seeded.g2}

    def test_gn_descendants_of_district(self, tree, seeded):
        assert tree.gn_descendants(seeded.ds1) == {seeded.g1, seeded.g2, seeded.g3}

    def test_gn_descendants_of_gn_is_itself(self, tree, seeded):
        assert tree.gn_descendants(seeded.g4) == {seeded.g4}

    def test_unknown_node_has_no_descendants(self, tree):
        assert tree.descendants(999999) == frozenset()

    def test_ancestors_are_root_first(self, tree, seeded):
        path = [n.id for n in tree.ancestors(seeded.g2)]
        assert path == [seeded.n, seeded.ds1, seeded.d1, seeded.g2]

    def test_children_sorted_by_id(self, tree, seeded):
        assert [c.id for c in tree.children(seeded.ds1)] == sorted([seeded.d1, seeded.d2])

    def test_node_raises_for_unknown_id(self, tree):
        with pytest.raises(EntityNotFoundError):
            tree.node(424242)

    def test_valid_tree_has_no_problems(self, tree):
        assert tree.validate() == []

    def test_skipped_level_is_reported(self, caplog):
        nodes = [
            TreeNode(1, JurisdictionLevel.NATIONAL, None),
            TreeNode(2, JurisdictionLevel.DIVISION, 1),
        ]
        with caplog.at_level(logging.WARNING, logger="registry.scope"):
            tree = JurisdictionTree(nodes)
        assert len(tree.validate()) == 1
        assert "inconsistency" in caplog.text

    def test_check_placement_accepts_next_level(self, tree, seeded):
        tree.check_placement(JurisdictionLevel.GN, seeded.d2)

    def test_check_placement_rejects_skipped_level(self, tree, seeded):
        with pytest.raises(InvalidHierarchyError):
            tree.check_placement(JurisdictionLevel.GN, seeded.ds1)

    def test_check_placement_rejects_missing_parent(self, tree):
        with pytest.raises(InvalidHierarchyError):
            tree.check_placement(JurisdictionLevel.DISTRICT, 31337)

    def test_national_node_cannot_have_parent(self, tree, seeded):
        with pytest.raises(InvalidHierarchyError):
            tree.check_placement(JurisdictionLevel.NATIONAL, seeded.n)


# ============================================
# SCOPE RESOLUTION
# ============================================

class TestScopeResolution:
    """Tests for ScopeResolver.resolve()."""

    def test_moha_is_unrestricted(self, tree, seeded, principal_for):
        scope = ScopeResolver(tree).resolve(principal_for(seeded.moha))
        assert scope.unrestricted is True
        assert scope.jurisdiction_ids == tree.all_ids
        assert scope.gn_ids == {seeded.g1, seeded.g2, seeded.g3, seeded.g4}

    def test_district_sees_its_subtree(self, tree, seeded, principal_for):
        scope = ScopeResolver(tree).resolve(principal_for(seeded.district))
        assert scope.unrestricted is False
        assert scope.home_id == seeded.ds1
        assert scope.gn_ids == {seeded.g1, seeded.g2, seeded.g3}
        assert seeded.g4 not in scope.jurisdiction_ids

    def test_division_sees_its_gns(self, tree, seeded, principal_for):
        scope = ScopeResolver(tree).resolve(principal_for(seeded.division))
        assert scope.gn_ids == {seeded.g1, seeded.g2}

    def test_gn_sees_only_itself(self, tree, seeded, principal_for):
        scope = ScopeResolver(tree).resolve(principal_for(seeded.gn))
        assert scope.gn_ids == {seeded.g1}
        assert scope.jurisdiction_ids == {seeded.g1}

    def test_disabled_account_is_denied(self, tree, seeded, principal_for, caplog):
        with caplog.at_level(logging.WARNING, logger="security"):
            with pytest.raises(AccessDenied):
                ScopeResolver(tree).resolve(principal_for(seeded.disabled))
        assert "ACCOUNT_DISABLED" in caplog.text

    def test_orphaned_account_is_denied(self, tree, seeded, principal_for, caplog):
        with caplog.at_level(logging.WARNING, logger="security"):
            with pytest.raises(AccessDenied) as exc_info:
                ScopeResolver(tree).resolve(principal_for(seeded.orphan))
        assert exc_info.value.user_id == seeded.orphan
        assert "SCOPE_UNRESOLVED" in caplog.text

    def test_role_bound_to_wrong_level_is_denied(self, tree, seeded, principal_for, caplog):
        with caplog.at_level(logging.WARNING, logger="security"):
            with pytest.raises(AccessDenied):
                ScopeResolver(tree).resolve(principal_for(seeded.mismatched))
        assert "ROLE_MISMATCH" in caplog.text

    def test_home_missing_from_tree_is_denied(self, tree):
        principal = Principal(user_id=77, role=Role.DIVISION, home_jurisdiction_id=123456)
        with pytest.raises(AccessDenied):
            ScopeResolver(tree).resolve(principal)


class TestScopeRestriction:
    """Tests for intersecting a requested jurisdiction with the scope."""

    def test_no_request_returns_whole_scope(self, tree, seeded, principal_for):
        resolver = ScopeResolver(tree)
        scope = resolver.resolve(principal_for(seeded.district))
        assert resolver.restrict(scope) == scope.gn_ids

    def test_request_inside_scope_narrows(self, tree, seeded, principal_for):
        resolver = ScopeResolver(tree)
        scope = resolver.resolve(principal_for(seeded.district))
        assert resolver.restrict(scope, seeded.d1) == {seeded.g1, seeded.g2}

    def test_request_outside_scope_is_denied(self, tree, seeded, principal_for, caplog):
        resolver = ScopeResolver(tree)
        scope = resolver.resolve(principal_for(seeded.district))
        with caplog.at_level(logging.WARNING, logger="security"):
            with pytest.raises(AccessDenied):
                resolver.restrict(scope, seeded.g4)
        assert "OUT_OF_SCOPE" in caplog.text

    def test_node_kind_returns_all_levels(self, tree, seeded, principal_for):
        resolver = ScopeResolver(tree)
        scope = resolver.resolve(principal_for(seeded.district))
        assert resolver.restrict(scope, seeded.d2, ScopeKind.NODE) == {seeded.d2, seeded.g3}

    def test_gn_under_node_without_gns_is_empty(self, tree, seeded, principal_for):
        resolver = ScopeResolver(tree)
        scope = resolver.resolve(principal_for(seeded.moha))
        assert resolver.restrict(scope, seeded.g3) == {seeded.g3}


class TestManagePermission:
    """Tests for can_manage()/require_manage()."""

    def test_district_manages_division_below(self, tree, seeded, principal_for):
        resolver = ScopeResolver(tree)
        scope = resolver.resolve(principal_for(seeded.district))
        assert resolver.can_manage(scope, seeded.d1) is True
        assert resolver.can_manage(scope, seeded.g3) is True

    def test_cannot_manage_own_level(self, tree, seeded, principal_for):
        resolver = ScopeResolver(tree)
        scope = resolver.resolve(principal_for(seeded.district))
        assert resolver.can_manage(scope, seeded.ds1) is False

    def test_cannot_manage_outside_scope(self, tree, seeded, principal_for):
        resolver = ScopeResolver(tree)
        scope = resolver.resolve(principal_for(seeded.district))
        assert resolver.can_manage(scope, seeded.d3) is False

    def test_gn_manages_nothing(self, tree, seeded, principal_for):
        resolver = ScopeResolver(tree)
        scope = resolver.resolve(principal_for(seeded.gn))
        assert resolver.can_manage(scope, seeded.g1) is False

    def test_require_manage_raises(self, tree, seeded, principal_for):
        resolver = ScopeResolver(tree)
        scope = resolver.resolve(principal_for(seeded.division))
        with pytest.raises(AccessDenied):
            resolver.require_manage(scope, seeded.d1, "edit")
