"""Tests for the role inheritance graph."""

import pytest

from access_engine.core.exceptions import ConflictError, CycleError, NotFoundError
from access_engine.features.permissions.hierarchy import RoleEdge, RoleHierarchyGraph


@pytest.fixture
def graph() -> RoleHierarchyGraph:
    # viewer <- editor <- admin, auditor <- admin (admin inherits both)
    return RoleHierarchyGraph([
        RoleEdge("viewer", "editor"),
        RoleEdge("editor", "admin"),
        RoleEdge("auditor", "admin"),
    ])


# ---------------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------------


class TestExpand:
    def test_role_without_edges_expands_to_itself(self, graph):
        assert graph.expand("guest") == {"guest"}

    def test_transitive_ancestors(self, graph):
        assert graph.expand("admin") == {"admin", "editor", "viewer", "auditor"}
        assert graph.expand("editor") == {"editor", "viewer"}

    def test_parents_do_not_inherit_from_children(self, graph):
        assert graph.expand("viewer") == {"viewer"}

    def test_non_inheriting_edge_is_not_followed(self):
        graph = RoleHierarchyGraph([RoleEdge("viewer", "editor", inherits_permissions=False)])
        assert graph.expand("editor") == {"editor"}
        assert graph.parents("editor") == ("viewer",)

    def test_expand_is_idempotent(self, graph):
        for role in ("admin", "editor", "viewer", "auditor", "guest"):
            closure = graph.expand(role)
            assert graph.expand_all(closure) == closure

    def test_diamond_is_not_a_cycle(self):
        graph = RoleHierarchyGraph()
        graph.add_edge("base", "left")
        graph.add_edge("base", "right")
        graph.add_edge("left", "top")
        graph.add_edge("right", "top")
        assert graph.expand("top") == {"top", "left", "right", "base"}

    def test_cycle_loaded_from_storage_terminates(self):
        graph = RoleHierarchyGraph([RoleEdge("a", "b"), RoleEdge("b", "a")])
        assert graph.expand("a") == {"a", "b"}

    def test_neighbours(self, graph):
        assert graph.parents("admin") == ("auditor", "editor")
        assert graph.children("viewer") == ("editor",)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestWrites:
    def test_self_edge_is_a_cycle(self, graph):
        with pytest.raises(CycleError):
            graph.add_edge("viewer", "viewer")

    def test_cycle_is_rejected_and_graph_unchanged(self, graph):
        before = graph.edges()
        with pytest.raises(CycleError) as exc:
            graph.add_edge("admin", "viewer")
        assert exc.value.parent == "admin"
        assert exc.value.child == "viewer"
        assert graph.edges() == before
        assert graph.expand("viewer") == {"viewer"}

    def test_cycle_through_non_inheriting_edge_is_rejected(self):
        graph = RoleHierarchyGraph([RoleEdge("a", "b", inherits_permissions=False)])
        with pytest.raises(CycleError):
            graph.add_edge("b", "a")

    def test_would_cycle_does_not_modify(self, graph):
        assert graph.would_cycle("admin", "viewer") is True
        assert graph.would_cycle("guest", "viewer") is False
        assert graph.expand("viewer") == {"viewer"}

    def test_duplicate_edge_conflicts(self, graph):
        with pytest.raises(ConflictError):
            graph.add_edge("viewer", "editor")

    def test_add_and_remove(self, graph):
        graph.add_edge("guest", "viewer")
        assert "guest" in graph.expand("admin")
        graph.remove_edge("guest", "viewer")
        assert "guest" not in graph.expand("admin")

    def test_remove_missing_edge(self, graph):
        with pytest.raises(NotFoundError):
            graph.remove_edge("admin", "viewer")

    def test_pinned_snapshot_does_not_see_new_edges(self, graph):
        pinned = graph.snapshot()
        graph.add_edge("guest", "viewer")
        assert "guest" not in pinned.expand("viewer")
        assert "guest" in graph.expand("viewer")
