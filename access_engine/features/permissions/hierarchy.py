"""
Role inheritance graph.

An edge (parent, child) means the child role inherits the parent's grants
when inherits_permissions is set. expand(role) walks from a role up to every
ancestor reachable through inheriting edges.

Writers validate against the current snapshot and publish a new one only
after validation succeeds, so a rejected edge never becomes visible.
"""
import threading
from collections import deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from access_engine.core.exceptions import ConflictError, CycleError, NotFoundError
from access_engine.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class RoleEdge:
    """Parent -> child inheritance edge."""

    parent: str
    child: str
    inherits_permissions: bool = True


class HierarchySnapshot:
    """Immutable adjacency view of the role graph."""

    def __init__(self, edges: Mapping[tuple[str, str], RoleEdge]):
        self.edges = edges
        parents: dict[str, list[str]] = {}
        inheriting: dict[str, list[str]] = {}
        children: dict[str, list[str]] = {}
        for edge in edges.values():
            parents.setdefault(edge.child, []).append(edge.parent)
            children.setdefault(edge.parent, []).append(edge.child)
            if edge.inherits_permissions:
                inheriting.setdefault(edge.child, []).append(edge.parent)
        self._parents = {role: tuple(sorted(names)) for role, names in parents.items()}
        self._inheriting = {role: tuple(sorted(names)) for role, names in inheriting.items()}
        self._children = {role: tuple(sorted(names)) for role, names in children.items()}

    def parents(self, role: str) -> tuple[str, ...]:
        return self._parents.get(role, ())

    def children(self, role: str) -> tuple[str, ...]:
        return self._children.get(role, ())

    def expand(self, role: str) -> frozenset[str]:
        """Return the role plus every ancestor reachable through inheriting edges."""
        return self.expand_all((role,))

    def expand_all(self, roles: Iterable[str]) -> frozenset[str]:
        """Closure of a set of roles under inheritance.

        The visited set bounds the walk, so a cycle that slipped into storage
        ends the traversal instead of hanging it.
        """
        visited: set[str] = set()
        queue = deque(roles)
        while queue:
            role = queue.popleft()
            if role in visited:
                continue
            visited.add(role)
            queue.extend(p for p in self._inheriting.get(role, ()) if p not in visited)
        return frozenset(visited)

    def would_cycle(self, parent: str, child: str) -> bool:
        """True if adding parent -> child would make child its own ancestor."""
        if parent == child:
            return True
        visited: set[str] = set()
        queue = deque([parent])
        while queue:
            role = queue.popleft()
            if role == child:
                return True
            if role in visited:
                continue
            visited.add(role)
            queue.extend(self._parents.get(role, ()))
        return False


class RoleHierarchyGraph:
    """
    Copy-on-write role hierarchy.

    Usage:
        graph = RoleHierarchyGraph()
        graph.add_edge("viewer", "editor")   # editor inherits viewer
        graph.expand("editor")               # {"editor", "viewer"}
    """

    def __init__(self, edges: Iterable[RoleEdge] = ()):
        self._lock = threading.Lock()
        self._snapshot = HierarchySnapshot(MappingProxyType({}))
        self.load(edges)

    def snapshot(self) -> HierarchySnapshot:
        return self._snapshot

    def load(self, edges: Iterable[RoleEdge]) -> None:
        """Replace the graph with edges loaded from storage."""
        mapping = {(edge.parent, edge.child): edge for edge in edges}
        with self._lock:
            self._snapshot = HierarchySnapshot(MappingProxyType(mapping))

    def expand(self, role: str) -> frozenset[str]:
        return self._snapshot.expand(role)

    def expand_all(self, roles: Iterable[str]) -> frozenset[str]:
        return self._snapshot.expand_all(roles)

    def parents(self, role: str) -> tuple[str, ...]:
        return self._snapshot.parents(role)

    def children(self, role: str) -> tuple[str, ...]:
        return self._snapshot.children(role)

    def edges(self) -> list[RoleEdge]:
        return sorted(self._snapshot.edges.values(), key=lambda e: (e.parent, e.child))

    def would_cycle(self, parent: str, child: str) -> bool:
        return self._snapshot.would_cycle(parent, child)

    def validate_edge(self, parent: str, child: str) -> None:
        """Raise CycleError or ConflictError if the edge cannot be added."""
        snapshot = self._snapshot
        if snapshot.would_cycle(parent, child):
            raise CycleError(parent, child)
        if (parent, child) in snapshot.edges:
            raise ConflictError(f"Role inheritance {parent!r} -> {child!r} already exists")

    def add_edge(self, parent: str, child: str, inherits_permissions: bool = True) -> RoleEdge:
        """Add an edge, raising CycleError without touching the graph if it would loop."""
        edge = RoleEdge(parent, child, inherits_permissions)
        with self._lock:
            self.validate_edge(parent, child)
            edges = dict(self._snapshot.edges)
            edges[(parent, child)] = edge
            self._snapshot = HierarchySnapshot(MappingProxyType(edges))
        log.debug("Added role inheritance %s -> %s", parent, child)
        return edge

    def remove_edge(self, parent: str, child: str) -> None:
        with self._lock:
            if (parent, child) not in self._snapshot.edges:
                raise NotFoundError(f"Role inheritance {parent!r} -> {child!r} not found")
            edges = dict(self._snapshot.edges)
            del edges[(parent, child)]
            self._snapshot = HierarchySnapshot(MappingProxyType(edges))
        log.debug("Removed role inheritance %s -> %s", parent, child)
