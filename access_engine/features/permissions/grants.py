"""
Grant index: (role, resource, action) -> grants.

Two kinds of grant coexist:
- simple: (role, resource name, action name), unconditional
- extended: (role, resource, action, conditions, priority, status)

The index also carries the role/resource/action catalog so that a grant
referencing an inactive role, resource or action stays inert without being
deleted. Like the other stores it is copy-on-write: every write rebuilds an
immutable snapshot and swaps it in.
"""
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Iterable, Literal, Mapping, Optional

from access_engine.core.exceptions import NotFoundError
from access_engine.features.permissions.conditions import Conditions


GrantKind = Literal["simple", "extended"]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class CatalogEntry:
    """A role, resource or action with its numeric id and status."""

    id: int
    name: str
    is_active: bool = True


@dataclass(frozen=True)
class Grant:
    """One simple or extended grant, keyed by names."""

    id: int
    kind: GrantKind
    role: str
    resource: str
    action: str
    conditions: Optional[Conditions] = None
    priority: int = 0
    is_active: bool = True
    created_at: Optional[datetime] = None

    def order_key(self) -> tuple:
        """Sort key: simple first, then priority desc, newest first, higher id first."""
        created = self.created_at or _EPOCH
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (0 if self.kind == "simple" else 1, -self.priority, -created.timestamp(), -self.id)


class GrantSnapshot:
    """Immutable, indexed view of the catalog and every grant."""

    def __init__(
        self,
        roles: Mapping[str, CatalogEntry],
        resources: Mapping[str, CatalogEntry],
        actions: Mapping[str, CatalogEntry],
        simple: Mapping[tuple[int, str], Grant],
        extended: Mapping[int, Grant],
    ):
        self.roles = roles
        self.resources = resources
        self.actions = actions
        self.simple = simple
        self.extended = extended

        by_pair: dict[tuple[str, str], list[Grant]] = {}
        for grant in simple.values():
            by_pair.setdefault((grant.resource, grant.action), []).append(grant)
        self._simple_by_pair = {pair: tuple(sorted(g, key=Grant.order_key)) for pair, g in by_pair.items()}

        by_pair = {}
        for grant in extended.values():
            by_pair.setdefault((grant.resource, grant.action), []).append(grant)
        self._extended_by_pair = {pair: tuple(sorted(g, key=Grant.order_key)) for pair, g in by_pair.items()}

    # -- Catalog ---------------------------------------------------------------

    def is_role_active(self, role: str) -> bool:
        entry = self.roles.get(role)
        return entry is not None and entry.is_active

    def resource_id(self, resource: str) -> Optional[int]:
        entry = self.resources.get(resource)
        return entry.id if entry is not None else None

    def action_id(self, action: str) -> Optional[int]:
        entry = self.actions.get(action)
        return entry.id if entry is not None else None

    def _target_active(self, catalog: Mapping[str, CatalogEntry], name: str, required: bool) -> bool:
        entry = catalog.get(name)
        if entry is None:
            return not required
        return entry.is_active

    def _live(self, grant: Grant) -> bool:
        # Simple grants name free-form resources and actions, so only a
        # catalogued-but-inactive target makes them inert. Extended grants are
        # keyed by ids and always need a live catalog entry.
        required = grant.kind == "extended"
        return (
            grant.is_active
            and self.is_role_active(grant.role)
            and self._target_active(self.resources, grant.resource, required)
            and self._target_active(self.actions, grant.action, required)
        )

    # -- Lookups ---------------------------------------------------------------

    def find_simple(self, roles: Iterable[str], resource: str, action: str) -> Optional[Grant]:
        role_set = frozenset(roles)
        for grant in self._simple_by_pair.get((resource, action), ()):
            if grant.role in role_set and self._live(grant):
                return grant
        return None

    def check_simple(self, roles: Iterable[str], resource: str, action: str) -> bool:
        return self.find_simple(roles, resource, action) is not None

    def candidates_for(self, roles: Iterable[str], resource: str, action: str) -> list[Grant]:
        """Matching live grants, simple first, then by priority and recency."""
        role_set = frozenset(roles)
        pair = (resource, action)
        matches = [
            grant
            for grant in self._simple_by_pair.get(pair, ()) + self._extended_by_pair.get(pair, ())
            if grant.role in role_set and self._live(grant)
        ]
        matches.sort(key=Grant.order_key)
        return matches

    def grants_for_role(self, role: str) -> list[Grant]:
        grants = [g for g in self.simple.values() if g.role == role]
        grants += [g for g in self.extended.values() if g.role == role]
        return sorted(grants, key=Grant.order_key)

    def live_grants_for(self, roles: Iterable[str]) -> list[Grant]:
        """Every live grant held by any of the roles, in decision order."""
        role_set = frozenset(roles)
        grants = [
            grant
            for grant in list(self.simple.values()) + list(self.extended.values())
            if grant.role in role_set and self._live(grant)
        ]
        return sorted(grants, key=Grant.order_key)


class GrantIndex:
    """
    Copy-on-write grant index.

    Usage:
        index = GrantIndex()
        index.put_role(CatalogEntry(1, "viewer"))
        index.add_simple(Grant(1, "simple", "viewer", "doc", "read"))
        index.check_simple({"viewer"}, "doc", "read")  # True
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshot = GrantSnapshot(*(MappingProxyType({}) for _ in range(5)))

    def snapshot(self) -> GrantSnapshot:
        return self._snapshot

    def load(
        self,
        roles: Iterable[CatalogEntry] = (),
        resources: Iterable[CatalogEntry] = (),
        actions: Iterable[CatalogEntry] = (),
        simple: Iterable[Grant] = (),
        extended: Iterable[Grant] = (),
    ) -> None:
        """Replace the index with records loaded from storage."""
        with self._lock:
            self._snapshot = GrantSnapshot(
                MappingProxyType({r.name: r for r in roles}),
                MappingProxyType({r.name: r for r in resources}),
                MappingProxyType({a.name: a for a in actions}),
                MappingProxyType({(g.id, g.role): g for g in simple}),
                MappingProxyType({g.id: g for g in extended}),
            )

    # -- Reads -----------------------------------------------------------------

    def check_simple(self, roles: Iterable[str], resource: str, action: str) -> bool:
        return self._snapshot.check_simple(roles, resource, action)

    def candidates_for(self, roles: Iterable[str], resource: str, action: str) -> list[Grant]:
        return self._snapshot.candidates_for(roles, resource, action)

    def grants_for_role(self, role: str) -> list[Grant]:
        return self._snapshot.grants_for_role(role)

    def live_grants_for(self, roles: Iterable[str]) -> list[Grant]:
        return self._snapshot.live_grants_for(roles)

    def is_role_active(self, role: str) -> bool:
        return self._snapshot.is_role_active(role)

    # -- Writes ----------------------------------------------------------------

    def put_role(self, entry: CatalogEntry) -> None:
        self._publish(roles={entry.name: entry})

    def put_resource(self, entry: CatalogEntry) -> None:
        self._publish(resources={entry.name: entry})

    def put_action(self, entry: CatalogEntry) -> None:
        self._publish(actions={entry.name: entry})

    def remove_resource(self, name: str) -> None:
        with self._lock:
            snapshot = self._snapshot
            if name not in snapshot.resources:
                raise NotFoundError(f"Resource {name!r} not found")
            resources = {key: entry for key, entry in snapshot.resources.items() if key != name}
            self._swap(snapshot, resources=resources)

    def add_simple(self, grant: Grant) -> None:
        if grant.kind != "simple":
            raise ValueError("add_simple expects a simple grant")
        self._publish(simple={(grant.id, grant.role): grant})

    def remove_simple(self, grant_id: int, role: str) -> None:
        """Detach a simple grant from one role."""
        with self._lock:
            snapshot = self._snapshot
            if (grant_id, role) not in snapshot.simple:
                raise NotFoundError(f"Simple grant {grant_id} is not assigned to role {role!r}")
            simple = {key: g for key, g in snapshot.simple.items() if key != (grant_id, role)}
            self._swap(snapshot, simple=simple)

    def put_extended(self, grant: Grant) -> None:
        """Insert or replace an extended grant by id."""
        if grant.kind != "extended":
            raise ValueError("put_extended expects an extended grant")
        self._publish(extended={grant.id: grant})

    def set_extended_active(self, grant_id: int, is_active: bool) -> Grant:
        with self._lock:
            snapshot = self._snapshot
            grant = snapshot.extended.get(grant_id)
            if grant is None:
                raise NotFoundError(f"Extended grant {grant_id} not found")
            updated = replace(grant, is_active=is_active)
            self._swap(snapshot, extended={**snapshot.extended, grant_id: updated})
        return updated

    def deactivate_extended(self, grant_id: int) -> Grant:
        return self.set_extended_active(grant_id, False)

    def _publish(self, **changes: Mapping) -> None:
        with self._lock:
            snapshot = self._snapshot
            merged = {name: {**getattr(snapshot, name), **values} for name, values in changes.items()}
            self._swap(snapshot, **merged)

    def _swap(self, snapshot: GrantSnapshot, **replacements: Mapping) -> None:
        # Caller holds self._lock
        parts = {
            name: MappingProxyType(dict(replacements.get(name, getattr(snapshot, name))))
            for name in ("roles", "resources", "actions", "simple", "extended")
        }
        self._snapshot = GrantSnapshot(**parts)
