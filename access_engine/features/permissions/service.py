"""
Access engine wiring and policy administration.

AccessEngine owns the in-memory stores, the resolver and the audit recorder.
PolicyAdministration is the only writer: each change is validated against
the current snapshot, committed through the repository, and only then
published to the stores. A change that fails validation or storage leaves
both the database and the snapshots untouched.
"""
import asyncio
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from access_engine.core import config
from access_engine.core.exceptions import InvalidRequestError
from access_engine.features.permissions.attributes import AttributeStore, AttributeValue
from access_engine.features.permissions.audit import AuditEntry, AuditRecorder, AuditSink
from access_engine.features.permissions.conditions import Conditions
from access_engine.features.permissions.grants import CatalogEntry, Grant, GrantIndex
from access_engine.features.permissions.hierarchy import RoleEdge, RoleHierarchyGraph
from access_engine.features.permissions.repository import (
    PolicyRepository,
    SqlAuditSink,
    SqlUserDirectory,
)
from access_engine.features.permissions.resolver import PermissionResolver, UserDirectory
from access_engine.features.users.models import User
from access_engine.utils import get_logger


log = get_logger(__name__)


class PolicyAdministration:
    """
    Write side of the engine: catalog, hierarchy, grants, attributes and
    role assignment.

    Usage:
        admin = engine.admin
        await admin.create_role("viewer")
        await admin.grant_simple("viewer", "doc", "read", actor_id=1)
        await admin.add_role_edge("viewer", "editor")
    """

    def __init__(
        self,
        repository: PolicyRepository,
        hierarchy: RoleHierarchyGraph,
        grants: GrantIndex,
        user_attributes: AttributeStore,
        resource_attributes: AttributeStore,
        recorder: Optional[AuditRecorder] = None,
    ):
        self.repository = repository
        self.hierarchy = hierarchy
        self.grants = grants
        self.user_attributes = user_attributes
        self.resource_attributes = resource_attributes
        self.recorder = recorder
        self._writer = asyncio.Lock()

    async def reload(self) -> None:
        """Replace every in-memory store with the persisted policy."""
        async with self._writer:
            state = await self.repository.load_state()
            self.grants.load(state.roles, state.resources, state.actions, state.simple, state.extended)
            self.hierarchy.load(state.edges)
            self.user_attributes.load(state.user_attributes)
            self.resource_attributes.load(state.resource_attributes)

    # ========================================================================
    # Catalog
    # ========================================================================

    async def create_role(self, name: str, description: Optional[str] = None) -> CatalogEntry:
        async with self._writer:
            entry = await self.repository.create_role(name, description)
            self.grants.put_role(entry)
        log.info("Created role %s", name)
        return entry

    async def set_role_active(self, name: str, is_active: bool) -> CatalogEntry:
        """Activate or deactivate a role; grants of an inactive role are inert."""
        async with self._writer:
            entry = await self.repository.set_role_active(name, is_active)
            self.grants.put_role(entry)
        log.info("Role %s is now %s", name, "active" if is_active else "inactive")
        return entry

    async def create_resource(
        self,
        name: str,
        description: Optional[str] = None,
        type: str = "data",
        parent: Optional[str] = None,
        path: Optional[str] = None,
    ) -> CatalogEntry:
        async with self._writer:
            entry = await self.repository.create_resource(name, description, type, parent, path)
            self.grants.put_resource(entry)
        log.info("Created resource %s", name)
        return entry

    async def set_resource_active(self, name: str, is_active: bool) -> CatalogEntry:
        async with self._writer:
            entry = await self.repository.set_resource_active(name, is_active)
            self.grants.put_resource(entry)
        return entry

    async def delete_resource(self, name: str) -> None:
        async with self._writer:
            entry = await self.repository.delete_resource(name)
            self.grants.remove_resource(name)
            self.resource_attributes.drop_owner(entry.id)
        log.info("Deleted resource %s", name)

    async def create_action(
        self, name: str, description: Optional[str] = None, category: Optional[str] = None
    ) -> CatalogEntry:
        async with self._writer:
            entry = await self.repository.create_action(name, description, category)
            self.grants.put_action(entry)
        log.info("Created action %s", name)
        return entry

    async def set_action_active(self, name: str, is_active: bool) -> CatalogEntry:
        async with self._writer:
            entry = await self.repository.set_action_active(name, is_active)
            self.grants.put_action(entry)
        return entry

    # ========================================================================
    # Role hierarchy
    # ========================================================================

    async def add_role_edge(self, parent: str, child: str, inherits_permissions: bool = True) -> RoleEdge:
        """
        Make child inherit parent's grants.

        Raises:
            CycleError: if the edge would close a loop (nothing is committed)
            ConflictError: if the edge already exists
            NotFoundError: if either role does not exist
        """
        async with self._writer:
            self.hierarchy.validate_edge(parent, child)
            edge = await self.repository.add_role_edge(parent, child, inherits_permissions)
            self.hierarchy.add_edge(edge.parent, edge.child, edge.inherits_permissions)
        log.info("Added role inheritance %s -> %s", parent, child)
        return edge

    async def remove_role_edge(self, parent: str, child: str) -> None:
        async with self._writer:
            await self.repository.remove_role_edge(parent, child)
            self.hierarchy.remove_edge(parent, child)
        log.info("Removed role inheritance %s -> %s", parent, child)

    # ========================================================================
    # Grants
    # ========================================================================

    async def grant_simple(
        self,
        role: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> Grant:
        async with self._writer:
            grant = await self.repository.grant_simple(role, resource, action, description)
            self.grants.add_simple(grant)
        self._audit_change("grant", grant, actor_id)
        return grant

    async def revoke_simple(self, role: str, permission_id: int, actor_id: Optional[int] = None) -> None:
        async with self._writer:
            grant = next(
                (g for g in self.grants.grants_for_role(role) if g.kind == "simple" and g.id == permission_id),
                None,
            )
            await self.repository.revoke_simple(role, permission_id)
            self.grants.remove_simple(permission_id, role)
        if grant is not None:
            self._audit_change("revoke", grant, actor_id)

    async def grant_extended(
        self,
        role: str,
        resource: str,
        action: str,
        conditions: Any = None,
        priority: int = 0,
        actor_id: Optional[int] = None,
    ) -> Grant:
        """
        Create a conditional, prioritized grant.

        Args:
            conditions: Clause list, {"clauses": [...]} or the legacy
                equality-map document
            priority: Higher wins among matching extended grants

        Raises:
            InvalidRequestError: if the conditions are malformed
            NotFoundError: if the role, resource or action does not exist
        """
        try:
            parsed = Conditions.parse(conditions)
        except ValueError as e:
            raise InvalidRequestError(f"Invalid conditions: {e}") from e
        async with self._writer:
            grant = await self.repository.create_extended(role, resource, action, parsed, priority)
            self.grants.put_extended(grant)
        self._audit_change("grant", grant, actor_id)
        return grant

    async def revoke_extended(self, grant_id: int, actor_id: Optional[int] = None) -> Grant:
        """Deactivate an extended grant; the row is kept."""
        async with self._writer:
            await self.repository.set_extended_active(grant_id, False)
            grant = self.grants.deactivate_extended(grant_id)
        self._audit_change("revoke", grant, actor_id)
        return grant

    def grants_for_role(self, role: str) -> List[Grant]:
        return self.grants.grants_for_role(role)

    def _audit_change(self, operation: str, grant: Grant, actor_id: Optional[int]) -> None:
        log.info("%s %s grant %s: %s on %s:%s", operation.capitalize(), grant.kind, grant.id,
                 grant.role, grant.resource, grant.action)
        if self.recorder is None or actor_id is None:
            return
        snapshot = self.grants.snapshot()
        self.recorder.record(AuditEntry.build(
            {"role": grant.role, "kind": grant.kind, "priority": grant.priority},
            user_id=actor_id,
            operation=operation,
            result=True,
            reason=f"{operation} {grant.resource}:{grant.action} for role {grant.role}",
            resource=grant.resource,
            resource_id=snapshot.resource_id(grant.resource),
            action=grant.action,
            action_id=snapshot.action_id(grant.action),
            permission_id=grant.id,
        ))

    # ========================================================================
    # Users
    # ========================================================================

    async def create_user(self, username: str, email: Optional[str] = None) -> User:
        return await self.repository.create_user(username, email)

    async def set_user_active(self, user_id: int, is_active: bool) -> None:
        await self.repository.set_user_active(user_id, is_active)

    async def assign_role(self, user_id: int, role: str) -> None:
        await self.repository.assign_role(user_id, role)
        log.info("Assigned role %s to user %s", role, user_id)

    async def unassign_role(self, user_id: int, role: str) -> None:
        await self.repository.unassign_role(user_id, role)
        log.info("Removed role %s from user %s", role, user_id)

    # ========================================================================
    # Attributes
    # ========================================================================

    async def set_user_attribute(self, user_id: int, key: str, value: str, type: str = "string") -> AttributeValue:
        async with self._writer:
            record = await self.repository.set_user_attribute(user_id, key, value, type)
            return self.user_attributes.set(record.owner_id, record.key, record.raw, record.type)

    async def delete_user_attribute(self, user_id: int, key: str) -> None:
        async with self._writer:
            await self.repository.delete_user_attribute(user_id, key)
            self.user_attributes.delete(user_id, key)

    async def set_resource_attribute(self, resource: str, key: str, value: str, type: str = "string") -> AttributeValue:
        async with self._writer:
            record = await self.repository.set_resource_attribute(resource, key, value, type)
            return self.resource_attributes.set(record.owner_id, record.key, record.raw, record.type)

    async def delete_resource_attribute(self, resource: str, key: str) -> None:
        async with self._writer:
            resource_id = await self.repository.delete_resource_attribute(resource, key)
            self.resource_attributes.delete(resource_id, key)

    def user_attributes_of(self, user_id: int) -> Dict[str, AttributeValue]:
        return dict(self.user_attributes.snapshot().get_all_typed(user_id))

    def resource_attributes_of(self, resource: str) -> Dict[str, AttributeValue]:
        resource_id = self.grants.snapshot().resource_id(resource)
        if resource_id is None:
            return {}
        return dict(self.resource_attributes.snapshot().get_all_typed(resource_id))


class AccessEngine:
    """
    The assembled decision engine.

    Usage:
        engine = create_access_engine(AsyncSessionLocal)
        await engine.start()
        decision = await engine.resolver.decide(7, "doc", "read")
        await engine.stop()
    """

    def __init__(
        self,
        repository: PolicyRepository,
        users: UserDirectory,
        recorder: AuditRecorder,
        timeout: Optional[float] = config.DECISION_TIMEOUT_SECONDS,
    ):
        self.repository = repository
        self.recorder = recorder
        self.hierarchy = RoleHierarchyGraph()
        self.grants = GrantIndex()
        self.user_attributes = AttributeStore("user")
        self.resource_attributes = AttributeStore("resource")
        self.resolver = PermissionResolver(
            users,
            self.hierarchy,
            self.grants,
            self.user_attributes,
            self.resource_attributes,
            recorder=recorder,
            timeout=timeout,
        )
        self.admin = PolicyAdministration(
            repository,
            self.hierarchy,
            self.grants,
            self.user_attributes,
            self.resource_attributes,
            recorder=recorder,
        )

    async def reload(self) -> None:
        """Replace every in-memory store with the persisted policy."""
        await self.admin.reload()

    async def start(self) -> None:
        await self.reload()
        await self.recorder.start()

    async def stop(self) -> None:
        await self.recorder.stop()


def create_access_engine(
    session_factory: async_sessionmaker[AsyncSession],
    audit_sink: Optional[AuditSink] = None,
    timeout: Optional[float] = config.DECISION_TIMEOUT_SECONDS,
    **recorder_options: Any,
) -> AccessEngine:
    """Build an engine persisting to the given session factory."""
    recorder = AuditRecorder(audit_sink or SqlAuditSink(session_factory), **recorder_options)
    return AccessEngine(
        PolicyRepository(session_factory),
        SqlUserDirectory(session_factory),
        recorder,
        timeout=timeout,
    )
