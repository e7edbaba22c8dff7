"""
SQLAlchemy persistence for the decision engine.

PolicyRepository loads the full policy (catalog, hierarchy, grants and
attributes) to hydrate the in-memory stores, and commits every
administrative write. SqlUserDirectory serves the one per-decision storage
read, and SqlAuditSink writes audit batches to permission_audit_logs.

Every method opens its own session from the factory and commits before it
returns, so a caller only publishes in-memory changes for committed rows.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from access_engine.core.exceptions import ConflictError, InvalidRequestError, NotFoundError
from access_engine.features.permissions.attributes import ATTRIBUTE_TYPES, AttributeRecord
from access_engine.features.permissions.audit import AuditEntry
from access_engine.features.permissions.conditions import Conditions
from access_engine.features.permissions.grants import CatalogEntry, Grant
from access_engine.features.permissions.hierarchy import RoleEdge
from access_engine.features.permissions.models import (
    Action,
    Permission,
    PermissionAuditLog,
    PermissionExtended,
    Resource,
    ResourceAttribute,
    Role,
    RoleHierarchy,
    UserAttribute,
    role_permissions,
    user_roles,
)
from access_engine.features.users.models import User
from access_engine.utils import get_logger


log = get_logger(__name__)


@dataclass
class PolicyState:
    """Everything the in-memory stores are hydrated from."""

    roles: List[CatalogEntry] = field(default_factory=list)
    resources: List[CatalogEntry] = field(default_factory=list)
    actions: List[CatalogEntry] = field(default_factory=list)
    edges: List[RoleEdge] = field(default_factory=list)
    simple: List[Grant] = field(default_factory=list)
    extended: List[Grant] = field(default_factory=list)
    user_attributes: List[AttributeRecord] = field(default_factory=list)
    resource_attributes: List[AttributeRecord] = field(default_factory=list)


def _catalog(row: Any) -> CatalogEntry:
    return CatalogEntry(id=row.id, name=row.name, is_active=row.is_active)


def extended_grant(row: PermissionExtended, role: str, resource: str, action: str) -> Grant:
    """Convert a stored extended grant; unparseable conditions make it inert."""
    is_active = row.is_active
    try:
        conditions = Conditions.parse(row.conditions)
    except ValueError as e:
        log.warning("Extended grant %s has invalid conditions and will never match: %s", row.id, e)
        conditions, is_active = None, False
    return Grant(
        id=row.id,
        kind="extended",
        role=role,
        resource=resource,
        action=action,
        conditions=conditions,
        priority=row.priority,
        is_active=is_active,
        created_at=row.created_at,
    )


class PolicyRepository:
    """
    Async repository for roles, resources, actions, grants and attributes.

    Usage:
        repo = PolicyRepository(AsyncSessionLocal)
        state = await repo.load_state()
        role = await repo.create_role("editor", "Can edit documents")
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ========================================================================
    # Loading
    # ========================================================================

    async def load_state(self) -> PolicyState:
        state = PolicyState()
        async with self.session_factory() as db:
            result = await db.execute(select(Role.id, Role.name, Role.is_active))
            state.roles = [_catalog(row) for row in result]
            result = await db.execute(select(Resource.id, Resource.name, Resource.is_active))
            state.resources = [_catalog(row) for row in result]
            result = await db.execute(select(Action.id, Action.name, Action.is_active))
            state.actions = [_catalog(row) for row in result]

            parent, child = aliased(Role), aliased(Role)
            stmt = (
                select(parent.name, child.name, RoleHierarchy.inherits_permissions)
                .join(parent, parent.id == RoleHierarchy.parent_id)
                .join(child, child.id == RoleHierarchy.child_id)
            )
            state.edges = [RoleEdge(p, c, inherits) for p, c, inherits in await db.execute(stmt)]

            stmt = (
                select(Permission.id, Role.name, Permission.resource, Permission.action, Permission.created_at)
                .join(role_permissions, role_permissions.c.permission_id == Permission.id)
                .join(Role, Role.id == role_permissions.c.role_id)
            )
            state.simple = [
                Grant(id=pid, kind="simple", role=role, resource=res, action=act, created_at=created)
                for pid, role, res, act, created in await db.execute(stmt)
            ]

            stmt = (
                select(PermissionExtended, Role.name, Resource.name, Action.name)
                .join(Role, Role.id == PermissionExtended.role_id)
                .join(Resource, Resource.id == PermissionExtended.resource_id)
                .join(Action, Action.id == PermissionExtended.action_id)
            )
            state.extended = [
                extended_grant(row, role, res, act) for row, role, res, act in await db.execute(stmt)
            ]

            result = await db.execute(
                select(UserAttribute.user_id, UserAttribute.key, UserAttribute.value, UserAttribute.type)
            )
            state.user_attributes = [AttributeRecord(*row) for row in result]
            result = await db.execute(
                select(ResourceAttribute.resource_id, ResourceAttribute.key, ResourceAttribute.value, ResourceAttribute.type)
            )
            state.resource_attributes = [AttributeRecord(*row) for row in result]

        log.info(
            "Loaded policy: %d roles, %d resources, %d actions, %d edges, %d simple and %d extended grants",
            len(state.roles), len(state.resources), len(state.actions),
            len(state.edges), len(state.simple), len(state.extended),
        )
        return state

    # ========================================================================
    # Lookups
    # ========================================================================

    async def _get_by_name(self, db: AsyncSession, model, name: str, label: str):
        result = await db.execute(select(model).where(model.name == name))
        obj = result.scalars().first()
        if obj is None:
            raise NotFoundError(f"{label} {name!r} not found")
        return obj

    async def _get_user(self, db: AsyncSession, user_id: int) -> User:
        user = await db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    # ========================================================================
    # Catalog
    # ========================================================================

    async def create_role(self, name: str, description: Optional[str] = None) -> CatalogEntry:
        async with self.session_factory() as db:
            role = Role(name=name, description=description)
            db.add(role)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ConflictError(f"Role {name!r} already exists")
            return _catalog(role)

    async def set_role_active(self, name: str, is_active: bool) -> CatalogEntry:
        async with self.session_factory() as db:
            role = await self._get_by_name(db, Role, name, "Role")
            role.is_active = is_active
            await db.commit()
            return _catalog(role)

    async def create_resource(
        self,
        name: str,
        description: Optional[str] = None,
        type: str = "data",
        parent: Optional[str] = None,
        path: Optional[str] = None,
    ) -> CatalogEntry:
        async with self.session_factory() as db:
            parent_id = None
            if parent is not None:
                parent_id = (await self._get_by_name(db, Resource, parent, "Resource")).id
            resource = Resource(name=name, description=description, type=type, parent_id=parent_id, path=path)
            db.add(resource)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ConflictError(f"Resource {name!r} already exists")
            return _catalog(resource)

    async def set_resource_active(self, name: str, is_active: bool) -> CatalogEntry:
        async with self.session_factory() as db:
            resource = await self._get_by_name(db, Resource, name, "Resource")
            resource.is_active = is_active
            await db.commit()
            return _catalog(resource)

    async def delete_resource(self, name: str) -> CatalogEntry:
        """Hard-delete a resource with no children and no grants attached."""
        async with self.session_factory() as db:
            resource = await self._get_by_name(db, Resource, name, "Resource")
            children = await db.scalar(select(func.count()).select_from(Resource).where(Resource.parent_id == resource.id))
            if children:
                raise ConflictError(f"Resource {name!r} has {children} child resources")
            extended = await db.scalar(
                select(func.count()).select_from(PermissionExtended).where(PermissionExtended.resource_id == resource.id)
            )
            simple = await db.scalar(select(func.count()).select_from(Permission).where(Permission.resource == name))
            if extended or simple:
                raise ConflictError(f"Resource {name!r} still has grants attached; deactivate it instead")
            entry = _catalog(resource)
            await db.execute(delete(ResourceAttribute).where(ResourceAttribute.resource_id == resource.id))
            await db.delete(resource)
            await db.commit()
            return entry

    async def create_action(
        self, name: str, description: Optional[str] = None, category: Optional[str] = None
    ) -> CatalogEntry:
        async with self.session_factory() as db:
            action = Action(name=name, description=description, category=category)
            db.add(action)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ConflictError(f"Action {name!r} already exists")
            return _catalog(action)

    async def set_action_active(self, name: str, is_active: bool) -> CatalogEntry:
        async with self.session_factory() as db:
            action = await self._get_by_name(db, Action, name, "Action")
            action.is_active = is_active
            await db.commit()
            return _catalog(action)

    # ========================================================================
    # Role hierarchy
    # ========================================================================

    async def add_role_edge(self, parent: str, child: str, inherits_permissions: bool = True) -> RoleEdge:
        async with self.session_factory() as db:
            parent_role = await self._get_by_name(db, Role, parent, "Role")
            child_role = await self._get_by_name(db, Role, child, "Role")
            db.add(RoleHierarchy(
                parent_id=parent_role.id,
                child_id=child_role.id,
                inherits_permissions=inherits_permissions,
            ))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ConflictError(f"Role inheritance {parent!r} -> {child!r} already exists")
            return RoleEdge(parent, child, inherits_permissions)

    async def remove_role_edge(self, parent: str, child: str) -> None:
        async with self.session_factory() as db:
            parent_role = await self._get_by_name(db, Role, parent, "Role")
            child_role = await self._get_by_name(db, Role, child, "Role")
            result = await db.execute(
                delete(RoleHierarchy).where(
                    RoleHierarchy.parent_id == parent_role.id,
                    RoleHierarchy.child_id == child_role.id,
                )
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Role inheritance {parent!r} -> {child!r} not found")
            await db.commit()

    # ========================================================================
    # Grants
    # ========================================================================

    async def grant_simple(
        self, role: str, resource: str, action: str, description: Optional[str] = None
    ) -> Grant:
        """
        Assign the "resource:action" permission to a role, creating it if needed.

        Raises:
            InvalidRequestError: if the resource or action name contains ':'
            NotFoundError: if the role does not exist
            ConflictError: if the role already has the permission
        """
        if ":" in resource or ":" in action:
            raise InvalidRequestError("Resource and action names of a simple grant must not contain ':'")
        async with self.session_factory() as db:
            db_role = await self._get_by_name(db, Role, role, "Role")
            name = f"{resource}:{action}"
            result = await db.execute(
                select(Permission).where(Permission.resource == resource, Permission.action == action)
            )
            permission = result.scalars().first()
            if permission is None:
                permission = Permission(name=name, resource=resource, action=action, description=description)
                db.add(permission)
                await db.flush()

            assigned = await db.scalar(
                select(func.count()).select_from(role_permissions).where(
                    role_permissions.c.role_id == db_role.id,
                    role_permissions.c.permission_id == permission.id,
                )
            )
            if assigned:
                raise ConflictError(f"Role {role!r} already has {name!r}")
            await db.execute(insert(role_permissions).values(role_id=db_role.id, permission_id=permission.id))
            await db.commit()
            await db.refresh(permission)
            return Grant(
                id=permission.id,
                kind="simple",
                role=role,
                resource=resource,
                action=action,
                created_at=permission.created_at,
            )

    async def revoke_simple(self, role: str, permission_id: int) -> None:
        async with self.session_factory() as db:
            db_role = await self._get_by_name(db, Role, role, "Role")
            result = await db.execute(
                delete(role_permissions).where(
                    role_permissions.c.role_id == db_role.id,
                    role_permissions.c.permission_id == permission_id,
                )
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Permission {permission_id} is not assigned to role {role!r}")
            await db.commit()

    async def create_extended(
        self,
        role: str,
        resource: str,
        action: str,
        conditions: Optional[Conditions] = None,
        priority: int = 0,
    ) -> Grant:
        async with self.session_factory() as db:
            db_role = await self._get_by_name(db, Role, role, "Role")
            db_resource = await self._get_by_name(db, Resource, resource, "Resource")
            db_action = await self._get_by_name(db, Action, action, "Action")
            row = PermissionExtended(
                role_id=db_role.id,
                resource_id=db_resource.id,
                action_id=db_action.id,
                conditions=conditions.to_document() if conditions is not None else None,
                priority=priority,
            )
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return extended_grant(row, role, resource, action)

    async def set_extended_active(self, grant_id: int, is_active: bool) -> None:
        async with self.session_factory() as db:
            row = await db.get(PermissionExtended, grant_id)
            if row is None:
                raise NotFoundError(f"Extended grant {grant_id} not found")
            row.is_active = is_active
            await db.commit()

    # ========================================================================
    # Users
    # ========================================================================

    async def create_user(self, username: str, email: Optional[str] = None) -> User:
        async with self.session_factory() as db:
            user = User(username=username, email=email)
            db.add(user)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ConflictError(f"User {username!r} already exists")
            await db.refresh(user)
            return user

    async def set_user_active(self, user_id: int, is_active: bool) -> None:
        async with self.session_factory() as db:
            user = await self._get_user(db, user_id)
            user.is_active = is_active
            await db.commit()

    async def assign_role(self, user_id: int, role: str) -> None:
        async with self.session_factory() as db:
            await self._get_user(db, user_id)
            db_role = await self._get_by_name(db, Role, role, "Role")
            try:
                await db.execute(insert(user_roles).values(
                    user_id=user_id, role_id=db_role.id, assigned_at=datetime.now(timezone.utc)
                ))
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ConflictError(f"User {user_id} already has role {role!r}")

    async def unassign_role(self, user_id: int, role: str) -> None:
        async with self.session_factory() as db:
            db_role = await self._get_by_name(db, Role, role, "Role")
            result = await db.execute(
                delete(user_roles).where(user_roles.c.user_id == user_id, user_roles.c.role_id == db_role.id)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"User {user_id} does not have role {role!r}")
            await db.commit()

    # ========================================================================
    # Attributes
    # ========================================================================

    async def set_user_attribute(self, user_id: int, key: str, value: str, type: str = "string") -> AttributeRecord:
        _check_type(type)
        async with self.session_factory() as db:
            await self._get_user(db, user_id)
            result = await db.execute(
                select(UserAttribute).where(UserAttribute.user_id == user_id, UserAttribute.key == key)
            )
            attribute = result.scalars().first()
            if attribute is None:
                db.add(UserAttribute(user_id=user_id, key=key, value=value, type=type))
            else:
                attribute.value, attribute.type = value, type
            await db.commit()
            return AttributeRecord(user_id, key, value, type)

    async def delete_user_attribute(self, user_id: int, key: str) -> None:
        async with self.session_factory() as db:
            result = await db.execute(
                delete(UserAttribute).where(UserAttribute.user_id == user_id, UserAttribute.key == key)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Attribute {key!r} not found for user {user_id}")
            await db.commit()

    async def set_resource_attribute(
        self, resource: str, key: str, value: str, type: str = "string"
    ) -> AttributeRecord:
        _check_type(type)
        async with self.session_factory() as db:
            db_resource = await self._get_by_name(db, Resource, resource, "Resource")
            result = await db.execute(
                select(ResourceAttribute).where(
                    ResourceAttribute.resource_id == db_resource.id, ResourceAttribute.key == key
                )
            )
            attribute = result.scalars().first()
            if attribute is None:
                db.add(ResourceAttribute(resource_id=db_resource.id, key=key, value=value, type=type))
            else:
                attribute.value, attribute.type = value, type
            await db.commit()
            return AttributeRecord(db_resource.id, key, value, type)

    async def delete_resource_attribute(self, resource: str, key: str) -> int:
        """Delete a resource attribute, returning the resource id."""
        async with self.session_factory() as db:
            db_resource = await self._get_by_name(db, Resource, resource, "Resource")
            result = await db.execute(
                delete(ResourceAttribute).where(
                    ResourceAttribute.resource_id == db_resource.id, ResourceAttribute.key == key
                )
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Attribute {key!r} not found for resource {resource!r}")
            await db.commit()
            return db_resource.id


def _check_type(type_tag: str) -> None:
    if type_tag not in ATTRIBUTE_TYPES:
        raise InvalidRequestError(f"Unknown attribute type {type_tag!r} (valid: {', '.join(ATTRIBUTE_TYPES)})")


# ============================================================================
# Decision-path collaborators
# ============================================================================

class SqlUserDirectory:
    """Direct, active roles of active users, read from user_roles."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def roles_for(self, user_id: int) -> frozenset[str]:
        stmt = (
            select(Role.name)
            .join(user_roles, user_roles.c.role_id == Role.id)
            .join(User, User.id == user_roles.c.user_id)
            .where(
                user_roles.c.user_id == user_id,
                User.is_active.is_(True),
                Role.is_active.is_(True),
            )
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return frozenset(result.scalars().all())


class SqlAuditSink:
    """Audit sink writing to the permission_audit_logs table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def write_batch(self, entries: List[AuditEntry]) -> None:
        recorded_at = datetime.now(timezone.utc)
        async with self.session_factory() as db:
            db.add_all([
                PermissionAuditLog(
                    created_at=entry.created_at,
                    user_id=entry.user_id,
                    resource=entry.resource,
                    resource_id=entry.resource_id,
                    action=entry.action,
                    action_id=entry.action_id,
                    permission_id=entry.permission_id,
                    operation=entry.operation,
                    result=entry.result,
                    reason=entry.reason,
                    context=entry.context,
                    context_fingerprint=entry.context_fingerprint,
                    sequence=entry.sequence,
                    recorded_at=recorded_at,
                )
                for entry in entries
            ])
            await db.commit()

    async def query(self, user_id: int, limit: int) -> List[AuditEntry]:
        stmt = (
            select(PermissionAuditLog)
            .where(PermissionAuditLog.user_id == user_id)
            .order_by(PermissionAuditLog.id.desc())
        )
        if limit > 0:
            stmt = stmt.limit(limit)
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return [_entry_from_row(row) for row in result.scalars().all()]


def _entry_from_row(row: PermissionAuditLog) -> AuditEntry:
    context: Dict[str, Any] = row.context or {}
    return AuditEntry(
        user_id=row.user_id,
        operation=row.operation,
        result=row.result,
        reason=row.reason or "",
        resource=row.resource,
        resource_id=row.resource_id,
        action=row.action,
        action_id=row.action_id,
        permission_id=row.permission_id,
        context=context,
        context_fingerprint=row.context_fingerprint or "",
        created_at=row.created_at,
        sequence=row.sequence,
    )
