"""
Role, resource, action, grant, attribute and audit models for RBAC/ABAC.

This module implements the persisted side of the decision engine:
- Roles with soft-delete status and a role inheritance graph
- Resources (optionally forming a tree) and actions
- Simple grants: named (resource, action) permissions assigned to roles
- Extended grants: prioritized, conditional grants keyed by ids
- Typed user and resource attributes for ABAC
- An append-only audit log of decisions and grant changes
"""
from datetime import datetime
from typing import Any, Dict
from sqlalchemy import (
    String, ForeignKey, Table, Column, JSON, Text, DateTime, Integer, Boolean,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from access_engine.core.database.base import Base, CreatedAtMixin, TimestampMixin


# ============================================================================
# Association Tables for Many-to-Many Relationships
# ============================================================================

# User-Role relationship (directly assigned roles)
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("assigned_at", DateTime(timezone=True), nullable=False, default=datetime.now),
)

# Role-Permission relationship (simple grants)
role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)


# ============================================================================
# Core Models
# ============================================================================

class Role(Base, TimestampMixin):
    """
    Role model for grouping grants.

    Roles are never physically deleted while referenced; deactivation
    makes every grant attached to them inert.
    """
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    # Role definition
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        secondary=role_permissions,
        back_populates="roles",
        lazy="selectin"
    )

    users: Mapped[list["User"]] = relationship(  # type: ignore
        "User",
        secondary=user_roles,
        back_populates="roles",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, active={self.is_active})>"


class RoleHierarchy(Base):
    """
    Parent -> child role edge.

    The child inherits the parent's grants when inherits_permissions is set.
    Edges are hard-deleted; the graph must stay acyclic.
    """
    __tablename__ = "role_hierarchies"
    __table_args__ = (UniqueConstraint("parent_id", "child_id", name="uq_role_hierarchy_edge"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    parent_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    child_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    inherits_permissions: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<RoleHierarchy(parent={self.parent_id}, child={self.child_id})>"


class Resource(Base, TimestampMixin):
    """
    Resource ("what") a grant applies to.

    Examples: user, role, salary, doc. Resources may form a tree through
    parent_id (menus and modules), independent of the role hierarchy.
    """
    __tablename__ = "resources"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # system, module, menu, api, data
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="data")
    parent_id: Mapped[int | None] = mapped_column(ForeignKey("resources.id"), nullable=True, index=True)
    path: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Resource(id={self.id}, name={self.name!r})>"


class Action(Base, TimestampMixin):
    """
    Action ("verb") a grant applies to.

    Examples: create, read, update, delete, approve.
    """
    __tablename__ = "actions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # crud, system, business
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Action(id={self.id}, name={self.name!r})>"


class Permission(Base, TimestampMixin):
    """
    Simple (unconditional) permission on a named resource and action.

    Assigned to roles through role_permissions. Examples:
    - name="doc:read", resource="doc", action="read"
    - name="user:update", resource="user", action="update"
    """
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("resource", "action", name="uq_permission_resource_action"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    # Permission definition
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    resource: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    roles: Mapped[list["Role"]] = relationship(
        "Role",
        secondary=role_permissions,
        back_populates="permissions",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, name={self.name!r}, resource={self.resource}, action={self.action})>"


class PermissionExtended(Base, TimestampMixin):
    """
    Extended grant with ABAC conditions and a priority.

    Higher priority wins when several grants match the same role, resource
    and action. Deactivation (is_active=False) is the removal signal.

    Example conditions:
        {"clauses": [{"scope": "user", "key": "department", "comparator": "eq",
                      "value_from": {"scope": "resource", "key": "department"}}]}
    """
    __tablename__ = "permissions_extended"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id"), nullable=False, index=True)
    resource_id: Mapped[int] = mapped_column(ForeignKey("resources.id"), nullable=False, index=True)
    action_id: Mapped[int] = mapped_column(ForeignKey("actions.id"), nullable=False, index=True)

    # ABAC conditions stored as JSON
    conditions: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<PermissionExtended(id={self.id}, role={self.role_id}, resource={self.resource_id}, "
            f"action={self.action_id}, priority={self.priority})>"
        )


class UserAttribute(Base, TimestampMixin):
    """Typed ABAC attribute of a user (string, number, boolean, date)."""
    __tablename__ = "user_attributes"
    __table_args__ = (UniqueConstraint("user_id", "key", name="uq_user_attribute_key"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="string")


class ResourceAttribute(Base, TimestampMixin):
    """Typed ABAC attribute of a resource (string, number, boolean, date)."""
    __tablename__ = "resource_attributes"
    __table_args__ = (UniqueConstraint("resource_id", "key", name="uq_resource_attribute_key"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    resource_id: Mapped[int] = mapped_column(ForeignKey("resources.id", ondelete="CASCADE"), nullable=False, index=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="string")


class PermissionAuditLog(Base, CreatedAtMixin):
    """
    Append-only audit log of access decisions and grant changes.

    Rows are never updated or deleted by the engine; retention is an
    external housekeeping concern.
    """
    __tablename__ = "permission_audit_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    # Actor and target
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    resource: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resource_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    action: Mapped[str | None] = mapped_column(String(50), nullable=True)
    action_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    permission_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    # Outcome: grant, revoke, check, deny
    operation: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    result: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Context snapshot
    context: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    context_fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    recorded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<PermissionAuditLog(id={self.id}, user_id={self.user_id}, operation={self.operation})>"
