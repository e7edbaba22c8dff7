"""
Declarative base for the access engine's tables.

Users, roles, the resource/action catalog, grants, attributes and the audit
log all derive from Base. Policy records carry insert and update timestamps;
audit rows only an insert timestamp.
"""
from datetime import datetime
from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """
    Base class for the policy tables.

    Usage:
        from access_engine.core.database.base import Base, TimestampMixin

        class Role(Base, TimestampMixin):
            __tablename__ = "roles"

            id: Mapped[int] = mapped_column(primary_key=True)
            name: Mapped[str] = mapped_column(String(50), unique=True)
            is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    """
    pass


class CreatedAtMixin:
    """
    Insert timestamp for append-only rows.

    Usage:
        class PermissionAuditLog(Base, CreatedAtMixin):
            __tablename__ = "permission_audit_logs"
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class TimestampMixin(CreatedAtMixin):
    """
    Insert and update timestamps for policy records.

    A grant's created_at breaks priority ties between extended grants, newest
    first; updated_at moves on every activation change.
    """
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
