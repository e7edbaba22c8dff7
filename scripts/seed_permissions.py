"""
Seed script to populate the default policy.

Run this script after database initialization to create:
- Default resources and actions
- Default roles and their inheritance
- Default simple grants
- An administrator user holding the admin role

Usage:
    uv run python -m scripts.seed_permissions
"""
import asyncio
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from access_engine.core.database.engine import get_db, init_db
from access_engine.features.permissions.models import (
    Action,
    Permission,
    Resource,
    Role,
    RoleHierarchy,
    role_permissions,
    user_roles,
)
from access_engine.features.users.models import User
from access_engine.utils import get_logger


log = get_logger(__name__)


DEFAULT_RESOURCES = [
    # (name, type, description)
    ("user", "module", "User accounts"),
    ("role", "module", "Roles and role inheritance"),
    ("permissions", "system", "Grants, resources and actions"),
    ("audit", "system", "Permission audit trail"),
]

DEFAULT_ACTIONS = [
    # (name, category, description)
    ("create", "crud", "Create records"),
    ("read", "crud", "Read records"),
    ("update", "crud", "Update records"),
    ("delete", "crud", "Delete records"),
    ("manage", "system", "Administer the access policy"),
]

DEFAULT_ROLES = {
    "user": {
        "description": "Regular user",
        "permissions": ["user:read", "role:read"],
    },
    "auditor": {
        "description": "Read-only access to the audit trail",
        "permissions": ["audit:read"],
    },
    "admin": {
        "description": "System administrator",
        "permissions": [
            "user:create", "user:update", "user:delete",
            "role:create", "role:update", "role:delete",
            "permissions:manage",
        ],
    },
}

# (parent, child): the child inherits the parent's grants
DEFAULT_INHERITANCE = [
    ("user", "admin"),
    ("auditor", "admin"),
]

ADMIN_USERNAME = "admin"


async def _get_or_create(db: AsyncSession, model, name: str, **fields):
    stmt = select(model).where(model.name == name)
    result = await db.execute(stmt)
    existing = result.scalars().first()
    if existing:
        log.debug(f"{model.__name__} '{name}' already exists, skipping")
        return existing
    obj = model(name=name, **fields)
    db.add(obj)
    log.info(f"Created {model.__name__.lower()}: {name}")
    return obj


async def seed_catalog(db: AsyncSession):
    """Create default resources and actions."""
    log.info("Creating default resources and actions...")
    for name, type_, description in DEFAULT_RESOURCES:
        await _get_or_create(db, Resource, name, type=type_, description=description)
    for name, category, description in DEFAULT_ACTIONS:
        await _get_or_create(db, Action, name, category=category, description=description)
    await db.commit()


async def seed_roles(db: AsyncSession) -> dict[str, Role]:
    """
    Create default roles, their simple grants and their inheritance.

    Returns:
        Dictionary mapping role names to Role objects
    """
    log.info("Creating default roles...")
    roles_map: dict[str, Role] = {}
    for role_name, role_config in DEFAULT_ROLES.items():
        roles_map[role_name] = await _get_or_create(db, Role, role_name, description=role_config["description"])
    await db.commit()

    for role_name, role_config in DEFAULT_ROLES.items():
        role = roles_map[role_name]
        stmt = (
            select(Permission.name)
            .join(role_permissions, role_permissions.c.permission_id == Permission.id)
            .where(role_permissions.c.role_id == role.id)
        )
        assigned = set((await db.execute(stmt)).scalars().all())
        for perm_name in role_config["permissions"]:
            if perm_name in assigned:
                continue
            resource, action = perm_name.split(":")
            permission = await _get_or_create(db, Permission, perm_name, resource=resource, action=action)
            await db.flush()
            await db.execute(insert(role_permissions).values(role_id=role.id, permission_id=permission.id))
        log.info(f"Role '{role_name}' has {len(role_config['permissions'])} permissions")

    for parent, child in DEFAULT_INHERITANCE:
        stmt = select(RoleHierarchy).where(
            RoleHierarchy.parent_id == roles_map[parent].id,
            RoleHierarchy.child_id == roles_map[child].id,
        )
        if (await db.execute(stmt)).scalars().first() is None:
            db.add(RoleHierarchy(parent_id=roles_map[parent].id, child_id=roles_map[child].id))
            log.info(f"Role '{child}' inherits from '{parent}'")

    await db.commit()
    log.info("Default roles created successfully")
    return roles_map


async def seed_admin_user(db: AsyncSession, admin_role: Role):
    """Create the administrator user and give it the admin role."""
    stmt = select(User).where(User.username == ADMIN_USERNAME)
    result = await db.execute(stmt)
    user = result.scalars().first()
    if user is None:
        user = User(username=ADMIN_USERNAME, email="admin@example.com")
        db.add(user)
        await db.flush()
        await db.execute(insert(user_roles).values(user_id=user.id, role_id=admin_role.id))
        log.info(f"Created user '{ADMIN_USERNAME}' with id {user.id}")
    await db.commit()


async def main():
    """Main function to seed the default policy."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    # Get database session
    async for db in get_db():
        try:
            await seed_catalog(db)
            roles_map = await seed_roles(db)
            await seed_admin_user(db, roles_map["admin"])

            log.info("Permission seeding completed successfully!")
            log.info("")
            log.info("Default roles created:")
            for role_name, role_config in DEFAULT_ROLES.items():
                log.info(f"  - {role_name}: {role_config['description']}")

        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            await db.rollback()
            raise

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
