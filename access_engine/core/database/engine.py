"""
Async engine and sessions for the policy store.

The engine is built from DATABASE_URL (SQLite through aiosqlite by default).
The access engine takes AsyncSessionLocal as its session factory: the
repository opens one session per write and the user directory one per
decision.
"""
from collections.abc import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from access_engine.core import config
from access_engine.utils import get_logger


log = get_logger(__name__)

_is_sqlite = config.SQLALCHEMY_DATABASE_URL.startswith("sqlite")

# SQLite connections are not shared across the event loop's tasks
engine = create_async_engine(
    config.SQLALCHEMY_DATABASE_URL,
    poolclass=NullPool if _is_sqlite else None,
    echo=config.LOG_LEVEL == "DEBUG",
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a session that commits on success and rolls back on error.

    Usage:
        async for db in get_db():
            db.add(Role(name="auditor"))
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(bind: AsyncEngine | None = None) -> None:
    """
    Create the policy tables that do not exist yet.

    Args:
        bind: Engine to create the tables on; defaults to the configured one
    """
    from access_engine.core.database.base import Base

    # Register every mapped table on Base.metadata
    from access_engine.features.users import models as _user_models  # noqa: F401
    from access_engine.features.permissions import models as _permission_models  # noqa: F401

    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("Policy tables ready (%d tables)", len(Base.metadata.tables))
