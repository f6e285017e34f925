"""Primary database engine, session factory, and declarative base.

Key exports:
- Base                : declarative base for all ORM models
- init_database(...)  : call at startup to create the engine and session factory
- close_database()    : call at shutdown to dispose the engine
- create_schema()     : create all tables (local runs and tests; production uses Alembic)
- get_db_session()    : FastAPI dependency yielding a committed-on-success session
- session_scope()     : async context manager for background jobs
- migration_options() : alembic configuration shared by offline and online runs
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from fleet_compliance.observability import get_logger

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base shared by every fleet-compliance ORM model."""


# Every table this service owns carries this prefix
TABLE_PREFIX = "fc_"
MIGRATION_VERSION_TABLE = f"{TABLE_PREFIX}alembic_version"


# Module-level engine and session factory, initialized by init_database()
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_database(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 5,
) -> None:
    """Initialize the database engine and session factory.

    Must be called once at application startup (in the lifespan handler)
    before any repository is used.

    Args:
        database_url: SQLAlchemy async URL.
        pool_size: Connection pool size (ignored for SQLite).
        max_overflow: Max overflow connections above pool_size (ignored for SQLite).
    """
    global _engine, _session_factory  # noqa: PLW0603

    engine_kwargs: dict[str, object] = {"pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        engine_kwargs.update(pool_size=pool_size, max_overflow=max_overflow)

    logger.info("Initializing database engine", pool_size=pool_size, max_overflow=max_overflow)

    _engine = create_async_engine(database_url, echo=False, **engine_kwargs)
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema() -> None:
    """Create all tables known to Base.metadata on the initialized engine."""
    if _engine is None:
        raise RuntimeError("Database has not been initialized. Call init_database() first.")

    # Register the ORM models on Base.metadata
    from fleet_compliance.core import models  # noqa: F401

    async with _engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured")


def include_schema_name(name: str | None, type_: str, parent_names: object) -> bool:
    """Alembic name filter: only reflect the tables this service owns."""
    if type_ == "table":
        return name is not None and name.startswith(TABLE_PREFIX)
    return True


def migration_options(database_url: str) -> dict[str, Any]:
    """Keyword arguments for alembic `context.configure` on `database_url`.

    SQLite cannot ALTER most column properties in place, so migrations there
    run in batch (copy-and-move) mode.
    """
    return {
        "target_metadata": Base.metadata,
        "version_table": MIGRATION_VERSION_TABLE,
        "include_name": include_schema_name,
        "compare_type": True,
        "render_as_batch": database_url.startswith("sqlite"),
    }


async def close_database() -> None:
    """Dispose the database engine. Called at application shutdown."""
    global _engine, _session_factory  # noqa: PLW0603

    if _engine is not None:
        logger.info("Disposing database engine")
        await _engine.dispose()
        _engine = None
        _session_factory = None


def _require_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError(
            "Database has not been initialized. "
            "Call init_database() in the application lifespan handler."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields a primary database session.

    Commits when the request handler returns normally and rolls back on error.

    Yields:
        AsyncSession bound to the primary database.
    """
    async with _require_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def session_scope() -> AsyncGenerator[AsyncSession, None]:
    """Session for background jobs, with the same commit/rollback semantics as get_db_session."""
    async with _require_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
