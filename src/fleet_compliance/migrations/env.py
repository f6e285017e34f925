"""Alembic environment for the fleet-compliance primary database.

The URL is read from `sqlalchemy.url` when alembic.ini sets it, otherwise
from FLEET_COMPLIANCE_DATABASE_URL. Only `fc_` tables are compared, and the
revision is tracked in `fc_alembic_version`, so the schema can share a
database with other services.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from fleet_compliance.core import models  # noqa: F401
from fleet_compliance.database import migration_options
from fleet_compliance.settings import Settings

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)


def resolve_database_url() -> str:
    return context.config.get_main_option("sqlalchemy.url") or Settings().database_url


def migrate_offline(database_url: str) -> None:
    """Emit the migration SQL without connecting."""
    context.configure(
        url=database_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **migration_options(database_url),
    )
    with context.begin_transaction():
        context.run_migrations()


def _migrate_connection(connection: Connection, database_url: str) -> None:
    context.configure(connection=connection, **migration_options(database_url))
    with context.begin_transaction():
        context.run_migrations()


async def migrate_online(database_url: str) -> None:
    """Apply migrations over an async connection (asyncpg or aiosqlite)."""
    engine = create_async_engine(database_url, poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate_connection, database_url)
    finally:
        await engine.dispose()


url = resolve_database_url()
if context.is_offline_mode():
    migrate_offline(url)
else:
    asyncio.run(migrate_online(url))
