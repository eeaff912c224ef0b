"""Alembic environment for Partner Pulse.

The database URL comes from ``sqlalchemy.url`` in alembic.ini when set,
otherwise from PULSE_DATABASE_URL via the settings object. Migrations run
over the async engine (asyncpg in production).
"""

from __future__ import annotations

import asyncio

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from alembic import context

from partner_pulse.config import settings
from partner_pulse.db.models import Base

config = context.config
target_metadata = Base.metadata


def get_url() -> str:
    """Resolve the database URL from alembic.ini or the environment."""
    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url
    return settings.database_url


def run_migrations_offline() -> None:
    """Emit SQL without a live connection."""
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = get_url()
    connectable = async_engine_from_config(
        section,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
