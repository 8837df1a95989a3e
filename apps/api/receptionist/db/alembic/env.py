"""Alembic environment; runs against a caller's connection or the configured database."""
from __future__ import annotations

import asyncio

from alembic import context
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from receptionist import models  # noqa: F401  registers every table on the metadata
from receptionist.core.config import Settings
from receptionist.models.base import Base

config = context.config
target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    callback = config.attributes.get("on_version_apply")
    if callback is not None:
        kwargs["on_version_apply"] = callback
    context.configure(target_metadata=target_metadata, **kwargs)


def run_migrations_offline() -> None:
    url = config.get_main_option("sqlalchemy.url") or Settings().database_async_url
    _configure(url=url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    engine = create_async_engine(Settings().database_async_url)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(do_run_migrations)
    finally:
        await engine.dispose()


def run_migrations_online() -> None:
    connection = config.attributes.get("connection")
    if connection is not None:
        do_run_migrations(connection)
        return
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
