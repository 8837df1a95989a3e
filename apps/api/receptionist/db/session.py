"""Database engine and session management."""
from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..core.config import Settings


class Database:
    """Engine plus session factory, built once at process start."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.sessionmaker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    def session(self) -> AsyncSession:
        return self.sessionmaker()

    async def ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def dispose(self) -> None:
        await self.engine.dispose()


def create_database(settings: Settings) -> Database:
    """Create the pooled async engine described by the settings."""

    connect_args: dict[str, object] = {}
    if settings.database_ssl_required:
        connect_args["ssl"] = True

    engine = create_async_engine(
        settings.database_async_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=settings.database_pool_size,
        connect_args=connect_args,
    )
    return Database(engine)


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency to provide an async session."""

    async with request.app.state.container.db.session() as session:
        yield session
