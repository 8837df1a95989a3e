"""Idempotency key repository helpers."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.idempotency import IdempotencyKey


async def claim(
    session: AsyncSession,
    *,
    key: str,
    tenant_id: str,
    route: str,
    ttl_seconds: int,
) -> bool:
    """Insert the key if absent (or expired). Return True when this caller owns it."""

    now = datetime.now(timezone.utc)
    await session.execute(
        delete(IdempotencyKey).where(IdempotencyKey.key == key, IdempotencyKey.expires_at < now)
    )
    stmt = (
        pg_insert(IdempotencyKey)
        .values(
            key=key,
            tenant_id=tenant_id,
            route=route,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )
        .on_conflict_do_nothing(index_elements=[IdempotencyKey.key])
        .returning(IdempotencyKey.key)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def get(session: AsyncSession, key: str) -> IdempotencyKey | None:
    """Return a live (unexpired) key row."""

    row = await session.get(IdempotencyKey, key, populate_existing=True)
    if row is None or row.expires_at < datetime.now(timezone.utc):
        return None
    return row


async def store_response(session: AsyncSession, *, key: str, snapshot: str, status_code: int) -> None:
    """Record the first response for the key; later writes never replace it."""

    stmt = (
        update(IdempotencyKey)
        .where(IdempotencyKey.key == key, IdempotencyKey.response_snapshot.is_(None))
        .values(response_snapshot=snapshot, status_code=status_code)
    )
    await session.execute(stmt)


async def release(session: AsyncSession, key: str) -> None:
    """Drop an unanswered claim so the caller may retry."""

    await session.execute(
        delete(IdempotencyKey).where(IdempotencyKey.key == key, IdempotencyKey.response_snapshot.is_(None))
    )


async def purge_expired(session: AsyncSession) -> int:
    result = await session.execute(
        delete(IdempotencyKey).where(IdempotencyKey.expires_at < datetime.now(timezone.utc))
    )
    return result.rowcount or 0
