"""Outbox task repository helpers."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.base import new_id
from ..models.task import Task, TaskKind, TaskState


async def enqueue(
    session: AsyncSession,
    *,
    kind: TaskKind,
    payload: dict[str, Any],
    idempotency_key: str,
    tenant_id: str | None,
    now: datetime,
) -> str | None:
    """Insert a pending task. Returns the id, or None when the key was already queued."""

    stmt = (
        pg_insert(Task)
        .values(
            id=new_id(),
            tenant_id=tenant_id,
            kind=kind,
            payload=payload,
            idempotency_key=idempotency_key,
            state=TaskState.PENDING,
            attempts=0,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=[Task.idempotency_key])
        .returning(Task.id)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def claim_due(
    session: AsyncSession,
    *,
    now: datetime,
    limit: int,
    lease_seconds: float,
) -> list[Task]:
    """Lease due tasks with ``SKIP LOCKED`` so replicas never claim the same row.

    Rows stuck ``in_flight`` past their lease are reclaimed.
    """

    stmt = (
        select(Task)
        .where(
            or_(
                and_(Task.state == TaskState.PENDING, Task.next_attempt_at <= now),
                and_(Task.state == TaskState.IN_FLIGHT, Task.locked_until < now),
            )
        )
        .order_by(Task.next_attempt_at.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    result = await session.execute(stmt)
    tasks = list(result.scalars().all())
    for task in tasks:
        task.state = TaskState.IN_FLIGHT
        task.attempts += 1
        task.locked_until = now + timedelta(seconds=lease_seconds)
        task.updated_at = now
    await session.flush()
    return tasks


async def mark_done(session: AsyncSession, task_id: str, *, now: datetime) -> None:
    await session.execute(
        update(Task)
        .where(Task.id == task_id)
        .values(state=TaskState.DONE, locked_until=None, last_error=None, updated_at=now)
    )


async def schedule_retry(session: AsyncSession, task_id: str, *, next_attempt_at: datetime, error: str, now: datetime) -> None:
    await session.execute(
        update(Task)
        .where(Task.id == task_id)
        .values(
            state=TaskState.PENDING,
            next_attempt_at=next_attempt_at,
            locked_until=None,
            last_error=error,
            updated_at=now,
        )
    )


async def mark_dead(session: AsyncSession, task_id: str, *, error: str, now: datetime) -> None:
    await session.execute(
        update(Task)
        .where(Task.id == task_id)
        .values(state=TaskState.DEAD, locked_until=None, last_error=error, updated_at=now)
    )

