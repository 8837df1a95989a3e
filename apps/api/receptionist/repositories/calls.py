"""Call record and analysis repository helpers."""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.base import new_id
from ..models.call import CallAnalysis, CallRecord, CallStatus


async def get_by_call_id(session: AsyncSession, call_id: str) -> CallRecord | None:
    """Return a call record by the provider call id."""

    stmt = select(CallRecord).where(CallRecord.call_id == call_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def lock_or_create(session: AsyncSession, *, call_id: str, tenant_id: str) -> CallRecord:
    """Fetch the call row ``FOR UPDATE``, inserting a bare in-progress row first if missing.

    Concurrent events for the same call serialize on the row lock, so every
    state transition sees the latest stored state.
    """

    insert_stmt = (
        pg_insert(CallRecord)
        .values(
            id=new_id(),
            call_id=call_id,
            tenant_id=tenant_id,
            status=CallStatus.IN_PROGRESS,
            raw_payload={},
        )
        .on_conflict_do_nothing(index_elements=[CallRecord.call_id])
    )
    await session.execute(insert_stmt)

    stmt = (
        select(CallRecord)
        .where(CallRecord.call_id == call_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one()


async def get_analysis(session: AsyncSession, call_id: str) -> CallAnalysis | None:
    return await session.get(CallAnalysis, call_id)


async def add_analysis(session: AsyncSession, analysis: CallAnalysis) -> CallAnalysis:
    session.add(analysis)
    await session.flush()
    return analysis
