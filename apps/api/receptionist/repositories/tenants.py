"""Tenant repository helpers."""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..models.tenant import Tenant


async def get_by_id(session: AsyncSession, tenant_id: str) -> Tenant | None:
    """Return a tenant with its booking credential loaded."""

    stmt = select(Tenant).options(selectinload(Tenant.booking_credential)).where(Tenant.id == tenant_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def lock_for_update(session: AsyncSession, tenant_id: str) -> Tenant | None:
    """Lock the tenant row so phone-number purchases for one tenant serialize."""

    stmt = select(Tenant).where(Tenant.id == tenant_id).with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
