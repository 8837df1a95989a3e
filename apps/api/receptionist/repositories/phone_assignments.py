"""Phone assignment repository helpers."""
from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.phone_assignment import AssignmentStatus, AssignmentType, PhoneAssignment


async def list_active_by_number(session: AsyncSession, phone_number: str) -> list[PhoneAssignment]:
    """Return active assignments for an E.164 number (normally zero or one)."""

    stmt = select(PhoneAssignment).where(
        PhoneAssignment.phone_number == phone_number,
        PhoneAssignment.status == AssignmentStatus.ACTIVE,
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_for_tenant(session: AsyncSession, *, assignment_id: str, tenant_id: str) -> PhoneAssignment | None:
    """Return an assignment only when it belongs to the tenant."""

    stmt = select(PhoneAssignment).where(
        PhoneAssignment.id == assignment_id,
        PhoneAssignment.tenant_id == tenant_id,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_assignment(
    session: AsyncSession,
    *,
    tenant_id: str,
    phone_number: str,
    external_phone_id: str | None,
    agent_id: str | None = None,
    assignment_type: AssignmentType = AssignmentType.NEW,
    metadata: dict[str, Any] | None = None,
) -> PhoneAssignment:
    """Persist a new active assignment."""

    assignment = PhoneAssignment(
        tenant_id=tenant_id,
        agent_id=agent_id,
        phone_number=phone_number,
        external_phone_id=external_phone_id,
        status=AssignmentStatus.ACTIVE,
        assignment_type=assignment_type,
        metadata_json=metadata or {},
    )
    session.add(assignment)
    await session.flush()
    return assignment
