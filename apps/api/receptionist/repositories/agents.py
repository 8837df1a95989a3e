"""Agent repository helpers."""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.agent import Agent


async def get_by_external_id(session: AsyncSession, external_agent_id: str) -> Agent | None:
    """Return the agent registered under the provider's agent id."""

    stmt = select(Agent).where(Agent.external_agent_id == external_agent_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_by_id(session: AsyncSession, agent_id: str) -> Agent | None:
    return await session.get(Agent, agent_id)
