"""Resolve the tenant a provider request belongs to.

Resolution is an ordered decision table: bearer-authenticated agent, the
``agent_id`` carried in call metadata, the dialled number, then a prior call
record. Each step answers with a tenant, ``None`` (no opinion) or
``AMBIGUOUS``; the first definitive answer wins.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.contacts import to_e164
from ..core.errors import TenantAmbiguous, TenantNotFound
from ..core.logs import mask_number
from ..models.agent import Agent
from ..models.tenant import Tenant, TenantStatus
from ..repositories import agents as agents_repo
from ..repositories import calls as calls_repo
from ..repositories import phone_assignments as assignments_repo
from ..repositories import tenants as tenants_repo
from .cache import TTLCache

logger = logging.getLogger(__name__)


class _Ambiguous:
    def __repr__(self) -> str:
        return "AMBIGUOUS"


AMBIGUOUS = _Ambiguous()


@dataclass(frozen=True, slots=True)
class BookingAccount:
    access_token: str
    location_id: str
    merchant_id: str
    environment: str


@dataclass(frozen=True, slots=True)
class ResolvedTenant:
    """Detached snapshot of a tenant, safe to cache across sessions."""

    tenant_id: str
    slug: str
    business_name: str
    timezone: str
    status: str
    settings: dict[str, Any] = field(default_factory=dict)
    agent_id: str | None = None
    external_agent_id: str | None = None
    booking: BookingAccount | None = None

    def setting(self, name: str, default: Any = None) -> Any:
        return self.settings.get(name, default)


@dataclass(frozen=True, slots=True)
class ResolutionInputs:
    agent: Agent | None = None
    agent_id: str | None = None
    to_number: str | None = None
    call_id: str | None = None


Outcome = ResolvedTenant | _Ambiguous | None
Step = Callable[[AsyncSession, ResolutionInputs], Awaitable[Outcome]]


def snapshot(tenant: Tenant, agent: Agent | None = None) -> ResolvedTenant:
    """Copy the fields handlers need out of the ORM objects."""

    credential = tenant.booking_credential
    booking = None
    if credential is not None:
        booking = BookingAccount(
            access_token=credential.access_token,
            location_id=credential.location_id,
            merchant_id=credential.merchant_id,
            environment=getattr(credential.environment, "value", str(credential.environment)),
        )
    return ResolvedTenant(
        tenant_id=tenant.id,
        slug=tenant.slug,
        business_name=tenant.business_name,
        timezone=tenant.timezone,
        status=getattr(tenant.status, "value", str(tenant.status)),
        settings=dict(tenant.settings or {}),
        agent_id=agent.id if agent is not None else None,
        external_agent_id=agent.external_agent_id if agent is not None else None,
        booking=booking,
    )


class TenantResolver:
    """Ordered tenant resolution with a short-lived in-process cache."""

    def __init__(self, *, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._cache: TTLCache[ResolvedTenant] = TTLCache(ttl_seconds, clock=clock)
        self._steps: tuple[Step, ...] = (
            self._from_bearer_agent,
            self._from_metadata_agent,
            self._from_to_number,
            self._from_call_id,
        )

    async def resolve(self, session: AsyncSession, inputs: ResolutionInputs) -> ResolvedTenant:
        """Return the tenant for ``inputs`` or raise ``TenantNotFound`` / ``TenantAmbiguous``."""

        for step in self._steps:
            outcome = await step(session, inputs)
            if outcome is AMBIGUOUS:
                logger.warning(
                    "Tenant resolution ambiguous",
                    extra={"kind": "tenant/ambiguous", "call_id": inputs.call_id},
                )
                raise TenantAmbiguous()
            if isinstance(outcome, ResolvedTenant):
                return outcome
        raise TenantNotFound()

    def invalidate(
        self,
        *,
        tenant_id: str | None = None,
        to_number: str | None = None,
        agent_id: str | None = None,
        call_id: str | None = None,
    ) -> None:
        """Best-effort eviction after assignment or agent mutations; the TTL is the backstop."""

        if to_number:
            self._cache.pop(f"to:{to_e164(to_number) or to_number}")
        if agent_id:
            self._cache.pop(f"agent:{agent_id}")
        if call_id:
            self._cache.pop(f"call:{call_id}")
        if tenant_id:
            self._cache.discard_where(lambda _key, value: value.tenant_id == tenant_id)

    async def _from_bearer_agent(self, session: AsyncSession, inputs: ResolutionInputs) -> Outcome:
        agent = inputs.agent
        if agent is None:
            return None
        key = f"agent:{agent.external_agent_id}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        resolved = await self._load(session, key, agent.tenant_id, agent)
        if resolved is None:
            # An authenticated agent pins its own tenant; never fall through to another one.
            logger.warning(
                "Agent %s belongs to a missing or suspended tenant",
                agent.external_agent_id,
                extra={"kind": "tenant/not-found", "tenant_id": agent.tenant_id, "call_id": inputs.call_id},
            )
            raise TenantNotFound("The agent's business is not active")
        return resolved

    async def _from_metadata_agent(self, session: AsyncSession, inputs: ResolutionInputs) -> Outcome:
        if not inputs.agent_id:
            return None
        key = f"agent:{inputs.agent_id}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        agent = await agents_repo.get_by_external_id(session, inputs.agent_id)
        if agent is None:
            return None
        return await self._load(session, key, agent.tenant_id, agent)

    async def _from_to_number(self, session: AsyncSession, inputs: ResolutionInputs) -> Outcome:
        number = to_e164(inputs.to_number)
        if number is None:
            return None
        key = f"to:{number}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        assignments = await assignments_repo.list_active_by_number(session, number)
        tenant_ids = {assignment.tenant_id for assignment in assignments}
        if len(tenant_ids) > 1 or len(assignments) > 1:
            logger.warning("Number %s has %d active assignments", mask_number(number), len(assignments))
            return AMBIGUOUS
        if not assignments:
            return None
        assignment = assignments[0]
        agent = None
        if assignment.agent_id:
            agent = await agents_repo.get_by_id(session, assignment.agent_id)
        return await self._load(session, key, assignment.tenant_id, agent)

    async def _from_call_id(self, session: AsyncSession, inputs: ResolutionInputs) -> Outcome:
        if not inputs.call_id:
            return None
        key = f"call:{inputs.call_id}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        record = await calls_repo.get_by_call_id(session, inputs.call_id)
        if record is None:
            return None
        agent = None
        if record.agent_id:
            agent = await agents_repo.get_by_id(session, record.agent_id)
        return await self._load(session, key, record.tenant_id, agent)

    async def _load(self, session: AsyncSession, key: str, tenant_id: str, agent: Agent | None) -> Outcome:
        tenant = await tenants_repo.get_by_id(session, tenant_id)
        if tenant is None or tenant.status == TenantStatus.SUSPENDED:
            return None
        resolved = snapshot(tenant, agent)
        self._cache.set(key, resolved)
        return resolved
