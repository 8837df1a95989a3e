"""Phone-number provisioning: outbox producers and the worker-side manager."""
from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.contacts import require_e164
from ..core.errors import ProviderError, TenantNotFound, ValidationFailed
from ..core.logs import mask_number
from ..models.phone_assignment import AssignmentStatus, AssignmentType
from ..models.task import TaskKind
from ..repositories import agents as agents_repo
from ..repositories import phone_assignments as assignments_repo
from ..repositories import tenants as tenants_repo
from ..schemas.workers import PhoneNumberTask
from . import tasks as tasks_service
from .providers.telephony import TelephonyClient
from .tenant_resolver import TenantResolver

logger = logging.getLogger(__name__)


async def request_purchase(
    session: AsyncSession,
    *,
    tenant_id: str,
    area_code: int | None = None,
    agent_id: str | None = None,
    request_id: str | None = None,
) -> str | None:
    """Queue a number purchase inside the caller's transaction."""

    payload: dict[str, Any] = {"action": "purchase", "areaCode": area_code, "agentId": agent_id}
    return await tasks_service.enqueue(
        session,
        kind=TaskKind.PHONE_NUMBER,
        payload=payload,
        idempotency_key=f"phone-purchase:{tenant_id}:{request_id or uuid4()}",
        tenant_id=tenant_id,
    )


async def request_release(session: AsyncSession, *, tenant_id: str, assignment_id: str) -> str | None:
    return await tasks_service.enqueue(
        session,
        kind=TaskKind.PHONE_NUMBER,
        payload={"action": "release", "assignmentId": assignment_id},
        idempotency_key=f"phone-release:{assignment_id}",
        tenant_id=tenant_id,
    )


async def request_forwarding_update(
    session: AsyncSession,
    *,
    tenant_id: str,
    assignment_id: str,
    forwarding_number: str,
    instructions: str | None = None,
) -> str | None:
    return await tasks_service.enqueue(
        session,
        kind=TaskKind.PHONE_NUMBER,
        payload={
            "action": "forwarding-update",
            "assignmentId": assignment_id,
            "forwardingNumber": forwarding_number,
            "instructions": instructions,
        },
        idempotency_key=f"phone-forwarding:{assignment_id}:{uuid4()}",
        tenant_id=tenant_id,
    )


class PhoneNumberManager:
    """Executes phone-number tasks against the telephony provider and the database."""

    def __init__(self, *, telephony: TelephonyClient, resolver: TenantResolver | None = None) -> None:
        self._telephony = telephony
        self._resolver = resolver

    async def handle(self, session: AsyncSession, task: PhoneNumberTask) -> dict[str, Any]:
        if task.action == "purchase":
            return await self.purchase(session, task)
        if task.action == "release":
            return await self.release(session, task)
        return await self.update_forwarding(session, task)

    async def purchase(self, session: AsyncSession, task: PhoneNumberTask) -> dict[str, Any]:
        """Buy a number and record it as an active assignment.

        The tenant row stays locked across the provider call so concurrent
        purchases for one tenant run one at a time.
        """

        async with session.begin():
            tenant = await tenants_repo.lock_for_update(session, task.tenant_id)
            if tenant is None:
                raise TenantNotFound()
            inbound_agent_id = None
            if task.agent_id:
                agent = await agents_repo.get_by_id(session, task.agent_id)
                if agent is None or agent.tenant_id != tenant.id:
                    raise ValidationFailed("Agent does not belong to this tenant", fields=["agentId"])
                inbound_agent_id = agent.external_agent_id

            number = await self._telephony.create_phone_number(
                inbound_agent_id=inbound_agent_id,
                area_code=task.area_code,
                nickname=tenant.slug,
            )
            try:
                assignment = await assignments_repo.create_assignment(
                    session,
                    tenant_id=tenant.id,
                    agent_id=task.agent_id,
                    phone_number=number.phone_number,
                    external_phone_id=number.phone_number,
                    assignment_type=AssignmentType.NEW,
                    metadata={"pretty": number.phone_number_pretty, "area_code": task.area_code},
                )
            except Exception:
                logger.exception(
                    "Purchased %s but could not record the assignment",
                    mask_number(number.phone_number),
                    extra={"tenant_id": tenant.id},
                )
                raise

        self._invalidate(tenant_id=tenant.id, to_number=number.phone_number)
        logger.info("Purchased %s", mask_number(number.phone_number), extra={"tenant_id": tenant.id})
        return {"success": True, "assignmentId": assignment.id, "phoneNumber": number.phone_number}

    async def release(self, session: AsyncSession, task: PhoneNumberTask) -> dict[str, Any]:
        async with session.begin():
            assignment = await self._assignment(session, task)
            phone_number = assignment.phone_number
            if assignment.status == AssignmentStatus.RELEASED:
                return {"success": True, "assignmentId": assignment.id, "status": "released"}

        try:
            await self._telephony.delete_phone_number(phone_number)
        except ProviderError as exc:
            if exc.reason != "not-found":
                raise
            logger.info("%s already gone at the provider", mask_number(phone_number))

        async with session.begin():
            assignment = await self._assignment(session, task)
            assignment.status = AssignmentStatus.RELEASED
        self._invalidate(tenant_id=task.tenant_id, to_number=phone_number)
        return {"success": True, "assignmentId": assignment.id, "status": "released"}

    async def update_forwarding(self, session: AsyncSession, task: PhoneNumberTask) -> dict[str, Any]:
        forwarding = require_e164(task.forwarding_number, "forwardingNumber")
        async with session.begin():
            assignment = await self._assignment(session, task)
            if assignment.status != AssignmentStatus.ACTIVE:
                raise ValidationFailed("Assignment is not active", fields=["assignmentId"])
            assignment.forwarding_number = forwarding
            metadata = dict(assignment.metadata_json or {})
            if task.instructions is not None:
                metadata["forwarding_instructions"] = task.instructions
            assignment.metadata_json = metadata
            phone_number = assignment.phone_number
        self._invalidate(tenant_id=task.tenant_id, to_number=phone_number)
        return {"success": True, "assignmentId": assignment.id, "forwardingNumber": forwarding}

    async def _assignment(self, session: AsyncSession, task: PhoneNumberTask):
        assignment = await assignments_repo.get_for_tenant(
            session, assignment_id=task.assignment_id or "", tenant_id=task.tenant_id
        )
        if assignment is None:
            raise ValidationFailed("Unknown phone assignment", fields=["assignmentId"])
        return assignment

    def _invalidate(self, *, tenant_id: str, to_number: str) -> None:
        if self._resolver is not None:
            self._resolver.invalidate(tenant_id=tenant_id, to_number=to_number)
