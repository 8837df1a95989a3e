"""Lifecycle webhook handling and the per-call state machine.

Events for one ``call_id`` may arrive late, twice, or out of order. Each
handler locks the call row, then applies a write that depends only on the
stored state and the event's own data, so any arrival order converges on
the same terminal record:

* ``call_started`` owns ``started_at`` and never moves a finished call back
  to ``in_progress``.
* ``call_ended`` owns ``ended_at``, cost and the terminal status.
* ``call_analyzed`` writes the analysis once, replacing it only for a
  strictly newer ``analyzed_at``.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal
from zoneinfo import ZoneInfo

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings
from ..core.contacts import to_e164
from ..core.errors import ProviderError, ServiceError, ValidationFailed
from ..core.logs import mask_number
from ..core.timeutil import parse_instant, utcnow
from ..models.call import CallAnalysis, CallRecord, CallStatus
from ..models.task import TaskKind
from ..repositories import calls as calls_repo
from ..schemas import webhooks as schemas
from . import notifications
from . import tasks as tasks_service
from .providers.booking import BookingClient
from .tenant_resolver import BookingAccount, ResolutionInputs, ResolvedTenant, TenantResolver
from .tools import Budget

logger = logging.getLogger(__name__)

CALL_STARTED = "call_started"
CALL_ENDED = "call_ended"
CALL_ANALYZED = "call_analyzed"
CALL_INBOUND = "call_inbound"
FAILED_CALL_STATUSES = frozenset({"error", "failed"})

AnalysisOutcome = Literal["inserted", "updated", "stale"]


@dataclass(frozen=True, slots=True)
class AnalysisFields:
    summary: str | None
    sentiment: str | None
    successful: bool
    booking_created: bool
    transcript: str | None
    extracted_fields: dict[str, Any]


def event_name(raw_body: bytes) -> str | None:
    """Peek at the ``event`` field without validating the rest of the body."""

    try:
        data = json.loads(raw_body or b"{}")
    except json.JSONDecodeError as exc:
        raise ValidationFailed("Body is not valid JSON", fields=["body"]) from exc
    return data.get("event") if isinstance(data, dict) else None


def parse_event(raw_body: bytes, *, expected: str | None = None) -> schemas.WebhookEvent:
    """Decode a verified webhook body; ``expected`` pins the event for per-event routes."""

    try:
        data = json.loads(raw_body or b"{}")
    except json.JSONDecodeError as exc:
        raise ValidationFailed("Body is not valid JSON", fields=["body"]) from exc
    if isinstance(data, dict) and expected:
        data = {**data, "event": expected}
    try:
        return schemas.WebhookEvent.model_validate(data)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        detail = "missing-field" if any(error["type"] == "missing" for error in exc.errors()) else "invalid-field"
        raise ValidationFailed("Webhook payload rejected", detail=detail, fields=fields) from exc


def analysis_fields(call: schemas.CallPayload) -> AnalysisFields:
    analysis = call.call_analysis or {}
    custom = analysis.get("custom_analysis_data") or {}
    return AnalysisFields(
        summary=analysis.get("call_summary"),
        sentiment=analysis.get("user_sentiment"),
        successful=_truthy(analysis.get("call_successful")),
        booking_created=_truthy(custom.get("booking_created")),
        transcript=call.transcript,
        extracted_fields=dict(custom),
    )


def analyzed_at_of(event: schemas.WebhookEvent) -> datetime | None:
    """Payload instant used for the monotonic overwrite rule.

    Falls back to the call's own end or start time so redeliveries of one
    analysis carry the same instant. ``None`` means the payload has no time at all.
    """

    call = event.call
    analysis = call.call_analysis or {}
    candidates = (
        event.analyzed_at,
        analysis.get("analyzed_at"),
        event.timestamp,
        call.end_timestamp,
        call.start_timestamp,
    )
    for candidate in candidates:
        instant = parse_instant(candidate)
        if instant is not None:
            return instant
    return None


async def record_analysis(
    session: AsyncSession,
    record: CallRecord,
    fields: AnalysisFields,
    analyzed_at: datetime | None,
) -> AnalysisOutcome:
    """Insert or conditionally replace the analysis of a locked call record.

    An analysis without an instant is stored when none exists yet and never
    replaces a stored one.
    """

    existing = await calls_repo.get_analysis(session, record.call_id)
    if existing is None:
        analyzed_at = analyzed_at or utcnow()
        await calls_repo.add_analysis(
            session,
            CallAnalysis(
                call_id=record.call_id,
                tenant_id=record.tenant_id,
                summary=fields.summary,
                sentiment=fields.sentiment,
                successful=fields.successful,
                booking_created=fields.booking_created,
                transcript=fields.transcript,
                extracted_fields=fields.extracted_fields,
                analyzed_at=analyzed_at,
            ),
        )
        record.analyzed_at = analyzed_at
        return "inserted"

    if analyzed_at is None or analyzed_at <= existing.analyzed_at:
        logger.info(
            "Kept existing analysis; incoming analyzed_at is not newer",
            extra={"call_id": record.call_id, "event": CALL_ANALYZED},
        )
        return "stale"

    existing.summary = fields.summary
    existing.sentiment = fields.sentiment
    existing.successful = fields.successful
    existing.booking_created = fields.booking_created
    existing.transcript = fields.transcript
    existing.extracted_fields = fields.extracted_fields
    existing.analyzed_at = analyzed_at
    record.analyzed_at = analyzed_at
    return "updated"


class WebhookDispatcher:
    """Applies lifecycle events to call records and queues follow-up work."""

    def __init__(self, *, resolver: TenantResolver, booking: BookingClient, settings: Settings) -> None:
        self._resolver = resolver
        self._booking = booking
        self._timeout = settings.webhook_timeout_seconds

    async def dispatch(self, session: AsyncSession, event: schemas.WebhookEvent) -> dict[str, Any]:
        handlers = {
            CALL_STARTED: self.call_started,
            CALL_ENDED: self.call_ended,
            CALL_ANALYZED: self.call_analyzed,
        }
        handler = handlers.get(event.event)
        if handler is None:
            logger.info("Ignoring webhook event %s", event.event, extra={"event": event.event})
            return {"success": True, "ignored": True, "event": event.event}
        return await handler(session, event)

    async def call_started(self, session: AsyncSession, event: schemas.WebhookEvent) -> dict[str, Any]:
        call = event.call
        async with session.begin():
            tenant = await self._resolve(session, call)
            record = await calls_repo.lock_or_create(session, call_id=call.call_id, tenant_id=tenant.tenant_id)
            _fill_identity(record, call, tenant)
            started_at = parse_instant(call.start_timestamp) or parse_instant(event.timestamp)
            if started_at is not None:
                record.started_at = started_at
            elif record.started_at is None:
                record.started_at = utcnow()
            _clamp_end(record)
            record.raw_payload = {**(record.raw_payload or {}), CALL_STARTED: call.model_dump(mode="json")}
        self._log(CALL_STARTED, tenant, record)
        return {"success": True, "event": CALL_STARTED, "callId": call.call_id, "status": record.status.value}

    async def call_ended(self, session: AsyncSession, event: schemas.WebhookEvent) -> dict[str, Any]:
        call = event.call
        async with session.begin():
            tenant = await self._resolve(session, call)
            record = await calls_repo.lock_or_create(session, call_id=call.call_id, tenant_id=tenant.tenant_id)
            _fill_identity(record, call, tenant)
            if record.started_at is None:
                record.started_at = parse_instant(call.start_timestamp)
            record.ended_at = parse_instant(call.end_timestamp) or parse_instant(event.timestamp) or utcnow()
            record.status = _terminal_status(call)
            record.cost_cents = call.cost_cents
            record.disconnection_reason = call.disconnection_reason
            _clamp_end(record)
            record.raw_payload = {**(record.raw_payload or {}), CALL_ENDED: call.model_dump(mode="json")}
        self._log(CALL_ENDED, tenant, record)
        return {"success": True, "event": CALL_ENDED, "callId": call.call_id, "status": record.status.value}

    async def call_analyzed(self, session: AsyncSession, event: schemas.WebhookEvent) -> dict[str, Any]:
        call = event.call
        analyzed_at = analyzed_at_of(event)
        async with session.begin():
            tenant = await self._resolve(session, call)
            record = await calls_repo.lock_or_create(session, call_id=call.call_id, tenant_id=tenant.tenant_id)
            _fill_identity(record, call, tenant)
            outcome = await record_analysis(session, record, analysis_fields(call), analyzed_at)
            queued: list[str] = []
            if outcome == "inserted":
                queued = await self._queue_notifications(session, tenant, record)
        logger.info(
            "call_analyzed %s",
            outcome,
            extra={"event": CALL_ANALYZED, "tenant_id": tenant.tenant_id, "call_id": call.call_id},
        )
        return {
            "success": True,
            "event": CALL_ANALYZED,
            "callId": call.call_id,
            "analysis": outcome,
            "queued": queued,
        }

    async def call_inbound(self, session: AsyncSession, raw_body: bytes) -> dict[str, Any]:
        """Identify the caller so the agent can greet returning customers by name."""

        try:
            event = schemas.InboundCallEvent.model_validate(json.loads(raw_body or b"{}"))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ValidationFailed("Inbound call payload rejected", fields=["call_inbound"]) from exc
        inbound = event.call_inbound

        async with session.begin():
            try:
                tenant = await self._resolver.resolve(
                    session,
                    ResolutionInputs(agent_id=inbound.agent_id, to_number=inbound.to_number),
                )
            except ServiceError as exc:
                logger.warning("Inbound call to %s not matched: %s", mask_number(inbound.to_number), exc.kind)
                tenant = None

        variables = default_dynamic_variables(tenant, inbound.from_number)
        if tenant is not None and tenant.booking is not None and to_e164(inbound.from_number):
            budget = Budget(self._timeout, self._timeout)
            try:
                variables.update(
                    await self._caller_variables(tenant, tenant.booking, to_e164(inbound.from_number) or "", budget)
                )
            except ProviderError as exc:
                logger.warning(
                    "Caller lookup failed for %s",
                    mask_number(inbound.from_number),
                    extra={"kind": exc.kind, "tenant_id": tenant.tenant_id},
                )
        response: dict[str, Any] = {"call_inbound": {"dynamic_variables": variables}}
        if tenant is not None:
            response["call_inbound"]["metadata"] = {"tenant_id": tenant.tenant_id, "tenant_slug": tenant.slug}
        return response

    async def _caller_variables(
        self,
        tenant: ResolvedTenant,
        account: BookingAccount,
        phone: str,
        budget: Budget,
    ) -> dict[str, str]:
        customer = await budget.run(
            self._booking.find_customer_by_phone(account, phone),
            operation="identify caller",
        )
        if customer is None:
            return {}
        upcoming = await budget.run(
            self._booking.list_customer_bookings(
                account,
                customer_id=customer.id,
                start_at_min=utcnow() - timedelta(minutes=5),
            ),
            operation="list caller bookings",
        )
        first = customer.given_name or ""
        greeting = f"Thank you for calling {tenant.business_name}, is this {first}?" if first else None
        variables = {
            "customer_first_name": first,
            "customer_last_name": customer.family_name or "",
            "customer_full_name": customer.full_name,
            "customer_email": customer.email or "",
            "customer_id": customer.id,
            "is_returning_customer": "true",
            "upcoming_bookings_json": json.dumps(
                [{"id": item.id, "startAt": item.start_at, "status": item.status} for item in upcoming]
            ),
        }
        if greeting:
            variables["initial_message"] = greeting
        return variables

    async def _resolve(self, session: AsyncSession, call: schemas.CallPayload) -> ResolvedTenant:
        business_number = call.from_number if (call.direction or "").lower() == "outbound" else call.to_number
        return await self._resolver.resolve(
            session,
            ResolutionInputs(agent_id=call.agent_id, to_number=business_number, call_id=call.call_id),
        )

    async def _queue_notifications(
        self,
        session: AsyncSession,
        tenant: ResolvedTenant,
        record: CallRecord,
    ) -> list[str]:
        analysis = await calls_repo.get_analysis(session, record.call_id)
        if analysis is None:
            return []
        queued = []
        email_to = tenant.setting("notification_email")
        if email_to:
            await tasks_service.enqueue(
                session,
                kind=TaskKind.EMAIL,
                payload=notifications.post_call_email(tenant, record, analysis, to=email_to),
                idempotency_key=f"post-call-email:{record.call_id}",
                tenant_id=tenant.tenant_id,
            )
            queued.append("email")
        sms_to = tenant.setting("notification_sms")
        if sms_to:
            await tasks_service.enqueue(
                session,
                kind=TaskKind.SMS,
                payload=notifications.post_call_sms(tenant, record, analysis, to=sms_to),
                idempotency_key=f"post-call-sms:{record.call_id}",
                tenant_id=tenant.tenant_id,
            )
            queued.append("sms")
        return queued

    def _log(self, event: str, tenant: ResolvedTenant, record: CallRecord) -> None:
        logger.info(
            "%s applied",
            event,
            extra={
                "event": event,
                "tenant_id": tenant.tenant_id,
                "call_id": record.call_id,
                "status": record.status.value,
            },
        )


def default_dynamic_variables(tenant: ResolvedTenant | None, from_number: str | None) -> dict[str, str]:
    business_name = tenant.business_name if tenant is not None else "us"
    zone_name = tenant.timezone if tenant is not None else "America/New_York"
    try:
        zone = ZoneInfo(zone_name)
    except (KeyError, ValueError):
        zone = ZoneInfo("America/New_York")
    digits = "".join(ch for ch in (from_number or "") if ch.isdigit())
    return {
        "customer_first_name": "",
        "customer_last_name": "",
        "customer_full_name": "",
        "customer_email": "",
        "customer_phone": from_number or "",
        "customer_id": "",
        "upcoming_bookings_json": "[]",
        "is_returning_customer": "false",
        "current_datetime_store_timezone": utcnow().astimezone(zone).strftime("%A, %B %d, %Y %I:%M %p %Z"),
        "caller_id": digits[-10:],
        "initial_message": f"Thank you for calling {business_name}, who am I speaking with today?",
    }


def _fill_identity(record: CallRecord, call: schemas.CallPayload, tenant: ResolvedTenant) -> None:
    """Fill descriptive columns the row does not have yet; never overwrite."""

    if record.agent_id is None and tenant.agent_id is not None:
        record.agent_id = tenant.agent_id
    if record.direction is None and call.direction:
        record.direction = call.direction
    if record.from_number is None and call.from_number:
        record.from_number = call.from_number
    if record.to_number is None and call.to_number:
        record.to_number = call.to_number


def _terminal_status(call: schemas.CallPayload) -> CallStatus:
    status = (call.call_status or "").lower()
    reason = (call.disconnection_reason or "").lower()
    if status in FAILED_CALL_STATUSES or reason.startswith("error"):
        return CallStatus.FAILED
    return CallStatus.ENDED


def _clamp_end(record: CallRecord) -> None:
    if record.started_at and record.ended_at and record.ended_at < record.started_at:
        record.ended_at = record.started_at


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    return bool(value)
