"""Worker implementations: e-mail, SMS, phone numbers, post-call analysis.

Each worker is idempotent on the payload's ``idempotencyKey``: the first
successful answer is stored and replayed for redeliveries.
"""
from __future__ import annotations

import json
import logging
from email.message import EmailMessage
from email.utils import formataddr, getaddresses, make_msgid, parseaddr
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings
from ..core.contacts import require_e164, require_email
from ..core.errors import ProviderError, ServiceError, TenantNotFound, ValidationFailed
from ..core.logs import mask_number
from ..core.timeutil import parse_instant
from ..repositories import calls as calls_repo
from ..repositories import idempotency as idempotency_repo
from ..schemas.workers import EmailTask, PostCallAnalysisTask, SmsTask, WorkerPayload
from ..services.providers.mail import EmailClient
from ..services.providers.messaging import MessagingClient, with_whatsapp_prefix
from ..services.webhooks import AnalysisFields, record_analysis

logger = logging.getLogger(__name__)


class TaskInProgress(ServiceError):
    """Another delivery of the same task is still running; the outbox retries later."""

    def __init__(self) -> None:
        super().__init__("internal/task-in-progress", "Task is already being processed", status_code=503)


async def run_idempotent(
    session: AsyncSession,
    task: WorkerPayload,
    *,
    route: str,
    ttl_seconds: int,
    work: Callable[[], Awaitable[dict[str, Any]]],
) -> dict[str, Any]:
    """Run ``work`` once per ``(route, idempotencyKey)``.

    Payloads without a key or tenant are processed without deduplication.
    """

    if not task.idempotency_key or not task.tenant_id:
        return await work()

    key = f"{route}:{task.idempotency_key}"[:64]
    async with session.begin():
        claimed = await idempotency_repo.claim(
            session, key=key, tenant_id=task.tenant_id, route=route, ttl_seconds=ttl_seconds
        )
        row = None if claimed else await idempotency_repo.get(session, key)
    if not claimed:
        if row is not None and row.response_snapshot:
            logger.info("Replaying %s for %s", route, task.idempotency_key)
            return json.loads(row.response_snapshot)
        raise TaskInProgress()

    try:
        result = await work()
    except Exception:
        async with session.begin():
            await idempotency_repo.release(session, key)
        raise
    async with session.begin():
        await idempotency_repo.store_response(
            session, key=key, snapshot=json.dumps(result, separators=(",", ":")), status_code=200
        )
    return result


def build_email(task: EmailTask, *, default_from: str) -> EmailMessage:
    """Validate addresses and assemble the MIME message."""

    recipients = [address for _name, address in getaddresses([task.to]) if address]
    if not recipients:
        raise ValidationFailed("to is required", detail="missing-field", fields=["to"])
    validated = [require_email(address, "to") for address in recipients]

    sender_name, sender_address = parseaddr(task.from_address or default_from)
    sender_address = require_email(sender_address, "from")

    message = EmailMessage()
    message["To"] = ", ".join(validated)
    message["From"] = formataddr((sender_name, sender_address)) if sender_name else sender_address
    message["Subject"] = task.subject
    message["Message-ID"] = make_msgid(domain=sender_address.split("@", 1)[1])
    message.set_content(task.text or "This message requires an HTML capable client.")
    if task.html:
        message.add_alternative(task.html, subtype="html")
    return message


async def send_email(task: EmailTask, *, mailer: EmailClient | None, settings: Settings) -> dict[str, Any]:
    message = build_email(task, default_from=settings.email_from)
    if mailer is None:
        raise ProviderError("unknown", "SMTP is not configured", provider="email")
    message_id = await mailer.send(message)
    logger.info("E-mail sent", extra={"tenant_id": task.tenant_id, "event": "email_sent"})
    return {"success": True, "messageId": message_id, "to": message["To"]}


def sms_addresses(task: SmsTask, *, settings: Settings) -> tuple[str, str]:
    """Return validated ``(to, from)``, prefixed with ``whatsapp:`` for WhatsApp."""

    to = task.to.removeprefix("whatsapp:")
    to = require_e164(to, "to")
    if task.type == "whatsapp":
        sender = task.from_number or settings.twilio_whatsapp_from
        if not sender:
            raise ValidationFailed("No WhatsApp sender configured", fields=["from"])
        return with_whatsapp_prefix(to), with_whatsapp_prefix(sender)
    sender = task.from_number or settings.twilio_sms_from
    if not sender:
        raise ValidationFailed("No SMS sender configured", fields=["from"])
    return to, sender


async def send_sms(task: SmsTask, *, messaging: MessagingClient | None, settings: Settings) -> dict[str, Any]:
    to, sender = sms_addresses(task, settings=settings)
    if messaging is None:
        raise ProviderError("unknown", "SMS provider is not configured", provider="messaging")
    sid = await messaging.send(to=to, from_=sender, body=task.body)
    logger.info("%s sent to %s", task.type.upper(), mask_number(to), extra={"tenant_id": task.tenant_id})
    return {"success": True, "messageSid": sid, "to": to, "type": task.type}


async def persist_analysis(session: AsyncSession, task: PostCallAnalysisTask) -> dict[str, Any]:
    """Store an analysis with the same newer-wins rule as the webhook path."""

    analyzed_at = parse_instant(task.analyzed_at)
    fields = AnalysisFields(
        summary=task.summary,
        sentiment=task.sentiment,
        successful=task.successful,
        booking_created=task.booking_created,
        transcript=task.transcript,
        extracted_fields=task.extracted_fields,
    )
    async with session.begin():
        existing = await calls_repo.get_by_call_id(session, task.call_id)
        if existing is not None and existing.tenant_id != task.tenant_id:
            raise TenantNotFound("Call belongs to another tenant")
        record = await calls_repo.lock_or_create(session, call_id=task.call_id, tenant_id=task.tenant_id)
        outcome = await record_analysis(session, record, fields, analyzed_at)
    return {"success": True, "callId": task.call_id, "analysis": outcome}
