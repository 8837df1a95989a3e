"""Post-call notification content for the e-mail and SMS workers."""
from __future__ import annotations

from datetime import datetime
from html import escape
from typing import Any
from zoneinfo import ZoneInfo

from ..models.call import CallAnalysis, CallRecord
from .tenant_resolver import ResolvedTenant


def _local_time(value: datetime | None, zone_name: str) -> str:
    if value is None:
        return "unknown"
    try:
        zone = ZoneInfo(zone_name)
    except (KeyError, ValueError):
        zone = ZoneInfo("UTC")
    return value.astimezone(zone).strftime("%b %d, %Y %I:%M %p %Z")


def _duration(record: CallRecord) -> str:
    if record.started_at is None or record.ended_at is None:
        return "unknown"
    seconds = int((record.ended_at - record.started_at).total_seconds())
    minutes, seconds = divmod(max(seconds, 0), 60)
    return f"{minutes}m {seconds:02d}s"


def _caller_name(analysis: CallAnalysis) -> str:
    fields = analysis.extracted_fields or {}
    for key in ("customer_name", "caller_name", "name"):
        if fields.get(key):
            return str(fields[key])
    return "Unknown caller"


def email_subject(tenant: ResolvedTenant, analysis: CallAnalysis) -> str:
    caller = _caller_name(analysis)
    if not analysis.successful:
        return f"{tenant.business_name} - {caller} - Failed Call"
    if (analysis.sentiment or "").lower() == "negative":
        return f"{tenant.business_name} - {caller} - Negative Sentiment"
    return f"{tenant.business_name} - Call Report - {caller}"


def post_call_email(
    tenant: ResolvedTenant,
    record: CallRecord,
    analysis: CallAnalysis,
    *,
    to: str,
) -> dict[str, Any]:
    """Build the email-sender payload summarising one analyzed call."""

    rows = [
        ("Caller", _caller_name(analysis)),
        ("From", record.from_number or "unknown"),
        ("Started", _local_time(record.started_at, tenant.timezone)),
        ("Duration", _duration(record)),
        ("Sentiment", analysis.sentiment or "unknown"),
        ("Successful", "yes" if analysis.successful else "no"),
        ("Booking created", "yes" if analysis.booking_created else "no"),
    ]
    summary = analysis.summary or "No summary available."
    text = "\n".join(f"{label}: {value}" for label, value in rows) + f"\n\nSummary:\n{summary}\n"
    html_rows = "".join(
        f"<tr><td><strong>{escape(label)}</strong></td><td>{escape(str(value))}</td></tr>" for label, value in rows
    )
    html = (
        f"<h2>{escape(tenant.business_name)} call report</h2>"
        f"<table>{html_rows}</table>"
        f"<h3>Summary</h3><p>{escape(summary)}</p>"
    )
    return {
        "to": to,
        "subject": email_subject(tenant, analysis),
        "text": text,
        "html": html,
        "tenant": tenant.slug,
        "tenantId": tenant.tenant_id,
        "callId": record.call_id,
    }


def post_call_sms(
    tenant: ResolvedTenant,
    record: CallRecord,
    analysis: CallAnalysis,
    *,
    to: str,
) -> dict[str, Any]:
    """Build the sms-sender payload: a short summary for the business owner."""

    summary = (analysis.summary or "No summary available.").strip()
    if len(summary) > 240:
        summary = summary[:237] + "..."
    booked = " Booking created." if analysis.booking_created else ""
    body = f"{tenant.business_name}: call from {record.from_number or 'unknown'}.{booked} {summary}"
    channel = tenant.setting("notification_channel", "sms")
    return {
        "to": to,
        "body": body,
        "type": "whatsapp" if channel == "whatsapp" else "sms",
        "tenantId": tenant.tenant_id,
        "callId": record.call_id,
    }
