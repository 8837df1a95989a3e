"""Process-wide dependencies, built once at startup and injected into handlers."""
from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from .core.config import Settings
from .db.session import Database, create_database
from .services.phone_numbers import PhoneNumberManager
from .services.providers.booking import BookingClient
from .services.providers.mail import EmailClient, SmtpConfig
from .services.providers.messaging import MessagingClient, build_messaging_client
from .services.providers.telephony import TelephonyClient, build_telephony_client
from .services.tasks import TaskDispatcher
from .services.tenant_resolver import TenantResolver
from .services.tools import ToolDispatcher
from .services.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


@dataclass
class AppContainer:
    settings: Settings
    db: Database
    resolver: TenantResolver
    booking: BookingClient
    telephony: TelephonyClient
    messaging: MessagingClient | None
    mailer: EmailClient | None
    tools: ToolDispatcher
    webhooks: WebhookDispatcher
    tasks: TaskDispatcher
    phone_numbers: PhoneNumberManager

    async def aclose(self) -> None:
        await self.booking.aclose()
        await self.telephony.aclose()
        await self.tasks.aclose()
        await self.db.dispose()


def build_container(settings: Settings) -> AppContainer:
    """Wire adapters and dispatchers from configuration."""

    db = create_database(settings)
    resolver = TenantResolver(ttl_seconds=settings.tenant_cache_ttl_seconds)
    retry_delays = settings.provider_retry_delays

    booking = BookingClient(
        httpx.AsyncClient(timeout=settings.tool_hard_budget_seconds),
        api_version=settings.square_api_version,
        retry_delays=retry_delays,
    )
    telephony = build_telephony_client(
        base_url=settings.retell_base_url,
        api_key=settings.retell_api_key,
        timeout=settings.task_timeout_seconds,
        retry_delays=retry_delays,
    )

    messaging = None
    if settings.twilio_account_sid and settings.twilio_auth_token:
        messaging = build_messaging_client(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
        )
    else:
        logger.warning("Twilio credentials missing; sms-sender will reject tasks")

    mailer = None
    if settings.email_smtp_host:
        mailer = EmailClient(
            SmtpConfig(
                host=settings.email_smtp_host,
                port=settings.email_smtp_port,
                user=settings.email_smtp_user,
                password=settings.email_smtp_pass,
                secure=settings.email_smtp_secure,
                timeout=settings.task_timeout_seconds,
            )
        )
    else:
        logger.warning("EMAIL_SMTP_HOST missing; email-sender will reject tasks")

    return AppContainer(
        settings=settings,
        db=db,
        resolver=resolver,
        booking=booking,
        telephony=telephony,
        messaging=messaging,
        mailer=mailer,
        tools=ToolDispatcher(booking=booking, settings=settings),
        webhooks=WebhookDispatcher(resolver=resolver, booking=booking, settings=settings),
        tasks=TaskDispatcher(
            db=db,
            client=httpx.AsyncClient(base_url=settings.worker_base_url, timeout=settings.task_timeout_seconds),
            settings=settings,
        ),
        phone_numbers=PhoneNumberManager(telephony=telephony, resolver=resolver),
    )
