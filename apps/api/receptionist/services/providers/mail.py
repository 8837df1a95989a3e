"""SMTP e-mail adapter."""
from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage

from ...core.errors import ProviderError


@dataclass(frozen=True, slots=True)
class SmtpConfig:
    host: str
    port: int
    user: str
    password: str
    secure: bool
    timeout: float = 30.0


class EmailClient:
    """Deliver ``EmailMessage`` objects over SMTP (implicit TLS or STARTTLS)."""

    provider = "email"

    def __init__(self, config: SmtpConfig) -> None:
        self._config = config

    async def send(self, message: EmailMessage) -> str:
        """Send and return the Message-ID header."""

        try:
            await asyncio.to_thread(self._send_sync, message)
        except smtplib.SMTPRecipientsRefused as exc:
            raise ProviderError("invalid", "Recipient refused", provider=self.provider) from exc
        except (TimeoutError, smtplib.SMTPServerDisconnected) as exc:
            raise ProviderError("timeout", "SMTP server did not respond", provider=self.provider) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise ProviderError("unknown", "SMTP delivery failed", provider=self.provider) from exc
        return message.get("Message-ID", "")

    def _send_sync(self, message: EmailMessage) -> None:
        config = self._config
        context = ssl.create_default_context()
        if config.secure:
            smtp: smtplib.SMTP = smtplib.SMTP_SSL(config.host, config.port, timeout=config.timeout, context=context)
        else:
            smtp = smtplib.SMTP(config.host, config.port, timeout=config.timeout)
        with smtp:
            if not config.secure:
                smtp.starttls(context=context)
            if config.user:
                smtp.login(config.user, config.password)
            smtp.send_message(message)
