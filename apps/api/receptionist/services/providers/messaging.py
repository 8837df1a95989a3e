"""Twilio SMS / WhatsApp adapter."""
from __future__ import annotations

import asyncio
import logging

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from ...core.errors import ProviderError
from ...core.logs import mask_number

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"


def with_whatsapp_prefix(number: str) -> str:
    return number if number.startswith(WHATSAPP_PREFIX) else f"{WHATSAPP_PREFIX}{number}"


class MessagingClient:
    """Send text messages through the Twilio REST client.

    The SDK is synchronous, so each send runs in a worker thread.
    """

    provider = "messaging"

    def __init__(self, client: Client) -> None:
        self._client = client

    async def send(self, *, to: str, from_: str, body: str) -> str:
        """Send one message and return the provider message id."""

        try:
            message = await asyncio.to_thread(self._client.messages.create, to=to, from_=from_, body=body)
        except TwilioRestException as exc:
            logger.warning("Message to %s rejected with %s", mask_number(to), exc.status)
            raise _classify(exc) from exc
        return message.sid


def build_messaging_client(*, account_sid: str, auth_token: str) -> MessagingClient:
    return MessagingClient(Client(account_sid, auth_token))


def _classify(exc: TwilioRestException) -> ProviderError:
    status = exc.status or 500
    message = f"messaging provider returned {status}"
    if status == 429:
        return ProviderError("rate-limited", message, provider="messaging", upstream_status=status)
    if status == 404:
        return ProviderError("not-found", message, provider="messaging", upstream_status=status)
    if 400 <= status < 500:
        return ProviderError("invalid", message, provider="messaging", upstream_status=status)
    return ProviderError("unknown", message, provider="messaging", upstream_status=status)
