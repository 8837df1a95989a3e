"""Request authentication for webhook and tool-call ingress."""
from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import AuthError
from ..core.security import parse_bearer, token_matches, verify_webhook_signature
from ..models.agent import Agent, AgentStatus
from ..repositories import agents as agents_repo

logger = logging.getLogger(__name__)


def verify_webhook(
    *,
    secret: str,
    signature: str | None,
    timestamp: str | None,
    raw_body: bytes,
    skew_seconds: int,
) -> None:
    """Verify a signed lifecycle webhook, logging the failure kind server-side only."""

    try:
        verify_webhook_signature(
            secret=secret,
            signature=signature,
            timestamp=timestamp,
            raw_body=raw_body,
            skew_seconds=skew_seconds,
        )
    except AuthError as exc:
        logger.warning("Webhook signature rejected", extra={"kind": exc.kind})
        raise


async def authenticate_agent(
    session: AsyncSession,
    *,
    authorization: str | None,
    external_agent_id: str | None,
) -> Agent:
    """Return the active agent owning the bearer token or raise ``auth/invalid-token``."""

    token = parse_bearer(authorization)
    agent = None
    if external_agent_id:
        agent = await agents_repo.get_by_external_id(session, external_agent_id.strip())

    # Always hash and compare so an unknown agent id costs the same as a wrong token.
    matches = token_matches(token or "", agent.bearer_token_hash if agent is not None else None)
    if token is None or agent is None or not matches or agent.status != AgentStatus.ACTIVE:
        logger.warning("Tool call rejected", extra={"kind": "auth/invalid-token"})
        raise AuthError("auth/invalid-token")
    return agent
