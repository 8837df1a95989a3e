"""Request dependencies shared by the API routers."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..container import AppContainer
from ..core.errors import ValidationFailed
from ..db.session import get_session
from ..models.agent import Agent
from ..services import auth as auth_service
from ..services import normalizer
from ..services.tenant_resolver import ResolutionInputs, ResolvedTenant


def get_container(request: Request) -> AppContainer:
    return request.app.state.container


@dataclass(frozen=True)
class ToolCall:
    """An authenticated, normalized tool invocation and the tenant it belongs to."""

    agent: Agent
    tenant: ResolvedTenant
    normalized: normalizer.NormalizedPayload

    @property
    def payload(self) -> dict[str, Any]:
        return self.normalized.payload

    @property
    def call_id(self) -> str | None:
        return self.normalized.call_id


async def read_json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationFailed("Body is not valid JSON", fields=["body"]) from exc


async def tool_call(
    request: Request,
    session: AsyncSession = Depends(get_session),
    container: AppContainer = Depends(get_container),
) -> ToolCall:
    """Normalize the envelope, authenticate the agent and resolve the tenant.

    The original body stays on ``request.state.retell_original_body`` and the
    envelope metadata on ``request.state.retell_metadata``.
    """

    body = await read_json_body(request)
    request.state.retell_original_body = body
    normalized = normalizer.normalize(body, call_id_header=request.headers.get("x-retell-call-id"))
    if request.method in {"GET", "HEAD"}:
        normalized = normalizer.NormalizedPayload(
            payload=normalizer.merge_query(normalized.payload, request.query_params),
            metadata=normalized.metadata,
            is_envelope=normalized.is_envelope,
        )
    request.state.retell_metadata = normalized.metadata

    async with session.begin():
        agent = await auth_service.authenticate_agent(
            session,
            authorization=request.headers.get("authorization"),
            external_agent_id=request.headers.get("x-agent-id"),
        )
        tenant = await container.resolver.resolve(
            session,
            ResolutionInputs(
                agent=agent,
                agent_id=normalized.agent_id,
                to_number=normalized.to_number,
                call_id=normalized.call_id,
            ),
        )
    return ToolCall(agent=agent, tenant=tenant, normalized=normalized)


async def verified_webhook_body(
    request: Request,
    container: AppContainer = Depends(get_container),
) -> bytes:
    """Return the raw body after signature and freshness checks."""

    raw_body = await request.body()
    settings = container.settings
    auth_service.verify_webhook(
        secret=settings.signing_secret,
        signature=request.headers.get("x-retell-signature"),
        timestamp=request.headers.get("x-retell-timestamp"),
        raw_body=raw_body,
        skew_seconds=settings.retell_signature_skew_seconds,
    )
    return raw_body
