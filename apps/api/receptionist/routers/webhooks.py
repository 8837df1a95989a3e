"""Signed lifecycle webhooks from the voice provider."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..container import AppContainer
from ..db.session import get_session
from ..services import webhooks as webhooks_service
from .deps import get_container, verified_webhook_body

router = APIRouter()


async def _dispatch(
    raw_body: bytes,
    session: AsyncSession,
    container: AppContainer,
    expected: str | None = None,
) -> dict[str, Any]:
    event = webhooks_service.parse_event(raw_body, expected=expected)
    return await container.webhooks.dispatch(session, event)


@router.post("")
async def retell_webhook(
    raw_body: bytes = Depends(verified_webhook_body),
    session: AsyncSession = Depends(get_session),
    container: AppContainer = Depends(get_container),
) -> dict[str, Any]:
    """Single-endpoint form: dispatch on the body's ``event`` field."""

    if webhooks_service.event_name(raw_body) == webhooks_service.CALL_INBOUND:
        return await container.webhooks.call_inbound(session, raw_body)
    return await _dispatch(raw_body, session, container)


@router.post("/call-started")
async def call_started(
    raw_body: bytes = Depends(verified_webhook_body),
    session: AsyncSession = Depends(get_session),
    container: AppContainer = Depends(get_container),
) -> dict[str, Any]:
    return await _dispatch(raw_body, session, container, webhooks_service.CALL_STARTED)


@router.post("/call-ended")
async def call_ended(
    raw_body: bytes = Depends(verified_webhook_body),
    session: AsyncSession = Depends(get_session),
    container: AppContainer = Depends(get_container),
) -> dict[str, Any]:
    return await _dispatch(raw_body, session, container, webhooks_service.CALL_ENDED)


@router.post("/call-analyzed")
async def call_analyzed(
    raw_body: bytes = Depends(verified_webhook_body),
    session: AsyncSession = Depends(get_session),
    container: AppContainer = Depends(get_container),
) -> dict[str, Any]:
    return await _dispatch(raw_body, session, container, webhooks_service.CALL_ANALYZED)


@router.post("/call-inbound")
async def call_inbound(
    raw_body: bytes = Depends(verified_webhook_body),
    session: AsyncSession = Depends(get_session),
    container: AppContainer = Depends(get_container),
) -> dict[str, Any]:
    """Return dynamic variables identifying the caller."""

    return await container.webhooks.call_inbound(session, raw_body)
