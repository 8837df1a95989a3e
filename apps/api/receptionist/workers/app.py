"""FastAPI application hosting the sidecar workers.

Every route requires the shared ``x-functions-key`` and answers 200 on
success, 4xx for input the outbox should not retry, and 5xx otherwise.
"""
from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..container import AppContainer, build_container
from ..core.config import Settings, get_settings
from ..core.errors import AuthError
from ..core.logs import configure_logging
from ..core.middleware import install_http_plumbing
from ..db.session import get_session
from ..routers.deps import get_container
from ..schemas.workers import EmailTask, PhoneNumberTask, PostCallAnalysisTask, SmsTask
from . import handlers

logger = logging.getLogger(__name__)


async def require_worker_key(request: Request, container: AppContainer = Depends(get_container)) -> None:
    expected = container.settings.worker_key
    presented = request.headers.get("x-functions-key") or ""
    if expected and not hmac.compare_digest(presented, expected):
        raise AuthError("auth/invalid-token")


router = APIRouter(dependencies=[Depends(require_worker_key)])


@router.post("/email-sender")
async def email_sender(
    task: EmailTask,
    session: AsyncSession = Depends(get_session),
    container: AppContainer = Depends(get_container),
) -> dict[str, Any]:
    return await handlers.run_idempotent(
        session,
        task,
        route="email-sender",
        ttl_seconds=container.settings.idempotency_ttl_seconds,
        work=lambda: handlers.send_email(task, mailer=container.mailer, settings=container.settings),
    )


@router.post("/sms-sender")
async def sms_sender(
    task: SmsTask,
    session: AsyncSession = Depends(get_session),
    container: AppContainer = Depends(get_container),
) -> dict[str, Any]:
    return await handlers.run_idempotent(
        session,
        task,
        route="sms-sender",
        ttl_seconds=container.settings.idempotency_ttl_seconds,
        work=lambda: handlers.send_sms(task, messaging=container.messaging, settings=container.settings),
    )


@router.post("/phone-number-manager")
async def phone_number_manager(
    task: PhoneNumberTask,
    session: AsyncSession = Depends(get_session),
    container: AppContainer = Depends(get_container),
) -> dict[str, Any]:
    return await handlers.run_idempotent(
        session,
        task,
        route="phone-number-manager",
        ttl_seconds=container.settings.idempotency_ttl_seconds,
        work=lambda: container.phone_numbers.handle(session, task),
    )


@router.post("/post-call-analysis")
async def post_call_analysis(
    task: PostCallAnalysisTask,
    session: AsyncSession = Depends(get_session),
    container: AppContainer = Depends(get_container),
) -> dict[str, Any]:
    return await handlers.run_idempotent(
        session,
        task,
        route="post-call-analysis",
        ttl_seconds=container.settings.idempotency_ttl_seconds,
        work=lambda: handlers.persist_analysis(session, task),
    )


def create_worker_app(settings: Settings | None = None, *, container: AppContainer | None = None) -> FastAPI:
    """Build the workers app; an injected ``container`` skips startup wiring."""

    settings = settings or (container.settings if container is not None else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if container is not None:
            yield
            return
        configure_logging(settings.log_level)
        built = build_container(settings)
        app.state.container = built
        try:
            yield
        finally:
            await built.aclose()

    app = FastAPI(title="Voice Receptionist Workers", version="0.1.0", lifespan=lifespan)
    if container is not None:
        app.state.container = container
    install_http_plumbing(app)

    @app.get("/api/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(router, prefix="/api", tags=["workers"])
    return app


app = create_worker_app()
