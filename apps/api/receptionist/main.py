"""FastAPI application for the voice receptionist gateway."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .container import AppContainer, build_container
from .core.config import Settings, get_settings
from .core.logs import configure_logging
from .core.middleware import install_http_plumbing
from .routers import health, tools, webhooks

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, *, container: AppContainer | None = None) -> FastAPI:
    """Build the API app.

    When ``container`` is supplied (tests) it is used as-is and the lifespan
    neither builds nor closes dependencies nor starts the outbox poller.
    """

    settings = settings or (container.settings if container is not None else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if container is not None:
            yield
            return

        configure_logging(settings.log_level)
        built = build_container(settings)
        app.state.container = built
        stop = asyncio.Event()
        poller = asyncio.create_task(built.tasks.run_forever(stop), name="outbox-poller")
        logger.info("API started", extra={"event": "startup"})
        try:
            yield
        finally:
            stop.set()
            with suppress(asyncio.CancelledError):
                await poller
            await built.aclose()
            logger.info("API stopped", extra={"event": "shutdown"})

    app = FastAPI(title="Voice Receptionist Gateway", version="0.1.0", lifespan=lifespan)
    if container is not None:
        app.state.container = container

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    install_http_plumbing(app)

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(tools.router, prefix="/api/tools", tags=["tools"])
    app.include_router(webhooks.router, prefix="/api/webhooks/retell", tags=["webhooks"])
    return app


app = create_app()
