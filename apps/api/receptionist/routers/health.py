"""Liveness and readiness checks."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..container import AppContainer
from .deps import get_container

logger = logging.getLogger(__name__)

router = APIRouter()


@router.api_route("/health", methods=["GET", "HEAD"])
async def health() -> dict[str, str]:
    """Return service health status."""

    return {"status": "ok"}


@router.get("/health/ready")
async def ready(container: AppContainer = Depends(get_container)) -> JSONResponse:
    """Report whether the database answers."""

    try:
        await container.db.ping()
    except Exception as exc:
        logger.warning("Readiness check failed: %s", exc)
        return JSONResponse(status_code=503, content={"status": "degraded", "database": "unreachable"})
    return JSONResponse(content={"status": "ok", "database": "ok"})
