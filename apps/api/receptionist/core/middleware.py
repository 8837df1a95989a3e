"""Correlation ids and classified error rendering shared by both apps."""
from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .errors import ServiceError
from .logs import correlation_id_var

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "x-correlation-id"


def current_correlation_id(request: Request) -> str | None:
    return getattr(request.state, "correlation_id", None) or correlation_id_var.get()


def error_response(request: Request, error: ServiceError) -> JSONResponse:
    correlation_id = current_correlation_id(request)
    headers = dict(error.headers)
    if correlation_id:
        headers[CORRELATION_HEADER] = correlation_id
    return JSONResponse(status_code=error.status_code, content=error.to_body(correlation_id), headers=headers)


def install_http_plumbing(app: FastAPI) -> None:
    """Attach the correlation-id middleware and the error handlers to ``app``."""

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid4())
        request.state.correlation_id = correlation_id
        token = correlation_id_var.set(correlation_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id
            logger.info(
                "%s %s -> %s",
                request.method,
                request.url.path,
                response.status_code,
                extra={
                    "route": request.url.path,
                    "status": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000),
                },
            )
            return response
        finally:
            correlation_id_var.reset(token)

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        log = logger.warning if exc.status_code < 500 else logger.error
        log("%s: %s", exc.kind, exc.message, extra={"kind": exc.kind, "route": request.url.path})
        return error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        fields = sorted({".".join(str(part) for part in error["loc"] if part != "body") for error in errors})
        missing = any(error.get("type") == "missing" for error in errors)
        error = ServiceError(
            "validation/missing-field" if missing else "validation/invalid-field",
            "Required field missing" if missing else "Invalid field value",
            status_code=400,
            details={"fields": [field for field in fields if field]},
        )
        return error_response(request, error)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s", request.url.path, extra={"kind": "internal/unexpected"})
        error = ServiceError("internal/unexpected", "Internal server error")
        return error_response(request, error)
