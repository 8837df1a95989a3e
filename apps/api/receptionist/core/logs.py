"""Logging setup with per-request correlation ids."""
from __future__ import annotations

import logging
from contextvars import ContextVar

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

STRUCTURED_FIELDS: tuple[str, ...] = (
    "event",
    "kind",
    "tenant_id",
    "call_id",
    "task_id",
    "route",
    "status",
    "duration_ms",
    "attempts",
)


class CorrelationIdFilter(logging.Filter):
    """Stamp the current correlation id onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = correlation_id_var.get() or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """Plain text formatter that appends known ``extra`` fields as key=value."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = [
            f"{name}={getattr(record, name)}"
            for name in STRUCTURED_FIELDS
            if getattr(record, name, None) is not None
        ]
        if pairs:
            line = f"{line} | {' '.join(pairs)}"
        return line


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""

    handler = logging.StreamHandler()
    handler.addFilter(CorrelationIdFilter())
    handler.setFormatter(
        StructuredFormatter("%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s")
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper())


def mask_number(number: str | None) -> str:
    """Mask a phone number for log output."""

    if not number:
        return "unknown"
    value = str(number)
    if len(value) <= 5:
        return f"{value}***"
    return f"{value[:5]}***"
