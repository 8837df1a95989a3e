"""Classified service errors and their HTTP mapping."""
from __future__ import annotations

from typing import Any

from fastapi import status


class ServiceError(Exception):
    """Error carrying a taxonomy kind (``family/detail``) and HTTP status."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        kind: str,
        message: str,
        *,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        self.headers = headers or {}

    def to_body(self, correlation_id: str | None) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "kind": self.kind, "message": self.message}
        body.update(self.details)
        body["correlationId"] = correlation_id
        return body


class AuthError(ServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, kind: str = "auth/invalid-signature") -> None:
        # Same message for every auth failure so callers cannot tell which check failed.
        super().__init__(kind, "Unauthorized")


class ValidationFailed(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, detail: str = "invalid-field", fields: list[str] | None = None) -> None:
        details = {"fields": fields} if fields else None
        super().__init__(f"validation/{detail}", message, details=details)


class TenantNotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, message: str = "No tenant matches this call") -> None:
        super().__init__("tenant/not-found", message)


class TenantAmbiguous(ServiceError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str = "More than one tenant matches this call") -> None:
        super().__init__("tenant/ambiguous", message)


class SlotUnavailable(ServiceError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, alternates: list[dict[str, Any]]) -> None:
        super().__init__(
            "booking/slot-unavailable",
            "The requested time is no longer available",
            details={"alternates": alternates},
        )


PROVIDER_STATUS: dict[str, int] = {
    "rate-limited": status.HTTP_503_SERVICE_UNAVAILABLE,
    "timeout": status.HTTP_504_GATEWAY_TIMEOUT,
    "not-found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "invalid": status.HTTP_400_BAD_REQUEST,
    "unknown": status.HTTP_502_BAD_GATEWAY,
}


class ProviderError(ServiceError):
    """Adapter-classified failure of an external provider call."""

    def __init__(
        self,
        reason: str,
        message: str,
        *,
        provider: str = "",
        retry_after: float | None = None,
        upstream_status: int | None = None,
    ) -> None:
        if reason not in PROVIDER_STATUS:
            reason = "unknown"
        headers = {}
        if reason == "rate-limited":
            headers["Retry-After"] = str(max(1, int(round(retry_after or 1))))
        super().__init__(
            f"provider/{reason}",
            message,
            status_code=PROVIDER_STATUS[reason],
            headers=headers,
        )
        self.reason = reason
        self.provider = provider
        self.retry_after = retry_after
        self.upstream_status = upstream_status

    @property
    def retryable(self) -> bool:
        return self.reason in {"rate-limited", "timeout"} or (
            self.reason == "unknown" and (self.upstream_status is None or self.upstream_status >= 500)
        )
