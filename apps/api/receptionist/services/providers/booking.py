"""Square Bookings / Customers adapter.

Every call takes the tenant's ``BookingAccount`` (per-tenant OAuth bearer and
location); the pooled HTTP client is shared across tenants.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from ...core.errors import ProviderError
from ..tenant_resolver import BookingAccount
from .base import ProviderClient

logger = logging.getLogger(__name__)

PRODUCTION_URL = "https://connect.squareup.com"
SANDBOX_URL = "https://connect.squareupsandbox.com"
SLOT_TAKEN_MARKERS = ("not available", "unavailable", "already booked", "no longer available")


@dataclass(frozen=True, slots=True)
class Slot:
    start_at: str
    service_id: str
    staff_id: str | None
    duration_minutes: int | None
    service_version: int | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "startAt": self.start_at,
            "serviceId": self.service_id,
            "staffId": self.staff_id,
            "durationMinutes": self.duration_minutes,
        }


@dataclass(frozen=True, slots=True)
class Booking:
    id: str
    version: int | None
    status: str | None
    start_at: str | None
    customer_id: str | None
    service_id: str | None = None


@dataclass(frozen=True, slots=True)
class Customer:
    id: str
    given_name: str | None
    family_name: str | None
    phone_number: str | None
    email: str | None

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.given_name, self.family_name) if part)

    def as_dict(self) -> dict[str, Any]:
        return {
            "customerId": self.id,
            "givenName": self.given_name,
            "familyName": self.family_name,
            "fullName": self.full_name,
            "phoneNumber": self.phone_number,
            "email": self.email,
        }


def to_rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class BookingClient(ProviderClient):
    """Typed operations over the Square REST API."""

    provider = "booking"

    def __init__(self, client: httpx.AsyncClient, *, api_version: str, **kwargs: Any) -> None:
        super().__init__(client, **kwargs)
        self._api_version = api_version

    async def search_availability(
        self,
        account: BookingAccount,
        *,
        service_id: str,
        start_at: datetime,
        end_at: datetime,
        staff_id: str | None = None,
    ) -> list[Slot]:
        """Return bookable slots for one service in ``[start_at, end_at)``."""

        segment: dict[str, Any] = {"service_variation_id": service_id}
        if staff_id:
            segment["team_member_id_filter"] = {"any": [staff_id]}
        body = {
            "query": {
                "filter": {
                    "location_id": account.location_id,
                    "start_at_range": {"start_at": to_rfc3339(start_at), "end_at": to_rfc3339(end_at)},
                    "segment_filters": [segment],
                }
            }
        }
        data = await self._call(account, "POST", "/v2/bookings/availability/search", json=body, read=True)
        slots = []
        for availability in data.get("availabilities") or []:
            segments = availability.get("appointment_segments") or [{}]
            first = segments[0]
            slots.append(
                Slot(
                    start_at=availability["start_at"],
                    service_id=first.get("service_variation_id") or service_id,
                    staff_id=first.get("team_member_id"),
                    duration_minutes=first.get("duration_minutes"),
                    service_version=first.get("service_variation_version"),
                )
            )
        return slots

    async def create_booking(
        self,
        account: BookingAccount,
        *,
        customer_id: str,
        slot: Slot,
        notes: str | None,
        idempotency_key: str,
    ) -> Booking:
        segment: dict[str, Any] = {"service_variation_id": slot.service_id}
        if slot.staff_id:
            segment["team_member_id"] = slot.staff_id
        if slot.service_version is not None:
            segment["service_variation_version"] = slot.service_version
        if slot.duration_minutes:
            segment["duration_minutes"] = slot.duration_minutes
        booking: dict[str, Any] = {
            "start_at": slot.start_at,
            "location_id": account.location_id,
            "customer_id": customer_id,
            "appointment_segments": [segment],
        }
        if notes:
            booking["customer_note"] = notes
        data = await self._call(
            account,
            "POST",
            "/v2/bookings",
            json={"idempotency_key": idempotency_key, "booking": booking},
            idempotency_key=idempotency_key,
        )
        return _booking(data.get("booking") or {})

    async def cancel_booking(
        self,
        account: BookingAccount,
        *,
        booking_id: str,
        version: int | None,
        idempotency_key: str,
    ) -> Booking:
        body: dict[str, Any] = {"idempotency_key": idempotency_key}
        if version is not None:
            body["booking_version"] = version
        data = await self._call(
            account,
            "POST",
            f"/v2/bookings/{booking_id}/cancel",
            json=body,
            idempotency_key=idempotency_key,
        )
        return _booking(data.get("booking") or {})

    async def find_customer_by_phone(self, account: BookingAccount, phone_number: str) -> Customer | None:
        body = {"query": {"filter": {"phone_number": {"exact": phone_number}}}, "limit": 1}
        data = await self._call(account, "POST", "/v2/customers/search", json=body, read=True)
        customers = data.get("customers") or []
        return _customer(customers[0]) if customers else None

    async def create_customer(
        self,
        account: BookingAccount,
        *,
        phone_number: str,
        idempotency_key: str,
        given_name: str | None = None,
        email: str | None = None,
    ) -> Customer:
        body: dict[str, Any] = {"idempotency_key": idempotency_key, "phone_number": phone_number}
        if given_name:
            body["given_name"] = given_name
        if email:
            body["email_address"] = email
        data = await self._call(account, "POST", "/v2/customers", json=body, idempotency_key=idempotency_key)
        return _customer(data.get("customer") or {})

    async def list_customer_bookings(
        self,
        account: BookingAccount,
        *,
        customer_id: str,
        start_at_min: datetime,
        limit: int = 10,
    ) -> list[Booking]:
        """Return the customer's bookings from ``start_at_min`` on, following cursors."""

        bookings: list[Booking] = []
        cursor: str | None = None
        while len(bookings) < limit:
            params: dict[str, Any] = {
                "customer_id": customer_id,
                "location_id": account.location_id,
                "start_at_min": to_rfc3339(start_at_min),
                "limit": limit,
            }
            if cursor:
                params["cursor"] = cursor
            data = await self._call(account, "GET", "/v2/bookings", params=params)
            bookings.extend(_booking(item) for item in data.get("bookings") or [])
            cursor = data.get("cursor")
            if not cursor:
                break
        return bookings[:limit]

    async def _call(self, account: BookingAccount, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        base_url = SANDBOX_URL if account.environment == "sandbox" else PRODUCTION_URL
        headers = {
            "Authorization": f"Bearer {account.access_token}",
            "Square-Version": self._api_version,
            "Content-Type": "application/json",
        }
        response = await self.request(method, f"{base_url}{path}", headers=headers, **kwargs)
        return response.json() if response.content else {}

    def classify(self, response: httpx.Response) -> ProviderError:
        error = super().classify(response)
        if response.status_code == 400 and _mentions_slot_taken(response):
            return ProviderError(
                "conflict",
                "Requested slot is not available",
                provider=self.provider,
                upstream_status=response.status_code,
            )
        return error


def _mentions_slot_taken(response: httpx.Response) -> bool:
    try:
        errors = response.json().get("errors") or []
    except ValueError:
        return False
    for item in errors:
        detail = str(item.get("detail") or "").lower()
        if any(marker in detail for marker in SLOT_TAKEN_MARKERS):
            return True
    return False


def _booking(data: dict[str, Any]) -> Booking:
    segments = data.get("appointment_segments") or [{}]
    return Booking(
        id=data.get("id", ""),
        version=data.get("version"),
        status=data.get("status"),
        start_at=data.get("start_at"),
        customer_id=data.get("customer_id"),
        service_id=segments[0].get("service_variation_id"),
    )


def _customer(data: dict[str, Any]) -> Customer:
    return Customer(
        id=data.get("id", ""),
        given_name=data.get("given_name"),
        family_name=data.get("family_name"),
        phone_number=data.get("phone_number"),
        email=data.get("email_address"),
    )
