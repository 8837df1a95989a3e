"""Tool-call handlers answering the voice agent mid-call.

Every provider call made while answering a tool call runs under a
``Budget``: calls slower than the soft budget mark the response ``slow``,
and the request as a whole is abandoned with ``provider/timeout`` once the
hard budget is spent. Nothing is retried inline past that point; the voice
agent owns retries.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from datetime import datetime, time as dt_time, timedelta, timezone
from typing import Any, Awaitable, Callable, TypeVar
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings
from ..core.contacts import require_e164
from ..core.errors import ProviderError, SlotUnavailable, ValidationFailed
from ..core.logs import mask_number
from ..core.timeutil import isoformat_z, parse_instant, utcnow
from ..repositories import idempotency as idempotency_repo
from ..schemas import tools as schemas
from .cache import TTLCache
from .providers.booking import BookingClient, Customer, Slot
from .tenant_resolver import BookingAccount, ResolvedTenant

logger = logging.getLogger(__name__)

T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)

MAX_SLOTS = 20
MAX_ALTERNATES = 3
BOOKING_SEARCH_DAYS = 7
CLAIM_POLL_SECONDS = 0.05


class Budget:
    """Soft/hard time budget shared by all provider calls of one tool request."""

    def __init__(self, soft_seconds: float, hard_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.soft_seconds = soft_seconds
        self.hard_seconds = hard_seconds
        self._clock = clock
        self._started = clock()
        self.slow = False

    def elapsed(self) -> float:
        return self._clock() - self._started

    def remaining(self) -> float:
        return self.hard_seconds - self.elapsed()

    async def run(self, awaitable: Awaitable[T], *, operation: str) -> T:
        """Await a provider call within what is left of the hard budget."""

        remaining = self.remaining()
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise ProviderError("timeout", f"{operation} exceeded the time budget", provider="booking")
        began = self._clock()
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError as exc:
            raise ProviderError("timeout", f"{operation} exceeded the time budget", provider="booking") from exc
        finally:
            took = self._clock() - began
            if took > self.soft_seconds:
                self.slow = True
                logger.info("%s took %.0f ms", operation, took * 1000, extra={"duration_ms": round(took * 1000)})


def idempotency_key(tenant_id: str, route: str, *parts: str) -> str:
    """Hash ``(tenant, route, semantic tuple)`` into a 64-char key."""

    material = "|".join([tenant_id, route, *parts])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def parse_tool_payload(model: type[ModelT], payload: dict[str, Any]) -> ModelT:
    """Validate a normalized payload, mapping pydantic errors to ``validation/*``."""

    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        errors = exc.errors()
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in errors if error["loc"]})
        if any(error["type"] == "missing" for error in errors):
            raise ValidationFailed("Required field missing", detail="missing-field", fields=fields) from exc
        raise ValidationFailed("Invalid field value", fields=fields) from exc


def dump_response(body: dict[str, Any]) -> str:
    return json.dumps(body, separators=(",", ":"), sort_keys=True)


def require_booking_account(tenant: ResolvedTenant) -> BookingAccount:
    if tenant.booking is None:
        raise ProviderError("invalid", "Booking platform is not connected for this business", provider="booking")
    return tenant.booking


class ToolDispatcher:
    """Handlers for the tool routes, sharing the booking adapter and caches."""

    def __init__(
        self,
        *,
        booking: BookingClient,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._booking = booking
        self._soft = settings.tool_soft_budget_seconds
        self._hard = settings.tool_hard_budget_seconds
        self._idempotency_ttl = settings.idempotency_ttl_seconds
        self._clock = clock
        self._availability: TTLCache[list[Slot]] = TTLCache(settings.availability_cache_ttl_seconds, clock=clock)

    def budget(self) -> Budget:
        return Budget(self._soft, self._hard, clock=self._clock)

    async def check_availability(
        self,
        tenant: ResolvedTenant,
        payload: schemas.CheckAvailabilityRequest,
    ) -> schemas.CheckAvailabilityResponse:
        """Return up to 20 bookable slots, earliest first."""

        account = require_booking_account(tenant)
        budget = self.budget()
        date_iso = payload.date_iso.isoformat()
        cache_key = ":".join(
            [tenant.tenant_id, payload.service_id, date_iso, payload.staff_id or "*", str(payload.window_days)]
        )

        slots = self._availability.get(cache_key)
        if slots is None:
            zone = _zone(tenant.timezone)
            day_start = datetime.combine(payload.date_iso, dt_time.min, tzinfo=zone)
            window_end = day_start + timedelta(days=payload.window_days)
            window_start = max(day_start.astimezone(timezone.utc), utcnow())
            if window_end <= window_start:
                slots = []
            else:
                found = await budget.run(
                    self._booking.search_availability(
                        account,
                        service_id=payload.service_id,
                        start_at=window_start,
                        end_at=window_end,
                        staff_id=payload.staff_id,
                    ),
                    operation="search availability",
                )
                slots = _sorted_slots(found)[:MAX_SLOTS]
            self._availability.set(cache_key, slots)

        return schemas.CheckAvailabilityResponse(
            service_id=payload.service_id,
            date_iso=date_iso,
            slots=[schemas.AvailableSlot(**_slot_fields(slot)) for slot in slots],
            slow=budget.slow,
        )

    async def create_booking(
        self,
        session: AsyncSession,
        tenant: ResolvedTenant,
        payload: schemas.CreateBookingRequest,
        *,
        call_id: str | None,
    ) -> str:
        """Create a booking at most once per ``(tenant, call, service, start)``.

        Returns the serialized JSON body; a repeat of the same tuple returns the
        stored body byte for byte.
        """

        account = require_booking_account(tenant)
        phone = require_e164(payload.customer_phone, "customerPhone")
        start_at = isoformat_z(payload.start_at)
        key = idempotency_key(tenant.tenant_id, "create-booking", call_id or "", payload.service_id, start_at)
        budget = self.budget()

        async def book() -> dict[str, Any]:
            customer = await self._find_or_create_customer(
                account, phone, budget, key=key, given_name=payload.customer_name
            )
            slots = await budget.run(
                self._booking.search_availability(
                    account,
                    service_id=payload.service_id,
                    start_at=payload.start_at,
                    end_at=payload.start_at + timedelta(days=BOOKING_SEARCH_DAYS),
                    staff_id=payload.staff_id,
                ),
                operation="search availability",
            )
            slots = _sorted_slots(slots)
            requested = _matching_slot(slots, payload.start_at, payload.staff_id)
            if requested is None:
                raise SlotUnavailable(_alternates(slots, payload.start_at))
            try:
                booking = await budget.run(
                    self._booking.create_booking(
                        account,
                        customer_id=customer.id,
                        slot=requested,
                        notes=payload.notes,
                        idempotency_key=key,
                    ),
                    operation="create booking",
                )
            except ProviderError as exc:
                if exc.reason != "conflict":
                    raise
                raise SlotUnavailable(_alternates(slots, payload.start_at, exclude=requested)) from exc
            self._availability.discard_where(lambda cache_key, _value: cache_key.startswith(f"{tenant.tenant_id}:"))
            logger.info(
                "Booking %s created for %s",
                booking.id,
                mask_number(phone),
                extra={"tenant_id": tenant.tenant_id, "call_id": call_id},
            )
            return {
                "success": True,
                "bookingId": booking.id,
                "confirmationNumber": booking.id[-6:].upper(),
                "slow": budget.slow,
            }

        return await self._run_once(session, tenant, key=key, route="create-booking", budget=budget, produce=book)

    async def cancel_booking(
        self,
        session: AsyncSession,
        tenant: ResolvedTenant,
        payload: schemas.CancelBookingRequest,
    ) -> str:
        """Cancel a booking; repeats for the same booking replay the first answer."""

        account = require_booking_account(tenant)
        key = idempotency_key(tenant.tenant_id, "cancel-booking", payload.booking_id)
        budget = self.budget()

        async def cancel() -> dict[str, Any]:
            booking = await budget.run(
                self._booking.cancel_booking(
                    account,
                    booking_id=payload.booking_id,
                    version=payload.version,
                    idempotency_key=key,
                ),
                operation="cancel booking",
            )
            self._availability.discard_where(lambda cache_key, _value: cache_key.startswith(f"{tenant.tenant_id}:"))
            response = schemas.CancelBookingResponse(
                booking_id=booking.id or payload.booking_id,
                status=booking.status,
                slow=budget.slow,
            )
            return response.model_dump(by_alias=True)

        return await self._run_once(session, tenant, key=key, route="cancel-booking", budget=budget, produce=cancel)

    async def lookup_customer(
        self,
        tenant: ResolvedTenant,
        payload: schemas.LookupCustomerRequest,
    ) -> schemas.LookupCustomerResponse:
        """Find a customer by phone, creating one when the tenant opted in."""

        account = require_booking_account(tenant)
        phone = require_e164(payload.phone, "phone")
        budget = self.budget()

        customer = await budget.run(
            self._booking.find_customer_by_phone(account, phone),
            operation="search customers",
        )
        if customer is not None:
            return schemas.LookupCustomerResponse(found=True, customer=_card(customer), slow=budget.slow)

        if not tenant.setting("auto_create_customers", False):
            return schemas.LookupCustomerResponse(found=False, slow=budget.slow)

        created = await budget.run(
            self._booking.create_customer(
                account,
                phone_number=phone,
                given_name=payload.customer_name,
                idempotency_key=idempotency_key(tenant.tenant_id, "lookup-customer", phone),
            ),
            operation="create customer",
        )
        return schemas.LookupCustomerResponse(found=True, created=True, customer=_card(created), slow=budget.slow)

    async def _find_or_create_customer(
        self,
        account: BookingAccount,
        phone: str,
        budget: Budget,
        *,
        key: str,
        given_name: str | None,
    ) -> Customer:
        customer = await budget.run(
            self._booking.find_customer_by_phone(account, phone),
            operation="search customers",
        )
        if customer is not None:
            return customer
        return await budget.run(
            self._booking.create_customer(
                account,
                phone_number=phone,
                given_name=given_name,
                idempotency_key=f"{key[:48]}-customer",
            ),
            operation="create customer",
        )

    async def _run_once(
        self,
        session: AsyncSession,
        tenant: ResolvedTenant,
        *,
        key: str,
        route: str,
        budget: Budget,
        produce: Callable[[], Awaitable[dict[str, Any]]],
    ) -> str:
        """Run ``produce`` under an idempotency claim and return the stored body.

        Only the claim owner calls ``produce``. A concurrent duplicate waits for
        the owner's stored body until its own hard budget runs out.
        """

        stored = await self._claim_or_wait(session, tenant, key=key, route=route, budget=budget)
        if stored is not None:
            logger.info("Replaying stored %s response", route, extra={"tenant_id": tenant.tenant_id, "route": route})
            return stored

        try:
            body = await produce()
        except Exception:
            async with session.begin():
                await idempotency_repo.release(session, key)
            raise

        async with session.begin():
            await idempotency_repo.store_response(session, key=key, snapshot=dump_response(body), status_code=200)
            row = await idempotency_repo.get(session, key)
        if row is not None and row.response_snapshot:
            return row.response_snapshot
        return dump_response(body)

    async def _claim_or_wait(
        self,
        session: AsyncSession,
        tenant: ResolvedTenant,
        *,
        key: str,
        route: str,
        budget: Budget,
    ) -> str | None:
        """Claim ``key`` and return ``None``, or return the owner's stored body."""

        while True:
            async with session.begin():
                claimed = await idempotency_repo.claim(
                    session,
                    key=key,
                    tenant_id=tenant.tenant_id,
                    route=route,
                    ttl_seconds=self._idempotency_ttl,
                )
                if claimed:
                    return None
                row = await idempotency_repo.get(session, key)
            if row is not None and row.response_snapshot:
                return row.response_snapshot
            if budget.remaining() <= CLAIM_POLL_SECONDS:
                logger.warning(
                    "Gave up waiting for in-flight %s",
                    route,
                    extra={"tenant_id": tenant.tenant_id, "route": route},
                )
                raise ProviderError("timeout", f"{route} is still in progress", provider="booking")
            await asyncio.sleep(CLAIM_POLL_SECONDS)


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (KeyError, ValueError):
        logger.warning("Unknown timezone %s, falling back to UTC", name)
        return ZoneInfo("UTC")


def _sorted_slots(slots: list[Slot]) -> list[Slot]:
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(slots, key=lambda slot: parse_instant(slot.start_at) or epoch)


def _matching_slot(slots: list[Slot], start_at: datetime, staff_id: str | None) -> Slot | None:
    for slot in slots:
        if parse_instant(slot.start_at) != start_at:
            continue
        if staff_id and slot.staff_id != staff_id:
            continue
        return slot
    return None


def _alternates(slots: list[Slot], start_at: datetime, *, exclude: Slot | None = None) -> list[dict[str, Any]]:
    """Up to three slots at or after the requested time, other than the one that failed."""

    picked = []
    for slot in slots:
        instant = parse_instant(slot.start_at)
        if instant is None or instant < start_at or slot == exclude:
            continue
        picked.append(slot.as_dict())
        if len(picked) == MAX_ALTERNATES:
            break
    return picked


def _slot_fields(slot: Slot) -> dict[str, Any]:
    return {
        "start_at": slot.start_at,
        "service_id": slot.service_id,
        "staff_id": slot.staff_id,
        "duration_minutes": slot.duration_minutes,
    }


def _card(customer: Customer) -> schemas.CustomerCard:
    return schemas.CustomerCard(
        customer_id=customer.id,
        given_name=customer.given_name,
        family_name=customer.family_name,
        full_name=customer.full_name,
        phone_number=customer.phone_number,
        email=customer.email,
    )
