"""Service-level tests for agent tool endpoints."""
from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from receptionist.core.errors import ProviderError, SlotUnavailable, ValidationFailed
from receptionist.schemas import tools as schemas
from receptionist.services import tools as tools_service
from receptionist.services.providers.booking import Booking, Customer, Slot

from conftest import DummySession

START = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)
FUTURE_DAY = (datetime.now(timezone.utc).date() + timedelta(days=30)).isoformat()
CUSTOMER = Customer(id="cust_1", given_name="Sam", family_name="Lee", phone_number="+12015550123", email=None)


def _slot(hours: float, staff_id: str = "tm_1") -> Slot:
    start = START + timedelta(hours=hours)
    return Slot(
        start_at=start.strftime("%Y-%m-%dT%H:%M:%SZ"),
        service_id="svc_haircut",
        staff_id=staff_id,
        duration_minutes=30,
        service_version=1,
    )


def _booking_client(slots: list[Slot] | None = None) -> AsyncMock:
    booking = AsyncMock()
    booking.search_availability.return_value = slots if slots is not None else [_slot(0), _slot(1)]
    booking.find_customer_by_phone.return_value = CUSTOMER
    booking.create_customer.return_value = CUSTOMER
    booking.create_booking.return_value = Booking(
        id="bk_9f8e7d6c5b4a",
        version=0,
        status="ACCEPTED",
        start_at=_slot(0).start_at,
        customer_id="cust_1",
    )
    return booking


def _create_request(**overrides) -> schemas.CreateBookingRequest:
    payload = {
        "customerPhone": "+12015550123",
        "serviceId": "svc_haircut",
        "startAt": "2026-03-02T10:00:00-05:00",
    }
    payload.update(overrides)
    return schemas.CreateBookingRequest.model_validate(payload)


@pytest.mark.asyncio
async def test_create_booking_returns_confirmation(settings, tenant, idempotency_store) -> None:
    booking = _booking_client()
    dispatcher = tools_service.ToolDispatcher(booking=booking, settings=settings)

    body = await dispatcher.create_booking(DummySession(), tenant, _create_request(), call_id="call_1")

    assert json.loads(body) == {
        "bookingId": "bk_9f8e7d6c5b4a",
        "confirmationNumber": "6C5B4A",
        "slow": False,
        "success": True,
    }
    kwargs = booking.create_booking.await_args.kwargs
    assert kwargs["slot"] == _slot(0)
    assert kwargs["customer_id"] == "cust_1"
    assert len(kwargs["idempotency_key"]) == 64


@pytest.mark.asyncio
async def test_create_booking_replays_the_stored_body(settings, tenant, idempotency_store) -> None:
    booking = _booking_client()
    dispatcher = tools_service.ToolDispatcher(booking=booking, settings=settings)

    first = await dispatcher.create_booking(DummySession(), tenant, _create_request(), call_id="call_1")
    booking.create_booking.return_value = replace(booking.create_booking.return_value, id="bk_other")
    second = await dispatcher.create_booking(
        DummySession(), tenant, _create_request(startAt="2026-03-02T15:00:00Z"), call_id="call_1"
    )

    assert second == first
    assert booking.create_booking.await_count == 1


@pytest.mark.asyncio
async def test_concurrent_duplicates_book_once(settings, tenant, idempotency_store) -> None:
    booking = _booking_client()
    created = booking.create_booking.return_value

    async def slow_create(*args, **kwargs):
        await asyncio.sleep(0.1)
        return created

    booking.create_booking.side_effect = slow_create
    dispatcher = tools_service.ToolDispatcher(booking=booking, settings=settings)

    first, second = await asyncio.gather(
        dispatcher.create_booking(DummySession(), tenant, _create_request(), call_id="call_1"),
        dispatcher.create_booking(DummySession(), tenant, _create_request(), call_id="call_1"),
    )

    assert first == second
    assert booking.create_booking.await_count == 1


@pytest.mark.asyncio
async def test_duplicate_waits_past_soft_budget_for_the_owner(settings, tenant, idempotency_store) -> None:
    booking = _booking_client()
    created = booking.create_booking.return_value

    async def slow_create(*args, **kwargs):
        await asyncio.sleep(0.2)
        booking.search_availability.return_value = []
        return created

    booking.create_booking.side_effect = slow_create
    quick = settings.model_copy(update={"tool_soft_budget_seconds": 0.05, "tool_hard_budget_seconds": 1.0})
    dispatcher = tools_service.ToolDispatcher(booking=booking, settings=quick)

    first, second = await asyncio.gather(
        dispatcher.create_booking(DummySession(), tenant, _create_request(), call_id="call_1"),
        dispatcher.create_booking(DummySession(), tenant, _create_request(), call_id="call_1"),
    )

    assert first == second
    assert json.loads(first)["slow"] is True
    assert booking.create_booking.await_count == 1


@pytest.mark.asyncio
async def test_duplicate_times_out_without_booking(settings, tenant, idempotency_store) -> None:
    booking = _booking_client()
    created = booking.create_booking.return_value

    async def slow_create(*args, **kwargs):
        await asyncio.sleep(0.4)
        return created

    booking.create_booking.side_effect = slow_create
    owner = tools_service.ToolDispatcher(booking=booking, settings=settings)
    impatient = tools_service.ToolDispatcher(
        booking=booking,
        settings=settings.model_copy(update={"tool_soft_budget_seconds": 0.05, "tool_hard_budget_seconds": 0.15}),
    )

    first, second = await asyncio.gather(
        owner.create_booking(DummySession(), tenant, _create_request(), call_id="call_1"),
        impatient.create_booking(DummySession(), tenant, _create_request(), call_id="call_1"),
        return_exceptions=True,
    )

    assert json.loads(first)["success"] is True
    assert isinstance(second, ProviderError)
    assert second.kind == "provider/timeout"
    assert booking.create_booking.await_count == 1


@pytest.mark.asyncio
async def test_distinct_calls_book_separately(settings, tenant, idempotency_store) -> None:
    booking = _booking_client()
    dispatcher = tools_service.ToolDispatcher(booking=booking, settings=settings)

    await dispatcher.create_booking(DummySession(), tenant, _create_request(), call_id="call_1")
    await dispatcher.create_booking(DummySession(), tenant, _create_request(), call_id="call_2")

    assert booking.create_booking.await_count == 2


@pytest.mark.asyncio
async def test_unavailable_slot_offers_alternates(settings, tenant, idempotency_store) -> None:
    slots = [_slot(-1), _slot(0.5), _slot(1), _slot(2), _slot(3)]
    booking = _booking_client(slots)
    dispatcher = tools_service.ToolDispatcher(booking=booking, settings=settings)

    with pytest.raises(SlotUnavailable) as excinfo:
        await dispatcher.create_booking(DummySession(), tenant, _create_request(), call_id="call_1")

    alternates = excinfo.value.details["alternates"]
    assert [item["startAt"] for item in alternates] == [_slot(0.5).start_at, _slot(1).start_at, _slot(2).start_at]
    assert excinfo.value.kind == "booking/slot-unavailable"
    booking.create_booking.assert_not_awaited()
    assert idempotency_store.rows == {}


@pytest.mark.asyncio
async def test_provider_conflict_becomes_slot_unavailable(settings, tenant, idempotency_store) -> None:
    booking = _booking_client([_slot(0), _slot(1)])
    booking.create_booking.side_effect = ProviderError("conflict", "taken", provider="booking")
    dispatcher = tools_service.ToolDispatcher(booking=booking, settings=settings)

    with pytest.raises(SlotUnavailable) as excinfo:
        await dispatcher.create_booking(DummySession(), tenant, _create_request(), call_id="call_1")

    assert [item["startAt"] for item in excinfo.value.details["alternates"]] == [_slot(1).start_at]
    assert idempotency_store.rows == {}


@pytest.mark.asyncio
async def test_create_booking_creates_missing_customer(settings, tenant, idempotency_store) -> None:
    booking = _booking_client()
    booking.find_customer_by_phone.return_value = None
    dispatcher = tools_service.ToolDispatcher(booking=booking, settings=settings)

    await dispatcher.create_booking(
        DummySession(), tenant, _create_request(customerName="Sam"), call_id="call_1"
    )

    kwargs = booking.create_customer.await_args.kwargs
    assert kwargs["phone_number"] == "+12015550123"
    assert kwargs["given_name"] == "Sam"


@pytest.mark.asyncio
async def test_create_booking_rejects_non_e164_phone(settings, tenant, idempotency_store) -> None:
    dispatcher = tools_service.ToolDispatcher(booking=_booking_client(), settings=settings)

    with pytest.raises(ValidationFailed) as excinfo:
        await dispatcher.create_booking(
            DummySession(), tenant, _create_request(customerPhone="201-555-0123"), call_id="call_1"
        )

    assert excinfo.value.details["fields"] == ["customerPhone"]


@pytest.mark.asyncio
async def test_missing_booking_connection_is_invalid(settings, tenant) -> None:
    dispatcher = tools_service.ToolDispatcher(booking=_booking_client(), settings=settings)
    request = schemas.CheckAvailabilityRequest.model_validate({"serviceId": "svc_haircut", "dateISO": "2026-03-02"})

    with pytest.raises(ProviderError) as excinfo:
        await dispatcher.check_availability(replace(tenant, booking=None), request)

    assert excinfo.value.kind == "provider/invalid"


@pytest.mark.asyncio
async def test_check_availability_sorts_caps_and_caches(settings, tenant) -> None:
    slots = [_slot(24 * 365 + hours) for hours in range(30, 0, -1)]
    booking = _booking_client(slots)
    dispatcher = tools_service.ToolDispatcher(booking=booking, settings=settings)
    request = schemas.CheckAvailabilityRequest.model_validate({"serviceId": "svc_haircut", "dateISO": FUTURE_DAY})

    first = await dispatcher.check_availability(tenant, request)
    second = await dispatcher.check_availability(tenant, request)

    starts = [slot.start_at for slot in first.slots]
    assert len(starts) == tools_service.MAX_SLOTS
    assert starts == sorted(starts)
    assert second.slots == first.slots
    assert booking.search_availability.await_count == 1
    dumped = first.model_dump(by_alias=True)
    assert dumped["dateISO"] == FUTURE_DAY
    assert dumped["slots"][0]["startAt"] == starts[0]


@pytest.mark.asyncio
async def test_check_availability_cache_is_keyed_by_staff(settings, tenant) -> None:
    booking = _booking_client([])
    dispatcher = tools_service.ToolDispatcher(booking=booking, settings=settings)
    base = {"serviceId": "svc_haircut", "dateISO": FUTURE_DAY}

    await dispatcher.check_availability(tenant, schemas.CheckAvailabilityRequest.model_validate(base))
    await dispatcher.check_availability(
        tenant, schemas.CheckAvailabilityRequest.model_validate({**base, "staffId": "tm_2"})
    )

    assert booking.search_availability.await_count == 2


@pytest.mark.parametrize(
    "payload,detail,fields",
    [
        ({"dateISO": "2026-03-02"}, "missing-field", ["serviceId"]),
        ({"serviceId": "svc", "dateISO": "2026-03-02", "windowDays": 0}, "invalid-field", ["windowDays"]),
        ({"serviceId": "svc", "dateISO": "03/02/2026"}, "invalid-field", ["dateISO"]),
    ],
)
def test_parse_tool_payload_maps_errors(payload, detail, fields) -> None:
    with pytest.raises(ValidationFailed) as excinfo:
        tools_service.parse_tool_payload(schemas.CheckAvailabilityRequest, payload)

    assert excinfo.value.kind == f"validation/{detail}"
    assert excinfo.value.details["fields"] == fields


def test_start_at_requires_an_offset() -> None:
    with pytest.raises(ValidationFailed):
        tools_service.parse_tool_payload(
            schemas.CreateBookingRequest,
            {"customerPhone": "+12015550123", "serviceId": "svc", "startAt": "2026-03-02T10:00:00"},
        )


def test_date_iso_accepts_full_timestamps() -> None:
    request = schemas.CheckAvailabilityRequest.model_validate({"serviceId": "svc", "dateISO": "2026-03-02T09:00:00Z"})

    assert request.date_iso.isoformat() == "2026-03-02"


@pytest.mark.asyncio
async def test_budget_marks_slow_calls() -> None:
    budget = tools_service.Budget(0.01, 1.0)

    result = await budget.run(asyncio.sleep(0.05, result="done"), operation="search")

    assert result == "done"
    assert budget.slow is True


@pytest.mark.asyncio
async def test_budget_hard_limit_raises_timeout() -> None:
    budget = tools_service.Budget(0.01, 0.05)

    with pytest.raises(ProviderError) as excinfo:
        await budget.run(asyncio.sleep(1), operation="search")

    assert excinfo.value.kind == "provider/timeout"


@pytest.mark.asyncio
async def test_budget_is_shared_across_calls() -> None:
    now = [0.0]
    budget = tools_service.Budget(0.8, 2.5, clock=lambda: now[0])
    now[0] = 2.6

    with pytest.raises(ProviderError) as excinfo:
        await budget.run(asyncio.sleep(0), operation="create booking")

    assert excinfo.value.reason == "timeout"


@pytest.mark.asyncio
async def test_lookup_customer_found_and_auto_create(settings, tenant) -> None:
    booking = _booking_client()
    dispatcher = tools_service.ToolDispatcher(booking=booking, settings=settings)
    request = schemas.LookupCustomerRequest.model_validate({"phone": "+12015550123"})

    found = await dispatcher.lookup_customer(tenant, request)
    assert found.found is True
    assert found.customer.full_name == "Sam Lee"

    booking.find_customer_by_phone.return_value = None
    missing = await dispatcher.lookup_customer(tenant, request)
    assert missing.found is False
    booking.create_customer.assert_not_awaited()

    opted_in = replace(tenant, settings={"auto_create_customers": True})
    created = await dispatcher.lookup_customer(opted_in, request)
    assert created.created is True
    booking.create_customer.assert_awaited_once()


@pytest.mark.asyncio
async def test_cancel_booking_is_idempotent(settings, tenant, idempotency_store) -> None:
    booking = _booking_client()
    booking.cancel_booking.return_value = Booking(
        id="bk_1", version=2, status="CANCELLED_BY_SELLER", start_at=None, customer_id="cust_1"
    )
    dispatcher = tools_service.ToolDispatcher(booking=booking, settings=settings)
    request = schemas.CancelBookingRequest.model_validate({"bookingId": "bk_1", "version": 1})

    first = await dispatcher.cancel_booking(DummySession(), tenant, request)
    second = await dispatcher.cancel_booking(DummySession(), tenant, request)

    assert first == second
    assert json.loads(first)["status"] == "CANCELLED_BY_SELLER"
    booking.cancel_booking.assert_awaited_once()
