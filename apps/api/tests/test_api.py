"""HTTP-level tests for the API app with an injected container."""
from __future__ import annotations

import json
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from receptionist.core.security import compute_signature, hash_token
from receptionist.main import create_app
from receptionist.models.agent import AgentStatus
from receptionist.repositories import agents as agents_repo
from receptionist.services.providers.booking import Booking, Customer, Slot
from receptionist.services.tools import ToolDispatcher

from conftest import DummyDatabase

AGENT = SimpleNamespace(
    id="agent-row-1",
    tenant_id="tenant-1",
    external_agent_id="agent_abc",
    bearer_token_hash=hash_token("good-token"),
    status=AgentStatus.ACTIVE,
)
TOOL_HEADERS = {"authorization": "Bearer good-token", "x-agent-id": "agent_abc"}


@pytest.fixture
def container(settings, tenant, monkeypatch):
    async def get_by_external_id(session, external_agent_id):
        return AGENT if external_agent_id == "agent_abc" else None

    monkeypatch.setattr(agents_repo, "get_by_external_id", get_by_external_id)

    booking = AsyncMock()
    booking.search_availability.return_value = [
        Slot("2026-03-02T15:00:00Z", "svc_haircut", "tm_1", 30, 1),
    ]
    booking.find_customer_by_phone.return_value = Customer("cust_1", "Sam", "Lee", "+12015550123", None)
    booking.create_booking.return_value = Booking("bk_123456abcdef", 0, "ACCEPTED", "2026-03-02T15:00:00Z", "cust_1")
    resolver = AsyncMock()
    resolver.resolve.return_value = tenant
    webhooks = AsyncMock()
    webhooks.dispatch.return_value = {"success": True, "event": "call_started"}
    return SimpleNamespace(
        settings=settings,
        db=DummyDatabase(),
        resolver=resolver,
        booking=booking,
        tools=ToolDispatcher(booking=booking, settings=settings),
        webhooks=webhooks,
    )


def _client(container) -> AsyncClient:
    app = create_app(container=container)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")


def _signed(settings, body: bytes, *, timestamp: int | None = None) -> dict[str, str]:
    stamp = str(timestamp if timestamp is not None else int(time.time()))
    return {
        "x-retell-timestamp": stamp,
        "x-retell-signature": compute_signature(settings.signing_secret, stamp, body),
        "content-type": "application/json",
    }


@pytest.mark.asyncio
async def test_health_endpoint(container) -> None:
    async with _client(container) as client:
        response = await client.get("/api/health")
        head = await client.head("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert head.status_code == 200
    assert response.headers["x-correlation-id"]


@pytest.mark.asyncio
async def test_readiness_reports_database_outage(container) -> None:
    container.db.healthy = False

    async with _client(container) as client:
        response = await client.get("/api/health/ready")

    assert response.status_code == 503
    assert response.json() == {"status": "degraded", "database": "unreachable"}


@pytest.mark.asyncio
async def test_bad_signature_is_rejected_with_correlation_id(container) -> None:
    body = b'{"event":"call_started","call":{"call_id":"call_1"}}'
    headers = _signed(container.settings, body)
    headers["x-retell-signature"] = "0" * 64

    async with _client(container) as client:
        response = await client.post(
            "/api/webhooks/retell", content=body, headers={**headers, "x-correlation-id": "corr-123"}
        )

    assert response.status_code == 401
    assert response.headers["x-correlation-id"] == "corr-123"
    assert response.json() == {
        "success": False,
        "kind": "auth/invalid-signature",
        "message": "Unauthorized",
        "correlationId": "corr-123",
    }
    container.webhooks.dispatch.assert_not_awaited()


@pytest.mark.asyncio
async def test_stale_timestamp_is_rejected(container) -> None:
    body = b'{"event":"call_started","call":{"call_id":"call_1"}}'
    headers = _signed(container.settings, body, timestamp=int(time.time()) - 3600)

    async with _client(container) as client:
        response = await client.post("/api/webhooks/retell/call-started", content=body, headers=headers)

    assert response.status_code == 401
    assert response.json()["message"] == "Unauthorized"


@pytest.mark.asyncio
async def test_signed_webhook_is_dispatched(container) -> None:
    body = json.dumps({"event": "call_started", "call": {"call_id": "call_1"}}).encode()

    async with _client(container) as client:
        response = await client.post("/api/webhooks/retell", content=body, headers=_signed(container.settings, body))

    assert response.status_code == 200
    event = container.webhooks.dispatch.await_args.args[1]
    assert event.event == "call_started"
    assert event.call.call_id == "call_1"


@pytest.mark.asyncio
async def test_webhook_missing_call_id_is_a_validation_error(container) -> None:
    body = b'{"event":"call_ended","call":{}}'

    async with _client(container) as client:
        response = await client.post(
            "/api/webhooks/retell/call-ended", content=body, headers=_signed(container.settings, body)
        )

    assert response.status_code == 400
    assert response.json()["kind"] == "validation/missing-field"


@pytest.mark.asyncio
async def test_tool_call_without_token_is_unauthorized(container) -> None:
    async with _client(container) as client:
        response = await client.post(
            "/api/tools/check-availability",
            json={"args": {"serviceId": "svc_haircut", "dateISO": "2026-03-02"}},
            headers={"x-agent-id": "agent_abc"},
        )

    assert response.status_code == 401
    assert response.json()["kind"] == "auth/invalid-token"


@pytest.mark.asyncio
async def test_tool_call_missing_field(container) -> None:
    async with _client(container) as client:
        response = await client.post(
            "/api/tools/check-availability",
            json={"args": {"dateISO": "2026-03-02"}, "call": {"call_id": "call_1"}},
            headers=TOOL_HEADERS,
        )

    assert response.status_code == 400
    body = response.json()
    assert body["kind"] == "validation/missing-field"
    assert body["fields"] == ["serviceId"]
    assert body["correlationId"] == response.headers["x-correlation-id"]


@pytest.mark.asyncio
async def test_create_booking_over_http_replays_byte_identical(container, idempotency_store) -> None:
    envelope = {
        "name": "create-booking",
        "args": {
            "customerPhone": "+12015550123",
            "serviceId": "svc_haircut",
            "startAt": "2026-03-02T15:00:00Z",
        },
        "call": {"call_id": "call_1", "agent_id": "agent_abc"},
    }
    flat = dict(envelope["args"])

    async with _client(container) as client:
        first = await client.post("/api/tools/create-booking", json=envelope, headers=TOOL_HEADERS)
        second = await client.post(
            "/api/tools/create-booking",
            json=flat,
            headers={**TOOL_HEADERS, "x-retell-call-id": "call_1"},
        )

    assert first.status_code == 200
    assert first.content == second.content
    assert first.json()["confirmationNumber"] == "ABCDEF"
    container.booking.create_booking.assert_awaited_once()


@pytest.mark.asyncio
async def test_tenant_resolution_uses_call_metadata(container) -> None:
    async with _client(container) as client:
        await client.post(
            "/api/tools/lookup-customer",
            json={"args": {"phone": "+12015550123"}, "call": {"call_id": "call_9", "to_number": "+12015550111"}},
            headers=TOOL_HEADERS,
        )

    inputs = container.resolver.resolve.await_args.args[1]
    assert inputs.agent is AGENT
    assert inputs.call_id == "call_9"
    assert inputs.to_number == "+12015550111"
