"""Shared stubs for service and API tests."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from receptionist.core.config import Settings
from receptionist.repositories import idempotency as idempotency_repo
from receptionist.services.tenant_resolver import BookingAccount, ResolvedTenant


class DummySession:
    """Minimal session stub supporting async transaction context."""

    def __init__(self) -> None:
        self.added: list[object] = []
        self.transactions = 0

    def add(self, obj: object) -> None:
        self.added.append(obj)

    async def flush(self) -> None:
        return None

    def begin(self):  # noqa: D401 - mimic SQLAlchemy's async begin
        session = self

        class _Tx:
            async def __aenter__(self_inner):
                session.transactions += 1
                return session

            async def __aexit__(self_inner, exc_type, exc, tb):
                return False

        return _Tx()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummyDatabase:
    def __init__(self, session: DummySession | None = None, *, healthy: bool = True) -> None:
        self.sessions: list[DummySession] = []
        self._session = session
        self.healthy = healthy

    def session(self) -> DummySession:
        session = self._session or DummySession()
        self.sessions.append(session)
        return session

    async def ping(self) -> None:
        if not self.healthy:
            raise ConnectionError("database down")


class IdempotencyStore:
    """In-memory stand-in for the idempotency repository functions."""

    def __init__(self) -> None:
        self.rows: dict[str, SimpleNamespace] = {}

    async def claim(self, session, *, key, tenant_id, route, ttl_seconds):
        if key in self.rows:
            return False
        self.rows[key] = SimpleNamespace(
            key=key,
            tenant_id=tenant_id,
            route=route,
            response_snapshot=None,
            status_code=None,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds),
        )
        return True

    async def get(self, session, key):
        return self.rows.get(key)

    async def store_response(self, session, *, key, snapshot, status_code):
        row = self.rows.get(key)
        if row is not None and row.response_snapshot is None:
            row.response_snapshot = snapshot
            row.status_code = status_code

    async def release(self, session, key):
        row = self.rows.get(key)
        if row is not None and row.response_snapshot is None:
            del self.rows[key]

    def install(self, monkeypatch) -> "IdempotencyStore":
        monkeypatch.setattr(idempotency_repo, "claim", self.claim)
        monkeypatch.setattr(idempotency_repo, "get", self.get)
        monkeypatch.setattr(idempotency_repo, "store_response", self.store_response)
        monkeypatch.setattr(idempotency_repo, "release", self.release)
        return self


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        retell_api_key="retell-test-key",
        worker_key="worker-test-key",
        tool_soft_budget_seconds=0.8,
        tool_hard_budget_seconds=2.5,
        provider_retry_delays=[0.0, 0.0, 0.0],
    )


@pytest.fixture
def tenant() -> ResolvedTenant:
    return ResolvedTenant(
        tenant_id="tenant-1",
        slug="elite-barbershop",
        business_name="Elite Barbershop",
        timezone="America/New_York",
        status="active",
        settings={"notification_email": "owner@example.com"},
        agent_id="agent-row-1",
        external_agent_id="agent_abc",
        booking=BookingAccount(
            access_token="sq-token",
            location_id="LOC1",
            merchant_id="MERCHANT1",
            environment="sandbox",
        ),
    )


@pytest.fixture
def idempotency_store(monkeypatch) -> IdempotencyStore:
    return IdempotencyStore().install(monkeypatch)
