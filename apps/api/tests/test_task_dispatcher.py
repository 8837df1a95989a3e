"""Tests for outbox delivery, retries and dead-lettering."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import httpx
import pytest

from receptionist.models.task import TaskKind, TaskState
from receptionist.repositories import tasks as tasks_repo
from receptionist.services import tasks as tasks_service

from conftest import DummyDatabase, DummySession

T0 = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self) -> None:
        self.now = T0

    def __call__(self) -> datetime:
        return self.now


class Outbox:
    """In-memory task table with the repository's claim and transition rules."""

    def __init__(self) -> None:
        self.rows: dict[str, SimpleNamespace] = {}

    def add(self, kind: TaskKind = TaskKind.SMS, **payload) -> SimpleNamespace:
        task = SimpleNamespace(
            id=f"task-{len(self.rows) + 1}",
            kind=kind,
            tenant_id="tenant-1",
            payload={"to": "+12015550123", "body": "hi", "idempotencyKey": "post-call-sms:call_1", **payload},
            state=TaskState.PENDING,
            attempts=0,
            next_attempt_at=T0,
            locked_until=None,
            last_error=None,
        )
        self.rows[task.id] = task
        return task

    async def claim_due(self, session, *, now, limit, lease_seconds):
        due = [
            task
            for task in self.rows.values()
            if (task.state == TaskState.PENDING and task.next_attempt_at <= now)
            or (task.state == TaskState.IN_FLIGHT and task.locked_until < now)
        ][:limit]
        for task in due:
            task.state = TaskState.IN_FLIGHT
            task.attempts += 1
            task.locked_until = now + timedelta(seconds=lease_seconds)
        return due

    async def mark_done(self, session, task_id, *, now):
        self.rows[task_id].state = TaskState.DONE

    async def mark_dead(self, session, task_id, *, error, now):
        self.rows[task_id].state = TaskState.DEAD
        self.rows[task_id].last_error = error

    async def schedule_retry(self, session, task_id, *, next_attempt_at, error, now):
        task = self.rows[task_id]
        task.state = TaskState.PENDING
        task.next_attempt_at = next_attempt_at
        task.last_error = error


@pytest.fixture
def outbox(monkeypatch) -> Outbox:
    outbox = Outbox()
    for name in ("claim_due", "mark_done", "mark_dead", "schedule_retry"):
        monkeypatch.setattr(tasks_repo, name, getattr(outbox, name))
    return outbox


def _dispatcher(settings, statuses: list[int], seen: list[httpx.Request], clock: Clock):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(statuses.pop(0), json={"ok": True})

    client = httpx.AsyncClient(base_url="http://workers.test", transport=httpx.MockTransport(handler))
    return tasks_service.TaskDispatcher(db=DummyDatabase(), client=client, settings=settings, clock=clock)


async def _drain(dispatcher, clock: Clock, outbox: Outbox, rounds: int = 10) -> None:
    """Run passes, jumping the clock to the next due time between them."""

    for _ in range(rounds):
        await dispatcher.run_once()
        pending = [task for task in outbox.rows.values() if task.state == TaskState.PENDING]
        if not pending:
            return
        clock.now = min(task.next_attempt_at for task in pending)


@pytest.mark.asyncio
async def test_transient_failures_then_success(settings, outbox) -> None:
    clock = Clock()
    seen: list[httpx.Request] = []
    task = outbox.add()
    dispatcher = _dispatcher(settings, [500, 500, 200], seen, clock)

    await _drain(dispatcher, clock, outbox)

    assert task.state == TaskState.DONE
    assert task.attempts == 3
    assert clock.now == T0 + timedelta(seconds=60 + 180)
    assert [request.url.path for request in seen] == ["/api/sms-sender"] * 3
    assert seen[0].headers["x-functions-key"] == "worker-test-key"
    assert seen[0].headers["x-correlation-id"]


@pytest.mark.asyncio
async def test_persistent_failure_goes_dead_after_max_attempts(settings, outbox) -> None:
    clock = Clock()
    seen: list[httpx.Request] = []
    task = outbox.add()
    dispatcher = _dispatcher(settings, [503] * 10, seen, clock)

    await _drain(dispatcher, clock, outbox)

    assert task.state == TaskState.DEAD
    assert task.attempts == settings.outbox_max_attempts == 6
    assert len(seen) == 6
    assert "503" in task.last_error
    waited = (clock.now - T0).total_seconds()
    assert waited == sum(tasks_service.backoff_delay(n, 60.0) for n in range(1, 6))


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(settings, outbox) -> None:
    clock = Clock()
    seen: list[httpx.Request] = []
    task = outbox.add(TaskKind.EMAIL)
    dispatcher = _dispatcher(settings, [400], seen, clock)

    await _drain(dispatcher, clock, outbox)

    assert task.state == TaskState.DEAD
    assert task.attempts == 1
    assert seen[0].url.path == "/api/email-sender"


@pytest.mark.asyncio
async def test_transport_error_schedules_retry(settings, outbox) -> None:
    clock = Clock()
    task = outbox.add()

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = httpx.AsyncClient(base_url="http://workers.test", transport=httpx.MockTransport(handler))
    dispatcher = tasks_service.TaskDispatcher(db=DummyDatabase(), client=client, settings=settings, clock=clock)

    await dispatcher.run_once()

    assert task.state == TaskState.PENDING
    assert task.next_attempt_at == T0 + timedelta(seconds=60)
    assert "ConnectError" in task.last_error


@pytest.mark.asyncio
async def test_batch_respects_limit(settings, outbox) -> None:
    clock = Clock()
    for _ in range(settings.outbox_batch_size + 2):
        outbox.add()
    dispatcher = _dispatcher(settings, [200] * 20, [], clock)

    delivered = await dispatcher.run_once()

    assert delivered == settings.outbox_batch_size
    assert sum(task.state == TaskState.DONE for task in outbox.rows.values()) == settings.outbox_batch_size


def test_backoff_schedule() -> None:
    assert [tasks_service.backoff_delay(n, 60.0) for n in range(1, 6)] == [60, 180, 540, 1620, 4860]
    assert sum(tasks_service.backoff_delay(n, 60.0) for n in range(1, 6)) == 7260


@pytest.mark.asyncio
async def test_enqueue_copies_key_and_tenant_into_payload(monkeypatch) -> None:
    captured = {}

    async def fake_enqueue(session, **kwargs):
        captured.update(kwargs)
        return "task-1"

    monkeypatch.setattr(tasks_repo, "enqueue", fake_enqueue)

    task_id = await tasks_service.enqueue(
        DummySession(),
        kind=TaskKind.EMAIL,
        payload={"to": "owner@example.com"},
        idempotency_key="post-call-email:call_1",
        tenant_id="tenant-1",
    )

    assert task_id == "task-1"
    assert captured["payload"] == {
        "to": "owner@example.com",
        "idempotencyKey": "post-call-email:call_1",
        "tenantId": "tenant-1",
    }
