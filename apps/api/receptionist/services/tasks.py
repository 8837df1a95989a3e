"""Transactional outbox for sidecar work (e-mail, SMS, phone numbers, analysis).

Producers call ``enqueue`` inside their own transaction, so a task exists if
and only if the state change that caused it was committed. ``TaskDispatcher``
polls due rows with ``SKIP LOCKED`` and POSTs them to the workers; delivery is
at-least-once and workers dedupe on ``idempotencyKey``.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings
from ..core.logs import correlation_id_var
from ..core.timeutil import utcnow
from ..db.session import Database
from ..models.task import Task, TaskKind, TaskState
from ..repositories import idempotency as idempotency_repo
from ..repositories import tasks as tasks_repo

logger = logging.getLogger(__name__)

TASK_PATHS: dict[TaskKind, str] = {
    TaskKind.EMAIL: "/api/email-sender",
    TaskKind.SMS: "/api/sms-sender",
    TaskKind.PHONE_NUMBER: "/api/phone-number-manager",
    TaskKind.CALL_ANALYSIS: "/api/post-call-analysis",
}
PURGE_INTERVAL_SECONDS = 300.0


async def enqueue(
    session: AsyncSession,
    *,
    kind: TaskKind,
    payload: dict[str, Any],
    idempotency_key: str,
    tenant_id: str | None,
) -> str | None:
    """Add a pending task to the caller's transaction.

    The key is copied into the payload so the worker can dedupe redeliveries.
    Returns ``None`` when a task with the same key already exists.
    """

    body = {**payload, "idempotencyKey": idempotency_key}
    if tenant_id and "tenantId" not in body:
        body["tenantId"] = tenant_id
    task_id = await tasks_repo.enqueue(
        session,
        kind=kind,
        payload=body,
        idempotency_key=idempotency_key,
        tenant_id=tenant_id,
        now=utcnow(),
    )
    if task_id is None:
        logger.info("Task %s already queued", idempotency_key, extra={"event": "task_duplicate"})
    return task_id


def backoff_delay(attempts: int, base_seconds: float) -> float:
    """Delay before the next attempt: base, 3x base, 9x base, ...

    With a 60 s base the five waits between six attempts total about two hours.
    """

    return base_seconds * (3 ** max(attempts - 1, 0))


class TaskDispatcher:
    """Deliver due outbox rows to the sidecar workers."""

    def __init__(
        self,
        *,
        db: Database,
        client: httpx.AsyncClient,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._client = client
        self._worker_key = settings.worker_key
        self._timeout = settings.task_timeout_seconds
        self._max_attempts = settings.outbox_max_attempts
        self._base_delay = settings.outbox_base_delay_seconds
        self._batch_size = settings.outbox_batch_size
        self._lease_seconds = settings.outbox_lease_seconds
        self._poll_interval = settings.outbox_poll_interval_seconds
        self._clock = clock

    async def run_once(self) -> int:
        """Claim one batch, deliver it, and return how many tasks were attempted."""

        async with self._db.session() as session:
            async with session.begin():
                batch = await tasks_repo.claim_due(
                    session,
                    now=self._clock(),
                    limit=self._batch_size,
                    lease_seconds=self._lease_seconds,
                )
            for task in batch:
                await self.process(session, task)
        return len(batch)

    async def process(self, session: AsyncSession, task: Task) -> TaskState:
        """POST one claimed task and record the outcome.

        ``task.attempts`` already counts this attempt.
        """

        started = time.monotonic()
        error: str | None = None
        status_code: int | None = None
        try:
            response = await self._client.post(
                TASK_PATHS[task.kind],
                json=task.payload,
                headers=self._headers(task),
                timeout=self._timeout,
            )
            status_code = response.status_code
            if not response.is_success:
                error = f"worker returned {status_code}: {response.text[:500]}"
        except httpx.HTTPError as exc:
            error = f"{type(exc).__name__}: {exc}"

        now = self._clock()
        extra = {
            "task_id": task.id,
            "tenant_id": task.tenant_id,
            "attempts": task.attempts,
            "duration_ms": round((time.monotonic() - started) * 1000),
        }
        async with session.begin():
            if error is None:
                await tasks_repo.mark_done(session, task.id, now=now)
                state = TaskState.DONE
            elif status_code is not None and 400 <= status_code < 500:
                await tasks_repo.mark_dead(session, task.id, error=error, now=now)
                state = TaskState.DEAD
            elif task.attempts >= self._max_attempts:
                await tasks_repo.mark_dead(session, task.id, error=error, now=now)
                state = TaskState.DEAD
            else:
                delay = backoff_delay(task.attempts, self._base_delay)
                await tasks_repo.schedule_retry(
                    session,
                    task.id,
                    next_attempt_at=now + timedelta(seconds=delay),
                    error=error,
                    now=now,
                )
                state = TaskState.PENDING

        if state == TaskState.DONE:
            logger.info("Task %s delivered", task.kind.value, extra=extra)
        elif state == TaskState.DEAD:
            logger.error("Task %s dead: %s", task.kind.value, error, extra=extra)
        else:
            logger.warning("Task %s will retry: %s", task.kind.value, error, extra=extra)
        return state

    async def purge_expired_keys(self) -> int:
        async with self._db.session() as session:
            async with session.begin():
                removed = await idempotency_repo.purge_expired(session)
        if removed:
            logger.info("Purged %d expired idempotency keys", removed)
        return removed

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Poll until ``stop`` is set. Failures of one pass are logged and the loop continues."""

        last_purge = 0.0
        while not stop.is_set():
            delivered = 0
            try:
                delivered = await self.run_once()
                if time.monotonic() - last_purge >= PURGE_INTERVAL_SECONDS:
                    await self.purge_expired_keys()
                    last_purge = time.monotonic()
            except Exception:
                logger.exception("Outbox poll failed")
            if delivered:
                continue
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self._poll_interval)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self, task: Task) -> dict[str, str]:
        headers = {"x-correlation-id": correlation_id_var.get() or task.id}
        if self._worker_key:
            headers["x-functions-key"] = self._worker_key
        return headers
