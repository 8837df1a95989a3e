"""Shared HTTP plumbing for provider adapters: retry policy and error classification."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from ...core.errors import ProviderError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

DEFAULT_RETRY_DELAYS: tuple[float, ...] = (0.25, 0.75, 2.25)


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class ProviderClient:
    """Base adapter around a pooled ``httpx.AsyncClient``.

    Reads are retried on rate-limit, 5xx and transport failures on the
    ``retry_delays`` schedule. Mutations are retried at most once, and only
    when the caller supplies an idempotency key the provider honours.
    Timeouts are never retried.
    """

    provider = "provider"

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = client
        self._retry_delays = tuple(retry_delays)
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        read: bool | None = None,
        idempotency_key: str | None = None,
    ) -> httpx.Response:
        """Send a request under the retry policy and return the 2xx response.

        ``read`` marks a POST that does not change provider state (search
        endpoints) so it follows the read retry schedule.
        """

        is_read = read if read is not None else method.upper() == "GET"
        if is_read:
            delays = self._retry_delays
        elif idempotency_key:
            delays = self._retry_delays[:1]
        else:
            delays = ()

        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.info(
                "Retrying %s %s after %s",
                method,
                url,
                getattr(error, "kind", error),
                extra={"attempts": retry_state.attempt_number},
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(len(delays) + 1),
            wait=_scheduled_wait(delays),
            retry=retry_if_exception(lambda exc: _should_retry(exc, delays)),
            before_sleep=log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return await retrying(self._send, method, url, json=json, params=params, headers=headers)
        except ProviderError as exc:
            logger.warning(
                "%s %s failed: %s",
                method,
                url,
                exc.message,
                extra={"kind": exc.kind, "upstream_status": exc.upstream_status},
            )
            raise

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderError("timeout", f"{self.provider} request timed out", provider=self.provider) from exc
        except httpx.HTTPError as exc:
            raise ProviderError("unknown", f"{self.provider} request failed", provider=self.provider) from exc
        if not response.is_success:
            raise self.classify(response)
        return response

    def classify(self, response: httpx.Response) -> ProviderError:
        """Map a non-2xx response to the provider error taxonomy."""

        status_code = response.status_code
        message = f"{self.provider} returned {status_code}"
        if status_code == 429:
            return ProviderError(
                "rate-limited",
                message,
                provider=self.provider,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                upstream_status=status_code,
            )
        if status_code == 404:
            return ProviderError("not-found", message, provider=self.provider, upstream_status=status_code)
        if status_code == 409:
            return ProviderError("conflict", message, provider=self.provider, upstream_status=status_code)
        if status_code in {400, 422}:
            return ProviderError("invalid", message, provider=self.provider, upstream_status=status_code)
        return ProviderError("unknown", message, provider=self.provider, upstream_status=status_code)


def _should_retry(exc: BaseException, delays: Sequence[float]) -> bool:
    """Timeouts are never retried; a ``Retry-After`` beyond the schedule is surfaced."""

    if not isinstance(exc, ProviderError) or not exc.retryable or exc.reason == "timeout":
        return False
    if exc.retry_after is not None and delays and exc.retry_after > max(delays):
        return False
    return True


def _scheduled_wait(delays: Sequence[float]) -> Callable[[RetryCallState], float]:
    """Wait ``delays[n - 1]`` after attempt ``n``, stretched to the provider's ``Retry-After``."""

    def wait(retry_state: RetryCallState) -> float:
        delay = delays[min(retry_state.attempt_number, len(delays)) - 1]
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, ProviderError) and error.retry_after is not None:
            return max(delay, error.retry_after)
        return delay

    return wait
