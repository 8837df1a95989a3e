"""Small in-process TTL cache."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

V = TypeVar("V")


@dataclass
class _CacheEntry(Generic[V]):
    value: V
    stored_at: float


class TTLCache(Generic[V]):
    """Dictionary with fixed time-to-live eviction.

    Entries expire ``ttl_seconds`` after they were stored; reads do not extend
    their lifetime. Processes are single-threaded cooperative, so no locking.
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _CacheEntry[V]] = {}

    def get(self, key: str) -> V | None:
        self._evict_expired()
        entry = self._entries.get(key)
        if entry is None:
            return None
        return entry.value

    def set(self, key: str, value: V) -> None:
        if self._ttl <= 0:
            return
        self._evict_expired()
        self._entries[key] = _CacheEntry(value=value, stored_at=self._clock())

    def pop(self, key: str) -> None:
        self._entries.pop(key, None)

    def discard_where(self, predicate: Callable[[str, V], bool]) -> int:
        """Drop every entry matching ``predicate``; returns how many were dropped."""

        doomed = [key for key, entry in self._entries.items() if predicate(key, entry.value)]
        for key in doomed:
            self._entries.pop(key, None)
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._entries)

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now - entry.stored_at >= self._ttl]
        for key in expired:
            self._entries.pop(key, None)
