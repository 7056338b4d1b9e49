"""Processed event ledger and per-aggregate locks for reconciliation."""

import asyncio
import threading
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from cachetools import TTLCache

from subscrio.config import ReconciliationConfig


class ProcessedEventLedger:
    """
    Bounded, expiring record of provider event ids already applied.

    Only successfully applied events are recorded, so a failed event is
    processed again on redelivery.
    """

    def __init__(
        self,
        config: ReconciliationConfig | None = None,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        config = config or ReconciliationConfig()
        self._lock = threading.Lock()
        self._events: TTLCache[str, bool] = TTLCache(
            maxsize=config.ledger_max_entries, ttl=config.ledger_ttl_seconds, timer=timer
        )

    def seen(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._events

    def record(self, event_id: str) -> None:
        with self._lock:
            self._events[event_id] = True

    def forget(self, event_id: str) -> None:
        with self._lock:
            self._events.pop(event_id, None)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class KeyedLock:
    """asyncio locks created on demand per key and dropped once released."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
