"""Idempotency-Key replay store for the payment endpoint."""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from payrouter.constants import IDEMPOTENCY_TTL_SECS


class _ScopeLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.holders = 0


class IdempotencyStore:
    """Thread-safe in-memory store of successful responses keyed by caller key.

    Entries live for ``ttl_secs``. ``hold(scope)`` serializes concurrent
    retries of the same key so only one of them executes the payment; its
    lock is dropped once no request holds or awaits it.
    """

    def __init__(
        self,
        ttl_secs: int = IDEMPOTENCY_TTL_SECS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl_secs
        self._clock = clock
        self._entries: dict[str, tuple[dict[str, Any], float]] = {}  # scope -> (response, expiry)
        self._locks: dict[str, _ScopeLock] = {}
        self._lock = threading.Lock()

    @staticmethod
    def scope(address: str, key: str) -> str:
        return f"{address.lower()}:{key}"

    def _cleanup(self) -> None:
        now = self._clock()
        with self._lock:
            expired = [s for s, (_, exp) in self._entries.items() if exp <= now]
            for scope in expired:
                del self._entries[scope]

    def get(self, scope: str) -> dict[str, Any] | None:
        """Stored response for ``scope``, or None if absent or expired."""
        self._cleanup()
        with self._lock:
            entry = self._entries.get(scope)
            return entry[0] if entry else None

    def put(self, scope: str, response: dict[str, Any]) -> None:
        with self._lock:
            self._entries[scope] = (response, self._clock() + self._ttl)

    @asynccontextmanager
    async def hold(self, scope: str) -> AsyncIterator[None]:
        with self._lock:
            scope_lock = self._locks.get(scope)
            if scope_lock is None:
                scope_lock = self._locks[scope] = _ScopeLock()
            scope_lock.holders += 1
        try:
            async with scope_lock.lock:
                yield
        finally:
            with self._lock:
                scope_lock.holders -= 1
                if scope_lock.holders == 0:
                    del self._locks[scope]

    @property
    def size(self) -> int:
        return len(self._entries)

    @property
    def pending(self) -> int:
        """Scopes with a request in flight or waiting."""
        return len(self._locks)
