"""Daily usage counters for tier quotas.

Counters are keyed by ``(address.lower(), service, UTC date)`` and expire
on their own once the day is over. Two backends share one contract:

- ``RedisUsageTracker`` — distributed, atomic ``INCRBY`` on Upstash Redis.
- ``InMemoryUsageTracker`` — single-process fallback.

``FailoverUsageTracker`` puts the in-memory tracker behind the durable one.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Awaitable, Callable

from payrouter.backends import StoreUnavailableError, UsageTracker
from payrouter.constants import USAGE_TTL_SECS

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_KEY_PREFIX = "payrouter:usage:"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _service_name(service: Any) -> str:
    return getattr(service, "value", service)


def _next_reset(now: datetime) -> datetime:
    """Midnight UTC following ``now``."""
    return datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=timezone.utc)


def usage_ttl_secs(now: datetime) -> int:
    """Seconds a fresh counter should live: the rest of the day, at least 25h."""
    remaining = int((_next_reset(now) - now).total_seconds())
    return max(remaining, USAGE_TTL_SECS)


@dataclass
class UsageStats:
    usage: int
    limit: int
    remaining: int
    reset_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "usage": self.usage,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at": self.reset_at,
        }


@dataclass
class UsageRecord:
    address: str
    service: str
    date: str
    usage: int


def _build_stats(usage: int, limit: int, now: datetime) -> UsageStats:
    return UsageStats(
        usage=usage,
        limit=limit,
        remaining=max(0, limit - usage),
        reset_at=_next_reset(now).isoformat(),
    )


# ---------------------------------------------------------------------------
# In-process tracker
# ---------------------------------------------------------------------------


class InMemoryUsageTracker:
    """Thread-safe in-process counters with per-key expiry.

    Counts are lost on restart and are not shared between processes.
    """

    def __init__(self, clock: Clock = _utcnow) -> None:
        self._clock = clock
        self._counts: dict[tuple[str, str, str], int] = {}
        self._expires_at: dict[tuple[str, str, str], datetime] = {}
        self._lock = threading.Lock()

    def _key(self, address: str, service: Any, now: datetime) -> tuple[str, str, str]:
        return (address.lower(), _service_name(service), now.date().isoformat())

    def _purge(self, now: datetime) -> None:
        expired = [k for k, exp in self._expires_at.items() if exp <= now]
        for key in expired:
            self._counts.pop(key, None)
            del self._expires_at[key]

    async def get_usage(self, address: str, service: str) -> int:
        now = self._clock()
        with self._lock:
            self._purge(now)
            return self._counts.get(self._key(address, service, now), 0)

    async def record_usage(self, address: str, service: str, amount: int) -> int:
        now = self._clock()
        key = self._key(address, service, now)
        with self._lock:
            self._purge(now)
            total = self._counts.get(key, 0) + amount
            self._counts[key] = total
            if key not in self._expires_at:
                self._expires_at[key] = now + timedelta(seconds=usage_ttl_secs(now))
            return total

    async def would_exceed_limit(
        self, address: str, service: str, amount: int, limit: int
    ) -> bool:
        return await self.get_usage(address, service) + amount > limit

    async def get_usage_stats(self, address: str, service: str, limit: int) -> UsageStats:
        usage = await self.get_usage(address, service)
        return _build_stats(usage, limit, self._clock())

    async def reset_usage(self, address: str, service: str) -> None:
        now = self._clock()
        key = self._key(address, service, now)
        with self._lock:
            self._counts.pop(key, None)
            self._expires_at.pop(key, None)

    @property
    def size(self) -> int:
        """Number of live counters."""
        return len(self._counts)


# ---------------------------------------------------------------------------
# Redis tracker
# ---------------------------------------------------------------------------


class RedisUsageTracker:
    """Distributed counters on Upstash Redis.

    Increments use ``INCRBY`` so concurrent writers never lose updates.
    The first write to a key sets its expiry. Every call is bounded by
    ``timeout_secs``; failures surface as ``StoreUnavailableError``.
    """

    def __init__(
        self,
        client: Any,
        *,
        key_prefix: str = _KEY_PREFIX,
        timeout_secs: float = 2.0,
        clock: Clock = _utcnow,
    ) -> None:
        self._client = client
        self._prefix = key_prefix
        self._timeout = timeout_secs
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, token: str, **kwargs: Any) -> RedisUsageTracker:
        """Build a tracker on an Upstash REST endpoint."""
        from upstash_redis.asyncio import Redis

        return cls(Redis(url=url, token=token), **kwargs)

    def _key(self, address: str, service: Any, now: datetime) -> str:
        return f"{self._prefix}{address.lower()}:{_service_name(service)}:{now.date().isoformat()}"

    async def _call(self, op: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        try:
            return await asyncio.wait_for(op(*args), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailableError(
                f"Usage store timed out after {self._timeout}s"
            ) from exc
        except Exception as exc:
            raise StoreUnavailableError(f"Usage store error: {exc}") from exc

    async def get_usage(self, address: str, service: str) -> int:
        value = await self._call(self._client.get, self._key(address, service, self._clock()))
        return int(value) if value is not None else 0

    async def record_usage(self, address: str, service: str, amount: int) -> int:
        now = self._clock()
        key = self._key(address, service, now)
        total = int(await self._call(self._client.incrby, key, amount))
        if total == amount:
            await self._call(self._client.expire, key, usage_ttl_secs(now))
        return total

    async def would_exceed_limit(
        self, address: str, service: str, amount: int, limit: int
    ) -> bool:
        return await self.get_usage(address, service) + amount > limit

    async def get_usage_stats(self, address: str, service: str, limit: int) -> UsageStats:
        usage = await self.get_usage(address, service)
        return _build_stats(usage, limit, self._clock())

    async def reset_usage(self, address: str, service: str) -> None:
        await self._call(self._client.delete, self._key(address, service, self._clock()))

    async def get_address_usage(self, address: str) -> list[UsageRecord]:
        """All of today's counters for ``address``."""
        today = self._clock().date().isoformat()
        pattern = f"{self._prefix}{address.lower()}:*:{today}"
        keys = await self._call(self._client.keys, pattern)
        records: list[UsageRecord] = []
        for key in keys:
            service = key[len(self._prefix):].split(":")[1]
            value = await self._call(self._client.get, key)
            records.append(UsageRecord(
                address=address.lower(),
                service=service,
                date=today,
                usage=int(value) if value is not None else 0,
            ))
        return records

    async def get_total_usage(self, address: str) -> int:
        return sum(r.usage for r in await self.get_address_usage(address))

    async def close(self) -> None:
        await self._client.close()


# ---------------------------------------------------------------------------
# Failover
# ---------------------------------------------------------------------------


class FailoverUsageTracker:
    """Durable tracker with an in-process fallback.

    The first ``StoreUnavailableError`` from the primary switches every
    later call to the fallback, and it stays there until
    ``restore_primary()``. Switching back and forth per request would
    split one day's count across two stores.
    """

    def __init__(self, primary: UsageTracker, fallback: UsageTracker | None = None) -> None:
        self._primary = primary
        self._fallback = fallback if fallback is not None else InMemoryUsageTracker()
        self._failed_over = False

    @property
    def active_backend(self) -> str:
        return "fallback" if self._failed_over else "primary"

    def _activate_fallback(self, exc: Exception) -> None:
        if not self._failed_over:
            self._failed_over = True
            logger.error(
                "Usage store unavailable (%s); switching to in-process usage tracking. "
                "Counts are no longer shared across instances.",
                exc,
            )

    def restore_primary(self) -> None:
        """Route calls to the primary again (e.g. after the store recovers)."""
        if self._failed_over:
            logger.info("Usage tracking restored to primary store.")
        self._failed_over = False

    async def _dispatch(self, name: str, *args: Any) -> Any:
        if not self._failed_over:
            try:
                return await getattr(self._primary, name)(*args)
            except StoreUnavailableError as exc:
                self._activate_fallback(exc)
        return await getattr(self._fallback, name)(*args)

    async def get_usage(self, address: str, service: str) -> int:
        return await self._dispatch("get_usage", address, service)

    async def record_usage(self, address: str, service: str, amount: int) -> int:
        return await self._dispatch("record_usage", address, service, amount)

    async def would_exceed_limit(
        self, address: str, service: str, amount: int, limit: int
    ) -> bool:
        return await self._dispatch("would_exceed_limit", address, service, amount, limit)

    async def get_usage_stats(self, address: str, service: str, limit: int) -> UsageStats:
        return await self._dispatch("get_usage_stats", address, service, limit)

    async def reset_usage(self, address: str, service: str) -> None:
        await self._dispatch("reset_usage", address, service)
