"""Prepaid credit accounts.

``InMemoryCreditStore`` is the development store: accounts live in the
process and vanish on restart. ``RedisCreditStore`` keeps one hash per
address on Upstash Redis and performs every mutation as a single Lua
script, so deductions from many processes cannot overdraft an account.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from payrouter.backends import StoreUnavailableError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CreditAccount
# ---------------------------------------------------------------------------


@dataclass
class CreditAccount:
    """Balance ledger for one address, in USDC units.

    ``balance`` never goes negative; ``total_spent`` only grows.
    """

    address: str
    balance: int = 0
    total_spent: int = 0
    last_top_up: str | None = None  # ISO datetime
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "balance": self.balance,
            "total_spent": self.total_spent,
            "last_top_up": self.last_top_up,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CreditAccount:
        is_active = data.get("is_active", True)
        if isinstance(is_active, str):
            is_active = is_active not in ("0", "false", "False", "")
        return cls(
            address=str(data.get("address", "")),
            balance=int(data.get("balance", 0)),
            total_spent=int(data.get("total_spent", 0)),
            last_top_up=data.get("last_top_up") or None,
            is_active=bool(is_active),
        )


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemoryCreditStore:
    """Process-local credit ledger with per-address asyncio locks."""

    def __init__(self) -> None:
        self._accounts: dict[str, CreditAccount] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def get_account(self, address: str) -> CreditAccount | None:
        account = self._accounts.get(address.lower())
        return replace(account) if account else None

    async def create_account(self, address: str) -> CreditAccount:
        key = address.lower()
        async with self._get_lock(key):
            if key not in self._accounts:
                self._accounts[key] = CreditAccount(address=address)
            return replace(self._accounts[key])

    async def deduct_credits(self, address: str, amount: int) -> bool:
        if amount < 0:
            return False
        key = address.lower()
        async with self._get_lock(key):
            account = self._accounts.get(key)
            if account is None or not account.is_active or account.balance < amount:
                return False
            account.balance -= amount
            account.total_spent += amount
            return True

    async def add_credits(self, address: str, amount: int) -> None:
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")
        key = address.lower()
        async with self._get_lock(key):
            account = self._accounts.setdefault(key, CreditAccount(address=address))
            account.balance += amount
            account.last_top_up = datetime.now(timezone.utc).isoformat()

    @property
    def size(self) -> int:
        return len(self._accounts)


# ---------------------------------------------------------------------------
# Redis store
# ---------------------------------------------------------------------------

# Returns the new balance, -1 for a missing account, -2 for insufficient
# balance, -3 for an inactive account.
_DEDUCT_SCRIPT = """
local balance = redis.call('HGET', KEYS[1], 'balance')
if not balance then return -1 end
if redis.call('HGET', KEYS[1], 'is_active') == '0' then return -3 end
balance = tonumber(balance)
local amount = tonumber(ARGV[1])
if balance < amount then return -2 end
redis.call('HINCRBY', KEYS[1], 'balance', -amount)
redis.call('HINCRBY', KEYS[1], 'total_spent', amount)
return balance - amount
"""

_CREATE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  redis.call('HSET', KEYS[1], 'address', ARGV[1], 'balance', 0, 'total_spent', 0, 'is_active', 1)
end
return 1
"""

_DEPOSIT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  redis.call('HSET', KEYS[1], 'address', ARGV[1], 'balance', 0, 'total_spent', 0, 'is_active', 1)
end
redis.call('HSET', KEYS[1], 'last_top_up', ARGV[3])
return redis.call('HINCRBY', KEYS[1], 'balance', tonumber(ARGV[2]))
"""

_DEDUCT_REASONS = {-1: "no account", -2: "insufficient balance", -3: "account inactive"}


class RedisCreditStore:
    """Credit ledger on Upstash Redis, one hash per address."""

    def __init__(
        self,
        client: Any,
        *,
        key_prefix: str = "payrouter:credits:",
        timeout_secs: float = 2.0,
    ) -> None:
        self._client = client
        self._prefix = key_prefix
        self._timeout = timeout_secs

    @classmethod
    def from_url(cls, url: str, token: str, **kwargs: Any) -> RedisCreditStore:
        from upstash_redis.asyncio import Redis

        return cls(Redis(url=url, token=token), **kwargs)

    def _key(self, address: str) -> str:
        return f"{self._prefix}{address.lower()}"

    async def _call(self, op: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.wait_for(op(*args, **kwargs), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailableError(
                f"Credit store timed out after {self._timeout}s"
            ) from exc
        except Exception as exc:
            raise StoreUnavailableError(f"Credit store error: {exc}") from exc

    async def get_account(self, address: str) -> CreditAccount | None:
        data = await self._call(self._client.hgetall, self._key(address))
        if not data:
            return None
        data.setdefault("address", address)
        return CreditAccount.from_dict(data)

    async def create_account(self, address: str) -> CreditAccount:
        await self._call(
            self._client.eval, _CREATE_SCRIPT, keys=[self._key(address)], args=[address]
        )
        account = await self.get_account(address)
        return account if account is not None else CreditAccount(address=address)

    async def deduct_credits(self, address: str, amount: int) -> bool:
        if amount < 0:
            return False
        result = int(await self._call(
            self._client.eval, _DEDUCT_SCRIPT, keys=[self._key(address)], args=[amount]
        ))
        if result < 0:
            logger.info(
                "Deduction of %d refused for %s: %s.",
                amount, address, _DEDUCT_REASONS.get(result, "unknown"),
            )
            return False
        return True

    async def add_credits(self, address: str, amount: int) -> None:
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")
        await self._call(
            self._client.eval,
            _DEPOSIT_SCRIPT,
            keys=[self._key(address)],
            args=[address, amount, datetime.now(timezone.utc).isoformat()],
        )

    async def close(self) -> None:
        await self._client.close()
