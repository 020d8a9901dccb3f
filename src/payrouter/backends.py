"""Abstract interfaces for the router's external collaborators.

The router depends only on these Protocols. Concrete implementations
(in-memory, Redis, JSON-RPC) are chosen at bootstrap and injected.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from payrouter.credit_store import CreditAccount
    from payrouter.usage import UsageStats


class StoreUnavailableError(Exception):
    """A durable backing store could not be reached or timed out."""


@runtime_checkable
class BalanceReader(Protocol):
    """Reads an address's token holding (smallest token unit)."""

    async def get_balance(self, address: str) -> int: ...


@runtime_checkable
class CreditAccountStore(Protocol):
    """Prepaid credit ledger keyed by address.

    ``deduct_credits`` must be atomic with respect to concurrent
    deductions on the same account and never drive a balance negative.
    """

    async def get_account(self, address: str) -> CreditAccount | None: ...

    async def create_account(self, address: str) -> CreditAccount: ...

    async def deduct_credits(self, address: str, amount: int) -> bool: ...

    async def add_credits(self, address: str, amount: int) -> None: ...


@runtime_checkable
class UsageTracker(Protocol):
    """Per-address, per-service daily usage counters."""

    async def get_usage(self, address: str, service: str) -> int: ...

    async def record_usage(self, address: str, service: str, amount: int) -> int: ...

    async def would_exceed_limit(
        self, address: str, service: str, amount: int, limit: int
    ) -> bool: ...

    async def get_usage_stats(
        self, address: str, service: str, limit: int
    ) -> UsageStats: ...

    async def reset_usage(self, address: str, service: str) -> None: ...
