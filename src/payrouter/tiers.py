"""Token-holding tiers and the free-quota policy attached to them."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from payrouter.backends import BalanceReader
from payrouter.constants import (
    TIER_DAILY_LIMITS,
    TIER_SERVICE_COVERAGE,
    TIER_THRESHOLDS,
    ServiceType,
    TokenTier,
)

logger = logging.getLogger(__name__)

_TIERS_HIGH_TO_LOW = [TokenTier.PREMIUM, TokenTier.PRO, TokenTier.BASIC, TokenTier.NONE]


def tier_for_balance(
    balance: int, thresholds: Mapping[TokenTier, int] = TIER_THRESHOLDS
) -> TokenTier:
    """Highest tier whose minimum holding ``balance`` meets."""
    for tier in _TIERS_HIGH_TO_LOW:
        if balance >= thresholds[tier]:
            return tier
    return TokenTier.NONE


class TierResolver:
    """Maps an address to its tier via an on-chain balance read.

    A failed read resolves to ``TokenTier.NONE``; an outage must never
    grant more than the least-privileged tier.
    """

    def __init__(
        self,
        balance_reader: BalanceReader | None,
        thresholds: Mapping[TokenTier, int] = TIER_THRESHOLDS,
    ) -> None:
        self._reader = balance_reader
        self._thresholds = thresholds

    async def resolve(self, address: str) -> TokenTier:
        if self._reader is None:
            return TokenTier.NONE
        try:
            balance = await self._reader.get_balance(address)
        except Exception as exc:
            logger.warning("Tier lookup failed for %s, using 'none': %s", address, exc)
            return TokenTier.NONE
        return tier_for_balance(balance, self._thresholds)

    async def close(self) -> None:
        close = getattr(self._reader, "close", None)
        if close is not None:
            await close()


class TierPolicy:
    """Which services a tier covers and how much of each per UTC day."""

    def __init__(
        self,
        coverage: Mapping[TokenTier, frozenset[ServiceType]] = TIER_SERVICE_COVERAGE,
        daily_limits: Mapping[TokenTier, Mapping[ServiceType, int]] = TIER_DAILY_LIMITS,
    ) -> None:
        self._coverage = coverage
        self._limits = daily_limits

    def covers(self, tier: TokenTier, service: ServiceType) -> bool:
        return service in self._coverage.get(tier, frozenset())

    def daily_limit(self, tier: TokenTier, service: ServiceType) -> int:
        return self._limits.get(tier, {}).get(service, 0)
