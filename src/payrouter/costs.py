"""Service pricing and discount computation.

Costs are integer USDC units. A discount is resolved by an ordered
pipeline of layers; the first layer that returns a percentage wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from payrouter.constants import (
    DEFAULT_WHITELIST,
    TIER_DISCOUNTS,
    CostUnit,
    ServiceType,
    TokenTier,
)

# (address, tier) -> discount percent, or None to defer to the next layer
DiscountLayer = Callable[[str | None, TokenTier], int | None]


@dataclass(frozen=True)
class ServiceCost:
    """Static pricing descriptor for one service."""

    service: ServiceType
    base_cost: int
    unit: CostUnit
    unit_cost: int | None = None
    min_cost: int | None = None
    max_cost: int | None = None

    def compute(self, quantity: int) -> int:
        cost = self.base_cost
        if self.unit is not CostUnit.FIXED and self.unit_cost:
            cost += self.unit_cost * quantity
        if self.min_cost is not None and cost < self.min_cost:
            cost = self.min_cost
        if self.max_cost is not None and cost > self.max_cost:
            cost = self.max_cost
        return cost


SERVICE_COSTS: dict[ServiceType, ServiceCost] = {
    ServiceType.VOICE_GENERATION: ServiceCost(
        ServiceType.VOICE_GENERATION, 0, CostUnit.PER_CHARACTER,
        unit_cost=1, min_cost=100, max_cost=100_000,
    ),
    ServiceType.VOICE_TRANSFORMATION: ServiceCost(
        ServiceType.VOICE_TRANSFORMATION, 1_000, CostUnit.PER_SECOND,
        unit_cost=10, min_cost=1_000, max_cost=50_000,
    ),
    ServiceType.DUBBING: ServiceCost(
        ServiceType.DUBBING, 5_000, CostUnit.PER_SECOND,
        unit_cost=50, min_cost=5_000, max_cost=100_000,
    ),
    ServiceType.TRANSCRIPTION: ServiceCost(
        ServiceType.TRANSCRIPTION, 0, CostUnit.PER_SECOND,
        unit_cost=1, min_cost=100, max_cost=50_000,
    ),
    ServiceType.STORAGE: ServiceCost(
        ServiceType.STORAGE, 0, CostUnit.FIXED, min_cost=0, max_cost=0,
    ),
    ServiceType.VIDEO_EXPORT: ServiceCost(
        ServiceType.VIDEO_EXPORT, 500_000, CostUnit.FIXED,
        min_cost=500_000, max_cost=500_000,
    ),
    ServiceType.NFT_MINT: ServiceCost(
        ServiceType.NFT_MINT, 200_000, CostUnit.FIXED,
        min_cost=200_000, max_cost=200_000,
    ),
    ServiceType.WHITE_LABEL_EXPORT: ServiceCost(
        ServiceType.WHITE_LABEL_EXPORT, 1_000_000, CostUnit.FIXED,
        min_cost=1_000_000, max_cost=1_000_000,
    ),
}

_missing = set(ServiceType) - set(SERVICE_COSTS)
if _missing:
    raise RuntimeError(f"SERVICE_COSTS has no entry for: {sorted(s.value for s in _missing)}")


def get_service_cost(service: ServiceType | str) -> ServiceCost:
    """Look up a service descriptor. Unknown names raise ValueError."""
    return SERVICE_COSTS[ServiceType(service)]


# ---------------------------------------------------------------------------
# Discount layers
# ---------------------------------------------------------------------------


def whitelist_layer(addresses: Iterable[str]) -> DiscountLayer:
    """Grant 100% off to any address in ``addresses`` (case-insensitive)."""
    allowed = frozenset(a.lower() for a in addresses)

    def _layer(address: str | None, tier: TokenTier) -> int | None:
        if address and address.lower() in allowed:
            return 100
        return None

    return _layer


def tier_layer(address: str | None, tier: TokenTier) -> int | None:
    return TIER_DISCOUNTS[tier]


def default_layers(whitelist: Iterable[str] = DEFAULT_WHITELIST) -> list[DiscountLayer]:
    return [whitelist_layer(whitelist), tier_layer]


_DEFAULT_LAYERS = default_layers()


def resolve_discount(
    address: str | None,
    tier: TokenTier,
    layers: Sequence[DiscountLayer],
) -> int:
    for layer in layers:
        percent = layer(address, tier)
        if percent is not None:
            return percent
    return 0


# ---------------------------------------------------------------------------
# Cost calculation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CostBreakdown:
    base_cost: int
    discounted_cost: int
    discount_percent: int


def calculate_cost(
    service: ServiceType | str,
    quantity: int,
    tier: TokenTier = TokenTier.NONE,
    address: str | None = None,
    *,
    layers: Sequence[DiscountLayer] | None = None,
) -> CostBreakdown:
    """Compute the clamped base cost and the discounted cost for a call."""
    cost = get_service_cost(service).compute(quantity)
    percent = resolve_discount(address, tier, _DEFAULT_LAYERS if layers is None else layers)
    discounted = cost - cost * percent // 100
    return CostBreakdown(
        base_cost=cost,
        discounted_cost=discounted,
        discount_percent=percent,
    )
