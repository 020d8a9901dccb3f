"""Request, quote and result types for the payment router."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from payrouter.constants import PaymentMethod, ServiceType, TokenTier
from payrouter.money import format_units

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class PaymentValidationError(ValueError):
    """Caller input rejected before any state is touched."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


def validate_address(address: Any) -> str:
    if not isinstance(address, str) or not _ADDRESS_RE.match(address.strip()):
        raise PaymentValidationError("address", "must be a 0x-prefixed 40-hex-digit address")
    return address.strip()


def validate_request(address: Any, service: Any, quantity: Any) -> tuple[str, ServiceType, int]:
    """Check raw caller input. Returns ``(address, service, quantity)``.

    Raises PaymentValidationError naming the first offending field.
    """
    address = validate_address(address)
    try:
        service_type = ServiceType(service)
    except ValueError:
        supported = ", ".join(s.value for s in ServiceType)
        raise PaymentValidationError(
            "service", f"unsupported service {service!r}; expected one of: {supported}"
        ) from None
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise PaymentValidationError("quantity", "must be a positive integer")
    return address, service_type, quantity


@dataclass
class PaymentRequest:
    address: str
    service: ServiceType
    quantity: int
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        address: Any,
        service: Any,
        quantity: Any,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentRequest:
        """Validated constructor for untrusted input."""
        addr, service_type, qty = validate_request(address, service, quantity)
        return cls(address=addr, service=service_type, quantity=qty, metadata=dict(metadata or {}))


@dataclass
class PaymentQuote:
    """Advisory snapshot; never the authority for a debit."""

    service: ServiceType
    quantity: int
    base_cost: int
    estimated_cost: int
    unit_cost: int
    discount_percent: int
    available_methods: list[PaymentMethod]
    recommended_method: PaymentMethod
    credits_available: int | None = None
    current_tier: TokenTier | None = None
    tier_covers_service: bool | None = None  # tier pays for this call: covered with quota left, or free

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "service": self.service.value,
            "quantity": self.quantity,
            "baseCost": str(self.base_cost),
            "baseCostFormatted": format_units(self.base_cost),
            "estimatedCost": str(self.estimated_cost),
            "estimatedCostFormatted": format_units(self.estimated_cost),
            "unitCost": str(self.unit_cost),
            "unitCostFormatted": format_units(self.unit_cost),
            "discountPercent": self.discount_percent,
            "availableMethods": [m.value for m in self.available_methods],
            "recommendedMethod": self.recommended_method.value,
        }
        if self.credits_available is not None:
            data["creditsAvailable"] = str(self.credits_available)
            data["creditsAvailableFormatted"] = format_units(self.credits_available)
        if self.current_tier is not None:
            data["currentTier"] = self.current_tier.value
        if self.tier_covers_service is not None:
            data["tierCoversService"] = self.tier_covers_service
        return data


@dataclass
class PaymentResult:
    success: bool
    method: PaymentMethod
    base_cost: int = 0
    cost: int = 0
    discount_applied: int = 0
    tx_hash: str | None = None
    remaining_credits: int | None = None
    tier: TokenTier | None = None
    error: str | None = None
    fallback_available: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "method": self.method.value,
            "baseCost": str(self.base_cost),
            "baseCostFormatted": format_units(self.base_cost),
            "cost": str(self.cost),
            "costFormatted": format_units(self.cost),
            "discountApplied": self.discount_applied,
        }
        if self.tx_hash is not None:
            data["txHash"] = self.tx_hash
        if self.remaining_credits is not None:
            data["remainingCredits"] = str(self.remaining_credits)
            data["remainingCreditsFormatted"] = format_units(self.remaining_credits)
        if self.tier is not None:
            data["tier"] = self.tier.value
        if self.error is not None:
            data["error"] = self.error
        if self.fallback_available is not None:
            data["fallbackAvailable"] = self.fallback_available
        return data
