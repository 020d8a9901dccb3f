"""Payment router: quote, pick a method, and execute it.

Per attempt: ``QUOTE -> {credits | tier | x402 | none} -> RESULT``.
Every execution path re-derives tier, cost, balance and usage instead of
trusting an earlier quote.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence

from payrouter.backends import (
    BalanceReader,
    CreditAccountStore,
    StoreUnavailableError,
    UsageTracker,
)
from payrouter.config import PaymentRouterConfig
from payrouter.constants import PaymentMethod, PaymentPreference, ServiceType, TokenTier
from payrouter.costs import CostBreakdown, DiscountLayer, calculate_cost, default_layers, get_service_cost
from payrouter.credit_store import InMemoryCreditStore, RedisCreditStore
from payrouter.models import (
    PaymentQuote,
    PaymentRequest,
    PaymentResult,
    PaymentValidationError,
    validate_address,
    validate_request,
)
from payrouter.rpc_client import RpcBalanceReader
from payrouter.tiers import TierPolicy, TierResolver
from payrouter.usage import FailoverUsageTracker, InMemoryUsageTracker, RedisUsageTracker
from payrouter.x402_client import (
    PaymentPayload,
    PaymentRequirements,
    X402Client,
    normalize_address,
)

logger = logging.getLogger(__name__)

PaymentHook = Callable[[PaymentRequest, PaymentResult], Awaitable[None]]

_PREFERENCE_ORDER: dict[PaymentPreference, tuple[PaymentMethod, ...]] = {
    PaymentPreference.CREDITS_FIRST: (PaymentMethod.CREDITS, PaymentMethod.TIER, PaymentMethod.X402),
    PaymentPreference.TIER_IF_AVAILABLE: (PaymentMethod.TIER, PaymentMethod.CREDITS, PaymentMethod.X402),
    PaymentPreference.X402_ONLY: (PaymentMethod.X402,),
}


def select_method(
    available: Sequence[PaymentMethod],
    preference: PaymentPreference,
    cost: int,
) -> PaymentMethod:
    """Pick the method to use from ``available``.

    Free access always goes through ``tier`` when it is available so a
    prepaid balance is never touched for something that costs nothing.
    """
    if cost == 0 and PaymentMethod.TIER in available:
        return PaymentMethod.TIER
    for method in _PREFERENCE_ORDER[PaymentPreference(preference)]:
        if method in available:
            return method
    return PaymentMethod.NONE


class PaymentRouter:
    """Composes tiers, costs, credits, usage and x402 into one decision."""

    def __init__(
        self,
        config: PaymentRouterConfig,
        *,
        tier_resolver: TierResolver,
        credit_store: CreditAccountStore,
        usage_tracker: UsageTracker,
        x402_client: X402Client,
        policy: TierPolicy | None = None,
        layers: Sequence[DiscountLayer] | None = None,
        on_payment: PaymentHook | None = None,
    ) -> None:
        self._config = config
        self._tiers = tier_resolver
        self._credits = credit_store
        self._usage = usage_tracker
        self._x402 = x402_client
        self._policy = policy or TierPolicy()
        self._layers = list(layers) if layers is not None else default_layers(config.whitelisted_addresses)
        self._on_payment = on_payment

    @property
    def config(self) -> PaymentRouterConfig:
        return self._config

    @property
    def credit_store(self) -> CreditAccountStore:
        return self._credits

    @property
    def usage_tracker(self) -> UsageTracker:
        return self._usage

    @property
    def x402_client(self) -> X402Client:
        return self._x402

    # -- internal lookups -----------------------------------------------------

    async def _price(
        self, address: str, service: ServiceType, quantity: int
    ) -> tuple[TokenTier, CostBreakdown]:
        tier = await self._tiers.resolve(address)
        return tier, calculate_cost(service, quantity, tier, address, layers=self._layers)

    async def _available_credits(self, address: str) -> int | None:
        """Spendable balance, or None when the store cannot be read."""
        try:
            account = await self._credits.get_account(address)
        except StoreUnavailableError as e:
            logger.warning("Credit store unavailable while quoting %s: %s", address, e)
            return None
        if account is None or not account.is_active:
            return 0
        return account.balance

    async def _tier_available(
        self,
        address: str,
        tier: TokenTier,
        service: ServiceType,
        quantity: int,
        cost: int,
    ) -> bool:
        if cost == 0:
            return True
        if not self._policy.covers(tier, service):
            return False
        limit = self._policy.daily_limit(tier, service)
        try:
            return not await self._usage.would_exceed_limit(
                address, service.value, quantity, limit
            )
        except StoreUnavailableError as e:
            logger.warning("Usage store unavailable while quoting %s: %s", address, e)
            return False

    async def _build_quote(
        self, address: str, service: ServiceType, quantity: int
    ) -> tuple[PaymentQuote, TokenTier]:
        tier, breakdown = await self._price(address, service, quantity)
        cost = breakdown.discounted_cost

        available: list[PaymentMethod] = []
        credits = await self._available_credits(address)
        if credits is not None and credits >= cost:
            available.append(PaymentMethod.CREDITS)
        tier_ok = await self._tier_available(address, tier, service, quantity, cost)
        if tier_ok:
            available.append(PaymentMethod.TIER)
        available.append(PaymentMethod.X402)

        descriptor = get_service_cost(service)
        quote = PaymentQuote(
            service=service,
            quantity=quantity,
            base_cost=breakdown.base_cost,
            estimated_cost=cost,
            unit_cost=descriptor.unit_cost if descriptor.unit_cost is not None else descriptor.base_cost,
            discount_percent=breakdown.discount_percent,
            available_methods=available,
            recommended_method=select_method(available, self._config.preference, cost),
            credits_available=credits,
            current_tier=tier,
            tier_covers_service=tier_ok,
        )
        return quote, tier

    async def _emit(self, request: PaymentRequest, result: PaymentResult) -> None:
        if self._on_payment is None:
            return
        try:
            await self._on_payment(request, result)
        except Exception as e:
            logger.warning(
                "Payment event hook failed for %s/%s: %s",
                request.address, request.service.value, e,
            )

    # -- quoting --------------------------------------------------------------

    async def get_quote(self, address: str, service: ServiceType | str, quantity: int) -> PaymentQuote:
        """Advisory quote. Raises PaymentValidationError on bad input."""
        address, service_type, quantity = validate_request(address, service, quantity)
        quote, _ = await self._build_quote(address, service_type, quantity)
        return quote

    # -- execution ------------------------------------------------------------

    async def process(self, request: PaymentRequest) -> PaymentResult:
        """Execute the currently recommended method for ``request``."""
        address, service, quantity = validate_request(
            request.address, request.service, request.quantity
        )
        quote, tier = await self._build_quote(address, service, quantity)
        method = quote.recommended_method

        if method is PaymentMethod.CREDITS:
            result = await self._pay_with_credits(address, quote, tier)
        elif method is PaymentMethod.TIER:
            result = await self._pay_with_tier(address, quote, tier)
        elif method is PaymentMethod.X402:
            result = PaymentResult(
                success=False,
                method=PaymentMethod.X402,
                base_cost=quote.base_cost,
                cost=quote.estimated_cost,
                discount_applied=quote.discount_percent,
                tier=tier,
                error="x402 payment requires client-side signing",
                fallback_available=True,
            )
        else:
            result = PaymentResult(
                success=False,
                method=PaymentMethod.NONE,
                base_cost=quote.base_cost,
                cost=quote.estimated_cost,
                discount_applied=quote.discount_percent,
                tier=tier,
                error="No payment method available",
                fallback_available=False,
            )

        if result.success:
            await self._emit(request, result)
        return result

    async def _pay_with_credits(
        self, address: str, quote: PaymentQuote, tier: TokenTier
    ) -> PaymentResult:
        cost = quote.estimated_cost
        failed = PaymentResult(
            success=False,
            method=PaymentMethod.CREDITS,
            base_cost=quote.base_cost,
            cost=cost,
            discount_applied=quote.discount_percent,
            tier=tier,
            fallback_available=True,
        )
        try:
            deducted = await self._credits.deduct_credits(address, cost)
        except StoreUnavailableError as e:
            logger.warning("Credit deduction of %d for %s failed: %s", cost, address, e)
            failed.error = "Credit store unavailable"
            return failed
        if not deducted:
            failed.error = "Insufficient credits"
            return failed

        remaining = await self._available_credits(address)
        logger.info(
            "Deducted %d credits from %s for %s x%d.",
            cost, address, quote.service.value, quote.quantity,
        )
        return PaymentResult(
            success=True,
            method=PaymentMethod.CREDITS,
            base_cost=quote.base_cost,
            cost=cost,
            discount_applied=quote.discount_percent,
            remaining_credits=remaining,
            tier=tier,
        )

    async def _pay_with_tier(
        self, address: str, quote: PaymentQuote, tier: TokenTier
    ) -> PaymentResult:
        try:
            await self._usage.record_usage(address, quote.service.value, quote.quantity)
        except StoreUnavailableError as e:
            logger.warning("Recording tier usage for %s failed: %s", address, e)
            return PaymentResult(
                success=False,
                method=PaymentMethod.TIER,
                base_cost=quote.base_cost,
                cost=quote.estimated_cost,
                discount_applied=quote.discount_percent,
                tier=tier,
                error="Usage store unavailable",
                fallback_available=True,
            )
        return PaymentResult(
            success=True,
            method=PaymentMethod.TIER,
            base_cost=quote.base_cost,
            cost=0,
            discount_applied=100,
            tier=tier,
        )

    # -- x402 -----------------------------------------------------------------

    def _expected_pay_to(self) -> str:
        return normalize_address(self._config.x402_pay_to) or self._x402.default_pay_to

    async def create_requirements(
        self,
        address: str,
        service: ServiceType | str,
        quantity: int,
        resource_url: str,
        description: str | None = None,
    ) -> PaymentRequirements:
        """x402 requirements priced at the current discounted cost."""
        address, service_type, quantity = validate_request(address, service, quantity)
        _, breakdown = await self._price(address, service_type, quantity)
        return self._x402.create_requirements(
            resource_url,
            breakdown.discounted_cost,
            self._config.x402_pay_to,
            description or f"{service_type.value} x{quantity}",
        )

    async def process_x402_payment(
        self,
        address: str,
        service: ServiceType | str,
        quantity: int,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
    ) -> PaymentResult:
        """Verify and settle a signed payment, then record usage."""
        address, service_type, quantity = validate_request(address, service, quantity)
        tier, breakdown = await self._price(address, service_type, quantity)

        def failure(error: str) -> PaymentResult:
            return PaymentResult(
                success=False,
                method=PaymentMethod.X402,
                base_cost=breakdown.base_cost,
                cost=breakdown.discounted_cost,
                discount_applied=breakdown.discount_percent,
                tier=tier,
                error=error,
            )

        try:
            required = requirements.amount_units
        except ValueError:
            return failure("Malformed payment requirements")
        if required < breakdown.discounted_cost:
            return failure(
                f"Payment requirements ({requirements.max_amount_required}) are below "
                f"the current price ({breakdown.discounted_cost})"
            )
        if requirements.pay_to.lower() != self._expected_pay_to().lower():
            return failure("Payment requirements name an unexpected recipient")
        if (
            requirements.asset.lower() != self._x402.usdc_address.lower()
            or requirements.network != self._x402.caip2_network
        ):
            return failure("Payment requirements name an unexpected asset or network")

        verification = await self._x402.verify_payment(payload, requirements)
        if not verification.success:
            return failure(verification.error or "Payment verification failed")

        try:
            await self._usage.record_usage(address, service_type.value, quantity)
        except StoreUnavailableError as e:
            logger.error(
                "Settled x402 payment %s but could not record usage for %s: %s",
                verification.tx_hash, address, e,
            )

        result = PaymentResult(
            success=True,
            method=PaymentMethod.X402,
            base_cost=breakdown.base_cost,
            cost=breakdown.discounted_cost,
            discount_applied=breakdown.discount_percent,
            tx_hash=verification.tx_hash,
            tier=tier,
        )
        await self._emit(
            PaymentRequest(address=address, service=service_type, quantity=quantity),
            result,
        )
        return result

    # -- credits --------------------------------------------------------------

    async def deposit_credits(self, address: str, amount: int) -> int:
        """Add ``amount`` units to ``address`` and return the new balance.

        Raises PaymentValidationError on bad input and StoreUnavailableError
        when the ledger cannot be written.
        """
        address = validate_address(address)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise PaymentValidationError("amount", "must be a positive integer")
        await self._credits.add_credits(address, amount)
        account = await self._credits.get_account(address)
        logger.info("Deposited %d credits for %s.", amount, address)
        return account.balance if account is not None else amount

    async def get_credit_balance(self, address: str) -> int:
        """Spendable balance; 0 for unknown accounts or an unreadable store."""
        address = validate_address(address)
        balance = await self._available_credits(address)
        return balance or 0

    async def close(self) -> None:
        await self._x402.close()
        await self._tiers.close()


def create_payment_router(
    config: PaymentRouterConfig | None = None,
    *,
    credit_store: CreditAccountStore | None = None,
    usage_tracker: UsageTracker | None = None,
    balance_reader: BalanceReader | None = None,
    x402_client: X402Client | None = None,
    on_payment: PaymentHook | None = None,
) -> PaymentRouter:
    """Wire a router from config. Unspecified collaborators are built here.

    With ``redis_url``/``redis_token`` set, credits and usage live in
    Upstash Redis (usage behind an in-process failover); otherwise both
    are in-memory. Tier lookups read ``token_address`` over ``rpc_urls``;
    without a token address every caller resolves to tier ``none``.
    """
    config = config or PaymentRouterConfig()
    durable = bool(config.redis_url and config.redis_token)

    if credit_store is None:
        if durable:
            credit_store = RedisCreditStore.from_url(
                config.redis_url, config.redis_token, timeout_secs=config.store_timeout_secs
            )
        else:
            credit_store = InMemoryCreditStore()

    if usage_tracker is None:
        if durable:
            usage_tracker = FailoverUsageTracker(
                RedisUsageTracker.from_url(
                    config.redis_url, config.redis_token, timeout_secs=config.store_timeout_secs
                )
            )
            logger.info("Usage tracking on Redis with in-process failover.")
        else:
            usage_tracker = InMemoryUsageTracker()

    if balance_reader is None and config.token_address:
        balance_reader = RpcBalanceReader(
            config.rpc_urls,
            config.token_address,
            max_retries=config.rpc_max_retries,
            timeout_secs=config.rpc_timeout_secs,
        )

    return PaymentRouter(
        config,
        tier_resolver=TierResolver(balance_reader),
        credit_store=credit_store,
        usage_tracker=usage_tracker,
        x402_client=x402_client or X402Client.from_config(config),
        on_payment=on_payment,
    )
