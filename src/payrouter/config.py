"""Router configuration as a frozen dataclass.

The host application constructs this from its own settings (env vars,
pydantic-settings, etc.) and passes it to ``create_payment_router``.
"""

from dataclasses import dataclass, field

from payrouter.constants import (
    DEFAULT_PAY_TO,
    DEFAULT_WHITELIST,
    FACILITATOR_URL,
    IDEMPOTENCY_TTL_SECS,
    PaymentPreference,
)


@dataclass(frozen=True)
class PaymentRouterConfig:
    preference: PaymentPreference = PaymentPreference.CREDITS_FIRST
    x402_pay_to: str = ""
    x402_default_pay_to: str = DEFAULT_PAY_TO
    x402_network: str = "base"  # base | base-sepolia
    facilitator_url: str = FACILITATOR_URL
    facilitator_api_key_id: str | None = None
    facilitator_api_key_secret: str | None = None
    facilitator_timeout_secs: float = 15.0
    max_timeout_seconds: int = 60
    token_address: str | None = None
    rpc_urls: tuple[str, ...] = (
        "https://mainnet.base.org",
        "https://base.llamarpc.com",
        "https://base-rpc.publicnode.com",
    )
    rpc_max_retries: int = 2
    rpc_timeout_secs: float = 10.0
    redis_url: str | None = None
    redis_token: str | None = None
    store_timeout_secs: float = 2.0
    whitelisted_addresses: frozenset[str] = field(default=DEFAULT_WHITELIST)
    idempotency_ttl_secs: int = IDEMPOTENCY_TTL_SECS
