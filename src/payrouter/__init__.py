"""payrouter — one payment decision per metered call.

Routes each call to prepaid credits, a token-tier free quota, or an x402
USDC micropayment.
"""

__version__ = "0.1.0"

from payrouter.backends import BalanceReader, CreditAccountStore, StoreUnavailableError, UsageTracker
from payrouter.config import PaymentRouterConfig
from payrouter.constants import PaymentMethod, PaymentPreference, ServiceType, TokenTier
from payrouter.costs import CostBreakdown, calculate_cost, get_service_cost
from payrouter.credit_store import CreditAccount, InMemoryCreditStore, RedisCreditStore
from payrouter.idempotency import IdempotencyStore
from payrouter.models import PaymentQuote, PaymentRequest, PaymentResult, PaymentValidationError
from payrouter.money import format_units, parse_units, price_string_to_units
from payrouter.router import PaymentRouter, create_payment_router, select_method
from payrouter.rpc_client import RpcBalanceReader
from payrouter.tiers import TierPolicy, TierResolver, tier_for_balance
from payrouter.usage import FailoverUsageTracker, InMemoryUsageTracker, RedisUsageTracker
from payrouter.x402_client import PaymentPayload, PaymentRequirements, X402Client

__all__ = [
    "BalanceReader",
    "CreditAccountStore",
    "StoreUnavailableError",
    "UsageTracker",
    "PaymentRouterConfig",
    "PaymentMethod",
    "PaymentPreference",
    "ServiceType",
    "TokenTier",
    "CostBreakdown",
    "calculate_cost",
    "get_service_cost",
    "CreditAccount",
    "InMemoryCreditStore",
    "RedisCreditStore",
    "IdempotencyStore",
    "PaymentQuote",
    "PaymentRequest",
    "PaymentResult",
    "PaymentValidationError",
    "format_units",
    "parse_units",
    "price_string_to_units",
    "PaymentRouter",
    "create_payment_router",
    "select_method",
    "RpcBalanceReader",
    "TierPolicy",
    "TierResolver",
    "tier_for_balance",
    "FailoverUsageTracker",
    "InMemoryUsageTracker",
    "RedisUsageTracker",
    "PaymentPayload",
    "PaymentRequirements",
    "X402Client",
]
