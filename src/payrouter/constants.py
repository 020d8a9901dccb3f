"""Constants and fixed policy tables for payment routing."""

from enum import Enum


USDC_DECIMALS = 6
TOKEN_DECIMALS = 18

USDC_ADDRESSES: dict[str, str] = {
    "base": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    "base-sepolia": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
}

# CAIP-2 network identifiers
CAIP2_NETWORKS: dict[str, str] = {
    "base": "eip155:8453",
    "base-sepolia": "eip155:84532",
}

CHAIN_IDS: dict[str, int] = {
    "base": 8453,
    "base-sepolia": 84532,
}

EIP712_NAME = "USD Coin"
EIP712_VERSION = "2"

X402_VERSION = 1
FACILITATOR_URL = "https://x402.org/facilitator"

PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_REQUIRED_HEADER = "X-PAYMENT-REQUIRED"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
IDEMPOTENCY_HEADER = "Idempotency-Key"
IDEMPOTENT_REPLAY_HEADER = "Idempotent-Replayed"

# Last-resort x402 recipient when the configured payTo is unusable
DEFAULT_PAY_TO = "0xa6a8736f18f383f1cc2d938576933e5ea7df01a1"

USAGE_TTL_SECS = 25 * 60 * 60  # a day plus an hour of clock-skew slack
IDEMPOTENCY_TTL_SECS = 24 * 60 * 60

DEFAULT_WHITELIST: frozenset[str] = frozenset({
    "0xbe857db4b4bd71a8bf8f50f950eecd7dde68b85c",  # platform owner
    "0x1234567890123456789012345678901234567890",  # test address
    "0x55a5705453ee82c742274154136fce8149597058",
})


class ServiceType(str, Enum):
    """Billable operations."""

    VOICE_GENERATION = "voice_generation"
    VOICE_TRANSFORMATION = "voice_transformation"
    DUBBING = "dubbing"
    TRANSCRIPTION = "transcription"
    STORAGE = "storage"
    VIDEO_EXPORT = "video_export"
    NFT_MINT = "nft_mint"
    WHITE_LABEL_EXPORT = "white_label_export"


class CostUnit(str, Enum):
    FIXED = "fixed"
    PER_CHARACTER = "per_character"
    PER_SECOND = "per_second"
    PER_REQUEST = "per_request"


class TokenTier(str, Enum):
    """Holding tiers, lowest to highest."""

    NONE = "none"
    BASIC = "basic"
    PRO = "pro"
    PREMIUM = "premium"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)


_TIER_ORDER = [TokenTier.NONE, TokenTier.BASIC, TokenTier.PRO, TokenTier.PREMIUM]


class PaymentMethod(str, Enum):
    CREDITS = "credits"
    TIER = "tier"
    X402 = "x402"
    NONE = "none"


class PaymentPreference(str, Enum):
    CREDITS_FIRST = "credits_first"
    TIER_IF_AVAILABLE = "tier_if_available"
    X402_ONLY = "x402_only"


# Minimum token holding (smallest token unit) per tier
TIER_THRESHOLDS: dict[TokenTier, int] = {
    TokenTier.NONE: 0,
    TokenTier.BASIC: 10_000 * 10**TOKEN_DECIMALS,
    TokenTier.PRO: 50_000 * 10**TOKEN_DECIMALS,
    TokenTier.PREMIUM: 250_000 * 10**TOKEN_DECIMALS,
}

# Integer percent off the computed service cost
TIER_DISCOUNTS: dict[TokenTier, int] = {
    TokenTier.NONE: 0,
    TokenTier.BASIC: 10,
    TokenTier.PRO: 25,
    TokenTier.PREMIUM: 50,
}

TIER_SERVICE_COVERAGE: dict[TokenTier, frozenset[ServiceType]] = {
    TokenTier.NONE: frozenset(),
    TokenTier.BASIC: frozenset({
        ServiceType.VOICE_GENERATION,
        ServiceType.VOICE_TRANSFORMATION,
        ServiceType.TRANSCRIPTION,
    }),
    TokenTier.PRO: frozenset({
        ServiceType.VOICE_GENERATION,
        ServiceType.VOICE_TRANSFORMATION,
        ServiceType.DUBBING,
        ServiceType.TRANSCRIPTION,
        ServiceType.STORAGE,
    }),
    TokenTier.PREMIUM: frozenset({
        ServiceType.VOICE_GENERATION,
        ServiceType.VOICE_TRANSFORMATION,
        ServiceType.DUBBING,
        ServiceType.TRANSCRIPTION,
        ServiceType.STORAGE,
        ServiceType.VIDEO_EXPORT,
        ServiceType.WHITE_LABEL_EXPORT,
    }),
}

# Daily free quota per tier, in each service's own unit
# (characters, seconds, bytes, or requests). Resets at UTC midnight.
TIER_DAILY_LIMITS: dict[TokenTier, dict[ServiceType, int]] = {
    TokenTier.NONE: {service: 0 for service in ServiceType},
    TokenTier.BASIC: {
        ServiceType.VOICE_GENERATION: 10_000,
        ServiceType.VOICE_TRANSFORMATION: 300,
        ServiceType.DUBBING: 0,
        ServiceType.TRANSCRIPTION: 600,
        ServiceType.STORAGE: 100_000_000,
        ServiceType.VIDEO_EXPORT: 0,
        ServiceType.NFT_MINT: 0,
        ServiceType.WHITE_LABEL_EXPORT: 0,
    },
    TokenTier.PRO: {
        ServiceType.VOICE_GENERATION: 100_000,
        ServiceType.VOICE_TRANSFORMATION: 3_600,
        ServiceType.DUBBING: 600,
        ServiceType.TRANSCRIPTION: 3_600,
        ServiceType.STORAGE: 1_000_000_000,
        ServiceType.VIDEO_EXPORT: 0,
        ServiceType.NFT_MINT: 0,
        ServiceType.WHITE_LABEL_EXPORT: 0,
    },
    TokenTier.PREMIUM: {
        ServiceType.VOICE_GENERATION: 1_000_000,
        ServiceType.VOICE_TRANSFORMATION: 36_000,
        ServiceType.DUBBING: 3_600,
        ServiceType.TRANSCRIPTION: 36_000,
        ServiceType.STORAGE: 10_000_000_000,
        ServiceType.VIDEO_EXPORT: 100,
        ServiceType.NFT_MINT: 100,
        ServiceType.WHITE_LABEL_EXPORT: 100,
    },
}
