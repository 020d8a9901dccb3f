"""x402 micropayment client: requirements, verification, settlement.

The server describes what it wants paid (``PaymentRequirements``), the
payer signs an EIP-3009 ``TransferWithAuthorization`` in their own
wallet, and the signed ``PaymentPayload`` is checked locally and then
verified and settled by an external facilitator. This module never
holds or uses private keys.

Wire format: x402 v1 JSON with CAIP-2 network ids, POSTed to
``{facilitator_url}/verify`` and ``{facilitator_url}/settle``.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from payrouter.config import PaymentRouterConfig
from payrouter.constants import (
    CAIP2_NETWORKS,
    CHAIN_IDS,
    DEFAULT_PAY_TO,
    EIP712_NAME,
    EIP712_VERSION,
    FACILITATOR_URL,
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_RESPONSE_HEADER,
    USDC_ADDRESSES,
    X402_VERSION,
)
from payrouter.facilitator_auth import FacilitatorAuthError, build_facilitator_jwt
from payrouter.money import redact, to_units

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class FacilitatorError(Exception):
    """Base exception for facilitator calls."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FacilitatorConnectionError(FacilitatorError):
    """Network/DNS failure (retryable)."""


class FacilitatorTimeoutError(FacilitatorError):
    """Request timeout (retryable)."""


class FacilitatorResponseError(FacilitatorError):
    """Non-2xx status or a body that is not a JSON object."""


# ---------------------------------------------------------------------------
# Protocol structures
# ---------------------------------------------------------------------------


def normalize_address(value: str | None) -> str | None:
    """Trim and checksum an address. Returns None when it is not one."""
    if not value:
        return None
    stripped = value.strip()
    if not _ADDRESS_RE.match(stripped):
        return None
    return Web3.to_checksum_address(stripped.lower())


@dataclass
class PaymentRequirements:
    """What the server accepts as payment for one resource."""

    scheme: str
    network: str
    max_amount_required: str  # USDC units as a decimal string
    resource: str
    pay_to: str
    asset: str
    max_timeout_seconds: int
    description: str = ""
    mime_type: str = "application/json"
    extra: dict[str, str] = field(
        default_factory=lambda: {"name": EIP712_NAME, "version": EIP712_VERSION}
    )
    # Set when the requested payTo was unusable and the default recipient
    # was substituted. Not part of the wire format.
    used_default_pay_to: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": self.max_amount_required,
            "resource": self.resource,
            "description": self.description,
            "mimeType": self.mime_type,
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "asset": self.asset,
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PaymentRequirements:
        return cls(
            scheme=str(data.get("scheme", "exact")),
            network=str(data.get("network", "")),
            max_amount_required=str(data.get("maxAmountRequired", "0")),
            resource=str(data.get("resource", "")),
            pay_to=str(data.get("payTo", "")),
            asset=str(data.get("asset", "")),
            max_timeout_seconds=int(data.get("maxTimeoutSeconds", 60)),
            description=str(data.get("description", "")),
            mime_type=str(data.get("mimeType", "application/json")),
            extra=dict(data.get("extra") or {"name": EIP712_NAME, "version": EIP712_VERSION}),
        )

    @property
    def amount_units(self) -> int:
        return int(self.max_amount_required)


@dataclass
class PaymentPayload:
    """A payer-signed EIP-3009 transfer authorization."""

    signature: str
    from_address: str
    to: str
    value: str
    valid_after: int
    valid_before: int
    nonce: str

    def authorization(self) -> dict[str, str]:
        return {
            "from": self.from_address,
            "to": self.to,
            "value": self.value,
            "validAfter": str(self.valid_after),
            "validBefore": str(self.valid_before),
            "nonce": self.nonce,
        }

    def to_dict(self) -> dict[str, str]:
        return {"signature": self.signature, **self.authorization()}

    def to_wire(self, requirements: PaymentRequirements) -> dict[str, Any]:
        """x402 v1 ``paymentPayload`` object for the facilitator."""
        return {
            "x402Version": X402_VERSION,
            "scheme": requirements.scheme,
            "network": requirements.network,
            "payload": {
                "signature": self.signature,
                "authorization": self.authorization(),
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PaymentPayload:
        """Accept the flat form or the x402 v1 ``payload.authorization`` form.

        Raises KeyError/ValueError/TypeError on missing or malformed fields.
        """
        if isinstance(data.get("payload"), dict):
            data = data["payload"]
        auth = data["authorization"] if isinstance(data.get("authorization"), dict) else data
        return cls(
            signature=str(data["signature"]),
            from_address=str(auth["from"]),
            to=str(auth["to"]),
            value=str(int(auth["value"])),
            valid_after=int(auth.get("validAfter", 0)),
            valid_before=int(auth["validBefore"]),
            nonce=str(auth["nonce"]),
        )


@dataclass
class VerificationResult:
    success: bool
    tx_hash: str | None = None
    error: str | None = None
    payer: str | None = None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class X402Client:
    """Builds requirements and verifies payments against a facilitator.

    Everything comes in through the constructor or ``from_config``. When
    ``api_key_id``/``api_key_secret`` are given, every facilitator request
    carries a fresh Ed25519 bearer JWT.
    """

    def __init__(
        self,
        facilitator_url: str = FACILITATOR_URL,
        network: str = "base",
        *,
        max_timeout_seconds: int = 60,
        default_pay_to: str = DEFAULT_PAY_TO,
        api_key_id: str | None = None,
        api_key_secret: str | None = None,
        timeout_secs: float = 15.0,
    ) -> None:
        if network not in CAIP2_NETWORKS:
            raise ValueError(f"Unsupported network {network!r}; expected one of {sorted(CAIP2_NETWORKS)}")
        default = normalize_address(default_pay_to)
        if default is None:
            raise ValueError(f"Default payTo {default_pay_to!r} is not a valid address.")
        self._facilitator_url = facilitator_url.rstrip("/")
        self._network = network
        self._max_timeout_seconds = max_timeout_seconds
        self._default_pay_to = default
        self._api_key_id = api_key_id
        self._api_key_secret = api_key_secret
        self._client = httpx.AsyncClient(
            base_url=self._facilitator_url,
            timeout=httpx.Timeout(timeout_secs, connect=5.0),
        )

    @classmethod
    def from_config(cls, config: PaymentRouterConfig) -> X402Client:
        return cls(
            config.facilitator_url,
            config.x402_network,
            max_timeout_seconds=config.max_timeout_seconds,
            default_pay_to=config.x402_default_pay_to,
            api_key_id=config.facilitator_api_key_id,
            api_key_secret=config.facilitator_api_key_secret,
            timeout_secs=config.facilitator_timeout_secs,
        )

    # -- network properties ---------------------------------------------------

    @property
    def network(self) -> str:
        return self._network

    @property
    def caip2_network(self) -> str:
        return CAIP2_NETWORKS[self._network]

    @property
    def chain_id(self) -> int:
        return CHAIN_IDS[self._network]

    @property
    def usdc_address(self) -> str:
        return USDC_ADDRESSES[self._network]

    @property
    def facilitator_url(self) -> str:
        return self._facilitator_url

    @property
    def auth_configured(self) -> bool:
        return bool(self._api_key_id and self._api_key_secret)

    @property
    def default_pay_to(self) -> str:
        return self._default_pay_to

    # -- requirements ---------------------------------------------------------

    def create_requirements(
        self,
        resource_url: str,
        amount: int | str,
        pay_to: str,
        description: str = "",
    ) -> PaymentRequirements:
        """Describe an ``exact`` USDC payment of ``amount`` for ``resource_url``.

        ``amount`` may be units (int or digit string) or a price like
        ``"$1.50"``. An empty or malformed ``pay_to`` is replaced by the
        default recipient and flagged via ``used_default_pay_to``.
        """
        units = to_units(amount)

        recipient = normalize_address(pay_to)
        used_default = recipient is None
        if recipient is None:
            if not pay_to or not pay_to.strip():
                logger.warning(
                    "x402 payTo is empty; using default recipient %s.", self._default_pay_to
                )
            else:
                logger.error(
                    "x402 payTo %r is not a valid address; using default recipient %s.",
                    pay_to, self._default_pay_to,
                )
            recipient = self._default_pay_to

        return PaymentRequirements(
            scheme="exact",
            network=self.caip2_network,
            max_amount_required=str(units),
            resource=resource_url,
            pay_to=recipient,
            asset=self.usdc_address,
            max_timeout_seconds=self._max_timeout_seconds,
            description=description,
            used_default_pay_to=used_default,
        )

    # -- signing data (payer side) --------------------------------------------

    def create_typed_data(
        self,
        from_address: str,
        to: str,
        value: int | str,
        valid_after: int,
        valid_before: int,
        nonce: str,
    ) -> dict[str, Any]:
        """EIP-712 ``TransferWithAuthorization`` data for the payer's wallet."""
        return {
            "types": {
                "EIP712Domain": [
                    {"name": "name", "type": "string"},
                    {"name": "version", "type": "string"},
                    {"name": "chainId", "type": "uint256"},
                    {"name": "verifyingContract", "type": "address"},
                ],
                "TransferWithAuthorization": [
                    {"name": "from", "type": "address"},
                    {"name": "to", "type": "address"},
                    {"name": "value", "type": "uint256"},
                    {"name": "validAfter", "type": "uint256"},
                    {"name": "validBefore", "type": "uint256"},
                    {"name": "nonce", "type": "bytes32"},
                ],
            },
            "primaryType": "TransferWithAuthorization",
            "domain": {
                "name": EIP712_NAME,
                "version": EIP712_VERSION,
                "chainId": self.chain_id,
                "verifyingContract": self.usdc_address,
            },
            "message": {
                "from": Web3.to_checksum_address(from_address),
                "to": Web3.to_checksum_address(to),
                "value": int(value),
                "validAfter": int(valid_after),
                "validBefore": int(valid_before),
                "nonce": nonce if nonce.startswith("0x") else f"0x{nonce}",
            },
        }

    @staticmethod
    def generate_nonce() -> str:
        """32 random bytes, ``0x``-prefixed hex. Use once per payment attempt."""
        return "0x" + secrets.token_hex(32)

    # -- verification -----------------------------------------------------------

    def check_payload(
        self, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> str | None:
        """Cheap local checks before the facilitator round trip.

        Returns an error message, or None if the payload looks acceptable.
        """
        if payload.to.lower() != requirements.pay_to.lower():
            return "Recipient mismatch"
        try:
            value = int(payload.value)
        except ValueError:
            return f"Invalid payment value: {payload.value!r}"
        try:
            required = requirements.amount_units
        except ValueError:
            return "Malformed payment requirements"
        if value < required:
            return (
                f"Insufficient amount: got {value}, "
                f"expected {requirements.max_amount_required}"
            )
        now = int(time.time())
        if payload.valid_before <= now:
            return "Payment authorization expired"
        if payload.valid_after > now:
            return "Payment authorization not yet valid"

        try:
            typed = self.create_typed_data(
                payload.from_address,
                payload.to,
                value,
                payload.valid_after,
                payload.valid_before,
                payload.nonce,
            )
            signable = encode_typed_data(full_message=typed)
            signer = Account.recover_message(signable, signature=payload.signature)
        except Exception as e:
            return f"Invalid signature: {e}"
        if signer.lower() != payload.from_address.lower():
            return "Invalid signature: signer does not match payer"
        return None

    def _auth_headers(self, endpoint: str) -> dict[str, str]:
        if not self.auth_configured:
            return {}
        token = build_facilitator_jwt(
            self._api_key_id or "",
            self._api_key_secret or "",
            "POST",
            self._facilitator_url + endpoint,
        )
        return {"Authorization": f"Bearer {token}"}

    async def _post(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST to the facilitator and map errors to FacilitatorError."""
        headers = self._auth_headers(endpoint)
        try:
            response = await self._client.request("POST", endpoint, json=body, headers=headers)
        except httpx.ConnectError as exc:
            raise FacilitatorConnectionError(str(exc)) from exc
        except httpx.TimeoutException as exc:
            raise FacilitatorTimeoutError(str(exc)) from exc
        except httpx.HTTPError as exc:
            raise FacilitatorConnectionError(str(exc)) from exc

        if response.status_code >= 400:
            raise FacilitatorResponseError(response.text, status_code=response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise FacilitatorResponseError(
                f"Malformed facilitator response: {exc}", status_code=response.status_code
            ) from exc
        if not isinstance(data, dict):
            raise FacilitatorResponseError(
                "Malformed facilitator response: expected a JSON object",
                status_code=response.status_code,
            )
        return data

    @staticmethod
    def _request_body(
        payload: PaymentPayload, requirements: PaymentRequirements
    ) -> dict[str, Any]:
        return {
            "x402Version": X402_VERSION,
            "paymentPayload": payload.to_wire(requirements),
            "paymentRequirements": requirements.to_dict(),
        }

    async def validate_payment(
        self, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> VerificationResult:
        """Ask the facilitator whether the payment is valid, without settling."""
        try:
            data = await self._post("/verify", self._request_body(payload, requirements))
        except (FacilitatorError, FacilitatorAuthError) as e:
            return VerificationResult(success=False, error=f"Facilitator error: {e}")
        valid = bool(data.get("isValid", data.get("success", False)))
        if not valid:
            reason = data.get("invalidReason") or data.get("error") or "Payment invalid"
            return VerificationResult(success=False, error=str(reason), payer=data.get("payer"))
        return VerificationResult(success=True, payer=data.get("payer"))

    async def verify_payment(
        self, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> VerificationResult:
        """Check, verify and settle a signed payment. Never raises.

        The nonce is passed through untouched; replay protection is the
        facilitator's (and the token contract's) responsibility.
        """
        error = self.check_payload(payload, requirements)
        if error:
            logger.info(
                "x402 payload from %s rejected locally: %s (sig %s)",
                payload.from_address, error, redact(payload.signature),
            )
            return VerificationResult(success=False, error=error)

        verified = await self.validate_payment(payload, requirements)
        if not verified.success:
            return verified

        try:
            data = await self._post("/settle", self._request_body(payload, requirements))
        except (FacilitatorError, FacilitatorAuthError) as e:
            return VerificationResult(success=False, error=f"Facilitator error: {e}")

        if not data.get("success", False):
            reason = data.get("errorReason") or data.get("error") or "Settlement failed"
            return VerificationResult(success=False, error=str(reason))

        tx_hash = data.get("transaction") or data.get("txHash")
        logger.info(
            "x402 payment settled: %s units from %s (nonce %s, tx %s)",
            payload.value, payload.from_address, redact(payload.nonce), tx_hash,
        )
        return VerificationResult(
            success=True,
            tx_hash=tx_hash,
            payer=data.get("payer") or payload.from_address,
        )

    # -- lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> X402Client:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()


# ---------------------------------------------------------------------------
# HTTP surface helpers
# ---------------------------------------------------------------------------


def payment_required_response(
    requirements: PaymentRequirements, error: str = "Payment required"
) -> dict[str, Any]:
    """A 402 response carrying the requirements in body and header."""
    req = requirements.to_dict()
    return {
        "status_code": 402,
        "headers": {
            "Content-Type": "application/json",
            PAYMENT_REQUIRED_HEADER: json.dumps(req),
        },
        "body": {
            "success": False,
            "error": error,
            "x402Version": X402_VERSION,
            "requirements": req,
        },
    }


def parse_payment_header(header: str | None) -> PaymentPayload | None:
    """Decode an ``X-PAYMENT`` header (JSON or base64 JSON). None if unusable."""
    if not header:
        return None
    data: Any = None
    try:
        data = json.loads(header)
    except ValueError:
        try:
            data = json.loads(base64.b64decode(header, validate=True).decode("utf-8"))
        except (binascii.Error, ValueError):
            return None
    if not isinstance(data, dict):
        return None
    try:
        return PaymentPayload.from_dict(data)
    except (KeyError, TypeError, ValueError):
        return None


def payment_success_headers(tx_hash: str | None) -> dict[str, str]:
    return {PAYMENT_RESPONSE_HEADER: json.dumps({"txHash": tx_hash})}
