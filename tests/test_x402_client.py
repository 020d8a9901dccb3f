"""Tests for the x402 client: requirements, signing data, verification, headers."""

import base64
import json
import time
from unittest.mock import AsyncMock

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat
from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from payrouter.config import PaymentRouterConfig
from payrouter.constants import (
    DEFAULT_PAY_TO,
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_RESPONSE_HEADER,
    USDC_ADDRESSES,
)
from payrouter.x402_client import (
    PaymentPayload,
    PaymentRequirements,
    X402Client,
    normalize_address,
    parse_payment_header,
    payment_required_response,
    payment_success_headers,
)

# Well-known Hardhat development account #0
PAYER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
PAYER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
PAY_TO = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
RESOURCE = "https://api.example.com/v1/voice"


def _mock_response(status: int = 200, json_data: object = None) -> httpx.Response:
    return httpx.Response(
        status_code=status,
        json=json_data if json_data is not None else {},
        request=httpx.Request("POST", "https://x402.example.com"),
    )


def _client(**kwargs) -> X402Client:
    return X402Client("https://x402.example.com", "base", **kwargs)


def _signed_payload(
    client: X402Client,
    value: int = 1000,
    to: str = PAY_TO,
    valid_before: int | None = None,
    key: str = PAYER_KEY,
    from_address: str = PAYER,
) -> PaymentPayload:
    valid_before = valid_before or int(time.time()) + 600
    nonce = client.generate_nonce()
    typed = client.create_typed_data(from_address, to, value, 0, valid_before, nonce)
    signed = Account.sign_message(encode_typed_data(full_message=typed), private_key=key)
    return PaymentPayload(
        signature="0x" + bytes(signed.signature).hex(),
        from_address=from_address,
        to=to,
        value=str(value),
        valid_after=0,
        valid_before=valid_before,
        nonce=nonce,
    )


# ---------------------------------------------------------------------------
# Init
# ---------------------------------------------------------------------------


class TestX402ClientInit:
    def test_base_network(self) -> None:
        client = _client()
        assert client.caip2_network == "eip155:8453"
        assert client.chain_id == 8453
        assert client.usdc_address == USDC_ADDRESSES["base"]

    def test_sepolia(self) -> None:
        client = X402Client("https://x402.example.com", "base-sepolia")
        assert client.caip2_network == "eip155:84532"
        assert client.chain_id == 84532

    def test_unknown_network(self) -> None:
        with pytest.raises(ValueError, match="Unsupported network"):
            X402Client("https://x402.example.com", "mainnet")

    def test_bad_default_pay_to(self) -> None:
        with pytest.raises(ValueError):
            _client(default_pay_to="nope")

    def test_base_url_trailing_slash_stripped(self) -> None:
        client = X402Client("https://x402.example.com/facilitator/")
        assert client.facilitator_url == "https://x402.example.com/facilitator"
        assert str(client._client.base_url).rstrip("/") == "https://x402.example.com/facilitator"

    def test_from_config(self) -> None:
        config = PaymentRouterConfig(
            x402_network="base-sepolia",
            facilitator_url="https://f.example.com",
            max_timeout_seconds=30,
        )
        client = X402Client.from_config(config)
        assert client.network == "base-sepolia"
        assert client.facilitator_url == "https://f.example.com"
        assert not client.auth_configured
        assert client.default_pay_to == Web3.to_checksum_address(DEFAULT_PAY_TO)


# ---------------------------------------------------------------------------
# Requirements
# ---------------------------------------------------------------------------


class TestCreateRequirements:
    def test_price_string(self) -> None:
        req = _client().create_requirements(RESOURCE, "$1.50", PAY_TO)
        assert req.max_amount_required == "1500000"

    def test_integer_units(self) -> None:
        req = _client().create_requirements(RESOURCE, 124, PAY_TO)
        assert req.max_amount_required == "124"

    def test_digit_string_units(self) -> None:
        req = _client().create_requirements(RESOURCE, "124", PAY_TO)
        assert req.max_amount_required == "124"

    def test_large_amount_exact(self) -> None:
        req = _client().create_requirements(RESOURCE, "$12345678901.123456", PAY_TO)
        assert req.max_amount_required == "12345678901123456"

    def test_fields(self) -> None:
        req = _client(max_timeout_seconds=45).create_requirements(RESOURCE, 10, PAY_TO, "voice")
        assert req.scheme == "exact"
        assert req.network == "eip155:8453"
        assert req.resource == RESOURCE
        assert req.asset == USDC_ADDRESSES["base"]
        assert req.max_timeout_seconds == 45
        assert req.description == "voice"
        assert req.extra == {"name": "USD Coin", "version": "2"}
        assert req.used_default_pay_to is False

    def test_lowercase_pay_to_checksummed(self) -> None:
        req = _client().create_requirements(RESOURCE, 10, PAY_TO.lower())
        assert req.pay_to == PAY_TO

    def test_whitespace_trimmed(self) -> None:
        req = _client().create_requirements(RESOURCE, 10, f"  {PAY_TO.lower()}\n")
        assert req.pay_to == PAY_TO

    def test_empty_pay_to_falls_back(self, caplog) -> None:
        with caplog.at_level("WARNING", logger="payrouter.x402_client"):
            req = _client().create_requirements(RESOURCE, 10, "")
        assert req.pay_to == Web3.to_checksum_address(DEFAULT_PAY_TO)
        assert req.used_default_pay_to is True
        assert any(r.levelname == "WARNING" for r in caplog.records)

    def test_invalid_pay_to_falls_back(self, caplog) -> None:
        with caplog.at_level("ERROR", logger="payrouter.x402_client"):
            req = _client().create_requirements(RESOURCE, 10, "0xnot-an-address")
        assert req.pay_to == Web3.to_checksum_address(DEFAULT_PAY_TO)
        assert req.used_default_pay_to is True
        assert any(r.levelname == "ERROR" for r in caplog.records)

    def test_custom_default(self) -> None:
        req = _client(default_pay_to=PAYER.lower()).create_requirements(RESOURCE, 10, "")
        assert req.pay_to == PAYER

    def test_wire_format_omits_flag(self) -> None:
        data = _client().create_requirements(RESOURCE, 10, "").to_dict()
        assert "used_default_pay_to" not in data
        assert data["maxAmountRequired"] == "10"
        assert data["payTo"] == Web3.to_checksum_address(DEFAULT_PAY_TO)

    def test_dict_round_trip(self) -> None:
        req = _client().create_requirements(RESOURCE, "$0.25", PAY_TO, "desc")
        assert PaymentRequirements.from_dict(req.to_dict()) == req

    def test_rejects_bad_amount(self) -> None:
        with pytest.raises(ValueError):
            _client().create_requirements(RESOURCE, "free", PAY_TO)


class TestNormalizeAddress:
    def test_none(self) -> None:
        assert normalize_address(None) is None

    def test_short(self) -> None:
        assert normalize_address("0x1234") is None

    def test_checksum(self) -> None:
        assert normalize_address(PAYER.lower()) == PAYER


# ---------------------------------------------------------------------------
# Signing data
# ---------------------------------------------------------------------------


class TestTypedData:
    def test_domain(self) -> None:
        typed = _client().create_typed_data(PAYER, PAY_TO, 1000, 0, 2_000_000_000, "0x" + "ab" * 32)
        assert typed["primaryType"] == "TransferWithAuthorization"
        assert typed["domain"] == {
            "name": "USD Coin",
            "version": "2",
            "chainId": 8453,
            "verifyingContract": USDC_ADDRESSES["base"],
        }

    def test_message_types(self) -> None:
        typed = _client().create_typed_data(PAYER.lower(), PAY_TO, "1000", 0, 2_000_000_000, "ab" * 32)
        message = typed["message"]
        assert message["from"] == PAYER
        assert message["value"] == 1000
        assert message["validBefore"] == 2_000_000_000
        assert message["nonce"] == "0x" + "ab" * 32

    def test_nonce_format(self) -> None:
        nonce = X402Client.generate_nonce()
        assert nonce.startswith("0x")
        assert len(nonce) == 66
        int(nonce, 16)

    def test_nonce_unique(self) -> None:
        assert X402Client.generate_nonce() != X402Client.generate_nonce()


# ---------------------------------------------------------------------------
# Local payload checks
# ---------------------------------------------------------------------------


class TestCheckPayload:
    def test_valid(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        assert client.check_payload(_signed_payload(client), req) is None

    def test_overpayment_accepted(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        assert client.check_payload(_signed_payload(client, value=2000), req) is None

    def test_recipient_mismatch(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        payload = _signed_payload(client, to=PAYER)
        assert client.check_payload(payload, req) == "Recipient mismatch"

    def test_insufficient_amount(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        error = client.check_payload(_signed_payload(client, value=999), req)
        assert error.startswith("Insufficient amount")

    def test_malformed_required_amount(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        req.max_amount_required = "1.5"
        assert client.check_payload(_signed_payload(client), req) == "Malformed payment requirements"

    def test_expired(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        payload = _signed_payload(client, valid_before=int(time.time()) - 1)
        assert client.check_payload(payload, req) == "Payment authorization expired"

    def test_wrong_signer(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        other_key = Account.create().key
        payload = _signed_payload(client, key=other_key)
        assert client.check_payload(payload, req) == "Invalid signature: signer does not match payer"

    def test_tampered_value(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        payload = _signed_payload(client, value=1000)
        payload.value = "5000"
        error = client.check_payload(payload, req)
        assert error.startswith("Invalid signature")

    def test_garbage_signature(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        payload = _signed_payload(client)
        payload.signature = "0x1234"
        assert client.check_payload(payload, req).startswith("Invalid signature")


# ---------------------------------------------------------------------------
# Facilitator round trip (mocked transport)
# ---------------------------------------------------------------------------


class TestVerifyPayment:
    @pytest.mark.asyncio
    async def test_verify_then_settle(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        payload = _signed_payload(client)
        client._client.request = AsyncMock(side_effect=[
            _mock_response(200, {"isValid": True, "payer": PAYER}),
            _mock_response(200, {"success": True, "transaction": "0xfeed", "payer": PAYER}),
        ])

        result = await client.verify_payment(payload, req)

        assert result.success is True
        assert result.tx_hash == "0xfeed"
        assert result.payer == PAYER
        calls = client._client.request.call_args_list
        assert [c[0] for c in calls] == [("POST", "/verify"), ("POST", "/settle")]
        body = calls[0][1]["json"]
        assert body["x402Version"] == 1
        assert body["paymentRequirements"] == req.to_dict()
        assert body["paymentPayload"]["network"] == "eip155:8453"
        authorization = body["paymentPayload"]["payload"]["authorization"]
        assert authorization["nonce"] == payload.nonce
        assert authorization["from"] == PAYER
        assert calls[0][1]["headers"] == {}

    @pytest.mark.asyncio
    async def test_local_rejection_skips_facilitator(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        client._client.request = AsyncMock()
        result = await client.verify_payment(_signed_payload(client, value=1), req)
        assert result.success is False
        assert "Insufficient amount" in result.error
        client._client.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_reason_reported(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        client._client.request = AsyncMock(
            return_value=_mock_response(200, {"isValid": False, "invalidReason": "nonce_already_used"})
        )
        result = await client.verify_payment(_signed_payload(client), req)
        assert result.success is False
        assert result.error == "nonce_already_used"
        assert client._client.request.await_count == 1

    @pytest.mark.asyncio
    async def test_settlement_failure(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        client._client.request = AsyncMock(side_effect=[
            _mock_response(200, {"isValid": True}),
            _mock_response(200, {"success": False, "errorReason": "insufficient_funds"}),
        ])
        result = await client.verify_payment(_signed_payload(client), req)
        assert result.success is False
        assert result.error == "insufficient_funds"

    @pytest.mark.asyncio
    async def test_http_error_never_raises(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        client._client.request = AsyncMock(return_value=_mock_response(502, {"error": "bad gateway"}))
        result = await client.verify_payment(_signed_payload(client), req)
        assert result.success is False
        assert result.error.startswith("Facilitator error")

    @pytest.mark.asyncio
    async def test_connect_error_never_raises(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        client._client.request = AsyncMock(side_effect=httpx.ConnectError("refused"))
        result = await client.verify_payment(_signed_payload(client), req)
        assert result.success is False
        assert "refused" in result.error

    @pytest.mark.asyncio
    async def test_read_error_never_raises(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        client._client.request = AsyncMock(side_effect=httpx.ReadError("connection reset"))
        result = await client.verify_payment(_signed_payload(client), req)
        assert result.success is False
        assert "connection reset" in result.error

    @pytest.mark.asyncio
    async def test_protocol_error_never_raises(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        client._client.request = AsyncMock(side_effect=httpx.RemoteProtocolError("bad frame"))
        result = await client.validate_payment(_signed_payload(client), req)
        assert result.success is False

    @pytest.mark.asyncio
    async def test_timeout_never_raises(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        client._client.request = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        result = await client.verify_payment(_signed_payload(client), req)
        assert result.success is False

    @pytest.mark.asyncio
    async def test_non_object_body(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        client._client.request = AsyncMock(return_value=_mock_response(200, ["ok"]))
        result = await client.verify_payment(_signed_payload(client), req)
        assert result.success is False
        assert "Malformed" in result.error

    @pytest.mark.asyncio
    async def test_validate_only(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        client._client.request = AsyncMock(return_value=_mock_response(200, {"isValid": True}))
        result = await client.validate_payment(_signed_payload(client), req)
        assert result.success is True
        client._client.request.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_bearer_jwt_when_configured(self) -> None:
        key = Ed25519PrivateKey.generate()
        secret = base64.b64encode(
            key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
        ).decode()
        client = _client(api_key_id="key-1", api_key_secret=secret)
        assert client.auth_configured
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        client._client.request = AsyncMock(return_value=_mock_response(200, {"isValid": True}))

        await client.validate_payment(_signed_payload(client), req)

        headers = client._client.request.call_args[1]["headers"]
        token = headers["Authorization"].removeprefix("Bearer ")
        claims = jwt.decode(token, key.public_key(), algorithms=["EdDSA"])
        assert claims["uri"] == "POST x402.example.com/verify"
        assert claims["sub"] == "key-1"

    @pytest.mark.asyncio
    async def test_bad_credentials_fail_cleanly(self) -> None:
        client = _client(api_key_id="key-1", api_key_secret="bad")
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        client._client.request = AsyncMock()
        result = await client.verify_payment(_signed_payload(client), req)
        assert result.success is False
        client._client.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_context_manager_closes(self) -> None:
        async with _client() as client:
            client._client.aclose = AsyncMock()
        client._client.aclose.assert_awaited_once()


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


class TestPaymentHeaders:
    def _payload_dict(self) -> dict:
        return {
            "signature": "0xsig",
            "from": PAYER,
            "to": PAY_TO,
            "value": "1000",
            "validAfter": "0",
            "validBefore": "2000000000",
            "nonce": "0x" + "01" * 32,
        }

    def test_parse_json(self) -> None:
        payload = parse_payment_header(json.dumps(self._payload_dict()))
        assert payload.from_address == PAYER
        assert payload.value == "1000"
        assert payload.valid_before == 2_000_000_000

    def test_parse_base64_v1_envelope(self) -> None:
        flat = self._payload_dict()
        envelope = {
            "x402Version": 1,
            "scheme": "exact",
            "network": "eip155:8453",
            "payload": {
                "signature": flat.pop("signature"),
                "authorization": flat,
            },
        }
        header = base64.b64encode(json.dumps(envelope).encode()).decode()
        payload = parse_payment_header(header)
        assert payload.signature == "0xsig"
        assert payload.nonce == "0x" + "01" * 32

    def test_wire_round_trip(self) -> None:
        client = _client()
        req = client.create_requirements(RESOURCE, 1000, PAY_TO)
        payload = PaymentPayload.from_dict(self._payload_dict())
        assert PaymentPayload.from_dict(payload.to_wire(req)) == payload

    @pytest.mark.parametrize("header", [None, "", "%%%", "bnVsbA==", "[]", '{"signature": "0x1"}'])
    def test_unparseable(self, header) -> None:
        assert parse_payment_header(header) is None

    def test_non_numeric_value(self) -> None:
        data = self._payload_dict()
        data["value"] = "lots"
        assert parse_payment_header(json.dumps(data)) is None

    def test_payment_required_response(self) -> None:
        req = _client().create_requirements(RESOURCE, 1000, PAY_TO)
        response = payment_required_response(req)
        assert response["status_code"] == 402
        assert json.loads(response["headers"][PAYMENT_REQUIRED_HEADER]) == req.to_dict()
        assert response["body"]["requirements"]["maxAmountRequired"] == "1000"
        assert response["body"]["error"] == "Payment required"

    def test_success_headers(self) -> None:
        headers = payment_success_headers("0xfeed")
        assert json.loads(headers[PAYMENT_RESPONSE_HEADER]) == {"txHash": "0xfeed"}
