"""Payment endpoint tools: quote, pay, payment_status.

Framework-agnostic: each tool returns ``{"status_code", "headers", "body"}``
for the host's HTTP layer to send as-is.
"""

from __future__ import annotations

import copy
import importlib.metadata
import logging
import platform
from typing import Any

from payrouter.constants import IDEMPOTENT_REPLAY_HEADER, PAYMENT_HEADER, PaymentMethod
from payrouter.idempotency import IdempotencyStore
from payrouter.models import PaymentRequest, PaymentValidationError
from payrouter.money import format_units
from payrouter.router import PaymentRouter
from payrouter.x402_client import (
    normalize_address,
    parse_payment_header,
    payment_required_response,
    payment_success_headers,
)

logger = logging.getLogger(__name__)

_JSON_HEADERS = {"Content-Type": "application/json"}


def _response(
    status_code: int,
    body: dict[str, Any],
    headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    return {
        "status_code": status_code,
        "headers": {**_JSON_HEADERS, **(headers or {})},
        "body": body,
    }


def _validation_error(e: PaymentValidationError) -> dict[str, Any]:
    return _response(400, {"success": False, "error": e.message, "field": e.field})


def _internal_error() -> dict[str, Any]:
    return _response(500, {"success": False, "error": "Internal error processing payment."})


async def quote_tool(
    router: PaymentRouter,
    address: str,
    service: str = "voice_generation",
    quantity: int = 1000,
) -> dict[str, Any]:
    """Price ``quantity`` of ``service`` for ``address`` and list payment options.

    Monetary fields come as raw USDC unit strings plus ``...Formatted``
    dollar strings.
    """
    try:
        quote = await router.get_quote(address, service, quantity)
    except PaymentValidationError as e:
        return _validation_error(e)
    except Exception:
        logger.exception(
            "Quote failed for address=%s service=%s quantity=%s", address, service, quantity
        )
        return _internal_error()

    credits = quote.credits_available or 0
    body = {
        "success": True,
        "address": address,
        "service": quote.service.value,
        "creditBalance": str(credits),
        "creditBalanceFormatted": format_units(credits),
        "currentTier": quote.current_tier.value if quote.current_tier else None,
        "tierCoversService": quote.tier_covers_service,
        "costPerUnit": str(quote.unit_cost),
        "costPerUnitFormatted": format_units(quote.unit_cost),
        "sampleCost": {
            "quantity": quote.quantity,
            "baseCost": str(quote.base_cost),
            "baseCostFormatted": format_units(quote.base_cost),
            "discountedCost": str(quote.estimated_cost),
            "discountedCostFormatted": format_units(quote.estimated_cost),
            "discountPercent": quote.discount_percent,
        },
        "availablePaymentMethods": [m.value for m in quote.available_methods],
        "recommendedMethod": quote.recommended_method.value,
    }
    return _response(200, body)


async def _execute_payment(
    router: PaymentRouter,
    request: PaymentRequest,
    resource_url: str,
    payment_header: str | None,
) -> dict[str, Any]:
    if not payment_header:
        result = await router.process(request)
        if result.success:
            return _response(200, result.to_dict())
        if result.method is PaymentMethod.X402 or result.fallback_available:
            requirements = await router.create_requirements(
                request.address, request.service, request.quantity, resource_url
            )
            response = payment_required_response(
                requirements, error=result.error or "Payment required"
            )
            response["body"]["result"] = result.to_dict()
            return response
        return _response(402, result.to_dict())

    payload = parse_payment_header(payment_header)
    if payload is None:
        return _response(
            400,
            {"success": False, "error": f"Malformed {PAYMENT_HEADER} header", "field": PAYMENT_HEADER},
        )

    # Priced and addressed by the server, never taken from the caller.
    requirements = await router.create_requirements(
        request.address, request.service, request.quantity, resource_url
    )
    result = await router.process_x402_payment(
        request.address, request.service, request.quantity, payload, requirements
    )
    if not result.success:
        response = payment_required_response(
            requirements, error=result.error or "Payment verification failed"
        )
        response["body"]["result"] = result.to_dict()
        return response
    return _response(200, result.to_dict(), payment_success_headers(result.tx_hash))


async def pay_tool(
    router: PaymentRouter,
    idempotency: IdempotencyStore,
    address: str,
    service: str,
    quantity: int,
    resource_url: str,
    payment_header: str | None = None,
    idempotency_key: str | None = None,
) -> dict[str, Any]:
    """Charge for one metered call.

    Without a payment header the router's recommended method runs
    directly; when only x402 can pay, a 402 carries the requirements.
    With a header the signed x402 payment is verified and settled.

    A repeated ``idempotency_key`` from the same address replays the
    earlier successful response for 24h instead of paying again.
    """
    try:
        request = PaymentRequest.create(address, service, quantity)
        if not idempotency_key:
            return await _execute_payment(router, request, resource_url, payment_header)

        scope = IdempotencyStore.scope(request.address, idempotency_key)
        async with idempotency.hold(scope):
            cached = idempotency.get(scope)
            if cached is not None:
                logger.info("Replaying payment response for idempotency key %s.", idempotency_key)
                replay = copy.deepcopy(cached)
                replay["headers"][IDEMPOTENT_REPLAY_HEADER] = "true"
                return replay

            response = await _execute_payment(router, request, resource_url, payment_header)
            if response["status_code"] == 200:
                idempotency.put(scope, copy.deepcopy(response))
            return response
    except PaymentValidationError as e:
        return _validation_error(e)
    except Exception:
        logger.exception(
            "Payment failed for address=%s service=%s quantity=%s", address, service, quantity
        )
        return _internal_error()


async def payment_status_tool(router: PaymentRouter) -> dict[str, Any]:
    """Report router configuration and backend state for diagnostics.

    Admin/operator tool. Never includes secrets.
    """
    config = router.config
    x402 = router.x402_client
    configured_pay_to = normalize_address(config.x402_pay_to)

    versions: dict[str, str] = {"python": platform.python_version()}
    try:
        versions["payrouter"] = importlib.metadata.version("payrouter")
    except importlib.metadata.PackageNotFoundError:
        versions["payrouter"] = "unknown"

    body: dict[str, Any] = {
        "success": True,
        "preference": config.preference.value,
        "network": x402.network,
        "caip2Network": x402.caip2_network,
        "asset": x402.usdc_address,
        "facilitatorUrl": x402.facilitator_url,
        "facilitatorAuth": "configured" if x402.auth_configured else "none",
        "payTo": configured_pay_to or x402.default_pay_to,
        "payToIsDefault": configured_pay_to is None,
        "usageTracker": type(router.usage_tracker).__name__,
        "usageBackend": getattr(router.usage_tracker, "active_backend", "primary"),
        "creditStore": type(router.credit_store).__name__,
        "tierLookup": "rpc" if config.token_address else "disabled",
        "versions": versions,
    }
    return _response(200, body)
