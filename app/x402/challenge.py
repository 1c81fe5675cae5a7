# app/x402/challenge.py
"""
The HTTP side of the x402 handshake.

Builds the 402 Payment Required challenge a caller must answer, and the
X-PAYMENT-RESPONSE header that reports how settlement went.

Uses the official x402 Python SDK types for the payment requirement.
"""
import json
import logging
from typing import Any, Dict, Optional

from fastapi import Request
from starlette.responses import JSONResponse

from x402.encoding import safe_base64_decode, safe_base64_encode
from x402.types import PaymentRequirements

from app.core.config import ResourceConfig, settings
from app.x402.codec import EXACT_SCHEME, X402_VERSION

logger = logging.getLogger(__name__)

X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def usd_to_atomic(price_usd: float) -> int:
    """USDC has 6 decimals, so $1.00 = 1,000,000 smallest units."""
    return int(round(price_usd * 1_000_000))


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def create_payment_requirements(resource: ResourceConfig, resource_url: str) -> PaymentRequirements:
    """
    Build the PaymentRequirements a caller must satisfy for a resource.

    Args:
        resource: Catalog entry for the paid resource
        resource_url: Absolute URL of the gateway route being paid for

    Returns:
        PaymentRequirements for the 402 challenge and for verification
    """
    pay_to = settings.X402_PAY_TO_ADDRESS
    if not pay_to:
        logger.warning("X402_PAY_TO_ADDRESS not configured")
        pay_to = ZERO_ADDRESS

    return PaymentRequirements(
        scheme=EXACT_SCHEME,
        network=settings.X402_NETWORK,
        max_amount_required=str(usd_to_atomic(resource.price_usd)),
        resource=resource_url,
        description=resource.description,
        mime_type=resource.mime_type,
        pay_to=pay_to,
        max_timeout_seconds=settings.X402_MAX_TIMEOUT_SECONDS,
        asset=settings.X402_ASSET_ADDRESS,
        # Signing domain, so clients can build the typed-data message
        extra={"name": settings.X402_ASSET_NAME, "version": settings.X402_ASSET_VERSION},
    )


def create_402_response(
    payment_requirements: PaymentRequirements,
    error_message: str = "Payment required",
    rejection: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """
    Create an HTTP 402 Payment Required response.

    Args:
        payment_requirements: The payment requirements to include
        error_message: Error message for the response
        rejection: Optional {paid, reason, message} from a rejected attempt

    Returns:
        JSONResponse with 402 status and payment details
    """
    response_body: Dict[str, Any] = {
        "x402Version": X402_VERSION,
        "error": error_message,
        "accepts": [payment_requirements.model_dump(by_alias=True)],
    }
    if rejection:
        response_body.update(rejection)

    return JSONResponse(status_code=402, content=response_body)


def encode_payment_response(outcome: Dict[str, Any]) -> str:
    """
    Encode a settlement outcome for the X-PAYMENT-RESPONSE header.

    Returns:
        Base64-encoded JSON string
    """
    return safe_base64_encode(json.dumps(outcome).encode("utf-8"))


def decode_payment_response(header_value: str) -> Dict[str, Any]:
    """Inverse of encode_payment_response, for clients and tests."""
    return json.loads(safe_base64_decode(header_value))
