# tests/test_x402_challenge.py
"""
Unit tests for the 402 challenge and settlement header helpers.
"""
import json
from unittest.mock import MagicMock

from app.core.config import ResourceConfig
from app.x402.challenge import (
    ZERO_ADDRESS,
    create_402_response,
    create_payment_requirements,
    decode_payment_response,
    encode_payment_response,
    get_client_ip,
    usd_to_atomic,
)


def _request(headers=None, host="127.0.0.1"):
    request = MagicMock()
    request.headers = headers or {}
    request.client = MagicMock(host=host) if host else None
    return request


class TestUsdToAtomic:
    def test_conversion(self):
        """USDC has six decimals."""
        assert usd_to_atomic(0.01) == 10000
        assert usd_to_atomic(0.005) == 5000
        assert usd_to_atomic(1) == 1_000_000


class TestGetClientIp:
    def test_forwarded_for(self):
        """The first X-Forwarded-For hop wins."""
        assert get_client_ip(_request({"X-Forwarded-For": "1.2.3.4, 10.0.0.1"})) == "1.2.3.4"

    def test_real_ip(self):
        """X-Real-IP is used when present."""
        assert get_client_ip(_request({"X-Real-IP": " 5.6.7.8 "})) == "5.6.7.8"

    def test_direct(self):
        """Falls back to the socket peer."""
        assert get_client_ip(_request()) == "127.0.0.1"

    def test_unknown(self):
        """No client information at all."""
        assert get_client_ip(_request(host=None)) == "unknown"


class TestPaymentRequirements:
    def test_fields(self):
        """Requirements carry price, asset and the signing domain."""
        resource = ResourceConfig(upstream="/sentiment", price_usd=0.005, description="Sentiment analysis")
        requirement = create_payment_requirements(resource, "http://gw/api/v1/x402/sentiment")

        assert requirement.max_amount_required == "5000"
        assert requirement.description == "Sentiment analysis"
        assert requirement.extra == {"name": "USDC", "version": "2"}

    def test_missing_pay_to(self, monkeypatch):
        """Without a configured recipient the zero address is advertised."""
        from app.core.config import settings
        monkeypatch.setattr(settings, "X402_PAY_TO_ADDRESS", None)
        resource = ResourceConfig(upstream="/x", price_usd=0.01)
        assert create_payment_requirements(resource, "http://gw/x").pay_to == ZERO_ADDRESS


class TestResponses:
    def test_402_body(self):
        """The 402 body follows the x402 challenge shape."""
        resource = ResourceConfig(upstream="/x", price_usd=0.01)
        response = create_402_response(create_payment_requirements(resource, "http://gw/x"), "Pay up")
        body = json.loads(response.body)

        assert response.status_code == 402
        assert body["error"] == "Pay up"
        assert body["accepts"][0]["maxAmountRequired"] == "10000"

    def test_settlement_header_round_trip(self):
        """The settlement header is base64 JSON."""
        outcome = {"paid": True, "amount": "10000", "txHash": "0xab", "network": "base-sepolia"}
        assert decode_payment_response(encode_payment_response(outcome)) == outcome
