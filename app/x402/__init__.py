# app/x402/__init__.py
"""
x402 Payment Protocol and Settlement Engine.

This module implements the server side of the x402 protocol: callers
present a signed transferWithAuthorization in the X-PAYMENT header, the
gateway serves the request, and settles the payment on-chain only once the
result has been accepted.

Key components:
- codec: X-PAYMENT header encoding and decoding
- verifier: EIP-712 signature recovery and requirement checks
- replay: single-use nonce guard
- balance: pre-flight balance oracle
- policy: result validation policies per resource type
- orchestrator: HOLD -> EXECUTE -> VALIDATE -> SETTLE state machine
- reliability: per-provider success and latency statistics
- challenge: 402 responses and the X-PAYMENT-RESPONSE header
- audit: transaction audit logging

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
