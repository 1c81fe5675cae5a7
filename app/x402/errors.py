# app/x402/errors.py
"""
Rejection taxonomy for x402 payment processing.

Every rejection carries two things:
- a machine-readable reason key (the Reason enum value), and
- a human-readable message explaining what went wrong.

The reason key determines the processing stage that failed and whether
the caller may retry with a freshly signed authorization.
"""
from enum import Enum
from typing import Any, Dict


class Reason(str, Enum):
    """Machine-readable reason keys surfaced to callers."""
    # Codec
    MALFORMED_HEADER = "MalformedHeader"
    UNSUPPORTED_VERSION = "UnsupportedVersion"
    MISSING_FIELD = "MissingField"
    # Verification
    UNSUPPORTED_SCHEME = "UnsupportedScheme"
    NETWORK_MISMATCH = "NetworkMismatch"
    RECIPIENT_MISMATCH = "RecipientMismatch"
    INVALID_SIGNATURE = "InvalidSignature"
    NONCE_REUSED = "NonceReused"
    PAYMENT_WINDOW_NOT_YET_VALID = "PaymentWindowNotYetValid"
    PAYMENT_EXPIRED = "PaymentExpired"
    INSUFFICIENT_AMOUNT = "InsufficientAmount"
    # Pre-flight
    PREFLIGHT_FAILED = "PreflightFailed"
    ORACLE_UNAVAILABLE = "OracleUnavailable"
    # Service
    SERVICE_UNREACHABLE = "ServiceUnreachable"
    SERVICE_ERROR = "ServiceError"
    RESULT_REJECTED = "ResultRejected"
    # Settlement (reconciliation cases)
    SETTLEMENT_REJECTED_ON_CHAIN = "SettlementRejectedOnChain"
    SETTLEMENT_TIMEOUT = "SettlementTimeout"


VERIFICATION_REASONS = frozenset({
    Reason.MALFORMED_HEADER,
    Reason.UNSUPPORTED_VERSION,
    Reason.MISSING_FIELD,
    Reason.UNSUPPORTED_SCHEME,
    Reason.NETWORK_MISMATCH,
    Reason.RECIPIENT_MISMATCH,
    Reason.INVALID_SIGNATURE,
    Reason.NONCE_REUSED,
    Reason.PAYMENT_WINDOW_NOT_YET_VALID,
    Reason.PAYMENT_EXPIRED,
    Reason.INSUFFICIENT_AMOUNT,
})

PREFLIGHT_REASONS = frozenset({Reason.PREFLIGHT_FAILED, Reason.ORACLE_UNAVAILABLE})

SERVICE_REASONS = frozenset({
    Reason.SERVICE_UNREACHABLE,
    Reason.SERVICE_ERROR,
    Reason.RESULT_REJECTED,
})

RECONCILIATION_REASONS = frozenset({
    Reason.SETTLEMENT_REJECTED_ON_CHAIN,
    Reason.SETTLEMENT_TIMEOUT,
})


def reason_stage(reason: Reason) -> str:
    """Return the processing stage a reason belongs to."""
    if reason in VERIFICATION_REASONS:
        return "verification"
    if reason in PREFLIGHT_REASONS:
        return "preflight"
    if reason in SERVICE_REASONS:
        return "service"
    return "settlement"


def is_retryable_with_fresh_authorization(reason: Reason) -> bool:
    """
    Whether the payer may retry with a newly signed authorization.

    Re-sending the same authorization is never useful: its nonce is burned
    or it is invalid. Reconciliation cases must be resolved against chain
    state first, since a second attempt risks double payment.
    """
    if reason in RECONCILIATION_REASONS:
        return False
    if reason in (Reason.SERVICE_UNREACHABLE, Reason.SERVICE_ERROR, Reason.PREFLIGHT_FAILED):
        return True
    return reason in (
        Reason.NONCE_REUSED,
        Reason.PAYMENT_EXPIRED,
        Reason.INSUFFICIENT_AMOUNT,
        Reason.RESULT_REJECTED,
    )


class PaymentError(Exception):
    """A payment rejected with a taxonomy reason and a human-readable message."""

    def __init__(self, reason: Reason, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paid": False,
            "reason": self.reason.value,
            "message": self.message,
            "retryable": is_retryable_with_fresh_authorization(self.reason),
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.reason.value}: {self.message})"


class DecodeError(PaymentError):
    """Raised when an X-PAYMENT header cannot be decoded."""
