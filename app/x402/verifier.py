# app/x402/verifier.py
"""
Off-chain verification of x402 payment authorizations.

The signature check here is a fast-reject path: the token contract verifies
the same signature again when the authorization is settled on-chain.
Everything in this module is pure CPU work with no I/O.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from eth_account import Account
from eth_account.messages import encode_typed_data
from x402.types import PaymentRequirements

from app.core.config import settings
from app.x402.codec import EXACT_SCHEME, Authorization, PaymentEnvelope
from app.x402.errors import PaymentError, Reason

logger = logging.getLogger(__name__)

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

# Field order is part of the signed schema.
TRANSFER_WITH_AUTHORIZATION_TYPE = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "validAfter", "type": "uint256"},
    {"name": "validBefore", "type": "uint256"},
    {"name": "nonce", "type": "bytes32"},
]


@dataclass(frozen=True)
class SigningDomain:
    """EIP-712 domain the payer signs under."""
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    @classmethod
    def from_settings(cls) -> "SigningDomain":
        return cls(
            name=settings.X402_ASSET_NAME,
            version=settings.X402_ASSET_VERSION,
            chain_id=settings.X402_CHAIN_ID,
            verifying_contract=settings.X402_ASSET_ADDRESS,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract.lower(),
        }


@dataclass(frozen=True)
class SignatureCheck:
    valid: bool
    recovered_signer: Optional[str] = None
    reason: Optional[str] = None


def _hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def build_typed_data(authorization: Authorization, domain: SigningDomain) -> Dict[str, Any]:
    """Build the EIP-712 TransferWithAuthorization message for an authorization."""
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            "TransferWithAuthorization": TRANSFER_WITH_AUTHORIZATION_TYPE,
        },
        "primaryType": "TransferWithAuthorization",
        "domain": domain.to_dict(),
        "message": {
            "from": authorization.payer.lower(),
            "to": authorization.payee.lower(),
            "value": authorization.value,
            "validAfter": authorization.valid_after,
            "validBefore": authorization.valid_before,
            "nonce": _hex_to_bytes(authorization.nonce),
        },
    }


def verify_signature(
    authorization: Authorization,
    signature: str,
    domain: Optional[SigningDomain] = None,
) -> SignatureCheck:
    """
    Recover the signer of an authorization and compare it to the claimed payer.

    Never raises: malformed signatures produce valid=False with a reason.

    Args:
        authorization: The authorization that was signed
        signature: 65-byte hex signature
        domain: Signing domain (defaults to the configured asset)

    Returns:
        SignatureCheck with valid, recovered_signer and reason
    """
    domain = domain or SigningDomain.from_settings()
    try:
        signature_bytes = _hex_to_bytes(signature)
    except (ValueError, TypeError):
        return SignatureCheck(valid=False, reason="Signature is not hex encoded")

    if len(signature_bytes) != 65:
        return SignatureCheck(
            valid=False,
            reason=f"Signature must be 65 bytes, got {len(signature_bytes)}",
        )

    try:
        signable = encode_typed_data(full_message=build_typed_data(authorization, domain))
        recovered = Account.recover_message(signable, signature=signature_bytes)
    except Exception as e:
        logger.debug(f"x402: signature recovery failed: {e}")
        return SignatureCheck(valid=False, reason=f"Signature recovery failed: {e}")

    if recovered.lower() != authorization.payer.lower():
        return SignatureCheck(
            valid=False,
            recovered_signer=recovered,
            reason=f"Recovered signer {recovered} does not match payer {authorization.payer}",
        )

    return SignatureCheck(valid=True, recovered_signer=recovered)


def split_signature(signature: str) -> Tuple[int, bytes, bytes]:
    """
    Split a 65-byte signature into (v, r, s) for contract submission.

    Raises:
        ValueError: if the signature is not 65 bytes of hex
    """
    signature_bytes = _hex_to_bytes(signature)
    if len(signature_bytes) != 65:
        raise ValueError(f"Signature must be 65 bytes, got {len(signature_bytes)}")
    r = signature_bytes[:32]
    s = signature_bytes[32:64]
    v = signature_bytes[64]
    if v < 27:
        v += 27
    return v, r, s


def check_validity_window(authorization: Authorization, now: int) -> None:
    """
    Check the authorization's time window against the current time.

    Matches the token contract: usable while validAfter <= now < validBefore.

    Raises:
        PaymentError: PaymentWindowNotYetValid or PaymentExpired
    """
    if now < authorization.valid_after:
        raise PaymentError(
            Reason.PAYMENT_WINDOW_NOT_YET_VALID,
            f"Payment authorization is not valid until {authorization.valid_after} (now {now})",
        )
    if now >= authorization.valid_before:
        raise PaymentError(
            Reason.PAYMENT_EXPIRED,
            f"Payment authorization expired at {authorization.valid_before} (now {now})",
        )


def check_requirement(envelope: PaymentEnvelope, requirement: PaymentRequirements) -> None:
    """
    Check that an envelope answers the payment requirement it was sent for.

    Raises:
        PaymentError: UnsupportedScheme, NetworkMismatch, RecipientMismatch
            or InsufficientAmount
    """
    if envelope.scheme != EXACT_SCHEME or envelope.scheme != requirement.scheme:
        raise PaymentError(
            Reason.UNSUPPORTED_SCHEME,
            f"Payment scheme {envelope.scheme!r} is not supported; expected {requirement.scheme!r}",
        )

    if envelope.network != requirement.network:
        raise PaymentError(
            Reason.NETWORK_MISMATCH,
            f"Payment network {envelope.network!r} does not match required network {requirement.network!r}",
        )

    auth = envelope.authorization
    if auth.payee.lower() != requirement.pay_to.lower():
        raise PaymentError(
            Reason.RECIPIENT_MISMATCH,
            f"Payment recipient {auth.payee} does not match required recipient {requirement.pay_to}",
        )

    required = int(requirement.max_amount_required)
    if auth.value < required:
        raise PaymentError(
            Reason.INSUFFICIENT_AMOUNT,
            f"Authorized amount {auth.value} is below the required {required}",
        )
