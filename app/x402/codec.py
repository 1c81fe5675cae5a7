# app/x402/codec.py
"""
Encoding and decoding of the X-PAYMENT proof-of-payment header.

Wire format (base64 of a JSON object):

    {
      "x402Version": 1,
      "scheme": "exact",
      "network": "base-sepolia",
      "payload": {
        "signature": "0x...",
        "authorization": {
          "from": "0x...", "to": "0x...", "value": "10000",
          "validAfter": "1700000000", "validBefore": "1700000600",
          "nonce": "0x<64 hex chars>"
        }
      }
    }

All numeric fields travel as decimal strings so no precision is lost;
in memory they are Python ints.
"""
import json
import logging
import re
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator, model_validator

from x402.encoding import safe_base64_decode, safe_base64_encode

from app.x402.errors import DecodeError, Reason

logger = logging.getLogger(__name__)

X402_VERSION = 1
EXACT_SCHEME = "exact"
MAX_HEADER_LENGTH = 8192

_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")
_NONCE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_DECIMAL = re.compile(r"^[0-9]+$")


class Authorization(BaseModel):
    """Signed intent to move `value` from `payer` to `payee` within a time window."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    payer: str = Field(alias="from")
    payee: str = Field(alias="to")
    value: int
    valid_after: int = Field(alias="validAfter")
    valid_before: int = Field(alias="validBefore")
    nonce: str

    @field_validator("payer", "payee")
    @classmethod
    def _check_address(cls, v: str) -> str:
        if not _ADDRESS.match(v):
            raise ValueError(f"not a 20-byte hex address: {v!r}")
        return v

    @field_validator("nonce")
    @classmethod
    def _check_nonce(cls, v: str) -> str:
        if not _NONCE.match(v):
            raise ValueError("nonce must be 0x followed by 64 hex characters")
        return v.lower()

    @field_validator("value", "valid_after", "valid_before", mode="before")
    @classmethod
    def _check_integer_wire_type(cls, v: Any) -> Any:
        # Decimal strings on the wire; integers are tolerated, booleans and floats are not.
        if isinstance(v, bool) or not isinstance(v, (str, int)):
            raise ValueError(f"must be a decimal string, got {type(v).__name__}")
        if isinstance(v, str) and not _DECIMAL.match(v):
            raise ValueError(f"not a decimal integer string: {v!r}")
        return v

    @field_validator("value", "valid_after", "valid_before")
    @classmethod
    def _check_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be non-negative")
        return v

    @model_validator(mode="after")
    def _check_window(self) -> "Authorization":
        if self.valid_after >= self.valid_before:
            raise ValueError(
                f"validity window is degenerate: validAfter={self.valid_after} "
                f">= validBefore={self.valid_before}"
            )
        return self

    @field_serializer("value", "valid_after", "valid_before")
    def _as_decimal_string(self, v: int) -> str:
        return str(v)


class SignedAuthorization(BaseModel):
    """An Authorization plus the detached signature over its typed-data encoding."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    signature: str = Field(min_length=1)
    authorization: Authorization


class PaymentEnvelope(BaseModel):
    """The full X-PAYMENT header contents."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    x402_version: int = Field(alias="x402Version")
    scheme: str
    network: str
    payload: SignedAuthorization

    @property
    def authorization(self) -> Authorization:
        return self.payload.authorization

    @property
    def signature(self) -> str:
        return self.payload.signature


def build_payment_envelope(
    authorization: Authorization,
    signature: str,
    network: str,
    scheme: str = EXACT_SCHEME,
) -> PaymentEnvelope:
    """Wrap a signed authorization into an envelope ready for encoding."""
    return PaymentEnvelope(
        x402_version=X402_VERSION,
        scheme=scheme,
        network=network,
        payload=SignedAuthorization(signature=signature, authorization=authorization),
    )


def encode_payment_header(envelope: PaymentEnvelope) -> str:
    """
    Encode a payment envelope for the X-PAYMENT header.

    Args:
        envelope: The envelope to encode

    Returns:
        Base64-encoded compact JSON string
    """
    envelope_dict = envelope.model_dump(by_alias=True, mode="json")
    envelope_json = json.dumps(envelope_dict, separators=(",", ":"))
    return safe_base64_encode(envelope_json.encode("utf-8"))


def _describe_missing(errors: list) -> str:
    fields = [".".join(str(part) for part in error["loc"]) for error in errors]
    return ", ".join(fields)


def decode_payment_header(header_value: str) -> PaymentEnvelope:
    """
    Decode the X-PAYMENT header into a PaymentEnvelope.

    Args:
        header_value: Base64-encoded payment payload

    Returns:
        The decoded PaymentEnvelope

    Raises:
        DecodeError: MalformedHeader, UnsupportedVersion or MissingField
    """
    if not header_value or len(header_value) > MAX_HEADER_LENGTH:
        raise DecodeError(Reason.MALFORMED_HEADER, "X-PAYMENT header is empty or too large")

    try:
        decoded_str = safe_base64_decode(header_value)
    except (ValueError, TypeError) as e:
        raise DecodeError(Reason.MALFORMED_HEADER, f"X-PAYMENT header is not valid base64: {e}")
    if decoded_str is None:
        raise DecodeError(Reason.MALFORMED_HEADER, "X-PAYMENT header is not valid base64")

    try:
        raw: Any = json.loads(decoded_str)
    except json.JSONDecodeError as e:
        raise DecodeError(Reason.MALFORMED_HEADER, f"X-PAYMENT header is not valid JSON: {e}")

    if not isinstance(raw, dict):
        raise DecodeError(Reason.MALFORMED_HEADER, "X-PAYMENT header must encode a JSON object")

    version = raw.get("x402Version")
    if version != X402_VERSION:
        raise DecodeError(
            Reason.UNSUPPORTED_VERSION,
            f"Unsupported x402Version {version!r}; this gateway speaks version {X402_VERSION}",
        )

    try:
        return PaymentEnvelope.model_validate(raw)
    except ValidationError as e:
        errors = e.errors()
        missing = [error for error in errors if error["type"] == "missing"]
        if missing:
            raise DecodeError(
                Reason.MISSING_FIELD,
                f"X-PAYMENT header is missing required field(s): {_describe_missing(missing)}",
            )
        first = errors[0]
        location = ".".join(str(part) for part in first["loc"]) or "payload"
        logger.debug(f"x402: rejected X-PAYMENT header: {e}")
        raise DecodeError(Reason.MALFORMED_HEADER, f"Invalid X-PAYMENT field {location}: {first['msg']}")


def envelope_summary(envelope: PaymentEnvelope) -> Dict[str, Any]:
    """Loggable summary of an envelope without the signature."""
    auth = envelope.authorization
    return {
        "network": envelope.network,
        "scheme": envelope.scheme,
        "payer": auth.payer,
        "payee": auth.payee,
        "value": str(auth.value),
        "nonce": auth.nonce,
    }
