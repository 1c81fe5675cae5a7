# tests/test_x402_verifier.py
"""
Unit tests for signature verification and requirement checks.
"""
import time

import pytest
from eth_account import Account

from app.core.config import ResourceConfig
from app.x402.challenge import create_payment_requirements
from app.x402.codec import build_payment_envelope
from app.x402.errors import PaymentError, Reason
from app.x402.verifier import (
    SigningDomain,
    build_typed_data,
    check_requirement,
    check_validity_window,
    split_signature,
    verify_signature,
)
from tests.support import PAY_TO, sign_authorization


def _flip_bit(hex_str: str, byte_index: int) -> str:
    raw = bytearray(bytes.fromhex(hex_str[2:]))
    raw[byte_index] ^= 0x01
    return "0x" + raw.hex()


@pytest.fixture
def requirement():
    resource = ResourceConfig(upstream="/translate", price_usd=0.01)
    return create_payment_requirements(resource, "http://testserver/api/v1/x402/translate")


class TestBuildTypedData:
    """Test the EIP-712 message layout."""

    def test_field_order_and_domain(self, make_authorization, domain):
        """Message fields follow TransferWithAuthorization order."""
        typed = build_typed_data(make_authorization(), domain)
        names = [f["name"] for f in typed["types"]["TransferWithAuthorization"]]

        assert names == ["from", "to", "value", "validAfter", "validBefore", "nonce"]
        assert typed["primaryType"] == "TransferWithAuthorization"
        assert typed["domain"]["chainId"] == 84532
        assert typed["domain"]["name"] == "USDC"
        assert isinstance(typed["message"]["nonce"], bytes)
        assert len(typed["message"]["nonce"]) == 32


class TestVerifySignature:
    """Test signer recovery against the claimed payer."""

    def test_valid_signature(self, payer, make_authorization, domain):
        """A signature by the payer verifies."""
        auth = make_authorization()
        result = verify_signature(auth, sign_authorization(payer, auth, domain), domain)

        assert result.valid is True
        assert result.recovered_signer.lower() == payer.address.lower()
        assert result.reason is None

    def test_signature_by_someone_else(self, make_authorization, domain):
        """A signature by another key does not verify."""
        auth = make_authorization()
        other = Account.create()
        result = verify_signature(auth, sign_authorization(other, auth, domain), domain)

        assert result.valid is False
        assert result.recovered_signer.lower() == other.address.lower()
        assert "does not match" in result.reason

    def test_mutated_message(self, payer, make_authorization, domain):
        """Changing the amount after signing breaks the signature."""
        auth = make_authorization()
        signature = sign_authorization(payer, auth, domain)
        tampered = auth.model_copy(update={"value": auth.value + 1})

        assert verify_signature(tampered, signature, domain).valid is False

    def test_mutated_signature(self, payer, make_authorization, domain):
        """Flipping a bit in r invalidates the signature."""
        auth = make_authorization()
        signature = _flip_bit(sign_authorization(payer, auth, domain), 5)

        assert verify_signature(auth, signature, domain).valid is False

    def test_other_domain(self, payer, make_authorization, domain):
        """A signature for another chain does not verify here."""
        auth = make_authorization()
        other_domain = SigningDomain(
            name=domain.name,
            version=domain.version,
            chain_id=8453,
            verifying_contract=domain.verifying_contract,
        )
        signature = sign_authorization(payer, auth, other_domain)

        assert verify_signature(auth, signature, domain).valid is False

    def test_upper_case_payer(self, payer, make_authorization, domain):
        """Payer comparison is case-insensitive."""
        auth = make_authorization()
        signature = sign_authorization(payer, auth, domain)
        shouting = auth.model_copy(update={"payer": "0x" + payer.address[2:].upper()})

        assert verify_signature(shouting, signature, domain).valid is True

    @pytest.mark.parametrize("signature", ["0x", "0x1234", "not-hex", "0x" + "zz" * 65])
    def test_malformed_signature_never_raises(self, make_authorization, domain, signature):
        """Malformed signatures return valid=False instead of raising."""
        result = verify_signature(make_authorization(), signature, domain)
        assert result.valid is False
        assert result.reason


class TestSplitSignature:
    """Test (v, r, s) extraction."""

    def test_split(self, payer, make_authorization, domain):
        """v is normalized to 27/28."""
        v, r, s = split_signature(sign_authorization(payer, make_authorization(), domain))
        assert v in (27, 28)
        assert len(r) == 32
        assert len(s) == 32

    def test_low_v_normalized(self):
        """Signatures with v in {0, 1} are shifted to {27, 28}."""
        v, _, _ = split_signature("0x" + "11" * 64 + "01")
        assert v == 28

    def test_wrong_length(self):
        """Short signatures raise ValueError."""
        with pytest.raises(ValueError):
            split_signature("0x1234")


class TestValidityWindow:
    """Test the validAfter <= now < validBefore window."""

    def test_inside_window(self, make_authorization):
        """No error while the window is open."""
        now = int(time.time())
        check_validity_window(make_authorization(valid_after=now - 10, valid_before=now + 10), now)

    def test_at_valid_after(self, make_authorization):
        """validAfter itself is inside the window."""
        now = int(time.time())
        check_validity_window(make_authorization(valid_after=now, valid_before=now + 10), now)

    def test_not_yet_valid(self, make_authorization):
        """Before validAfter the payment is not yet valid."""
        now = int(time.time())
        with pytest.raises(PaymentError) as exc_info:
            check_validity_window(make_authorization(valid_after=now + 5, valid_before=now + 10), now)
        assert exc_info.value.reason == Reason.PAYMENT_WINDOW_NOT_YET_VALID

    def test_expired_at_valid_before(self, make_authorization):
        """validBefore itself is already expired."""
        now = int(time.time())
        with pytest.raises(PaymentError) as exc_info:
            check_validity_window(make_authorization(valid_after=now - 10, valid_before=now), now)
        assert exc_info.value.reason == Reason.PAYMENT_EXPIRED


class TestCheckRequirement:
    """Test envelope congruence with the payment requirement."""

    def _envelope(self, auth, network="base-sepolia", scheme="exact"):
        return build_payment_envelope(auth, "0x" + "11" * 65, network, scheme=scheme)

    def test_matching_envelope(self, make_authorization, requirement):
        """An exact match passes."""
        check_requirement(self._envelope(make_authorization()), requirement)

    def test_overpayment_accepted(self, make_authorization, requirement):
        """Paying more than required is allowed."""
        check_requirement(self._envelope(make_authorization(value=50000)), requirement)

    def test_insufficient_amount(self, make_authorization, requirement):
        """Paying less than required is rejected."""
        with pytest.raises(PaymentError) as exc_info:
            check_requirement(self._envelope(make_authorization(value=9999)), requirement)
        assert exc_info.value.reason == Reason.INSUFFICIENT_AMOUNT

    def test_wrong_recipient(self, make_authorization, requirement):
        """Payments to another address are rejected."""
        with pytest.raises(PaymentError) as exc_info:
            check_requirement(self._envelope(make_authorization(pay_to="0x" + "33" * 20)), requirement)
        assert exc_info.value.reason == Reason.RECIPIENT_MISMATCH

    def test_recipient_case_insensitive(self, make_authorization, requirement):
        """Recipient comparison ignores hex case."""
        auth = make_authorization(pay_to="0x" + PAY_TO[2:].upper())
        check_requirement(self._envelope(auth), requirement)

    def test_wrong_network(self, make_authorization, requirement):
        """Payments on another network are rejected."""
        with pytest.raises(PaymentError) as exc_info:
            check_requirement(self._envelope(make_authorization(), network="base"), requirement)
        assert exc_info.value.reason == Reason.NETWORK_MISMATCH

    def test_wrong_scheme(self, make_authorization, requirement):
        """Only the exact scheme is supported."""
        with pytest.raises(PaymentError) as exc_info:
            check_requirement(self._envelope(make_authorization(), scheme="upto"), requirement)
        assert exc_info.value.reason == Reason.UNSUPPORTED_SCHEME
