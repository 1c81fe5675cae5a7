# tests/conftest.py
"""
Shared fixtures: real eth_account keys for signing, an in-memory chain
client and a scripted downstream service.
"""
import secrets
import time

import pytest
from eth_account import Account

from app.core.config import ResourceConfig, settings
from app.services.chain import SettlementSigner
from app.x402.codec import Authorization, build_payment_envelope, encode_payment_header
from app.x402.verifier import SigningDomain
from tests.support import PAY_TO, FakeChainClient, FakeInvoker, sign_authorization


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Keep audit output in a temp dir and pin the payment recipient."""
    monkeypatch.setattr(settings, "X402_AUDIT_LOG_PATH", str(tmp_path / "audit.jsonl"))
    monkeypatch.setattr(settings, "X402_PAY_TO_ADDRESS", PAY_TO)
    return tmp_path


@pytest.fixture
def payer():
    return Account.create()


@pytest.fixture
def executor():
    return SettlementSigner.from_key(Account.create().key)


@pytest.fixture
def domain():
    return SigningDomain.from_settings()


@pytest.fixture
def fake_chain():
    return FakeChainClient()


@pytest.fixture
def fake_invoker():
    return FakeInvoker()


@pytest.fixture
def translate_resource():
    return ResourceConfig(
        upstream="http://upstream.test/translate",
        price_usd=0.01,
        description="Text translation",
        provider="translation",
        policy="translation",
    )


@pytest.fixture
def make_authorization(payer):
    def _make(account=None, value=10000, pay_to=PAY_TO, valid_after=None, valid_before=None, nonce=None):
        now = int(time.time())
        return Authorization(
            payer=(account or payer).address,
            payee=pay_to,
            value=value,
            valid_after=now - 60 if valid_after is None else valid_after,
            valid_before=now + 600 if valid_before is None else valid_before,
            nonce=nonce or "0x" + secrets.token_hex(32),
        )
    return _make


@pytest.fixture
def make_payment(payer, make_authorization):
    """Build a signed X-PAYMENT header; returns (header, authorization, signature)."""
    def _make(signer=None, network="base-sepolia", domain=None, **auth_kwargs):
        authorization = make_authorization(**auth_kwargs)
        signature = sign_authorization(signer or payer, authorization, domain)
        envelope = build_payment_envelope(authorization, signature, network)
        return encode_payment_header(envelope), authorization, signature
    return _make
