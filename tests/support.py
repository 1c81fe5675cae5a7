# tests/support.py
"""
Test doubles and signing helpers shared by the test modules.
"""
import json

from eth_account.messages import encode_typed_data

from app.services.chain import (
    ChainClient,
    ConfirmationTimeout,
    SettlementReceipt,
    SubmissionError,
)
from app.services.upstream import ServiceResponse
from app.x402.verifier import SigningDomain, build_typed_data

PAY_TO = "0x" + "22" * 20
TX_HASH = "0x" + "ab" * 32
TRANSLATION_RESULT = {"translation": "Hola mundo", "model": "gpt-4o-mini"}


def sign_authorization(account, authorization, domain=None):
    """Sign an authorization the way an x402 client does; returns 0x-hex."""
    typed_data = build_typed_data(authorization, domain or SigningDomain.from_settings())
    signed = account.sign_message(encode_typed_data(full_message=typed_data))
    return "0x" + bytes(signed.signature).hex()


class FakeChainClient(ChainClient):
    """In-memory chain: fixed balances, scripted settlement behaviour."""

    def __init__(self):
        self.native_balance = 10 ** 18
        self.token_balance = 10 ** 9
        self.nonce_used_on_chain = False
        self.fail_reads = False
        self.submit_error = None
        self.confirm_timeout = False
        self.receipt_status = 1
        self.balance_reads = 0
        self.submitted = []

    def get_balance(self, account, asset=None):
        self.balance_reads += 1
        if self.fail_reads:
            raise ConnectionError("RPC endpoint unreachable")
        return self.native_balance if asset is None else self.token_balance

    def authorization_state(self, authorizer, nonce, asset):
        if self.fail_reads:
            raise ConnectionError("RPC endpoint unreachable")
        return self.nonce_used_on_chain

    def submit_transfer_with_authorization(self, authorization, signature, asset):
        if self.submit_error:
            raise SubmissionError(self.submit_error)
        self.submitted.append((authorization, signature, asset))
        return TX_HASH

    def wait_for_receipt(self, tx_hash, timeout):
        if self.confirm_timeout:
            raise ConfirmationTimeout(tx_hash, timeout)
        return SettlementReceipt(tx_hash=tx_hash, status=self.receipt_status, block_number=1, gas_used=60000)


class FakeInvoker:
    """Downstream service stand-in that records every call."""

    def __init__(self, status_code=200, payload=None, raw_body=None, error=None):
        self.status_code = status_code
        self.payload = TRANSLATION_RESULT if payload is None else payload
        self.raw_body = raw_body
        self.error = error
        self.calls = []

    def invoke(self, url, body, headers, payment_header, timeout):
        self.calls.append({
            "url": url,
            "body": body,
            "headers": headers,
            "payment_header": payment_header,
            "timeout": timeout,
        })
        if self.error is not None:
            raise self.error
        content = self.raw_body if self.raw_body is not None else json.dumps(self.payload).encode()
        return ServiceResponse(
            status_code=self.status_code,
            body=content,
            headers={"content-type": "application/json"},
            latency_ms=12.0,
        )

    def close(self):
        pass
