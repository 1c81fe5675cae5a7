# app/services/chain.py
"""
Chain access for the settlement engine.

The executor account pays gas and submits the payer's signed
transferWithAuthorization; the token contract re-verifies the signature,
the validity window and the nonce atomically with the transfer.
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import TimeExhausted

from app.core.config import settings
from app.x402.codec import Authorization
from app.x402.verifier import split_signature

logger = logging.getLogger(__name__)

# EIP-3009 subset of the USDC ABI
TOKEN_ABI = [
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "authorizer", "type": "address"},
            {"name": "nonce", "type": "bytes32"},
        ],
        "name": "authorizationState",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "validAfter", "type": "uint256"},
            {"name": "validBefore", "type": "uint256"},
            {"name": "nonce", "type": "bytes32"},
            {"name": "v", "type": "uint8"},
            {"name": "r", "type": "bytes32"},
            {"name": "s", "type": "bytes32"},
        ],
        "name": "transferWithAuthorization",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


class ChainError(Exception):
    """Base class for chain client failures."""


class SubmissionError(ChainError):
    """The settlement transaction could not be built, signed or sent."""


class ConfirmationTimeout(ChainError):
    """A transaction was sent but no receipt arrived within the budget."""

    def __init__(self, tx_hash: str, timeout: float):
        super().__init__(f"No receipt for {tx_hash} after {timeout}s")
        self.tx_hash = tx_hash
        self.timeout = timeout


class SignerClosedError(ChainError):
    """The settlement signer has been released and can no longer sign."""


@dataclass(frozen=True)
class SettlementReceipt:
    tx_hash: str
    status: int
    block_number: Optional[int] = None
    gas_used: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class SettlementSigner:
    """
    Scoped holder of the executor credential.

    Acquired once at start-up and released on shutdown; rotate() swaps the
    key in place so the chain client never holds a stale reference.
    """

    def __init__(self, account: LocalAccount):
        self._account: Optional[LocalAccount] = account
        self._lock = threading.Lock()

    @classmethod
    def from_key(cls, private_key: str) -> "SettlementSigner":
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> str:
        with self._lock:
            if self._account is None:
                raise SignerClosedError("Settlement signer has been closed")
            return self._account.address

    @property
    def closed(self) -> bool:
        return self._account is None

    def sign_transaction(self, tx: Dict[str, Any]):
        with self._lock:
            if self._account is None:
                raise SignerClosedError("Settlement signer has been closed")
            return self._account.sign_transaction(tx)

    def rotate(self, private_key: str) -> None:
        new_account = Account.from_key(private_key)
        with self._lock:
            old = self._account.address if self._account else None
            self._account = new_account
        logger.info(f"Settlement signer rotated: {old} -> {new_account.address}")

    def close(self) -> None:
        with self._lock:
            self._account = None
        logger.info("Settlement signer released")

    def __enter__(self) -> "SettlementSigner":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class ChainClient(ABC):
    """Operations the settlement engine needs from a chain."""

    @abstractmethod
    def get_balance(self, account: str, asset: Optional[str] = None) -> int:
        """Native balance when asset is None, otherwise the token balance."""

    @abstractmethod
    def authorization_state(self, authorizer: str, nonce: str, asset: str) -> bool:
        """True if the token contract has already used this nonce."""

    @abstractmethod
    def submit_transfer_with_authorization(
        self, authorization: Authorization, signature: str, asset: str
    ) -> str:
        """Send the transfer; returns the transaction hash."""

    @abstractmethod
    def wait_for_receipt(self, tx_hash: str, timeout: float) -> SettlementReceipt:
        """Block until mined; raises ConfirmationTimeout when over budget."""


class Web3ChainClient(ChainClient):
    """ChainClient backed by a web3 HTTP provider."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        signer: Optional[SettlementSigner] = None,
        chain_id: Optional[int] = None,
        timeout: Optional[int] = None,
        web3: Optional[Web3] = None,
    ):
        self.signer = signer
        self.chain_id = chain_id if chain_id is not None else settings.X402_CHAIN_ID
        self.w3 = web3 or Web3(Web3.HTTPProvider(
            str(rpc_url or settings.X402_RPC_URL),
            request_kwargs={"timeout": timeout or settings.X402_RPC_TIMEOUT_SECONDS},
        ))
        # The executor's transaction nonce is shared state; sends are serialized.
        self._submit_lock = threading.Lock()

    def _token(self, asset: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(asset), abi=TOKEN_ABI)

    def get_balance(self, account: str, asset: Optional[str] = None) -> int:
        address = Web3.to_checksum_address(account)
        if asset is None:
            return int(self.w3.eth.get_balance(address))
        return int(self._token(asset).functions.balanceOf(address).call())

    def authorization_state(self, authorizer: str, nonce: str, asset: str) -> bool:
        nonce_bytes = bytes.fromhex(nonce[2:] if nonce.startswith("0x") else nonce)
        return bool(
            self._token(asset).functions.authorizationState(
                Web3.to_checksum_address(authorizer), nonce_bytes
            ).call()
        )

    def submit_transfer_with_authorization(
        self, authorization: Authorization, signature: str, asset: str
    ) -> str:
        if self.signer is None:
            raise SubmissionError("No settlement signer configured")

        try:
            v, r, s = split_signature(signature)
            nonce_hex = authorization.nonce[2:]
            with self._submit_lock:
                executor = self.signer.address
                tx = self._token(asset).functions.transferWithAuthorization(
                    Web3.to_checksum_address(authorization.payer),
                    Web3.to_checksum_address(authorization.payee),
                    authorization.value,
                    authorization.valid_after,
                    authorization.valid_before,
                    bytes.fromhex(nonce_hex),
                    v,
                    r,
                    s,
                ).build_transaction({
                    "from": executor,
                    "chainId": self.chain_id,
                    "nonce": self.w3.eth.get_transaction_count(executor, "pending"),
                })
                signed_tx = self.signer.sign_transaction(tx)
                tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        except SubmissionError:
            raise
        except Exception as e:
            logger.error(f"Failed to submit transferWithAuthorization: {e}")
            raise SubmissionError(str(e)) from e

        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info(f"Settlement transaction submitted: {tx_hash_hex}")
        return tx_hash_hex

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> SettlementReceipt:
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise ConfirmationTimeout(tx_hash, timeout) from e

        return SettlementReceipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )
