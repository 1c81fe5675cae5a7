# app/x402/balance.py
"""
Balance checks for the HOLD stage.

Two oracles are used per attempt: a native-asset oracle that makes sure
the executor can pay settlement gas, and (optionally) a token oracle that
makes sure the payer still holds the authorized amount.

Reads are cached per account so a burst of requests does not hammer the
RPC endpoint. Any RPC failure fails closed.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from app.x402.errors import Reason

logger = logging.getLogger(__name__)

# Conversion constant
WEI_PER_ETH = 10 ** 18


def wei_to_eth(wei: int) -> float:
    """Convert wei to ETH."""
    return wei / WEI_PER_ETH


@dataclass(frozen=True)
class BalanceCheck:
    sufficient: bool
    balance: int
    required: int
    account: str
    reason: Optional[Reason] = None
    message: Optional[str] = None


class BalanceOracle:
    """
    Read-only balance lookup through a ChainClient.

    Args:
        chain_client: Any object with get_balance(account, asset=None)
        asset: Token contract address, or None for the native balance
        cache_ttl_seconds: How long a balance read stays fresh
    """

    def __init__(self, chain_client, asset: Optional[str] = None, cache_ttl_seconds: int = 15, clock=time.time):
        self.chain_client = chain_client
        self.asset = asset
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._cache: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    @property
    def label(self) -> str:
        return "native" if self.asset is None else f"token {self.asset}"

    def _get_cached(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            balance, fetched_at = entry
            if self._clock() - fetched_at > self.cache_ttl_seconds:
                del self._cache[key]
                return None
            return balance

    def _update_cache(self, key: str, balance: int) -> None:
        with self._lock:
            self._cache[key] = (balance, self._clock())

    def clear_cache(self) -> None:
        """Clear cached balances (useful for testing)."""
        with self._lock:
            self._cache.clear()

    def balance_of(self, account: str) -> int:
        """
        Return the account's balance, from cache when fresh.

        Raises whatever the chain client raises on RPC failure.
        """
        key = account.lower()
        balance = self._get_cached(key)
        if balance is None:
            balance = int(self.chain_client.get_balance(account, self.asset))
            self._update_cache(key, balance)
            logger.debug(f"Fetched {self.label} balance for {account}: {balance}")
        return balance

    def sufficient(self, account: str, required_amount: int) -> BalanceCheck:
        """
        Check whether an account holds at least required_amount.

        Never raises: RPC failures yield sufficient=False with
        reason OracleUnavailable.
        """
        try:
            balance = self.balance_of(account)
        except Exception as e:
            logger.error(f"x402: failed to read {self.label} balance of {account}: {e}")
            return BalanceCheck(
                sufficient=False,
                balance=0,
                required=required_amount,
                account=account,
                reason=Reason.ORACLE_UNAVAILABLE,
                message=f"Failed to fetch {self.label} balance: {e}",
            )

        if balance < required_amount:
            message = (
                f"{self.label.capitalize()} balance of {account} is {balance}, "
                f"below the required {required_amount}"
            )
            logger.warning(f"x402: pre-flight check: {message}")
            return BalanceCheck(
                sufficient=False,
                balance=balance,
                required=required_amount,
                account=account,
                reason=Reason.PREFLIGHT_FAILED,
                message=message,
            )

        return BalanceCheck(
            sufficient=True,
            balance=balance,
            required=required_amount,
            account=account,
        )
