# app/x402/replay.py
"""
Replay protection for payment authorizations.

A (payer, nonce) pair may be consumed exactly once. The in-memory guard
protects a single process; in a multi-instance deployment the token
contract's own authorizationState check at settlement time remains the
authority, and this guard is only the fast path in front of it.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplayCheck:
    accepted: bool
    payer: str
    nonce: str


def replay_key(payer: str, nonce: str) -> Tuple[str, str]:
    """Normalize a (payer, nonce) pair; addresses and hex are case-insensitive."""
    return (payer.lower(), nonce.lower())


class ReplayGuard(ABC):
    """Interface for single-use nonce stores."""

    @abstractmethod
    def consume(self, payer: str, nonce: str, expires_at: Optional[int] = None) -> ReplayCheck:
        """
        Atomically mark (payer, nonce) as used.

        Returns accepted=True for the first caller only; every later or
        concurrent caller with the same pair gets accepted=False.
        """

    @abstractmethod
    def is_consumed(self, payer: str, nonce: str) -> bool:
        """Read-only membership check."""


class InMemoryReplayGuard(ReplayGuard):
    """
    Process-local replay guard.

    Check-and-insert happens inside one critical section, so two requests
    racing on the same pair can never both be accepted.
    """

    def __init__(self, cleanup_interval_seconds: int = 300, clock=time.time):
        self._entries: Dict[Tuple[str, str], Optional[int]] = {}
        self._lock = threading.Lock()
        self._cleanup_interval = cleanup_interval_seconds
        self._clock = clock
        self._last_cleanup = clock()

    def consume(self, payer: str, nonce: str, expires_at: Optional[int] = None) -> ReplayCheck:
        key = replay_key(payer, nonce)
        now = self._clock()

        with self._lock:
            self._maybe_cleanup(now)
            if key in self._entries:
                logger.warning(f"x402: nonce replay rejected for payer {payer}: {nonce}")
                return ReplayCheck(accepted=False, payer=payer, nonce=nonce)
            self._entries[key] = expires_at

        return ReplayCheck(accepted=True, payer=payer, nonce=nonce)

    def is_consumed(self, payer: str, nonce: str) -> bool:
        with self._lock:
            return replay_key(payer, nonce) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def reset(self) -> None:
        """Forget all consumed nonces (useful for testing)."""
        with self._lock:
            self._entries.clear()

    def _maybe_cleanup(self, now: float) -> None:
        """
        Drop entries whose authorization window has closed.

        An expired authorization can no longer settle on-chain, so its
        nonce no longer needs guarding. Caller must hold the lock.
        """
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now

        expired = [
            key for key, expires_at in self._entries.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            del self._entries[key]

        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired nonce entries")
