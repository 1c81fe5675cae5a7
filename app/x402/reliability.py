# app/x402/reliability.py
"""
Per-provider reliability statistics.

Every settlement attempt that reached the downstream service records one
observation: whether its result was accepted, and how long the service
took. The score is advisory; it orders candidate providers but never
blocks a request.
"""
import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

SUCCESS_WEIGHT = 0.7
LATENCY_WEIGHT = 0.3
LATENCY_CEILING_MS = 5000.0


@dataclass
class ProviderStat:
    success_count: int = 0
    failure_count: int = 0
    total_latency_ms: float = 0.0

    @property
    def total(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.success_count / self.total

    @property
    def average_latency_ms(self) -> float:
        if self.total == 0:
            return 0.0
        return self.total_latency_ms / self.total

    @property
    def score(self) -> float:
        if self.total == 0:
            return 1.0
        latency_component = max(0.0, 1.0 - self.average_latency_ms / LATENCY_CEILING_MS)
        return SUCCESS_WEIGHT * self.success_rate + LATENCY_WEIGHT * latency_component


class ProviderReliabilityTracker:
    """
    Thread-safe provider statistics with optional JSON persistence.

    Args:
        persist_path: JSON file to load at start-up and rewrite after each
            record. Empty or None disables persistence.
    """

    def __init__(self, persist_path: Optional[str] = None):
        self.persist_path = persist_path or None
        self._stats: Dict[str, ProviderStat] = {}
        self._lock = threading.Lock()
        if self.persist_path:
            self._load()

    def record(self, provider_id: str, success: bool, latency_ms: float) -> None:
        with self._lock:
            stat = self._stats.setdefault(provider_id, ProviderStat())
            if success:
                stat.success_count += 1
            else:
                stat.failure_count += 1
            stat.total_latency_ms += max(0.0, float(latency_ms))
            if self.persist_path:
                self._save()

        logger.debug(
            f"Provider {provider_id}: {'success' if success else 'failure'} in {latency_ms:.0f}ms"
        )

    def get(self, provider_id: str) -> ProviderStat:
        with self._lock:
            stat = self._stats.get(provider_id)
            return ProviderStat(**asdict(stat)) if stat else ProviderStat()

    def score(self, provider_id: str) -> float:
        return self.get(provider_id).score

    def rank(self, provider_ids: Iterable[str]) -> List[str]:
        """Order candidate providers best-first (stable for ties)."""
        return sorted(provider_ids, key=self.score, reverse=True)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                provider_id: {
                    "success_count": stat.success_count,
                    "failure_count": stat.failure_count,
                    "total": stat.total,
                    "success_rate": round(stat.success_rate, 4),
                    "average_latency_ms": round(stat.average_latency_ms, 1),
                    "score": round(stat.score, 4),
                }
                for provider_id, stat in self._stats.items()
            }

    def _load(self) -> None:
        if not os.path.exists(self.persist_path):
            return
        try:
            with open(self.persist_path, "r") as f:
                raw = json.load(f)
            self._stats = {
                provider_id: ProviderStat(
                    success_count=int(values.get("success_count", 0)),
                    failure_count=int(values.get("failure_count", 0)),
                    total_latency_ms=float(values.get("total_latency_ms", 0.0)),
                )
                for provider_id, values in raw.items()
            }
            logger.info(f"Loaded stats for {len(self._stats)} providers from {self.persist_path}")
        except (OSError, ValueError, AttributeError) as e:
            logger.error(f"Failed to load provider stats from {self.persist_path}: {e}")

    def _save(self) -> None:
        """Write stats to disk. Caller must hold the lock."""
        try:
            directory = os.path.dirname(self.persist_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            tmp_path = f"{self.persist_path}.tmp"
            with open(tmp_path, "w") as f:
                json.dump({pid: asdict(stat) for pid, stat in self._stats.items()}, f)
            os.replace(tmp_path, self.persist_path)
        except OSError as e:
            logger.error(f"Failed to persist provider stats: {e}")
