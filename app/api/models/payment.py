# app/api/models/payment.py
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PaymentRejection(BaseModel):
    """
    Body returned when a paid request is voided.
    """
    paid: bool = False
    reason: Optional[str] = Field(None, description="Machine-readable reason key")
    message: Optional[str] = Field(None, description="Human-readable explanation")
    retryable: bool = Field(False, description="Whether re-signing with a fresh nonce may succeed")


class PaymentChallengeResponse(BaseModel):
    """
    Body of a 402 answer: the accepted payment requirements, plus the
    rejection when a presented payment failed verification.
    """
    x402Version: int
    error: str
    accepts: List[Dict[str, Any]]
    paid: Optional[bool] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    retryable: Optional[bool] = None


class ProviderStatsEntry(BaseModel):
    success_count: int
    failure_count: int
    total: int
    success_rate: float
    average_latency_ms: float
    score: float


class ProviderStatsResponse(BaseModel):
    """
    Response model for the provider statistics endpoint.
    """
    providers: Dict[str, ProviderStatsEntry]
    ranking: List[str] = Field(description="Provider ids ordered best-first by score")


class ReconciliationEntry(BaseModel):
    timestamp: str
    request_id: str
    wallet_address: Optional[str] = None
    data: Dict[str, Any]


class ReconciliationResponse(BaseModel):
    """
    Irregular settlements awaiting reconciliation, most recent first.
    """
    entries: List[ReconciliationEntry]
    total_count: int


class BalanceResponse(BaseModel):
    """
    Response model for the wallet balance endpoint.
    """
    address: str
    nativeBalanceWei: str
    nativeBalanceEth: float
    tokenAsset: str
    tokenBalance: str
