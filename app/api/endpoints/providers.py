# app/api/endpoints/providers.py
from fastapi import APIRouter, Depends
from typing import Any
import logging

from app.api.dependencies import get_tracker
from app.api.models.payment import ProviderStatsResponse
from app.x402.reliability import ProviderReliabilityTracker

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/providers/stats", response_model=ProviderStatsResponse, summary="Provider Reliability Statistics")
async def get_provider_stats(
    tracker: ProviderReliabilityTracker = Depends(get_tracker)
) -> Any:
    """
    Per-provider success and latency statistics with the derived score.

    The ranking is advisory; it never blocks a request.
    """
    snapshot = tracker.snapshot()
    return ProviderStatsResponse(providers=snapshot, ranking=tracker.rank(snapshot.keys()))
