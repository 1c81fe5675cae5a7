# app/api/dependencies.py
"""
FastAPI dependencies for the long-lived settlement components.

The application lifespan stores the orchestrator and tracker on app.state;
tests replace these dependencies through app.dependency_overrides.
"""
from typing import Optional

from fastapi import HTTPException, Request, status

from app.x402.orchestrator import SettlementOrchestrator
from app.x402.reliability import ProviderReliabilityTracker


def get_orchestrator(request: Request) -> Optional[SettlementOrchestrator]:
    """The running orchestrator, or None before start-up has completed."""
    return getattr(request.app.state, "orchestrator", None)


def get_tracker(request: Request) -> ProviderReliabilityTracker:
    tracker = getattr(request.app.state, "tracker", None)
    if tracker is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Provider statistics are not available yet"
        )
    return tracker
