# app/api/endpoints/wallet.py
from fastapi import APIRouter, Depends, HTTPException, Path
from typing import Optional
import logging
import re

from app.api.dependencies import get_orchestrator
from app.api.models.payment import BalanceResponse
from app.x402.balance import wei_to_eth
from app.x402.orchestrator import SettlementOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()

_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")


@router.get("/wallet/{address}/balance", response_model=BalanceResponse)
async def get_wallet_balance(
    address: str = Path(..., description="Account address to inspect"),
    orchestrator: Optional[SettlementOrchestrator] = Depends(get_orchestrator),
) -> BalanceResponse:
    """
    Get the native and payment-token balance of an address.

    Raises:
        HTTPException: 400 for a malformed address, 503 before start-up,
            502 if the chain RPC cannot be reached
    """
    if not _ADDRESS.match(address):
        raise HTTPException(status_code=400, detail=f"Not a valid address: {address}")
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Chain access is not available yet")

    try:
        native = orchestrator.gas_oracle.balance_of(address)
        token = orchestrator.token_oracle.balance_of(address)
    except Exception as e:
        logger.error(f"Failed to fetch balances for {address}: {e}")
        raise HTTPException(
            status_code=502,
            detail="Failed to fetch balances from the chain RPC"
        )

    logger.info(f"Balance endpoint accessed for {address}")
    return BalanceResponse(
        address=address,
        nativeBalanceWei=str(native),
        nativeBalanceEth=wei_to_eth(native),
        tokenAsset=orchestrator.token_oracle.asset,
        tokenBalance=str(token),
    )
