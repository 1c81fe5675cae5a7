# app/api/endpoints/gateway.py
from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, status
from fastapi.responses import JSONResponse, Response
from typing import Any, Optional
import logging

from app.core.config import settings
from app.api.dependencies import get_orchestrator
from app.api.models.payment import (
    PaymentChallengeResponse,
    PaymentRejection,
    ReconciliationEntry,
    ReconciliationResponse,
)
from app.x402 import audit
from app.x402.challenge import (
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    create_402_response,
    create_payment_requirements,
    encode_payment_response,
    get_client_ip,
)
from app.x402.errors import Reason
from app.x402.orchestrator import SettlementOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)

# HTTP status for voided attempts, by reason stage
STAGE_STATUS = {
    "preflight": status.HTTP_503_SERVICE_UNAVAILABLE,
    "service": status.HTTP_502_BAD_GATEWAY,
}


@router.get(
    "/x402/reconciliation",
    response_model=ReconciliationResponse,
    summary="List Settlements Awaiting Reconciliation"
)
async def list_reconciliation_cases(
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of entries to return")
) -> Any:
    """
    Returns irregular settlements (rejected on-chain or unconfirmed after the
    service was delivered), most recent first.
    """
    events = audit.read_audit_log(
        max_entries=limit,
        event_type=audit.AuditEventType.RECONCILIATION_REQUIRED,
    )
    entries = [
        ReconciliationEntry(
            timestamp=event.get("timestamp", ""),
            request_id=event.get("request_id", ""),
            wallet_address=event.get("wallet_address"),
            data=event.get("data", {}),
        )
        for event in events
    ]
    return ReconciliationResponse(entries=entries, total_count=len(entries))


@router.post(
    "/x402/{resource_id}",
    summary="Call a Paid Resource",
    responses={
        402: {
            "model": PaymentChallengeResponse,
            "description": "Payment required, or the presented payment was rejected",
        },
        502: {
            "model": PaymentRejection,
            "description": "The downstream service failed or its result was rejected",
        },
        503: {
            "model": PaymentRejection,
            "description": "Pre-flight checks failed; no funds were moved",
        },
    },
)
async def call_paid_resource(
    request: Request,
    resource_id: str = Path(..., description="Catalog id of the paid resource", example="translate"),
    orchestrator: Optional[SettlementOrchestrator] = Depends(get_orchestrator),
) -> Response:
    """
    Serve a paid resource and settle the payment afterwards.

    Without an X-PAYMENT header the caller receives a 402 challenge naming
    the price, recipient and asset. With one, the payment is verified, the
    downstream service is called, its result is validated, and only then is
    the transfer settled on-chain.

    Raises:
        HTTPException: 404 if the resource id is unknown
    """
    resource = settings.X402_RESOURCES.get(resource_id)
    if resource is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown resource: {resource_id}"
        )

    client_ip = get_client_ip(request)
    requirement = create_payment_requirements(resource, str(request.url))
    payment_header = request.headers.get(X_PAYMENT_HEADER)

    if not payment_header:
        logger.info(f"x402: payment required for {resource_id} from {client_ip}")
        audit.log_payment_required_sent(
            client_ip=client_ip,
            resource=requirement.resource,
            amount=requirement.max_amount_required,
            network=requirement.network,
            pay_to=requirement.pay_to,
        )
        return create_402_response(requirement)

    if orchestrator is None:
        logger.error("x402: payment presented but no settlement orchestrator is running")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=PaymentRejection(
                reason=Reason.PREFLIGHT_FAILED.value,
                message="Settlement is not available on this gateway",
                retryable=True,
            ).model_dump(),
        )

    body = await request.body()
    outcome = await orchestrator.process(
        payment_header=payment_header,
        requirement=requirement,
        resource=resource,
        body=body,
        headers=dict(request.headers),
        client_ip=client_ip,
    )
    outcome_header = {X_PAYMENT_RESPONSE_HEADER: encode_payment_response(outcome.to_dict())}

    if outcome.paid:
        service = outcome.service_response
        return Response(
            content=service.body,
            status_code=service.status_code,
            media_type=service.content_type,
            headers=outcome_header,
        )

    if outcome.stage == "verification":
        return create_402_response(
            requirement,
            error_message=outcome.message or "Payment rejected",
            rejection=outcome.to_dict(),
        )

    return JSONResponse(
        status_code=STAGE_STATUS.get(outcome.stage, status.HTTP_502_BAD_GATEWAY),
        content=outcome.to_dict(),
        headers=outcome_header,
    )
