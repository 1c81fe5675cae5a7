# app/x402/audit.py
"""
Audit logging for x402 settlement attempts.

Every attempt leaves a trail in the audit log so that payments can be
reconciled against chain state and disputes can be resolved.

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH

Events logged:
- 402 returned (resource, price, network, recipient)
- Payment verified (payer, amount, nonce)
- Payment rejected (reason, stage)
- Preflight check (executor gas, payer funds)
- Service executed (provider, status, latency)
- Payment settled (transaction hash, network)
- Payment voided (reason, final state)
- Reconciliation required (irregular settlement)
- Error (type, context)
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_REJECTED = "payment_rejected"
    PREFLIGHT_CHECK = "preflight_check"
    SERVICE_EXECUTED = "service_executed"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_VOIDED = "payment_voided"
    RECONCILIATION_REQUIRED = "reconciliation_required"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a unique request ID for tracking."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    """Get the path to the audit log file."""
    return Path(settings.X402_AUDIT_LOG_PATH)


def ensure_audit_log_directory() -> bool:
    """
    Ensure the audit log directory exists.

    Returns:
        True if directory exists or was created, False on error
    """
    try:
        log_dir = get_audit_log_path().parent
        if not log_dir.exists():
            log_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created audit log directory: {log_dir}")
        return True
    except OSError as e:
        logger.error(f"Failed to create audit log directory: {e}")
        return False


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        client_ip: Client IP address (if available)
        wallet_address: Payer wallet address (if available)
        request_id: Attempt identifier (if available)

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the x402 audit log.

    Write failures are logged and swallowed; auditing never breaks a payment.

    Returns:
        The request_id used for this event, or None on error
    """
    event = create_audit_event(
        event_type=event_type,
        data=data,
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )

    try:
        ensure_audit_log_directory()
        with open(get_audit_log_path(), "a") as f:
            f.write(json.dumps(event, default=str) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_payment_required_sent(
    client_ip: str,
    resource: str,
    amount: str,
    network: str,
    pay_to: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 Payment Required response event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={
            "resource": resource,
            "amount": amount,
            "network": network,
            "pay_to": pay_to,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_verified(
    client_ip: str,
    payer: str,
    amount: int,
    nonce: str,
    network: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an authorization that passed off-chain verification."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VERIFIED,
        data={
            "amount": str(amount),
            "nonce": nonce,
            "network": network,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_payment_rejected(
    client_ip: str,
    reason: str,
    stage: str,
    message: str,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a payment rejected during verification."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REJECTED,
        data={
            "reason": reason,
            "stage": stage,
            "message": message,
        },
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )


def log_preflight_check(
    client_ip: str,
    executor_ok: bool,
    payer_ok: Optional[bool],
    balances: Dict[str, Any],
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a pre-flight balance check event."""
    return log_audit_event(
        event_type=AuditEventType.PREFLIGHT_CHECK,
        data={
            "executor_ok": executor_ok,
            "payer_ok": payer_ok,
            "balances": balances,
            "can_accept": executor_ok and payer_ok is not False,
        },
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )


def log_service_executed(
    client_ip: str,
    provider: str,
    status_code: Optional[int],
    latency_ms: float,
    accepted: bool,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log the downstream call and whether its result was accepted."""
    return log_audit_event(
        event_type=AuditEventType.SERVICE_EXECUTED,
        data={
            "provider": provider,
            "status_code": status_code,
            "latency_ms": round(latency_ms, 1),
            "accepted": accepted,
        },
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )


def log_payment_settled(
    client_ip: str,
    payer: str,
    transaction_hash: Optional[str],
    network: str,
    amount: int,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a payment settlement event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_SETTLED,
        data={
            "transaction_hash": transaction_hash,
            "network": network,
            "amount": str(amount),
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_payment_voided(
    client_ip: str,
    reason: str,
    stage: str,
    message: str,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an attempt that ended without moving funds."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VOIDED,
        data={
            "reason": reason,
            "stage": stage,
            "message": message,
        },
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )


def log_reconciliation_required(
    client_ip: str,
    payer: str,
    reason: str,
    message: str,
    transaction_hash: Optional[str],
    nonce: str,
    amount: int,
    network: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an irregular settlement that must be checked against chain state."""
    return log_audit_event(
        event_type=AuditEventType.RECONCILIATION_REQUIRED,
        data={
            "reason": reason,
            "message": message,
            "transaction_hash": transaction_hash,
            "nonce": nonce,
            "amount": str(amount),
            "network": network,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_error(
    client_ip: str,
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an error event."""
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    client_ip: Optional[str] = None
) -> list:
    """
    Read entries from the audit log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        client_ip: Filter by client IP (optional)

    Returns:
        List of audit events (most recent first)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    events = []
    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                if client_ip and event.get("client_ip") != client_ip:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """
    Get statistics from the audit log.

    Returns:
        Dict with event counts and date range
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return {
            "total_events": 0,
            "events_by_type": {},
            "log_path": str(log_path),
            "log_exists": False,
        }

    events_by_type: Dict[str, int] = {}
    total = 0
    first_timestamp = None
    last_timestamp = None

    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                total += 1
                event_type = event.get("event_type", "unknown")
                events_by_type[event_type] = events_by_type.get(event_type, 0) + 1

                timestamp = event.get("timestamp")
                if timestamp:
                    if first_timestamp is None:
                        first_timestamp = timestamp
                    last_timestamp = timestamp
    except OSError as e:
        logger.error(f"Failed to get audit stats: {e}")
        return {
            "total_events": 0,
            "events_by_type": {},
            "log_path": str(log_path),
            "log_exists": False,
            "error": str(e),
        }

    return {
        "total_events": total,
        "events_by_type": events_by_type,
        "first_event": first_timestamp,
        "last_event": last_timestamp,
        "log_path": str(log_path),
        "log_exists": True,
    }
