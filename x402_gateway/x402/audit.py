# x402_gateway/x402/audit.py
"""
Audit logging for x402 payments.

Every challenge, verification, settlement and failure on a gated endpoint
is appended to a JSON-lines file so payments can be reconciled against the
chain afterwards.

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH

Writing never raises: an audit failure is logged and the request proceeds.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from x402_gateway.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECORDED = "payment_recorded"
    DEMO_PAYMENT = "demo_payment"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


def generate_request_id() -> str:
    """Short id correlating the events of one request."""
    return uuid.uuid4().hex[:8]


def get_audit_log_path() -> Path:
    return Path(settings.X402_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data,
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an event to the audit log.

    Returns:
        The request_id used for this event, or None on error
    """
    event = create_audit_event(event_type, data, client_ip, wallet_address, request_id)

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except OSError as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


def log_payment_required_sent(
    client_ip: str,
    invoice_id: str,
    amount: str,
    token: str,
    network: str,
    resource: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 challenge."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={
            "invoice_id": invoice_id,
            "amount": amount,
            "token": token,
            "network": network,
            "resource": resource,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_verified(
    client_ip: str,
    payment_method: str,
    network: str,
    payer: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VERIFIED,
        data={
            "payment_method": payment_method,
            "network": network,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_payment_settled(
    client_ip: str,
    payer: Optional[str],
    transaction_hash: Optional[str],
    token: str,
    network: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_SETTLED,
        data={
            "transaction_hash": transaction_hash,
            "token": token,
            "network": network,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_payment_failed(
    client_ip: str,
    reason: str,
    stage: str,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a payment rejected at decode, verify or settle stage."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_FAILED,
        data={
            "reason": reason,
            "stage": stage,
        },
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )


def log_payment_recorded(
    client_ip: str,
    payer: Optional[str],
    transaction_hash: Optional[str],
    token: str,
    amount: str,
    payment_method: str,
    network: str,
    endpoint: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a paid resource served by a downstream handler."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_RECORDED,
        data={
            "transaction_hash": transaction_hash,
            "token": token,
            "amount": amount,
            "payment_method": payment_method,
            "network": network,
            "endpoint": endpoint,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_demo_payment(
    client_ip: str,
    payer: Optional[str],
    transaction_hash: Optional[str],
    token: str,
    success: bool,
    error_reason: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.DEMO_PAYMENT,
        data={
            "success": success,
            "transaction_hash": transaction_hash,
            "token": token,
            "error_reason": error_reason,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_rate_limited(
    client_ip: str,
    path: str,
    requests_made: int,
    limit: int,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.RATE_LIMITED,
        data={
            "path": path,
            "requests_made": requests_made,
            "limit": limit,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_error(
    client_ip: str,
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        client_ip=client_ip,
        request_id=request_id
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    client_ip: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Read entries from the audit log, most recent first.

    Malformed lines are skipped.
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
