# relay/admission/audit.py
"""
Audit logging for paid event admission.

Every step of a charge's life is written here so operators can reconcile
payments with stored events:
- Event received / accepted / rejected
- Charge created or reused for a resubmitted event
- Payment provider failures
- Webhook deliveries and charge resolutions
- Paid events published to the store
- Store write failures after payment (needs manual reconciliation)

Log format: JSON lines (one record per line)
Log location: Configured via AUDIT_LOG_PATH
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum

from relay.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit records that can be logged."""
    EVENT_RECEIVED = "event_received"
    EVENT_ACCEPTED = "event_accepted"
    EVENT_REJECTED = "event_rejected"
    CHARGE_CREATED = "charge_created"
    CHARGE_REUSED = "charge_reused"
    GATEWAY_FAILED = "gateway_failed"
    WEBHOOK_RECEIVED = "webhook_received"
    CHARGE_RESOLVED = "charge_resolved"
    CHARGE_EXPIRED = "charge_expired"
    EVENT_PUBLISHED = "event_published"
    STORE_WRITE_FAILED = "store_write_failed"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a short unique id for correlating records."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    return Path(settings.AUDIT_LOG_PATH)


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
    event_id: Optional[str] = None,
    charge_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Build an audit record.

    Args:
        event_type: Type of record
        data: Record-specific data
        event_id: Relay event the record is about (if any)
        charge_id: Provider charge the record is about (if any)
        request_id: Correlation id (generated when omitted)
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "event_id": event_id,
        "charge_id": charge_id,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    event_id: Optional[str] = None,
    charge_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append a record to the audit log.

    Returns:
        The request_id used for this record, or None on error
    """
    record = create_audit_event(
        event_type=event_type,
        data=data,
        event_id=event_id,
        charge_id=charge_id,
        request_id=request_id
    )

    try:
        ensure_audit_log_directory()

        with open(get_audit_log_path(), "a") as f:
            f.write(json.dumps(record) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{record['request_id']}]")
        return record["request_id"]

    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific record types

def log_event_received(event_id: str, kind: int, pubkey: str, gated: bool) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.EVENT_RECEIVED,
        data={"kind": kind, "pubkey": pubkey, "gated": gated},
        event_id=event_id
    )


def log_event_accepted(event_id: str, kind: int) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.EVENT_ACCEPTED,
        data={"kind": kind},
        event_id=event_id
    )


def log_event_rejected(event_id: str, reason: str, code: str) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.EVENT_REJECTED,
        data={"reason": reason, "code": code},
        event_id=event_id
    )


def log_charge_created(event_id: str, charge_id: str, amount_sats: int) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.CHARGE_CREATED,
        data={"amount_sats": amount_sats},
        event_id=event_id,
        charge_id=charge_id
    )


def log_charge_reused(event_id: str, charge_id: str) -> Optional[str]:
    """Log a resubmission answered with the already pending charge."""
    return log_audit_event(
        event_type=AuditEventType.CHARGE_REUSED,
        data={},
        event_id=event_id,
        charge_id=charge_id
    )


def log_gateway_failed(event_id: str, stage: str, error_message: str) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.GATEWAY_FAILED,
        data={"stage": stage, "error_message": error_message},
        event_id=event_id
    )


def log_webhook_received(reference: str, provider_status: Optional[str]) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.WEBHOOK_RECEIVED,
        data={"reference": reference, "provider_status": provider_status}
    )


def log_charge_resolved(event_id: str, charge_id: str, status: str) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.CHARGE_RESOLVED,
        data={"status": status},
        event_id=event_id,
        charge_id=charge_id
    )


def log_charge_expired(event_id: str, charge_id: Optional[str], age_seconds: float) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.CHARGE_EXPIRED,
        data={"age_seconds": round(age_seconds, 1)},
        event_id=event_id,
        charge_id=charge_id
    )


def log_event_published(event_id: str, charge_id: str) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.EVENT_PUBLISHED,
        data={},
        event_id=event_id,
        charge_id=charge_id
    )


def log_store_write_failed(
    event_id: str,
    charge_id: str,
    error_message: str,
    event_json: str
) -> Optional[str]:
    """
    Log a paid event that could not be stored.

    The full event is kept in the record so it can be replayed by hand.
    """
    return log_audit_event(
        event_type=AuditEventType.STORE_WRITE_FAILED,
        data={
            "error_message": error_message,
            "event": json.loads(event_json),
            "requires_reconciliation": True,
        },
        event_id=event_id,
        charge_id=charge_id
    )


def log_error(
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    event_id: Optional[str] = None,
    charge_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        event_id=event_id,
        charge_id=charge_id
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    event_id: Optional[str] = None
) -> list:
    """
    Read records from the audit log.

    Args:
        max_entries: Maximum number of records to return
        event_type: Filter by record type (optional)
        event_id: Filter by relay event id (optional)

    Returns:
        List of audit records (most recent first)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    records = []
    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and record.get("event_type") != event_type.value:
                    continue
                if event_id and record.get("event_id") != event_id:
                    continue
                records.append(record)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(records))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """
    Summarise the audit log.

    Returns:
        Dict with record counts by type, first/last timestamps and the
        number of paid events still awaiting reconciliation
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
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                total += 1
                record_type = record.get("event_type", "unknown")
                events_by_type[record_type] = events_by_type.get(record_type, 0) + 1

                timestamp = record.get("timestamp")
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
        "needs_reconciliation": events_by_type.get(AuditEventType.STORE_WRITE_FAILED.value, 0),
        "log_path": str(log_path),
        "log_exists": True,
    }
