# pipeline/audit.py
# ============================================================================
# BEAN CHECKOUT BACKEND — AUDIT TRAIL
# ============================================================================
# Every significant webhook outcome flows through here: one structured log
# line plus one append to the audit log.
# ============================================================================

from typing import Any, Dict, Optional

import structlog

from config import short_id
from schemas.commerce import AuditEventType, AuditLogEntry, Severity
from storage.interfaces import IAuditLog

logger = structlog.get_logger(component="audit")


async def emit_audit(
    audit_log: IAuditLog,
    event_type: AuditEventType,
    payment_reference: Optional[str] = None,
    owner_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    severity: Severity = "INFO",
) -> AuditLogEntry:
    """
    Record an audit entry.

    Only the 8-character owner prefix is written; the full identity stays
    in the order rows. A failed append is logged and does not undo the
    business effect that was already committed.
    """
    entry = AuditLogEntry(
        event_type=event_type,
        payment_reference=payment_reference,
        owner_hint=short_id(owner_id),
        payload=payload or {},
        severity=severity,
    )

    log_method = getattr(logger, severity.lower().replace("warn", "warning"), logger.info)
    log_method(
        "audit_event",
        event_type=event_type.value,
        payment_reference=payment_reference,
        user=entry.owner_hint,
    )

    try:
        await audit_log.append(entry)
    except Exception as e:
        logger.error("audit_append_failed", event_type=event_type.value, error=str(e))

    return entry
