"""Audit service - append-only audit trail for billing and webhook decisions"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.logging import audit_logger
from app.models.audit_log import AuditLog

logger = logging.getLogger(__name__)

MAX_AUDIT_PAGE_SIZE = 200


def write_audit_log(
    db: Session,
    org_id: str,
    action: str,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    actor_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[AuditLog]:
    """Append an audit entry

    Audit writes must never break the flow that triggered them: any failure is
    logged, the session is rolled back and None is returned.

    Args:
        db: Database session
        org_id: Organization the entry belongs to
        action: Dotted action name, e.g. ``webhook.stripe.invoice.paid``
        target_type: Kind of object acted upon (``webhook``, ``subscription``)
        target_id: Identifier of that object
        metadata: Free-form JSON details
        actor_id: Acting user, None for system actions
        request_id: Correlation id of the triggering request

    Returns:
        The stored AuditLog, or None if the write failed
    """
    if not org_id or not action:
        logger.error(f"Refusing audit entry without org_id/action (action={action!r}, org_id={org_id!r})")
        return None

    try:
        entry = AuditLog(
            org_id=org_id,
            actor_id=actor_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            metadata_json=metadata or {},
            request_id=request_id
        )
        db.add(entry)
        db.commit()
        db.refresh(entry)
        audit_logger.info(f"org={org_id} action={action} target={target_type}:{target_id} request_id={request_id}")
        return entry
    except Exception as e:
        logger.error(
            f"Failed to write audit log (org_id={org_id}, action={action}, request_id={request_id}): {e}",
            exc_info=True
        )
        try:
            db.rollback()
        except Exception as rollback_error:
            logger.error(f"Rollback after audit failure also failed: {rollback_error}")
        return None


def get_audit_logs(db: Session, org_id: str, limit: int = 50, offset: int = 0) -> List[AuditLog]:
    """Audit entries for an org, newest first"""
    limit = max(1, min(limit, MAX_AUDIT_PAGE_SIZE))
    offset = max(0, offset)
    return (
        db.query(AuditLog)
        .filter(AuditLog.org_id == org_id)
        .order_by(AuditLog.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
