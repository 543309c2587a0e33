"""Webhook service - idempotency ledger and inbound event store"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.webhook_event import WebhookEvent, WEBHOOK_EVENT_STATUSES
from app.services.storage.payload_archive import PayloadArchive

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdempotencyCheck:
    is_duplicate: bool
    existing_id: Optional[str] = None
    existing_status: Optional[str] = None
    existing_payload_hash: Optional[str] = None


@dataclass(frozen=True)
class StoreResult:
    id: Optional[str]
    duplicate: bool


# ============================================================================
# IDEMPOTENCY
# ============================================================================

def check_webhook_idempotency(db: Session, provider: str, event_id: str) -> IdempotencyCheck:
    """Look up (provider, event_id) in the event store

    A hit means the delivery was already accepted once and must not be
    reprocessed. The unique constraint on the table is what makes this
    authoritative under concurrency; see store_webhook_event.
    """
    existing = db.query(WebhookEvent).filter(
        WebhookEvent.provider == provider,
        WebhookEvent.event_id == event_id
    ).first()

    if not existing:
        return IdempotencyCheck(is_duplicate=False)

    return IdempotencyCheck(
        is_duplicate=True,
        existing_id=existing.id,
        existing_status=existing.status,
        existing_payload_hash=existing.payload_hash
    )


# ============================================================================
# EVENT STORE
# ============================================================================

def store_webhook_event(
    db: Session,
    provider: str,
    event_id: str,
    event_type: str,
    payload_hash: str,
    org_id: Optional[str] = None,
    payload_pointer: Optional[str] = None,
    status: str = "processing"
) -> StoreResult:
    """Insert the event row before any reconciliation starts

    Two concurrent deliveries of the same event can both pass the idempotency
    read; the loser's insert violates uq_webhook_events_provider_event and is
    reported as a duplicate instead of an error.
    """
    if status not in WEBHOOK_EVENT_STATUSES:
        raise ValueError(f"Invalid webhook event status: {status}")

    event = WebhookEvent(
        provider=provider,
        event_id=event_id,
        event_type=event_type,
        org_id=org_id,
        payload_hash=payload_hash,
        payload_pointer=payload_pointer,
        status=status,
        attempts=1
    )
    db.add(event)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Webhook event {provider}/{event_id} inserted concurrently, treating as duplicate")
        return StoreResult(id=None, duplicate=True)

    db.refresh(event)
    return StoreResult(id=event.id, duplicate=False)


def mark_webhook_processed(
    db: Session,
    webhook_event_id: str,
    status: str = "processed",
    error_message: Optional[str] = None
) -> Optional[WebhookEvent]:
    """Move an event to its terminal state and stamp processed_at"""
    if status not in ("processed", "failed"):
        raise ValueError(f"Invalid terminal status: {status}")

    event = db.query(WebhookEvent).filter(WebhookEvent.id == webhook_event_id).first()
    if not event:
        logger.warning(f"Cannot mark unknown webhook event {webhook_event_id} as {status}")
        return None

    event.status = status
    event.error_message = error_message
    event.processed_at = datetime.now(timezone.utc)
    db.commit()
    return event


def quarantine_webhook_event(db: Session, webhook_event_id: str, reason: str) -> Optional[WebhookEvent]:
    """Park an event that cannot be processed as stored (e.g. unparsable archive)"""
    event = db.query(WebhookEvent).filter(WebhookEvent.id == webhook_event_id).first()
    if not event:
        return None

    event.status = "quarantined"
    event.error_message = reason
    db.commit()
    logger.warning(f"Quarantined webhook event {event.provider}/{event.event_id}: {reason}")
    return event


def begin_webhook_retry(db: Session, webhook_event_id: str) -> Optional[WebhookEvent]:
    """Put an existing event back into processing for a manual replay"""
    event = db.query(WebhookEvent).filter(WebhookEvent.id == webhook_event_id).first()
    if not event:
        return None

    event.status = "processing"
    event.error_message = None
    event.attempts = (event.attempts or 0) + 1
    db.commit()
    db.refresh(event)
    return event


def set_webhook_event_org(db: Session, webhook_event_id: str, org_id: str):
    db.query(WebhookEvent).filter(WebhookEvent.id == webhook_event_id).update(
        {WebhookEvent.org_id: org_id}, synchronize_session=False
    )
    db.commit()


def set_webhook_event_pointer(db: Session, webhook_event_id: str, payload_pointer: str):
    """Record where the raw body was archived"""
    db.query(WebhookEvent).filter(WebhookEvent.id == webhook_event_id).update(
        {WebhookEvent.payload_pointer: payload_pointer}, synchronize_session=False
    )
    db.commit()


def get_webhook_event(db: Session, webhook_event_id: str) -> Optional[WebhookEvent]:
    return db.query(WebhookEvent).filter(WebhookEvent.id == webhook_event_id).first()


def list_webhook_events(
    db: Session,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0
) -> List[WebhookEvent]:
    """Newest-first page of stored events, optionally filtered by status"""
    query = db.query(WebhookEvent)
    if status:
        query = query.filter(WebhookEvent.status == status)
    return query.order_by(WebhookEvent.created_at.desc()).offset(offset).limit(limit).all()


# ============================================================================
# RETENTION
# ============================================================================

def purge_webhook_events(
    db: Session,
    older_than_days: int,
    archive: Optional[PayloadArchive] = None,
    now: Optional[datetime] = None
) -> int:
    """Hard-delete processed events older than the retention window

    Failed, quarantined and in-flight rows are kept regardless of age. Archived
    payloads of purged rows are removed from R2 when an archive is given.

    Returns:
        Number of rows deleted
    """
    if older_than_days < 1:
        raise ValueError("older_than_days must be at least 1")

    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=older_than_days)
    expired = db.query(WebhookEvent).filter(
        WebhookEvent.status == "processed",
        WebhookEvent.created_at < cutoff
    ).all()

    if not expired:
        return 0

    if archive is not None:
        for event in expired:
            if event.payload_pointer:
                archive.delete(event.payload_pointer)

    expired_ids = [event.id for event in expired]
    deleted = db.query(WebhookEvent).filter(WebhookEvent.id.in_(expired_ids)).delete(synchronize_session=False)
    db.commit()

    logger.info(f"Purged {deleted} processed webhook events older than {older_than_days} days")
    return deleted
