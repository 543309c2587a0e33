"""Stripe webhook pipeline: verify, de-duplicate, store, reconcile, notify, audit"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logging import webhook_logger, security_logger
from app.core.metrics import (
    webhook_events_counter, webhook_signature_failures_counter, webhook_payload_mismatch_counter
)
from app.core.otel import pipeline_span
from app.schemas.webhooks import SaleNotification
from app.services.audit_service import write_audit_log
from app.services.sale_notifier import NotifyResult, SaleNotifier
from app.services.signature_service import sha256_hex, verify_stripe_signature
from app.services.storage.payload_archive import PayloadArchive
from app.services.subscription_service import ReconcileResult, get_event_metadata, reconcile
from app.services.webhook_service import (
    begin_webhook_retry, check_webhook_idempotency, get_webhook_event, mark_webhook_processed,
    quarantine_webhook_event, set_webhook_event_org, set_webhook_event_pointer, store_webhook_event
)

logger = logging.getLogger(__name__)

PROVIDER = "stripe"

# Human-readable audit messages per event type
WEBHOOK_AUDIT_MESSAGES = {
    "checkout.session.completed": "Payment successful - plan upgraded",
    "customer.subscription.updated": "Subscription status updated",
    "customer.subscription.deleted": "Subscription canceled - downgraded to free plan",
    "invoice.payment_failed": "Payment failed - subscription may be at risk",
    "invoice.paid": "Invoice payment confirmed",
}


class WebhookError(Exception):
    """Base class for webhook pipeline errors"""


class WebhookSignatureError(WebhookError):
    """Signature missing, malformed, stale or wrong (HTTP 401)"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class WebhookPayloadError(WebhookError):
    """Body could not be parsed as a Stripe event (HTTP 400)"""


class WebhookReplayError(WebhookError):
    """Stored event cannot be replayed in its current state (HTTP 409)"""


@dataclass(frozen=True)
class WebhookOutcome:
    status: str  # processed | duplicate | failed | ignored
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    webhook_event_id: Optional[str] = None
    reconcile: Optional[ReconcileResult] = None
    notification: Optional[NotifyResult] = None
    error: Optional[str] = None


def parse_stripe_event(raw_body: bytes) -> Dict[str, Any]:
    """Decode the verified body; requires string ``id``/``type`` and an object under ``data``"""
    try:
        event = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise WebhookPayloadError(f"Invalid JSON body: {e}")

    if not isinstance(event, dict):
        raise WebhookPayloadError("Event must be a JSON object")
    if not isinstance(event.get("id"), str) or not event["id"]:
        raise WebhookPayloadError("Event is missing 'id'")
    if not isinstance(event.get("type"), str) or not event["type"]:
        raise WebhookPayloadError("Event is missing 'type'")

    data = event.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise WebhookPayloadError("Event is missing 'data.object'")

    return event


def _flag_payload_mismatch(event_id: str, stored_hash: Optional[str], payload_hash: str):
    if stored_hash and stored_hash != payload_hash:
        webhook_payload_mismatch_counter.labels(provider=PROVIDER).inc()
        security_logger.warning(
            f"Duplicate {PROVIDER} event {event_id} arrived with a different payload "
            f"(stored {stored_hash[:12]}..., received {payload_hash[:12]}...)"
        )


def process_stripe_webhook(
    db: Session,
    raw_body: bytes,
    signature_header: Optional[str],
    request_id: Optional[str] = None,
    trace_id: Optional[str] = None,
    archive: Optional[PayloadArchive] = None,
    notifier: Optional[SaleNotifier] = None,
    secret: Optional[str] = None,
    now: Optional[float] = None
) -> WebhookOutcome:
    """Run one Stripe delivery through the pipeline

    Handler failures are recorded on the event row and returned as a
    ``failed`` outcome rather than raised, so Stripe stops retrying errors that
    only a manual replay can fix.

    Args:
        db: Request-scoped database session
        raw_body: Request body exactly as received
        signature_header: Stripe-Signature header value
        request_id: Correlation id for logs, audit and the sale notification
        trace_id: Active trace id, forwarded to the sale notification
        archive: Raw payload archive; None skips archiving
        notifier: Sale notifier; None disables sale notifications
        secret: Signing secret override (defaults to STRIPE_WEBHOOK_SECRET)
        now: Unix time override for the signature tolerance check

    Returns:
        WebhookOutcome describing what happened

    Raises:
        WebhookSignatureError: Signature verification failed
        WebhookPayloadError: Body is not a usable Stripe event
    """
    check = verify_stripe_signature(
        raw_body,
        signature_header,
        settings.STRIPE_WEBHOOK_SECRET if secret is None else secret,
        tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        now=now
    )
    if not check.valid:
        webhook_signature_failures_counter.labels(provider=PROVIDER, reason=check.reason).inc()
        security_logger.warning(f"Stripe signature verification failed: {check.reason} (request_id={request_id})")
        raise WebhookSignatureError(check.reason)

    event = parse_stripe_event(raw_body)
    event_id = event["id"]
    event_type = event["type"]
    payload_hash = sha256_hex(raw_body)

    idempotency = check_webhook_idempotency(db, PROVIDER, event_id)
    if idempotency.is_duplicate:
        _flag_payload_mismatch(event_id, idempotency.existing_payload_hash, payload_hash)
        webhook_events_counter.labels(provider=PROVIDER, event_type=event_type, outcome="duplicate").inc()
        webhook_logger.info(
            f"Duplicate {PROVIDER} event {event_id} ({event_type}), stored as {idempotency.existing_status}"
        )
        return WebhookOutcome(
            status="duplicate", event_id=event_id, event_type=event_type,
            webhook_event_id=idempotency.existing_id
        )

    webhook_logger.info(f"Received {PROVIDER} event {event_id} ({event_type}) request_id={request_id}")

    event_object = event["data"]["object"]
    metadata_org_id = get_event_metadata(event_object).get("org_id")
    stored = store_webhook_event(
        db,
        provider=PROVIDER,
        event_id=event_id,
        event_type=event_type,
        payload_hash=payload_hash,
        org_id=str(metadata_org_id) if metadata_org_id else None,
        status="processing"
    )
    if stored.duplicate:
        existing = check_webhook_idempotency(db, PROVIDER, event_id)
        _flag_payload_mismatch(event_id, existing.existing_payload_hash, payload_hash)
        webhook_events_counter.labels(provider=PROVIDER, event_type=event_type, outcome="duplicate").inc()
        return WebhookOutcome(
            status="duplicate", event_id=event_id, event_type=event_type,
            webhook_event_id=existing.existing_id
        )

    # Archived only by the delivery that won the insert
    if archive is not None:
        payload_pointer = archive.store(PROVIDER, event_id, raw_body)
        if payload_pointer:
            set_webhook_event_pointer(db, stored.id, payload_pointer)

    return run_reconciliation(
        db, stored.id, event, request_id=request_id, trace_id=trace_id, notifier=notifier
    )


def run_reconciliation(
    db: Session,
    webhook_event_id: str,
    event: Dict[str, Any],
    request_id: Optional[str] = None,
    trace_id: Optional[str] = None,
    notifier: Optional[SaleNotifier] = None
) -> WebhookOutcome:
    """Reconcile a stored event, notify, mark it terminal and audit the result"""
    event_id = event["id"]
    event_type = event["type"]
    event_object = event["data"]["object"]
    metadata = get_event_metadata(event_object)

    try:
        with pipeline_span("stripe_webhook.reconcile", {"webhook.event_id": event_id, "webhook.event_type": event_type}):
            result = reconcile(db, event_type, event_object)
    except Exception as e:
        db.rollback()
        error_message = str(e) or type(e).__name__
        webhook_logger.error(
            f"Error processing {PROVIDER} event {event_id} ({event_type}): {error_message} request_id={request_id}",
            exc_info=True
        )
        mark_webhook_processed(db, webhook_event_id, status="failed", error_message=error_message)
        if metadata.get("org_id"):
            write_audit_log(
                db,
                org_id=str(metadata["org_id"]),
                action="webhook.processing_failed",
                target_type="webhook",
                target_id=event_id,
                metadata={
                    "event_type": event_type,
                    "site_id": metadata.get("site_id"),
                    "error": error_message,
                    "message": f"Webhook processing failed for {event_type}: {error_message}",
                },
                request_id=request_id
            )
        webhook_events_counter.labels(provider=PROVIDER, event_type=event_type, outcome="failed").inc()
        return WebhookOutcome(
            status="failed", event_id=event_id, event_type=event_type,
            webhook_event_id=webhook_event_id, error=error_message
        )

    notification = None
    if result.sale is not None and notifier is not None:
        notification = _send_sale_notification(notifier, result, request_id, trace_id)

    if result.org_id and result.org_id != metadata.get("org_id"):
        set_webhook_event_org(db, webhook_event_id, result.org_id)
    mark_webhook_processed(db, webhook_event_id, status="processed")

    if result.outcome in ("applied", "ignored") and result.org_id:
        write_audit_log(
            db,
            org_id=result.org_id,
            action=f"webhook.stripe.{event_type}",
            target_type="webhook",
            target_id=event_id,
            metadata={
                "event_type": event_type,
                "site_id": metadata.get("site_id"),
                "message": WEBHOOK_AUDIT_MESSAGES.get(event_type, f"Stripe webhook: {event_type}"),
            },
            request_id=request_id
        )

    status = "processed" if result.outcome in ("applied", "ignored") else "ignored"
    webhook_events_counter.labels(provider=PROVIDER, event_type=event_type, outcome=result.outcome).inc()
    webhook_logger.info(f"Processed {PROVIDER} event {event_id} ({event_type}): {result.outcome}")
    return WebhookOutcome(
        status=status, event_id=event_id, event_type=event_type,
        webhook_event_id=webhook_event_id, reconcile=result, notification=notification
    )


def _send_sale_notification(
    notifier: SaleNotifier,
    result: ReconcileResult,
    request_id: Optional[str],
    trace_id: Optional[str]
) -> Optional[NotifyResult]:
    sale = result.sale
    try:
        payload = SaleNotification(
            org_id=sale.org_id,
            site_id=sale.site_id,
            stripe_customer_id=sale.stripe_customer_id,
            stripe_subscription_id=sale.stripe_subscription_id,
            plan="paid",
            amount_cents=sale.amount_cents,
            currency=sale.currency,
            timestamp=datetime.now(timezone.utc).isoformat(),
            request_id=request_id,
            trace_id=trace_id
        )
        with pipeline_span("sale_notification.send", {"billing.org_id": sale.org_id}) as span:
            notification = notifier.notify(payload)
            span.set_attribute("sale_notification.attempts", notification.attempts)
            span.set_attribute("sale_notification.delivered", notification.delivered)
        return notification
    except Exception as e:
        # The sale is already committed; the notification is best-effort
        logger.warning(f"Sale notification for org {sale.org_id} not sent: {e}", exc_info=True)
        return None


def replay_webhook_event(
    db: Session,
    webhook_event_id: str,
    archive: Optional[PayloadArchive],
    request_id: Optional[str] = None,
    trace_id: Optional[str] = None,
    notifier: Optional[SaleNotifier] = None
) -> Optional[WebhookOutcome]:
    """Re-run a failed or stuck event from its archived raw body

    The signature timestamp is long expired by the time an operator replays,
    so the archived bytes are checked against the stored payload_hash instead.

    Returns:
        WebhookOutcome, or None if no such event exists

    Raises:
        WebhookReplayError: Event is not replayable (wrong state, archive missing or corrupt)
    """
    stored = get_webhook_event(db, webhook_event_id)
    if stored is None:
        return None

    if stored.status not in ("failed", "processing"):
        raise WebhookReplayError(f"Event in status '{stored.status}' cannot be replayed")

    if archive is None or not stored.payload_pointer:
        raise WebhookReplayError("No archived payload is available for this event")

    raw_body = archive.fetch(stored.payload_pointer)
    if raw_body is None:
        raise WebhookReplayError("Archived payload not found")

    if stored.payload_hash and sha256_hex(raw_body) != stored.payload_hash:
        quarantine_webhook_event(db, stored.id, "Archived payload does not match stored payload_hash")
        raise WebhookReplayError("Archived payload does not match stored payload_hash")

    try:
        event = parse_stripe_event(raw_body)
    except WebhookPayloadError as e:
        quarantine_webhook_event(db, stored.id, str(e))
        raise WebhookReplayError(str(e))

    begin_webhook_retry(db, stored.id)
    webhook_logger.info(f"Replaying {stored.provider} event {stored.event_id} (attempt {stored.attempts})")
    return run_reconciliation(
        db, stored.id, event, request_id=request_id, trace_id=trace_id, notifier=notifier
    )
