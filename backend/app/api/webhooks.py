"""Inbound webhook routes"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.core.middleware import get_request_id
from app.core.otel import get_current_trace_id
from app.db.session import get_db
from app.schemas.webhooks import WebhookAck
from app.services.sale_notifier import SaleNotifier, build_sale_notifier
from app.services.storage.payload_archive import PayloadArchive, get_payload_archive
from app.services.webhook_processor import (
    WebhookPayloadError, WebhookSignatureError, process_stripe_webhook
)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    archive: Optional[PayloadArchive] = Depends(get_payload_archive),
    notifier: Optional[SaleNotifier] = Depends(build_sale_notifier)
):
    """Handle Stripe webhook events

    Returns 200 for processed, duplicate and handler-failed deliveries so Stripe
    stops retrying; 401 only for signature failures and 400 for unusable bodies.
    """
    # Raw bytes, never parsed before signature verification
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    request_id = get_request_id(request)

    try:
        # Sync pipeline (DB, notifier backoff sleeps) runs off the event loop
        outcome = await run_in_threadpool(
            process_stripe_webhook,
            db,
            payload,
            sig_header,
            request_id=request_id,
            trace_id=get_current_trace_id(),
            archive=archive,
            notifier=notifier
        )
    except WebhookSignatureError as e:
        raise HTTPException(401, f"Invalid signature: {e.reason}")
    except WebhookPayloadError as e:
        logger.error(f"Invalid webhook payload: {e} (request_id={request_id})")
        raise HTTPException(400, str(e))

    return WebhookAck(received=True, status=outcome.status, event_id=outcome.event_id)
