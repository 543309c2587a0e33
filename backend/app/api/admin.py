"""Admin API routes - webhook event inspection and manual replay"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.core.middleware import get_request_id
from app.core.otel import get_current_trace_id
from app.core.security import require_admin_key
from app.db.session import get_db
from app.models.webhook_event import WEBHOOK_EVENT_STATUSES
from app.schemas.webhooks import WebhookAck, WebhookEventResponse
from app.services.sale_notifier import SaleNotifier, build_sale_notifier
from app.services.storage.payload_archive import PayloadArchive, get_payload_archive
from app.services.webhook_processor import WebhookReplayError, replay_webhook_event
from app.services.webhook_service import get_webhook_event, list_webhook_events

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])
logger = logging.getLogger(__name__)


@router.get("/webhook-events", response_model=list[WebhookEventResponse])
def list_events(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db)
):
    """List stored webhook events, newest first"""
    if status and status not in WEBHOOK_EVENT_STATUSES:
        raise HTTPException(400, f"Invalid status. Must be one of: {', '.join(WEBHOOK_EVENT_STATUSES)}")
    return list_webhook_events(db, status=status, limit=limit, offset=offset)


@router.get("/webhook-events/{webhook_event_id}", response_model=WebhookEventResponse)
def get_event(webhook_event_id: str, db: Session = Depends(get_db)):
    event = get_webhook_event(db, webhook_event_id)
    if not event:
        raise HTTPException(404, "Webhook event not found")
    return event


@router.post("/webhook-events/{webhook_event_id}/replay", response_model=WebhookAck)
async def replay_event(
    webhook_event_id: str,
    request: Request,
    db: Session = Depends(get_db),
    archive: Optional[PayloadArchive] = Depends(get_payload_archive),
    notifier: Optional[SaleNotifier] = Depends(build_sale_notifier)
):
    """Re-run a failed or stuck event from its archived payload"""
    request_id = get_request_id(request)
    try:
        outcome = await run_in_threadpool(
            replay_webhook_event,
            db,
            webhook_event_id,
            archive,
            request_id=request_id,
            trace_id=get_current_trace_id(),
            notifier=notifier
        )
    except WebhookReplayError as e:
        raise HTTPException(409, str(e))

    if outcome is None:
        raise HTTPException(404, "Webhook event not found")

    logger.info(f"Replayed webhook event {webhook_event_id}: {outcome.status} (request_id={request_id})")
    return WebhookAck(received=True, status=outcome.status, event_id=outcome.event_id)
