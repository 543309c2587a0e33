"""Background retention task for purging old processed webhook events"""
import asyncio
from datetime import datetime
from typing import Optional

from app.core.config import settings
from app.core.logging import retention_logger
from app.core.metrics import retention_runs_counter, retention_events_purged_counter
from app.db.session import SessionLocal, session_scope
from app.services.storage.payload_archive import get_payload_archive
from app.services.webhook_service import purge_webhook_events


def run_retention(session_factory=SessionLocal, archive=None, now: Optional[datetime] = None) -> int:
    """Purge processed events older than WEBHOOK_EVENT_RETENTION_DAYS

    Failed, quarantined and in-flight events are left for manual replay.
    """
    if archive is None:
        archive = get_payload_archive()

    with session_scope(session_factory) as db:
        purged = purge_webhook_events(
            db,
            older_than_days=settings.WEBHOOK_EVENT_RETENTION_DAYS,
            archive=archive,
            now=now
        )

    if purged:
        retention_events_purged_counter.inc(purged)
    retention_runs_counter.labels(status="success").inc()
    retention_logger.info(
        f"Retention run completed: {purged} events older than "
        f"{settings.WEBHOOK_EVENT_RETENTION_DAYS} days purged"
    )
    return purged


async def retention_task():
    """Background task that runs the webhook event retention purge

    Runs every RETENTION_INTERVAL_SECONDS (daily by default).
    """
    while True:
        try:
            await asyncio.sleep(settings.RETENTION_INTERVAL_SECONDS)
            retention_logger.info("Starting retention task...")
            run_retention()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            retention_logger.error(f"Error in retention task: {e}", exc_info=True)
            retention_runs_counter.labels(status="failure").inc()
