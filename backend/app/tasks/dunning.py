"""Background dunning task for advancing past-due subscriptions"""
import asyncio
from datetime import datetime
from typing import Optional

from app.core.config import settings
from app.core.logging import billing_logger
from app.core.metrics import dunning_runs_counter
from app.db.session import SessionLocal, session_scope
from app.services.subscription_service import DunningReport, advance_dunning


def run_dunning(session_factory=SessionLocal, now: Optional[datetime] = None) -> DunningReport:
    with session_scope(session_factory) as db:
        report = advance_dunning(db, now=now)

    dunning_runs_counter.labels(status="success").inc()
    billing_logger.info(
        f"Dunning run completed: {report.examined} past due, {report.advanced} advanced, "
        f"{len(report.reminders)} reminders due, {report.downgraded} downgraded"
    )
    return report


async def dunning_task():
    """Background task that advances dunning once per DUNNING_INTERVAL_SECONDS"""
    while True:
        try:
            await asyncio.sleep(settings.DUNNING_INTERVAL_SECONDS)
            billing_logger.info("Starting dunning task...")
            run_dunning()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            billing_logger.error(f"Error in dunning task: {e}", exc_info=True)
            dunning_runs_counter.labels(status="failure").inc()
