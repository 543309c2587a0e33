"""Retention and dunning job tests"""
from datetime import datetime, timezone, timedelta
from unittest.mock import Mock

import pytest

from app.models.audit_log import AuditLog
from app.models.subscription import Subscription
from app.models.webhook_event import WebhookEvent
from app.db.session import session_scope
from app.tasks.dunning import run_dunning
from app.tasks.retention import run_retention

from conftest import TestSessionLocal

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


class TestRetentionJob:
    """Daily purge of processed events past WEBHOOK_EVENT_RETENTION_DAYS"""

    def test_run_retention(self, db_session, fake_archive):
        fake_archive.objects["webhooks/stripe/evt_old.json"] = b"{}"
        db_session.add_all([
            WebhookEvent(
                provider="stripe", event_id="evt_old", event_type="invoice.paid", status="processed",
                attempts=1, payload_pointer="webhooks/stripe/evt_old.json", created_at=NOW - timedelta(days=120)
            ),
            WebhookEvent(
                provider="stripe", event_id="evt_failed", event_type="invoice.paid", status="failed",
                attempts=1, created_at=NOW - timedelta(days=120)
            ),
        ])
        db_session.commit()

        purged = run_retention(session_factory=TestSessionLocal, archive=fake_archive, now=NOW)

        assert purged == 1
        assert [e.event_id for e in db_session.query(WebhookEvent).all()] == ["evt_failed"]
        assert "webhooks/stripe/evt_old.json" not in fake_archive.objects

    def test_run_retention_empty(self, db_session, fake_archive):
        assert run_retention(session_factory=TestSessionLocal, archive=fake_archive, now=NOW) == 0


class TestDunningJob:
    """Daily dunning pass over past_due subscriptions"""

    def test_run_dunning_full_schedule(self, db_session, org):
        failed_at = NOW - timedelta(days=31)
        db_session.add(Subscription(
            org_id="org_1", plan="paid", status="past_due", last_payment_failed_at=failed_at
        ))
        db_session.commit()

        report = run_dunning(session_factory=TestSessionLocal, now=NOW)

        assert report.examined == 1
        assert [r["day"] for r in report.reminders] == [7, 14, 30]
        assert report.downgraded == 0
        sub = db_session.query(Subscription).one()
        assert sub.dunning_stage == 31
        assert sub.status == "past_due"
        reminders = db_session.query(AuditLog).filter(AuditLog.action == "billing.dunning_reminder_due").count()
        assert reminders == 3

    def test_run_dunning_downgrade(self, db_session, org):
        db_session.add(Subscription(
            org_id="org_1", plan="paid", status="past_due", dunning_stage=59,
            last_payment_failed_at=NOW - timedelta(days=60)
        ))
        db_session.commit()

        report = run_dunning(session_factory=TestSessionLocal, now=NOW)

        assert report.downgraded == 1
        sub = db_session.query(Subscription).one()
        assert (sub.plan, sub.status, sub.dunning_stage) == ("free", "unpaid", 60)

    def test_run_dunning_stamps_missing_failure_time(self, db_session, org):
        db_session.add(Subscription(org_id="org_1", plan="paid", status="past_due"))
        db_session.commit()

        report = run_dunning(session_factory=TestSessionLocal, now=NOW)

        assert report.advanced == 0
        sub = db_session.query(Subscription).one()
        assert sub.last_payment_failed_at is not None
        assert sub.dunning_stage == 0


class TestSessionScope:
    """Sessions opened by background jobs"""

    def test_closes_after_success(self):
        session = Mock()
        with session_scope(lambda: session) as db:
            assert db is session
        session.rollback.assert_not_called()
        session.close.assert_called_once()

    def test_rolls_back_and_reraises(self):
        session = Mock()
        with pytest.raises(RuntimeError):
            with session_scope(lambda: session):
                raise RuntimeError("purge failed")
        session.rollback.assert_called_once()
        session.close.assert_called_once()
