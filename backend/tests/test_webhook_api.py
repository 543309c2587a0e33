"""End-to-end tests for the Stripe webhook endpoint and operator APIs"""
import json
from unittest.mock import Mock, patch

import httpx
import pytest

from app.core.config import settings, SALE_SIGNATURE_HEADER
from app.main import app
from app.models.audit_log import AuditLog
from app.models.site import Site
from app.models.subscription import Subscription
from app.models.webhook_event import WebhookEvent
from app.services.sale_notifier import SaleNotifier, build_sale_notifier
from app.services.signature_service import compute_hmac_sha256, sha256_hex
from app.services.subscription_service import build_stripe_client, get_org_subscription
from app.services.webhook_service import IdempotencyCheck, check_webhook_idempotency

from conftest import make_event, sign

CHECKOUT_OBJECT = {
    "id": "cs_1",
    "object": "checkout.session",
    "customer": "cus_1",
    "subscription": "sub_1",
    "amount_total": 5000,
    "currency": "usd",
    "metadata": {"site_id": "site_1"},
}


def _checkout_event(event_id="evt_1"):
    return make_event("checkout.session.completed", event_id, dict(CHECKOUT_OBJECT))


def _site_plans(db):
    return {s.id: s.plan for s in db.query(Site).order_by(Site.id).all()}


def _audit_actions(db):
    return [a.action for a in db.query(AuditLog).order_by(AuditLog.created_at).all()]


@pytest.mark.critical
class TestSubscriptionLifecycle:
    """checkout -> payment failure -> cancellation through the HTTP endpoint"""

    def test_checkout_delivered_twice(self, client, db_session, org, post_stripe_event):
        event = _checkout_event()

        first = post_stripe_event(event)
        second = post_stripe_event(event)

        assert first.status_code == 200
        assert first.json() == {"received": True, "status": "processed", "event_id": "evt_1"}
        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"

        assert db_session.query(WebhookEvent).count() == 1
        stored = db_session.query(WebhookEvent).one()
        assert stored.status == "processed"
        assert stored.org_id == "org_1"
        assert stored.payload_pointer == "webhooks/stripe/evt_1.json"
        assert stored.processed_at is not None

        sub = get_org_subscription(db_session, "org_1")
        assert (sub.plan, sub.status, sub.dunning_stage) == ("paid", "active", 0)
        assert _site_plans(db_session) == {"site_1": "paid", "site_2": "paid"}
        assert _audit_actions(db_session) == ["webhook.stripe.checkout.session.completed"]

    def test_payment_failed_then_canceled(self, client, db_session, org, post_stripe_event):
        post_stripe_event(_checkout_event())

        response = post_stripe_event(make_event(
            "invoice.payment_failed", "evt_2",
            {"id": "in_1", "object": "invoice", "customer": "cus_1", "subscription": "sub_1"}
        ))
        assert response.json()["status"] == "processed"
        sub = get_org_subscription(db_session, "org_1")
        assert (sub.plan, sub.status) == ("paid", "past_due")
        entitlements = client.get("/api/billing/orgs/org_1/entitlements").json()
        assert entitlements["plan"] == "free"

        response = post_stripe_event(make_event(
            "customer.subscription.deleted", "evt_3",
            {"id": "sub_1", "object": "subscription", "customer": "cus_1", "status": "canceled"}
        ))
        assert response.json()["status"] == "processed"
        db_session.expire_all()
        sub = get_org_subscription(db_session, "org_1")
        assert (sub.plan, sub.status) == ("free", "canceled")
        assert sub.stripe_subscription_id is None
        assert _site_plans(db_session) == {"site_1": "free", "site_2": "free"}

    def test_unknown_event_type_is_ignored(self, client, db_session, org, post_stripe_event):
        response = post_stripe_event(make_event("foo.bar", "evt_4", {"id": "x_1"}))

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        stored = db_session.query(WebhookEvent).one()
        assert stored.status == "processed"
        assert db_session.query(Subscription).count() == 0
        assert _audit_actions(db_session) == []

    def test_event_for_unknown_org_is_ignored(self, client, db_session, org, post_stripe_event):
        response = post_stripe_event(make_event(
            "invoice.payment_failed", "evt_5", {"customer": "cus_nobody"}, org_id=None
        ))
        assert response.json()["status"] == "ignored"
        assert db_session.query(WebhookEvent).one().status == "processed"
        assert db_session.query(Subscription).count() == 0

    def test_org_resolved_by_customer_is_recorded_on_event(self, client, db_session, org, post_stripe_event):
        post_stripe_event(_checkout_event())
        post_stripe_event(make_event("invoice.paid", "evt_6", {"customer": "cus_1"}, org_id=None))

        stored = db_session.query(WebhookEvent).filter(WebhookEvent.event_id == "evt_6").one()
        assert stored.org_id == "org_1"
        assert "webhook.stripe.invoice.paid" in _audit_actions(db_session)


@pytest.mark.critical
class TestWebhookRejections:
    """Signature and payload failures never touch the event store"""

    def test_wrong_secret_rejected(self, client, db_session, org, post_stripe_event):
        response = post_stripe_event(_checkout_event(), secret="whsec_wrong")

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid signature: Signature mismatch"
        assert db_session.query(WebhookEvent).count() == 0
        assert get_org_subscription(db_session, "org_1") is None

    def test_missing_signature_header(self, client, db_session):
        response = client.post("/webhooks/stripe", content=b"{}")
        assert response.status_code == 401
        assert "Missing signature" in response.json()["detail"]

    def test_stale_timestamp_rejected(self, client, db_session):
        body = json.dumps(_checkout_event()).encode()
        response = client.post(
            "/webhooks/stripe", content=body,
            headers={"Stripe-Signature": sign(body, timestamp=1_000_000_000)}
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid signature: Timestamp outside tolerance"

    def test_invalid_json_is_400(self, client, db_session, post_stripe_event):
        response = post_stripe_event(None, body=b"not json")
        assert response.status_code == 400
        assert db_session.query(WebhookEvent).count() == 0

    def test_event_without_data_object_is_400(self, client, db_session, post_stripe_event):
        response = post_stripe_event({"id": "evt_7", "type": "invoice.paid", "data": {}})
        assert response.status_code == 400
        assert "data.object" in response.json()["detail"]


class TestWebhookFailures:
    """Handler errors are recorded and acknowledged with 200"""

    def test_handler_failure_is_recorded(self, client, db_session, org, post_stripe_event):
        with patch("app.services.webhook_processor.reconcile", side_effect=RuntimeError("database went away")):
            response = post_stripe_event(make_event(
                "customer.subscription.updated", "evt_8",
                {"id": "sub_1", "object": "subscription", "status": "active"}
            ))

        assert response.status_code == 200
        assert response.json()["status"] == "failed"
        stored = db_session.query(WebhookEvent).one()
        assert stored.status == "failed"
        assert "database went away" in stored.error_message
        failure = db_session.query(AuditLog).one()
        assert failure.action == "webhook.processing_failed"
        assert failure.target_id == "evt_8"

    def test_unknown_subscription_status_becomes_unpaid(self, client, db_session, org, post_stripe_event):
        post_stripe_event(_checkout_event())

        response = post_stripe_event(make_event(
            "customer.subscription.updated", "evt_11",
            {"id": "sub_1", "object": "subscription", "status": "some_new_status"}
        ))

        assert response.json()["status"] == "processed"
        assert get_org_subscription(db_session, "org_1").status == "unpaid"

    def test_losing_concurrent_duplicate_keeps_archived_body(self, client, db_session, org, post_stripe_event, fake_archive):
        first = _checkout_event()
        first_body = json.dumps(first).encode("utf-8")
        post_stripe_event(first, body=first_body)
        tampered = _checkout_event()
        tampered["data"]["object"]["amount_total"] = 1

        # Second delivery misses the pre-check, as if both arrived together
        lookups = [IdempotencyCheck(is_duplicate=False)]

        def racing_check(db, provider, event_id):
            if lookups:
                return lookups.pop(0)
            return check_webhook_idempotency(db, provider, event_id)

        with patch("app.services.webhook_processor.check_webhook_idempotency", side_effect=racing_check):
            response = post_stripe_event(tampered)

        assert response.json()["status"] == "duplicate"
        stored = db_session.query(WebhookEvent).one()
        assert fake_archive.objects[stored.payload_pointer] == first_body
        assert stored.payload_hash == sha256_hex(first_body)

    def test_duplicate_with_different_payload(self, client, db_session, org, post_stripe_event):
        post_stripe_event(_checkout_event())
        tampered = _checkout_event()
        tampered["data"]["object"]["amount_total"] = 1

        response = post_stripe_event(tampered)

        assert response.json()["status"] == "duplicate"
        assert db_session.query(WebhookEvent).count() == 1


class TestSaleNotification:
    """Completed checkouts are forwarded to the downstream sale webhook"""

    def _install_notifier(self, statuses, recording_sleep):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(statuses.pop(0) if len(statuses) > 1 else statuses[0])

        notifier = SaleNotifier(
            "https://downstream.example.com/sales", "sale-secret",
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
            sleep=recording_sleep
        )
        app.dependency_overrides[build_sale_notifier] = lambda: notifier
        return requests

    def test_sale_forwarded_with_request_id(self, client, db_session, org, recording_sleep):
        requests = self._install_notifier([200], recording_sleep)
        body = json.dumps(_checkout_event()).encode()

        response = client.post(
            "/webhooks/stripe", content=body,
            headers={"Stripe-Signature": sign(body), "X-Request-ID": "req-sale-1"}
        )

        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-sale-1"
        assert len(requests) == 1
        sent = json.loads(requests[0].content)
        assert sent["org_id"] == "org_1"
        assert sent["site_id"] == "site_1"
        assert sent["amount_cents"] == 5000
        assert sent["currency"] == "usd"
        assert sent["request_id"] == "req-sale-1"
        assert requests[0].headers[SALE_SIGNATURE_HEADER] == compute_hmac_sha256("sale-secret", requests[0].content)

    def test_failing_downstream_does_not_fail_webhook(self, client, db_session, org, post_stripe_event, recording_sleep):
        requests = self._install_notifier([500], recording_sleep)

        response = post_stripe_event(_checkout_event())

        assert response.json()["status"] == "processed"
        assert len(requests) == 3
        assert recording_sleep.calls == [1.0, 2.0]
        assert get_org_subscription(db_session, "org_1").plan == "paid"

    def test_non_checkout_events_do_not_notify(self, client, db_session, org, post_stripe_event, recording_sleep):
        requests = self._install_notifier([200], recording_sleep)
        post_stripe_event(make_event("invoice.payment_failed", "evt_9", {"customer": "cus_1"}))
        assert requests == []


class TestAdminApi:
    """Operator event listing and replay"""

    def test_requires_admin_key(self, client):
        assert client.get("/api/admin/webhook-events").status_code == 401
        response = client.get("/api/admin/webhook-events", headers={"X-Admin-Key": "nope"})
        assert response.status_code == 401

    def test_unconfigured_admin_key(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_API_KEY", "")
        response = client.get("/api/admin/webhook-events", headers={"X-Admin-Key": "anything"})
        assert response.status_code == 503

    def test_list_and_filter(self, client, db_session, org, post_stripe_event, admin_headers):
        post_stripe_event(_checkout_event())
        with patch("app.services.webhook_processor.reconcile", side_effect=RuntimeError("boom")):
            post_stripe_event(make_event("customer.subscription.updated", "evt_10", {"status": "active"}))

        events = client.get("/api/admin/webhook-events", headers=admin_headers).json()
        assert {e["event_id"] for e in events} == {"evt_1", "evt_10"}

        failed = client.get("/api/admin/webhook-events?status=failed", headers=admin_headers).json()
        assert [e["event_id"] for e in failed] == ["evt_10"]

        bad = client.get("/api/admin/webhook-events?status=bogus", headers=admin_headers)
        assert bad.status_code == 400

        detail = client.get(f"/api/admin/webhook-events/{failed[0]['id']}", headers=admin_headers)
        assert detail.json()["status"] == "failed"
        assert client.get("/api/admin/webhook-events/missing", headers=admin_headers).status_code == 404

    def test_replay_failed_event(self, client, db_session, org, post_stripe_event, admin_headers):
        with patch("app.services.webhook_processor.reconcile", side_effect=RuntimeError("database unavailable")):
            first = post_stripe_event(_checkout_event())
        assert first.json()["status"] == "failed"
        stored = db_session.query(WebhookEvent).one()

        response = client.post(f"/api/admin/webhook-events/{stored.id}/replay", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        db_session.expire_all()
        stored = db_session.query(WebhookEvent).one()
        assert stored.status == "processed"
        assert stored.attempts == 2
        assert get_org_subscription(db_session, "org_1").plan == "paid"

    def test_replay_processed_event_conflicts(self, client, db_session, org, post_stripe_event, admin_headers):
        post_stripe_event(_checkout_event())
        stored = db_session.query(WebhookEvent).one()
        response = client.post(f"/api/admin/webhook-events/{stored.id}/replay", headers=admin_headers)
        assert response.status_code == 409

    def test_replay_tampered_archive_quarantines(self, client, db_session, org, post_stripe_event, admin_headers, fake_archive):
        with patch("app.services.webhook_processor.reconcile", side_effect=RuntimeError("boom")):
            post_stripe_event(_checkout_event())
        stored = db_session.query(WebhookEvent).one()
        fake_archive.objects[stored.payload_pointer] = b'{"id":"evt_1","type":"forged"}'

        response = client.post(f"/api/admin/webhook-events/{stored.id}/replay", headers=admin_headers)

        assert response.status_code == 409
        db_session.expire_all()
        assert db_session.query(WebhookEvent).one().status == "quarantined"

    def test_replay_unknown_event(self, client, db_session, admin_headers):
        response = client.post("/api/admin/webhook-events/missing/replay", headers=admin_headers)
        assert response.status_code == 404


class TestBillingApi:
    """Entitlements, subscription state, audit trail and customer creation"""

    def test_entitlements(self, client, db_session, org, post_stripe_event):
        before = client.get("/api/billing/orgs/org_1/entitlements")
        assert before.status_code == 200
        assert before.json()["plan"] == "free"
        assert before.json()["top_bar_hidden"] is False

        post_stripe_event(_checkout_event())

        after = client.get("/api/billing/orgs/org_1/entitlements").json()
        assert after["plan"] == "paid"
        assert after["max_custom_domains"] == 5

    def test_entitlements_unknown_org(self, client, db_session):
        assert client.get("/api/billing/orgs/org_missing/entitlements").status_code == 404

    def test_subscription_requires_key(self, client, db_session, org, post_stripe_event, admin_headers):
        post_stripe_event(_checkout_event())
        assert client.get("/api/billing/orgs/org_1/subscription").status_code == 401

        response = client.get("/api/billing/orgs/org_1/subscription", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["stripe_subscription_id"] == "sub_1"
        assert response.json()["status"] == "active"

    def test_subscription_missing(self, client, db_session, org, admin_headers):
        response = client.get("/api/billing/orgs/org_1/subscription", headers=admin_headers)
        assert response.status_code == 404

    def test_audit_logs(self, client, db_session, org, post_stripe_event, admin_headers):
        post_stripe_event(_checkout_event())
        entries = client.get("/api/billing/orgs/org_1/audit-logs", headers=admin_headers).json()
        assert [e["action"] for e in entries] == ["webhook.stripe.checkout.session.completed"]
        assert entries[0]["metadata_json"]["site_id"] == "site_1"
        assert entries[0]["request_id"]

    def test_create_customer(self, client, db_session, org, admin_headers):
        stripe_client = Mock()
        stripe_client.customers.create.return_value = Mock(id="cus_created")
        app.dependency_overrides[build_stripe_client] = lambda: stripe_client

        response = client.post(
            "/api/billing/orgs/org_1/customer",
            json={"email": "owner@example.com"},
            headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json() == {"org_id": "org_1", "stripe_customer_id": "cus_created"}
        assert "billing.customer_ensured" in _audit_actions(db_session)

    def test_create_customer_without_stripe(self, client, db_session, org, admin_headers, monkeypatch):
        monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "")
        response = client.post("/api/billing/orgs/org_1/customer", headers=admin_headers)
        assert response.status_code == 503


class TestPlatformEndpoints:
    """Health, metrics and request ids"""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_request_id_generated(self, client):
        response = client.get("/health")
        assert len(response.headers["X-Request-ID"]) == 36

    def test_malformed_request_id_replaced(self, client):
        response = client.get("/health", headers={"X-Request-ID": "bad id with spaces"})
        assert response.headers["X-Request-ID"] != "bad id with spaces"

    def test_metrics(self, client, db_session, org, post_stripe_event):
        post_stripe_event(_checkout_event())
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "sites_webhook_events_total" in response.text
