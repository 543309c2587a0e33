"""Subscription service - reconciles local subscription state against Stripe events"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timezone
from sqlalchemy import and_, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import stripe

from app.core.config import settings, DUNNING_REMINDER_DAYS, DUNNING_DOWNGRADE_AFTER_DAYS
from app.core.logging import billing_logger
from app.models.organization import Organization
from app.models.site import Site
from app.models.subscription import Subscription, SUBSCRIPTION_STATUSES
from app.schemas.subscriptions import Entitlements
from app.services.audit_service import write_audit_log

logger = logging.getLogger(__name__)

FREE_ENTITLEMENTS = {
    "top_bar_hidden": False,
    "max_custom_domains": 0,
    "chat_enabled": True,
    "analytics_enabled": False,
}

PAID_ENTITLEMENTS = {
    "top_bar_hidden": True,
    "max_custom_domains": 5,
    "chat_enabled": True,
    "analytics_enabled": True,
}

# Stripe statuses with no local equivalent
STRIPE_STATUS_MAP = {
    "incomplete": "unpaid",
    "incomplete_expired": "canceled",
}


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Read-only view of the current row handed to event handlers"""
    org_id: str
    plan: str
    status: str
    dunning_stage: int = 0
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    last_payment_failed_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, sub: Subscription) -> "SubscriptionSnapshot":
        return cls(
            org_id=sub.org_id,
            plan=sub.plan,
            status=sub.status,
            dunning_stage=sub.dunning_stage or 0,
            stripe_customer_id=sub.stripe_customer_id,
            stripe_subscription_id=sub.stripe_subscription_id,
            last_payment_failed_at=sub.last_payment_failed_at,
        )


@dataclass(frozen=True)
class SaleDetails:
    """What the sale notifier needs from a completed checkout"""
    org_id: str
    site_id: Optional[str]
    stripe_customer_id: Optional[str]
    stripe_subscription_id: Optional[str]
    amount_cents: int
    currency: str


@dataclass(frozen=True)
class ReconcileResult:
    outcome: str  # applied | ignored | unhandled | org_not_found
    org_id: Optional[str] = None
    subscription_id: Optional[str] = None
    changes: Dict[str, Any] = field(default_factory=dict)
    sale: Optional[SaleDetails] = None


@dataclass
class DunningReport:
    examined: int = 0
    advanced: int = 0
    downgraded: int = 0
    reminders: List[Dict[str, Any]] = field(default_factory=list)


# ============================================================================
# STRIPE OBJECT ACCESS HELPERS
# ============================================================================

def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    value = getattr(obj, key, None)
    return default if value is None else value


def _get_stripe_id(obj: Any, key: str) -> Optional[str]:
    """Return an id field that may arrive either as a string or an expanded object"""
    value = _get_stripe_value(obj, key)
    if value is None or isinstance(value, str):
        return value
    return _get_stripe_value(value, "id")


def _from_unix(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        logger.warning(f"Ignoring unparsable Stripe timestamp: {value!r}")
        return None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def get_event_metadata(event_object: Any) -> Dict[str, Any]:
    metadata = _get_stripe_value(event_object, "metadata", {})
    return metadata if isinstance(metadata, dict) else {}


# ============================================================================
# EVENT HANDLERS
# Each maps (current row or None, Stripe object, now) to a dict of column
# changes. They never touch the database.
# ============================================================================

def handle_checkout_completed(current: Optional[SubscriptionSnapshot], session: Any, now: datetime) -> Dict[str, Any]:
    changes = {
        "plan": "paid",
        "status": "active",
        "dunning_stage": 0,
        "cancel_at_period_end": False,
        "canceled_at": None,
        "last_payment_at": now,
    }
    subscription_id = _get_stripe_id(session, "subscription")
    if subscription_id:
        changes["stripe_subscription_id"] = subscription_id
    customer_id = _get_stripe_id(session, "customer")
    if customer_id:
        changes["stripe_customer_id"] = customer_id
    return changes


def _is_stale_subscription(current: Optional[SubscriptionSnapshot], subscription: Any, event_label: str) -> bool:
    """True when the event is about a subscription the org no longer holds

    Stripe delivers out of order; a late event for a replaced subscription must
    not touch the row that now tracks its successor.
    """
    event_subscription_id = _get_stripe_value(subscription, "id")
    if not event_subscription_id or current is None or not current.stripe_subscription_id:
        return False
    if event_subscription_id == current.stripe_subscription_id:
        return False
    billing_logger.warning(
        f"Ignoring {event_label} for {event_subscription_id} on org {current.org_id}: "
        f"current subscription is {current.stripe_subscription_id}"
    )
    return True


def map_stripe_status(stripe_status: str) -> str:
    """Local status for a Stripe subscription status; unknown values become unpaid"""
    status = STRIPE_STATUS_MAP.get(stripe_status, stripe_status)
    if status not in SUBSCRIPTION_STATUSES:
        logger.warning(f"Unknown Stripe subscription status {stripe_status!r}, treating as unpaid")
        return "unpaid"
    return status


def handle_subscription_updated(current: Optional[SubscriptionSnapshot], subscription: Any, now: datetime) -> Dict[str, Any]:
    if _is_stale_subscription(current, subscription, "customer.subscription.updated"):
        return {}

    changes: Dict[str, Any] = {}

    stripe_status = _get_stripe_value(subscription, "status")
    if stripe_status:
        status = map_stripe_status(stripe_status)
        changes["status"] = status
        if status == "active":
            changes["dunning_stage"] = 0

    cancel_at_period_end = _get_stripe_value(subscription, "cancel_at_period_end")
    if cancel_at_period_end is not None:
        changes["cancel_at_period_end"] = bool(cancel_at_period_end)

    # Newer API versions carry the period on the subscription item
    period_source = subscription
    if _get_stripe_value(subscription, "current_period_start") is None:
        items = _get_stripe_value(_get_stripe_value(subscription, "items", {}), "data", [])
        if items:
            period_source = items[0]

    period_start = _from_unix(_get_stripe_value(period_source, "current_period_start"))
    if period_start:
        changes["current_period_start"] = period_start
    period_end = _from_unix(_get_stripe_value(period_source, "current_period_end"))
    if period_end:
        changes["current_period_end"] = period_end

    return changes


def handle_subscription_deleted(current: Optional[SubscriptionSnapshot], subscription: Any, now: datetime) -> Dict[str, Any]:
    if _is_stale_subscription(current, subscription, "customer.subscription.deleted"):
        return {}
    return {
        "plan": "free",
        "status": "canceled",
        "stripe_subscription_id": None,
        "cancel_at_period_end": False,
        "canceled_at": now,
    }


def handle_invoice_payment_failed(current: Optional[SubscriptionSnapshot], invoice: Any, now: datetime) -> Dict[str, Any]:
    # An earlier stamp on a row that is still past_due survives; see _update_values
    return {"status": "past_due", "last_payment_failed_at": now}


def handle_invoice_paid(current: Optional[SubscriptionSnapshot], invoice: Any, now: datetime) -> Dict[str, Any]:
    return {}


EVENT_HANDLERS: Dict[str, Callable[[Optional[SubscriptionSnapshot], Any, datetime], Dict[str, Any]]] = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "invoice.paid": handle_invoice_paid,
}


# ============================================================================
# ORG RESOLUTION
# ============================================================================

def get_organization(db: Session, org_id: str) -> Optional[Organization]:
    return db.query(Organization).filter(Organization.id == org_id).first()


def resolve_org_id(db: Session, event_object: Any) -> Optional[str]:
    """Find the org an event belongs to

    Order: ``metadata.org_id``, checkout ``client_reference_id``, the org that
    owns the referenced customer (orgs first, then subscriptions), and finally
    the subscription row holding the referenced Stripe subscription id.
    """
    metadata = get_event_metadata(event_object)
    for candidate in (metadata.get("org_id"), _get_stripe_value(event_object, "client_reference_id")):
        if candidate and get_organization(db, str(candidate)):
            return str(candidate)
        if candidate:
            logger.warning(f"Event references unknown org {candidate}")

    customer_id = _get_stripe_id(event_object, "customer")
    if customer_id:
        org = db.query(Organization).filter(Organization.stripe_customer_id == customer_id).first()
        if org:
            return org.id
        sub = db.query(Subscription).filter(Subscription.stripe_customer_id == customer_id).first()
        if sub:
            return sub.org_id

    # customer.subscription.* objects carry their own id; invoices reference it
    object_type = _get_stripe_value(event_object, "object")
    subscription_id = (
        _get_stripe_value(event_object, "id") if object_type == "subscription"
        else _get_stripe_id(event_object, "subscription")
    )
    if subscription_id:
        sub = db.query(Subscription).filter(Subscription.stripe_subscription_id == subscription_id).first()
        if sub:
            return sub.org_id

    return None


# ============================================================================
# STATE APPLICATION
# ============================================================================

def get_org_subscription(db: Session, org_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.org_id == org_id).first()


def _cascade_site_plans(db: Session, org_id: str, plan: str, now: datetime) -> int:
    return db.query(Site).filter(Site.org_id == org_id).update(
        {Site.plan: plan, Site.updated_at: now}, synchronize_session=False
    )


def _update_values(changes: Dict[str, Any], now: datetime) -> Dict[Any, Any]:
    """Column values for the UPDATE, with first-failure stamping done in SQL

    Stripe retries a failing invoice several times and dunning counts from the
    first failure, so ``last_payment_failed_at`` is only overwritten when the
    row is not already past_due with a stamp. The CASE reads the pre-update
    row, which keeps payment failures to one statement.
    """
    values: Dict[Any, Any] = {getattr(Subscription, key): value for key, value in changes.items()}
    if "last_payment_failed_at" in changes:
        values[Subscription.last_payment_failed_at] = case(
            (
                and_(Subscription.status == "past_due", Subscription.last_payment_failed_at.isnot(None)),
                Subscription.last_payment_failed_at
            ),
            else_=changes["last_payment_failed_at"]
        )
    values[Subscription.updated_at] = now
    return values


def _apply_subscription_changes(db: Session, org_id: str, changes: Dict[str, Any], now: datetime) -> Optional[str]:
    """Write changes as a single UPDATE scoped by org_id, inserting the row if absent

    Site plans follow the subscription plan in the same transaction.
    """
    values = _update_values(changes, now)

    updated = db.query(Subscription).filter(Subscription.org_id == org_id).update(
        values, synchronize_session=False
    )
    if updated == 0:
        db.add(Subscription(org_id=org_id, **changes))
        try:
            db.flush()
        except IntegrityError:
            # Lost the insert race against a concurrent delivery for the same org
            db.rollback()
            db.query(Subscription).filter(Subscription.org_id == org_id).update(
                values, synchronize_session=False
            )

    if "plan" in changes:
        _cascade_site_plans(db, org_id, changes["plan"], now)

    customer_id = changes.get("stripe_customer_id")
    if customer_id:
        db.query(Organization).filter(
            Organization.id == org_id,
            Organization.stripe_customer_id.is_(None)
        ).update({Organization.stripe_customer_id: customer_id}, synchronize_session=False)

    db.commit()

    subscription_id = db.query(Subscription.id).filter(Subscription.org_id == org_id).scalar()
    return subscription_id


def reconcile(
    db: Session,
    event_type: str,
    event_object: Any,
    now: Optional[datetime] = None
) -> ReconcileResult:
    """Apply one Stripe event to the org's subscription

    Unknown event types and events no org can be found for are reported as
    tagged results, not raised. Handler or database errors propagate so the
    caller can mark the event failed.
    """
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        billing_logger.info(f"No reconciliation handler for Stripe event type {event_type}")
        return ReconcileResult(outcome="unhandled")

    org_id = resolve_org_id(db, event_object)
    if not org_id:
        billing_logger.warning(
            f"Could not resolve org for {event_type} "
            f"(object={_get_stripe_value(event_object, 'id')}, customer={_get_stripe_id(event_object, 'customer')})"
        )
        return ReconcileResult(outcome="org_not_found")

    now = now or datetime.now(timezone.utc)
    current_row = get_org_subscription(db, org_id)
    current = SubscriptionSnapshot.from_model(current_row) if current_row else None

    changes = handler(current, event_object, now)
    if not changes:
        return ReconcileResult(
            outcome="ignored",
            org_id=org_id,
            subscription_id=current_row.id if current_row else None
        )

    subscription_id = _apply_subscription_changes(db, org_id, changes, now)
    billing_logger.info(f"Reconciled {event_type} for org {org_id}: {sorted(changes)}")

    sale = None
    if event_type == "checkout.session.completed":
        metadata = get_event_metadata(event_object)
        currency = _get_stripe_value(event_object, "currency") or settings.PRICING_CURRENCY
        sale = SaleDetails(
            org_id=org_id,
            site_id=metadata.get("site_id"),
            stripe_customer_id=changes.get("stripe_customer_id"),
            stripe_subscription_id=changes.get("stripe_subscription_id"),
            amount_cents=int(_get_stripe_value(event_object, "amount_total", settings.PRICING_MONTHLY_CENTS)),
            currency=str(currency).lower(),
        )

    return ReconcileResult(
        outcome="applied",
        org_id=org_id,
        subscription_id=subscription_id,
        changes=changes,
        sale=sale
    )


# ============================================================================
# ENTITLEMENTS
# ============================================================================

def is_paid(subscription: Optional[Subscription]) -> bool:
    return subscription is not None and subscription.plan == "paid" and subscription.status == "active"


def get_org_entitlements(db: Session, org_id: str) -> Entitlements:
    """Paid entitlements only for plan=paid AND status=active; everything else is free"""
    subscription = get_org_subscription(db, org_id)
    if is_paid(subscription):
        return Entitlements(org_id=org_id, plan="paid", **PAID_ENTITLEMENTS)
    return Entitlements(org_id=org_id, plan="free", **FREE_ENTITLEMENTS)


# ============================================================================
# STRIPE CUSTOMER
# ============================================================================

def build_stripe_client() -> Optional[stripe.StripeClient]:
    """Request-scoped Stripe client; None when Stripe is not configured"""
    if not settings.STRIPE_SECRET_KEY:
        return None
    return stripe.StripeClient(settings.STRIPE_SECRET_KEY)


def ensure_stripe_customer(
    db: Session,
    org_id: str,
    stripe_client: stripe.StripeClient,
    email: Optional[str] = None
) -> Optional[str]:
    """Get or create the org's Stripe customer, creating the free subscription row on first use

    Returns:
        Stripe customer id, or None if the org does not exist or Stripe failed
    """
    org = get_organization(db, org_id)
    if not org:
        return None

    customer_id = org.stripe_customer_id
    if not customer_id:
        params: Dict[str, Any] = {"metadata": {"org_id": org_id}, "name": org.name}
        if email:
            params["email"] = email
        try:
            customer = stripe_client.customers.create(params=params)
        except stripe.StripeError as e:
            logger.error(f"Failed to create Stripe customer for org {org_id}: {e}")
            return None

        customer_id = customer.id
        org.stripe_customer_id = customer_id
        logger.info(f"Created Stripe customer {customer_id} for org {org_id}")

    subscription = get_org_subscription(db, org_id)
    if subscription is None:
        db.add(Subscription(org_id=org_id, stripe_customer_id=customer_id, plan="free", status="active"))
    elif not subscription.stripe_customer_id:
        subscription.stripe_customer_id = customer_id

    try:
        db.commit()
    except IntegrityError:
        # Free row created concurrently
        db.rollback()
        db.query(Organization).filter(
            Organization.id == org_id,
            Organization.stripe_customer_id.is_(None)
        ).update({Organization.stripe_customer_id: customer_id}, synchronize_session=False)
        db.commit()

    return customer_id


# ============================================================================
# DUNNING
# ============================================================================

def advance_dunning(db: Session, now: Optional[datetime] = None, request_id: Optional[str] = None) -> DunningReport:
    """Advance every past_due subscription along the dunning schedule

    ``dunning_stage`` tracks whole days since the first failed payment, capped
    at DUNNING_DOWNGRADE_AFTER_DAYS. Crossing a reminder day records a
    ``billing.dunning_reminder_due`` audit entry; reaching the cap downgrades
    the org to free/unpaid. Updates are conditional on the row still being
    past_due so a concurrent recovery webhook wins.
    """
    now = now or datetime.now(timezone.utc)
    report = DunningReport()

    past_due = db.query(Subscription).filter(Subscription.status == "past_due").all()
    for sub in past_due:
        report.examined += 1
        org_id = sub.org_id
        old_stage = sub.dunning_stage or 0
        failed_at = _as_utc(sub.last_payment_failed_at)
        if failed_at is None:
            # Never stamped; start the clock now
            db.query(Subscription).filter(
                Subscription.id == sub.id, Subscription.status == "past_due"
            ).update({Subscription.last_payment_failed_at: now}, synchronize_session=False)
            db.commit()
            continue

        days_past_due = max(0, (now - failed_at).days)
        new_stage = min(DUNNING_DOWNGRADE_AFTER_DAYS, days_past_due)
        if new_stage == old_stage and new_stage < DUNNING_DOWNGRADE_AFTER_DAYS:
            continue

        values: Dict[Any, Any] = {Subscription.dunning_stage: new_stage, Subscription.updated_at: now}
        downgrade = new_stage >= DUNNING_DOWNGRADE_AFTER_DAYS
        if downgrade:
            values[Subscription.plan] = "free"
            values[Subscription.status] = "unpaid"

        updated = db.query(Subscription).filter(
            Subscription.id == sub.id, Subscription.status == "past_due"
        ).update(values, synchronize_session=False)
        if not updated:
            db.rollback()
            continue

        if downgrade:
            _cascade_site_plans(db, org_id, "free", now)
        db.commit()
        report.advanced += 1

        for day in DUNNING_REMINDER_DAYS:
            if old_stage < day <= new_stage:
                write_audit_log(
                    db, org_id, "billing.dunning_reminder_due",
                    target_type="subscription", target_id=sub.id,
                    metadata={"days_past_due": day, "message": f"Payment overdue {day} days"},
                    request_id=request_id
                )
                report.reminders.append({"org_id": org_id, "day": day})

        if downgrade:
            report.downgraded += 1
            write_audit_log(
                db, org_id, "billing.dunning_downgraded",
                target_type="subscription", target_id=sub.id,
                metadata={
                    "days_past_due": days_past_due,
                    "message": "Payment overdue - downgraded to free plan"
                },
                request_id=request_id
            )
            billing_logger.warning(f"Org {org_id} downgraded to free after {days_past_due} days past due")

    return report
