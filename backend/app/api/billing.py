"""Billing API routes (entitlements, subscription state, audit trail)"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session
import stripe

from app.core.middleware import get_request_id
from app.core.security import require_admin_key
from app.db.session import get_db
from app.schemas.subscriptions import CreateCustomerRequest, Entitlements, SubscriptionResponse
from app.schemas.webhooks import AuditLogResponse
from app.services.audit_service import get_audit_logs, write_audit_log
from app.services.subscription_service import (
    build_stripe_client, ensure_stripe_customer, get_org_entitlements, get_org_subscription,
    get_organization
)

router = APIRouter(prefix="/api/billing", tags=["billing"])
logger = logging.getLogger(__name__)


def _require_org(db: Session, org_id: str):
    org = get_organization(db, org_id)
    if not org:
        raise HTTPException(404, "Organization not found")
    return org


@router.get("/orgs/{org_id}/entitlements", response_model=Entitlements)
def get_entitlements(org_id: str, db: Session = Depends(get_db)):
    """Feature gates derived from the org's subscription"""
    _require_org(db, org_id)
    return get_org_entitlements(db, org_id)


@router.get("/orgs/{org_id}/subscription", response_model=SubscriptionResponse)
def get_subscription(org_id: str, db: Session = Depends(get_db), _: None = Depends(require_admin_key)):
    _require_org(db, org_id)
    subscription = get_org_subscription(db, org_id)
    if not subscription:
        raise HTTPException(404, "No subscription for this organization")
    return subscription


@router.get("/orgs/{org_id}/audit-logs", response_model=list[AuditLogResponse])
def list_audit_logs(
    org_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    _: None = Depends(require_admin_key)
):
    """Audit entries for an org, newest first"""
    return get_audit_logs(db, org_id, limit=limit, offset=offset)


@router.post("/orgs/{org_id}/customer")
def create_customer(
    org_id: str,
    request: Request,
    body: Optional[CreateCustomerRequest] = None,
    db: Session = Depends(get_db),
    stripe_client: Optional[stripe.StripeClient] = Depends(build_stripe_client),
    _: None = Depends(require_admin_key)
):
    """Get or create the org's Stripe customer and its free subscription row"""
    _require_org(db, org_id)
    if stripe_client is None:
        raise HTTPException(503, "Stripe is not configured")

    email = body.email if body else None
    customer_id = ensure_stripe_customer(db, org_id, stripe_client, email=email)
    if not customer_id:
        raise HTTPException(502, "Failed to create Stripe customer")

    write_audit_log(
        db, org_id, "billing.customer_ensured",
        target_type="customer", target_id=customer_id,
        metadata={"message": "Stripe customer linked"},
        request_id=get_request_id(request)
    )
    return {"org_id": org_id, "stripe_customer_id": customer_id}
