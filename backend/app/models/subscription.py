"""Subscription model"""
import uuid
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base

PLANS = ("free", "paid")
SUBSCRIPTION_STATUSES = ("active", "past_due", "canceled", "unpaid", "trialing", "paused")


class Subscription(Base):
    """Local mirror of the org's Stripe subscription (one row per org, never hard-deleted)"""
    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint("plan IN ('free', 'paid')", name="ck_subscriptions_plan"),
        CheckConstraint(
            "status IN ('active', 'past_due', 'canceled', 'unpaid', 'trialing', 'paused')",
            name="ck_subscriptions_status"
        ),
        CheckConstraint("dunning_stage BETWEEN 0 AND 60", name="ck_subscriptions_dunning_stage"),
    )

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id = Column(String(64), ForeignKey("orgs.id"), nullable=False, unique=True, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    plan = Column(String(20), nullable=False, default="free")
    status = Column(String(20), nullable=False, default="active")
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    dunning_stage = Column(Integer, default=0, nullable=False)  # days past due, 0-60
    last_payment_at = Column(DateTime(timezone=True), nullable=True)
    last_payment_failed_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    org = relationship("Organization", back_populates="subscription")
