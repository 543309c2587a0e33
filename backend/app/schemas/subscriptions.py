"""Pydantic schemas for subscriptions and entitlements"""
from datetime import datetime
from pydantic import BaseModel, ConfigDict
from typing import Literal, Optional


class Entitlements(BaseModel):
    org_id: str
    plan: Literal["free", "paid"]
    top_bar_hidden: bool
    max_custom_domains: int
    chat_enabled: bool
    analytics_enabled: bool


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    org_id: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    plan: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    dunning_stage: int
    last_payment_at: Optional[datetime] = None
    last_payment_failed_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None


class CreateCustomerRequest(BaseModel):
    email: Optional[str] = None
