"""Pydantic schemas for webhook ingestion and the outbound sale notification"""
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Literal, Optional


class SaleNotification(BaseModel):
    """Body POSTed to SALE_WEBHOOK_URL after a completed checkout"""
    org_id: str
    site_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    plan: Literal["free", "paid"] = "paid"
    amount_cents: int = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)  # ISO 4217
    timestamp: str
    request_id: Optional[str] = None
    trace_id: Optional[str] = None


class WebhookAck(BaseModel):
    received: bool = True
    status: str
    event_id: Optional[str] = None


class WebhookEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider: str
    event_id: str
    event_type: str
    org_id: Optional[str] = None
    payload_hash: Optional[str] = None
    payload_pointer: Optional[str] = None
    status: str
    error_message: Optional[str] = None
    attempts: int
    created_at: datetime
    processed_at: Optional[datetime] = None


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    org_id: str
    actor_id: Optional[str] = None
    action: str
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    metadata_json: Optional[Dict[str, Any]] = None
    request_id: Optional[str] = None
    created_at: datetime
