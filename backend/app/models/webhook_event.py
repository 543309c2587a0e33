"""WebhookEvent model"""
import uuid
from sqlalchemy import Column, Integer, String, Text, DateTime, UniqueConstraint, Index
from datetime import datetime, timezone
from app.models.base import Base

WEBHOOK_EVENT_STATUSES = ("received", "processing", "processed", "failed", "quarantined")


class WebhookEvent(Base):
    """Inbound webhook event log for idempotency, audit and replay"""
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
        Index("ix_webhook_events_status_created", "status", "created_at"),
    )

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String(32), nullable=False, default="stripe")
    event_id = Column(String(500), nullable=False)
    event_type = Column(String(200), nullable=False, index=True)
    org_id = Column(String(64), nullable=True, index=True)
    payload_hash = Column(String(128), nullable=True)
    payload_pointer = Column(String(2048), nullable=True)  # R2 object key of the raw body
    status = Column(String(20), nullable=False, default="received")
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
