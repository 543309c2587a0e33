"""AuditLog model"""
import uuid
from sqlalchemy import Column, String, DateTime, JSON, Index
from datetime import datetime, timezone
from app.models.base import Base


class AuditLog(Base):
    """Append-only audit trail; rows are never updated or deleted"""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_org_created", "org_id", "created_at"),
    )

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id = Column(String(64), nullable=False)
    actor_id = Column(String(64), nullable=True)  # None for system actions (webhooks, jobs)
    action = Column(String(100), nullable=False)
    target_type = Column(String(100), nullable=True)
    target_id = Column(String(500), nullable=True)
    metadata_json = Column(JSON, nullable=True)
    request_id = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
