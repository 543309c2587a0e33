"""Site model"""
import uuid
from sqlalchemy import Column, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class Site(Base):
    """Generated small-business site; its plan mirrors the owning org's tier"""
    __tablename__ = "sites"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id = Column(String(64), ForeignKey("orgs.id"), nullable=False, index=True)
    slug = Column(String(255), unique=True, nullable=False)
    plan = Column(String(20), nullable=False, default="free")  # 'free', 'paid'
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    org = relationship("Organization", back_populates="sites")
