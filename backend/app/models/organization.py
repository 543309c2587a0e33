"""Organization model"""
import uuid
from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class Organization(Base):
    """Tenant that owns sites and exactly one subscription"""
    __tablename__ = "orgs"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    stripe_customer_id = Column(String(255), nullable=True, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    sites = relationship("Site", back_populates="org")
    subscription = relationship("Subscription", back_populates="org", uselist=False)
