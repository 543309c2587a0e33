"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.organization import Organization
from app.models.site import Site
from app.models.subscription import Subscription
from app.models.webhook_event import WebhookEvent
from app.models.audit_log import AuditLog

# Export all for convenience
__all__ = [
    "Base", "Organization", "Site", "Subscription", "WebhookEvent", "AuditLog"
]
