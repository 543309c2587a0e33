"""Logging configuration for the application"""
import logging
from contextvars import ContextVar
from typing import Optional

from app.core.config import settings

# Correlation id of the request being handled; "-" outside a request (background tasks)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s'


class RequestIdFilter(logging.Filter):
    """Stamp every record with the current request id"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        return True


def setup_logging():
    """Configure logging for the application"""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    handler.addFilter(RequestIdFilter())
    logging.basicConfig(level=level, handlers=[handler], force=True)

    # Silence noisy third-party libraries
    for name in ("stripe", "urllib3", "httpx", "botocore", "boto3", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)


# Export commonly used loggers
webhook_logger = logging.getLogger("webhook")
billing_logger = logging.getLogger("billing")
audit_logger = logging.getLogger("audit")
retention_logger = logging.getLogger("retention")
security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")
