"""Security dependencies for operator endpoints"""
import logging
import secrets
from typing import Optional
from fastapi import Header, HTTPException, Request
from app.core.config import settings

security_logger = logging.getLogger("security")


def require_admin_key(
    request: Request,
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")
) -> None:
    """Dependency: Require the operator API key (constant-time comparison)"""
    if not settings.ADMIN_API_KEY:
        security_logger.warning(f"Admin endpoint {request.url.path} called but ADMIN_API_KEY is not configured")
        raise HTTPException(503, "Admin API is not configured")

    if not x_admin_key or not secrets.compare_digest(
        x_admin_key.encode("utf-8"), settings.ADMIN_API_KEY.encode("utf-8")
    ):
        client = request.client.host if request.client else "unknown"
        security_logger.warning(f"Rejected admin request to {request.url.path} from {client}")
        raise HTTPException(401, "Invalid admin key")
