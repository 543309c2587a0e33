"""Middleware configuration for FastAPI application"""
import json
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import api_access_logger, request_id_var

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

REQUEST_ID_HEADER = "X-Request-ID"
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def get_allowed_origins():
    """Get list of allowed CORS origins"""
    allowed_origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        allowed_origins.extend([
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:8000"
        ])
    return allowed_origins


def setup_cors_middleware(app):
    """Setup CORS middleware for FastAPI app"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def log_api_access(request: Request, request_id: Optional[str], status_code: int, error: Optional[str] = None):
    """Log one line per request; 4xx/5xx at WARNING"""
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"

    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "request_id": request_id,
        "client_ip": client_ip,
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "status_code": status_code,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")


async def request_id_middleware(request: Request, call_next):
    """Attach a correlation id to every request and echo it back

    A well-formed incoming X-Request-ID is kept so ids can be traced across
    services; anything else is replaced with a fresh UUID.
    """
    incoming = request.headers.get(REQUEST_ID_HEADER)
    if incoming and _REQUEST_ID_PATTERN.match(incoming):
        request_id = incoming
    else:
        if incoming:
            security_logger.warning(f"Discarding malformed {REQUEST_ID_HEADER} on {request.url.path}")
        request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    token = request_id_var.set(request_id)

    status_code = 500
    error = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
    except Exception as e:
        error = str(e)
        raise
    finally:
        log_api_access(request, request_id, status_code, error)
        request_id_var.reset(token)


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception (request_id={get_request_id(request)}): {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
