"""Shared pytest fixtures for test suite"""
import json
import os
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Settings are read at import time; configure before importing the app
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ADMIN_API_KEY", "admin-test-key")
os.environ.setdefault("BACKGROUND_TASKS_ENABLED", "false")
os.environ.setdefault("OTEL_EXPORTER_OTLP_ENDPOINT", "")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from app.main import app
from app.db.session import get_db
from app.models import Base
from app.models.organization import Organization
from app.models.site import Site
from app.services.sale_notifier import build_sale_notifier
from app.services.signature_service import build_stripe_signature_header
from app.services.storage.payload_archive import get_payload_archive


WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]
ADMIN_KEY = os.environ["ADMIN_API_KEY"]

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


class FakeArchive:
    """In-memory stand-in for PayloadArchive"""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.deleted: List[str] = []

    def store(self, provider: str, event_id: str, raw_body: bytes) -> Optional[str]:
        key = f"webhooks/{provider}/{event_id}.json"
        self.objects[key] = raw_body
        return key

    def fetch(self, object_key: str) -> Optional[bytes]:
        return self.objects.get(object_key)

    def delete(self, object_key: str) -> bool:
        self.deleted.append(object_key)
        self.objects.pop(object_key, None)
        return True


class RecordingSleep:
    """Fake sleep that records requested delays instead of waiting"""

    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float):
        self.calls.append(seconds)


@pytest.fixture(scope="function")
def fake_archive() -> FakeArchive:
    return FakeArchive()


@pytest.fixture(scope="function")
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture(scope="function")
def client(db_session: Session, fake_archive: FakeArchive) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, in-memory archive and no sale notifier"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payload_archive] = lambda: fake_archive
    app.dependency_overrides.setdefault(build_sale_notifier, lambda: None)

    try:
        # Disable OpenTelemetry instrumentation in tests
        with patch('app.core.otel.initialize_otel', return_value=False):
            with patch('app.core.otel.setup_otel_logging', return_value=False):
                with patch('app.core.otel.instrument_httpx'):
                    with patch('app.core.otel.instrument_sqlalchemy'):
                        with TestClient(app) as test_client:
                            yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture(scope="function")
def org(db_session: Session) -> Organization:
    """org_1 with two free sites"""
    organization = Organization(id="org_1", name="Acme Bakery")
    db_session.add(organization)
    db_session.add_all([
        Site(id="site_1", org_id="org_1", slug="acme-bakery", plan="free"),
        Site(id="site_2", org_id="org_1", slug="acme-bakery-catering", plan="free"),
    ])
    db_session.commit()
    db_session.refresh(organization)
    return organization


def make_event(
    event_type: str,
    event_id: str,
    data_object: Optional[Dict[str, Any]] = None,
    org_id: Optional[str] = "org_1"
) -> Dict[str, Any]:
    """Minimal Stripe event envelope"""
    obj = dict(data_object or {})
    if org_id is not None:
        metadata = dict(obj.get("metadata") or {})
        metadata.setdefault("org_id", org_id)
        obj["metadata"] = metadata
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "livemode": False,
        "data": {"object": obj},
    }


def sign(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    return build_stripe_signature_header(body, secret, timestamp=timestamp or int(time.time()))


@pytest.fixture(scope="function")
def post_stripe_event(client: TestClient) -> Callable[..., Any]:
    """POST a signed event to /webhooks/stripe; returns the response"""

    def _post(event: Dict[str, Any], secret: str = WEBHOOK_SECRET, body: Optional[bytes] = None):
        raw = body if body is not None else json.dumps(event).encode("utf-8")
        return client.post(
            "/webhooks/stripe",
            content=raw,
            headers={"Stripe-Signature": sign(raw, secret), "Content-Type": "application/json"},
        )

    return _post
