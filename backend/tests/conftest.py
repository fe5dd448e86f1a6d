"""Pytest configuration and fixtures."""
import base64
import os
from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test configuration BEFORE importing the app so cached settings pick it up
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["DEBUG"] = "False"
os.environ["APP_URL"] = "https://app.test"
os.environ["UNSUBSCRIBE_SECRET"] = "test-unsubscribe-secret"
os.environ["RESEND_WEBHOOK_SECRET"] = "whsec_" + base64.b64encode(b"test-webhook-signing-key").decode()
os.environ["RESEND_API_KEY"] = ""
os.environ["PROVIDER_SCHEDULING_ENABLED"] = "False"

from mailflow.main import app  # noqa: E402
from mailflow.core.config import get_settings  # noqa: E402
from mailflow.core.exceptions import ProviderError  # noqa: E402
from mailflow.db.base import Base, enable_sqlite_savepoints, get_db, init_db  # noqa: E402
from mailflow.email.service import EmailProvider, EmailService, ProviderResult, set_email_service  # noqa: E402
from mailflow.email.templates import TemplateStore  # noqa: E402
from mailflow.email.flows import FlowStore  # noqa: E402

# Use SQLite for testing
engine = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
enable_sqlite_savepoints(engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

WELCOME_OFFSETS = (0, 1440, 4320)
TRIGGERED_AT = datetime(2024, 1, 1, 0, 0, 0)


class FakeProvider(EmailProvider):
    """Records every call instead of talking to a provider."""

    supports_scheduling = True

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.sent = []
        self.scheduled = []
        self.cancelled = []
        self.calls = 0

    def get_name(self) -> str:
        return "fake"

    async def send(self, message, scheduled_at=None):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise ProviderError("Fake provider outage", provider="fake", status_code=503)
        message_id = f"re_{self.calls}"
        if scheduled_at is not None:
            self.scheduled.append((message, scheduled_at))
        else:
            self.sent.append(message)
        return ProviderResult(provider="fake", message_id=message_id, scheduled=scheduled_at is not None)

    async def cancel(self, message_id):
        self.cancelled.append(message_id)


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    init_db(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session):
    """Create a test client with database override."""
    app.dependency_overrides[get_db] = lambda: db_session
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def email_service(provider):
    """Install a provider-recording email service as the global instance."""
    service = EmailService([provider])
    set_email_service(service)
    yield service
    set_email_service(None)


@pytest.fixture
def settings_env(monkeypatch):
    """Set environment variables and rebuild cached settings."""

    def _apply(**values):
        for key, value in values.items():
            monkeypatch.setenv(key, str(value))
        get_settings.cache_clear()
        return get_settings()

    yield _apply
    get_settings.cache_clear()


@pytest.fixture
def welcome_template(db_session):
    return TemplateStore(db_session).create_version(
        name="welcome",
        subject="Welcome {{ first_name }}",
        html_content="<p>Hi {{ first_name }}</p><a href=\"{{ unsubscribe_url }}\">Unsubscribe</a>",
        text_content="Hi {{ first_name }}",
        activate=True,
    )


@pytest.fixture
def receipt_template(db_session):
    return TemplateStore(db_session).create_version(
        name="receipt",
        subject="Your receipt",
        html_content="<p>Thanks for your order</p>",
        metadata={"email_type": "transactional"},
        activate=True,
    )


@pytest.fixture
def welcome_flow(db_session, welcome_template):
    """Welcome Series: day 0, day 1 and day 3, stopped by unsubscribe or purchase."""
    store = FlowStore(db_session)
    flow = store.create_flow(
        name="Welcome Series",
        trigger_event="user_signed_up",
        cancel_events=["unsubscribed", "purchased"],
    )
    for offset in WELCOME_OFFSETS:
        store.add_step(flow.id, template_id=welcome_template.id, time_offset_minutes=offset)
    return flow
