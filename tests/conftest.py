"""
Pytest configuration and shared fixtures.

Environment defaults are set here, before any notify_gate import, so the
module-level settings pick them up. Unit tests run against a private
in-memory SQLite database; API tests use the application's engine.
"""

import json
import os
import tempfile
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), "notify_gate_test.db"),
)
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("MESSAGING_ENABLED", "true")
os.environ.setdefault("DEBUG_MODE", "false")

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Clear settings cache before any app imports to ensure test env vars are used
from notify_gate.config import get_settings
get_settings.cache_clear()

from notify_gate import models  # noqa: E402,F401
from notify_gate.gate import DispatchGate  # noqa: E402
from notify_gate.models import Organization  # noqa: E402
from notify_gate.providers import ProviderResolver  # noqa: E402
from notify_gate.sessions import SessionStore  # noqa: E402
from notify_gate.storage import Base  # noqa: E402


START = datetime(2026, 10, 19, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable UTC clock shared by the store and the gate."""

    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class ProviderStub:
    """
    Stand-in for the messaging provider behind an httpx.MockTransport.

    Every request is recorded; the reply defaults to a successful send and
    can be swapped with reply_with() / fail_with().
    """

    def __init__(self):
        self.requests = []
        self._replies = []
        self._default = lambda request: httpx.Response(
            200, json={"sent": True, "message": "ok", "id": "abc"}
        )

    @property
    def calls(self) -> int:
        return len(self.requests)

    def form(self, index: int = -1) -> dict:
        parsed = parse_qs(self.requests[index].content.decode("utf-8"))
        return {key: values[0] for key, values in parsed.items()}

    def reply_with(self, status_code: int = 200, json_body=None, text: str = None) -> None:
        if json_body is not None:
            content = json.dumps(json_body)
        else:
            content = text or ""
        self._default = lambda request: httpx.Response(status_code, content=content.encode("utf-8"))

    def fail_with(self, exc_type=httpx.ConnectError, times: int = 1) -> None:
        """Raise a transport error for the next `times` requests."""
        for _ in range(times):
            self._replies.append(exc_type)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._replies:
            exc_type = self._replies.pop(0)
            raise exc_type("provider unreachable", request=request)
        return self._default(request)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def make_org(session_factory):
    """Insert an organization row with a configured, active provider instance."""

    def _make_org(org_id: str = "org-a", **overrides) -> str:
        values = {
            "id": org_id,
            "name": "Acme Clinic",
            "whatsapp_business_number": "14155550100",
            "messaging_enabled": True,
            "provider_instance_id": "instance42",
            "provider_token": "secret-token",
            "provider_base_url": "https://provider.test",
            "provider_status": "active",
            "daily_message_limit": 1000,
            "daily_message_count": 0,
        }
        values.update(overrides)
        with session_factory() as db:
            db.add(Organization(**values))
            db.commit()
        return org_id

    return _make_org


@pytest.fixture
def provider():
    return ProviderStub()


@pytest.fixture
def http_client(provider):
    client = httpx.Client(transport=httpx.MockTransport(provider.handler))
    yield client
    client.close()


@pytest.fixture
def store(session_factory, clock):
    return SessionStore(session_factory, clock=clock)


@pytest.fixture
def resolver(session_factory, http_client):
    return ProviderResolver(session_factory, http_client)


@pytest.fixture
def make_gate(store, resolver, http_client, clock):
    """Build a gate over the test store/resolver; keyword overrides go to DispatchGate."""

    def _make_gate(**overrides) -> DispatchGate:
        options = {
            "messaging_enabled": True,
            "debug_mode": False,
            "retry_delay": 0,
            "clock": clock,
            "sleep": lambda seconds: None,
        }
        options.update(overrides)
        return DispatchGate(store, resolver, http_client, **options)

    return _make_gate


@pytest.fixture
def ticket_context():
    return {
        "ticket_number": "A-042",
        "department_name": "Radiology",
        "organization_name": "Acme Clinic",
        "current_serving": "A-041",
        "waiting_count": 3,
    }
