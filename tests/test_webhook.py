"""
Tests for the POST /webhook endpoint.

Tests cover:
- Valid signature opens a consent session
- Duplicate message handling (idempotency)
- Tenant resolution from organization_id or the business number
- Welcome and extension replies to the sender
- Invalid/missing signature (401)
- Validation errors (422)
"""

import os
import hmac
import hashlib
import json
import pytest
from fastapi.testclient import TestClient

from notify_gate.config import settings
from notify_gate.gate import DispatchGate
from notify_gate.main import app, get_dispatch_gate
from notify_gate.models import InboundMessage, Organization, WhatsAppSession
from notify_gate.providers import ProviderResolver
from notify_gate.sessions import SessionStore
from notify_gate.storage import SessionLocal, Base, engine


# Test configuration from environment
TEST_WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]


def compute_signature(body: str, secret: str) -> str:
    """Compute HMAC-SHA256 signature for request body."""
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def post_signed(client, body: str):
    return client.post(
        "/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Signature": compute_signature(body, TEST_WEBHOOK_SECRET)
        }
    )


@pytest.fixture(scope="function")
def client(http_client):
    """Create test client with fresh database and a stubbed provider for each test."""
    Base.metadata.create_all(bind=engine)
    gate = DispatchGate(
        SessionStore(SessionLocal),
        ProviderResolver(SessionLocal, http_client),
        http_client,
        retry_delay=0,
        sleep=lambda seconds: None,
    )

    with TestClient(app) as test_client:
        app.dependency_overrides[get_dispatch_gate] = lambda: gate
        yield test_client
        app.dependency_overrides.clear()

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def organization(client):
    """Tenant whose business number is +14155550100."""
    with SessionLocal() as db:
        db.add(Organization(
            id="org-a",
            name="Acme Clinic",
            whatsapp_business_number="14155550100",
            provider_instance_id="instance42",
            provider_token="secret-token",
            provider_base_url="https://provider.test",
            provider_status="active",
        ))
        db.commit()
    return "org-a"


@pytest.fixture
def valid_message_body() -> str:
    """Return a valid message JSON body."""
    return '{"message_id":"m1","from":"+919876543210","to":"+14155550100","ts":"2025-01-15T10:00:00Z","text":"Hello"}'


@pytest.fixture
def valid_signature(valid_message_body: str) -> str:
    """Compute valid signature for test message."""
    return compute_signature(valid_message_body, TEST_WEBHOOK_SECRET)


class TestWebhookValidSignature:
    """Test webhook with valid signatures."""

    def test_create_message_success(self, client, valid_message_body, valid_signature):
        """Test successful message processing with valid signature."""
        response = client.post(
            "/webhook",
            content=valid_message_body,
            headers={
                "Content-Type": "application/json",
                "X-Signature": valid_signature
            }
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        assert response.headers["X-Request-ID"]

    def test_inbound_message_opens_session(self, client, valid_message_body):
        """The sender can be messaged once their message was received."""
        before = client.get("/sessions/+919876543210").json()
        assert before["has_active_session"] is False

        assert post_signed(client, valid_message_body).status_code == 200

        after = client.get("/sessions/+919876543210").json()
        assert after["has_active_session"] is True
        assert after["phone_number"] == "919876543210"
        assert after["session"]["phone_number"] == "919876543210"
        assert 0 < after["time_remaining_seconds"] <= 24 * 3600

    def test_duplicate_message_idempotent(self, client, valid_message_body, valid_signature):
        """Test that duplicate messages return 200 and keep a single session."""
        headers = {
            "Content-Type": "application/json",
            "X-Signature": valid_signature
        }

        response1 = client.post("/webhook", content=valid_message_body, headers=headers)
        assert response1.status_code == 200
        assert response1.json() == {"status": "ok"}

        response2 = client.post("/webhook", content=valid_message_body, headers=headers)
        assert response2.status_code == 200
        assert response2.json() == {"status": "ok"}

        with SessionLocal() as db:
            assert db.query(InboundMessage).count() == 1
            assert db.query(WhatsAppSession).count() == 1

    def test_repeat_contact_extends_single_session(self, client):
        """Test several messages from one sender leave one active session."""
        messages = [
            '{"message_id":"m1","from":"+919876543210","to":"+14155550100","ts":"2025-01-15T10:00:00Z","text":"Hello"}',
            '{"message_id":"m2","from":"+911234567890","to":"+14155550100","ts":"2025-01-15T10:01:00Z","text":"World"}',
            '{"message_id":"m3","from":"919876543210@c.us","to":"+14155550100","ts":"2025-01-15T10:02:00Z","text":"Test"}',
        ]

        for body in messages:
            response = post_signed(client, body)
            assert response.status_code == 200
            assert response.json() == {"status": "ok"}

        with SessionLocal() as db:
            active = db.query(WhatsAppSession).filter(WhatsAppSession.is_active.is_(True)).all()
            assert sorted(s.phone_number for s in active) == ["911234567890", "919876543210"]

    def test_message_without_text(self, client):
        """Test message without optional text field."""
        body = '{"message_id":"m_notext","from":"+919876543210","to":"+14155550100","ts":"2025-01-15T10:00:00Z"}'

        response = post_signed(client, body)

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestWebhookTenantResolution:
    """Sessions are opened for the tenant the customer wrote to."""

    def test_session_owned_by_business_number_tenant(self, client, organization, valid_message_body):
        assert post_signed(client, valid_message_body).status_code == 200

        with SessionLocal() as db:
            session = db.query(WhatsAppSession).one()
            assert session.organization_id == organization
            message = db.query(InboundMessage).one()
            assert message.organization_id == organization
            assert message.from_msisdn == "919876543210"

        status = client.get("/sessions/919876543210", params={"organization_id": organization}).json()
        assert status["has_active_session"] is True

    def test_explicit_organization_id_wins(self, client, organization):
        body = json.dumps({
            "message_id": "m-explicit",
            "from": "+919876543210",
            "to": "+14155550100",
            "ts": "2025-01-15T10:00:00Z",
            "organization_id": "org-b",
        })
        assert post_signed(client, body).status_code == 200

        with SessionLocal() as db:
            assert db.query(WhatsAppSession).one().organization_id == "org-b"

        other = client.get("/sessions/919876543210", params={"organization_id": organization}).json()
        assert other["has_active_session"] is False

    def test_unknown_business_number_opens_tenantless_session(self, client, valid_message_body):
        assert post_signed(client, valid_message_body).status_code == 200

        with SessionLocal() as db:
            assert db.query(WhatsAppSession).one().organization_id is None


class TestWebhookSessionReplies:
    """The sender hears back once their session is open or extended."""

    def test_first_contact_gets_welcome(self, client, organization, provider, valid_message_body):
        assert post_signed(client, valid_message_body).status_code == 200

        assert provider.calls == 1
        form = provider.form()
        assert form["to"] == "919876543210"
        assert form["token"] == "secret-token"
        assert form["body"].startswith("🎉 Thank you for contacting Acme Clinic!")
        assert "next 24 hours" in form["body"]

    def test_repeat_contact_gets_extension(self, client, organization, provider):
        first = '{"message_id":"m1","from":"+919876543210","to":"+14155550100","ts":"2025-01-15T10:00:00Z"}'
        second = '{"message_id":"m2","from":"919876543210@c.us","to":"+14155550100","ts":"2025-01-15T10:05:00Z"}'

        post_signed(client, first)
        post_signed(client, second)

        assert provider.calls == 2
        assert provider.form(1)["body"].startswith("✅ Your WhatsApp notification session has been extended!")

    def test_duplicate_message_sends_nothing_more(self, client, organization, provider, valid_message_body):
        post_signed(client, valid_message_body)
        post_signed(client, valid_message_body)

        assert provider.calls == 1

    def test_unknown_tenant_gets_no_reply(self, client, provider, valid_message_body):
        assert post_signed(client, valid_message_body).status_code == 200

        assert provider.calls == 0

    def test_replies_disabled(self, client, organization, provider, valid_message_body, monkeypatch):
        monkeypatch.setattr(settings, "SESSION_REPLIES_ENABLED", False)

        assert post_signed(client, valid_message_body).status_code == 200

        assert provider.calls == 0

    def test_failed_reply_keeps_webhook_ok(self, client, organization, provider, valid_message_body):
        provider.reply_with(status_code=500, text="boom")

        response = post_signed(client, valid_message_body)

        assert response.status_code == 200
        status = client.get("/sessions/919876543210", params={"organization_id": organization}).json()
        assert status["has_active_session"] is True

    def test_pushname_stored_on_session(self, client, organization):
        body = json.dumps({
            "message_id": "m-name",
            "from": "+919876543210",
            "to": "+14155550100",
            "ts": "2025-01-15T10:00:00Z",
            "pushname": "Mona",
        })
        assert post_signed(client, body).status_code == 200

        with SessionLocal() as db:
            assert db.query(WhatsAppSession).one().customer_name == "Mona"


class TestWebhookInvalidSignature:
    """Test webhook with invalid or missing signatures."""

    def test_missing_signature_header(self, client, valid_message_body):
        """Test request without X-Signature header returns 401."""
        response = client.post(
            "/webhook",
            content=valid_message_body,
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}

    def test_invalid_signature(self, client, valid_message_body):
        """Test request with wrong signature returns 401 and opens no session."""
        response = client.post(
            "/webhook",
            content=valid_message_body,
            headers={
                "Content-Type": "application/json",
                "X-Signature": "invalid_signature_123"
            }
        )

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}
        with SessionLocal() as db:
            assert db.query(WhatsAppSession).count() == 0

    def test_empty_signature(self, client, valid_message_body):
        """Test request with empty signature returns 401."""
        response = client.post(
            "/webhook",
            content=valid_message_body,
            headers={
                "Content-Type": "application/json",
                "X-Signature": ""
            }
        )

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}

    def test_signature_with_different_body(self, client, valid_signature):
        """Test signature computed for different body returns 401."""
        different_body = '{"message_id":"m2","from":"+919876543210","to":"+14155550100","ts":"2025-01-15T10:00:00Z","text":"Different"}'

        response = client.post(
            "/webhook",
            content=different_body,
            headers={
                "Content-Type": "application/json",
                "X-Signature": valid_signature  # Signature for m1, not m2
            }
        )

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}

    def test_signature_with_different_secret(self, client, valid_message_body):
        """Test signature computed with different secret returns 401."""
        wrong_signature = compute_signature(valid_message_body, "wrong_secret")

        response = client.post(
            "/webhook",
            content=valid_message_body,
            headers={
                "Content-Type": "application/json",
                "X-Signature": wrong_signature
            }
        )

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}


class TestWebhookValidationErrors:
    """Test webhook validation errors (422)."""

    def test_invalid_json(self, client):
        """Test invalid JSON returns 422."""
        response = post_signed(client, "not valid json")

        assert response.status_code == 422

    def test_missing_message_id(self, client):
        """Test missing message_id returns 422."""
        body = '{"from":"+919876543210","to":"+14155550100","ts":"2025-01-15T10:00:00Z","text":"Hello"}'

        assert post_signed(client, body).status_code == 422

    def test_empty_message_id(self, client):
        """Test empty message_id returns 422."""
        body = '{"message_id":"","from":"+919876543210","to":"+14155550100","ts":"2025-01-15T10:00:00Z","text":"Hello"}'

        assert post_signed(client, body).status_code == 422

    def test_from_without_plus_accepted(self, client):
        """Providers often omit the + prefix."""
        body = '{"message_id":"m1","from":"919876543210","to":"14155550100","ts":"2025-01-15T10:00:00Z","text":"Hello"}'

        assert post_signed(client, body).status_code == 200

    def test_invalid_from_format_with_letters(self, client):
        """Test 'from' with non-digit characters returns 422."""
        body = '{"message_id":"m1","from":"+91abc543210","to":"+14155550100","ts":"2025-01-15T10:00:00Z","text":"Hello"}'

        assert post_signed(client, body).status_code == 422

    def test_invalid_to_format(self, client):
        """Test invalid 'to' format returns 422."""
        body = '{"message_id":"m1","from":"+919876543210","to":"business","ts":"2025-01-15T10:00:00Z","text":"Hello"}'

        assert post_signed(client, body).status_code == 422

    def test_invalid_timestamp_no_z_suffix(self, client):
        """Test timestamp without Z suffix returns 422."""
        body = '{"message_id":"m1","from":"+919876543210","to":"+14155550100","ts":"2025-01-15T10:00:00","text":"Hello"}'

        assert post_signed(client, body).status_code == 422

    def test_invalid_timestamp_format(self, client):
        """Test invalid timestamp format returns 422."""
        body = '{"message_id":"m1","from":"+919876543210","to":"+14155550100","ts":"not-a-timestamp","text":"Hello"}'

        assert post_signed(client, body).status_code == 422

    def test_text_too_long(self, client):
        """Test text exceeding 4096 characters returns 422."""
        long_text = "x" * 4097
        body = f'{{"message_id":"m1","from":"+919876543210","to":"+14155550100","ts":"2025-01-15T10:00:00Z","text":"{long_text}"}}'

        response = post_signed(client, body)

        assert response.status_code == 422
        with SessionLocal() as db:
            assert db.query(WhatsAppSession).count() == 0
