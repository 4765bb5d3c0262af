"""
Tests for notification and session reply rendering.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from notify_gate.errors import UnknownNotificationKind
from notify_gate.formatter import (
    SESSION_REPLY_TEMPLATES,
    TEMPLATES,
    NotificationEvent,
    NotificationKind,
    SessionReply,
    format_notification,
    format_session_reply,
)


def make_event(kind, **overrides) -> NotificationEvent:
    fields = {
        "phone": "201234567890",
        "kind": kind,
        "tenant_id": "org-a",
        "ticket_number": "A-042",
        "department_name": "Radiology",
        "organization_name": "Acme Clinic",
        "current_serving": "A-041",
        "waiting_count": 3,
    }
    fields.update(overrides)
    return NotificationEvent(**fields)


class TestTemplates:

    def test_every_kind_has_a_template(self):
        assert set(TEMPLATES) == set(NotificationKind)

    @pytest.mark.parametrize("kind", list(NotificationKind))
    def test_ticket_and_department_always_present(self, kind):
        body = format_notification(make_event(kind))

        assert "A-042" in body
        assert "Radiology" in body
        assert "{" not in body

    @pytest.mark.parametrize("kind", list(NotificationKind))
    def test_deterministic(self, kind):
        event = make_event(kind)
        assert format_notification(event) == format_notification(event)


class TestTicketCreated:

    def test_mentions_queue_position(self):
        body = format_notification(make_event(NotificationKind.TICKET_CREATED))

        assert body.startswith("🎫 Welcome to Acme Clinic!")
        assert "Your ticket number: *A-042*" in body
        assert "There are 3 customers ahead of you." in body

    def test_single_customer_ahead(self):
        body = format_notification(make_event(NotificationKind.TICKET_CREATED, waiting_count=1))

        assert "There is 1 customer ahead of you." in body

    @pytest.mark.parametrize("waiting_count", [0, None])
    def test_nobody_ahead(self, waiting_count):
        body = format_notification(
            make_event(NotificationKind.TICKET_CREATED, waiting_count=waiting_count)
        )

        assert "You'll be called soon!" in body
        assert "ahead of you" not in body


class TestAlmostYourTurn:

    def test_shows_current_serving(self):
        body = format_notification(make_event(NotificationKind.ALMOST_YOUR_TURN))

        assert "Currently serving: A-041" in body
        assert "Please be ready at the Radiology counter." in body

    def test_missing_current_serving(self):
        body = format_notification(
            make_event(NotificationKind.ALMOST_YOUR_TURN, current_serving=None)
        )

        assert "Currently serving: N/A" in body


class TestYourTurn:

    def test_directs_to_department(self):
        body = format_notification(make_event(NotificationKind.YOUR_TURN))

        assert body.startswith("🔔 It's your turn!")
        assert "Please proceed to: Radiology" in body
        assert "Thank you for choosing Acme Clinic!" in body


class TestInvalidEvents:

    def test_unknown_kind_rejected(self):
        event = make_event(NotificationKind.YOUR_TURN).model_copy(update={"kind": "queue_closed"})

        with pytest.raises(UnknownNotificationKind):
            format_notification(event)

    def test_kind_tag_accepted(self):
        assert make_event("your_turn").kind is NotificationKind.YOUR_TURN

    def test_missing_ticket_number(self):
        with pytest.raises(ValidationError):
            make_event(NotificationKind.YOUR_TURN, ticket_number="")

    def test_negative_waiting_count(self):
        with pytest.raises(ValidationError):
            make_event(NotificationKind.TICKET_CREATED, waiting_count=-1)


class TestSessionReplies:

    EXPIRES = datetime(2026, 10, 20, 9, 30, tzinfo=timezone.utc)

    def test_every_reply_has_a_template(self):
        assert set(SESSION_REPLY_TEMPLATES) == set(SessionReply)

    def test_opened_names_organization_and_window(self):
        text = format_session_reply(SessionReply.SESSION_OPENED, self.EXPIRES, timedelta(hours=24), "Acme Clinic")

        assert text.startswith("🎉 Thank you for contacting Acme Clinic!")
        assert "next 24 hours" in text
        assert "2026-10-20 09:30 UTC" in text

    def test_opened_without_organization_name(self):
        text = format_session_reply(SessionReply.SESSION_OPENED, self.EXPIRES, timedelta(hours=12))

        assert "Thank you for contacting us!" in text
        assert "next 12 hours" in text

    def test_extended_shows_new_expiry_in_utc(self):
        local = self.EXPIRES.astimezone(timezone(timedelta(hours=2)))

        text = format_session_reply("session_extended", local, timedelta(hours=24))

        assert "Session now active until: 2026-10-20 09:30 UTC" in text
