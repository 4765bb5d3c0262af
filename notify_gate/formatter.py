"""
Renders notification events into WhatsApp message bodies.

Pure functions only: no I/O and no clock. Each notification kind and each
session reply has one fixed template; the tables are checked against their
enums at import time so a kind without a template cannot ship.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from notify_gate.errors import UnknownNotificationKind


class NotificationKind(str, Enum):
    """Customer-facing queue notifications."""
    TICKET_CREATED = "ticket_created"
    ALMOST_YOUR_TURN = "almost_your_turn"
    YOUR_TURN = "your_turn"


class NotificationEvent(BaseModel):
    """
    Intent to notify one customer about one ticket.

    Context fields are the values substituted into the template. The event
    is input to the formatter only; it is never persisted.
    """
    phone: str = Field(..., min_length=1, description="Target phone number")
    kind: NotificationKind = Field(..., description="Which template to render")
    tenant_id: str = Field(..., min_length=1, description="Owning organization id")
    ticket_id: Optional[str] = Field(None, description="Ticket primary key, when known")

    ticket_number: str = Field(..., min_length=1, description="Ticket label shown to the customer")
    department_name: str = Field(..., min_length=1)
    organization_name: str = Field(..., min_length=1)
    current_serving: Optional[str] = Field(None, description="Ticket currently at the counter")
    waiting_count: Optional[int] = Field(None, ge=0, description="Customers ahead in the queue")


_TICKET_CREATED = (
    "🎫 Welcome to {organization_name}!\n"
    "\n"
    "Your ticket number: *{ticket_number}*\n"
    "Department: {department_name}\n"
    "\n"
    "{waiting_line}\n"
    "\n"
    "Please keep this message for reference. We'll notify you when it's almost your turn.\n"
    "\n"
    "Thank you for choosing {organization_name}! 🙏"
)

_ALMOST_YOUR_TURN = (
    "⏰ Almost your turn at {organization_name}!\n"
    "\n"
    "Your ticket: *{ticket_number}*\n"
    "Currently serving: {current_serving}\n"
    "\n"
    "You're next! Please be ready at the {department_name} counter.\n"
    "\n"
    "Thank you for your patience! 🙏"
)

_YOUR_TURN = (
    "🔔 It's your turn!\n"
    "\n"
    "Ticket: *{ticket_number}*\n"
    "Please proceed to: {department_name}\n"
    "\n"
    "Thank you for choosing {organization_name}! 🙏"
)

TEMPLATES = {
    NotificationKind.TICKET_CREATED: _TICKET_CREATED,
    NotificationKind.ALMOST_YOUR_TURN: _ALMOST_YOUR_TURN,
    NotificationKind.YOUR_TURN: _YOUR_TURN,
}

_missing = [kind.value for kind in NotificationKind if kind not in TEMPLATES]
if _missing:
    raise RuntimeError(f"No message template for notification kinds: {_missing}")


def _waiting_line(waiting_count: Optional[int]) -> str:
    if waiting_count:
        noun = "customer" if waiting_count == 1 else "customers"
        verb = "is" if waiting_count == 1 else "are"
        return f"There {verb} {waiting_count} {noun} ahead of you."
    return "You'll be called soon!"


def format_notification(event: NotificationEvent) -> str:
    """
    Render the message body for an event.

    Raises:
        UnknownNotificationKind: no template exists for event.kind.
    """
    try:
        kind = NotificationKind(event.kind)
    except ValueError as e:
        raise UnknownNotificationKind(f"unknown notification kind: {event.kind!r}") from e

    template = TEMPLATES.get(kind)
    if template is None:
        raise UnknownNotificationKind(f"unknown notification kind: {kind.value!r}")

    return template.format(
        organization_name=event.organization_name,
        ticket_number=event.ticket_number,
        department_name=event.department_name,
        current_serving=event.current_serving or "N/A",
        waiting_line=_waiting_line(event.waiting_count),
    )


class SessionReply(str, Enum):
    """Acknowledgements sent back to a customer who wrote in."""
    SESSION_OPENED = "session_opened"
    SESSION_EXTENDED = "session_extended"


_SESSION_OPENED = (
    "🎉 Thank you for contacting {organization_name}!\n"
    "\n"
    "You'll now receive WhatsApp notifications for the next {window_hours} hours including:\n"
    "✅ Ticket confirmations\n"
    "✅ Queue position updates\n"
    "✅ \"Almost your turn\" alerts\n"
    "✅ \"Your turn\" notifications\n"
    "\n"
    "Your session is active until {expires_at}.\n"
    "\n"
    "Need help? Reply anytime! 💬"
)

_SESSION_EXTENDED = (
    "✅ Your WhatsApp notification session has been extended!\n"
    "\n"
    "Session now active until: {expires_at}\n"
    "\n"
    "You'll continue receiving queue updates. Thanks! 💬"
)

SESSION_REPLY_TEMPLATES = {
    SessionReply.SESSION_OPENED: _SESSION_OPENED,
    SessionReply.SESSION_EXTENDED: _SESSION_EXTENDED,
}

_missing = [reply.value for reply in SessionReply if reply not in SESSION_REPLY_TEMPLATES]
if _missing:
    raise RuntimeError(f"No message template for session replies: {_missing}")


def format_session_reply(
    reply: SessionReply,
    expires_at: datetime,
    window: timedelta,
    organization_name: Optional[str] = None,
) -> str:
    """Render the acknowledgement for an opened or extended session."""
    return SESSION_REPLY_TEMPLATES[SessionReply(reply)].format(
        organization_name=organization_name or "us",
        window_hours=int(window.total_seconds() // 3600),
        expires_at=expires_at.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
    )
