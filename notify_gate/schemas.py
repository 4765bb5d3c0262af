"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from notify_gate.formatter import NotificationKind
from notify_gate.utils import normalize_phone


# =============================================================================
# Pydantic Request Models
# =============================================================================

class WebhookRequest(BaseModel):
    """
    Inbound message callback from the messaging provider.

    Validates:
    - message_id: non-empty string
    - from/to: phone numbers, '+' optional, provider '@c.us' suffix allowed
    - ts: ISO-8601 UTC string with Z suffix
    - text: optional, max 4096 characters
    - organization_id: optional, otherwise resolved from the 'to' number
    - pushname: optional customer display name
    """
    message_id: str = Field(
        ...,
        min_length=1,
        description="Unique provider message identifier"
    )
    # Note: 'from' is a reserved word in Python, so we use alias
    from_msisdn: str = Field(
        ...,
        alias="from",
        description="Customer phone number"
    )
    to: str = Field(
        ...,
        description="Tenant WhatsApp business number"
    )
    ts: str = Field(
        ...,
        description="Message timestamp in ISO-8601 UTC format (e.g., 2025-01-15T10:00:00Z)"
    )
    text: Optional[str] = Field(
        None,
        max_length=4096,
        description="Message text content"
    )
    organization_id: Optional[str] = Field(
        None,
        min_length=1,
        description="Owning organization, when the provider callback carries it"
    )
    customer_name: Optional[str] = Field(
        None,
        alias="pushname",
        max_length=255,
        description="Customer display name reported by the provider"
    )

    @field_validator("from_msisdn", "to")
    @classmethod
    def validate_phone_format(cls, v: str, info) -> str:
        """Accept '+digits', 'digits' or 'digits@c.us'; separators are tolerated."""
        local = v.split("@", 1)[0]
        if not local.replace("+", "", 1).replace(" ", "").replace("-", "").isdigit():
            raise ValueError(f"{info.field_name} must contain only digits")
        if not normalize_phone(v):
            raise ValueError(f"{info.field_name} must have at least one digit")
        return v

    @field_validator("ts")
    @classmethod
    def validate_iso8601_utc(cls, v: str) -> str:
        """Validate ISO-8601 UTC timestamp with Z suffix."""
        if not v.endswith("Z"):
            raise ValueError("ts must end with 'Z' (UTC timezone)")
        try:
            datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError("ts must be a valid ISO-8601 UTC timestamp (e.g., 2025-01-15T10:00:00Z)")
        return v

    model_config = {
        "populate_by_name": True,  # Allow both 'from' and 'from_msisdn'
        "json_schema_extra": {
            "examples": [
                {
                    "message_id": "wamid.1",
                    "from": "201234567890@c.us",
                    "to": "+14155550100",
                    "ts": "2025-01-15T10:00:00Z",
                    "text": "Hi"
                }
            ]
        }
    }


class DispatchRequest(BaseModel):
    """
    Core-facing dispatch call made by business-event triggers.

    Exactly one of 'kind' (rendered from 'context') or 'message' (sent as is).
    """
    phone: str = Field(..., description="Customer phone number")
    organization_id: str = Field(..., description="Owning organization")
    kind: Optional[NotificationKind] = Field(None, description="Notification template")
    message: Optional[str] = Field(None, max_length=4096, description="Raw message body")
    context: dict[str, Any] = Field(default_factory=dict, description="Template fields")
    ticket_id: Optional[str] = None
    reference_id: Optional[str] = None

    @model_validator(mode="after")
    def check_kind_or_message(self) -> "DispatchRequest":
        if (self.kind is None) == (self.message is None):
            raise ValueError("exactly one of 'kind' or 'message' is required")
        return self


class ConnectionTestRequest(BaseModel):
    """Credentials to probe before an admin saves them."""
    instance_id: str = Field(..., alias="instanceId", min_length=1)
    token: str = Field(..., min_length=1)
    base_url: Optional[str] = Field(None, alias="baseUrl")

    model_config = {"populate_by_name": True}


class TicketAssociationRequest(BaseModel):
    """Ticket to link to the customer's live session."""
    ticket_id: str = Field(..., min_length=1, description="Ticket primary key")
    organization_id: Optional[str] = Field(None, min_length=1, description="Owning organization")
    customer_name: Optional[str] = Field(None, max_length=255)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for successful webhook processing."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class SessionResponse(BaseModel):
    """One consent session."""
    id: int
    phone_number: str
    organization_id: Optional[str] = None
    initiated_at: datetime
    expires_at: datetime
    ticket_id: Optional[str] = None
    customer_name: Optional[str] = None

    model_config = {"from_attributes": True}


class SessionStatusResponse(BaseModel):
    """Whether a phone number may currently be messaged."""
    phone_number: str
    has_active_session: bool
    session: Optional[SessionResponse] = None
    time_remaining_seconds: float = Field(0, ge=0)


class SessionCountResponse(BaseModel):
    """Rows touched by a session mutation."""
    count: int = Field(..., ge=0)


class ConnectionTestResponse(BaseModel):
    """Outcome of a provider connection probe."""
    success: bool
    message: str
    response_time_ms: float = 0.0
    status: Optional[str] = Field(None, description="Recorded instance status, for stored configs")
    details: Any = None


class DispatchQueuedResponse(BaseModel):
    """Returned when a dispatch was handed to a background task."""
    status: str = Field(default="queued")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
