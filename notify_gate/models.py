"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)

from notify_gate.storage import Base


class Organization(Base):
    """
    Tenant row as far as the notification gate needs it.

    Table: organizations
    Holds the tenant's messaging provider instance credentials and health.
    Rows are managed by the admin dashboard; this service reads them and
    only writes connection-test results and the daily message counter.
    """
    __tablename__ = "organizations"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    whatsapp_business_number = Column(String, nullable=True, index=True)  # digits only
    messaging_enabled = Column(Boolean, nullable=False, default=True)

    provider_instance_id = Column(String, nullable=True)
    provider_token = Column(String, nullable=True)
    provider_base_url = Column(String, nullable=True)
    provider_status = Column(String, nullable=False, default="unknown")
    provider_last_tested = Column(DateTime(timezone=True), nullable=True)
    provider_last_error = Column(Text, nullable=True)

    daily_message_limit = Column(Integer, nullable=False, default=1000)
    daily_message_count = Column(Integer, nullable=False, default=0)
    daily_count_date = Column(Date, nullable=True)


class WhatsAppSession(Base):
    """
    Consent window opened by an inbound customer message.

    Table: whatsapp_sessions
    Several rows may exist per phone number; the newest active, unexpired
    row is the effective one. At most one active row per (phone, tenant)
    is enforced by a partial unique index.
    """
    __tablename__ = "whatsapp_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone_number = Column(String, nullable=False, index=True)  # digits only
    organization_id = Column(String, nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    initiated_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    ticket_id = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)

    __table_args__ = (
        Index(
            "uq_whatsapp_sessions_active_phone_org",
            "phone_number",
            "organization_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )


class InboundMessage(Base):
    """
    Inbound provider message log.

    Table: inbound_messages
    Primary Key: message_id (makes webhook redelivery idempotent)
    """
    __tablename__ = "inbound_messages"

    message_id = Column(String, primary_key=True, index=True)
    from_msisdn = Column(String, nullable=False, index=True)
    to_msisdn = Column(String, nullable=False)
    ts = Column(String, nullable=False)  # ISO-8601 UTC string
    text = Column(Text, nullable=True)
    organization_id = Column(String, nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
