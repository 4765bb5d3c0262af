"""
Consent session store.

A session is the time-boxed permission to message a phone number on behalf
of a tenant. Only inbound customer contact opens or extends one; outbound
sends never touch it. Expiry is evaluated at read time against the store's
clock, so no background reaper is needed.

Tenant rule: a lookup for a tenant only matches that tenant's sessions.
With legacy_fallback enabled, a tenant-less session (organization_id NULL)
is accepted when the tenant has none of its own. Sessions owned by another
tenant never match.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from notify_gate.errors import InvalidInput, SessionStoreError
from notify_gate.metrics import record_session_event
from notify_gate.models import WhatsAppSession
from notify_gate.utils import mask_phone, normalize_phone

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=24)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; every stored value is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class SessionRecord:
    """Detached snapshot of a whatsapp_sessions row."""
    id: int
    phone_number: str
    organization_id: Optional[str]
    is_active: bool
    initiated_at: datetime
    expires_at: datetime
    created_at: datetime
    ticket_id: Optional[str] = None
    customer_name: Optional[str] = None
    # True only on the record returned by the write that inserted the row
    opened: bool = False

    def time_remaining(self, now: datetime) -> timedelta:
        return max(self.expires_at - now, timedelta(0))

    @classmethod
    def from_row(cls, row: WhatsAppSession, opened: bool = False) -> "SessionRecord":
        return cls(
            opened=opened,
            id=row.id,
            phone_number=row.phone_number,
            organization_id=row.organization_id,
            is_active=bool(row.is_active),
            initiated_at=as_utc(row.initiated_at),
            expires_at=as_utc(row.expires_at),
            created_at=as_utc(row.created_at),
            ticket_id=row.ticket_id,
            customer_name=row.customer_name,
        )


class SessionStore:
    """Reads and writes consent sessions through a SQLAlchemy sessionmaker."""

    def __init__(
        self,
        session_factory: sessionmaker,
        window: timedelta = DEFAULT_WINDOW,
        legacy_fallback: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        if window <= timedelta(0):
            raise ValueError("session window must be positive")
        self._session_factory = session_factory
        self.window = window
        self.legacy_fallback = legacy_fallback
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _live_query(self, db: Session, phone: str, now: datetime):
        return db.query(WhatsAppSession).filter(
            WhatsAppSession.phone_number == phone,
            WhatsAppSession.is_active.is_(True),
            WhatsAppSession.expires_at > now,
        )

    @staticmethod
    def _newest(query) -> Optional[WhatsAppSession]:
        return query.order_by(
            WhatsAppSession.created_at.desc(), WhatsAppSession.id.desc()
        ).first()

    @staticmethod
    def _owned_by(tenant_id: Optional[str]):
        if tenant_id is None:
            return WhatsAppSession.organization_id.is_(None)
        return WhatsAppSession.organization_id == tenant_id

    def _effective(
        self, db: Session, phone: str, tenant_id: Optional[str], now: datetime
    ) -> Optional[WhatsAppSession]:
        query = self._live_query(db, phone, now)
        if not tenant_id:
            return self._newest(query)

        row = self._newest(query.filter(WhatsAppSession.organization_id == tenant_id))
        if row is not None or not self.legacy_fallback:
            return row

        row = self._newest(query.filter(WhatsAppSession.organization_id.is_(None)))
        if row is not None:
            logger.info(
                f"Using tenant-less legacy session for {mask_phone(phone)} (org={tenant_id})"
            )
        return row

    def get_active_session(
        self, phone: str, tenant_id: Optional[str] = None
    ) -> Optional[SessionRecord]:
        """Return the effective session for (phone, tenant) or None."""
        digits = normalize_phone(phone)
        if not digits:
            return None
        now = self.now()
        try:
            with self._session_factory() as db:
                row = self._effective(db, digits, tenant_id, now)
                return SessionRecord.from_row(row) if row is not None else None
        except SQLAlchemyError as e:
            logger.error(f"Session lookup failed for {mask_phone(digits)}: {e}")
            raise SessionStoreError(f"session lookup failed: {e}") from e

    def has_active_session(self, phone: str, tenant_id: Optional[str] = None) -> bool:
        """
        Whether the customer may currently be messaged for this tenant.

        Raises:
            SessionStoreError: the store could not be queried.
        """
        session = self.get_active_session(phone, tenant_id)
        logger.debug(
            f"Session check for {mask_phone(normalize_phone(phone))} "
            f"(org={tenant_id}): {'active' if session else 'none'}"
        )
        return session is not None

    def list_active_sessions(self, tenant_id: str) -> List[SessionRecord]:
        """All live sessions of one tenant, newest first."""
        now = self.now()
        try:
            with self._session_factory() as db:
                rows = (
                    db.query(WhatsAppSession)
                    .filter(
                        WhatsAppSession.organization_id == tenant_id,
                        WhatsAppSession.is_active.is_(True),
                        WhatsAppSession.expires_at > now,
                    )
                    .order_by(WhatsAppSession.created_at.desc(), WhatsAppSession.id.desc())
                    .all()
                )
                return [SessionRecord.from_row(row) for row in rows]
        except SQLAlchemyError as e:
            raise SessionStoreError(f"session listing failed: {e}") from e

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def create_or_extend_session(
        self,
        phone: str,
        tenant_id: Optional[str] = None,
        customer_name: Optional[str] = None,
    ) -> SessionRecord:
        """
        Open a session for (phone, tenant) or push the live one forward.

        The expiry only ever moves forward: the update is conditional on the
        stored expiry being earlier than the newly computed one. A concurrent
        insert for the same pair trips the partial unique index and is
        retried as an extend.
        """
        digits = normalize_phone(phone)
        if not digits:
            raise InvalidInput("phone number has no digits")

        now = self.now()
        new_expiry = now + self.window

        with self._session_factory() as db:
            try:
                record = self._extend(db, digits, tenant_id, now, new_expiry, customer_name)
                if record is not None:
                    record_session_event("extended")
                    return record
                record = self._insert(db, digits, tenant_id, now, new_expiry, customer_name)
                record_session_event("created")
                return record
            except IntegrityError:
                db.rollback()
                logger.info(f"Concurrent session insert for {mask_phone(digits)}, extending instead")
                try:
                    record = self._extend(db, digits, tenant_id, now, new_expiry, customer_name)
                except SQLAlchemyError as e:
                    db.rollback()
                    raise SessionStoreError(f"session extend failed: {e}") from e
                if record is None:
                    raise SessionStoreError("concurrent session insert could not be resolved")
                record_session_event("extended")
                return record
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Session write failed for {mask_phone(digits)}: {e}")
                raise SessionStoreError(f"session write failed: {e}") from e

    def _extend(
        self,
        db: Session,
        phone: str,
        tenant_id: Optional[str],
        now: datetime,
        new_expiry: datetime,
        customer_name: Optional[str],
    ) -> Optional[SessionRecord]:
        row = self._newest(self._live_query(db, phone, now).filter(self._owned_by(tenant_id)))
        if row is None:
            return None

        moved = (
            db.query(WhatsAppSession)
            .filter(WhatsAppSession.id == row.id, WhatsAppSession.expires_at < new_expiry)
            .update({"expires_at": new_expiry, "updated_at": now}, synchronize_session=False)
        )
        if customer_name:
            db.query(WhatsAppSession).filter(WhatsAppSession.id == row.id).update(
                {"customer_name": customer_name}, synchronize_session=False
            )
        db.commit()
        db.refresh(row)

        logger.info(
            f"Extended session {row.id} for {mask_phone(phone)} (org={tenant_id}), "
            f"moved={bool(moved)}"
        )
        return SessionRecord.from_row(row)

    def _insert(
        self,
        db: Session,
        phone: str,
        tenant_id: Optional[str],
        now: datetime,
        new_expiry: datetime,
        customer_name: Optional[str],
    ) -> SessionRecord:
        # Lapsed rows still flagged active would collide with the unique index
        db.query(WhatsAppSession).filter(
            WhatsAppSession.phone_number == phone,
            self._owned_by(tenant_id),
            WhatsAppSession.is_active.is_(True),
            WhatsAppSession.expires_at <= now,
        ).update({"is_active": False, "updated_at": now}, synchronize_session=False)

        row = WhatsAppSession(
            phone_number=phone,
            organization_id=tenant_id,
            is_active=True,
            initiated_at=now,
            expires_at=new_expiry,
            created_at=now,
            customer_name=customer_name,
        )
        db.add(row)
        db.commit()
        db.refresh(row)

        logger.info(
            f"Created session {row.id} for {mask_phone(phone)} (org={tenant_id}), "
            f"expires_at={new_expiry.isoformat()}"
        )
        return SessionRecord.from_row(row, opened=True)

    def deactivate_session(self, phone: str, tenant_id: Optional[str] = None) -> int:
        """
        Close the active sessions of a phone number.

        With a tenant id only that tenant's sessions are closed.

        Returns:
            Number of sessions deactivated.
        """
        digits = normalize_phone(phone)
        if not digits:
            raise InvalidInput("phone number has no digits")

        now = self.now()
        try:
            with self._session_factory() as db:
                query = db.query(WhatsAppSession).filter(
                    WhatsAppSession.phone_number == digits,
                    WhatsAppSession.is_active.is_(True),
                )
                if tenant_id:
                    query = query.filter(WhatsAppSession.organization_id == tenant_id)
                count = query.update(
                    {"is_active": False, "updated_at": now}, synchronize_session=False
                )
                db.commit()
        except SQLAlchemyError as e:
            raise SessionStoreError(f"session deactivation failed: {e}") from e

        logger.info(f"Deactivated {count} session(s) for {mask_phone(digits)} (org={tenant_id})")
        if count:
            record_session_event("deactivated", count)
        return count

    def associate_with_ticket(
        self,
        phone: str,
        tenant_id: Optional[str],
        ticket_id: str,
        customer_name: Optional[str] = None,
    ) -> Optional[SessionRecord]:
        """
        Link the effective session of (phone, tenant) to a ticket.

        Expiry is left untouched: a ticket is not customer contact.

        Returns:
            The updated session, or None when there is no live session.
        """
        digits = normalize_phone(phone)
        if not digits:
            raise InvalidInput("phone number has no digits")
        if not ticket_id:
            raise InvalidInput("ticket id is required")

        now = self.now()
        values = {"ticket_id": ticket_id, "updated_at": now}
        if customer_name:
            values["customer_name"] = customer_name
        try:
            with self._session_factory() as db:
                row = self._effective(db, digits, tenant_id, now)
                if row is None:
                    return None
                db.query(WhatsAppSession).filter(WhatsAppSession.id == row.id).update(
                    values, synchronize_session=False
                )
                db.commit()
                db.refresh(row)
                record = SessionRecord.from_row(row)
        except SQLAlchemyError as e:
            raise SessionStoreError(f"ticket association failed: {e}") from e

        logger.info(f"Associated session {record.id} for {mask_phone(digits)} with ticket {ticket_id}")
        return record

    def cleanup_expired_sessions(self) -> int:
        """Flag lapsed sessions inactive. Housekeeping only; reads never depend on it."""
        now = self.now()
        try:
            with self._session_factory() as db:
                count = (
                    db.query(WhatsAppSession)
                    .filter(
                        WhatsAppSession.is_active.is_(True),
                        WhatsAppSession.expires_at <= now,
                    )
                    .update({"is_active": False, "updated_at": now}, synchronize_session=False)
                )
                db.commit()
        except SQLAlchemyError as e:
            raise SessionStoreError(f"session cleanup failed: {e}") from e

        if count:
            logger.info(f"Cleaned up {count} expired session(s)")
            record_session_event("expired", count)
        return count
