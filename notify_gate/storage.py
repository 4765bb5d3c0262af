import logging
from datetime import datetime, timezone
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from notify_gate.config import settings
from notify_gate.utils import normalize_phone

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {},
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("organizations", "whatsapp_sessions", "inbound_messages")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from notify_gate import models  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and all tables exist, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

        existing = set(inspect(engine).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            logger.error(f"Database schema not applied: missing tables {missing}")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Inbound Message Repository Functions
# =============================================================================

def create_inbound_message(
    db: Session,
    message_id: str,
    from_msisdn: str,
    to_msisdn: str,
    ts: str,
    text: Optional[str] = None,
    organization_id: Optional[str] = None,
) -> Tuple[bool, bool]:
    """
    Record an inbound provider message (idempotent on message_id).

    Returns:
        Tuple of (success: bool, is_duplicate: bool)
        - (True, False): Message recorded
        - (True, True): Message already recorded (duplicate webhook delivery)
        - (False, False): Error occurred
    """
    from notify_gate.models import InboundMessage

    logger.info(f"Recording inbound message: id={message_id}, org={organization_id}")

    try:
        created_at = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

        message = InboundMessage(
            message_id=message_id,
            from_msisdn=from_msisdn,
            to_msisdn=to_msisdn,
            ts=ts,
            text=text,
            organization_id=organization_id,
            created_at=created_at,
        )

        db.add(message)
        db.commit()
        return (True, False)

    except IntegrityError:
        # message_id already exists - provider redelivered the callback
        db.rollback()
        logger.info(f"Duplicate inbound message detected: {message_id}")
        return (True, True)

    except Exception as e:
        db.rollback()
        logger.error(f"Failed to record inbound message {message_id}: {e}")
        return (False, False)


def find_organization_by_business_number(db: Session, business_number: str):
    """
    Look up the tenant owning a WhatsApp business number.

    Returns:
        Organization object if found, None otherwise
    """
    from notify_gate.models import Organization

    digits = normalize_phone(business_number)
    if not digits:
        return None
    result = (
        db.query(Organization)
        .filter(Organization.whatsapp_business_number == digits)
        .first()
    )
    logger.debug(f"Business number lookup result: {'found' if result else 'not found'}")
    return result


def find_organization(db: Session, organization_id: str):
    """Return the Organization with this id, or None."""
    from notify_gate.models import Organization

    return db.get(Organization, organization_id)


def delete_inbound_message(db: Session, message_id: str) -> None:
    """Forget an inbound message so a provider redelivery is processed again."""
    from notify_gate.models import InboundMessage

    db.query(InboundMessage).filter(InboundMessage.message_id == message_id).delete(
        synchronize_session=False
    )
    db.commit()
