import logging
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, inspect, or_, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from wa_inbox.config import settings
from wa_inbox.utils import utc_now_iso

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("profiles", "whatsapp_contacts", "whatsapp_messages")

# check_same_thread=False lets SQLite sessions cross FastAPI's threadpool
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    try:
        # Import models to register them with Base.metadata
        from wa_inbox import models  # noqa: F401

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
    Check if the database is reachable and all tables exist.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Profile Repository Functions
# =============================================================================

def create_profile(
    db: Session,
    full_name: Optional[str] = None,
    phone_number: Optional[str] = None,
    whatsapp_access_token: Optional[str] = None,
    whatsapp_phone_number_id: Optional[str] = None,
    whatsapp_business_account_id: Optional[str] = None,
    profile_id: Optional[str] = None,
):
    """Insert a profile row. Account setup lives outside this service."""
    from wa_inbox.models import Profile

    now = utc_now_iso()
    profile = Profile(
        full_name=full_name,
        phone_number=phone_number,
        whatsapp_access_token=whatsapp_access_token,
        whatsapp_phone_number_id=whatsapp_phone_number_id,
        whatsapp_business_account_id=whatsapp_business_account_id,
        created_at=now,
        updated_at=now,
    )
    if profile_id:
        profile.id = profile_id

    db.add(profile)
    db.commit()
    db.refresh(profile)
    logger.info(f"Profile created: {profile.id}")
    return profile


def get_profile(db: Session, profile_id: str):
    from wa_inbox.models import Profile

    return db.query(Profile).filter(Profile.id == profile_id).first()


def get_profile_by_phone_number_id(db: Session, phone_number_id: str):
    """Look up the tenant that owns a Cloud API phone number id."""
    from wa_inbox.models import Profile

    return (
        db.query(Profile)
        .filter(Profile.whatsapp_phone_number_id == phone_number_id)
        .first()
    )


def get_profiles_by_business_account_id(db: Session, business_account_id: str) -> list:
    from wa_inbox.models import Profile

    return (
        db.query(Profile)
        .filter(Profile.whatsapp_business_account_id == business_account_id)
        .all()
    )


def update_whatsapp_config(
    db: Session,
    profile,
    access_token: Optional[str],
    phone_number_id: Optional[str],
    business_account_id: Optional[str],
) -> Tuple[bool, bool]:
    """
    Replace a profile's Cloud API configuration.

    Returns:
        Tuple of (success: bool, is_conflict: bool)
        - (True, False): Configuration saved
        - (False, True): phone_number_id already belongs to another profile
    """
    profile_id = profile.id
    profile.whatsapp_access_token = access_token
    profile.whatsapp_phone_number_id = phone_number_id
    profile.whatsapp_business_account_id = business_account_id
    profile.updated_at = utc_now_iso()

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning(
            f"Phone number id {phone_number_id} already assigned, profile {profile_id} unchanged"
        )
        return (False, True)

    db.refresh(profile)
    logger.info(f"WhatsApp configuration updated for profile {profile_id}")
    return (True, False)


# =============================================================================
# Contact Repository Functions
# =============================================================================

def get_contact(db: Session, user_id: str, whatsapp_id: str):
    """Find a tenant's contact by its WhatsApp id."""
    from wa_inbox.models import Contact

    return (
        db.query(Contact)
        .filter(Contact.user_id == user_id, Contact.whatsapp_id == whatsapp_id)
        .first()
    )


def get_contact_by_id(db: Session, user_id: str, contact_id: str):
    from wa_inbox.models import Contact

    return (
        db.query(Contact)
        .filter(Contact.user_id == user_id, Contact.id == contact_id)
        .first()
    )


def list_contacts(db: Session, user_id: str, q: Optional[str] = None) -> list:
    """
    List a tenant's contacts, most recently updated first.

    Args:
        q: Optional case-insensitive substring matched against name and phone
    """
    from wa_inbox.models import Contact

    query = db.query(Contact).filter(Contact.user_id == user_id)
    if q:
        pattern = f"%{q}%"
        query = query.filter(or_(Contact.name.ilike(pattern), Contact.phone_number.ilike(pattern)))

    return query.order_by(Contact.updated_at.desc(), Contact.id.asc()).all()


def create_contact(
    db: Session,
    user_id: str,
    whatsapp_id: str,
    phone_number: str,
    name: Optional[str] = None,
    profile_picture_url: Optional[str] = None,
) -> Tuple[Optional[object], bool]:
    """
    Insert a contact for a tenant.

    Returns:
        Tuple of (contact, is_duplicate)
        - (Contact, False): Contact created
        - (None, True): (user_id, whatsapp_id) already exists
    """
    from wa_inbox.models import Contact

    now = utc_now_iso()
    contact = Contact(
        user_id=user_id,
        whatsapp_id=whatsapp_id,
        phone_number=phone_number,
        name=name,
        profile_picture_url=profile_picture_url,
        created_at=now,
        updated_at=now,
    )

    try:
        db.add(contact)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Contact already exists: user={user_id}, whatsapp_id={whatsapp_id}")
        return (None, True)

    db.refresh(contact)
    logger.info(f"Contact created: {contact.id} (user={user_id}, whatsapp_id={whatsapp_id})")
    return (contact, False)


def get_or_create_contact(db: Session, user_id: str, whatsapp_id: str) -> Tuple[object, bool]:
    """
    Find or lazily create the contact for an inbound sender.

    A concurrent request may insert the same contact between the lookup and
    the insert; the unique constraint rejects the second row and the
    existing one is read back instead.

    Returns:
        Tuple of (contact, created)
    """
    contact = get_contact(db, user_id, whatsapp_id)
    if contact is not None:
        return (contact, False)

    contact, is_duplicate = create_contact(
        db,
        user_id=user_id,
        whatsapp_id=whatsapp_id,
        phone_number="+" + whatsapp_id,
        name=whatsapp_id,
    )
    if not is_duplicate:
        return (contact, True)

    contact = get_contact(db, user_id, whatsapp_id)
    if contact is None:
        raise LookupError(f"Contact {whatsapp_id} vanished after uniqueness conflict")
    return (contact, False)


def update_contact(
    db: Session,
    contact,
    name: Optional[str] = None,
    profile_picture_url: Optional[str] = None,
):
    """Apply user edits to a contact and bump updated_at."""
    if name is not None:
        contact.name = name
    if profile_picture_url is not None:
        contact.profile_picture_url = profile_picture_url
    contact.updated_at = utc_now_iso()

    db.commit()
    db.refresh(contact)
    logger.info(f"Contact updated: {contact.id}")
    return contact


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_inbound_message(
    db: Session,
    user_id: str,
    contact_id: str,
    message_id: str,
    content: Optional[str],
    message_type: str,
    timestamp: str,
) -> Tuple[Optional[object], bool]:
    """
    Store a message received from a contact (idempotent on provider id).

    Returns:
        Tuple of (message, is_duplicate)
        - (Message, False): Message stored
        - (None, True): provider message id already stored for this tenant
    """
    from wa_inbox.models import Message

    message = Message(
        user_id=user_id,
        contact_id=contact_id,
        message_id=message_id,
        content=content,
        direction="inbound",
        status="received",
        message_type=message_type,
        timestamp=timestamp,
        created_at=utc_now_iso(),
    )

    try:
        db.add(message)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Duplicate inbound message detected: {message_id}")
        return (None, True)

    logger.info(f"Inbound message stored: {message_id}")
    return (message, False)


def create_outbound_message(db: Session, user_id: str, contact_id: Optional[str], content: str):
    """Insert an outbound message in the 'sending' state before calling the provider."""
    from wa_inbox.models import Message

    now = utc_now_iso()
    message = Message(
        user_id=user_id,
        contact_id=contact_id,
        content=content,
        direction="outbound",
        status="sending",
        message_type="text",
        timestamp=now,
        created_at=now,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    logger.debug(f"Outbound message queued: {message.id}")
    return message


def mark_message_sent(db: Session, message, provider_message_id: str):
    message.status = "sent"
    message.message_id = provider_message_id
    message.timestamp = utc_now_iso()
    db.commit()
    db.refresh(message)
    return message


def mark_message_failed(db: Session, message):
    message.status = "failed"
    db.commit()
    db.refresh(message)
    return message


def update_message_status(
    db: Session,
    user_id: str,
    message_id: str,
    status: str,
    timestamp: str,
) -> bool:
    """
    Apply a provider status update to the tenant's message with that provider id.

    Returns:
        True if a message was updated, False if none matched
    """
    from wa_inbox.models import Message

    message = (
        db.query(Message)
        .filter(Message.user_id == user_id, Message.message_id == message_id)
        .first()
    )
    if message is None:
        logger.info(f"No stored message for status update: {message_id}")
        return False

    message.status = status
    message.timestamp = timestamp
    db.commit()
    logger.info(f"Message {message_id} status -> {status}")
    return True


def get_conversation(
    db: Session,
    user_id: str,
    contact_id: str,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[list, int]:
    """
    Retrieve one contact's messages in chronological order.

    Returns:
        Tuple of (messages list, total count for the contact)
    """
    from wa_inbox.models import Message

    query = db.query(Message).filter(
        Message.user_id == user_id,
        Message.contact_id == contact_id,
    )
    total = query.count()

    messages = (
        query.order_by(Message.timestamp.asc(), Message.created_at.asc(), Message.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    logger.debug(f"Retrieved {len(messages)} of {total} messages for contact {contact_id}")
    return messages, total
