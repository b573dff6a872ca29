import logging
from datetime import datetime, timezone
from typing import Generator, List, Optional, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from inbox.config import settings

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's async
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

# Delivery statuses only ever move forward
STATUS_RANK = {"sent": 0, "delivered": 1, "read": 2}

# Conversation statuses that count as the live thread for a contact/channel
ACTIVE_CONVERSATION_STATUSES = ("open", "handoff")

REQUIRED_TABLES = ("channels", "contacts", "conversations", "messages")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug("Initializing database")
    try:
        # Import models to register them with Base.metadata
        import inbox.models  # noqa: F401

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
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        existing = set(inspect(engine).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def _now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Channel Repository Functions
# =============================================================================

def get_channels_by_type(db: Session, channel_type: str) -> list:
    """Return every channel of a type, oldest first."""
    from inbox.models import Channel

    return (
        db.query(Channel)
        .filter(Channel.type == channel_type)
        .order_by(Channel.created_at.asc())
        .all()
    )


def get_channel(db: Session, channel_id: str):
    from inbox.models import Channel

    return db.query(Channel).filter(Channel.id == channel_id).first()


def get_active_channel(db: Session, channel_type: str):
    """
    Return the channel inbound webhooks of this type are routed to.

    The first active channel of the type wins.
    """
    for channel in get_channels_by_type(db, channel_type):
        if channel.status == "active":
            return channel
    return None


def get_channel_by_token(db: Session, token: str):
    """Find the website channel whose widget_token matches `token`."""
    if not token:
        return None
    for channel in get_channels_by_type(db, "website"):
        if (channel.config or {}).get("widget_token") == token:
            return channel
    return None


# =============================================================================
# Contact Repository Functions
# =============================================================================

def find_or_create_contact(
    db: Session,
    provider: str,
    external_id: str,
    name: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
):
    """
    Idempotent find-or-create keyed on (provider, external_id).

    Returns:
        Tuple of (contact, created: bool)
    """
    from inbox.models import Contact

    contact = (
        db.query(Contact)
        .filter(Contact.provider == provider, Contact.external_id == external_id)
        .first()
    )
    if contact is not None:
        return contact, False

    contact = Contact(
        provider=provider,
        external_id=external_id,
        name=name or None,
        email=email,
        phone=phone,
        source=provider,
    )
    db.add(contact)
    try:
        db.commit()
    except IntegrityError:
        # Created concurrently by another delivery of the same sender
        db.rollback()
        logger.info(f"Contact created concurrently: provider={provider}, external_id={external_id}")
        contact = (
            db.query(Contact)
            .filter(Contact.provider == provider, Contact.external_id == external_id)
            .one()
        )
        return contact, False

    logger.info(f"Contact created: id={contact.id}, provider={provider}")
    return contact, True


def get_contact(db: Session, provider: str, external_id: str):
    from inbox.models import Contact

    if not external_id:
        return None
    return (
        db.query(Contact)
        .filter(Contact.provider == provider, Contact.external_id == external_id)
        .first()
    )


def update_contact_name(db: Session, contact_id: str, name: str) -> None:
    from inbox.models import Contact

    db.query(Contact).filter(Contact.id == contact_id).update({Contact.name: name})
    db.commit()


def update_contact_last_interaction(db: Session, contact_id: str) -> None:
    from inbox.models import Contact

    db.query(Contact).filter(Contact.id == contact_id).update({Contact.last_interaction: _now()})
    db.commit()


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def get_conversation(db: Session, conversation_id: str):
    from inbox.models import Conversation

    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def find_or_create_conversation(
    db: Session,
    contact_id: str,
    channel: str,
    channel_id: Optional[str] = None,
    match_channel_id: bool = False,
    metadata: Optional[dict] = None,
):
    """
    Idempotent find-or-create of the live conversation for (contact, channel).

    Args:
        db: Database session
        contact_id: Internal contact id
        channel: Channel type string (whatsapp, website, ...)
        channel_id: Channel instance id, stored on creation
        match_channel_id: Also key the lookup on channel_id (multi-instance channel types)
        metadata: Stored on creation only

    Returns:
        Tuple of (conversation, created: bool)
    """
    from inbox.models import Conversation

    query = db.query(Conversation).filter(
        Conversation.contact_id == contact_id,
        Conversation.channel == channel,
        Conversation.status.in_(ACTIVE_CONVERSATION_STATUSES),
    )
    if match_channel_id:
        query = query.filter(Conversation.channel_id == channel_id)

    conversation = query.order_by(Conversation.created_at.desc()).first()
    if conversation is not None:
        return conversation, False

    conversation = Conversation(
        contact_id=contact_id,
        channel=channel,
        channel_id=channel_id,
        status="open",
        meta=metadata or {},
    )
    db.add(conversation)
    db.commit()
    logger.info(f"Conversation created: id={conversation.id}, channel={channel}")
    return conversation, True


def get_live_conversation(db: Session, contact_id: str, channel: str, channel_id: str):
    """Most recent open or handoff conversation of a contact on one channel instance, or None."""
    from inbox.models import Conversation

    return (
        db.query(Conversation)
        .filter(
            Conversation.contact_id == contact_id,
            Conversation.channel == channel,
            Conversation.channel_id == channel_id,
            Conversation.status.in_(ACTIVE_CONVERSATION_STATUSES),
        )
        .order_by(Conversation.created_at.desc())
        .first()
    )


def update_conversation_last_message(db: Session, conversation_id: str) -> None:
    from inbox.models import Conversation

    db.query(Conversation).filter(Conversation.id == conversation_id).update(
        {Conversation.last_message_at: _now()}
    )
    db.commit()


def mark_conversation_handoff(db: Session, conversation_id: str):
    """Move a conversation to human handling. Returns the conversation or None."""
    from inbox.models import Conversation

    conversation = get_conversation(db, conversation_id)
    if conversation is None:
        logger.warning(f"Cannot mark handoff, conversation not found: {conversation_id}")
        return None

    conversation.status = "handoff"
    db.commit()
    logger.info(f"Conversation marked for human handoff: {conversation_id}")
    return conversation


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(db: Session, conversation_id: str, **fields) -> Tuple[object, bool]:
    """
    Create a new message in the database (idempotent on provider + external_id).

    Args:
        db: Database session
        conversation_id: Owning conversation
        **fields: Message columns (body, type, sender_type, provider, external_id,
            sender_id, media_url, media_mime, media_size, media_name, status, meta)

    Returns:
        Tuple of (message, is_duplicate: bool)
        - (message, False): Message created
        - (existing, True): A message with the same provider/external_id already exists
    """
    from inbox.models import Message

    provider = fields.get("provider")
    external_id = fields.get("external_id")

    message = Message(conversation_id=conversation_id, **fields)
    db.add(message)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Duplicate message detected: provider={provider}, external_id={external_id}")
        return get_message_by_external_id(db, provider, external_id), True

    logger.debug(f"Message created: id={message.id}, conversation={conversation_id}")
    return message, False


def update_message_status_by_external_id(
    db: Session, provider: str, external_id: str, status: str
) -> int:
    """
    Apply a delivery status to the message identified by (provider, external_id).

    Never inserts. A ranked status below the stored one is ignored; unranked
    statuses such as "failed" always apply.

    Returns:
        Number of messages updated (0 or 1)
    """
    message = get_message_by_external_id(db, provider, external_id)
    if message is None:
        logger.info(f"Status update for unknown message: provider={provider}, external_id={external_id}")
        return 0

    current = STATUS_RANK.get(message.status, -1)
    if status in STATUS_RANK and STATUS_RANK[status] < current:
        logger.debug(f"Ignoring status downgrade {message.status} -> {status} for {external_id}")
        return 0

    message.status = status
    db.commit()
    return 1


def record_outbound_delivery(
    db: Session, message_id: str, external_id: Optional[str], status: str
) -> None:
    """Store the provider's id and the send status of a reply we delivered."""
    from inbox.models import Message

    message = db.query(Message).filter(Message.id == message_id).first()
    if message is None:
        logger.warning(f"Cannot record delivery, message not found: {message_id}")
        return

    if external_id:
        message.external_id = external_id
    message.status = status
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning(f"Provider id {external_id} already stored on another message")


def mark_messages_read_by_watermark(
    db: Session, provider: str, sender_id: str, watermark: datetime
) -> int:
    """
    Mark outbound messages to a contact as read up to a watermark timestamp.

    Returns:
        Number of messages updated
    """
    from inbox.models import Contact, Conversation, Message

    contact = (
        db.query(Contact)
        .filter(Contact.provider == provider, Contact.external_id == sender_id)
        .first()
    )
    if contact is None:
        return 0

    conversation_ids = [
        row.id for row in db.query(Conversation.id).filter(Conversation.contact_id == contact.id)
    ]
    if not conversation_ids:
        return 0

    updated = (
        db.query(Message)
        .filter(
            Message.conversation_id.in_(conversation_ids),
            Message.sender_type != "user",
            Message.created_at <= watermark,
            (Message.status.is_(None)) | (Message.status != "read"),
        )
        .update({Message.status: "read"}, synchronize_session=False)
    )
    db.commit()
    return updated


def get_messages_by_conversation(
    db: Session, conversation_id: str, after_id: Optional[str] = None
) -> List:
    """
    Messages of a conversation in creation order.

    Args:
        after_id: When given, only messages created after this message
    """
    from inbox.models import Message

    query = db.query(Message).filter(Message.conversation_id == conversation_id)

    if after_id:
        anchor = db.query(Message).filter(Message.id == after_id).first()
        if anchor is not None:
            query = query.filter(Message.created_at > anchor.created_at)

    return query.order_by(Message.created_at.asc()).all()


def get_last_message(db: Session, conversation_id: str):
    from inbox.models import Message

    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .first()
    )


def get_recent_messages(
    db: Session, conversation_id: str, limit: int, exclude_id: Optional[str] = None
) -> List:
    """Last `limit` messages with a non-empty body, oldest first."""
    from inbox.models import Message

    query = db.query(Message).filter(
        Message.conversation_id == conversation_id,
        Message.body.isnot(None),
        Message.body != "",
    )
    if exclude_id:
        query = query.filter(Message.id != exclude_id)

    recent = query.order_by(Message.created_at.desc()).limit(limit).all()
    recent.reverse()
    return recent


def get_message_by_external_id(db: Session, provider: str, external_id: Optional[str]):
    from inbox.models import Message

    if not external_id:
        return None
    return (
        db.query(Message)
        .filter(Message.provider == provider, Message.external_id == external_id)
        .first()
    )
