import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generator, List, Optional, Sequence, Tuple

from sqlalchemy import create_engine, inspect, or_, text, func
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError
from starlette.concurrency import run_in_threadpool

from chatrelay.config import settings
from chatrelay.status import (
    ABSORBING_STATUSES,
    INBOUND_ONLY_STATUSES,
    STATUS_TIMESTAMP_FIELD,
    Direction,
    MessageStatus,
    statuses_advancing_to,
)

logger = logging.getLogger(__name__)

INTERIM_ID_PREFIX = "tmp_"

# check_same_thread=False is required for SQLite sessions used from the threadpool
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

# Objects stay readable after commit so snapshots can leave the session
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return uuid.uuid4().hex


def new_interim_id() -> str:
    """Placeholder gateway id used until the gateway assigns its own."""
    return f"{INTERIM_ID_PREFIX}{uuid.uuid4().hex}"


def is_interim_id(gateway_message_id: str) -> bool:
    return gateway_message_id.startswith(INTERIM_ID_PREFIX)


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from chatrelay.models import Message  # noqa: F401

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
        if not inspect(engine).has_table("messages"):
            logger.error("Database schema not applied: 'messages' table not found")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


class MessageStore:
    """
    Async facade over the repository functions below.

    Every call opens its own session and runs in the threadpool, so each
    database operation is a suspension point for the calling task and no
    session is held across awaits.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    async def run(self, operation: Callable[..., Any], *args, **kwargs) -> Any:
        def _call():
            with self._session_factory() as db:
                return operation(db, *args, **kwargs)

        return await run_in_threadpool(_call)


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(db: Session, **fields) -> Tuple[Any, bool]:
    """
    Insert a message record (idempotent on gateway_message_id).

    Returns:
        Tuple of (record, created)
        - (record, True): new record stored
        - (existing, False): a record with this gateway_message_id already exists
    """
    from chatrelay.models import Message

    now = fields.pop("now", None) or utcnow()
    fields.setdefault("id", new_message_id())
    fields.setdefault("created_at", now)
    fields.setdefault("updated_at", now)
    fields.setdefault("media_urls", [])

    message = Message(**fields)
    try:
        db.add(message)
        db.commit()
        logger.info(
            "Message created",
            extra={"message_id": message.id, "gateway_message_id": message.gateway_message_id},
        )
        return message, True
    except IntegrityError:
        # gateway_message_id already exists - expected for repeated webhooks
        db.rollback()
        logger.info(f"Duplicate message detected: {fields.get('gateway_message_id')}")
        return get_message_by_gateway_id(db, fields.get("gateway_message_id")), False
    except Exception:
        db.rollback()
        raise


def get_message(db: Session, identifier: str):
    """Look up a message by internal id or gateway id."""
    from chatrelay.models import Message

    return (
        db.query(Message)
        .filter(or_(Message.id == identifier, Message.gateway_message_id == identifier))
        .populate_existing()
        .first()
    )


def get_message_by_gateway_id(db: Session, gateway_message_id: str):
    from chatrelay.models import Message

    return (
        db.query(Message)
        .filter(Message.gateway_message_id == gateway_message_id)
        .populate_existing()
        .first()
    )


def mark_submitted(
    db: Session,
    message_id: str,
    gateway_message_id: str,
    retries: int = 0,
    now: Optional[datetime] = None,
):
    """
    Record a successful submission: assign the gateway id and move to sent.

    The status only advances if the record has not already moved past
    'sent'; the gateway id is assigned either way.
    """
    from chatrelay.models import Message

    now = now or utcnow()
    advanced = (
        db.query(Message)
        .filter(
            Message.id == message_id,
            Message.status.in_([s.value for s in statuses_advancing_to(MessageStatus.SENT)]),
        )
        .update(
            {
                Message.gateway_message_id: gateway_message_id,
                Message.status: MessageStatus.SENT.value,
                Message.sent_at: func.coalesce(Message.sent_at, now),
                Message.retry_count: Message.retry_count + retries,
                Message.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if not advanced:
        db.query(Message).filter(Message.id == message_id).update(
            {
                Message.gateway_message_id: gateway_message_id,
                Message.retry_count: Message.retry_count + retries,
                Message.updated_at: now,
            },
            synchronize_session=False,
        )
    db.commit()
    return get_message(db, message_id)


def mark_submission_failed(
    db: Session,
    message_id: str,
    error_code: str,
    error_message: str,
    retries: int = 0,
    now: Optional[datetime] = None,
):
    """Record a failed submission (status failed, error info, failed_at)."""
    from chatrelay.models import Message

    now = now or utcnow()
    db.query(Message).filter(
        Message.id == message_id,
        Message.status.in_([s.value for s in statuses_advancing_to(MessageStatus.FAILED)]),
    ).update(
        {
            Message.status: MessageStatus.FAILED.value,
            Message.error_code: error_code,
            Message.error_message: error_message,
            Message.failed_at: func.coalesce(Message.failed_at, now),
            Message.retry_count: Message.retry_count + retries,
            Message.updated_at: now,
        },
        synchronize_session=False,
    )
    db.commit()
    return get_message(db, message_id)


def apply_status(
    db: Session,
    gateway_message_id: str,
    status: MessageStatus,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[str, Any]:
    """
    Apply a status report with a single conditional UPDATE.

    The status column only changes when the stored status permits the
    transition; the status timestamp is filled only while empty.
    Inbound-only states such as received never land on outbound records.

    Returns:
        Tuple of (outcome, record) where outcome is one of
        "applied", "ignored" or "not_tracked".
    """
    from chatrelay.models import Message

    now = now or utcnow()
    stamp_field = STATUS_TIMESTAMP_FIELD.get(status)

    values: Dict[Any, Any] = {
        Message.status: status.value,
        Message.updated_at: now,
    }
    if stamp_field:
        column = getattr(Message, stamp_field)
        values[column] = func.coalesce(column, now)
    if status in ABSORBING_STATUSES:
        values[Message.error_code] = error_code
        values[Message.error_message] = error_message

    conditions = [
        Message.gateway_message_id == gateway_message_id,
        Message.status.in_([s.value for s in statuses_advancing_to(status)]),
    ]
    if status in INBOUND_ONLY_STATUSES:
        conditions.append(Message.direction == Direction.INBOUND.value)

    applied = (
        db.query(Message)
        .filter(*conditions)
        .update(values, synchronize_session=False)
    )

    if applied:
        outcome = "applied"
    else:
        touch: Dict[Any, Any] = {Message.updated_at: now}
        if stamp_field:
            column = getattr(Message, stamp_field)
            touch[column] = func.coalesce(column, now)
        found = (
            db.query(Message)
            .filter(Message.gateway_message_id == gateway_message_id)
            .update(touch, synchronize_session=False)
        )
        outcome = "ignored" if found else "not_tracked"

    db.commit()
    record = get_message_by_gateway_id(db, gateway_message_id) if outcome != "not_tracked" else None
    return outcome, record


def mark_read(
    db: Session,
    message_ids: Optional[Sequence[str]] = None,
    conversation_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Mark messages read, by id list or by conversation (unread inbound only).

    Returns:
        Dictionary with matched_count, modified_count, and the affected
        message ids grouped by conversation.
    """
    from chatrelay.models import Message

    now = now or utcnow()
    if message_ids:
        criteria = [or_(Message.id.in_(list(message_ids)), Message.gateway_message_id.in_(list(message_ids)))]
    elif conversation_id:
        criteria = [
            Message.conversation_id == conversation_id,
            Message.direction == Direction.INBOUND.value,
        ]
    else:
        return {"matched_count": 0, "modified_count": 0, "conversations": {}}

    matched_rows = db.query(Message.id, Message.conversation_id).filter(*criteria).all()

    modified = (
        db.query(Message)
        .filter(*criteria, Message.is_read.is_(False))
        .update(
            {
                Message.is_read: True,
                Message.read_at: func.coalesce(Message.read_at, now),
                Message.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.query(Message).filter(
        *criteria,
        Message.status.in_([s.value for s in statuses_advancing_to(MessageStatus.READ)]),
    ).update({Message.status: MessageStatus.READ.value}, synchronize_session=False)
    db.commit()

    conversations: Dict[str, List[str]] = {}
    for row in matched_rows:
        conversations.setdefault(row.conversation_id, []).append(row.id)

    logger.info(f"Marked messages read: matched={len(matched_rows)}, modified={modified}")
    return {
        "matched_count": len(matched_rows),
        "modified_count": modified,
        "conversations": conversations,
    }


def reset_for_retry(db: Session, message_id: str, now: Optional[datetime] = None):
    """
    Reset a failed outbound message to queued for a manual resubmission.

    Returns:
        The reset record, or None if the message is not a failed outbound one.
    """
    from chatrelay.models import Message

    now = now or utcnow()
    reset = (
        db.query(Message)
        .filter(
            Message.id == message_id,
            Message.direction == Direction.OUTBOUND.value,
            Message.status.in_([s.value for s in ABSORBING_STATUSES]),
        )
        .update(
            {
                Message.gateway_message_id: new_interim_id(),
                Message.status: MessageStatus.QUEUED.value,
                Message.error_code: None,
                Message.error_message: None,
                Message.failed_at: None,
                Message.retry_count: Message.retry_count + 1,
                Message.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return get_message(db, message_id) if reset else None


def find_conversation_for_address(db: Session, address: str) -> Optional[str]:
    """
    Resolve the conversation an inbound number belongs to.

    Prefers the latest outbound message to that number, then the latest
    inbound message from it whose conversation is not the bare number.
    """
    from chatrelay.models import Message

    outbound = (
        db.query(Message.conversation_id)
        .filter(Message.to_address == address, Message.direction == Direction.OUTBOUND.value)
        .order_by(Message.created_at.desc())
        .first()
    )
    if outbound:
        return outbound.conversation_id

    inbound = (
        db.query(Message.conversation_id)
        .filter(
            Message.from_address == address,
            Message.direction == Direction.INBOUND.value,
            Message.conversation_id != address,
        )
        .order_by(Message.created_at.desc())
        .first()
    )
    return inbound.conversation_id if inbound else None


def get_messages(
    db: Session,
    conversation_id: Optional[str] = None,
    status: Optional[str] = None,
    direction: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[list, int]:
    """
    Retrieve messages with pagination and filtering, newest first.

    Returns:
        Tuple of (messages list, total count matching filters)
    """
    from chatrelay.models import Message

    query = db.query(Message)

    if conversation_id:
        query = query.filter(Message.conversation_id == conversation_id)
    if status:
        query = query.filter(Message.status == status)
    if direction:
        query = query.filter(Message.direction == direction)
    if start_date:
        query = query.filter(Message.created_at >= start_date)
    if end_date:
        query = query.filter(Message.created_at <= end_date)

    total = query.count()
    messages = (
        query.order_by(Message.created_at.desc(), Message.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    logger.info(f"Retrieved {len(messages)} of {total} total messages")
    return messages, total


def get_contact(db: Session, conversation_id: str) -> Optional[Dict[str, str]]:
    """Name and phone of a conversation's counterparty, from its latest message."""
    from chatrelay.models import Message

    latest = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .first()
    )
    if latest is None:
        return None

    if latest.direction == Direction.INBOUND.value:
        phone = latest.from_address
    else:
        phone = latest.to_address
    return {
        "name": latest.contact_name or latest.from_name or "Unknown Contact",
        "phone": phone,
    }
