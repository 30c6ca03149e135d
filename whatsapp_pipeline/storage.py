import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import create_engine, or_, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from whatsapp_pipeline.config import settings

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    options: dict = {"connect_args": {"check_same_thread": False}}
    # In-memory SQLite must share one connection or every session sees an empty DB
    if url in ("sqlite://", "sqlite:///:memory:"):
        options["poolclass"] = StaticPool
    return options


engine = create_engine(settings.DATABASE_URL, echo=False, **_engine_options(settings.DATABASE_URL))

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

# Base class for SQLAlchemy models
Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug("Initializing database")
    try:
        # Import models to register them with Base.metadata
        from whatsapp_pipeline import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if the database is reachable and the webhook log table exists.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    from sqlalchemy import inspect

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        if not inspect(engine).has_table("webhook_logs"):
            logger.error("Database schema not applied: 'webhook_logs' table not found")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Users & Chats
# =============================================================================

def get_user_by_phone(db: Session, phone: str):
    from whatsapp_pipeline.models import User

    logger.debug(f"Looking up user by phone: {phone}")
    user = db.query(User).filter(User.phone == phone).first()
    logger.info(f"User lookup by phone: {'found' if user else 'not found'}")
    return user


def get_user_by_id(db: Session, user_id: str):
    from whatsapp_pipeline.models import User

    logger.debug(f"Looking up user by ID: {user_id}")
    return db.query(User).filter(User.id == user_id).first()


def get_latest_chat_for_user(db: Session, user_id: str):
    from whatsapp_pipeline.models import Chat

    chat = (
        db.query(Chat)
        .filter(Chat.user_id == user_id)
        .order_by(Chat.created_at.desc())
        .first()
    )
    logger.debug(f"Latest chat for user {user_id}: {chat.id if chat else None}")
    return chat


def save_chat(db: Session, chat_id: str, user_id: str, title: str):
    from whatsapp_pipeline.models import Chat

    # Server-side creation time
    chat = Chat(id=chat_id, user_id=user_id, title=title, created_at=utcnow())
    db.add(chat)
    db.commit()
    logger.info(f"Chat created: {chat_id}")
    return chat


def update_chat_last_context(db: Session, chat_id: str, context: dict) -> None:
    from whatsapp_pipeline.models import Chat

    db.query(Chat).filter(Chat.id == chat_id).update({Chat.last_context: context})
    db.commit()
    logger.debug(f"Chat context updated: {chat_id}")


# =============================================================================
# Messages
# =============================================================================

def get_messages_by_chat_id(db: Session, chat_id: str) -> list:
    from whatsapp_pipeline.models import Message

    logger.debug(f"Querying messages for chat: {chat_id}")
    messages = (
        db.query(Message)
        .filter(Message.chat_id == chat_id)
        .order_by(Message.created_at.asc())
        .all()
    )
    logger.debug(f"Found {len(messages)} message(s) in chat {chat_id}")
    return messages


def save_messages(db: Session, messages: list) -> None:
    db.add_all(messages)
    db.commit()
    logger.debug(f"Saved {len(messages)} message(s)")


def update_message_metadata(db: Session, message_id: str, metadata: dict) -> None:
    from whatsapp_pipeline.models import Message

    db.query(Message).filter(Message.id == message_id).update({Message.metadata_: metadata})
    db.commit()
    logger.info(f"Message metadata updated: id={message_id}, sendStatus={metadata.get('sendStatus')}")


def get_failed_outbound_messages(db: Session, limit: int = 50, max_retries: Optional[int] = None) -> list:
    """
    Outbound messages whose last delivery attempt failed, oldest first.
    With max_retries, messages already re-sent that many times are left out.
    """
    from whatsapp_pipeline.models import Message

    query = (
        db.query(Message)
        .filter(Message.role == "assistant")
        .filter(Message.metadata_["sendStatus"].as_string() == "failed")
    )
    # Leave out messages that used up their re-send budget
    if max_retries is not None:
        retries = Message.metadata_["sendRetries"].as_integer()
        query = query.filter(or_(retries.is_(None), retries < max_retries))
    messages = query.order_by(Message.created_at.asc()).limit(limit).all()
    logger.info(f"Failed outbound messages: {len(messages)} (limit={limit}, max_retries={max_retries})")
    return messages


# =============================================================================
# Webhook Log (idempotency ledger)
# =============================================================================

def save_webhook_log(db: Session, **fields: Any):
    from whatsapp_pipeline.models import WebhookLog

    entry = WebhookLog(id=str(uuid.uuid4()), created_at=utcnow(), **fields)
    db.add(entry)
    db.commit()
    logger.debug(f"Webhook log saved: status={fields.get('status')}")
    return entry


def create_pending_webhook_log(
    db: Session,
    source: str,
    request_url: str,
    message_sid: str,
    from_number: Optional[str],
    to_number: Optional[str],
    payload: dict,
) -> dict:
    """
    Insert a pending inbound log row keyed by message SID (insert-or-do-nothing).

    Returns:
        {"outcome": "created", "id": ...} for the first sighting,
        {"outcome": "duplicate"} when the SID already exists,
        {"outcome": "error"} when the insert failed for any other reason.
    """
    from whatsapp_pipeline.models import WebhookLog

    try:
        entry = WebhookLog(
            id=str(uuid.uuid4()),
            source=source,
            direction="inbound",
            status="pending",
            request_url=request_url,
            message_sid=message_sid,
            from_number=from_number,
            to_number=to_number,
            payload=payload,
            created_at=utcnow(),
        )
        db.add(entry)
        db.commit()
        logger.info(f"Pending webhook log created: {message_sid}")
        return {"outcome": "created", "id": entry.id}

    except IntegrityError:
        # message_sid already exists - this is expected for idempotency
        db.rollback()
        logger.info(f"Duplicate message detected: {message_sid}")
        return {"outcome": "duplicate"}

    except Exception as e:
        db.rollback()
        logger.error(f"Failed to create pending webhook log {message_sid}: {e}")
        return {"outcome": "error"}


_UNSET: Any = object()


def upsert_webhook_log_by_message_sid(
    db: Session,
    source: str,
    message_sid: str,
    status: Any = _UNSET,
    request_url: Any = _UNSET,
    error: Any = _UNSET,
    direction: Any = _UNSET,
):
    """
    Update the log row for a message SID, inserting one if none exists.
    Only fields that were passed are written.
    """
    from whatsapp_pipeline.models import WebhookLog

    updates = {
        key: value
        for key, value in {
            "status": status,
            "request_url": request_url,
            "error": error,
            "direction": direction,
        }.items()
        if value is not _UNSET
    }

    entry = db.query(WebhookLog).filter(WebhookLog.message_sid == message_sid).first()
    if entry is None:
        # No pending row (e.g. the gate insert failed); write one now
        entry = WebhookLog(
            id=str(uuid.uuid4()),
            source=source,
            message_sid=message_sid,
            created_at=utcnow(),
            **updates,
        )
        db.add(entry)
    else:
        for key, value in updates.items():
            setattr(entry, key, value)
    db.commit()
    logger.info(f"Webhook log {message_sid} updated: {updates.get('status', '(status unchanged)')}")
    return entry


# =============================================================================
# Queued Messages
# =============================================================================

def get_pending_queued_messages(db: Session, limit: int = 50) -> list:
    from whatsapp_pipeline.models import QueuedMessage

    logger.debug(f"Querying due queued messages: limit={limit}")
    queued = (
        db.query(QueuedMessage)
        .filter(QueuedMessage.status == "pending")
        .filter(QueuedMessage.scheduled_for <= utcnow())
        .order_by(QueuedMessage.scheduled_for.asc())
        .limit(limit)
        .all()
    )
    logger.info(f"Due queued messages: {len(queued)}")
    return queued


def update_queued_message_status(
    db: Session,
    queued_id: str,
    status: str,
    error: Optional[str] = None,
    sent_at: Optional[datetime] = None,
) -> None:
    from whatsapp_pipeline.models import QueuedMessage

    db.query(QueuedMessage).filter(QueuedMessage.id == queued_id).update(
        {
            QueuedMessage.status: status,
            QueuedMessage.error: error,
            QueuedMessage.sent_at: sent_at,
        }
    )
    db.commit()
    logger.info(f"Queued message {queued_id} marked {status}")
