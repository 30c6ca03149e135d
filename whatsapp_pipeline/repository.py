"""
Persistence operations for the WhatsApp channel.

Each function opens its own short-lived session, since callers run in
background tasks after the HTTP response has gone out. Audit writers
(``log_*``) are best-effort: a failing audit write is logged and dropped.
"""

import functools
import logging
import uuid
from typing import Any, Optional

from whatsapp_pipeline import storage
from whatsapp_pipeline.models import Message
from whatsapp_pipeline.numbers import normalize_whatsapp_number
from whatsapp_pipeline.schemas import SOURCE_LABEL, Attachment, IncomingMessage, WhatsAppResponse
from whatsapp_pipeline.storage import SessionLocal, utcnow

logger = logging.getLogger(__name__)


def best_effort(fn):
    """Run an audit write inside its own error boundary."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            logger.error(f"Audit write {fn.__name__} failed: {e}")
            return None

    return wrapper


# =============================================================================
# Idempotency gate & processing status
# =============================================================================

def create_pending_log(request_url: str, payload: IncomingMessage) -> dict:
    """Outcome dict from storage.create_pending_webhook_log ("created"/"duplicate"/"error")."""
    try:
        with SessionLocal() as db:
            return storage.create_pending_webhook_log(
                db,
                source=SOURCE_LABEL,
                request_url=request_url,
                message_sid=payload.MessageSid,
                from_number=normalize_whatsapp_number(payload.From),
                to_number=normalize_whatsapp_number(payload.To),
                payload=payload.model_dump(),
            )
    except Exception as e:
        logger.error(f"Failed to open session for pending log {payload.MessageSid}: {e}")
        return {"outcome": "error"}


def update_processing_status(
    message_sid: str,
    status: str,
    request_url: Optional[str] = None,
    error: Optional[str] = None,
) -> bool:
    fields: dict[str, Any] = {"status": status, "error": error}
    if request_url is not None:
        fields["request_url"] = request_url
    with SessionLocal() as db:
        entry = storage.upsert_webhook_log_by_message_sid(
            db, source=SOURCE_LABEL, message_sid=message_sid, **fields
        )
    logger.info(f"Processing status for {message_sid}: {status}")
    return entry is not None


# =============================================================================
# Users, chats, messages
# =============================================================================

def find_user_by_phone(phone: str):
    with SessionLocal() as db:
        return storage.get_user_by_phone(db, phone)


def resolve_or_create_chat(user_id: str, payload: IncomingMessage) -> str:
    """Reuse the user's most recent chat, or start one on first contact."""
    with SessionLocal() as db:
        existing = storage.get_latest_chat_for_user(db, user_id)
        if existing is not None:
            return existing.id

        chat_id = str(uuid.uuid4())
        storage.save_chat(
            db,
            chat_id=chat_id,
            user_id=user_id,
            title=f"WhatsApp {payload.ProfileName or normalize_whatsapp_number(payload.From)}",
        )
        return chat_id


def get_chat_messages(chat_id: str) -> list[Message]:
    with SessionLocal() as db:
        return storage.get_messages_by_chat_id(db, chat_id)


def save_inbound_message(
    chat_id: str,
    payload: IncomingMessage,
    attachments: list[Attachment],
    request_url: str,
) -> Message:
    message = Message(
        id=str(uuid.uuid4()),
        chat_id=chat_id,
        role="user",
        parts=[{"type": "text", "text": payload.Body or ""}],
        attachments=[attachment.model_dump() for attachment in attachments],
        metadata_={
            "source": SOURCE_LABEL,
            "direction": "inbound",
            "messageSid": payload.MessageSid,
            "profileName": payload.ProfileName,
            "waId": payload.WaId,
            "numMedia": payload.NumMedia,
            "requestUrl": request_url,
        },
        created_at=utcnow(),
    )
    with SessionLocal() as db:
        storage.save_messages(db, [message])
    return message


def save_outbound_message(
    chat_id: str,
    response: WhatsAppResponse,
    to_number: str,
    from_number: Optional[str],
) -> Message:
    """Persist the reply in sendStatus=pending before any delivery attempt."""
    message = Message(
        id=str(uuid.uuid4()),
        chat_id=chat_id,
        role="assistant",
        parts=[{"type": "text", "text": response.message}],
        attachments=[],
        metadata_={
            "source": SOURCE_LABEL,
            "direction": "outbound",
            "sendStatus": "pending",
            "toNumber": to_number,
            "fromNumber": from_number,
            "response": response.model_dump(by_alias=True, exclude_none=True),
        },
        created_at=utcnow(),
    )
    with SessionLocal() as db:
        storage.save_messages(db, [message])
    return message


def mark_message_sent(message: Message, message_sid: str) -> dict:
    metadata = {
        **(message.metadata_ or {}),
        "sendStatus": "sent",
        "messageSid": message_sid,
        "sendError": None,
        "sentAt": utcnow().isoformat(),
        "deliveredChunkSids": [],
    }
    with SessionLocal() as db:
        storage.update_message_metadata(db, message.id, metadata)
    message.metadata_ = metadata
    logger.info(f"Outbound message {message.id} sent: sid={message_sid}")
    return metadata


def mark_message_failed(message: Message, error: str, delivered_chunk_sids: Optional[list[str]] = None) -> dict:
    """
    Record a failed delivery. ``delivered_chunk_sids`` are the chunks that
    did go out; the retry sweep resumes after them.
    """
    previous = message.metadata_ or {}
    metadata = {
        **previous,
        "sendStatus": "failed",
        "messageSid": None,
        "sendError": error,
        "sentAt": None,
        "deliveredChunkSids": list(delivered_chunk_sids or []),
    }
    with SessionLocal() as db:
        storage.update_message_metadata(db, message.id, metadata)
    message.metadata_ = metadata
    logger.warning(
        f"Outbound message {message.id} failed: {error} (delivered chunks: {len(metadata['deliveredChunkSids'])})"
    )
    return metadata


@best_effort
def save_chat_usage(chat_id: str, usage: dict) -> None:
    with SessionLocal() as db:
        storage.update_chat_last_context(db, chat_id, usage)


# =============================================================================
# Audit log writers
# =============================================================================

@best_effort
def log_webhook_error(
    status: str,
    message_sid: Optional[str] = None,
    error: Optional[str] = None,
    payload: Optional[dict] = None,
    request_url: Optional[str] = None,
) -> None:
    # Rejected requests must not claim the SID, or a later valid delivery would look like a duplicate
    with SessionLocal() as db:
        storage.save_webhook_log(
            db,
            source=SOURCE_LABEL,
            direction="inbound",
            status=status,
            request_url=request_url,
            error=error,
            payload={**(payload or {}), "messageSid": message_sid} if message_sid else payload,
        )


@best_effort
def log_webhook_outbound(
    request_url: Optional[str],
    from_number: Optional[str],
    to_number: str,
    response: WhatsAppResponse,
    message_sid: Optional[str] = None,
    status: str = "sent",
) -> None:
    with SessionLocal() as db:
        storage.save_webhook_log(
            db,
            source=SOURCE_LABEL,
            direction="outbound",
            status=status,
            request_url=request_url,
            from_number=from_number,
            to_number=to_number,
            payload={"message": response.message, "messageSid": message_sid},
        )


@best_effort
def log_typing_failed(message_sid: str, error: str, conversation_sid: Optional[str] = None) -> None:
    with SessionLocal() as db:
        storage.save_webhook_log(
            db,
            source=SOURCE_LABEL,
            direction="outbound",
            status="typing_failed",
            error=error,
            payload={"messageSid": message_sid, "conversationSid": conversation_sid},
        )


@best_effort
def log_send_failed(
    from_number: Optional[str],
    to_number: str,
    message: str,
    error: str,
    error_details: Optional[dict] = None,
) -> None:
    payload: dict[str, Any] = {"message": message}
    if error_details:
        payload["errorDetails"] = error_details
    with SessionLocal() as db:
        storage.save_webhook_log(
            db,
            source=SOURCE_LABEL,
            direction="outbound",
            status="send_failed",
            from_number=from_number,
            to_number=to_number,
            error=error,
            payload=payload,
        )


@best_effort
def log_processing_error(
    message_sid: str,
    from_number: Optional[str],
    to_number: Optional[str],
    request_url: str,
    error: str,
) -> None:
    with SessionLocal() as db:
        storage.save_webhook_log(
            db,
            source=SOURCE_LABEL,
            direction="inbound",
            status="processing_error",
            request_url=request_url,
            from_number=from_number,
            to_number=to_number,
            error=error,
            payload={"messageSid": message_sid},
        )


@best_effort
def log_ai_escalation(
    chat_id: str,
    failure_type: str,
    error: str,
    message_id: Optional[str] = None,
    request_url: Optional[str] = None,
) -> None:
    """
    Escalation record for operator follow-up when the assistant falls back
    to a canned reply (status ``escalation_ai_failure``).
    """
    with SessionLocal() as db:
        storage.save_webhook_log(
            db,
            source=SOURCE_LABEL,
            status="escalation_ai_failure",
            request_url=request_url,
            error=error,
            payload={
                "chatId": chat_id,
                "messageId": message_id,
                "failureType": failure_type,
                "timestamp": utcnow().isoformat(),
            },
        )


# =============================================================================
# Cron sweeps
# =============================================================================

def get_user_by_id(user_id: str):
    with SessionLocal() as db:
        return storage.get_user_by_id(db, user_id)


def get_due_queued_messages(limit: int) -> list:
    with SessionLocal() as db:
        return storage.get_pending_queued_messages(db, limit)


def mark_queued_message(queued_id: str, status: str, error: Optional[str] = None) -> None:
    with SessionLocal() as db:
        storage.update_queued_message_status(
            db,
            queued_id,
            status,
            error=error,
            sent_at=utcnow() if status == "sent" else None,
        )


def get_failed_outbound_messages(limit: int, max_retries: int) -> list[Message]:
    with SessionLocal() as db:
        return storage.get_failed_outbound_messages(db, limit, max_retries=max_retries)
