"""
Inbound WhatsApp message processing.

process_whatsapp_message() runs after the webhook has been acknowledged:
resolve the user, persist the inbound turn, generate a reply, persist it
as pending, deliver it and record the outcome. Nothing is re-raised; the
terminal state lands on the webhook log row.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from whatsapp_pipeline import repository
from whatsapp_pipeline.ai_response import generate_safe_response, messages_to_history
from whatsapp_pipeline.config import settings
from whatsapp_pipeline.logging_utils import log_whatsapp_event
from whatsapp_pipeline.numbers import normalize_whatsapp_number
from whatsapp_pipeline.rate_limiter import TokenBucketRateLimiter
from whatsapp_pipeline.retry import get_attempts_from_error
from whatsapp_pipeline.schemas import IncomingMessage
from whatsapp_pipeline.twilio_client import (
    SendResult,
    TwilioClient,
    create_twilio_client,
    get_delivered_chunk_sids,
    get_twilio_error_metadata,
    send_typing_indicator,
    send_whatsapp_message_with_retry,
)
from whatsapp_pipeline.utils import extract_attachments

logger = logging.getLogger(__name__)


class UserNotFoundError(Exception):
    """Inbound message from a phone number with no registered user."""

    def __init__(self, phone: str):
        self.phone = phone
        super().__init__(f"User not found for phone: {phone}")


class KeyedLock:
    """
    One asyncio.Lock per key, dropped once no task holds or waits on it.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# Serializes reply generation per user so turns are stored in arrival order
_user_locks = KeyedLock()


async def process_whatsapp_message(
    payload: IncomingMessage,
    request_url: str,
    rate_limiter: TokenBucketRateLimiter,
) -> Optional[str]:
    """
    Process one newly seen inbound message. Returns the chat id, or None
    when processing ended in ``processing_error``.
    """
    chat_id = None
    try:
        repository.update_processing_status(payload.MessageSid, "processing", request_url)
        chat_id = await _receive_and_reply(payload, request_url, rate_limiter)
        repository.update_processing_status(payload.MessageSid, "processed")
        return chat_id
    except Exception as e:
        error_message = str(e)
        log_whatsapp_event(
            "error",
            "whatsapp.processing.error",
            direction="internal",
            message_sid=payload.MessageSid,
            wa_id=payload.WaId,
            chat_id=chat_id,
            request_url=request_url,
            error=error_message,
        )
        try:
            updated = repository.update_processing_status(
                payload.MessageSid, "processing_error", request_url, error_message
            )
        except Exception as update_error:
            logger.error(f"Failed to record processing_error for {payload.MessageSid}: {update_error}")
            updated = False
        if not updated:
            repository.log_processing_error(
                payload.MessageSid,
                _safe_normalize(payload.From),
                _safe_normalize(payload.To),
                request_url,
                error_message,
            )
        return None


def _safe_normalize(value: str) -> Optional[str]:
    try:
        return normalize_whatsapp_number(value)
    except (TypeError, ValueError):
        return None


async def _receive_and_reply(
    payload: IncomingMessage,
    request_url: str,
    rate_limiter: TokenBucketRateLimiter,
) -> str:
    correlation = {"message_sid": payload.MessageSid, "wa_id": payload.WaId}
    log_whatsapp_event(
        "info",
        "whatsapp.processing.started",
        direction="inbound",
        from_number=payload.From,
        to_number=payload.To,
        **correlation,
    )

    normalized_from = normalize_whatsapp_number(payload.From)
    normalized_to = normalize_whatsapp_number(payload.To)

    user = repository.find_user_by_phone(normalized_from)
    if user is None:
        log_whatsapp_event(
            "warn",
            "whatsapp.processing.user_not_found",
            direction="inbound",
            **correlation,
        )
        raise UserNotFoundError(normalized_from)

    whatsapp_from = settings.TWILIO_WHATSAPP_FROM
    if not (whatsapp_from or settings.TWILIO_MESSAGING_SERVICE_SID):
        raise RuntimeError("TWILIO_WHATSAPP_FROM or TWILIO_MESSAGING_SERVICE_SID is required")
    sender = normalize_whatsapp_number(whatsapp_from) if whatsapp_from else None

    async with create_twilio_client() as client:
        async with _user_locks.hold(user.id):
            chat_id = repository.resolve_or_create_chat(user.id, payload)
            correlation["chat_id"] = chat_id

            existing_messages = repository.get_chat_messages(chat_id)
            inbound = repository.save_inbound_message(
                chat_id, payload, extract_attachments(payload), request_url
            )

            await _try_send_typing_indicator(client, payload, correlation)

            history = messages_to_history([*existing_messages, inbound])
            log_whatsapp_event(
                "info",
                "whatsapp.processing.history_mapped",
                chat_id=chat_id,
                details={"count": len(history)},
            )

            reply = await generate_safe_response(
                history=history,
                payload=payload,
                chat_id=chat_id,
                inbound_message_id=inbound.id,
                request_url=request_url,
            )

            outbound = repository.save_outbound_message(chat_id, reply, normalized_from, sender)

            send_result, delivered_chunk_sids = await _try_send(
                client, normalized_from, sender, reply, rate_limiter, correlation
            )
            if send_result is not None:
                repository.mark_message_sent(outbound, send_result.sid)
            else:
                repository.mark_message_failed(
                    outbound,
                    "Failed to send WhatsApp message after retries",
                    delivered_chunk_sids=delivered_chunk_sids,
                )

    repository.log_webhook_outbound(
        request_url,
        normalized_to,
        normalized_from,
        reply,
        send_result.sid if send_result else None,
        send_result.status if send_result else "not_sent",
    )
    return chat_id


async def _try_send_typing_indicator(client: TwilioClient, payload: IncomingMessage, correlation: dict) -> None:
    try:
        await send_typing_indicator(client, payload, correlation)
    except Exception as e:
        log_whatsapp_event(
            "error",
            "whatsapp.typing.failed",
            direction="outbound",
            error=str(e),
            details={"conversation_sid": payload.ConversationSid},
            **correlation,
        )
        repository.log_typing_failed(payload.MessageSid, str(e), payload.ConversationSid)


async def _try_send(
    client: TwilioClient,
    to: str,
    from_: Optional[str],
    reply,
    rate_limiter: TokenBucketRateLimiter,
    correlation: dict,
) -> tuple[Optional[SendResult], list[str]]:
    """Send the reply; on failure return no result and the SIDs of chunks that did go out."""
    try:
        result = await send_whatsapp_message_with_retry(
            client, to, from_, reply, rate_limiter, correlation=correlation
        )
        return result, []
    except Exception as e:
        twilio_metadata = get_twilio_error_metadata(e) or {}
        error_details = {
            "attempts": get_attempts_from_error(e),
            "twilio_status": twilio_metadata.get("status"),
            "twilio_code": twilio_metadata.get("code"),
            "twilio_more_info": twilio_metadata.get("more_info"),
            "twilio_details": twilio_metadata.get("details"),
        }
        error_details = {key: value for key, value in error_details.items() if value is not None}
        log_whatsapp_event(
            "error",
            "whatsapp.outbound.send_failed",
            direction="outbound",
            to_number=to,
            from_number=from_,
            error=str(e),
            details=error_details or None,
            **correlation,
        )
        repository.log_send_failed(from_, to, reply.message, str(e), error_details or None)
        return None, get_delivered_chunk_sids(e)
