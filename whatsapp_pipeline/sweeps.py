"""
Cron-driven delivery sweeps.

- send_queued_messages: deliver operator-scheduled messages that are due
- retry_failed_messages: re-send assistant replies whose delivery failed
"""

import logging
from typing import Optional

from whatsapp_pipeline import repository
from whatsapp_pipeline.config import settings
from whatsapp_pipeline.logging_utils import log_whatsapp_event
from whatsapp_pipeline.numbers import normalize_whatsapp_number
from whatsapp_pipeline.rate_limiter import TokenBucketRateLimiter
from whatsapp_pipeline.schemas import SweepResponse, WhatsAppResponse
from whatsapp_pipeline.twilio_client import (
    create_twilio_client,
    get_delivered_chunk_sids,
    send_whatsapp_message_with_retry,
)

logger = logging.getLogger(__name__)


def _default_sender() -> Optional[str]:
    if settings.TWILIO_WHATSAPP_FROM:
        return normalize_whatsapp_number(settings.TWILIO_WHATSAPP_FROM)
    return None


async def send_queued_messages(rate_limiter: TokenBucketRateLimiter) -> SweepResponse:
    pending = repository.get_due_queued_messages(settings.CRON_BATCH_SIZE)
    if not pending:
        return SweepResponse(processed=0)

    sender = _default_sender()
    sent = failed = 0
    errors: list[str] = []

    async with create_twilio_client() as client:
        for queued in pending:
            user = repository.get_user_by_id(queued.user_id)
            if user is None:
                repository.mark_queued_message(queued.id, "failed", error="User not found")
                failed += 1
                errors.append(f"{queued.id}: User not found")
                continue

            try:
                await send_whatsapp_message_with_retry(
                    client,
                    user.phone,
                    sender,
                    queued.content,
                    rate_limiter,
                    correlation={"message_sid": f"queued-{queued.id}"},
                    content_sid=queued.content_sid,
                    content_variables=queued.content_variables,
                )
            except Exception as e:
                repository.mark_queued_message(queued.id, "failed", error=str(e))
                failed += 1
                errors.append(f"{queued.id}: {e}")
                continue

            repository.mark_queued_message(queued.id, "sent")
            sent += 1

    logger.info(f"Queued message sweep: processed={len(pending)}, sent={sent}, failed={failed}")
    return SweepResponse(processed=len(pending), sent=sent, failed=failed, errors=errors or None)


def _stored_response(message) -> WhatsAppResponse:
    stored = (message.metadata_ or {}).get("response")
    if stored:
        return WhatsAppResponse.model_validate(stored)
    text = "\n".join(
        part.get("text", "") for part in (message.parts or []) if part.get("type") == "text"
    )
    return WhatsAppResponse(message=text)


async def retry_failed_messages(rate_limiter: TokenBucketRateLimiter) -> SweepResponse:
    """
    Re-send outbound messages left in sendStatus=failed. Each message is
    retried at most FAILED_SEND_MAX_RETRIES times across sweeps; chunks
    already delivered by an earlier attempt are not sent again.
    """
    candidates = repository.get_failed_outbound_messages(
        settings.CRON_BATCH_SIZE, settings.FAILED_SEND_MAX_RETRIES
    )
    if not candidates:
        return SweepResponse(processed=0)

    sent = failed = 0
    errors: list[str] = []

    async with create_twilio_client() as client:
        for message in candidates:
            metadata = dict(message.metadata_ or {})
            metadata["sendRetries"] = int(metadata.get("sendRetries") or 0) + 1
            message.metadata_ = metadata

            to_number = metadata.get("toNumber")
            from_number = metadata.get("fromNumber") or _default_sender()
            already_delivered = metadata.get("deliveredChunkSids") or []
            try:
                result = await send_whatsapp_message_with_retry(
                    client,
                    to_number,
                    from_number,
                    _stored_response(message),
                    rate_limiter,
                    correlation={"chat_id": message.chat_id},
                    delivered_chunk_sids=already_delivered,
                )
            except Exception as e:
                repository.mark_message_failed(
                    message, str(e), delivered_chunk_sids=get_delivered_chunk_sids(e) or already_delivered
                )
                failed += 1
                errors.append(f"{message.id}: {e}")
                continue

            repository.mark_message_sent(message, result.sid)
            sent += 1
            log_whatsapp_event(
                "info",
                "whatsapp.outbound.resent",
                direction="outbound",
                chat_id=message.chat_id,
                details={"message_id": message.id, "sid": result.sid, "retries": metadata["sendRetries"]},
            )

    logger.info(f"Failed message sweep: processed={len(candidates)}, sent={sent}, failed={failed}")
    return SweepResponse(processed=len(candidates), sent=sent, failed=failed, errors=errors or None)
