"""
Assistant reply generation with safety fallbacks.

generate_safe_response() never raises: it returns the model's reply, or a
canned fallback after recording an escalation for operator follow-up.
"""

import asyncio
import logging
from typing import Iterable, Optional

import httpx

from whatsapp_pipeline import repository
from whatsapp_pipeline.config import settings
from whatsapp_pipeline.llm import LLMClient, LLMError, get_llm_client
from whatsapp_pipeline.logging_utils import log_whatsapp_event
from whatsapp_pipeline.metrics import record_ai_failure
from whatsapp_pipeline.models import Message
from whatsapp_pipeline.retry import is_network_error, is_retryable_http_status, with_retry
from whatsapp_pipeline.safety import (
    FALLBACK_RESPONSE,
    classify_ai_error,
    get_failure_response,
    get_llm_config,
    get_safe_error_message,
    is_valid_whatsapp_response,
    parse_ai_output,
)
from whatsapp_pipeline.schemas import IncomingMessage, WhatsAppResponse
from whatsapp_pipeline.utils import build_system_prompt

logger = logging.getLogger(__name__)


def messages_to_history(messages: Iterable[Message], limit: Optional[int] = None) -> list[dict]:
    """
    Convert stored chat messages into chat-completion turns.
    Only text parts are kept; turns with no text are dropped.
    """
    history = []
    for message in messages:
        text = "\n".join(
            part.get("text", "")
            for part in (message.parts or [])
            if isinstance(part, dict) and part.get("type") == "text"
        ).strip()
        if not text:
            continue
        role = "assistant" if message.role == "assistant" else "user"
        history.append({"role": role, "content": text})

    limit = limit if limit is not None else settings.LLM_HISTORY_LIMIT
    if limit and len(history) > limit:
        history = history[-limit:]
    return history


def _is_transient_llm_error(error: BaseException, attempt: int) -> bool:
    if isinstance(error, LLMError):
        return is_retryable_http_status(error.status_code)
    if isinstance(error, httpx.TransportError):
        return True
    return is_network_error(error)


async def generate_safe_response(
    history: list[dict],
    payload: IncomingMessage,
    chat_id: str,
    inbound_message_id: str,
    request_url: str,
    llm: Optional[LLMClient] = None,
) -> WhatsAppResponse:
    config = get_llm_config()
    correlation = {"message_sid": payload.MessageSid, "wa_id": payload.WaId, "chat_id": chat_id}

    try:
        client = llm or get_llm_client()
        system = build_system_prompt(payload)

        result = await asyncio.wait_for(
            with_retry(
                lambda: client.generate(system, history),
                max_attempts=config.max_retries + 1,
                base_delay_ms=settings.LLM_RETRY_BASE_DELAY_MS,
                max_delay_ms=max(settings.LLM_RETRY_BASE_DELAY_MS, config.timeout_ms),
                should_retry=_is_transient_llm_error,
                context="llm.generate",
            ),
            timeout=config.timeout_ms / 1000,
        )

        log_whatsapp_event(
            "info",
            "whatsapp.processing.response_generated",
            request_url=request_url,
            details={"model": result.model, "finish_reason": result.finish_reason, "usage": result.usage},
            **correlation,
        )
        if result.usage:
            repository.save_chat_usage(chat_id, {"model": result.model, "usage": result.usage})

        if not is_valid_whatsapp_response(result.content):
            failure_type = "invalid_response" if result.content else "empty_response"
            log_whatsapp_event(
                "warn",
                "whatsapp.llm.invalid_response",
                direction="internal",
                details={"message_length": len(result.content or "")},
                **correlation,
            )
            record_ai_failure(failure_type)
            repository.log_ai_escalation(
                chat_id=chat_id,
                failure_type=failure_type,
                error="AI response failed validation",
                message_id=inbound_message_id,
                request_url=request_url,
            )
            return WhatsAppResponse(message=FALLBACK_RESPONSE)

        return parse_ai_output(result.content)

    except Exception as error:
        failure_type = classify_ai_error(error)
        error_message = get_safe_error_message(error) or type(error).__name__

        log_whatsapp_event(
            "error",
            "whatsapp.llm.failed",
            direction="internal",
            error=error_message,
            details={"failure_type": failure_type},
            **correlation,
        )
        record_ai_failure(failure_type)
        repository.log_ai_escalation(
            chat_id=chat_id,
            failure_type=failure_type,
            error=error_message,
            message_id=inbound_message_id,
            request_url=request_url,
        )
        return WhatsAppResponse(message=get_failure_response(failure_type))
