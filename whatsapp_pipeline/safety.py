"""
Safety utilities for assistant replies on the WhatsApp channel.

Provides:
- Timeout and retry limits for the generation call
- Output validation and structured-reply parsing
- Canned fallback replies per failure type
- PII redaction for error messages that get logged or escalated
"""

import asyncio
import json
import re
from dataclasses import dataclass

import httpx
from pydantic import ValidationError

from whatsapp_pipeline.config import settings
from whatsapp_pipeline.schemas import WhatsAppResponse


@dataclass(frozen=True)
class LLMConfig:
    timeout_ms: int
    max_retries: int
    min_response_length: int


def get_llm_config() -> LLMConfig:
    return LLMConfig(
        timeout_ms=settings.LLM_TIMEOUT_MS,
        max_retries=settings.LLM_MAX_RETRIES,
        min_response_length=settings.LLM_MIN_RESPONSE_LENGTH,
    )


FALLBACK_RESPONSE = "We're experiencing technical difficulties. Please try again shortly."

# failure_type -> user-facing reply
FAILURE_RESPONSES = {
    "timeout": "Your request is taking longer than expected. Please try again in a moment.",
    "api_error": "Our service is temporarily unavailable. Please try again in a few minutes.",
    "invalid_response": FALLBACK_RESPONSE,
    "empty_response": FALLBACK_RESPONSE,
    "schema_validation_failed": FALLBACK_RESPONSE,
    "unknown": FALLBACK_RESPONSE,
}

MAX_SAFE_ERROR_LENGTH = 500


def get_failure_response(failure_type: str) -> str:
    return FAILURE_RESPONSES.get(failure_type, FALLBACK_RESPONSE)


def is_valid_whatsapp_response(text: str | None) -> bool:
    """Non-empty after trimming and at least LLM_MIN_RESPONSE_LENGTH characters."""
    if not text:
        return False
    return len(text.strip()) >= max(1, settings.LLM_MIN_RESPONSE_LENGTH)


def classify_ai_error(error: BaseException) -> str:
    """
    Map a generation failure to a failure type by inspecting its message.
    """
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return "timeout"

    message = str(error).lower()

    if "timeout" in message or "aborted" in message:
        return "timeout"

    if "schema" in message or "validation" in message:
        return "schema_validation_failed"

    if any(marker in message for marker in ("api", "rate limit", "429", "500")):
        return "api_error"

    return "unknown"


# Applied in order: specific patterns first so general phone matching
# does not eat IDs, SSNs or card numbers.
_PII_PATTERNS = [
    (re.compile(r"\bwa_id[=:]\s*\d{10,}", re.IGNORECASE), "wa_id=[ID_REDACTED]"),
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[SSN_REDACTED]"),
    (re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"), "[CC_REDACTED]"),
    (re.compile(r"\+\d{10,15}"), "[PHONE_REDACTED]"),
    (re.compile(r"\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}"), "[PHONE_REDACTED]"),
    (re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"), "[EMAIL_REDACTED]"),
]


def redact_pii(text: str) -> str:
    for pattern, replacement in _PII_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def get_safe_error_message(error: object) -> str:
    """Error text safe to log: PII redacted, truncated to 500 characters."""
    message = str(error) if isinstance(error, BaseException) else f"{error}"
    return redact_pii(message)[:MAX_SAFE_ERROR_LENGTH]


class SchemaValidationError(ValueError):
    pass


def parse_ai_output(text: str) -> WhatsAppResponse:
    """
    Turn raw model output into a sendable reply.

    A JSON object is validated as a structured reply (message, buttons,
    mediaUrl, location). Anything else is used verbatim as the message text.

    Raises:
        SchemaValidationError: output is a JSON object that does not fit the reply schema
    """
    stripped = text.strip()
    if stripped.startswith("{"):
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            try:
                response = WhatsAppResponse.model_validate(data)
            except ValidationError as e:
                raise SchemaValidationError(
                    f"AI output failed schema validation: {e.error_count()} error(s)"
                ) from e
            if not is_valid_whatsapp_response(response.message):
                raise SchemaValidationError("AI output failed schema validation: empty message")
            return response

    return WhatsAppResponse(message=stripped)
