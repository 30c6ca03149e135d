"""
Twilio delivery client for the WhatsApp channel.

Thin async wrapper over the Twilio REST API (Messages and Conversations),
plus the send path used by the processing service and the cron sweeps:
chunking on newline boundaries, a per-sender rate limit token per chunk, and
retries for transient failures.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

import httpx

from whatsapp_pipeline import retry
from whatsapp_pipeline.config import settings
from whatsapp_pipeline.logging_utils import log_whatsapp_event
from whatsapp_pipeline.metrics import record_outbound
from whatsapp_pipeline.numbers import format_whatsapp_number
from whatsapp_pipeline.rate_limiter import RateLimitExceeded, TokenBucketRateLimiter
from whatsapp_pipeline.retry import is_network_error, is_retryable_http_status, with_retry
from whatsapp_pipeline.schemas import IncomingMessage, WhatsAppResponse

logger = logging.getLogger(__name__)


class TwilioRestError(Exception):
    """Non-2xx response from the Twilio REST API."""

    def __init__(
        self,
        status: int,
        message: str,
        code: Optional[int] = None,
        more_info: Optional[str] = None,
        details: Any = None,
    ):
        self.status = status
        self.code = code
        self.more_info = more_info
        self.details = details
        super().__init__(f"Twilio API error {status}: {message}")


@dataclass
class SendResult:
    sid: str
    status: str


class TwilioClient:
    """
    Minimal async Twilio REST client.

    Use as an async context manager so the underlying HTTP connection pool
    is closed when the caller is done.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        api_base_url: str = "https://api.twilio.com/2010-04-01",
        conversations_base_url: str = "https://conversations.twilio.com/v1",
        timeout_seconds: float = 15.0,
    ):
        self.account_sid = account_sid
        self.api_base_url = api_base_url.rstrip("/")
        self.conversations_base_url = conversations_base_url.rstrip("/")
        self._http = httpx.AsyncClient(auth=(account_sid, auth_token), timeout=timeout_seconds)

    async def __aenter__(self) -> "TwilioClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, url: str, data: Optional[dict] = None) -> dict:
        response = await self._http.request(method, url, data=data)
        if response.status_code >= 400:
            raise _rest_error_from_response(response)
        if not response.content:
            return {}
        return response.json()

    async def create_message(self, **params: Any) -> dict:
        """POST /Accounts/{sid}/Messages.json with Twilio's form parameter names."""
        url = f"{self.api_base_url}/Accounts/{self.account_sid}/Messages.json"
        return await self._request("POST", url, data=params)

    async def list_participants(self, conversation_sid: str) -> list[dict]:
        url = f"{self.conversations_base_url}/Conversations/{conversation_sid}/Participants"
        data = await self._request("GET", url)
        return data.get("participants", [])

    async def send_typing(self, conversation_sid: str, participant_sid: str) -> None:
        url = (
            f"{self.conversations_base_url}/Conversations/{conversation_sid}"
            f"/Participants/{participant_sid}/Typing"
        )
        await self._request("POST", url)


def _rest_error_from_response(response: httpx.Response) -> TwilioRestError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    return TwilioRestError(
        status=response.status_code,
        message=body.get("message") or response.text[:200] or response.reason_phrase,
        code=body.get("code"),
        more_info=body.get("more_info"),
        details=body.get("details"),
    )


def create_twilio_client() -> TwilioClient:
    if not settings.TWILIO_ACCOUNT_SID or not settings.TWILIO_AUTH_TOKEN:
        raise RuntimeError("Twilio credentials are not configured")
    return TwilioClient(
        account_sid=settings.TWILIO_ACCOUNT_SID,
        auth_token=settings.TWILIO_AUTH_TOKEN,
        api_base_url=settings.TWILIO_API_BASE_URL,
        conversations_base_url=settings.TWILIO_CONVERSATIONS_BASE_URL,
        timeout_seconds=settings.TWILIO_HTTP_TIMEOUT_SECONDS,
    )


def get_twilio_error_metadata(error: BaseException) -> Optional[dict]:
    """Status/code/more_info/details of a Twilio error, or None for other errors."""
    if not isinstance(error, TwilioRestError):
        return None
    metadata = {"status": error.status, "code": error.code, "more_info": error.more_info}
    if isinstance(error.details, dict):
        metadata["details"] = error.details
    return metadata


def is_retryable_send_error(error: BaseException, attempt: int = 0) -> bool:
    """
    Retry 429 and 5xx responses and network failures; every other error,
    including 4xx client errors, is permanent.
    """
    if isinstance(error, TwilioRestError):
        return is_retryable_http_status(error.status)
    if isinstance(error, httpx.TransportError):
        return True
    return is_network_error(error)


def chunk_message_by_newlines(message: str, max_length: int = 1600) -> list[str]:
    """
    Split a message on newline boundaries, greedily packing lines into chunks
    of at most max_length characters.

    A single line longer than max_length is kept whole.

    >>> chunk_message_by_newlines("abc\\ndef\\nghi", 7)
    ['abc\\ndef', 'ghi']
    """
    if not message:
        return []
    if len(message) <= max_length:
        return [message]

    chunks = []
    current: Optional[str] = None
    for line in message.split("\n"):
        if current is None:
            current = line
        elif len(current) + 1 + len(line) <= max_length:
            current = f"{current}\n{line}"
        else:
            chunks.append(current)
            current = line
    if current is not None:
        chunks.append(current)
    return chunks


async def send_typing_indicator(
    client: TwilioClient,
    payload: IncomingMessage,
    correlation: Optional[dict] = None,
) -> None:
    """
    Show "typing..." to the user through the Conversations API.

    Skipped when disabled, when the webhook carried no ConversationSid, or
    when no agent identity is configured.
    """
    correlation = correlation or {}
    if not settings.WHATSAPP_TYPING_INDICATOR_ENABLED:
        return

    conversation_sid = payload.ConversationSid
    agent_identity = settings.TWILIO_CONVERSATIONS_AGENT_IDENTITY
    if not conversation_sid or not agent_identity:
        log_whatsapp_event(
            "info",
            "whatsapp.typing.skipped",
            direction="outbound",
            details={"reason": "missing conversationSid" if not conversation_sid else "missing agent identity"},
            **correlation,
        )
        return

    participants = await client.list_participants(conversation_sid)
    agent = next((p for p in participants if p.get("identity") == agent_identity), None)
    if agent is None:
        log_whatsapp_event(
            "info",
            "whatsapp.typing.agent_not_found",
            direction="outbound",
            details={"conversation_sid": conversation_sid},
            **correlation,
        )
        return

    await client.send_typing(conversation_sid, agent["sid"])
    log_whatsapp_event(
        "info",
        "whatsapp.typing.sent",
        direction="outbound",
        details={"conversation_sid": conversation_sid},
        **correlation,
    )


def _ensure_sendable(text: Optional[str]) -> None:
    if not text or not text.strip():
        raise ValueError("Cannot send empty message")


def _encode_content_variables(variables: Union[dict, str, None]) -> str:
    if isinstance(variables, str):
        return variables
    return json.dumps(variables or {})


async def send_whatsapp_message(
    client: TwilioClient,
    to: str,
    from_: Optional[str],
    response: WhatsAppResponse,
    content_sid: Optional[str] = None,
    content_variables: Union[dict, str, None] = None,
) -> SendResult:
    """
    Dispatch one message. Numbers are validated and wrapped as
    ``whatsapp:<E.164>`` before any network call.

    With ``content_sid`` the message is sent from that content template with
    ``content_variables`` instead of a Body.
    """
    if not content_sid:
        _ensure_sendable(response.message)

    params: dict[str, Any] = {"To": format_whatsapp_number(to)}
    if settings.TWILIO_MESSAGING_SERVICE_SID:
        params["MessagingServiceSid"] = settings.TWILIO_MESSAGING_SERVICE_SID
    elif from_:
        params["From"] = format_whatsapp_number(from_)
    else:
        raise ValueError("TWILIO_WHATSAPP_FROM or TWILIO_MESSAGING_SERVICE_SID is required")

    if response.media_url:
        params["MediaUrl"] = [response.media_url]

    if response.location:
        location = response.location
        params["PersistentAction"] = [
            f"geo:{location.latitude},{location.longitude}|{location.label or location.name}"
        ]

    buttons_sid = settings.TWILIO_WHATSAPP_BUTTONS_CONTENT_SID
    if content_sid:
        params["ContentSid"] = content_sid
        params["ContentVariables"] = _encode_content_variables(content_variables)
    elif response.buttons and buttons_sid and settings.WHATSAPP_BUTTONS_ENABLED:
        params["ContentSid"] = buttons_sid
        params["ContentVariables"] = _encode_content_variables(
            {
                "message": response.message,
                "buttons": [
                    {"id": button.id or f"option-{index + 1}", "label": button.label, "url": button.url}
                    for index, button in enumerate(response.buttons)
                ],
            }
        )
    else:
        if response.buttons:
            logger.warning("Reply included buttons but the buttons content template is not enabled; sending text only")
        params["Body"] = response.message

    result = await client.create_message(**params)
    logger.info(f"Message dispatched: sid={result.get('sid')}, status={result.get('status')}")
    return SendResult(sid=result["sid"], status=result.get("status", "queued"))


def _uses_content_template(response: WhatsAppResponse) -> bool:
    return bool(
        response.buttons
        and settings.TWILIO_WHATSAPP_BUTTONS_CONTENT_SID
        and settings.WHATSAPP_BUTTONS_ENABLED
    )


def _split_reply(response: WhatsAppResponse) -> list[WhatsAppResponse]:
    """
    Chunks of a text reply, in send order. Media and location ride on the
    last chunk; whitespace-only chunks are dropped. The split is
    deterministic, so a partial delivery can be resumed by chunk index.
    """
    chunks = [
        chunk
        for chunk in chunk_message_by_newlines(response.message, settings.WHATSAPP_MAX_MESSAGE_LENGTH)
        if chunk.strip()
    ]
    last = len(chunks) - 1
    return [
        WhatsAppResponse(
            message=chunk,
            media_url=response.media_url if index == last else None,
            location=response.location if index == last else None,
        )
        for index, chunk in enumerate(chunks)
    ]


def _annotate_delivered(error: BaseException, chunk_sids: list[str]) -> None:
    try:
        error.delivered_chunk_sids = list(chunk_sids)
    except AttributeError:
        pass


def get_delivered_chunk_sids(error: object) -> list[str]:
    """SIDs of the chunks that went out before ``error`` stopped a send."""
    sids = getattr(error, "delivered_chunk_sids", None)
    return list(sids) if isinstance(sids, list) else []


async def send_whatsapp_message_with_retry(
    client: TwilioClient,
    to: str,
    from_: Optional[str],
    response: Union[WhatsAppResponse, str],
    rate_limiter: TokenBucketRateLimiter,
    correlation: Optional[dict] = None,
    content_sid: Optional[str] = None,
    content_variables: Union[dict, str, None] = None,
    delivered_chunk_sids: Optional[list[str]] = None,
) -> SendResult:
    """
    Send a reply, chunked when it exceeds the channel limit.

    Each chunk takes a sender-level rate limit token, then is sent through
    with_retry. Media and location ride on the last chunk. Template replies
    (``content_sid``, or buttons with the buttons template enabled) are sent
    as a single message.

    ``delivered_chunk_sids`` lists chunks already delivered by an earlier,
    partially failed send; those chunks are skipped. On failure the raised
    error carries every delivered chunk SID, read back with
    get_delivered_chunk_sids().

    Returns the result of the last chunk sent.

    Raises:
        ValueError: empty text or malformed numbers, before any network call
        RateLimitExceeded: no token within WHATSAPP_SENDER_RATE_MAX_WAIT_MS
        TwilioRestError / httpx errors: the last dispatch failure
    """
    correlation = correlation or {}
    if isinstance(response, str):
        response = WhatsAppResponse(message=response)

    if not content_sid:
        _ensure_sendable(response.message)
    format_whatsapp_number(to)
    if from_:
        format_whatsapp_number(from_)

    sender_key = settings.TWILIO_MESSAGING_SERVICE_SID or from_ or "default"

    if content_sid or _uses_content_template(response):
        parts = [response]
    else:
        parts = _split_reply(response)
        if len(parts) > 1:
            log_whatsapp_event(
                "info",
                "whatsapp.outbound.chunking",
                direction="outbound",
                details={"chunk_count": len(parts), "message_length": len(response.message)},
                **correlation,
            )

    delivered = list(delivered_chunk_sids or [])
    if len(delivered) >= len(parts):
        raise ValueError(f"All {len(parts)} chunk(s) were already delivered")
    if delivered:
        log_whatsapp_event(
            "info",
            "whatsapp.outbound.resuming",
            direction="outbound",
            details={"skipped_chunks": len(delivered), "chunk_count": len(parts)},
            **correlation,
        )

    def should_retry(error: BaseException, attempt: int) -> bool:
        retryable = is_retryable_send_error(error, attempt)
        if retryable:
            log_whatsapp_event(
                "warn",
                "whatsapp.outbound.send_retried",
                direction="outbound",
                error=str(error),
                details={"attempt": attempt + 1},
                **correlation,
            )
        return retryable

    result: Optional[SendResult] = None
    first = len(delivered)
    for index in range(first, len(parts)):
        part = parts[index]
        if index > first:
            await retry.sleep_ms(settings.WHATSAPP_CHUNK_DELAY_MS)

        try:
            await rate_limiter.acquire(sender_key, max_wait_ms=settings.WHATSAPP_SENDER_RATE_MAX_WAIT_MS)
        except RateLimitExceeded as e:
            log_whatsapp_event(
                "error",
                "whatsapp.outbound.rate_limited",
                direction="outbound",
                error=str(e),
                to_number=to,
                **correlation,
            )
            record_outbound("failed")
            _annotate_delivered(e, delivered)
            raise

        try:
            result = await with_retry(
                lambda part=part: send_whatsapp_message(
                    client, to, from_, part, content_sid=content_sid, content_variables=content_variables
                ),
                max_attempts=settings.WHATSAPP_RETRY_MAX_ATTEMPTS,
                base_delay_ms=settings.WHATSAPP_RETRY_BASE_DELAY_MS,
                max_delay_ms=settings.WHATSAPP_RETRY_MAX_DELAY_MS,
                should_retry=should_retry,
                context="whatsapp.send",
            )
        except Exception as e:
            log_whatsapp_event(
                "error",
                "whatsapp.outbound.dispatch_failed",
                direction="outbound",
                error=str(e),
                to_number=to,
                details={
                    "chunk": index + 1,
                    "chunk_count": len(parts),
                    "attempts": retry.get_attempts_from_error(e),
                    "twilio": get_twilio_error_metadata(e),
                },
                **correlation,
            )
            record_outbound("failed")
            _annotate_delivered(e, delivered)
            raise
        delivered.append(result.sid)

    log_whatsapp_event(
        "info",
        "whatsapp.outbound.sent",
        direction="outbound",
        to_number=to,
        from_number=from_,
        details={"sid": result.sid, "status": result.status, "chunk_count": len(parts)},
        **correlation,
    )
    record_outbound("sent")
    return result
