import hmac
import logging
from contextlib import asynccontextmanager
from typing import Annotated
from urllib.parse import parse_qsl

from fastapi import BackgroundTasks, FastAPI, Header, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from whatsapp_pipeline import repository
from whatsapp_pipeline.config import settings
from whatsapp_pipeline.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from whatsapp_pipeline.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from whatsapp_pipeline.rate_limiter import TokenBucketRateLimiter
from whatsapp_pipeline.schemas import HealthResponse, IncomingMessage, SweepResponse
from whatsapp_pipeline.service import process_whatsapp_message
from whatsapp_pipeline.storage import check_db_health, init_db
from whatsapp_pipeline.sweeps import retry_failed_messages, send_queued_messages
from whatsapp_pipeline.utils import verify_twilio_signature, webhook_url_warnings


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhook"
EMPTY_TWIML = "<Response></Response>"


def check_webhook_configuration() -> list[str]:
    """Log (but never fail on) webhook settings that would break signature checks."""
    warnings = webhook_url_warnings(settings.TWILIO_WHATSAPP_WEBHOOK_URL, WEBHOOK_PATH)
    if not settings.TWILIO_AUTH_TOKEN:
        warnings.append("TWILIO_AUTH_TOKEN is not configured")
    for warning in warnings:
        logger.warning(f"Webhook configuration: {warning}")
    return warnings


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database, check webhook configuration
    """
    init_db()
    check_webhook_configuration()
    yield


app = FastAPI(
    title="WhatsApp Pipeline",
    description="Twilio WhatsApp webhook ingestion, assistant replies and rate-limited delivery",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)

# Process-local sender throughput limiter, handed to every delivery call
app.state.rate_limiter = TokenBucketRateLimiter(
    tokens_per_second=settings.WHATSAPP_SENDER_RATE_PER_SECOND,
    bucket_size=settings.WHATSAPP_SENDER_RATE_BURST,
    cleanup_after_ms=settings.WHATSAPP_RATE_LIMIT_CLEANUP_MS,
)


def _twiml_ack() -> Response:
    return Response(content=EMPTY_TWIML, media_type="text/xml")


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness check - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness check - returns 200 only if:
    1. Twilio auth token and webhook URL are configured
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.TWILIO_AUTH_TOKEN or not settings.TWILIO_WHATSAPP_WEBHOOK_URL:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Twilio webhook credentials not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Route
# =============================================================================

def _reject(request: Request, result: str, status_code: int, text: str, message_id: str = None) -> Response:
    record_webhook_outcome(result)
    log_webhook_data(request=request, message_id=message_id, dup=False, result=result)
    return PlainTextResponse(text, status_code=status_code)


@app.post(WEBHOOK_PATH)
async def webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_twilio_signature: Annotated[str | None, Header(alias="X-Twilio-Signature")] = None,
) -> Response:
    """
    Ingest inbound Twilio WhatsApp messages exactly once.

    - Validates the form payload
    - Validates X-Twilio-Signature against TWILIO_WHATSAPP_WEBHOOK_URL
    - Idempotent: a MessageSid already seen is acknowledged without reprocessing
    - Processing (reply generation and delivery) runs after the response
    """
    raw_body = await request.body()
    logger.debug(f"Webhook request body size: {len(raw_body)} bytes")

    if not raw_body:
        logger.warning("Webhook request with empty body")
        return _reject(request, "missing_payload", status.HTTP_400_BAD_REQUEST, "Missing payload")

    params = dict(parse_qsl(raw_body.decode("utf-8", errors="replace"), keep_blank_values=True))

    try:
        payload = IncomingMessage.model_validate(params)
    except ValidationError as e:
        logger.warning(f"Webhook payload failed validation: {e.error_count()} issue(s)")
        issues = [
            {"field": ".".join(str(loc) for loc in error["loc"]), "message": error["msg"]}
            for error in e.errors()
        ]
        background_tasks.add_task(
            repository.log_webhook_error,
            "invalid_payload",
            payload={"issues": issues},
            request_url=str(request.url),
        )
        return _reject(
            request, "invalid_payload", status.HTTP_400_BAD_REQUEST, "Invalid payload", params.get("MessageSid")
        )

    if not x_twilio_signature:
        logger.warning(f"Missing X-Twilio-Signature header: {payload.MessageSid}")
        background_tasks.add_task(
            repository.log_webhook_error,
            "missing_signature",
            message_sid=payload.MessageSid,
            payload=payload.model_dump(),
        )
        return _reject(request, "missing_signature", status.HTTP_403_FORBIDDEN, "Forbidden", payload.MessageSid)

    auth_token = settings.TWILIO_AUTH_TOKEN
    webhook_url = (settings.TWILIO_WHATSAPP_WEBHOOK_URL or "").strip()
    if not auth_token or not webhook_url:
        logger.error("Missing TWILIO_AUTH_TOKEN or TWILIO_WHATSAPP_WEBHOOK_URL")
        return _reject(
            request, "misconfigured", status.HTTP_500_INTERNAL_SERVER_ERROR, "Server misconfigured", payload.MessageSid
        )

    if str(request.url) != webhook_url:
        # Signatures are always checked against the configured URL
        logger.warning(f"Request URL differs from configured webhook URL: {request.url} != {webhook_url}")

    if not verify_twilio_signature(auth_token, x_twilio_signature, webhook_url, params):
        logger.warning(f"Twilio signature validation failed: {payload.MessageSid}")
        background_tasks.add_task(
            repository.log_webhook_error,
            "signature_failed",
            message_sid=payload.MessageSid,
            payload={**payload.model_dump(), "fromNumber": payload.From, "toNumber": payload.To},
        )
        return _reject(request, "invalid_signature", status.HTTP_403_FORBIDDEN, "Forbidden", payload.MessageSid)

    pending = repository.create_pending_log(webhook_url, payload)
    outcome = pending["outcome"]

    if outcome == "duplicate":
        logger.info(f"Duplicate message, skipping: {payload.MessageSid}")
    elif outcome == "error":
        # Acknowledge anyway so Twilio does not retry into a failing database
        logger.error(f"Failed to persist pending log: {payload.MessageSid}")
        background_tasks.add_task(
            repository.log_webhook_error,
            "pending_log_failed",
            message_sid=payload.MessageSid,
            error="create_pending_log returned outcome=error",
            request_url=str(request.url),
        )
        outcome = "log_error"
    else:
        background_tasks.add_task(
            process_whatsapp_message,
            payload,
            webhook_url,
            request.app.state.rate_limiter,
        )

    record_webhook_outcome(outcome)
    log_webhook_data(
        request=request,
        message_id=payload.MessageSid,
        dup=outcome == "duplicate",
        result=outcome,
    )
    return _twiml_ack()


# =============================================================================
# Cron Routes
# =============================================================================

def _check_cron_auth(authorization: str | None) -> Response | None:
    if not settings.CRON_SECRET:
        logger.error("CRON_SECRET is not configured")
        return JSONResponse({"error": "Server misconfigured"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    expected = f"Bearer {settings.CRON_SECRET}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        return JSONResponse({"error": "Unauthorized"}, status_code=status.HTTP_401_UNAUTHORIZED)
    return None


async def _run_sweep(name: str, sweep, request: Request) -> Response:
    try:
        result: SweepResponse = await sweep(request.app.state.rate_limiter)
    except Exception as e:
        logger.error(f"Cron sweep {name} failed: {e}")
        return JSONResponse({"error": "Internal server error"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(result.model_dump(exclude_none=True))


@app.get("/cron/send-queued-messages")
async def cron_send_queued_messages(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
) -> Response:
    """Deliver queued messages whose scheduled time has passed."""
    rejected = _check_cron_auth(authorization)
    if rejected is not None:
        return rejected
    return await _run_sweep("send-queued-messages", send_queued_messages, request)


@app.get("/cron/retry-failed-messages")
async def cron_retry_failed_messages(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
) -> Response:
    """Re-attempt delivery of assistant replies left in sendStatus=failed."""
    rejected = _check_cron_auth(authorization)
    if rejected is not None:
        return rejected
    return await _run_sweep("retry-failed-messages", retry_failed_messages, request)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total: Total HTTP requests by method, path, status
    - webhook_requests_total: Webhook outcomes by result
    - whatsapp_outbound_total: Outbound deliveries by status
    - ai_failures_total: Assistant fallbacks by failure type
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
