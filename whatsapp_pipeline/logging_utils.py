import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import Request, Response
from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware

from whatsapp_pipeline.metrics import record_http_request


# Context variable to store request_id for the current request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

TWILIO_IDEMPOTENCY_HEADER = "I-Twilio-Idempotency-Token"

_EVENT_LOGGER = "whatsapp_pipeline.events"
_LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter to ensure ISO-8601 timestamps and request_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            now = datetime.now(timezone.utc)
            log_record['ts'] = now.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())

    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        '%(ts)s %(level)s %(name)s %(message)s'
    )
    json_handler.setFormatter(formatter)

    logger.addHandler(json_handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Disable uvicorn.access logger since we have our own middleware
    logging.getLogger("uvicorn.access").disabled = True

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return logger


def log_whatsapp_event(level: str, event: str, **fields: Any) -> None:
    """
    Emit one structured channel event.

    Correlation fields (message_sid, wa_id, chat_id), direction, numbers,
    error and a free-form ``details`` dict are passed as keyword arguments;
    ``None`` values are dropped.
    """
    extra = {"service": "whatsapp", "event": event}
    extra.update({key: value for key, value in fields.items() if value is not None})
    logging.getLogger(_EVENT_LOGGER).log(_LEVELS.get(level, logging.INFO), event, extra=extra)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests in structured JSON format.

    Log keys: request_id, method, path, status, latency_ms.
    For /webhook requests also: message_id, dup, result, and Twilio's
    idempotency token when the request carries one.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            latency_seconds = time.perf_counter() - started

            # /metrics scrapes are not counted
            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            log_data.update(getattr(request.state, "webhook_log_data", {}))
            idempotency_token = request.headers.get(TWILIO_IDEMPOTENCY_HEADER)
            if idempotency_token:
                log_data["twilio_idempotency_token"] = idempotency_token

            logging.getLogger("whatsapp_pipeline.requests").log(
                _status_level(response.status_code), "Request completed", extra=log_data
            )
            return response
        finally:
            request_id_ctx.reset(token)


def _status_level(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def log_webhook_data(request: Request, message_id: str = None, dup: bool = False, result: str = None):
    """
    Attach webhook-specific logging data to the request state.
    This data will be included in the request log by the middleware.

    Args:
        request: FastAPI request object
        message_id: MessageSid from the webhook payload
        dup: Whether this is a duplicate message
        result: Processing result (created, duplicate, invalid_signature, ...)
    """
    webhook_data = {}

    if message_id is not None:
        webhook_data["message_id"] = message_id

    if result is not None:
        webhook_data["result"] = result

    webhook_data["dup"] = dup

    request.state.webhook_log_data = webhook_data
