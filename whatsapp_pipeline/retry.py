"""
Retry with exponential backoff and jitter, on tenacity.

Usage::

    result = await with_retry(lambda: client.create_message(**params), max_attempts=3)
"""

import asyncio
import logging
import math
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_exponential, wait_random

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30_000
MAX_JITTER_MS = 100

_NETWORK_ERROR_MARKERS = (
    "network",
    "econnrefused",
    "econnreset",
    "etimedout",
    "socket",
    "connection reset",
    "connection refused",
    "fetch failed",
)


async def sleep_ms(delay_ms: float) -> None:
    await asyncio.sleep(delay_ms / 1000)


async def _sleep_seconds(seconds: float) -> None:
    # Looked up at call time so tests can replace sleep_ms
    await sleep_ms(seconds * 1000)


def _validate_config(max_attempts: int, base_delay_ms: float, max_delay_ms: float) -> None:
    if max_attempts < 1:
        raise ValueError(f"with_retry: max_attempts must be at least 1, got {max_attempts}")
    if not math.isfinite(base_delay_ms):
        raise ValueError(f"with_retry: base_delay_ms must be a finite number, got {base_delay_ms}")
    if not math.isfinite(max_delay_ms):
        raise ValueError(f"with_retry: max_delay_ms must be a finite number, got {max_delay_ms}")
    if base_delay_ms < 0:
        raise ValueError(f"with_retry: base_delay_ms must be non-negative, got {base_delay_ms}")
    if max_delay_ms < base_delay_ms:
        raise ValueError(
            f"with_retry: max_delay_ms must be >= base_delay_ms, "
            f"got max_delay_ms={max_delay_ms}, base_delay_ms={base_delay_ms}"
        )


def backoff_wait(base_delay_ms: float, max_delay_ms: float):
    """min(max_delay, base_delay * 2^attempt) plus 0-100ms of jitter, as a tenacity wait."""
    return wait_exponential(multiplier=base_delay_ms / 1000, max=max_delay_ms / 1000) + wait_random(
        0, MAX_JITTER_MS / 1000
    )


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay_ms: float = DEFAULT_BASE_DELAY_MS,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
    should_retry: Optional[Callable[[BaseException, int], bool]] = None,
    context: str = "operation",
) -> T:
    """
    Await ``fn()`` until it succeeds or attempts run out.

    ``should_retry(error, attempt)`` (0-indexed attempt) decides whether a
    failure is worth another try; by default every error is retried. It is
    not consulted for the final attempt.

    Raises:
        ValueError: invalid configuration, before any attempt is made
        Exception: the last error from ``fn``, with ``attempts`` set on it
    """
    _validate_config(max_attempts, base_delay_ms, max_delay_ms)

    def retry_predicate(retry_state: RetryCallState) -> bool:
        error = retry_state.outcome.exception()
        if not isinstance(error, Exception):
            return False
        if retry_state.attempt_number >= max_attempts:
            return False
        if should_retry is not None and not should_retry(error, retry_state.attempt_number - 1):
            logger.info(
                f"[retry:{context}] error is not retryable, giving up after attempt "
                f"{retry_state.attempt_number}: {error}"
            )
            return False
        return True

    def before_sleep(retry_state: RetryCallState) -> None:
        delay_ms = retry_state.next_action.sleep * 1000
        logger.warning(
            f"[retry:{context}] attempt {retry_state.attempt_number} failed, "
            f"retrying in {round(delay_ms)}ms: {retry_state.outcome.exception()}"
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=backoff_wait(base_delay_ms, max_delay_ms),
        retry=retry_predicate,
        before_sleep=before_sleep,
        sleep=_sleep_seconds,
        reraise=True,
    )

    attempts = 0
    try:
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                result = await fn()
    except Exception as error:
        if attempts >= max_attempts:
            logger.error(f"[retry:{context}] all {max_attempts} attempts failed: {error}")
        _annotate_attempts(error, attempts)
        raise

    if attempts > 1:
        logger.info(f"[retry:{context}] succeeded after {attempts} attempts")
    return result


def _annotate_attempts(error: BaseException, attempts: int) -> None:
    try:
        error.attempts = attempts
    except AttributeError:
        # Some exception types use __slots__ and refuse new attributes
        pass


def get_attempts_from_error(error: object) -> Optional[int]:
    attempts = getattr(error, "attempts", None)
    if isinstance(attempts, bool) or not isinstance(attempts, (int, float)):
        return None
    if not math.isfinite(attempts):
        return None
    return int(attempts)


def is_retryable_http_status(status: int) -> bool:
    """
    Retryable: 429 (rate limit), 500-599 (server errors).
    Not retryable: other 4xx client errors.
    """
    if status == 429:
        return True
    return 500 <= status < 600


def is_network_error(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _NETWORK_ERROR_MARKERS)
