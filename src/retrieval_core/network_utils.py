"""Retry helpers for calls to the cloud archive index service."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

import requests

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CONNECTION_ERRORS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    requests.exceptions.ChunkedEncodingError,
    requests.exceptions.ContentDecodingError,
    requests.exceptions.TooManyRedirects,
)


def is_connection_error(exc: BaseException) -> bool:
    """True for transport-level failures (the service could not be reached)."""
    return isinstance(exc, _CONNECTION_ERRORS)


def is_retryable_http_exception(exc: Exception, retry_on_429: bool = True) -> bool:
    """Check if an HTTP exception is retryable.

    Args:
        exc: The exception to check
        retry_on_429: Whether to retry on HTTP 429 Too Many Requests

    Returns:
        True if the exception is retryable
    """
    if isinstance(exc, requests.exceptions.HTTPError):
        status_code = exc.response.status_code if exc.response is not None else None
        if status_code is None:
            return False
        if status_code >= 500:
            return True
        return status_code == 429 and retry_on_429
    return is_connection_error(exc)


def with_retries(
    fn: Callable[[], T],
    *,
    max_attempts: int = 3,
    backoff_base: float = 2.0,
    backoff_max: float = 60.0,
    on_retry: Callable[[int, Exception], None] | None = None,
    retry_on_429: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Execute a function with retry logic.

    Args:
        fn: The function to execute
        max_attempts: Maximum number of attempts
        backoff_base: Base for exponential backoff (seconds)
        backoff_max: Maximum backoff time (seconds)
        on_retry: Optional callback called on each retry with (attempt_num, exception)
        retry_on_429: Whether to retry on HTTP 429 Too Many Requests
        sleep: Sleep function (tests pass a no-op)

    Returns:
        The result of fn()

    Raises:
        Exception: The last exception if all retries fail
    """
    attempts = max(1, max_attempts)
    for attempt in range(attempts):
        try:
            return fn()
        except Exception as exc:
            if not is_retryable_http_exception(exc, retry_on_429=retry_on_429) or attempt >= attempts - 1:
                raise
            if on_retry:
                on_retry(attempt + 1, exc)
            else:
                logger.debug("Retrying after attempt %d failed: %s", attempt + 1, exc)
            sleep(min(backoff_base**attempt, backoff_max))
    raise RuntimeError("unreachable")
