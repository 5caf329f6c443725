from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 4
DEFAULT_BASE_DELAY = 2.0
DEFAULT_MAX_DELAY = 60.0
DEFAULT_JITTER = 1.0


class RetryExhaustedError(RuntimeError):
    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(f"Still failing after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RetryCancelledError(RuntimeError):
    """Raised when a cancel signal or deadline stops the retry loop."""


def _check_cancelled(cancel_event: threading.Event | None, deadline: float | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RetryCancelledError("Operation cancelled")
    if deadline is not None and time.monotonic() >= deadline:
        raise RetryCancelledError("Operation timed out")


def call_with_backoff(
    operation: Callable[[], T],
    *,
    is_retryable: Callable[[BaseException], bool],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    jitter: float = DEFAULT_JITTER,
    cancel_event: threading.Event | None = None,
    deadline: float | None = None,
    sleep: Callable[[float], None] | None = None,
) -> T:
    """Run ``operation`` until it succeeds, fails permanently or runs out of attempts.

    The wait before attempt ``n + 1`` is ``min(base_delay * 2 ** (n - 1), max_delay)``
    plus a uniform jitter in ``[0, jitter]``. Non-retryable errors propagate unchanged.
    ``deadline`` is a ``time.monotonic()`` timestamp; a backoff that would cross it,
    or a set ``cancel_event``, raises ``RetryCancelledError`` without sleeping it out.
    Both are checked again once an attempt returns or raises, so a late result or a
    transport timeout past the deadline surfaces as ``RetryCancelledError``.
    """

    attempts = 0

    def _attempt() -> T:
        nonlocal attempts
        _check_cancelled(cancel_event, deadline)
        attempts += 1
        try:
            result = operation()
        except Exception:
            _check_cancelled(cancel_event, deadline)
            raise
        _check_cancelled(cancel_event, deadline)
        return result

    def _sleep(seconds: float) -> None:
        if deadline is not None and time.monotonic() + seconds >= deadline:
            raise RetryCancelledError("Operation timed out during backoff")
        if sleep is not None:
            sleep(seconds)
        elif cancel_event is not None:
            if cancel_event.wait(seconds):
                raise RetryCancelledError("Operation cancelled during backoff")
        else:
            time.sleep(seconds)
        _check_cancelled(cancel_event, deadline)

    def _should_retry(exc: BaseException) -> bool:
        if isinstance(exc, RetryCancelledError):
            return False
        return is_retryable(exc)

    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay) + wait_random(0, jitter),
        retry=retry_if_exception(_should_retry),
        sleep=_sleep,
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )
    try:
        return retrying(_attempt)
    except RetryError as exc:
        last_error = exc.last_attempt.exception()
        logger.error("Giving up after %s attempts: %s", attempts, last_error)
        raise RetryExhaustedError(attempts, last_error) from last_error
