"""Exponential backoff for remote calls.

Every outbound request in the pipeline goes through :func:`retry`.  The
delay before retry ``i`` (zero-based) is ``initial_delay * 2**i``, so the
defaults wait 1s then 2s.  The last error is re-raised unchanged once the
attempts are used up.

Errors that cannot succeed on a second try (rejected credentials, unknown
task ids, bad requests, poll timeouts) are raised straight away.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from assetsmith.errors import (
    GenerationCancelledError,
    TaskTimeoutError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NEVER_RETRY = (GenerationCancelledError, TaskTimeoutError, ValidationError)


def interruptible_sleep(seconds: float, cancel_event: Optional[threading.Event] = None) -> None:
    """Sleep for *seconds*, waking early if *cancel_event* is set.

    :raises GenerationCancelledError: If the event is (or becomes) set.
    """
    if cancel_event is None:
        time.sleep(seconds)
        return
    if cancel_event.wait(seconds):
        raise GenerationCancelledError()


def check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    """Raise :class:`GenerationCancelledError` if *cancel_event* is set."""
    if cancel_event is not None and cancel_event.is_set():
        raise GenerationCancelledError()


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, _NEVER_RETRY):
        return False
    return bool(getattr(exc, "retryable", True))


def retry(
    operation: Callable[[], T],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    *,
    cancel_event: Optional[threading.Event] = None,
    description: str = "Remote call",
) -> T:
    """Call *operation* until it succeeds or *max_attempts* is reached.

    :param operation: Zero-argument callable performing one attempt.
    :param max_attempts: Total number of attempts (at least 1).
    :param initial_delay: Seconds to wait after the first failure.
    :param cancel_event: Aborts the backoff sleep when set.
    :param description: Label used in retry log lines.
    :returns: Whatever the first successful attempt returned.
    :raises ValueError: If *max_attempts* is less than 1.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    last_exc: Optional[BaseException] = None
    for attempt in range(max_attempts):
        check_cancelled(cancel_event)
        try:
            return operation()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            last_exc = exc
            if attempt + 1 >= max_attempts:
                break
            delay = initial_delay * (2**attempt)
            logger.warning(
                "%s failed (%s), retrying in %.1fs (attempt %d/%d)",
                description,
                exc,
                delay,
                attempt + 1,
                max_attempts,
            )
            interruptible_sleep(delay, cancel_event)

    logger.error("%s failed after %d attempts: %s", description, max_attempts, last_exc)
    assert last_exc is not None
    raise last_exc
