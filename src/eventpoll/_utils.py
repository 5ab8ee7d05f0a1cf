"""
Utility functions for the eventpoll SDK.

This module provides internal helper functions used throughout the SDK.
These functions are not part of the public API and may change without notice.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

logger = logging.getLogger(__name__)


# =============================================================================
# Cancellation
# =============================================================================


class OperationCancelledError(Exception):
    """
    Raised when a wait or an in-flight call is interrupted by a CancellationToken.

    This is not a failure: it signals that the owner of the token (usually an
    event stream being paused or destroyed) asked the operation to stop.
    """

    pass


class CancellationToken:
    """
    Thread-safe, one-shot cancellation signal.

    A token starts active and can be cancelled exactly once. Waits performed
    through `wait()` return early as soon as the token is cancelled, and
    callbacks registered via `add_callback()` run on cancellation (or
    immediately, if the token is already cancelled).

    Example:
        >>> token = CancellationToken()
        >>> threading.Timer(0.1, token.cancel).start()
        >>> token.wait(10.0)  # returns True after ~0.1s
        True
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        """Return True once `cancel()` has been called."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Cancel the token and run registered callbacks (idempotent)."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancellation callback raised an exception: {e}")

    def wait(self, timeout: float | None = None) -> bool:
        """
        Block until the token is cancelled or `timeout` seconds elapse.

        Returns:
            True if the token was cancelled, False on timeout.
        """
        return self._event.wait(timeout)

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register a callback to run on cancellation.

        Returns:
            A function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def _remove() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return _remove

        callback()
        return lambda: None

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelledError if the token is cancelled."""
        if self.is_cancelled:
            raise OperationCancelledError("Operation cancelled.")


# =============================================================================
# Sleeping
# =============================================================================


def sleep_with_jitter(
    seconds: float,
    jitter_factor: float = 0.1,
    cancel_token: CancellationToken | None = None,
) -> None:
    """
    Sleep for the given duration with random jitter.

    Adds random variation to sleep duration to prevent thundering herd
    problems when multiple clients retry simultaneously. When a cancel token
    is given, the sleep is interruptible.

    Args:
        seconds: Base sleep duration in seconds.
        jitter_factor: Maximum percentage variation (default: 10%).
            For example, 0.1 means sleep time varies by +/- 10%.
        cancel_token: Optional token that interrupts the sleep.

    Raises:
        OperationCancelledError: If the token is cancelled before or during the sleep.

    Example:
        >>> sleep_with_jitter(10.0)  # Sleeps between 9.0 and 11.0 seconds
        >>> sleep_with_jitter(10.0, jitter_factor=0.2)  # Sleeps between 8.0 and 12.0 seconds
    """
    jitter = random.uniform(-jitter_factor, jitter_factor) if jitter_factor > 0 else 0.0
    sleep_time = max(0.0, seconds * (1 + jitter))

    if cancel_token is None:
        time.sleep(sleep_time)
        return

    if cancel_token.wait(sleep_time):
        raise OperationCancelledError(f"Sleep of {sleep_time:.2f}s cancelled.")


# =============================================================================
# Misc
# =============================================================================


def utc_now_iso() -> str:
    """
    Return the current UTC time as an ISO-8601 string with second precision.

    Example:
        >>> utc_now_iso()
        '2024-05-01T10:00:00+00:00'
    """
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def is_timeout_exception(exc: Exception) -> bool:
    """
    Determine if an exception indicates a timeout condition.

    This is the single source of truth for identifying timeout exceptions,
    including exceptions wrapped in MaxRetriesExceededError.

    Supported timeout exceptions:
        - requests.Timeout: HTTP request timeout
        - TimeoutError: Python built-in
        - HTTP 408 and 504 responses
        - MaxRetriesExceededError: If last_exception is a timeout (recursive)
    """
    # Lazy imports to avoid circular dependencies
    import requests

    from eventpoll._retry import MaxRetriesExceededError

    if isinstance(exc, (requests.Timeout, TimeoutError)):
        return True

    if isinstance(exc, requests.HTTPError):
        response: requests.Response | None = getattr(exc, "response", None)
        if response is not None and response.status_code in (408, 504):
            return True

    if isinstance(exc, MaxRetriesExceededError):
        last_exc = exc.last_exception
        if last_exc is not None:
            return is_timeout_exception(last_exc)

    return False
