"""
Retry utilities with exponential backoff.

Inspired by Tenacity's Retrying class, this module provides a context manager
for implementing retry logic with configurable backoff and exception handling,
plus `RetryingExecutor`, which runs one logical HTTP request through it.

Example:
    >>> from eventpoll._retry import Retrying, RetryPolicy
    >>> for attempt in Retrying(policy=RetryPolicy(max_retries=3, base_interval_ms=500)):
    ...     with attempt:
    ...         response = http_client.send(request, timeout=30)
    ...         response.raise_for_status()
    ...         return response.json()

    >>> executor = RetryingExecutor(http_client=RequestsHttpClient(), policy=RetryPolicy())
    >>> data = executor.execute_json(HttpRequest(method="GET", url=url))
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Generator
from concurrent.futures import Future
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Self

import requests

from eventpoll._http import HttpClient, HttpRequest
from eventpoll._utils import CancellationToken, OperationCancelledError, sleep_with_jitter

if TYPE_CHECKING:
    from eventpoll._config import RetryConfig

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class RetryableError(Exception):
    """
    Base class for exceptions that should trigger automatic retry.

    Exceptions extending this class are automatically retried by the Retrying
    context manager without needing explicit configuration in retry_on_exceptions.

    Example:
        >>> class MyTransientError(RetryableError):
        ...     '''Custom retryable error for my service.'''
        ...     pass
    """

    pass


class MaxRetriesExceededError(Exception):
    """
    Raised when all retry attempts are exhausted.

    This exception wraps the last exception that occurred during retry attempts,
    providing access to the original error for debugging.

    Attributes:
        message: Human-readable error message.
        last_exception: The original exception from the last retry attempt.

    Example:
        >>> try:
        ...     executor.execute(request)
        ... except MaxRetriesExceededError as e:
        ...     print(f"Failed after retries: {e}")
        ...     print(f"Original error: {e.last_exception}")
    """

    def __init__(self, message: str, last_exception: Exception | None = None):
        super().__init__(message)
        self.last_exception = last_exception


class MalformedResponseError(Exception):
    """
    Raised when a response body cannot be parsed or lacks a required field.

    This is a permanent failure: it is never retried.

    Attributes:
        response: The offending HTTP response, when available.
    """

    def __init__(self, message: str, response: requests.Response | None = None):
        super().__init__(message)
        self.response = response


# =============================================================================
# Policy
# =============================================================================


class RateLimitHintPolicy(StrEnum):
    """
    How a server-supplied `Retry-After` hint on HTTP 429 affects the retry loop.

    Attributes:
        OVERRIDE_WAIT: The hint replaces the computed backoff for that attempt
            only. The attempt still counts against `max_retries` and the next
            backoff keeps growing from where it was.
        RESET_ATTEMPTS: The hint replaces the computed backoff and resets the
            backoff exponent, so the next non-hinted wait starts again from
            `base_interval_ms`. The attempt still counts against `max_retries`.
    """

    OVERRIDE_WAIT = "override_wait"
    RESET_ATTEMPTS = "reset_attempts"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Immutable retry policy for a `RetryingExecutor`.

    Attributes:
        max_retries: Maximum number of attempts for one logical request
            (including the first one). Must be >= 1.
        base_interval_ms: Wait before the first retry, in milliseconds.
        backoff_multiplier: Growth factor of the wait between attempts.
            Wait after failed attempt n (0-based) = base_interval_ms * multiplier ** n.
        request_timeout_ms: Per-attempt transport timeout, in milliseconds.
        jitter_factor: Random variation applied to each wait (0.1 = +/- 10%).
        max_retry_after_s: Largest `Retry-After` hint honored, in seconds.
            Larger hints are ignored in favor of exponential backoff.
        rate_limit_hint: See `RateLimitHintPolicy`.

    Example:
        >>> policy = RetryPolicy(max_retries=3, base_interval_ms=500)
        >>> policy.backoff_seconds(2)
        2.0
    """

    max_retries: int = 5
    base_interval_ms: int = 2000
    backoff_multiplier: float = 2.0
    request_timeout_ms: int = 60000
    jitter_factor: float = 0.1
    max_retry_after_s: float = 60.0
    rate_limit_hint: RateLimitHintPolicy = RateLimitHintPolicy.OVERRIDE_WAIT

    def __post_init__(self) -> None:
        assert self.max_retries >= 1, f"max_retries must be >= 1, got {self.max_retries}"
        assert self.base_interval_ms >= 0, f"base_interval_ms must be >= 0, got {self.base_interval_ms}"
        assert self.backoff_multiplier >= 1, f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}"
        assert self.request_timeout_ms > 0, f"request_timeout_ms must be > 0, got {self.request_timeout_ms}"
        assert 0 <= self.jitter_factor < 1, f"jitter_factor must be in [0, 1), got {self.jitter_factor}"

    @property
    def request_timeout(self) -> float:
        """Per-attempt timeout in seconds."""
        return self.request_timeout_ms / 1000.0

    def backoff_seconds(self, exponent: int) -> float:
        """Un-jittered wait in seconds after the failed attempt `exponent`."""
        return (self.base_interval_ms / 1000.0) * (self.backoff_multiplier ** exponent)

    @classmethod
    def from_config(cls, config: RetryConfig) -> Self:
        """
        Build a policy from a `RetryConfig` section.

        Example:
            >>> cfg = EventPollConfig.load()
            >>> policy = RetryPolicy.from_config(cfg.retry)
        """
        return cls(
            max_retries=config.max_retries,
            base_interval_ms=config.base_interval_ms,
            backoff_multiplier=config.backoff_multiplier,
            request_timeout_ms=config.request_timeout_ms,
            jitter_factor=config.jitter_factor,
            max_retry_after_s=config.max_retry_after_s,
            rate_limit_hint=RateLimitHintPolicy(config.rate_limit_hint),
        )


def is_transient_status(status_code: int) -> bool:
    """
    Return True if an HTTP status code denotes a transient failure.

    5xx responses are transient except 507 (insufficient storage), which is
    permanent. 408 (request timeout) and 429 (rate limited) are transient.
    """
    if status_code == 507:
        return False
    return 500 <= status_code <= 599 or status_code in (408, 429)


# =============================================================================
# Retrying
# =============================================================================


@dataclass(frozen=True)
class RetryAttempt:
    """
    Represents a single retry attempt.

    Attributes:
        attempt_number: Zero-based index of the current attempt (0 = first attempt).
        max_attempts: Maximum number of attempts configured.

    Example:
        >>> for attempt_ctx in Retrying(policy=RetryPolicy(max_retries=3)):
        ...     with attempt_ctx as attempt:
        ...         print(f"Attempt {attempt.attempt_number + 1}/{attempt.max_attempts}")
    """

    attempt_number: int
    max_attempts: int

    @property
    def is_last_attempt(self) -> bool:
        """Return True if this is the last attempt."""
        return self.attempt_number >= self.max_attempts - 1


class Retrying:
    """
    Context manager for retry with exponential backoff.

    Usage:
        >>> for attempt in Retrying(policy=RetryPolicy(max_retries=3)):
        ...     with attempt:
        ...         response = http_client.send(request, timeout=30)
        ...         response.raise_for_status()
        ...         return response

    Args:
        policy: The retry policy (attempts, backoff, Retry-After handling).
        retry_on_exceptions: Exception types that trigger retry (default: Timeout, ConnectionError).
        skip_retry_on_exceptions: Exception types that never trigger retry.
            Takes precedence over retry_on_exceptions.
        cancel_token: Optional token that interrupts backoff waits.
        logger_prefix: Prefix for log messages (e.g., "EventStream | discovery").

    Raises:
        MaxRetriesExceededError: When all attempts are exhausted.
            Contains the last exception in the `last_exception` attribute.
        OperationCancelledError: When the token is cancelled during a backoff wait.

    Note:
        - Exceptions extending RetryableError are automatically retried
        - `requests.HTTPError` is retried only for transient statuses (see `is_transient_status`)
        - HTTP 429 responses respect the Retry-After header when calculating wait time
        - OperationCancelledError is never retried
        - Exceptions not matching retry conditions are re-raised immediately
    """

    def __init__(
        self,
        policy: RetryPolicy,
        retry_on_exceptions: tuple[type[Exception], ...] = (
            requests.Timeout,
            requests.ConnectionError,
        ),
        skip_retry_on_exceptions: tuple[type[Exception], ...] = (),
        cancel_token: CancellationToken | None = None,
        logger_prefix: str = "",
    ):
        assert policy is not None, "policy cannot be None"
        assert retry_on_exceptions is not None, "retry_on_exceptions cannot be None"
        assert skip_retry_on_exceptions is not None, "skip_retry_on_exceptions cannot be None"

        self.policy = policy
        self.retry_on_exceptions = retry_on_exceptions
        self.skip_retry_on_exceptions = skip_retry_on_exceptions
        self.cancel_token = cancel_token
        self.logger_prefix = logger_prefix

        self._current_attempt = 0
        self._backoff_exponent = 0
        self._last_exception: Exception | None = None

    @property
    def max_attempts(self) -> int:
        return self.policy.max_retries

    def __iter__(self) -> Generator[_RetryContext, None, None]:
        """Yield retry contexts for each attempt."""
        for attempt in range(self.max_attempts):
            if self.cancel_token is not None:
                self.cancel_token.raise_if_cancelled()
            self._current_attempt = attempt
            yield _RetryContext(self, attempt)

    def _should_retry(self, exception: Exception) -> bool:
        """
        Determine if exception should trigger a retry.

        Logic:
            1. Never retry cancellations or exceptions in skip_retry_on_exceptions
            2. For RequestException with response: retry if the status is transient
            3. Auto-retry if exception extends RetryableError (opt-in via inheritance)
            4. Retry on configured exception types (Timeout, ConnectionError, etc.)
        """
        if isinstance(exception, OperationCancelledError):
            return False

        if isinstance(exception, self.skip_retry_on_exceptions):
            return False

        if isinstance(exception, requests.RequestException):
            response = getattr(exception, "response", None)
            if response is not None:
                return is_transient_status(response.status_code)

        if isinstance(exception, RetryableError):
            return True

        return isinstance(exception, self.retry_on_exceptions)

    def _handle_retry(self, exception: Exception) -> None:
        """
        Handle retry: log, wait (interruptibly), prepare for next attempt.

        Raises:
            OperationCancelledError: If the cancel token fires during the wait.
        """
        self._last_exception = exception
        sleep_time = self._calculate_wait_time(exception)

        prefix = f"{self.logger_prefix} | " if self.logger_prefix else ""
        logger.warning(
            f"{prefix}⚠️ Attempt {self._current_attempt + 1}/{self.max_attempts} failed: {exception}"
        )
        logger.warning(f"{prefix}Retrying in {sleep_time:.1f}s...")
        sleep_with_jitter(
            sleep_time,
            jitter_factor=self.policy.jitter_factor,
            cancel_token=self.cancel_token,
        )

    def _calculate_wait_time(self, exception: Exception) -> float:
        """
        Calculate wait time, honoring Retry-After on HTTP 429.

        A valid Retry-After hint replaces the exponential backoff. Under
        RateLimitHintPolicy.RESET_ATTEMPTS it also resets the backoff exponent.

        Returns:
            The wait time in seconds before the next attempt.
        """
        retry_after = self._retry_after_hint(exception)
        if retry_after is not None:
            if self.policy.rate_limit_hint == RateLimitHintPolicy.RESET_ATTEMPTS:
                self._backoff_exponent = 0
            else:
                self._backoff_exponent += 1
            return retry_after

        wait = self.policy.backoff_seconds(self._backoff_exponent)
        self._backoff_exponent += 1
        return wait

    def _retry_after_hint(self, exception: Exception) -> float | None:
        """Return the Retry-After hint of a 429 failure, if any."""
        if not isinstance(exception, requests.RequestException):
            return None
        response: requests.Response | None = getattr(exception, "response", None)
        if response is None or response.status_code != 429:
            return None
        return self._parse_retry_after(response)

    def _parse_retry_after(self, response: requests.Response) -> float | None:
        """
        Parse Retry-After header from response.

        Supports numeric seconds format. HTTP-date format is not supported.
        Values exceeding `policy.max_retry_after_s` are ignored to protect
        against abusive or buggy servers.
        """
        header = response.headers.get("Retry-After")
        if not header:
            return None

        try:
            seconds = float(header)
        except (TypeError, ValueError):
            # Retry-After value might be an HTTP-date string, which we don't support
            return None

        if seconds < 0:
            return None
        if seconds > self.policy.max_retry_after_s:
            prefix = f"{self.logger_prefix} | " if self.logger_prefix else ""
            logger.warning(
                f"{prefix}Retry-After header ({seconds}s) exceeds max_retry_after_s "
                f"({self.policy.max_retry_after_s}s). Using exponential backoff instead."
            )
            return None
        return seconds

    def _handle_exhausted(self, exception: Exception) -> None:
        """
        Handle when all attempts are exhausted.

        Raises:
            MaxRetriesExceededError: Always raised with the last exception.
        """
        self._last_exception = exception
        prefix = f"{self.logger_prefix} | " if self.logger_prefix else ""
        logger.error(
            f"{prefix}❌ Max retries ({self.max_attempts}) exceeded. Last error: {exception}"
        )
        raise MaxRetriesExceededError(
            message=f"Max retries exceeded. Last error: {exception}",
            last_exception=exception,
        ) from exception


class _RetryContext:
    """
    Context for a single retry attempt (internal).

    On success (no exception): exits normally, caller returns/breaks
    On retryable exception: waits, suppresses exception, loop continues
    On non-retryable exception: re-raises exception, loop exits
    On exhausted retries: raises MaxRetriesExceededError
    """

    def __init__(self, retrying: Retrying, attempt: int):
        self._retrying = retrying
        self.attempt = attempt

    def __enter__(self) -> RetryAttempt:
        return RetryAttempt(
            attempt_number=self.attempt,
            max_attempts=self._retrying.max_attempts,
        )

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> bool:
        if exc_val is None:
            return False

        # Only handle Exception, not BaseException (KeyboardInterrupt, etc.)
        if not isinstance(exc_val, Exception):
            return False

        if not self._retrying._should_retry(exc_val):
            return False

        if self.attempt >= self._retrying.max_attempts - 1:
            self._retrying._handle_exhausted(exc_val)
            return False  # Never reached

        self._retrying._handle_retry(exc_val)
        return True


# =============================================================================
# Executor
# =============================================================================


class RetryingExecutor:
    """
    Issues one logical HTTP request, retrying transient failures.

    Transient failures (connection errors, timeouts, 5xx except 507, 408 and
    429) are retried with exponential backoff per `RetryPolicy`. Any other
    HTTP error status is raised immediately as `requests.HTTPError`. The
    executor holds no state across calls besides its immutable policy.

    When a `CancellationToken` is passed to `execute()`, both the backoff
    waits and the in-flight HTTP call are interruptible. The call runs on a
    helper thread; when the token fires, the executor asks the transport to
    `abort()` the call and returns only once the call has ended, or after the
    call's own timeout. A response arriving after that is closed and discarded.

    Example:
        >>> executor = RetryingExecutor(
        ...     http_client=RequestsHttpClient(headers={"Authorization": "Bearer x"}),
        ...     policy=RetryPolicy(max_retries=5, base_interval_ms=2000),
        ... )
        >>> data = executor.execute_json(HttpRequest(method="GET", url=url, label="events"))

    Args:
        http_client: Transport used for every attempt (default: RequestsHttpClient).
        policy: Retry policy (default: RetryPolicy()).
        name: Component name used as log prefix.
    """

    def __init__(
        self,
        http_client: HttpClient | None = None,
        policy: RetryPolicy | None = None,
        name: str = "RetryingExecutor",
    ):
        if http_client is None:
            from eventpoll._http import RequestsHttpClient
            http_client = RequestsHttpClient()

        assert isinstance(http_client, HttpClient), "http_client must be an HttpClient instance"

        self.http_client = http_client
        self.policy = policy or RetryPolicy()
        self.name = name

    def execute(
        self,
        request: HttpRequest,
        cancel_token: CancellationToken | None = None,
    ) -> requests.Response:
        """
        Execute a request, retrying transient failures.

        Args:
            request: The request to execute.
            cancel_token: Optional token interrupting waits and the in-flight call.

        Returns:
            The successful (2xx/3xx) response.

        Raises:
            MaxRetriesExceededError: All attempts failed transiently.
            requests.HTTPError: Permanent HTTP failure (4xx other than 408/429, 507).
            OperationCancelledError: The token was cancelled.
        """
        assert request is not None, "Request cannot be None."

        timeout = request.timeout or self.policy.request_timeout
        prefix = f"{self.name} | {request.display_name}"

        for attempt in Retrying(
            policy=self.policy,
            cancel_token=cancel_token,
            logger_prefix=prefix,
        ):
            with attempt:
                response = self._send(request, timeout, cancel_token)
                response.raise_for_status()
                return response

        # It should never happen
        raise RuntimeError(
            "Unexpected error while executing request: "
            "reached end of `execute` method without returning a response."
        )

    def execute_json(
        self,
        request: HttpRequest,
        cancel_token: CancellationToken | None = None,
    ) -> dict[str, Any]:
        """
        Execute a request and parse its JSON body.

        An empty body is returned as an empty dict.

        Raises:
            MalformedResponseError: If the body is not a JSON object.
            (plus everything `execute()` raises)
        """
        response = self.execute(request, cancel_token=cancel_token)
        if not response.content:
            return {}

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{request.display_name}: response body is not valid JSON: {e}",
                response=response,
            ) from e

        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"{request.display_name}: expected a JSON object, got {type(data).__name__}.",
                response=response,
            )
        return data

    def _send(
        self,
        request: HttpRequest,
        timeout: float,
        cancel_token: CancellationToken | None,
    ) -> requests.Response:
        """Send one attempt, interruptibly when a cancel token is given."""
        if cancel_token is None:
            return self.http_client.send(request, timeout)

        cancel_token.raise_if_cancelled()

        future: Future[requests.Response] = Future()

        def _run() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self.http_client.send(request, timeout))
            except Exception as e:
                future.set_exception(e)

        call_done = threading.Event()
        finished = threading.Event()
        future.add_done_callback(lambda _: call_done.set())
        future.add_done_callback(lambda _: finished.set())
        unregister = cancel_token.add_callback(finished.set)

        threading.Thread(
            target=_run,
            name=f"{self.name}-{request.label or request.method}",
            daemon=True,
        ).start()

        try:
            finished.wait()
        finally:
            unregister()

        if call_done.is_set():
            return future.result()

        # Cancelled while the call is in flight: the caller only returns once
        # the call is off the wire (or its own timeout has elapsed)
        logger.debug(f"{self.name} | {request.display_name} | Aborting in-flight call.")
        self.http_client.abort(request)
        if not call_done.wait(timeout):
            logger.warning(
                f"{self.name} | {request.display_name} | ⚠️ Cancelled call still running "
                f"after {timeout}s; its response will be discarded."
            )
        future.add_done_callback(_close_late_response)
        raise OperationCancelledError(f"{request.display_name}: in-flight call cancelled.")


def _close_late_response(future: Future[requests.Response]) -> None:
    """Close a response that arrived after its call was cancelled."""
    if future.exception() is None:
        future.result().close()
