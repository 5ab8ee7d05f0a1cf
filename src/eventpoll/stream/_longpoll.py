"""
Long-poll endpoint discovery and change notification.

Protocol:
    1. Discovery: `OPTIONS {events_url}` returns candidate real-time servers
       (`type == "realtime_server"`), each with a URL, a `retry_timeout`
       (seconds the server holds a poll open) and a `max_retries` budget.
    2. Poll: `GET {endpoint.url}&stream_position=P` blocks until a change is
       available or `retry_timeout` elapses.
    3. Outcome: `{"message": "new_change"}` means new events; `"reconnect"`
       asks for a fresh endpoint; anything else is a plain timeout, which is
       a normal outcome and triggers an immediate re-poll.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import Any

from eventpoll._http import HttpRequest
from eventpoll._retry import MalformedResponseError, RetryingExecutor
from eventpoll._utils import CancellationToken
from eventpoll.stream._models import LongPollResult, PollEndpoint, StreamPosition

logger = logging.getLogger(__name__)

REALTIME_ENDPOINT_TYPES = ("realtime_server", "realtime")
NEW_CHANGE_MESSAGE = "new_change"
RECONNECT_MESSAGE = "reconnect"


class LongPollCoordinator:
    """
    Discovers a poll endpoint, performs the blocking long poll, and
    classifies the wake-up.

    Discovery and polls go through the `RetryingExecutor`, so connection
    failures get its backoff semantics and exhausting retries propagates
    `MaxRetriesExceededError`. The current endpoint is reused until it
    expires (`valid_until`), its poll budget (`max_retries`) is used up, or
    the server answers "reconnect".

    Args:
        executor: Executor used for discovery and polls.
        events_url: Events API URL (discovery target).
        clock: Monotonic clock, injectable for tests.
        chooser: Picks one candidate among those discovered (default: random.choice).
    """

    def __init__(
        self,
        executor: RetryingExecutor,
        events_url: str,
        clock: Callable[[], float] = time.monotonic,
        chooser: Callable[[list[dict[str, Any]]], dict[str, Any]] = random.choice,
    ) -> None:
        assert executor is not None, "executor cannot be None."
        assert events_url, "events_url cannot be empty."

        self.executor = executor
        self.events_url = events_url
        self._clock = clock
        self._chooser = chooser
        self._endpoint: PollEndpoint | None = None

    @property
    def endpoint(self) -> PollEndpoint | None:
        """The endpoint the next poll will use, if one is cached."""
        return self._endpoint

    def invalidate(self) -> None:
        """Drop the current endpoint, forcing re-discovery before the next poll."""
        self._endpoint = None

    def discover(self, cancel_token: CancellationToken | None = None) -> PollEndpoint:
        """
        Request candidate endpoints and select one.

        Raises:
            MalformedResponseError: If no usable real-time candidate is returned.
            MaxRetriesExceededError: If discovery keeps failing transiently.
            requests.HTTPError: On a permanent HTTP failure.
        """
        data = self.executor.execute_json(
            HttpRequest(method="OPTIONS", url=self.events_url, label="discovery"),
            cancel_token=cancel_token,
        )

        entries = data.get("entries")
        if not isinstance(entries, list):
            raise MalformedResponseError("Discovery response without an `entries` list.")

        candidates = [
            entry for entry in entries
            if isinstance(entry, dict) and entry.get("type") in REALTIME_ENDPOINT_TYPES and entry.get("url")
        ]
        if not candidates:
            raise MalformedResponseError("No valid long poll server specified in discovery response.")

        endpoint = self._build_endpoint(self._chooser(candidates))
        self._endpoint = endpoint
        logger.info(
            f"LongPollCoordinator | Discovered endpoint (retry_timeout={endpoint.retry_timeout}s, "
            f"max_retries={endpoint.max_retries}) among {len(candidates)} candidate(s)."
        )
        return endpoint

    def wait_for_change(
        self,
        position: StreamPosition,
        cancel_token: CancellationToken | None = None,
    ) -> LongPollResult:
        """
        Long-poll for a change after `position`.

        Re-discovers first when there is no endpoint or the current one is
        expired or exhausted.

        Returns:
            LongPollResult(changed=True) on a change notification,
            LongPollResult(changed=False) on a protocol timeout or reconnect.

        Raises:
            MaxRetriesExceededError: If discovery or the poll keeps failing transiently.
            OperationCancelledError: If the token fires while waiting.
        """
        endpoint = self._endpoint
        if endpoint is None or endpoint.is_expired(self._clock()):
            if endpoint is not None:
                logger.debug("LongPollCoordinator | Endpoint expired or exhausted. Re-discovering...")
            endpoint = self.discover(cancel_token=cancel_token)

        self._endpoint = endpoint.with_poll_recorded()

        data = self.executor.execute_json(
            HttpRequest(
                method="GET",
                url=endpoint.url,
                params={"stream_position": position},
                timeout=endpoint.retry_timeout + self.executor.policy.request_timeout,
                label="long-poll",
            ),
            cancel_token=cancel_token,
        )

        message = data.get("message")
        if message == NEW_CHANGE_MESSAGE:
            logger.debug(f"LongPollCoordinator | Change notification after position {position}")
            return LongPollResult(changed=True, message=message)

        if message == RECONNECT_MESSAGE:
            logger.debug("LongPollCoordinator | Server asked to reconnect. Dropping endpoint.")
            self.invalidate()
            return LongPollResult(changed=False, message=message)

        logger.debug(f"LongPollCoordinator | Poll timed out with no change (message={message!r}).")
        return LongPollResult(changed=False, message=message)

    def _build_endpoint(self, entry: dict[str, Any]) -> PollEndpoint:
        try:
            retry_timeout = float(entry.get("retry_timeout", 0))
            max_retries = int(entry.get("max_retries", 0))
            ttl = entry.get("ttl")
            lifetime = float(ttl) if ttl is not None else retry_timeout * (max_retries + 1)
        except (TypeError, ValueError) as e:
            raise MalformedResponseError(f"Invalid long poll server entry: {entry!r}") from e

        if retry_timeout <= 0:
            raise MalformedResponseError(f"Long poll server entry without a positive `retry_timeout`: {entry!r}")

        return PollEndpoint(
            url=str(entry["url"]),
            retry_timeout=retry_timeout,
            max_retries=max(max_retries, 0),
            valid_until=self._clock() + lifetime,
        )
