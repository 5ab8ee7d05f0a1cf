"""
Entry point for the events API.

The `Events` facade wires one `RetryingExecutor` from an `HttpClient` and an
`EventPollConfig`, and exposes the calls a consumer needs: the current
stream position, a raw page of events, the long-poll endpoint, and started
event streams.
"""

from __future__ import annotations

import logging
from typing import Any, Self

from eventpoll._config import EventPollConfig
from eventpoll._http import HttpClient, HttpRequest
from eventpoll._retry import RetryingExecutor, RetryPolicy
from eventpoll.stream import (
    NOW,
    EnterpriseEventStream,
    EventStream,
    LongPollCoordinator,
    PollEndpoint,
    StreamPosition,
    StreamPositionResolver,
)

logger = logging.getLogger(__name__)


class Events:
    """
    Client for the events API.

    Example:
        >>> events = Events(RequestsHttpClient(headers={"Authorization": "Bearer <token>"}))
        >>> position = events.get_current_stream_position()
        >>> with events.get_event_stream(stream_position=position) as stream:
        ...     for event in stream:
        ...         print(event.type)

    Args:
        http_client: Transport for every request (default: RequestsHttpClient).
        config: Configuration (default: `EventPollConfig.load()`, env vars applied).
        retry_policy: Retry policy; overrides the one built from `config.retry`.
        base_url: Base URL; overrides `config.stream.base_url`.
    """

    def __init__(
        self,
        http_client: HttpClient | None = None,
        *,
        config: EventPollConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        base_url: str | None = None,
    ):
        self.config = config or EventPollConfig.load()
        if base_url:
            self.config = self.config.with_section_overrides(stream={"base_url": base_url}).validate()

        policy = retry_policy or RetryPolicy.from_config(self.config.retry)
        self.executor = RetryingExecutor(http_client=http_client, policy=policy, name="Events")
        self.events_url = self.config.stream.events_url

    def get_current_stream_position(self) -> StreamPosition:
        """Return the server's current stream position."""
        return StreamPositionResolver(self.executor, self.events_url).resolve(NOW)

    def get_events(self, **params: Any) -> dict[str, Any]:
        """
        Fetch one page of events.

        Args:
            **params: Query parameters (e.g. `stream_position`, `stream_type`, `limit`).

        Returns:
            The raw response body (`entries`, `next_stream_position`, `chunk_size`).
        """
        return self.executor.execute_json(
            HttpRequest(method="GET", url=self.events_url, params=params, label="get-events")
        )

    def get_long_poll_info(self) -> PollEndpoint:
        """Discover a long-poll endpoint."""
        return LongPollCoordinator(self.executor, self.events_url).discover()

    def get_event_stream(self, stream_position: StreamPosition = NOW, **options: Any) -> EventStream:
        """
        Create and start a long-polling event stream.

        Options default to `config.stream` (`dedup_window_size`, `fetch_limit`,
        `max_buffered_events`); `listeners` is passed through.
        """
        stream_cfg = self.config.stream
        options.setdefault("dedup_window_size", stream_cfg.dedup_window_size)
        options.setdefault("fetch_limit", stream_cfg.fetch_limit)
        options.setdefault("max_buffered_events", stream_cfg.max_buffered_events)

        stream = EventStream(self.executor, self.events_url, stream_position, **options)
        return stream.start()

    def get_enterprise_event_stream(self, **options: Any) -> EnterpriseEventStream:
        """
        Create and start an enterprise (admin log) event stream.

        Options default to `config.enterprise` (`polling_interval`,
        `chunk_size`) and `config.stream.max_buffered_events`; see
        `EnterpriseEventStream` for the rest.
        """
        enterprise_cfg = self.config.enterprise
        options.setdefault("polling_interval", enterprise_cfg.polling_interval)
        options.setdefault("chunk_size", enterprise_cfg.chunk_size)
        options.setdefault("max_buffered_events", self.config.stream.max_buffered_events)

        stream = EnterpriseEventStream(self.executor, self.events_url, **options)
        return stream.start()

    def close(self) -> None:
        """Release the underlying HTTP client."""
        self.executor.http_client.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
