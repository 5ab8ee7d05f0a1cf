"""
Interval-polled stream of enterprise (admin log) events.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, override

from eventpoll._http import HttpRequest
from eventpoll._retry import MalformedResponseError, RetryingExecutor
from eventpoll._utils import CancellationToken, utc_now_iso
from eventpoll.stream._event_listeners import EventStreamListener
from eventpoll.stream._models import EnterpriseStreamState, Event, StreamPosition
from eventpoll.stream._stream import DEFAULT_MAX_BUFFERED_EVENTS, BaseEventStream

logger = logging.getLogger(__name__)

ADMIN_LOGS = "admin_logs"
ADMIN_LOGS_STREAMING = "admin_logs_streaming"

DEFAULT_POLLING_INTERVAL = 60.0
DEFAULT_CHUNK_SIZE = 500
MAX_CHUNK_SIZE = 500


class EnterpriseEventStream(BaseEventStream):
    """
    Stream of enterprise events, polled at a fixed interval.

    Unlike `EventStream`, there is no long-poll notification: the stream
    fetches a chunk of admin-log events, queues it, and fetches again right
    away. When a fetch returns no events, the position is left untouched and
    the next fetch happens after `polling_interval` seconds (listeners get
    `on_wait(delay)`). With `polling_interval=0` the stream ends instead,
    once every available event has been consumed.

    The API reports `next_stream_position = 0` on empty pages; since empty
    pages never move the position, the stream does not start over.

    Each chunk is fetched once. If the stream is paused while a chunk is
    still being queued, the rest of it is queued after `resume()`, before
    the next fetch.

    State can be exported with `get_stream_state()` (e.g. from an
    `on_position_advanced` listener) and restored with `set_stream_state()`
    before `start()`.

    Example:
        >>> stream = EnterpriseEventStream(
        ...     executor, "https://api.box.com/2.0/events",
        ...     start_date="2024-01-01T00:00:00-00:00",
        ...     event_type_filter=["UPLOAD", "DOWNLOAD"],
        ...     polling_interval=0,
        ... )
        >>> with stream:
        ...     events = list(stream)

    Args:
        executor: Executor used for every fetch.
        events_url: Events API URL.
        stream_position: Position to resume from (None before the first page).
        start_date: Lower bound for event creation time, ISO-8601. Defaults to
            the current time when neither this nor `stream_position` is given.
        end_date: Upper bound for event creation time, ISO-8601.
        event_type_filter: Event types to return (None for all).
        polling_interval: Seconds between fetches when caught up (0 ends the stream).
        chunk_size: Events per fetch (1..500).
        stream_type: "admin_logs" (default) or "admin_logs_streaming"; the
            latter ignores the date window.
        max_buffered_events: Maximum undelivered events before the loop waits.
        listeners: Lifecycle observers.
    """

    def __init__(
        self,
        executor: RetryingExecutor,
        events_url: str,
        *,
        stream_position: StreamPosition | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
        event_type_filter: list[str] | tuple[str, ...] | None = None,
        polling_interval: float = DEFAULT_POLLING_INTERVAL,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        stream_type: str = ADMIN_LOGS,
        max_buffered_events: int = DEFAULT_MAX_BUFFERED_EVENTS,
        listeners: list[EventStreamListener] | None = None,
    ):
        super().__init__(max_buffered_events=max_buffered_events, listeners=listeners)

        assert executor is not None, "executor cannot be None."
        assert events_url, "events_url cannot be empty."
        assert polling_interval >= 0, "polling_interval must be >= 0."
        assert 0 < chunk_size <= MAX_CHUNK_SIZE, f"chunk_size must be between 1 and {MAX_CHUNK_SIZE}."
        assert stream_type in (ADMIN_LOGS, ADMIN_LOGS_STREAMING), f"Unsupported stream_type: {stream_type}"

        self.executor = executor
        self.events_url = events_url
        self.polling_interval = polling_interval
        self.chunk_size = chunk_size
        self.stream_type = stream_type

        # Position 0 is a valid explicit start
        if start_date is None and stream_position is None:
            start_date = utc_now_iso()

        self._position = stream_position
        self._start_date = start_date
        self._end_date = end_date
        self._event_type_filter = tuple(event_type_filter) if event_type_filter else None

        # Fetched chunk not fully queued yet, and the position that follows it
        self._backlog: deque[Event] = deque()
        self._backlog_position: StreamPosition | None = None

    # ==================
    # Stream state
    # ==================

    def get_stream_state(self) -> EnterpriseStreamState:
        """Snapshot of the position and filters, enough to resume later."""
        with self._cond:
            return EnterpriseStreamState(
                stream_position=self._position,
                start_date=self._start_date,
                end_date=self._end_date,
                event_type_filter=self._event_type_filter,
            )

    def set_stream_state(self, state: EnterpriseStreamState) -> None:
        """
        Restore a state exported by `get_stream_state()`.

        Call it before `start()` or while paused. Events of a fetched chunk
        that were not queued yet are dropped.
        """
        assert state is not None, "state cannot be None."
        with self._cond:
            self._position = state.stream_position
            self._start_date = state.start_date
            self._end_date = state.end_date
            self._event_type_filter = tuple(state.event_type_filter) if state.event_type_filter else None
            self._backlog.clear()
            self._backlog_position = None

    # ==================
    # Polling
    # ==================

    @override
    def _poll_once(self, cancel_token: CancellationToken) -> bool:
        if self._backlog_position is None:
            entries, next_position = self._fetch_chunk(cancel_token)

            if not entries:
                if not self.polling_interval:
                    return False
                logger.debug(f"{self.name} | No new events. Next fetch in {self.polling_interval}s.")
                self._wait(self.polling_interval, cancel_token)
                return True

            if next_position is None:
                raise MalformedResponseError("Events response with entries but without `next_stream_position`.")

            self._backlog.extend(Event.from_dict(entry, stream_position=next_position) for entry in entries)
            self._backlog_position = next_position
        else:
            logger.debug(f"{self.name} | Resuming delivery of {len(self._backlog)} fetched event(s).")

        # A pause leaves the rest of the chunk in the backlog for the next round
        self._deliver(self._backlog, cancel_token)
        self._advance_position(self._backlog_position, cancel_token)
        self._backlog_position = None
        return True

    def _fetch_chunk(self, cancel_token: CancellationToken) -> tuple[list[dict[str, Any]], StreamPosition | None]:
        data = self.executor.execute_json(
            HttpRequest(
                method="GET",
                url=self.events_url,
                params=self._build_params(),
                label="enterprise-events",
            ),
            cancel_token=cancel_token,
        )

        entries = data.get("entries") or []
        if not isinstance(entries, list):
            raise MalformedResponseError("Events response with a non-list `entries` field.")
        return entries, data.get("next_stream_position")

    def _build_params(self) -> dict[str, Any]:
        state = self.get_stream_state()
        params: dict[str, Any] = {"stream_type": self.stream_type}

        if state.stream_position is not None and state.stream_position != "":
            params["stream_position"] = state.stream_position

        if self.stream_type == ADMIN_LOGS:
            if state.start_date:
                params["created_after"] = state.start_date
            if state.end_date:
                params["created_before"] = state.end_date

        if state.event_type_filter:
            params["event_type"] = ",".join(state.event_type_filter)

        params["limit"] = self.chunk_size
        return params
