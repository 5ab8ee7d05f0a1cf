"""
Data models for event streams.

This module contains the data classes used to represent events, fetch pages,
long-poll endpoints and stream lifecycle states.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from eventpoll._retry import MalformedResponseError

StreamPosition = str | int
"""Opaque ordering token of the event log. Compared for equality only, never parsed."""

NOW: str = "now"
"""Sentinel position meaning "start after whatever is current at resolve-time"."""


class StreamState(StrEnum):
    """
    Lifecycle state of an event stream.

    Attributes:
        INIT: Created, not started yet.
        POLLING: The polling loop is running.
        PAUSED: The loop is idle; no network activity until resumed.
        DESTROYED: Terminal. Reached via destroy() or a fatal error.
    """

    INIT = "INIT"
    POLLING = "POLLING"
    PAUSED = "PAUSED"
    DESTROYED = "DESTROYED"


@dataclass(frozen=True)
class Event:
    """
    A single event from the events API.

    Attributes:
        id: Event id, the deduplication key.
        type: Event type (e.g. "ITEM_UPLOAD").
        source: The item or user the event refers to, as returned by the API.
        created_at: Creation timestamp as returned by the API.
        stream_position: Position of the page this event was fetched at.
        raw_data: The full event object as returned by the API.
    """

    id: str
    type: str | None = None
    source: dict[str, Any] | None = None
    created_at: str | None = None
    stream_position: StreamPosition | None = None
    raw_data: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any], stream_position: StreamPosition | None = None) -> Event:
        """
        Build an event from its API representation.

        Raises:
            MalformedResponseError: If the entry is not an object or has no event_id.
        """
        if not isinstance(data, dict):
            raise MalformedResponseError(f"Event entry must be an object, got {type(data).__name__}.")

        event_id = data.get("event_id")
        if event_id is None or event_id == "":
            raise MalformedResponseError(f"Event entry without `event_id`: {data!r}")

        return cls(
            id=str(event_id),
            type=data.get("event_type"),
            source=data.get("source"),
            created_at=data.get("created_at"),
            stream_position=stream_position,
            raw_data=data,
        )


@dataclass(frozen=True)
class EventPage:
    """
    One page of events as returned by a fetch call.

    Attributes:
        entries: Raw event objects, in server order.
        next_stream_position: Position to continue from.
        chunk_size: Number of entries the server reports in this page.
    """

    entries: list[dict[str, Any]]
    next_stream_position: StreamPosition
    chunk_size: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventPage:
        """
        Parse a fetch response body.

        Raises:
            MalformedResponseError: If `entries` or `next_stream_position` is missing.
        """
        entries = data.get("entries")
        if not isinstance(entries, list):
            raise MalformedResponseError("Events response without an `entries` list.")

        next_position = data.get("next_stream_position")
        if next_position is None or next_position == "":
            raise MalformedResponseError("Events response without `next_stream_position`.")

        chunk_size = data.get("chunk_size")
        return cls(
            entries=entries,
            next_stream_position=next_position,
            chunk_size=int(chunk_size) if chunk_size is not None else len(entries),
        )


@dataclass(frozen=True)
class PollEndpoint:
    """
    A server-issued, short-lived long-poll address.

    Attributes:
        url: URL to long-poll against (may carry its own query string).
        retry_timeout: Seconds the server holds a poll open without a change.
        max_retries: Number of polls allowed against this endpoint before
            re-discovery.
        valid_until: Monotonic-clock deadline after which the endpoint is expired.
        polls_made: Polls already issued against this endpoint.
    """

    url: str
    retry_timeout: float
    max_retries: int
    valid_until: float
    polls_made: int = 0

    def is_expired(self, now: float) -> bool:
        """True once the deadline passed or the poll budget is used up."""
        return now >= self.valid_until or self.polls_made > self.max_retries

    def with_poll_recorded(self) -> PollEndpoint:
        return PollEndpoint(
            url=self.url,
            retry_timeout=self.retry_timeout,
            max_retries=self.max_retries,
            valid_until=self.valid_until,
            polls_made=self.polls_made + 1,
        )


@dataclass(frozen=True)
class LongPollResult:
    """
    Outcome of one long-poll wait.

    Attributes:
        changed: True when the server announced new events.
        message: Raw `message` field of the poll response, if any.
    """

    changed: bool
    message: str | None = None


@dataclass(frozen=True)
class EnterpriseStreamState:
    """
    Resumable state of an `EnterpriseEventStream`.

    Both the position and the date window are kept, since the position is
    unknown until the first page of events has been fetched.

    Attributes:
        stream_position: Last stored position, or None before the first page.
        start_date: Lower bound (`created_after`), ISO-8601.
        end_date: Upper bound (`created_before`), ISO-8601.
        event_type_filter: Event types to return, or None for all.
    """

    stream_position: StreamPosition | None = None
    start_date: str | None = None
    end_date: str | None = None
    event_type_filter: tuple[str, ...] | None = None
