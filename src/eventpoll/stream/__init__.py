"""
Event streams for the events API.

This module provides consumer-facing event streams with built-in support for:

- Long-poll change notifications with endpoint discovery and rotation
- Paged fetches following `next_stream_position`
- Event-id deduplication over a bounded window
- Pause/resume/destroy lifecycle with cancellation of in-flight work
- Interval-polled enterprise (admin log) streams with resumable state

Example:
    >>> from eventpoll.stream import EventStream
    >>> with EventStream(executor, "https://api.box.com/2.0/events") as stream:
    ...     for event in stream:
    ...         print(event.id, event.type)

For enterprise events:
    >>> from eventpoll.stream import EnterpriseEventStream
    >>> stream = EnterpriseEventStream(executor, events_url, polling_interval=0).start()
    >>> for event in stream:
    ...     print(event.type)
"""

from eventpoll.stream._dedup import DEFAULT_DEDUP_WINDOW_SIZE, DedupWindow
from eventpoll.stream._enterprise import (
    ADMIN_LOGS,
    ADMIN_LOGS_STREAMING,
    EnterpriseEventStream,
)
from eventpoll.stream._event_listeners import (
    # Event listener interface
    EventStreamListener,
    # Event listener implementations
    LoggingListener,
    StreamStateRecorder,
)
from eventpoll.stream._longpoll import LongPollCoordinator
from eventpoll.stream._models import (
    NOW,
    # Data models
    EnterpriseStreamState,
    Event,
    EventPage,
    LongPollResult,
    PollEndpoint,
    StreamPosition,
    StreamState,
)
from eventpoll.stream._position import StreamPositionResolver
from eventpoll.stream._stream import (
    BaseEventStream,
    # Errors
    EventStreamStateError,
    # Streams
    EventStream,
)

__all__ = [
    # Data models
    "NOW",
    "StreamPosition",
    "StreamState",
    "Event",
    "EventPage",
    "PollEndpoint",
    "LongPollResult",
    "EnterpriseStreamState",
    # Components
    "DedupWindow",
    "DEFAULT_DEDUP_WINDOW_SIZE",
    "StreamPositionResolver",
    "LongPollCoordinator",
    # Streams
    "BaseEventStream",
    "EventStream",
    "EnterpriseEventStream",
    "ADMIN_LOGS",
    "ADMIN_LOGS_STREAMING",
    # Event listeners
    "EventStreamListener",
    "LoggingListener",
    "StreamStateRecorder",
    # Errors
    "EventStreamStateError",
]
