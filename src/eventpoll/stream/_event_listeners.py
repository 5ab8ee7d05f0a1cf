"""
Event listeners for event streams.

This module contains the EventStreamListener base class and concrete
implementations for observing the stream lifecycle.

Available Listeners:
    - EventStreamListener: Base class for all stream listeners.
    - LoggingListener: Logs lifecycle events through the standard logging module.
    - StreamStateRecorder: Keeps the latest position so callers can persist it.

Example:
    >>> from eventpoll.stream import EventStream, LoggingListener
    >>> stream = EventStream(executor, events_url, listeners=[LoggingListener()])
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, override

from eventpoll.stream._models import Event, StreamPosition, StreamState

if TYPE_CHECKING:
    from eventpoll.stream._stream import BaseEventStream


class EventStreamListener:
    """
    Base class for observing event stream lifecycle events.

    Listeners are read-only observers: they can react to events, log, notify,
    or persist the stream position, but should NOT drive the stream (calling
    `pause()` or `destroy()` from a hook is not supported).

    Hooks are invoked on the stream's polling thread (or the caller's thread
    for transitions the caller triggers) while the stream's internal lock is
    held, so they must return quickly. Exceptions raised by a hook are logged
    and ignored.

    All methods have default empty implementations, so subclasses only need to
    override the methods they care about.

    Example:
        >>> class PositionSaver(EventStreamListener):
        ...     def on_position_advanced(self, stream, position):
        ...         db.save("events.position", position)
    """

    def on_state_change(
        self,
        stream: BaseEventStream,
        old_state: StreamState,
        new_state: StreamState,
    ) -> None:
        """
        Called on every lifecycle transition.

        - INIT → POLLING: start()
        - POLLING → PAUSED: pause()
        - PAUSED → POLLING: resume()
        - Any → DESTROYED: destroy() or a terminal error

        Args:
            stream: The stream that changed state.
            old_state: The previous state.
            new_state: The new state.
        """
        pass

    def on_events(self, stream: BaseEventStream, events: list[Event]) -> None:
        """
        Called when new (deduplicated) events are queued for the consumer.

        Args:
            stream: The emitting stream.
            events: The events queued from one page, in server order.
        """
        pass

    def on_position_advanced(self, stream: BaseEventStream, position: StreamPosition) -> None:
        """
        Called after the stream moved to a new position.

        Args:
            stream: The stream whose position changed.
            position: The new position.
        """
        pass

    def on_wait(self, stream: BaseEventStream, delay: float) -> None:
        """
        Called when the stream is about to idle before its next fetch.

        Args:
            stream: The waiting stream.
            delay: Seconds until the next fetch.
        """
        pass

    def on_error(self, stream: BaseEventStream, error: Exception) -> None:
        """
        Called when the stream stops because of a terminal error.

        The stream is DESTROYED right after this call.

        Args:
            stream: The failing stream.
            error: The exception that stopped the stream.
        """
        pass


class LoggingListener(EventStreamListener):
    """
    Listener that reports the stream lifecycle to a logger.

    Example:
        >>> stream = EventStream(executor, events_url, listeners=[LoggingListener(level=logging.INFO)])
    """

    def __init__(self, logger: logging.Logger | None = None, level: int = logging.DEBUG):
        self.logger = logger or logging.getLogger("eventpoll.stream.events")
        self.level = level

    @override
    def on_state_change(
        self,
        stream: BaseEventStream,
        old_state: StreamState,
        new_state: StreamState,
    ) -> None:
        self.logger.log(self.level, f"{stream.name} | State {old_state} → {new_state}")

    @override
    def on_events(self, stream: BaseEventStream, events: list[Event]) -> None:
        self.logger.log(self.level, f"{stream.name} | {len(events)} new event(s) queued.")

    @override
    def on_position_advanced(self, stream: BaseEventStream, position: StreamPosition) -> None:
        self.logger.log(self.level, f"{stream.name} | Position advanced to {position}")

    @override
    def on_wait(self, stream: BaseEventStream, delay: float) -> None:
        self.logger.log(self.level, f"{stream.name} | Waiting {delay:.1f}s before next fetch.")

    @override
    def on_error(self, stream: BaseEventStream, error: Exception) -> None:
        self.logger.error(f"{stream.name} | ❌ Stream stopped: {error}")


class StreamStateRecorder(EventStreamListener):
    """
    Listener that remembers the most recent position and terminal error.

    Useful for persisting the position after the stream is gone, or in tests.

    Example:
        >>> recorder = StreamStateRecorder()
        >>> stream = EventStream(executor, events_url, listeners=[recorder])
        >>> ...
        >>> save(recorder.last_position)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.last_position: StreamPosition | None = None
        self.positions: list[StreamPosition] = []
        self.states: list[StreamState] = []
        self.waits: list[float] = []
        self.error: Exception | None = None

    @override
    def on_state_change(
        self,
        stream: BaseEventStream,
        old_state: StreamState,
        new_state: StreamState,
    ) -> None:
        with self._lock:
            self.states.append(new_state)

    @override
    def on_position_advanced(self, stream: BaseEventStream, position: StreamPosition) -> None:
        with self._lock:
            self.last_position = position
            self.positions.append(position)

    @override
    def on_wait(self, stream: BaseEventStream, delay: float) -> None:
        with self._lock:
            self.waits.append(delay)

    @override
    def on_error(self, stream: BaseEventStream, error: Exception) -> None:
        with self._lock:
            self.error = error
