"""
Long-polling event streams.

This module provides the stream lifecycle shared by every event stream
(start, pause, resume, destroy, blocking iteration) and the `EventStream`
that combines long-poll change notifications with paged fetches and
event-id deduplication.

Example:
    >>> with EventStream(executor, "https://api.box.com/2.0/events") as stream:
    ...     for event in stream:
    ...         print(event.id, event.type)
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Self, override

from eventpoll._http import HttpRequest
from eventpoll._retry import RetryingExecutor
from eventpoll._utils import CancellationToken, OperationCancelledError, is_timeout_exception
from eventpoll.stream._dedup import DEFAULT_DEDUP_WINDOW_SIZE, DedupWindow
from eventpoll.stream._event_listeners import EventStreamListener
from eventpoll.stream._longpoll import LongPollCoordinator
from eventpoll.stream._models import NOW, Event, EventPage, StreamPosition, StreamState
from eventpoll.stream._position import StreamPositionResolver

logger = logging.getLogger(__name__)

DEFAULT_FETCH_LIMIT = 100
DEFAULT_MAX_BUFFERED_EVENTS = 1000


class EventStreamStateError(RuntimeError):
    """Raised when a lifecycle method is called in a state that does not allow it."""

    pass


# =============================================================================
# Lifecycle
# =============================================================================


class BaseEventStream(ABC):
    """
    Lifecycle and consumer API shared by event streams.

    A stream runs one polling loop on a daemon thread and hands events to
    the consumer through a bounded buffer. Subclasses implement
    `_poll_once()` (one round of network work) and may override
    `_prepare()` (work done on the caller's thread by `start()`).

    State machine:
        INIT → POLLING (start) ⇄ PAUSED (pause/resume) → DESTROYED (destroy or terminal error)

    Thread-safety:
        State, buffer and error are guarded by one `threading.Condition`.
        Listener hooks run while it is held, so no hook fires after
        `destroy()` returns. Pause and destroy cancel the current
        `CancellationToken`, which interrupts backoff waits and aborts the
        in-flight call of the loop; resume installs a fresh token. The loop
        issues its next request only after the aborted one has ended, so a
        stream never has two requests outstanding.

    Consumer API:
        - `next(timeout=None)`: blocks until an event is available.
        - Iteration (`for event in stream`), ending after destroy.
        - Context manager: `__enter__` starts, `__exit__` destroys.
    """

    def __init__(
        self,
        *,
        max_buffered_events: int = DEFAULT_MAX_BUFFERED_EVENTS,
        listeners: list[EventStreamListener] | None = None,
        name: str | None = None,
    ):
        assert max_buffered_events > 0, "max_buffered_events must be greater than 0."

        self.name = name or self.__class__.__name__
        self.max_buffered_events = max_buffered_events
        self.listeners: list[EventStreamListener] = listeners or []

        self._cond = threading.Condition(threading.RLock())
        self._state = StreamState.INIT
        self._buffer: deque[Event] = deque()
        self._cancel_token = CancellationToken()
        self._thread: threading.Thread | None = None
        self._position: StreamPosition | None = None
        self._error: Exception | None = None
        self._error_delivered = False
        self._ended = False

    # ==================
    # Properties
    # ==================

    @property
    def state(self) -> StreamState:
        with self._cond:
            return self._state

    @property
    def stream_position(self) -> StreamPosition | None:
        """The position the next fetch starts from (None until resolved)."""
        with self._cond:
            return self._position

    @property
    def error(self) -> Exception | None:
        """The terminal error that stopped the stream, if any."""
        with self._cond:
            return self._error

    # ==================
    # Lifecycle
    # ==================

    def start(self) -> Self:
        """
        Start polling (INIT → POLLING).

        Any preparation (e.g. resolving the starting position) runs on the
        caller's thread, so its failures raise here before any polling.

        Raises:
            EventStreamStateError: If the stream was already started.
        """
        with self._cond:
            if self._state != StreamState.INIT:
                raise EventStreamStateError(f"{self.name} cannot be started from state {self._state}.")
            token = self._cancel_token

        try:
            self._prepare(token)
        except OperationCancelledError:
            return self
        except Exception as e:
            logger.error(f"{self.name} | ❌ Failed to start: {e}")
            self.destroy()
            raise

        with self._cond:
            if self._state != StreamState.INIT:
                # Destroyed while preparing
                return self
            self._set_state(StreamState.POLLING)
            self._thread = threading.Thread(target=self._run, name=f"{self.name}-loop", daemon=True)
            self._thread.start()

        logger.info(f"{self.name} | ✅ Started at stream position {self._position}")
        return self

    def pause(self) -> None:
        """
        Pause polling (POLLING → PAUSED).

        The in-flight poll or backoff wait is cancelled. Buffered events can
        still be consumed; no network activity happens until `resume()`.

        Raises:
            EventStreamStateError: If the stream is not polling.
        """
        with self._cond:
            if self._state != StreamState.POLLING:
                raise EventStreamStateError(f"{self.name} cannot be paused from state {self._state}.")
            self._cancel_token.cancel()
            self._set_state(StreamState.PAUSED)
            self._cond.notify_all()

        logger.debug(f"{self.name} | Paused at stream position {self._position}")

    def resume(self) -> None:
        """
        Resume polling from the stored position (PAUSED → POLLING).

        Raises:
            EventStreamStateError: If the stream is not paused.
        """
        with self._cond:
            if self._state != StreamState.PAUSED:
                raise EventStreamStateError(f"{self.name} cannot be resumed from state {self._state}.")
            self._cancel_token = CancellationToken()
            self._set_state(StreamState.POLLING)
            self._cond.notify_all()

        logger.debug(f"{self.name} | Resumed at stream position {self._position}")

    def destroy(self) -> None:
        """
        Stop the stream for good (any state → DESTROYED).

        Cancels in-flight work and drops buffered events. Afterwards no event
        is delivered and no listener fires. Idempotent.
        """
        with self._cond:
            if self._state == StreamState.DESTROYED:
                return
            self._cancel_token.cancel()
            self._buffer.clear()
            self._set_state(StreamState.DESTROYED)
            self._cond.notify_all()

        logger.debug(f"{self.name} | Destroyed at stream position {self._position}")

    def cancel(self) -> None:
        """Alias for `destroy()`."""
        self.destroy()

    def join(self, timeout: float | None = None) -> None:
        """Wait for the polling thread to exit (no-op if it never started)."""
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    # ==================
    # Consumer API
    # ==================

    def next(self, timeout: float | None = None) -> Event:
        """
        Return the next event, blocking until one is available.

        A terminal error is raised once, after every event buffered before
        it has been returned.

        Args:
            timeout: Maximum seconds to wait (None waits forever).

        Raises:
            StopIteration: The stream was destroyed or reached its end.
            TimeoutError: No event arrived within `timeout`.
            EventStreamStateError: The stream was never started.
            Exception: The terminal error that stopped the stream (once).
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._cond:
            while True:
                if self._buffer:
                    event = self._buffer.popleft()
                    self._cond.notify_all()
                    return event

                if self._error is not None and not self._error_delivered:
                    self._error_delivered = True
                    raise self._error

                if self._state == StreamState.DESTROYED:
                    raise StopIteration

                if self._ended:
                    self.destroy()
                    raise StopIteration

                if self._state == StreamState.INIT:
                    raise EventStreamStateError(f"{self.name} was not started.")

                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise TimeoutError(f"{self.name}: no event within {timeout}s.")

                self._cond.wait(remaining)

    def __iter__(self) -> Self:
        return self

    def __next__(self) -> Event:
        return self.next()

    def __enter__(self) -> Self:
        if self.state == StreamState.INIT:
            self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.destroy()

    # ==================
    # Polling loop
    # ==================

    def _prepare(self, cancel_token: CancellationToken) -> None:
        """Work done on the caller's thread by `start()` (default: nothing)."""
        pass

    @abstractmethod
    def _poll_once(self, cancel_token: CancellationToken) -> bool:
        """
        Run one round of network work.

        Returns:
            False when the stream reached its natural end, True otherwise.

        Raises:
            OperationCancelledError: The stream was paused or destroyed.
        """
        pass

    def _run(self) -> None:
        while True:
            with self._cond:
                while self._state == StreamState.PAUSED:
                    self._cond.wait()
                if self._state != StreamState.POLLING:
                    return
                token = self._cancel_token

            try:
                keep_polling = self._poll_once(token)
            except OperationCancelledError:
                continue
            except Exception as e:
                if token.is_cancelled:
                    # Failure of work that was already abandoned by pause/destroy
                    logger.debug(f"{self.name} | Ignoring error after cancellation: {e}")
                    continue
                self._fail(e)
                return

            if not keep_polling:
                self._end()
                return

    def _fail(self, error: Exception) -> None:
        with self._cond:
            if self._state == StreamState.DESTROYED:
                return
            kind = "timed out" if is_timeout_exception(error) else "failed"
            logger.error(f"{self.name} | ❌ Stream {kind} at stream position {self._position}: {error}")
            self._error = error
            self._notify_listeners("on_error", stream=self, error=error)
            self._cancel_token.cancel()
            self._set_state(StreamState.DESTROYED)
            self._cond.notify_all()

    def _end(self) -> None:
        with self._cond:
            if self._state == StreamState.DESTROYED:
                return
            logger.info(f"{self.name} | ✅ Reached the end of the stream at position {self._position}")
            self._ended = True
            self._cond.notify_all()

    # ==================
    # Helpers for subclasses
    # ==================

    def _deliver(
        self,
        pending: deque[Event],
        cancel_token: CancellationToken,
        dedup: DedupWindow | None = None,
    ) -> list[Event]:
        """
        Queue events for the consumer, in order, taking them from `pending`.

        When a dedup window is given, events already seen are skipped and
        each queued event is recorded right after it is queued. Blocks while
        the buffer is full. Queued and skipped events are removed from
        `pending`, so after a cancellation it holds exactly the events that
        still have to be delivered.

        Raises:
            OperationCancelledError: The stream was paused or destroyed; events
                queued before that point stay queued and recorded.
        """
        queued: list[Event] = []
        try:
            while pending:
                event = pending[0]
                if dedup is None or not dedup.seen(event.id):
                    self._enqueue(event, cancel_token)
                    if dedup is not None:
                        dedup.record(event.id)
                    queued.append(event)
                pending.popleft()
        finally:
            if queued:
                with self._cond:
                    if self._state != StreamState.DESTROYED:
                        self._notify_listeners("on_events", stream=self, events=queued)
        return queued

    def _enqueue(self, event: Event, cancel_token: CancellationToken) -> None:
        with self._cond:
            while (
                len(self._buffer) >= self.max_buffered_events
                and not cancel_token.is_cancelled
                and self._state == StreamState.POLLING
            ):
                self._cond.wait()

            if cancel_token.is_cancelled or self._state != StreamState.POLLING:
                raise OperationCancelledError(f"{self.name}: delivery cancelled.")

            self._buffer.append(event)
            self._cond.notify_all()

    def _advance_position(self, position: StreamPosition, cancel_token: CancellationToken) -> None:
        """
        Store a new position and notify listeners.

        Raises:
            OperationCancelledError: The stream was paused or destroyed first;
                the position is left unchanged.
        """
        with self._cond:
            if cancel_token.is_cancelled:
                raise OperationCancelledError(f"{self.name}: position update cancelled.")
            if position == self._position:
                return
            self._position = position
            self._notify_listeners("on_position_advanced", stream=self, position=position)

    def _wait(self, delay: float, cancel_token: CancellationToken) -> None:
        """Idle for `delay` seconds, interruptibly."""
        with self._cond:
            if cancel_token.is_cancelled:
                raise OperationCancelledError(f"{self.name}: wait cancelled.")
            self._notify_listeners("on_wait", stream=self, delay=delay)

        if cancel_token.wait(delay):
            raise OperationCancelledError(f"{self.name}: wait of {delay}s cancelled.")

    def _set_state(self, new_state: StreamState) -> None:
        # Callers hold self._cond
        old_state = self._state
        self._state = new_state
        self._notify_listeners("on_state_change", stream=self, old_state=old_state, new_state=new_state)

    def _notify_listeners(self, event: str, **kwargs: Any) -> None:
        """
        Notifies all registered listeners about an event.

        Exceptions raised by listeners are logged but do not interrupt the stream.

        Args:
            event: The event method name (e.g., 'on_state_change').
            **kwargs: Keyword arguments to pass to the listener method.
        """
        for listener in self.listeners:
            try:
                method = getattr(listener, event, None)
                if method and callable(method):
                    method(**kwargs)
            except Exception as e:
                listener_name = listener.__class__.__name__
                logger.warning(
                    f"{self.name} | Event listener `{listener_name}.{event}()` raised an exception: {e}",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )


# =============================================================================
# Long-polling stream
# =============================================================================


class EventStream(BaseEventStream):
    """
    Stream of user events driven by long-poll change notifications.

    Each round waits on the long-poll endpoint; on a change notification it
    fetches pages from the current position (following
    `next_stream_position` until a page comes back with fewer than
    `fetch_limit` entries), drops events already seen, and queues the rest.
    The position advances after every page, including pages made only of
    duplicates. Long-poll timeouts are normal and trigger an immediate
    re-poll. Exhausted retries or permanent failures stop the stream.

    Example:
        >>> stream = EventStream(executor, "https://api.box.com/2.0/events", stream_position="0")
        >>> stream.start()
        >>> event = stream.next(timeout=30)
        >>> stream.destroy()

    Args:
        executor: Executor used for every request of the stream.
        events_url: Events API URL.
        stream_position: Starting position, or NOW (default).
        dedup_window_size: Capacity of the event-id dedup window.
        fetch_limit: Page size for event fetches.
        max_buffered_events: Maximum undelivered events before the loop waits.
        listeners: Lifecycle observers.
        long_poll: Coordinator override (default: built from executor and events_url).
    """

    def __init__(
        self,
        executor: RetryingExecutor,
        events_url: str,
        stream_position: StreamPosition = NOW,
        *,
        dedup_window_size: int = DEFAULT_DEDUP_WINDOW_SIZE,
        fetch_limit: int = DEFAULT_FETCH_LIMIT,
        max_buffered_events: int = DEFAULT_MAX_BUFFERED_EVENTS,
        listeners: list[EventStreamListener] | None = None,
        long_poll: LongPollCoordinator | None = None,
    ):
        super().__init__(max_buffered_events=max_buffered_events, listeners=listeners)

        assert executor is not None, "executor cannot be None."
        assert events_url, "events_url cannot be empty."
        assert fetch_limit > 0, "fetch_limit must be greater than 0."

        self.executor = executor
        self.events_url = events_url
        self.fetch_limit = fetch_limit
        self.requested_position = stream_position

        self._dedup = DedupWindow(capacity=dedup_window_size)
        self._resolver = StreamPositionResolver(executor, events_url)
        self._long_poll = long_poll or LongPollCoordinator(executor, events_url)

    @override
    def _prepare(self, cancel_token: CancellationToken) -> None:
        position = self._resolver.resolve(self.requested_position, cancel_token=cancel_token)
        with self._cond:
            self._position = position

    @override
    def _poll_once(self, cancel_token: CancellationToken) -> bool:
        position = self.stream_position
        assert position is not None, "🌀 Sanity check | Stream position must be resolved before polling."

        result = self._long_poll.wait_for_change(position, cancel_token=cancel_token)
        if result.changed:
            self._fetch_new_events(cancel_token)
        return True

    def _fetch_new_events(self, cancel_token: CancellationToken) -> None:
        while True:
            position = self.stream_position
            assert position is not None
            page = self._fetch_page(position, cancel_token)

            events = deque(Event.from_dict(entry, stream_position=position) for entry in page.entries)
            queued = self._deliver(events, cancel_token, dedup=self._dedup)
            logger.debug(
                f"{self.name} | Page at {position}: {len(page.entries)} entries, "
                f"{len(queued)} new, next position {page.next_stream_position}"
            )

            self._advance_position(page.next_stream_position, cancel_token)

            if len(page.entries) < self.fetch_limit or page.next_stream_position == position:
                return

    def _fetch_page(self, position: StreamPosition, cancel_token: CancellationToken) -> EventPage:
        data = self.executor.execute_json(
            HttpRequest(
                method="GET",
                url=self.events_url,
                params={"stream_position": position, "limit": self.fetch_limit},
                label="fetch-events",
            ),
            cancel_token=cancel_token,
        )
        return EventPage.from_dict(data)
