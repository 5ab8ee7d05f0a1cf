"""
eventpoll: resilient event-notification client for Python.

A long-polling event stream with deduplication, layered on a retrying HTTP
executor with exponential backoff.

Quick Start:
    >>> from eventpoll import Events, RequestsHttpClient
    >>> events = Events(RequestsHttpClient(headers={"Authorization": "Bearer <token>"}))
    >>> with events.get_event_stream() as stream:
    ...     for event in stream:
    ...         print(event.id, event.type)

Enterprise Events:
    >>> stream = events.get_enterprise_event_stream(
    ...     start_date="2024-01-01T00:00:00-00:00",
    ...     event_type_filter=["UPLOAD"],
    ...     polling_interval=0,
    ... )
    >>> for event in stream:
    ...     print(event.type)

Configuration:
    >>> from eventpoll import EventPollConfig, RetryPolicy
    >>>
    >>> # Defaults + EVENTPOLL_* env vars + explicit overrides
    >>> config = EventPollConfig.load(
    ...     retry={"max_retries": 8, "base_interval_ms": 500},
    ...     stream={"fetch_limit": 500},
    ... )
    >>> events = Events(http_client, config=config)

Main Classes:
    - Events: Facade over the events API.
    - EventStream: Long-polling stream with deduplication.
    - EnterpriseEventStream: Interval-polled admin log stream.
    - Event: A single event.
    - StreamState: Enum with stream lifecycle states.
    - EventStreamListener: Base class for lifecycle observers.

Configuration:
    - EventPollConfig: Root configuration dataclass.
    - RetryConfig: Retry configuration.
    - StreamConfig: Long-polling stream configuration.
    - EnterpriseConfig: Enterprise stream configuration.
    - ConfigEnvVarError: Exception raised when env var parsing fails.
    - ConfigValidationError: Exception raised when config validation fails.

HTTP Client:
    - HttpClient: Abstract base class for HTTP clients (auth lives here).
    - RequestsHttpClient: `requests.Session` based client. Default.
    - HttpRequest: Immutable request description.
    - AbortableHTTPAdapter: Adapter to mount on custom sessions so calls can be aborted.

Retry:
    - RetryingExecutor: Executes requests with retries and cancellation.
    - RetryPolicy: Immutable retry settings.
    - Retrying: Context manager for retry with exponential backoff.
    - RetryableError: Base class for exceptions that trigger automatic retry.
    - MaxRetriesExceededError: Exception raised when all retry attempts are exhausted.
    - MalformedResponseError: Exception raised for unparseable responses.
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("eventpoll")

from eventpoll._config import (
    ConfigEntry,
    ConfigEnvVarError,
    ConfigValidationError,
    EnterpriseConfig,
    EventPollConfig,
    RetryConfig,
    StreamConfig,
)
from eventpoll._events import Events
from eventpoll._http import (
    AbortableHTTPAdapter,
    HttpClient,
    HttpRequest,
    RequestsHttpClient,
)
from eventpoll._retry import (
    MalformedResponseError,
    MaxRetriesExceededError,
    RateLimitHintPolicy,
    RetryableError,
    Retrying,
    RetryingExecutor,
    RetryPolicy,
)
from eventpoll._utils import CancellationToken, OperationCancelledError
from eventpoll.stream import (
    NOW,
    EnterpriseEventStream,
    EnterpriseStreamState,
    Event,
    EventStream,
    EventStreamListener,
    EventStreamStateError,
    StreamPosition,
    StreamState,
)

__all__ = [
    "__version__",
    # Facade
    "Events",
    # Configuration
    "EventPollConfig",
    "RetryConfig",
    "StreamConfig",
    "EnterpriseConfig",
    "ConfigEntry",
    "ConfigEnvVarError",
    "ConfigValidationError",
    # HTTP Client
    "AbortableHTTPAdapter",
    "HttpClient",
    "HttpRequest",
    "RequestsHttpClient",
    # Retry
    "RetryingExecutor",
    "RetryPolicy",
    "RateLimitHintPolicy",
    "Retrying",
    "RetryableError",
    "MaxRetriesExceededError",
    "MalformedResponseError",
    # Cancellation
    "CancellationToken",
    "OperationCancelledError",
    # Streams
    "NOW",
    "StreamPosition",
    "StreamState",
    "Event",
    "EventStream",
    "EnterpriseEventStream",
    "EnterpriseStreamState",
    "EventStreamListener",
    "EventStreamStateError",
]
