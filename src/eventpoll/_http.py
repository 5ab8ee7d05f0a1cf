"""
HTTP client abstraction for the eventpoll SDK.

This module defines the single seam through which the SDK talks to the
network: an `HttpClient` that sends an `HttpRequest` and returns a
`requests.Response`. Authentication, token refresh and request signing are
the business of the `HttpClient` implementation; the event-stream core only
builds requests and reads responses.

Available implementations:
    - RequestsHttpClient: Plain `requests.Session` client with static headers. Default.
      Supports `abort()` of an in-flight call by shutting down its socket.

Example:
    >>> from eventpoll._http import HttpRequest, RequestsHttpClient
    >>> client = RequestsHttpClient(headers={"Authorization": "Bearer <token>"})
    >>> response = client.send(
    ...     HttpRequest(method="GET", url="https://api.box.com/2.0/events"),
    ...     timeout=30,
    ... )

Custom auth:
    >>> class MyAuthHttpClient(HttpClient):
    ...     def send(self, request, timeout):
    ...         headers = {**request.headers, "Authorization": f"Bearer {tokens.get()}"}
    ...         return requests.request(request.method, request.url, params=request.params,
    ...                                 json=request.data, headers=headers, timeout=timeout)
"""

from __future__ import annotations

import logging
import socket
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, override

import requests
from requests.adapters import HTTPAdapter
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool

logger = logging.getLogger(__name__)


# =============================================================================
# Request model
# =============================================================================


@dataclass(frozen=True)
class HttpRequest:
    """
    Immutable description of a single logical HTTP request.

    Attributes:
        method: HTTP method (GET, POST, OPTIONS...).
        url: Absolute URL to call. Existing query strings are preserved and
            `params` are appended to them.
        params: Query string parameters.
        data: JSON-serializable body, if any.
        headers: Extra headers for this request only.
        timeout: Per-attempt timeout in seconds. When None, the executor's
            retry policy decides.
        label: Short name used in log messages (e.g. "discovery").

    Example:
        >>> HttpRequest(method="GET", url="https://api.box.com/2.0/events",
        ...             params={"stream_position": "now"}, label="position")
    """

    method: str
    url: str
    params: dict[str, Any] = field(default_factory=dict)
    data: dict[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None
    label: str = ""

    def __post_init__(self) -> None:
        assert self.method, "HTTP method cannot be empty."
        assert self.url, "URL cannot be empty."
        assert self.timeout is None or self.timeout > 0, "Timeout must be greater than 0."

    @property
    def display_name(self) -> str:
        """Label for log messages, falling back to 'METHOD url'."""
        return self.label or f"{self.method} {self.url}"


# =============================================================================
# Abstract Base Class
# =============================================================================


class HttpClient(ABC):
    """
    Abstract base class for HTTP clients.

    This is the unified HTTP client interface for the eventpoll SDK.
    All network operations in the SDK go through `send()`.

    Implementations must raise `requests.RequestException` subclasses for
    transport failures (`requests.ConnectionError`, `requests.Timeout`) and
    return the response untouched otherwise: status classification and
    retries are done by `RetryingExecutor`.
    """

    @abstractmethod
    def send(self, request: HttpRequest, timeout: float) -> requests.Response:
        """
        Execute a request.

        Args:
            request: The request to send.
            timeout: Request timeout in seconds.

        Returns:
            The HTTP response (any status code).

        Raises:
            requests.RequestException: If the HTTP request fails at transport level.
        """
        pass

    def abort(self, request: HttpRequest) -> None:
        """
        Abort an in-flight `send()` of `request`, called from another thread.

        Implementations should make the pending `send()` return promptly,
        usually by raising `requests.ConnectionError`. The default does
        nothing: the call then runs until it completes or its timeout elapses.

        Args:
            request: The exact request object passed to the pending `send()`.
        """
        pass

    def close(self) -> None:
        """Release any pooled connections. Default implementation does nothing."""
        pass


# =============================================================================
# Connection tracking
# =============================================================================


class _CheckedOutConnections:
    """Connections currently checked out of a pool, by the thread using them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_thread: dict[int, Any] = {}

    def bind(self, conn: Any) -> None:
        with self._lock:
            self._by_thread[threading.get_ident()] = conn

    def release(self, conn: Any) -> None:
        thread_id = threading.get_ident()
        with self._lock:
            if conn is None or self._by_thread.get(thread_id) is conn:
                self._by_thread.pop(thread_id, None)

    def get(self, thread_id: int) -> Any:
        with self._lock:
            return self._by_thread.get(thread_id)


_checked_out = _CheckedOutConnections()


class _TrackingPoolMixin:
    """Records which thread holds which pooled connection."""

    def _get_conn(self, timeout: float | None = None) -> Any:
        conn = super()._get_conn(timeout)  # type: ignore[misc]
        _checked_out.bind(conn)
        return conn

    def _put_conn(self, conn: Any) -> None:
        _checked_out.release(conn)
        super()._put_conn(conn)  # type: ignore[misc]


class _TrackingHTTPConnectionPool(_TrackingPoolMixin, HTTPConnectionPool):
    pass


class _TrackingHTTPSConnectionPool(_TrackingPoolMixin, HTTPSConnectionPool):
    pass


class AbortableHTTPAdapter(HTTPAdapter):
    """
    `HTTPAdapter` whose pooled connections can be located while in use.

    Mounted on the sessions `RequestsHttpClient` creates, so that `abort()`
    can shut down the socket of a call that is blocked waiting for the server.
    Proxied requests are not tracked.
    """

    @override
    def init_poolmanager(self, *args: Any, **kwargs: Any) -> None:
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": _TrackingHTTPConnectionPool,
            "https": _TrackingHTTPSConnectionPool,
        }


# =============================================================================
# requests implementation
# =============================================================================


class RequestsHttpClient(HttpClient):
    """
    HTTP client backed by a `requests.Session`.

    The session is created lazily and shared by all threads (`requests`
    sessions are safe for concurrent use of the connection pool). Static
    headers given at construction are merged under each request's headers.

    `abort()` shuts down the socket of a pending call, which makes it fail
    with `requests.ConnectionError`. This works for sessions created by the
    client; a session passed in must mount `AbortableHTTPAdapter` for it.

    Args:
        headers: Headers sent with every request (e.g. an Authorization header
            obtained by an external auth layer).
        session: Optional pre-configured session (proxies, adapters, certs).
    """

    def __init__(
        self,
        headers: dict[str, str] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._headers = dict(headers or {})
        self._session = session
        self._lock = threading.Lock()
        # id(request) -> thread running its send()
        self._in_flight: dict[int, int] = {}

    def _get_session(self) -> requests.Session:
        """Get or create the session (double-checked locking)."""
        if self._session is None:
            with self._lock:
                if self._session is None:
                    session = requests.Session()
                    session.mount("https://", AbortableHTTPAdapter())
                    session.mount("http://", AbortableHTTPAdapter())
                    self._session = session
        return self._session

    @override
    def send(self, request: HttpRequest, timeout: float) -> requests.Response:
        assert request is not None, "Request cannot be None."
        assert timeout is not None, "Timeout cannot be None."
        assert timeout > 0, "Timeout must be greater than 0."

        merged_headers = {**self._headers, **request.headers}
        logger.debug(f"HttpClient | {request.method} {request.url} params={request.params} timeout={timeout}s")

        session = self._get_session()
        key = id(request)
        with self._lock:
            self._in_flight[key] = threading.get_ident()
        try:
            return session.request(
                request.method,
                request.url,
                params=request.params or None,
                json=request.data,
                headers=merged_headers,
                timeout=timeout,
            )
        finally:
            with self._lock:
                self._in_flight.pop(key, None)

    @override
    def abort(self, request: HttpRequest) -> None:
        with self._lock:
            thread_id = self._in_flight.get(id(request))
        if thread_id is None:
            return

        conn = _checked_out.get(thread_id)
        sock = getattr(conn, "sock", None)
        if sock is None:
            logger.debug(f"HttpClient | {request.display_name} | Nothing to abort: no open socket.")
            return

        logger.debug(f"HttpClient | {request.display_name} | Aborting in-flight call.")
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"HttpClient | {request.display_name} | Socket already closed: {e}")

    @override
    def close(self) -> None:
        with self._lock:
            if self._session is not None:
                self._session.close()
                self._session = None
