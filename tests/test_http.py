"""Tests for the HTTP client abstraction."""

import socket
import threading
import time
from unittest.mock import MagicMock

import pytest
import requests

from eventpoll import AbortableHTTPAdapter, HttpClient, HttpRequest, RequestsHttpClient

# =============================================================================
# HttpRequest Tests
# =============================================================================


class TestHttpRequest:

    def test_defaults(self):
        request = HttpRequest(method="GET", url="https://api.example.com/events")

        assert request.params == {}
        assert request.data is None
        assert request.headers == {}
        assert request.timeout is None

    def test_display_name_prefers_label(self):
        assert HttpRequest(method="GET", url="https://x", label="long-poll").display_name == "long-poll"
        assert HttpRequest(method="OPTIONS", url="https://x").display_name == "OPTIONS https://x"

    def test_is_frozen(self):
        request = HttpRequest(method="GET", url="https://x")

        with pytest.raises(AttributeError):
            request.url = "https://y"  # type: ignore

    def test_rejects_empty_url(self):
        with pytest.raises(AssertionError):
            HttpRequest(method="GET", url="")

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(AssertionError):
            HttpRequest(method="GET", url="https://x", timeout=0)


# =============================================================================
# RequestsHttpClient Tests
# =============================================================================


class TestRequestsHttpClient:

    def make_client(self, headers=None):
        session = MagicMock(spec=requests.Session)
        session.request.return_value = MagicMock(spec=requests.Response)
        return RequestsHttpClient(headers=headers, session=session), session

    def test_is_an_http_client(self):
        assert isinstance(RequestsHttpClient(), HttpClient)

    def test_send_forwards_request_to_session(self):
        client, session = self.make_client()
        request = HttpRequest(
            method="GET",
            url="https://api.example.com/events",
            params={"stream_position": "now"},
        )

        response = client.send(request, timeout=30)

        assert response is session.request.return_value
        session.request.assert_called_once_with(
            "GET",
            "https://api.example.com/events",
            params={"stream_position": "now"},
            json=None,
            headers={},
            timeout=30,
        )

    def test_empty_params_are_not_sent(self):
        client, session = self.make_client()

        client.send(HttpRequest(method="OPTIONS", url="https://api.example.com/events"), timeout=5)

        assert session.request.call_args.kwargs["params"] is None

    def test_request_headers_win_over_static_headers(self):
        client, session = self.make_client(headers={"Authorization": "Bearer a", "X-Static": "1"})

        client.send(
            HttpRequest(method="GET", url="https://x", headers={"Authorization": "Bearer b"}),
            timeout=5,
        )

        assert session.request.call_args.kwargs["headers"] == {"Authorization": "Bearer b", "X-Static": "1"}

    def test_json_body_is_sent(self):
        client, session = self.make_client()

        client.send(HttpRequest(method="POST", url="https://x", data={"a": 1}), timeout=5)

        assert session.request.call_args.kwargs["json"] == {"a": 1}

    def test_transport_errors_propagate(self):
        client, session = self.make_client()
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(requests.ConnectionError):
            client.send(HttpRequest(method="GET", url="https://x"), timeout=5)

    def test_close_closes_the_session(self):
        client, session = self.make_client()

        client.close()

        session.close.assert_called_once_with()

    def test_session_is_created_lazily(self):
        client = RequestsHttpClient()

        assert client._session is None
        session = client._get_session()
        assert isinstance(session, requests.Session)
        assert client._get_session() is session
        client.close()
        assert client._session is None


# =============================================================================
# Abort Tests
# =============================================================================


class SilentServer:
    """Local TCP server that accepts one connection, reads the request and never answers."""

    def __init__(self):
        self._sock = socket.create_server(("127.0.0.1", 0))
        self.url = f"http://127.0.0.1:{self._sock.getsockname()[1]}/events"
        self.request_received = threading.Event()
        self._release = threading.Event()
        threading.Thread(target=self._serve, daemon=True).start()

    def _serve(self):
        conn, _ = self._sock.accept()
        with conn:
            conn.recv(65536)
            self.request_received.set()
            self._release.wait(10)

    def close(self):
        self._release.set()
        self._sock.close()


class TestRequestsHttpClientAbort:

    def test_abort_without_pending_call_does_nothing(self):
        client = RequestsHttpClient()

        client.abort(HttpRequest(method="GET", url="https://x"))

    def test_abort_unblocks_a_call_waiting_for_the_server(self):
        server = SilentServer()
        client = RequestsHttpClient()
        request = HttpRequest(method="GET", url=server.url, label="long-poll")
        outcome = {}

        def call():
            try:
                outcome["response"] = client.send(request, timeout=10)
            except requests.RequestException as e:
                outcome["error"] = e

        caller = threading.Thread(target=call, daemon=True)
        try:
            caller.start()
            assert server.request_received.wait(5)

            started = time.monotonic()
            client.abort(request)
            caller.join(5)

            assert not caller.is_alive()
            assert time.monotonic() - started < 5
            assert isinstance(outcome.get("error"), requests.ConnectionError)
        finally:
            server.close()
            client.close()

    def test_created_sessions_mount_abortable_adapters(self):
        client = RequestsHttpClient()

        session = client._get_session()

        assert isinstance(session.get_adapter("https://api.example.com"), AbortableHTTPAdapter)
        assert isinstance(session.get_adapter("http://127.0.0.1"), AbortableHTTPAdapter)
        client.close()
