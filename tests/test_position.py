"""Tests for stream position resolution."""

import unittest
from unittest.mock import Mock

import requests
from http_fakes import EVENTS_URL, FAST_POLICY, make_response

from eventpoll import HttpClient, MalformedResponseError, MaxRetriesExceededError, RetryingExecutor
from eventpoll.stream import NOW, StreamPositionResolver


class TestStreamPositionResolver(unittest.TestCase):

    def setUp(self):
        self.http_client = Mock(spec=HttpClient)
        self.executor = RetryingExecutor(http_client=self.http_client, policy=FAST_POLICY)
        self.resolver = StreamPositionResolver(self.executor, EVENTS_URL)

    def test_explicit_token_is_returned_without_network_call(self):
        for token in ("1348790499819", "0", 0, 42):
            with self.subTest(token=token):
                self.assertEqual(self.resolver.resolve(token), token)
        self.http_client.send.assert_not_called()

    def test_now_asks_the_server_for_its_current_position(self):
        self.http_client.send.return_value = make_response(
            {"chunk_size": 0, "entries": [], "next_stream_position": "1348790499819"}
        )

        position = self.resolver.resolve(NOW)

        self.assertEqual(position, "1348790499819")
        request, _ = self.http_client.send.call_args[0]
        self.assertEqual(request.method, "GET")
        self.assertEqual(request.url, EVENTS_URL)
        self.assertEqual(request.params, {"stream_position": "now"})

    def test_now_is_the_default(self):
        self.http_client.send.return_value = make_response({"next_stream_position": 7})
        self.assertEqual(self.resolver.resolve(), 7)

    def test_missing_position_is_malformed(self):
        self.http_client.send.return_value = make_response({"entries": []})

        with self.assertRaises(MalformedResponseError):
            self.resolver.resolve(NOW)

    def test_transient_failures_are_retried(self):
        self.http_client.send.side_effect = [
            requests.ConnectionError("reset"),
            make_response({"next_stream_position": "99"}),
        ]

        self.assertEqual(self.resolver.resolve(NOW), "99")
        self.assertEqual(self.http_client.send.call_count, 2)

    def test_retry_exhaustion_propagates(self):
        self.http_client.send.side_effect = requests.ConnectionError("down")

        with self.assertRaises(MaxRetriesExceededError):
            self.resolver.resolve(NOW)

        self.assertEqual(self.http_client.send.call_count, FAST_POLICY.max_retries)


if __name__ == "__main__":
    unittest.main()
