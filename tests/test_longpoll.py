"""Tests for long-poll endpoint discovery and change notification."""

import unittest
from unittest.mock import Mock

import requests
from http_fakes import EVENTS_URL, FAST_POLICY, POLL_URL, ScriptedHttpClient, discovery_body, make_response

from eventpoll import HttpClient, MalformedResponseError, MaxRetriesExceededError, RetryingExecutor
from eventpoll.stream import LongPollCoordinator


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestLongPollDiscovery(unittest.TestCase):

    def setUp(self):
        self.http_client = Mock(spec=HttpClient)
        self.executor = RetryingExecutor(http_client=self.http_client, policy=FAST_POLICY)
        self.clock = FakeClock()
        self.coordinator = LongPollCoordinator(self.executor, EVENTS_URL, clock=self.clock)

    def test_discover_uses_options_request(self):
        self.http_client.send.return_value = make_response(discovery_body())

        self.coordinator.discover()

        request, _ = self.http_client.send.call_args[0]
        self.assertEqual(request.method, "OPTIONS")
        self.assertEqual(request.url, EVENTS_URL)

    def test_discover_builds_endpoint_from_entry(self):
        self.http_client.send.return_value = make_response(discovery_body(retry_timeout=610, max_retries="10"))

        endpoint = self.coordinator.discover()

        self.assertEqual(endpoint.url, POLL_URL)
        self.assertEqual(endpoint.retry_timeout, 610)
        self.assertEqual(endpoint.max_retries, 10)
        self.assertEqual(endpoint.polls_made, 0)
        self.assertIs(self.coordinator.endpoint, endpoint)

    def test_valid_until_uses_ttl_when_given(self):
        self.http_client.send.return_value = make_response(discovery_body(retry_timeout=60, max_retries=3, ttl=300))

        endpoint = self.coordinator.discover()

        self.assertEqual(endpoint.valid_until, 1300.0)

    def test_valid_until_defaults_to_retry_budget(self):
        self.http_client.send.return_value = make_response(discovery_body(retry_timeout=60, max_retries=3))

        endpoint = self.coordinator.discover()

        self.assertEqual(endpoint.valid_until, 1000.0 + 60 * 4)

    def test_non_realtime_entries_are_ignored(self):
        body = discovery_body()
        body["entries"].insert(0, {"type": "something_else", "url": "https://nope"})
        self.http_client.send.return_value = make_response(body)

        endpoint = LongPollCoordinator(self.executor, EVENTS_URL, chooser=lambda c: c[0]).discover()

        self.assertEqual(endpoint.url, POLL_URL)

    def test_legacy_realtime_type_is_accepted(self):
        body = discovery_body()
        body["entries"][0]["type"] = "realtime"
        self.http_client.send.return_value = make_response(body)

        self.assertEqual(self.coordinator.discover().url, POLL_URL)

    def test_no_candidate_is_malformed(self):
        self.http_client.send.return_value = make_response({"entries": [{"type": "other", "url": "x"}]})

        with self.assertRaises(MalformedResponseError):
            self.coordinator.discover()

    def test_missing_entries_is_malformed(self):
        self.http_client.send.return_value = make_response({})

        with self.assertRaises(MalformedResponseError):
            self.coordinator.discover()

    def test_invalid_retry_timeout_is_malformed(self):
        body = discovery_body()
        body["entries"][0]["retry_timeout"] = "soon"
        self.http_client.send.return_value = make_response(body)

        with self.assertRaises(MalformedResponseError):
            self.coordinator.discover()

    def test_discovery_retry_exhaustion_propagates(self):
        self.http_client.send.side_effect = requests.ConnectionError("down")

        with self.assertRaises(MaxRetriesExceededError):
            self.coordinator.discover()

        self.assertEqual(self.http_client.send.call_count, FAST_POLICY.max_retries)


class TestLongPollWaitForChange(unittest.TestCase):

    def setUp(self):
        self.http_client = ScriptedHttpClient()
        self.executor = RetryingExecutor(http_client=self.http_client, policy=FAST_POLICY)
        self.clock = FakeClock()
        self.coordinator = LongPollCoordinator(self.executor, EVENTS_URL, clock=self.clock)

    def test_new_change_is_reported(self):
        self.http_client.queue("discovery", make_response(discovery_body()))
        self.http_client.queue("long-poll", make_response({"message": "new_change"}))

        result = self.coordinator.wait_for_change("100")

        self.assertTrue(result.changed)
        self.assertEqual(result.message, "new_change")

    def test_poll_sends_position_and_extended_timeout(self):
        self.http_client.queue("discovery", make_response(discovery_body(retry_timeout=610)))
        self.http_client.queue("long-poll", make_response({"message": "new_change"}))

        self.coordinator.wait_for_change("100")

        request, timeout = [c for c in self.http_client.calls if c[0].label == "long-poll"][0]
        self.assertEqual(request.method, "GET")
        self.assertEqual(request.url, POLL_URL)
        self.assertEqual(request.params, {"stream_position": "100"})
        self.assertEqual(timeout, 610 + FAST_POLICY.request_timeout)

    def test_timeouts_are_not_errors(self):
        """Three protocol timeouts in a row produce three unchanged results on one endpoint."""
        self.http_client.queue("discovery", make_response(discovery_body()))
        self.http_client.queue(
            "long-poll",
            make_response({"message": "timeout"}),
            make_response(None),
            make_response({"message": "something unexpected"}),
        )

        results = [self.coordinator.wait_for_change("100") for _ in range(3)]

        self.assertEqual([r.changed for r in results], [False, False, False])
        self.assertEqual(len(self.http_client.requests_for("discovery")), 1)
        self.assertEqual(len(self.http_client.requests_for("long-poll")), 3)

    def test_reconnect_drops_the_endpoint(self):
        self.http_client.queue("discovery", make_response(discovery_body()), make_response(discovery_body()))
        self.http_client.queue(
            "long-poll",
            make_response({"message": "reconnect"}),
            make_response({"message": "new_change"}),
        )

        first = self.coordinator.wait_for_change("100")
        self.assertFalse(first.changed)
        self.assertIsNone(self.coordinator.endpoint)

        second = self.coordinator.wait_for_change("100")
        self.assertTrue(second.changed)
        self.assertEqual(len(self.http_client.requests_for("discovery")), 2)

    def test_expired_endpoint_triggers_rediscovery(self):
        self.http_client.queue(
            "discovery",
            make_response(discovery_body(retry_timeout=60, max_retries=10, ttl=100)),
            make_response(discovery_body()),
        )
        self.http_client.fallback("long-poll", make_response({"message": "timeout"}))

        self.coordinator.wait_for_change("100")
        self.clock.now += 101
        self.coordinator.wait_for_change("100")

        self.assertEqual(len(self.http_client.requests_for("discovery")), 2)

    def test_exhausted_poll_budget_triggers_rediscovery(self):
        self.http_client.queue(
            "discovery",
            make_response(discovery_body(max_retries=1)),
            make_response(discovery_body(max_retries=1)),
        )
        self.http_client.fallback("long-poll", make_response({"message": "timeout"}))

        # max_retries=1 allows polls while polls_made <= 1, i.e. two polls
        for _ in range(3):
            self.coordinator.wait_for_change("100")

        self.assertEqual(len(self.http_client.requests_for("discovery")), 2)

    def test_invalidate_forces_rediscovery(self):
        self.http_client.queue("discovery", make_response(discovery_body()), make_response(discovery_body()))
        self.http_client.fallback("long-poll", make_response({"message": "timeout"}))

        self.coordinator.wait_for_change("100")
        self.coordinator.invalidate()
        self.coordinator.wait_for_change("100")

        self.assertEqual(len(self.http_client.requests_for("discovery")), 2)

    def test_poll_connection_failures_are_retried(self):
        self.http_client.queue("discovery", make_response(discovery_body()))
        self.http_client.queue(
            "long-poll",
            requests.ConnectionError("reset"),
            make_response({"message": "new_change"}),
        )

        self.assertTrue(self.coordinator.wait_for_change("100").changed)

    def test_poll_retry_exhaustion_propagates(self):
        self.http_client.queue("discovery", make_response(discovery_body()))
        self.http_client.fallback("long-poll", requests.ConnectionError("down"))

        with self.assertRaises(MaxRetriesExceededError):
            self.coordinator.wait_for_change("100")

        self.assertEqual(len(self.http_client.requests_for("long-poll")), FAST_POLICY.max_retries)


if __name__ == "__main__":
    unittest.main()
