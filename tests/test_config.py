"""Tests for the configuration module."""

import os
import unittest
from unittest.mock import patch

from eventpoll import (
    ConfigEntry,
    ConfigEnvVarError,
    ConfigValidationError,
    EnterpriseConfig,
    EventPollConfig,
    RetryConfig,
    StreamConfig,
)
from eventpoll._config import EnvVars


class TestDefaults(unittest.TestCase):
    """Tests for default configuration values."""

    def test_retry_defaults(self):
        config = EventPollConfig.load(allow_env_override=False)
        self.assertEqual(config.retry.max_retries, 5)
        self.assertEqual(config.retry.base_interval_ms, 2000)
        self.assertEqual(config.retry.backoff_multiplier, 2.0)
        self.assertEqual(config.retry.request_timeout_ms, 60000)
        self.assertEqual(config.retry.rate_limit_hint, "override_wait")

    def test_stream_defaults(self):
        config = EventPollConfig.load(allow_env_override=False)
        self.assertEqual(config.stream.base_url, "https://api.box.com/2.0")
        self.assertEqual(config.stream.events_url, "https://api.box.com/2.0/events")
        self.assertEqual(config.stream.dedup_window_size, 5000)
        self.assertEqual(config.stream.fetch_limit, 100)
        self.assertEqual(config.stream.max_buffered_events, 1000)

    def test_enterprise_defaults(self):
        config = EventPollConfig.load(allow_env_override=False)
        self.assertEqual(config.enterprise.polling_interval, 60.0)
        self.assertEqual(config.enterprise.chunk_size, 500)

    def test_config_is_immutable(self):
        config = EventPollConfig.load(allow_env_override=False)
        with self.assertRaises(AttributeError):
            config.retry.max_retries = 10  # type: ignore


class TestLoadOverrides(unittest.TestCase):
    """Tests for EventPollConfig.load() overrides."""

    def test_section_overrides_replace_only_given_fields(self):
        config = EventPollConfig.load(retry={"max_retries": 8}, allow_env_override=False)
        self.assertEqual(config.retry.max_retries, 8)
        self.assertEqual(config.retry.base_interval_ms, 2000)

    def test_none_values_are_ignored(self):
        config = EventPollConfig.load(stream={"fetch_limit": None}, allow_env_override=False)
        self.assertEqual(config.stream.fetch_limit, 100)

    def test_unknown_field_is_rejected(self):
        with self.assertRaises(ValueError) as ctx:
            EventPollConfig.load(stream={"fetch_limt": 10}, allow_env_override=False)
        self.assertIn("fetch_limt", str(ctx.exception))

    def test_events_url_strips_trailing_slash(self):
        config = EventPollConfig.load(stream={"base_url": "https://example.com/2.0/"}, allow_env_override=False)
        self.assertEqual(config.stream.events_url, "https://example.com/2.0/events")

    def test_load_returns_new_instances(self):
        first = EventPollConfig.load(retry={"max_retries": 2}, allow_env_override=False)
        second = EventPollConfig.load(allow_env_override=False)
        self.assertEqual(first.retry.max_retries, 2)
        self.assertEqual(second.retry.max_retries, 5)


class TestEnvVars(unittest.TestCase):
    """Tests for environment variable overrides."""

    @patch.dict(os.environ, {"EVENTPOLL_RETRY_MAX_RETRIES": "9", "EVENTPOLL_ENTERPRISE_POLLING_INTERVAL": "2.5"})
    def test_env_vars_are_applied(self):
        config = EventPollConfig.load()
        self.assertEqual(config.retry.max_retries, 9)
        self.assertEqual(config.enterprise.polling_interval, 2.5)

    @patch.dict(os.environ, {"EVENTPOLL_RETRY_MAX_RETRIES": "9"})
    def test_explicit_override_wins_over_env_var(self):
        config = EventPollConfig.load(retry={"max_retries": 3})
        self.assertEqual(config.retry.max_retries, 3)

    @patch.dict(os.environ, {"EVENTPOLL_RETRY_MAX_RETRIES": "9"})
    def test_env_vars_can_be_disabled(self):
        config = EventPollConfig.load(allow_env_override=False)
        self.assertEqual(config.retry.max_retries, 5)

    @patch.dict(os.environ, {"EVENTPOLL_STREAM_FETCH_LIMIT": "lots"})
    def test_invalid_env_var_raises(self):
        with self.assertRaises(ConfigEnvVarError) as ctx:
            EventPollConfig.load()
        self.assertEqual(ctx.exception.env_var, "EVENTPOLL_STREAM_FETCH_LIMIT")
        self.assertEqual(ctx.exception.value, "lots")

    @patch.dict(os.environ, {"EVENTPOLL_STREAM_FETCH_LIMIT": ""})
    def test_empty_env_var_is_ignored(self):
        self.assertIsNone(EnvVars.get("EVENTPOLL_STREAM_FETCH_LIMIT", type_hint=int))

    @patch.dict(os.environ, {"SOME_FLAG": "yes"})
    def test_bool_conversion(self):
        self.assertTrue(EnvVars.get("SOME_FLAG", type_hint=bool))


class TestValidation(unittest.TestCase):
    """Tests for configuration validation."""

    def test_invalid_retry_values(self):
        cases = [
            {"max_retries": 0},
            {"base_interval_ms": -1},
            {"backoff_multiplier": 0.5},
            {"request_timeout_ms": 0},
            {"jitter_factor": 1.0},
            {"max_retry_after_s": -1},
            {"rate_limit_hint": "whatever"},
        ]
        for overrides in cases:
            with self.subTest(overrides=overrides):
                with self.assertRaises(ConfigValidationError) as ctx:
                    EventPollConfig.load(retry=overrides, allow_env_override=False)
                self.assertEqual(ctx.exception.section, "retry")
                self.assertEqual(ctx.exception.field, next(iter(overrides)))

    def test_invalid_stream_values(self):
        for overrides in ({"base_url": "ftp://x"}, {"dedup_window_size": 0}, {"fetch_limit": 0}):
            with self.subTest(overrides=overrides):
                with self.assertRaises(ConfigValidationError):
                    EventPollConfig.load(stream=overrides, allow_env_override=False)

    def test_invalid_enterprise_values(self):
        for overrides in ({"polling_interval": -1}, {"chunk_size": 501}, {"chunk_size": 0}):
            with self.subTest(overrides=overrides):
                with self.assertRaises(ConfigValidationError):
                    EventPollConfig.load(enterprise=overrides, allow_env_override=False)

    def test_sections_validate_independently(self):
        self.assertIsInstance(RetryConfig().validate(), RetryConfig)
        self.assertIsInstance(StreamConfig().validate(), StreamConfig)
        self.assertIsInstance(EnterpriseConfig(polling_interval=0).validate(), EnterpriseConfig)


class TestExplain(unittest.TestCase):
    """Tests for explain_data() and explain()."""

    @patch.dict(os.environ, {"EVENTPOLL_STREAM_FETCH_LIMIT": "250"})
    def test_explain_data_tracks_sources(self):
        config = EventPollConfig.load(retry={"max_retries": 3})
        data = config.explain_data()

        retry = {entry.name: entry for entry in data["retry"]}
        stream = {entry.name: entry for entry in data["stream"]}

        self.assertEqual(retry["max_retries"].source, "load")
        self.assertEqual(retry["base_interval_ms"].source, "default")
        self.assertEqual(stream["fetch_limit"].source, "env:EVENTPOLL_STREAM_FETCH_LIMIT")
        self.assertEqual(stream["fetch_limit"].value, 250)
        self.assertEqual(set(data), {"retry", "stream", "enterprise"})

    def test_explain_writes_every_field(self):
        lines: list[str] = []
        EventPollConfig.load(allow_env_override=False).explain(output=lines.append)

        text = "\n".join(lines)
        self.assertIn("[retry]", text)
        self.assertIn("max_buffered_events", text)
        self.assertIn("chunk_size", text)

    def test_config_entry_truncates_long_values(self):
        entry = ConfigEntry("base_url", "https://" + "x" * 100, "load")
        self.assertEqual(len(entry.formatted_value), 50)
        self.assertTrue(entry.formatted_value.endswith("..."))
        self.assertEqual(ConfigEntry("x", None, "default").formatted_value, "None")


if __name__ == "__main__":
    unittest.main()
