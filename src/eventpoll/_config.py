"""
Configuration for the eventpoll SDK.

This module provides a simple configuration system following Convention over
Configuration (CoC): every setting has a sensible default, environment
variables (EVENTPOLL_*) may override it, and explicit overrides passed to
`EventPollConfig.load()` win over both.

Configuration objects are immutable values. There is no process-wide mutable
configuration: callers load a config once and hand the pieces they need
(e.g. a `RetryPolicy`) to the components they build.

Hierarchy of precedence (highest to lowest):
1. Options passed to component constructors
2. Overrides passed to EventPollConfig.load()
3. Environment variables (EVENTPOLL_*) - when allow_env_override=True
4. Hardcoded defaults (in dataclass fields)

Example:
    >>> from eventpoll import EventPollConfig, RetryPolicy
    >>> config = EventPollConfig.load(retry={"max_retries": 3})
    >>> policy = RetryPolicy.from_config(config.retry)
    >>> config.stream.dedup_window_size
    5000
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from typing import Any, Self

# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ValueError):
    """Raised when an environment variable has an invalid value."""

    def __init__(
        self,
        env_var: str,
        value: str,
        expected_type: str,
        cause: Exception | None = None,
    ):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"Invalid value for {env_var}: '{value}' (expected {expected_type})")
        self.__cause__ = cause


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""

    def __init__(
        self,
        field: str,
        value: Any,
        message: str,
        section: str | None = None,
    ):
        self.field = field
        self.value = value
        self.section = section
        prefix = f"[{section}] " if section else ""
        super().__init__(f"{prefix}Invalid value for '{field}': {value!r}. {message}")


# =============================================================================
# Environment Variables
# =============================================================================


class EnvVars:
    """
    Utility class for reading environment variables with type conversion.

    Example:
        >>> EnvVars.get("EVENTPOLL_RETRY_MAX_RETRIES", type_hint=int)
        5
        >>> EnvVars.get("UNDEFINED_VAR")
        None
    """

    @staticmethod
    def get(
        var_name: str,
        type_hint: Any = str,
        converter: Callable[[str], Any] | None = None,
    ) -> Any:
        """
        Read an environment variable with optional type conversion.

        Returns:
            The converted value, or None if env var is not set/empty.

        Raises:
            ConfigEnvVarError: If the value cannot be converted.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:  # None or empty string
            return None

        actual_converter = converter or EnvVars._infer_converter(type_hint)
        try:
            return actual_converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=type_hint.__name__ if hasattr(type_hint, "__name__") else str(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _infer_converter(type_hint: Any) -> Callable[[str], Any]:
        """
        Infer converter function from type hint.

        Handles both actual types and string annotations (PEP 563).
        """
        type_str = str(type_hint)

        if type_hint is int or type_str == "int":
            return int
        if type_hint is float or type_str == "float":
            return float
        if type_hint is bool or type_str == "bool":
            return lambda v: v.lower() in ("true", "1", "yes")
        return str


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for immutable configuration dataclasses.

    Provides `.with_overrides()` for creating new instances with partial field
    updates, and `.with_env_vars()` for applying env vars declared in field
    metadata. Unknown field names are rejected to catch typos early.

    Example:
        >>> config = RetryConfig()
        >>> custom = config.with_overrides({"max_retries": 3})
        >>> custom.max_retries
        3
    """

    def with_overrides(self, overrides: dict[str, Any]) -> Self:
        """
        Return a new instance with specified fields overridden.

        None values are ignored.

        Raises:
            ValueError: If overrides contains unknown field names.
        """
        if not overrides:
            return self

        valid_fields = {f.name for f in fields(self)}
        invalid_fields = set(overrides.keys()) - valid_fields

        if invalid_fields:
            raise ValueError(
                f"Unknown config fields: {invalid_fields}. "
                f"Valid fields are: {valid_fields}"
            )

        filtered = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **filtered) if filtered else self

    def env_overrides(self) -> dict[str, tuple[str, Any]]:
        """
        Read env vars declared in field metadata.

        Returns:
            Dict of field name to (env var name, converted value), for set vars only.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        found: dict[str, tuple[str, Any]] = {}
        for f in fields(self):
            env_var = f.metadata.get("env")
            if env_var:
                value = EnvVars.get(
                    var_name=env_var,
                    type_hint=f.type,
                    converter=f.metadata.get("converter"),
                )
                if value is not None:
                    found[f.name] = (env_var, value)
        return found

    def with_env_vars(self) -> Self:
        """
        Return new instance with environment variables applied.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        return self.with_overrides({name: value for name, (_, value) in self.env_overrides().items()})


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass(frozen=True)
class RetryConfig(OverridableConfig):
    """
    Retry settings used by every `RetryingExecutor` built from this config.

    Attributes:
        max_retries: Maximum attempts for one logical request (first attempt included).
            Env var: EVENTPOLL_RETRY_MAX_RETRIES

        base_interval_ms: Wait before the first retry, in milliseconds.
            Subsequent retries multiply it by backoff_multiplier each time.
            Env var: EVENTPOLL_RETRY_BASE_INTERVAL_MS

        backoff_multiplier: Growth factor between consecutive waits.
            Env var: EVENTPOLL_RETRY_BACKOFF_MULTIPLIER

        request_timeout_ms: Per-attempt transport timeout, in milliseconds.
            Env var: EVENTPOLL_RETRY_REQUEST_TIMEOUT_MS

        jitter_factor: Random variation applied to each wait (0.1 = +/- 10%).
            Env var: EVENTPOLL_RETRY_JITTER_FACTOR

        max_retry_after_s: Largest Retry-After hint honored, in seconds.
            Env var: EVENTPOLL_RETRY_MAX_RETRY_AFTER_S

        rate_limit_hint: "override_wait" or "reset_attempts" (see RateLimitHintPolicy).
            Env var: EVENTPOLL_RETRY_RATE_LIMIT_HINT
    """

    max_retries: int = field(default=5, metadata={"env": "EVENTPOLL_RETRY_MAX_RETRIES"})
    base_interval_ms: int = field(default=2000, metadata={"env": "EVENTPOLL_RETRY_BASE_INTERVAL_MS"})
    backoff_multiplier: float = field(default=2.0, metadata={"env": "EVENTPOLL_RETRY_BACKOFF_MULTIPLIER"})
    request_timeout_ms: int = field(default=60000, metadata={"env": "EVENTPOLL_RETRY_REQUEST_TIMEOUT_MS"})
    jitter_factor: float = field(default=0.1, metadata={"env": "EVENTPOLL_RETRY_JITTER_FACTOR"})
    max_retry_after_s: float = field(default=60.0, metadata={"env": "EVENTPOLL_RETRY_MAX_RETRY_AFTER_S"})
    rate_limit_hint: str = field(default="override_wait", metadata={"env": "EVENTPOLL_RETRY_RATE_LIMIT_HINT"})

    def validate(self) -> Self:
        """Validate retry configuration fields."""
        if self.max_retries < 1:
            raise ConfigValidationError(
                "max_retries", self.max_retries,
                "Must be >= 1.", section="retry"
            )
        if self.base_interval_ms < 0:
            raise ConfigValidationError(
                "base_interval_ms", self.base_interval_ms,
                "Must be >= 0.", section="retry"
            )
        if self.backoff_multiplier < 1:
            raise ConfigValidationError(
                "backoff_multiplier", self.backoff_multiplier,
                "Must be >= 1.", section="retry"
            )
        if self.request_timeout_ms <= 0:
            raise ConfigValidationError(
                "request_timeout_ms", self.request_timeout_ms,
                "Must be greater than 0.", section="retry"
            )
        if not 0 <= self.jitter_factor < 1:
            raise ConfigValidationError(
                "jitter_factor", self.jitter_factor,
                "Must be >= 0 and < 1.", section="retry"
            )
        if self.max_retry_after_s < 0:
            raise ConfigValidationError(
                "max_retry_after_s", self.max_retry_after_s,
                "Must be >= 0.", section="retry"
            )
        if self.rate_limit_hint not in ("override_wait", "reset_attempts"):
            raise ConfigValidationError(
                "rate_limit_hint", self.rate_limit_hint,
                "Must be 'override_wait' or 'reset_attempts'.", section="retry"
            )
        return self


@dataclass(frozen=True)
class StreamConfig(OverridableConfig):
    """
    Settings for the long-polling `EventStream`.

    Attributes:
        base_url: Base URL of the events API (the stream calls `{base_url}/events`).
            Env var: EVENTPOLL_STREAM_BASE_URL

        dedup_window_size: Number of recent event ids remembered for deduplication.
            Env var: EVENTPOLL_STREAM_DEDUP_WINDOW_SIZE

        fetch_limit: Maximum events requested per page.
            Env var: EVENTPOLL_STREAM_FETCH_LIMIT

        max_buffered_events: Undelivered events held before the polling loop blocks.
            Env var: EVENTPOLL_STREAM_MAX_BUFFERED_EVENTS
    """

    base_url: str = field(default="https://api.box.com/2.0", metadata={"env": "EVENTPOLL_STREAM_BASE_URL"})
    dedup_window_size: int = field(default=5000, metadata={"env": "EVENTPOLL_STREAM_DEDUP_WINDOW_SIZE"})
    fetch_limit: int = field(default=100, metadata={"env": "EVENTPOLL_STREAM_FETCH_LIMIT"})
    max_buffered_events: int = field(default=1000, metadata={"env": "EVENTPOLL_STREAM_MAX_BUFFERED_EVENTS"})

    @property
    def events_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/events"

    def validate(self) -> Self:
        """Validate stream configuration fields."""
        if not (self.base_url.startswith("http://") or self.base_url.startswith("https://")):
            raise ConfigValidationError(
                "base_url", self.base_url,
                "Must start with 'http://' or 'https://'.", section="stream"
            )
        if self.dedup_window_size <= 0:
            raise ConfigValidationError(
                "dedup_window_size", self.dedup_window_size,
                "Must be greater than 0.", section="stream"
            )
        if self.fetch_limit <= 0:
            raise ConfigValidationError(
                "fetch_limit", self.fetch_limit,
                "Must be greater than 0.", section="stream"
            )
        if self.max_buffered_events <= 0:
            raise ConfigValidationError(
                "max_buffered_events", self.max_buffered_events,
                "Must be greater than 0.", section="stream"
            )
        return self


@dataclass(frozen=True)
class EnterpriseConfig(OverridableConfig):
    """
    Settings for the interval-polled `EnterpriseEventStream`.

    Attributes:
        polling_interval: Seconds to wait between polls once the stream has
            caught up. 0 ends the stream when it catches up.
            Env var: EVENTPOLL_ENTERPRISE_POLLING_INTERVAL

        chunk_size: Events requested per call (max 500).
            Env var: EVENTPOLL_ENTERPRISE_CHUNK_SIZE
    """

    polling_interval: float = field(default=60.0, metadata={"env": "EVENTPOLL_ENTERPRISE_POLLING_INTERVAL"})
    chunk_size: int = field(default=500, metadata={"env": "EVENTPOLL_ENTERPRISE_CHUNK_SIZE"})

    def validate(self) -> Self:
        """Validate enterprise stream configuration fields."""
        if self.polling_interval < 0:
            raise ConfigValidationError(
                "polling_interval", self.polling_interval,
                "Must be >= 0.", section="enterprise"
            )
        if not 0 < self.chunk_size <= 500:
            raise ConfigValidationError(
                "chunk_size", self.chunk_size,
                "Must be between 1 and 500.", section="enterprise"
            )
        return self


@dataclass(frozen=True)
class ConfigEntry:
    """
    A configuration field with its resolved value and source.

    Attributes:
        name: The field name (e.g., "max_retries").
        value: The resolved value.
        source: "default", "env:VAR_NAME" or "load".

    Example:
        >>> entry = ConfigEntry("max_retries", 3, "load")
        >>> entry.formatted_value
        '3'
    """

    name: str
    value: Any
    source: str

    @property
    def formatted_value(self) -> str:
        """Return value formatted for display, truncating long strings."""
        if self.value is None:
            return "None"

        str_value = str(self.value)
        max_length = 50
        if len(str_value) > max_length:
            return str_value[: max_length - 3] + "..."
        return str_value


_SECTIONS = ("retry", "stream", "enterprise")


@dataclass(frozen=True)
class EventPollConfig:
    """
    Root configuration for the eventpoll SDK.

    Attributes:
        retry: Retry settings (see RetryConfig).
        stream: Long-polling stream settings (see StreamConfig).
        enterprise: Enterprise (admin logs) stream settings (see EnterpriseConfig).

    Example:
        >>> config = EventPollConfig.load(stream={"fetch_limit": 500})
        >>> config.stream.fetch_limit
        500
    """

    retry: RetryConfig = field(default_factory=RetryConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    enterprise: EnterpriseConfig = field(default_factory=EnterpriseConfig)
    _sources: dict[str, dict[str, str]] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def load(
        cls,
        *,
        retry: dict[str, Any] | None = None,
        stream: dict[str, Any] | None = None,
        enterprise: dict[str, Any] | None = None,
        allow_env_override: bool = True,
    ) -> EventPollConfig:
        """
        Build a validated config from defaults, env vars and explicit overrides.

        Args:
            retry: Retry config overrides.
            stream: Stream config overrides.
            enterprise: Enterprise stream config overrides.
            allow_env_override: If True (default), EVENTPOLL_* env vars apply
                to fields not given explicitly.

        Raises:
            ValueError: If any dict contains unknown field names.
            ConfigEnvVarError: If an env var cannot be parsed.
            ConfigValidationError: If any value fails validation.
        """
        config = cls()
        if allow_env_override:
            config = config.with_env_vars()
        config = config.with_section_overrides(retry=retry, stream=stream, enterprise=enterprise)
        return config.validate()

    def with_env_vars(self) -> EventPollConfig:
        """Return a new config with EVENTPOLL_* environment variables applied."""
        sections: dict[str, OverridableConfig] = {}
        sources = self._copy_sources()
        for name in _SECTIONS:
            section: OverridableConfig = getattr(self, name)
            found = section.env_overrides()
            sections[name] = section.with_overrides({k: v for k, (_, v) in found.items()})
            for field_name, (env_var, _) in found.items():
                sources.setdefault(name, {})[field_name] = f"env:{env_var}"
        return replace(self, **sections, _sources=sources)

    def with_section_overrides(
        self,
        *,
        retry: dict[str, Any] | None = None,
        stream: dict[str, Any] | None = None,
        enterprise: dict[str, Any] | None = None,
    ) -> EventPollConfig:
        """
        Return a new config with overrides applied to nested sections.

        Each section dict is merged with the existing section config,
        only overriding the specified fields.
        """
        overrides = {"retry": retry or {}, "stream": stream or {}, "enterprise": enterprise or {}}
        sources = self._copy_sources()
        sections: dict[str, OverridableConfig] = {}
        for name, values in overrides.items():
            sections[name] = getattr(self, name).with_overrides(values)
            for field_name, value in values.items():
                if value is not None:
                    sources.setdefault(name, {})[field_name] = "load"
        return replace(self, **sections, _sources=sources)

    def validate(self) -> EventPollConfig:
        """
        Validate every section.

        Raises:
            ConfigValidationError: If any config value is invalid.
        """
        self.retry.validate()
        self.stream.validate()
        self.enterprise.validate()
        return self

    def explain_data(self) -> dict[str, list[ConfigEntry]]:
        """
        Return config data with the source of each value.

        Example:
            >>> for entry in EventPollConfig.load().explain_data()["retry"]:
            ...     print(f"{entry.name}: {entry.value} ({entry.source})")
            max_retries: 5 (default)
            ...
        """
        result: dict[str, list[ConfigEntry]] = {}
        for section_name in _SECTIONS:
            section_config = getattr(self, section_name)
            section_sources = self._sources.get(section_name, {})
            result[section_name] = [
                ConfigEntry(
                    name=f.name,
                    value=getattr(section_config, f.name),
                    source=section_sources.get(f.name, "default"),
                )
                for f in fields(section_config)
            ]
        return result

    def explain(self, output: Callable[[str], None] = print) -> None:
        """
        Print current configuration with sources.

        Args:
            output: Callable to output each line. Defaults to print.
                    Can be used with logging: `config.explain(logger.info)`
        """
        name_width = 25
        output("EventPoll Configuration:")
        output("=" * 80)
        for section_name, entries in self.explain_data().items():
            output(f"[{section_name}]")
            for entry in entries:
                dots = "." * (name_width - len(entry.name))
                marker = "✎" if entry.source != "default" else " "
                output(f"  {entry.name} {dots} {entry.formatted_value.ljust(50)} {marker} {entry.source}")
        output("=" * 80)

    def _copy_sources(self) -> dict[str, dict[str, str]]:
        return {section: dict(values) for section, values in self._sources.items()}
