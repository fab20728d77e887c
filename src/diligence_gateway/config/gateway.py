"""GatewayConfig dataclass and its loading logic.

Priority (highest to lowest):
1. Environment variables
2. TOML file (``DILIGENCE_GATEWAY_CONFIG_FILE`` or ./diligence-gateway.toml)
3. Default values
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # Python < 3.11 fallback

from diligence_gateway.config.parsing import (
    _parse_bool,
    _parse_float_env,
    _parse_int_env,
    _try_parse_bool,
)
from diligence_gateway.config.providers import DEFAULT_PROVIDERS, ProviderConfig

logger = logging.getLogger(__name__)

_CONFIG_FILE_ENV_VAR = "DILIGENCE_GATEWAY_CONFIG_FILE"
_PROJECT_CONFIG_NAME = "diligence-gateway.toml"


@dataclass
class CacheSettings:
    """Configuration for the response cache.

    Attributes:
        enabled: Master switch for cache reads and writes
        redis_url: Shared remote store; None keeps the cache local-only
        default_ttl: TTL in seconds when neither request nor provider sets one
        key_prefix: Prefix for every cache key
        max_local_entries: Local store size that triggers an expiry sweep
    """

    enabled: bool = True
    redis_url: Optional[str] = None
    default_ttl: int = 3600
    key_prefix: str = "mcp:"
    max_local_entries: int = 1000

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "CacheSettings":
        """Create settings from TOML dict (typically [cache] section)."""
        return cls(
            enabled=_parse_bool(data.get("enabled", True)),
            redis_url=data.get("redis_url") or None,
            default_ttl=int(data.get("default_ttl", 3600)),
            key_prefix=str(data.get("key_prefix", "mcp:")),
            max_local_entries=int(data.get("max_local_entries", 1000)),
        )


@dataclass
class RateLimitSettings:
    """Configuration shared by every provider's limiter.

    Attributes:
        drain_spacing: Seconds waited between dequeued calls to avoid bursts
        max_queue_length: Queue depth above which the limiter reports unhealthy
    """

    drain_spacing: float = 0.01
    max_queue_length: int = 1000

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "RateLimitSettings":
        """Create settings from TOML dict (typically [rate_limit] section)."""
        return cls(
            drain_spacing=float(data.get("drain_spacing", 0.01)),
            max_queue_length=int(data.get("max_queue_length", 1000)),
        )


@dataclass
class RetrySettings:
    """Retry, backoff and error-statistics configuration.

    Attributes:
        max_attempts: Attempts per provider, including the first call
        initial_delay: Backoff for the first retry (seconds)
        max_delay: Backoff cap (seconds)
        exponential_base: Multiplier per attempt
        jitter: Upper bound of the random delay added to each backoff (seconds)
        rate_limit_retry_after: Wait assumed for a 429 that names no retry-after
        error_window: Trailing window for the per-provider error rate (seconds)
        max_error_rate: Errors per window above which health turns false
        max_error_log_size: Rolling error log length per provider
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.5
    rate_limit_retry_after: float = 60.0
    error_window: float = 60.0
    max_error_rate: int = 10
    max_error_log_size: int = 100

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "RetrySettings":
        """Create settings from TOML dict (typically [retry] section)."""
        return cls(
            max_attempts=int(data.get("max_attempts", 3)),
            initial_delay=float(data.get("initial_delay", 1.0)),
            max_delay=float(data.get("max_delay", 30.0)),
            exponential_base=float(data.get("exponential_base", 2.0)),
            jitter=float(data.get("jitter", 0.5)),
            rate_limit_retry_after=float(data.get("rate_limit_retry_after", 60.0)),
            error_window=float(data.get("error_window", 60.0)),
            max_error_rate=int(data.get("max_error_rate", 10)),
            max_error_log_size=int(data.get("max_error_log_size", 100)),
        )


@dataclass
class AvailabilitySettings:
    """Thresholds for marking a provider temporarily unavailable.

    Attributes:
        error_ratio: Failed/total ratio above which the provider is disabled
        min_requests: Requests required before the ratio is considered
        recovery_seconds: How long a disabled provider stays disabled
    """

    error_ratio: float = 0.5
    min_requests: int = 10
    recovery_seconds: float = 60.0

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "AvailabilitySettings":
        """Create settings from TOML dict (typically [availability] section)."""
        return cls(
            error_ratio=float(data.get("error_ratio", 0.5)),
            min_requests=int(data.get("min_requests", 10)),
            recovery_seconds=float(data.get("recovery_seconds", 60.0)),
        )


# TOML table name and GatewayConfig attribute share the same name
_SETTINGS_SECTIONS = (
    ("cache", CacheSettings),
    ("rate_limit", RateLimitSettings),
    ("retry", RetrySettings),
    ("availability", AvailabilitySettings),
)


@dataclass
class GatewayConfig:
    """Gateway configuration with support for env vars and TOML overrides."""

    providers: Dict[str, ProviderConfig] = field(default_factory=lambda: dict(DEFAULT_PROVIDERS))
    cache: CacheSettings = field(default_factory=CacheSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    availability: AvailabilitySettings = field(default_factory=AvailabilitySettings)

    # None tries every configured fallback once
    max_fallback_attempts: Optional[int] = None

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, config_file: Optional[str] = None) -> "GatewayConfig":
        """Create configuration from environment variables and optional TOML file."""
        config = cls()

        toml_path = config_file or os.environ.get(_CONFIG_FILE_ENV_VAR)
        if toml_path:
            config._load_toml(Path(toml_path))
        else:
            project_config = Path(_PROJECT_CONFIG_NAME)
            if project_config.exists():
                config._load_toml(project_config)
                logger.debug(f"Loaded project config from {project_config}")

        config._load_env()
        config._validate()
        return config

    def _load_toml(self, path: Path) -> None:
        """Load configuration from TOML file."""
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.error(f"Error loading config file {path}: {e}")
            return

        if "logging" in data and "level" in data["logging"]:
            self.log_level = str(data["logging"]["level"]).upper()

        # A malformed table keeps that section's defaults; the rest still load
        for section, settings_cls in _SETTINGS_SECTIONS:
            if section not in data:
                continue
            try:
                setattr(self, section, settings_cls.from_toml_dict(data[section]))
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring [{section}] in {path}: {e}")

        if "fallback" in data and "max_attempts" in data["fallback"]:
            try:
                self.max_fallback_attempts = int(data["fallback"]["max_attempts"])
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring [fallback] max_attempts in {path}: {e}")

        # Provider tables replace defaults of the same name; others are kept
        for name, table in data.get("providers", {}).items():
            if not isinstance(table, dict):
                logger.warning(f"Ignoring [providers.{name}] in {path}: expected a table")
                continue
            try:
                self.providers[name] = ProviderConfig.from_toml_dict(name, table)
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring [providers.{name}] in {path}: {e}")

    def _load_env(self) -> None:
        """Load configuration from environment variables."""
        if level := os.environ.get("DILIGENCE_GATEWAY_LOG_LEVEL"):
            self.log_level = level.upper()

        redis_url = os.environ.get("DILIGENCE_GATEWAY_REDIS_URL") or os.environ.get("REDIS_URL")
        if redis_url:
            self.cache.redis_url = redis_url

        if enabled := os.environ.get("DILIGENCE_GATEWAY_CACHE_ENABLED"):
            parsed = _try_parse_bool(enabled)
            if parsed is None:
                logger.warning(f"Invalid DILIGENCE_GATEWAY_CACHE_ENABLED value: {enabled!r}")
            else:
                self.cache.enabled = parsed

        legacy_ttl = _parse_int_env("CACHE_TTL_SECONDS", self.cache.default_ttl)
        self.cache.default_ttl = _parse_int_env("DILIGENCE_GATEWAY_CACHE_TTL", legacy_ttl)

        self.retry.max_attempts = _parse_int_env(
            "DILIGENCE_GATEWAY_MAX_RETRIES", self.retry.max_attempts
        )
        self.retry.max_delay = _parse_float_env(
            "DILIGENCE_GATEWAY_MAX_RETRY_DELAY", self.retry.max_delay
        )

    def _validate(self) -> None:
        if self.retry.max_attempts < 1:
            logger.warning(f"retry.max_attempts={self.retry.max_attempts} is invalid, using 1")
            self.retry.max_attempts = 1
        for name, provider in self.providers.items():
            for fallback in provider.fallback_providers:
                if fallback not in self.providers:
                    logger.warning(f"Provider '{name}' falls back to unknown provider '{fallback}'")

    def setup_logging(self) -> None:
        """Apply ``log_level`` to the package logger."""
        logging.getLogger("diligence_gateway").setLevel(
            getattr(logging, self.log_level.upper(), logging.INFO)
        )
