"""Provider registration configuration.

Maps provider names to their static rate limits, concurrency caps, fallback
order, timeouts and cache TTLs, and provides a lookup with sensible defaults.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class WindowUnit(str, Enum):
    """Rate-limit window units accepted at provider registration."""

    SECOND = "second"
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    MONTH = "month"

    @property
    def seconds(self) -> float:
        return _WINDOW_SECONDS[self]


_WINDOW_SECONDS: Dict[WindowUnit, float] = {
    WindowUnit.SECOND: 1.0,
    WindowUnit.MINUTE: 60.0,
    WindowUnit.HOUR: 60.0 * 60,
    WindowUnit.DAY: 24 * 60.0 * 60,
    WindowUnit.MONTH: 30 * 24 * 60.0 * 60,
}


@dataclass(frozen=True)
class ProviderConfig:
    """Static configuration for one external provider.

    Immutable once registered with a coordinator.

    Attributes:
        name: Provider identifier used in requests (e.g. ``"polygon"``)
        requests_per_window: Calls admitted per sliding window
        window_unit: Window length as a named unit
        window_override_seconds: Explicit window length; wins over ``window_unit``
        max_concurrent: Maximum in-flight calls
        fallback_providers: Ordered providers to try once this one is exhausted
        default_timeout_ms: Per-call timeout when the request sets none
        default_cache_ttl: Cache TTL in seconds when the request sets none
    """

    name: str
    requests_per_window: int = 60
    window_unit: WindowUnit = WindowUnit.MINUTE
    window_override_seconds: Optional[float] = None
    max_concurrent: int = 5
    fallback_providers: Tuple[str, ...] = field(default_factory=tuple)
    default_timeout_ms: int = 30_000
    default_cache_ttl: int = 3600

    def __post_init__(self) -> None:
        if self.requests_per_window < 1:
            raise ValueError(f"{self.name}: requests_per_window must be >= 1")
        if self.max_concurrent < 1:
            raise ValueError(f"{self.name}: max_concurrent must be >= 1")
        if self.name in self.fallback_providers:
            raise ValueError(f"{self.name}: provider cannot fall back to itself")
        # Accept lists from TOML and callers; store as a tuple.
        object.__setattr__(self, "fallback_providers", tuple(self.fallback_providers))

    @property
    def window_seconds(self) -> float:
        if self.window_override_seconds is not None:
            return float(self.window_override_seconds)
        return self.window_unit.seconds

    @property
    def default_timeout_seconds(self) -> float:
        return self.default_timeout_ms / 1000.0

    @classmethod
    def from_toml_dict(cls, name: str, data: Dict[str, Any]) -> "ProviderConfig":
        """Create config from a TOML dict (typically a ``[providers.<name>]`` table).

        Args:
            name: Provider identifier (the table name)
            data: Dict from TOML parsing

        Returns:
            ProviderConfig instance
        """
        window = data.get("window_seconds")
        return cls(
            name=name,
            requests_per_window=int(data.get("requests_per_window", 60)),
            window_unit=WindowUnit(str(data.get("window_unit", "minute")).lower()),
            window_override_seconds=float(window) if window is not None else None,
            max_concurrent=int(data.get("max_concurrent", 5)),
            fallback_providers=tuple(data.get("fallback_providers", ())),
            default_timeout_ms=int(data.get("default_timeout_ms", 30_000)),
            default_cache_ttl=int(data.get("default_cache_ttl", 3600)),
        )


# Provider limits used by the due-diligence deployment
DEFAULT_PROVIDERS: Dict[str, ProviderConfig] = {
    "alphavantage": ProviderConfig(
        name="alphavantage",
        requests_per_window=500,
        window_unit=WindowUnit.DAY,
        max_concurrent=5,
        fallback_providers=("polygon",),
        # Company overviews and statements rarely change intra-day
        default_cache_ttl=86_400,
    ),
    "polygon": ProviderConfig(
        name="polygon",
        # Free tier: 5 calls per minute
        requests_per_window=5,
        window_unit=WindowUnit.MINUTE,
        max_concurrent=3,
        fallback_providers=("alphavantage",),
        default_cache_ttl=300,
    ),
    "exa": ProviderConfig(
        name="exa",
        requests_per_window=1000,
        window_unit=WindowUnit.MONTH,
        max_concurrent=5,
        fallback_providers=("perplexity",),
    ),
    "perplexity": ProviderConfig(
        name="perplexity",
        requests_per_window=100,
        window_unit=WindowUnit.MINUTE,
        max_concurrent=3,
        fallback_providers=("exa",),
        default_timeout_ms=60_000,
    ),
    "github": ProviderConfig(
        name="github",
        requests_per_window=5000,
        window_unit=WindowUnit.HOUR,
        max_concurrent=10,
    ),
    "newsapi": ProviderConfig(
        name="newsapi",
        requests_per_window=500,
        window_unit=WindowUnit.DAY,
        max_concurrent=5,
        default_cache_ttl=900,
    ),
}


def get_provider_config(provider_name: str) -> ProviderConfig:
    """Get configuration for a provider.

    Args:
        provider_name: Name of the provider (e.g., 'polygon', 'exa')

    Returns:
        Provider-specific config or a default config if provider not found
    """
    return DEFAULT_PROVIDERS.get(provider_name, ProviderConfig(name=provider_name))
