"""Configuration package for diligence-gateway.

Sub-modules:
    parsing   – Boolean and numeric parsing helpers
    providers – WindowUnit, ProviderConfig, DEFAULT_PROVIDERS
    gateway   – CacheSettings, RateLimitSettings, RetrySettings,
                AvailabilitySettings, GatewayConfig (TOML + env loading)
"""

from diligence_gateway.config.gateway import (  # noqa: F401
    AvailabilitySettings,
    CacheSettings,
    GatewayConfig,
    RateLimitSettings,
    RetrySettings,
)
from diligence_gateway.config.parsing import _parse_bool, _try_parse_bool  # noqa: F401
from diligence_gateway.config.providers import (  # noqa: F401
    DEFAULT_PROVIDERS,
    ProviderConfig,
    WindowUnit,
    get_provider_config,
)
