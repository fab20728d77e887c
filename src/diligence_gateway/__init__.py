"""diligence-gateway: resilient multi-provider data access for due-diligence research.

Typical use:

    from diligence_gateway import GatewayConfig, GatewayRequest, RequestCoordinator

    coordinator = RequestCoordinator(GatewayConfig.from_env(), transports={...})
    await coordinator.initialize()
    response = await coordinator.execute_with_fallback(
        GatewayRequest(provider="polygon", endpoint="quote", params={"symbol": "ACME"})
    )
"""

from diligence_gateway.config import GatewayConfig, ProviderConfig, WindowUnit
from diligence_gateway.core.gateway import (
    ErrorDetail,
    ErrorKind,
    GatewayError,
    GatewayRequest,
    GatewayResponse,
    HttpTransport,
    RequestCoordinator,
    RequestOptions,
    ResponseCache,
    RetryEngine,
    SlidingWindowRateLimiter,
)

__all__ = [
    "GatewayConfig",
    "ProviderConfig",
    "WindowUnit",
    "ErrorDetail",
    "ErrorKind",
    "GatewayError",
    "GatewayRequest",
    "GatewayResponse",
    "HttpTransport",
    "RequestCoordinator",
    "RequestOptions",
    "ResponseCache",
    "RetryEngine",
    "SlidingWindowRateLimiter",
]
