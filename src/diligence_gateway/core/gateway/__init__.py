"""Resilient provider gateway.

Sub-modules:
    envelopes    - GatewayRequest, RequestOptions, GatewayResponse, ErrorDetail
    models       - RetryDecision, QueueStatus, ErrorStats, ProviderState, protocols
    cache        - ResponseCache (redis + local TTL store)
    rate_limiter - SlidingWindowRateLimiter (per-provider priority queues)
    retry        - ErrorClassifier, RetryEngine
    transports   - Transport protocol, HttpTransport
    manager      - RequestCoordinator
"""

from diligence_gateway.core.gateway.cache import CachedResponse, ResponseCache
from diligence_gateway.core.gateway.envelopes import (
    ErrorDetail,
    GatewayRequest,
    GatewayResponse,
    RequestOptions,
)
from diligence_gateway.core.gateway.manager import RequestCoordinator
from diligence_gateway.core.gateway.models import (
    ErrorKind,
    ErrorStats,
    GatewayError,
    GatewayStats,
    ProviderState,
    QueueStatus,
    RetryAction,
    RetryDecision,
)
from diligence_gateway.core.gateway.rate_limiter import SlidingWindowRateLimiter
from diligence_gateway.core.gateway.retry import ErrorClassifier, RetryEngine
from diligence_gateway.core.gateway.transports import HttpTransport, Transport

__all__ = [
    # Envelopes
    "ErrorDetail",
    "GatewayRequest",
    "GatewayResponse",
    "RequestOptions",
    # Models
    "ErrorKind",
    "ErrorStats",
    "GatewayError",
    "GatewayStats",
    "ProviderState",
    "QueueStatus",
    "RetryAction",
    "RetryDecision",
    # Components
    "CachedResponse",
    "ResponseCache",
    "SlidingWindowRateLimiter",
    "ErrorClassifier",
    "RetryEngine",
    "Transport",
    "HttpTransport",
    "RequestCoordinator",
]
