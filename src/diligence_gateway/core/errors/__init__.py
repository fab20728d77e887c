"""Unified error hierarchy for diligence-gateway.

Usage:
    from diligence_gateway.core.errors import ClassifiedError, TransportError
"""

from diligence_gateway.core.errors.gateway import (
    ClassifiedError,
    GatewayException,
    ProviderNotRegisteredError,
    ProviderUnavailableError,
    QueueClearedError,
)
from diligence_gateway.core.errors.transport import (
    AuthenticationError,
    RateLimitError,
    TransportError,
)
from diligence_gateway.core.errors.types import ErrorKind, GatewayError

__all__ = [
    # Types
    "ErrorKind",
    "GatewayError",
    # Gateway
    "GatewayException",
    "ClassifiedError",
    "QueueClearedError",
    "ProviderNotRegisteredError",
    "ProviderUnavailableError",
    # Transport
    "TransportError",
    "RateLimitError",
    "AuthenticationError",
]
