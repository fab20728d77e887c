"""Gateway data models, enums, and protocols.

Defines the internal types shared across the gateway sub-package:
- ErrorKind / GatewayError (re-exported from ``core.errors.types``)
- RetryAction / RetryDecision returned by the retry engine
- QueueStatus, ErrorStats, ProviderState and GatewayStats for observability
- SleepFunc / Clock protocols for injectable time control

The request/response envelopes that cross the package boundary live in
``envelopes``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from diligence_gateway.core.errors.types import ErrorKind, GatewayError

__all__ = [
    "ErrorKind",
    "GatewayError",
    "RetryAction",
    "RetryDecision",
    "QueueStatus",
    "ErrorStats",
    "ProviderState",
    "GatewayStats",
    "SleepFunc",
    "Clock",
]


class RetryAction(str, Enum):
    """What the coordinator should do after a failed attempt."""

    RETRY = "retry"
    FALLBACK = "fallback"
    GIVE_UP = "give_up"


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of ``RetryEngine.decide``."""

    action: RetryAction
    delay: float = 0.0
    fallback_provider: Optional[str] = None

    @property
    def should_retry(self) -> bool:
        return self.action is RetryAction.RETRY


@dataclass
class QueueStatus:
    """Snapshot of one provider's limiter state."""

    queue_length: int = 0
    in_flight: int = 0
    recent_requests: int = 0
    estimated_wait: float = 0.0
    draining: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queue_length": self.queue_length,
            "in_flight": self.in_flight,
            "recent_requests": self.recent_requests,
            "estimated_wait": round(self.estimated_wait, 3),
            "draining": self.draining,
        }


@dataclass
class ErrorStats:
    """Rolling error statistics for one provider."""

    total_errors: int = 0
    errors_by_kind: Dict[str, int] = field(default_factory=dict)
    recent_errors: List[GatewayError] = field(default_factory=list)
    error_rate: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_errors": self.total_errors,
            "errors_by_kind": dict(self.errors_by_kind),
            "recent_errors": [e.to_dict() for e in self.recent_errors],
            "error_rate": self.error_rate,
        }


@dataclass
class ProviderState:
    """Coordinator-side health tracking for one provider."""

    name: str
    available: bool = True
    request_count: int = 0
    error_count: int = 0
    avg_response_time: float = 0.0
    unavailable_until: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "available": self.available,
            "request_count": self.request_count,
            "error_count": self.error_count,
            "avg_response_time": round(self.avg_response_time, 4),
        }


@dataclass
class GatewayStats:
    """Coordinator-wide request counters."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    fallbacks: int = 0
    total_response_time: float = 0.0

    @property
    def avg_response_time(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_response_time / self.total_requests

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "fallbacks": self.fallbacks,
            "avg_response_time": round(self.avg_response_time, 4),
        }


class SleepFunc(Protocol):
    """Protocol for injectable sleep function."""

    async def __call__(self, seconds: float) -> None: ...


class Clock(Protocol):
    """Protocol for injectable monotonic clock."""

    def __call__(self) -> float: ...
