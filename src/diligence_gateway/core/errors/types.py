"""Error taxonomy and the classified error record.

Kept free of gateway imports so that every layer (transports, classifier,
coordinator) can depend on it.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Classification of provider failures."""

    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    INVALID_REQUEST = "invalid_request"
    NETWORK_ERROR = "network_error"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"

    @property
    def retryable_by_default(self) -> bool:
        return self not in _TERMINAL_KINDS


_TERMINAL_KINDS = frozenset(
    {ErrorKind.AUTHENTICATION, ErrorKind.NOT_FOUND, ErrorKind.INVALID_REQUEST}
)


@dataclass
class GatewayError:
    """Classified error record.

    Created by the classifier from a raw failure, consumed by the retry
    decision, and appended to the per-provider rolling log.

    Attributes:
        kind: Error classification
        message: Human-readable description (already redacted)
        provider: Provider the failing call was made against
        retryable: Whether the same provider may be retried
        retry_after: Server-specified wait in seconds, if any
        status_code: HTTP status of the failure, if known
        timestamp: Wall-clock creation time (epoch seconds)
    """

    kind: ErrorKind
    message: str
    provider: str
    retryable: bool
    retry_after: Optional[float] = None
    status_code: Optional[int] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: Dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "provider": self.provider,
            "retryable": self.retryable,
            "timestamp": self.timestamp,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.status_code is not None:
            result["status_code"] = self.status_code
        return result
