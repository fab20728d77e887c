"""Audit logging for gateway events.

Provides structured audit records for cache, rate-limit, retry and fallback
decisions with automatic correlation ID population from request context.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from diligence_gateway.core.context import get_correlation_id

logger = logging.getLogger(__name__)


class GatewayEventType(Enum):
    """Types of audit events emitted by the gateway."""

    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    RATE_LIMIT_WAIT = "rate_limit_wait"
    QUEUE_CLEARED = "queue_cleared"
    RETRY_ATTEMPT = "retry_attempt"
    FALLBACK = "fallback"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER_RECOVERED = "provider_recovered"
    REQUEST_FAILED = "request_failed"
    OTHER = "other"


@dataclass
class AuditEvent:
    """Structured audit event."""

    event_type: GatewayEventType
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    correlation_id: Optional[str] = None

    def __post_init__(self) -> None:
        """Auto-populate correlation_id from context if not set."""
        if self.correlation_id is None:
            self.correlation_id = get_correlation_id() or None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "details": self.details,
        }
        if self.correlation_id:
            result["correlation_id"] = self.correlation_id
        return result


class AuditLogger:
    """
    Structured audit logging for gateway decisions.

    Audit records go to a dedicated child logger so operators can route or
    silence them independently of regular diagnostics.
    """

    def __init__(self):
        self._logger = logging.getLogger(f"{__name__}.audit")

    def log(self, event: AuditEvent) -> None:
        """Log an audit event."""
        self._logger.info(f"AUDIT: {event.event_type.value}", extra={"audit": event.to_dict()})


# Global audit logger
_audit = AuditLogger()


def audit_log(event_type: str, **details: Any) -> None:
    """
    Convenience function for audit logging.

    Args:
        event_type: One of the ``GatewayEventType`` values; unknown names are
                    logged as ``other`` with the original name preserved
        **details: Additional details to include in the audit log
    """
    try:
        event_enum = GatewayEventType(event_type)
    except ValueError:
        event_enum = GatewayEventType.OTHER
        details["original_event_type"] = event_type

    _audit.log(AuditEvent(event_type=event_enum, details=details))
