"""
Observability utilities for diligence-gateway.

Provides audit logging for gateway decisions and credential redaction for
anything that reaches a log record or a response envelope.

    from diligence_gateway.core.observability import audit_log, redact_sensitive_data

    audit_log("fallback", provider="polygon", fallback="alphavantage")
"""

from diligence_gateway.core.observability.audit import (
    AuditEvent,
    AuditLogger,
    GatewayEventType,
    audit_log,
)
from diligence_gateway.core.observability.redaction import (
    SENSITIVE_PATTERNS,
    redact_for_logging,
    redact_sensitive_data,
)

__all__ = [
    # Audit
    "AuditEvent",
    "AuditLogger",
    "GatewayEventType",
    "audit_log",
    # Redaction
    "SENSITIVE_PATTERNS",
    "redact_for_logging",
    "redact_sensitive_data",
]
