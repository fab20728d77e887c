"""Request and response envelopes.

These are the only types that cross the gateway boundary. Callers (agents,
report builders) build a ``GatewayRequest`` and always get a
``GatewayResponse`` back; failures are ``success=False`` envelopes, never
exceptions.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from ulid import ULID

from diligence_gateway.core.errors.types import ErrorKind, GatewayError


def _new_request_id() -> str:
    return str(ULID())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RequestOptions(BaseModel):
    """Per-call options, every one of them defaulted.

    Attributes:
        priority: Queue priority within the provider; higher drains sooner
        cache_key: Explicit cache key; derived from provider/endpoint/params when None
        cache_ttl: Cache TTL in seconds; provider default when None
        skip_cache: Neither read from nor write to the cache
        force_refresh: Skip the cache read but store the fresh result
        allow_fallback: Permit fallback providers once this provider is exhausted
        timeout_ms: Per-call transport timeout; provider default when None
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    priority: int = 0
    cache_key: Optional[str] = None
    cache_ttl: Optional[int] = Field(default=None, gt=0)
    skip_cache: bool = False
    force_refresh: bool = False
    allow_fallback: bool = True
    timeout_ms: Optional[int] = Field(default=None, gt=0)

    @property
    def reads_cache(self) -> bool:
        return not (self.skip_cache or self.force_refresh)

    @property
    def writes_cache(self) -> bool:
        return not self.skip_cache


class GatewayRequest(BaseModel):
    """A logical request for one provider endpoint."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_request_id)
    provider: str = Field(min_length=1)
    endpoint: str = Field(min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)
    options: RequestOptions = Field(default_factory=RequestOptions)

    def for_provider(self, provider: str) -> "GatewayRequest":
        """Copy of this request targeted at ``provider`` (same id for correlation)."""
        return self.model_copy(update={"provider": provider})


class ErrorDetail(BaseModel):
    """Structured error carried by a failure envelope."""

    kind: ErrorKind
    message: str
    provider: str
    retryable: bool
    retry_after_seconds: Optional[float] = None

    @classmethod
    def from_error(cls, error: GatewayError) -> "ErrorDetail":
        return cls(
            kind=error.kind,
            message=error.message,
            provider=error.provider,
            retryable=error.retryable,
            retry_after_seconds=error.retry_after,
        )


class GatewayResponse(BaseModel):
    """Uniform response envelope.

    ``source`` is the provider that produced the outcome, which differs from
    ``requested_provider`` when a fallback fired.
    """

    success: bool
    data: Any = None
    error: Optional[ErrorDetail] = None
    cached: bool = False
    timestamp: datetime = Field(default_factory=_utcnow)
    source: str
    requested_provider: Optional[str] = None
    request_id: str

    @model_validator(mode="after")
    def _check_outcome(self) -> "GatewayResponse":
        if self.success and self.error is not None:
            raise ValueError("successful response cannot carry an error")
        if not self.success and self.error is None:
            raise ValueError("failed response must carry an error")
        return self

    @property
    def fallback_used(self) -> bool:
        return self.requested_provider is not None and self.requested_provider != self.source

    @classmethod
    def ok(
        cls,
        request: GatewayRequest,
        data: Any,
        *,
        cached: bool = False,
        requested_provider: Optional[str] = None,
    ) -> "GatewayResponse":
        return cls(
            success=True,
            data=data,
            cached=cached,
            source=request.provider,
            requested_provider=requested_provider or request.provider,
            request_id=request.id,
        )

    @classmethod
    def failed(
        cls,
        request: GatewayRequest,
        error: GatewayError,
        *,
        requested_provider: Optional[str] = None,
    ) -> "GatewayResponse":
        return cls(
            success=False,
            error=ErrorDetail.from_error(error),
            cached=False,
            source=request.provider,
            requested_provider=requested_provider or request.provider,
            request_id=request.id,
        )
