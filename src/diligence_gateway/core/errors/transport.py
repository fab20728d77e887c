"""Transport error classes.

Transports raise these to hand the classifier structured signals (HTTP
status, a kind hint, a server-specified retry-after) instead of relying on
message text.
"""

from typing import Optional

from diligence_gateway.core.errors.types import ErrorKind


class TransportError(Exception):
    """Base exception for provider transport failures.

    Attributes:
        provider: Name of the provider that raised the error
        message: Human-readable error description
        status_code: HTTP status code if the provider answered
        kind: Best-effort classification the transport is confident about
        retry_after: Seconds the provider asked us to wait
        original_error: The underlying exception if available
    """

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        kind: Optional[ErrorKind] = None,
        retry_after: Optional[float] = None,
        original_error: Optional[Exception] = None,
    ):
        self.provider = provider
        self.message = message
        self.status_code = status_code
        self.kind = kind
        self.retry_after = retry_after
        self.original_error = original_error
        super().__init__(f"[{provider}] {message}")


class RateLimitError(TransportError):
    """Raised when a provider's rate limit is exceeded.

    Always retryable; ``retry_after`` carries the provider's wait hint.
    """

    def __init__(
        self,
        provider: str,
        retry_after: Optional[float] = None,
        original_error: Optional[Exception] = None,
    ):
        message = "Rate limit exceeded"
        if retry_after:
            message += f" (retry after {retry_after}s)"
        super().__init__(
            provider,
            message,
            status_code=429,
            kind=ErrorKind.RATE_LIMIT,
            retry_after=retry_after,
            original_error=original_error,
        )


class AuthenticationError(TransportError):
    """Raised when API authentication fails.

    Not retryable against the same provider; the credentials need fixing.
    """

    def __init__(
        self,
        provider: str,
        message: str = "Authentication failed",
        status_code: Optional[int] = 401,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            provider,
            message,
            status_code=status_code,
            kind=ErrorKind.AUTHENTICATION,
            original_error=original_error,
        )
