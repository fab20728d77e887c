"""Gateway error classes.

Exceptions raised inside the resilience layer. Each carries an already
classified ``GatewayError`` so the coordinator can turn it into a failure
envelope without re-running text heuristics.
"""

from typing import Optional

from diligence_gateway.core.errors.types import ErrorKind, GatewayError


class GatewayException(Exception):
    """Base exception for the resilience layer."""


class ClassifiedError(GatewayException):
    """A failure that has already been classified.

    Raised by ``RetryEngine.with_retry`` once attempts are exhausted or the
    error is not retryable.

    Attributes:
        error: The classified error record
    """

    def __init__(self, error: GatewayError):
        self.error = error
        super().__init__(f"[{error.provider}] {error.kind.value}: {error.message}")


class QueueClearedError(ClassifiedError):
    """A queued call was rejected because its provider queue was cleared.

    Never retryable.
    """

    def __init__(self, provider: str):
        super().__init__(
            GatewayError(
                kind=ErrorKind.SERVER_ERROR,
                message="Queue cleared",
                provider=provider,
                retryable=False,
            )
        )


class ProviderNotRegisteredError(ClassifiedError):
    """A request named a provider with no registered config or transport."""

    def __init__(self, provider: str):
        super().__init__(
            GatewayError(
                kind=ErrorKind.INVALID_REQUEST,
                message=f"Provider not registered: {provider}",
                provider=provider,
                retryable=False,
            )
        )


class ProviderUnavailableError(ClassifiedError):
    """A provider is temporarily disabled after a high error ratio.

    Attributes:
        retry_after: Seconds until the provider is re-enabled
    """

    def __init__(self, provider: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(
            GatewayError(
                kind=ErrorKind.SERVER_ERROR,
                message=f"Provider {provider} is temporarily unavailable",
                provider=provider,
                retryable=True,
                retry_after=retry_after,
            )
        )
