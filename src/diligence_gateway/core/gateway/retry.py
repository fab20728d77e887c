"""Error classification, retry decisions and rolling error statistics.

``ErrorClassifier`` turns any exception raised by a transport into a
``GatewayError``. Structured signals (an already classified error, a
transport kind hint, an HTTP status, timeout or connection exception types)
are trusted before message text.

``RetryEngine`` decides between retrying with backoff, falling back to
another provider, or giving up, and keeps a bounded per-provider error log
used for error rates and health.
"""

import asyncio
import logging
import random
import re
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence, TypeVar

import httpx

from diligence_gateway.config.gateway import RetrySettings
from diligence_gateway.core.errors import ClassifiedError, TransportError
from diligence_gateway.core.gateway.models import (
    Clock,
    ErrorKind,
    ErrorStats,
    GatewayError,
    RetryAction,
    RetryDecision,
    SleepFunc,
)
from diligence_gateway.core.observability import audit_log, redact_sensitive_data

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRY_AFTER_TEXT = re.compile(r"retry[\s_-]*after\D{0,3}(\d+(?:\.\d+)?)", re.IGNORECASE)

# Ordered: the first matching rule wins
_MESSAGE_RULES: Sequence[tuple] = (
    (ErrorKind.RATE_LIMIT, re.compile(r"\b429\b|rate.?limit|too many requests", re.IGNORECASE)),
    (
        ErrorKind.AUTHENTICATION,
        re.compile(r"\b40[13]\b|unauthori[sz]ed|forbidden", re.IGNORECASE),
    ),
    (ErrorKind.TIMEOUT, re.compile(r"timeout|timed out", re.IGNORECASE)),
    (ErrorKind.NOT_FOUND, re.compile(r"\b404\b|not found", re.IGNORECASE)),
    (ErrorKind.INVALID_REQUEST, re.compile(r"\b400\b|invalid|bad request", re.IGNORECASE)),
    (ErrorKind.NETWORK_ERROR, re.compile(r"network|connection", re.IGNORECASE)),
)

_TIMEOUT_TYPES = (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)
_NETWORK_TYPES = (ConnectionError, httpx.NetworkError)


def _kind_for_status(status: int) -> Optional[ErrorKind]:
    if status == 429:
        return ErrorKind.RATE_LIMIT
    if status in (401, 403):
        return ErrorKind.AUTHENTICATION
    if status == 404:
        return ErrorKind.NOT_FOUND
    if status == 408:
        return ErrorKind.TIMEOUT
    if status >= 500:
        return ErrorKind.SERVER_ERROR
    if 400 <= status < 500:
        return ErrorKind.INVALID_REQUEST
    return None


def _status_code(exc: BaseException) -> Optional[int]:
    for candidate in (
        getattr(exc, "status_code", None),
        getattr(exc, "status", None),
        getattr(getattr(exc, "response", None), "status_code", None),
    ):
        if isinstance(candidate, int) and not isinstance(candidate, bool):
            return candidate
    return None


def _parse_seconds(value: Any) -> Optional[float]:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


class ErrorClassifier:
    """Map raw exceptions to classified ``GatewayError`` records."""

    def __init__(self, default_rate_limit_retry_after: float = 60.0) -> None:
        self.default_rate_limit_retry_after = default_rate_limit_retry_after

    def classify(self, exc: BaseException, provider: str) -> GatewayError:
        """Classify ``exc`` raised while calling ``provider``.

        Messages are redacted before they are stored, since provider errors
        often echo request URLs carrying API keys.
        """
        if isinstance(exc, ClassifiedError):
            return exc.error

        raw_message = str(exc).strip()
        message = redact_sensitive_data(raw_message) or type(exc).__name__
        status = _status_code(exc)

        kind: Optional[ErrorKind] = None
        if isinstance(exc, TransportError):
            kind = exc.kind
        if kind is None and status is not None:
            kind = _kind_for_status(status)
        if kind is None and isinstance(exc, _TIMEOUT_TYPES):
            kind = ErrorKind.TIMEOUT
        if kind is None and isinstance(exc, _NETWORK_TYPES):
            kind = ErrorKind.NETWORK_ERROR
        if kind is None:
            kind = self._kind_for_message(raw_message, status)

        retry_after = None
        if kind is ErrorKind.RATE_LIMIT:
            retry_after = self._retry_after(exc, raw_message)

        return GatewayError(
            kind=kind,
            message=message,
            provider=provider,
            retryable=kind.retryable_by_default,
            retry_after=retry_after,
            status_code=status,
        )

    def _kind_for_message(self, message: str, status: Optional[int]) -> ErrorKind:
        if not message and status is None:
            return ErrorKind.UNKNOWN
        for kind, pattern in _MESSAGE_RULES:
            if pattern.search(message):
                return kind
        return ErrorKind.SERVER_ERROR

    def _retry_after(self, exc: BaseException, message: str) -> float:
        """Server wait hint from attribute, Retry-After header or message text."""
        seconds = _parse_seconds(getattr(exc, "retry_after", None))
        if seconds is not None:
            return seconds

        response = getattr(exc, "response", None)
        headers = getattr(response, "headers", None)
        if headers is not None:
            seconds = _parse_seconds(headers.get("retry-after"))
            if seconds is not None:
                return seconds

        match = _RETRY_AFTER_TEXT.search(message)
        if match:
            return float(match.group(1))

        return self.default_rate_limit_retry_after


class RetryEngine:
    """Retry with exponential backoff, fallback decisions and error statistics.

    Backoff for attempt ``n`` (1-based) is
    ``min(max_delay, initial_delay * exponential_base ** (n - 1) + jitter)``
    where jitter is uniform in ``[0, settings.jitter)``. A rate-limit error
    never waits less than its ``retry_after``.

    Example:
        >>> engine = RetryEngine(RetrySettings(max_attempts=3))
        >>> engine.register_fallback("alphavantage", ["polygon"])
        >>> data = await engine.with_retry(lambda: transport("quote", {}, 30.0), "alphavantage")

    Testing example:
        >>> sleeps = []
        >>> async def fake_sleep(s): sleeps.append(s)
        >>> engine = RetryEngine(rng=random.Random(42), sleep_func=fake_sleep)
    """

    def __init__(
        self,
        settings: Optional[RetrySettings] = None,
        *,
        classifier: Optional[ErrorClassifier] = None,
        rng: Optional[random.Random] = None,
        sleep_func: Optional[SleepFunc] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or RetrySettings()
        self.classifier = classifier or ErrorClassifier(self.settings.rate_limit_retry_after)
        self._rng = rng or random.Random()
        self._sleep = sleep_func or asyncio.sleep
        self._clock = clock or time.time
        self._error_log: Dict[str, Deque[GatewayError]] = {}
        self._fallbacks: Dict[str, List[str]] = {}

    def register_fallback(self, provider: str, fallbacks: Sequence[str]) -> None:
        """Set the ordered fallback list for ``provider`` (self-references dropped)."""
        ordered: List[str] = []
        for name in fallbacks:
            if name != provider and name not in ordered:
                ordered.append(name)
        self._fallbacks[provider] = ordered

    def fallbacks_for(self, provider: str) -> List[str]:
        return list(self._fallbacks.get(provider, ()))

    def fallback_for(self, provider: str) -> Optional[str]:
        fallbacks = self._fallbacks.get(provider)
        return fallbacks[0] if fallbacks else None

    def calculate_delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        s = self.settings
        base = s.initial_delay * (s.exponential_base ** (max(attempt, 1) - 1))
        return min(s.max_delay, base + self._rng.random() * s.jitter)

    def decide(
        self, error: GatewayError, attempt: int, max_attempts: Optional[int] = None
    ) -> RetryDecision:
        """Decide what to do after ``attempt`` failed with ``error``."""
        limit = max_attempts if max_attempts is not None else self.settings.max_attempts
        if error.retryable and attempt < limit:
            delay = self.calculate_delay(attempt)
            if error.kind is ErrorKind.RATE_LIMIT and error.retry_after is not None:
                delay = max(delay, error.retry_after)
            return RetryDecision(RetryAction.RETRY, delay=delay)

        fallback = self.fallback_for(error.provider)
        if fallback is not None:
            return RetryDecision(RetryAction.FALLBACK, fallback_provider=fallback)
        return RetryDecision(RetryAction.GIVE_UP)

    async def with_retry(
        self,
        func: Callable[[], Awaitable[T]],
        provider: str,
        *,
        max_attempts: Optional[int] = None,
    ) -> T:
        """Call ``func`` until it succeeds or the retry decision says stop.

        Raises:
            ClassifiedError: Carrying the last classified error
        """
        limit = max_attempts if max_attempts is not None else self.settings.max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                return await func()
            except Exception as exc:
                error = self.classifier.classify(exc, provider)
                self.record_error(error)
                decision = self.decide(error, attempt, limit)
                if not decision.should_retry:
                    if isinstance(exc, ClassifiedError):
                        raise
                    raise ClassifiedError(error) from exc

                logger.info(
                    f"Retrying {provider} after {error.kind.value} "
                    f"(attempt {attempt}/{limit}, waiting {decision.delay:.2f}s)"
                )
                audit_log(
                    "retry_attempt",
                    provider=provider,
                    attempt=attempt,
                    kind=error.kind.value,
                    delay_ms=int(decision.delay * 1000),
                )
                await self._sleep(decision.delay)

    def record_error(self, error: GatewayError) -> None:
        log = self._error_log.get(error.provider)
        if log is None:
            log = deque(maxlen=self.settings.max_error_log_size)
            self._error_log[error.provider] = log
        log.append(error)

    def error_rate(self, provider: str) -> int:
        """Errors recorded for ``provider`` within the trailing error window."""
        cutoff = self._clock() - self.settings.error_window
        return sum(1 for e in self._error_log.get(provider, ()) if e.timestamp >= cutoff)

    def error_stats(self, provider: str) -> ErrorStats:
        log = self._error_log.get(provider, ())
        by_kind: Dict[str, int] = {}
        for error in log:
            by_kind[error.kind.value] = by_kind.get(error.kind.value, 0) + 1
        return ErrorStats(
            total_errors=len(log),
            errors_by_kind=by_kind,
            recent_errors=list(log)[-10:],
            error_rate=self.error_rate(provider),
        )

    def all_error_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: self.error_stats(name).to_dict() for name in self._error_log}

    def clear_error_log(self, provider: Optional[str] = None) -> None:
        if provider is None:
            self._error_log.clear()
        else:
            self._error_log.pop(provider, None)

    def health_check(self) -> bool:
        """False when any provider's error rate exceeds ``max_error_rate``."""
        return all(
            self.error_rate(name) <= self.settings.max_error_rate for name in self._error_log
        )
