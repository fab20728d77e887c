"""RequestCoordinator: cache, rate limiting, retry and fallback behind one call.

The coordinator is the only entry point callers need. Every public
``execute*`` method returns a ``GatewayResponse``; provider failures,
exhausted retries and cleared queues all surface as ``success=False``
envelopes.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from diligence_gateway.config.gateway import GatewayConfig
from diligence_gateway.config.providers import ProviderConfig
from diligence_gateway.core.context import request_context
from diligence_gateway.core.errors import (
    ClassifiedError,
    ProviderNotRegisteredError,
    ProviderUnavailableError,
)
from diligence_gateway.core.gateway.cache import ResponseCache
from diligence_gateway.core.gateway.envelopes import GatewayRequest, GatewayResponse
from diligence_gateway.core.gateway.models import Clock, GatewayStats, ProviderState
from diligence_gateway.core.gateway.rate_limiter import SlidingWindowRateLimiter
from diligence_gateway.core.gateway.retry import RetryEngine
from diligence_gateway.core.gateway.transports import Transport
from diligence_gateway.core.observability import audit_log

logger = logging.getLogger(__name__)

# Smoothing factor for the per-provider response-time moving average
_EMA_ALPHA = 0.2


class RequestCoordinator:
    """Composes cache, rate limiter and retry engine for registered providers.

    Each provider needs a ``ProviderConfig`` and a transport. Configs come
    from ``GatewayConfig.providers`` (or a default ``ProviderConfig``) when a
    transport is passed to the constructor, or explicitly through
    ``register_provider``.

    Example:
        >>> async with RequestCoordinator(GatewayConfig.from_env(), {"polygon": polygon}) as gw:
        ...     response = await gw.execute_with_fallback(
        ...         GatewayRequest(provider="polygon", endpoint="quote", params={"symbol": "IBM"})
        ...     )
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        transports: Optional[Mapping[str, Transport]] = None,
        *,
        cache: Optional[ResponseCache] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        retry_engine: Optional[RetryEngine] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.config = config or GatewayConfig()
        self._cache = cache or ResponseCache(
            self.config.cache.redis_url,
            default_ttl=self.config.cache.default_ttl,
            key_prefix=self.config.cache.key_prefix,
            max_local_entries=self.config.cache.max_local_entries,
        )
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            drain_spacing=self.config.rate_limit.drain_spacing,
            max_queue_length=self.config.rate_limit.max_queue_length,
        )
        self._retry = retry_engine or RetryEngine(self.config.retry)
        self._clock = clock or time.monotonic

        self._providers: Dict[str, ProviderConfig] = {}
        self._transports: Dict[str, Transport] = {}
        self._states: Dict[str, ProviderState] = {}
        self._stats = GatewayStats()
        self._initialized = False
        self._closed = False

        for name, transport in (transports or {}).items():
            provider_config = self.config.providers.get(name) or ProviderConfig(name=name)
            self.register_provider(provider_config, transport)

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def rate_limiter(self) -> SlidingWindowRateLimiter:
        return self._rate_limiter

    @property
    def retry_engine(self) -> RetryEngine:
        return self._retry

    @property
    def providers(self) -> List[str]:
        return list(self._providers)

    def register_provider(self, config: ProviderConfig, transport: Transport) -> None:
        """Register ``config.name`` with its transport.

        Raises:
            ValueError: If the provider is already registered
        """
        name = config.name
        if name in self._providers:
            raise ValueError(f"Provider already registered: {name}")
        self._providers[name] = config
        self._transports[name] = transport
        self._states[name] = ProviderState(name=name)
        self._rate_limiter.register(name, config)
        self._retry.register_fallback(name, config.fallback_providers)
        logger.debug(f"Registered provider {name} (fallbacks: {list(config.fallback_providers)})")

    async def initialize(self) -> None:
        """Connect the remote cache. Safe to call more than once."""
        if self._initialized:
            return
        if self.config.cache.enabled:
            await self._cache.connect()
        self._initialized = True
        logger.info(f"Gateway initialized with providers: {', '.join(self._providers)}")

    async def shutdown(self) -> None:
        """Reject queued calls, stop drain workers and close connections."""
        if self._closed:
            return
        self._closed = True
        await self._rate_limiter.shutdown()
        await self._cache.disconnect()
        for name, transport in self._transports.items():
            aclose = getattr(transport, "aclose", None)
            if aclose is None:
                continue
            try:
                await aclose()
            except Exception as e:
                logger.warning(f"Error closing transport for {name}: {e}")
        logger.info("Gateway shut down")

    async def __aenter__(self) -> "RequestCoordinator":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    async def execute(self, request: GatewayRequest) -> GatewayResponse:
        """Execute ``request`` against its own provider only, without fallback."""
        return await self._execute_logical(request, with_fallback=False)

    async def execute_with_fallback(self, request: GatewayRequest) -> GatewayResponse:
        """Execute ``request``, trying the provider's fallbacks once it is exhausted.

        Each provider in the requested provider's fallback list is tried at
        most once, in order, capped by ``GatewayConfig.max_fallback_attempts``.
        Fallback lists of fallback providers are not followed.
        """
        return await self._execute_logical(request, with_fallback=request.options.allow_fallback)

    async def execute_batch(self, requests: List[GatewayRequest]) -> List[GatewayResponse]:
        """Execute requests concurrently; responses come back in request order."""
        return list(await asyncio.gather(*(self.execute_with_fallback(r) for r in requests)))

    async def _execute_logical(
        self, request: GatewayRequest, *, with_fallback: bool
    ) -> GatewayResponse:
        started = self._clock()
        async with request_context(request.id):
            try:
                response = await self._attempt(request)
                if not response.success and with_fallback and not self._closed:
                    response = await self._run_fallbacks(request, response)
            except Exception as exc:
                logger.exception(f"Unexpected error handling request {request.id}")
                error = self._retry.classifier.classify(exc, request.provider)
                response = GatewayResponse.failed(request, error)

            self._stats.total_requests += 1
            self._stats.total_response_time += self._clock() - started
            if response.success:
                self._stats.successful_requests += 1
            else:
                self._stats.failed_requests += 1
                audit_log(
                    "request_failed",
                    provider=request.provider,
                    source=response.source,
                    kind=response.error.kind.value,
                    endpoint=request.endpoint,
                )
            return response

    async def _run_fallbacks(
        self, request: GatewayRequest, failed: GatewayResponse
    ) -> GatewayResponse:
        limit = self.config.max_fallback_attempts
        response = failed
        attempted = 0
        for fallback in self._retry.fallbacks_for(request.provider):
            if limit is not None and attempted >= limit:
                break
            if fallback not in self._providers:
                logger.warning(f"Skipping unregistered fallback {fallback} for {request.provider}")
                continue

            attempted += 1
            self._stats.fallbacks += 1
            logger.info(
                f"Request to {response.source} failed ({response.error.kind.value}), "
                f"trying fallback: {fallback}"
            )
            audit_log(
                "fallback",
                provider=request.provider,
                failed_provider=response.source,
                fallback=fallback,
                kind=response.error.kind.value,
            )
            response = await self._attempt(
                request.for_provider(fallback), requested_provider=request.provider
            )
            if response.success or self._closed:
                break
        return response

    async def _attempt(
        self, request: GatewayRequest, *, requested_provider: Optional[str] = None
    ) -> GatewayResponse:
        """One provider attempt; unexpected errors become a failure for that provider."""
        try:
            return await self._attempt_provider(request, requested_provider)
        except Exception as exc:
            logger.exception(f"Unexpected error calling {request.provider} for {request.id}")
            error = self._retry.classifier.classify(exc, request.provider)
            return GatewayResponse.failed(request, error, requested_provider=requested_provider)

    async def _attempt_provider(
        self, request: GatewayRequest, requested_provider: Optional[str]
    ) -> GatewayResponse:
        """Cache lookup, then the rate-limited and retried transport call."""
        provider = request.provider
        config = self._providers.get(provider)
        if config is None:
            return GatewayResponse.failed(
                request,
                ProviderNotRegisteredError(provider).error,
                requested_provider=requested_provider,
            )

        if not self.is_provider_available(provider):
            state = self._states[provider]
            remaining = max(0.0, (state.unavailable_until or 0.0) - self._clock())
            return GatewayResponse.failed(
                request,
                ProviderUnavailableError(provider, retry_after=remaining).error,
                requested_provider=requested_provider,
            )

        options = request.options
        cache_key = self._cache_key(request, requested_provider)
        if cache_key is not None and options.reads_cache:
            hit = await self._cache.get(cache_key)
            if hit is not None:
                self._stats.cache_hits += 1
                audit_log("cache_hit", provider=provider, endpoint=request.endpoint)
                return GatewayResponse.ok(
                    request, hit.data, cached=True, requested_provider=requested_provider
                )
            self._stats.cache_misses += 1
            audit_log("cache_miss", provider=provider, endpoint=request.endpoint)

        transport = self._transports[provider]
        timeout = (
            options.timeout_ms / 1000.0 if options.timeout_ms else config.default_timeout_seconds
        )

        async def call_transport() -> Any:
            return await asyncio.wait_for(
                transport(request.endpoint, request.params, timeout), timeout=timeout
            )

        started = self._clock()
        try:
            data = await self._rate_limiter.execute(
                provider,
                lambda: self._retry.with_retry(call_transport, provider),
                priority=options.priority,
            )
        except ClassifiedError as exc:
            self._record_outcome(provider, success=False, elapsed=self._clock() - started)
            return GatewayResponse.failed(request, exc.error, requested_provider=requested_provider)
        except Exception as exc:
            self._record_outcome(provider, success=False, elapsed=self._clock() - started)
            error = self._retry.classifier.classify(exc, provider)
            return GatewayResponse.failed(request, error, requested_provider=requested_provider)

        self._record_outcome(provider, success=True, elapsed=self._clock() - started)
        if cache_key is not None and options.writes_cache:
            ttl = options.cache_ttl or config.default_cache_ttl
            await self._cache.set(cache_key, data, source=provider, ttl=ttl)

        return GatewayResponse.ok(request, data, requested_provider=requested_provider)

    def _cache_key(
        self, request: GatewayRequest, requested_provider: Optional[str]
    ) -> Optional[str]:
        if not self.config.cache.enabled or request.options.skip_cache:
            return None
        # An explicit key names the requested provider's entry, not a fallback's
        is_fallback = requested_provider is not None and requested_provider != request.provider
        if request.options.cache_key and not is_fallback:
            return request.options.cache_key
        return self._cache.generate_key(request.provider, request.endpoint, request.params)

    def _record_outcome(self, provider: str, *, success: bool, elapsed: float) -> None:
        state = self._states[provider]
        state.request_count += 1
        if not success:
            state.error_count += 1
        state.avg_response_time = _EMA_ALPHA * elapsed + (1 - _EMA_ALPHA) * state.avg_response_time

        thresholds = self.config.availability
        error_ratio = state.error_count / state.request_count
        if (
            state.available
            and state.request_count > thresholds.min_requests
            and error_ratio > thresholds.error_ratio
        ):
            state.available = False
            state.unavailable_until = self._clock() + thresholds.recovery_seconds
            logger.warning(
                f"Provider {provider} marked unavailable for {thresholds.recovery_seconds:.0f}s "
                f"(error ratio: {error_ratio:.2f})"
            )
            audit_log(
                "provider_unavailable",
                provider=provider,
                error_ratio=round(error_ratio, 3),
                request_count=state.request_count,
            )

    def is_provider_available(self, provider: str) -> bool:
        """Whether ``provider`` is registered and not temporarily disabled.

        A disabled provider recovers, with its counters reset, once its
        recovery period has elapsed.
        """
        state = self._states.get(provider)
        if state is None:
            return False
        if not state.available and state.unavailable_until is not None:
            if self._clock() >= state.unavailable_until:
                state.available = True
                state.unavailable_until = None
                state.request_count = 0
                state.error_count = 0
                logger.info(f"Provider {provider} marked as available again")
                audit_log("provider_recovered", provider=provider)
        return state.available

    def available_providers(self) -> List[str]:
        return [name for name in self._providers if self.is_provider_available(name)]

    def stats(self) -> Dict[str, Any]:
        """Request counters plus per-provider state."""
        for name in self._states:
            self.is_provider_available(name)
        result = self._stats.to_dict()
        result["provider_states"] = {name: s.to_dict() for name, s in self._states.items()}
        return result

    async def cache_stats(self) -> Dict[str, Any]:
        return await self._cache.stats()

    def rate_limiter_stats(self) -> Dict[str, Dict[str, Any]]:
        return self._rate_limiter.all_stats()

    def error_stats(self) -> Dict[str, Dict[str, Any]]:
        return self._retry.all_error_stats()

    async def clear_cache(self, provider: Optional[str] = None) -> int:
        """Clear cached responses for ``provider``, or everything when None."""
        if provider is None:
            return await self._cache.clear_all()
        return await self._cache.clear_by_prefix(f"{provider}:")

    def reset_stats(self) -> None:
        """Zero the counters and provider state, and clear the error log."""
        self._stats = GatewayStats()
        for state in self._states.values():
            state.request_count = 0
            state.error_count = 0
            state.avg_response_time = 0.0
        self._retry.clear_error_log()

    async def health_check(self) -> Dict[str, Dict[str, Any]]:
        """Health of every provider plus the cache, rate limiter and retry engine.

        A provider's transport ``health_check()`` is used when it has one;
        otherwise the provider's availability is reported.
        """
        results: Dict[str, Dict[str, Any]] = {}
        for name, transport in self._transports.items():
            probe = getattr(transport, "health_check", None)
            if probe is None:
                results[name] = {"healthy": self.is_provider_available(name)}
                continue
            started = self._clock()
            try:
                healthy = bool(await probe())
            except Exception as e:
                logger.warning(f"Health check for {name} raised: {e}")
                results[name] = {"healthy": False}
                continue
            results[name] = {"healthy": healthy, "response_time": self._clock() - started}

        results["cache"] = {"healthy": await self._cache.health_check()}
        results["rate_limiter"] = {"healthy": self._rate_limiter.health_check()}
        results["retry_engine"] = {"healthy": self._retry.health_check()}
        return results
