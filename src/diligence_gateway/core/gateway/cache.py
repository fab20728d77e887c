"""TTL response cache with a remote redis store and a local fallback.

The local store is always written, so a redis outage degrades to
process-local caching instead of cache misses. Remote failures are logged
and never propagated to callers.
"""

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "mcp:"
DEFAULT_TTL_SECONDS = 3600
DEFAULT_MAX_LOCAL_ENTRIES = 1000


@dataclass
class CachedResponse:
    """A cached provider result."""

    data: Any
    source: str
    stored_at: float
    ttl: int

    def to_json(self) -> str:
        return json.dumps(
            {"data": self.data, "source": self.source, "stored_at": self.stored_at, "ttl": self.ttl}
        )

    @classmethod
    def from_json(cls, raw: str) -> "CachedResponse":
        """Decode a remote entry.

        Raises:
            ValueError: If ``raw`` is not JSON or not a JSON object
        """
        parsed = json.loads(raw)
        if not isinstance(parsed, dict):
            raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")
        return cls(
            data=parsed.get("data"),
            source=str(parsed.get("source") or ""),
            stored_at=float(parsed.get("stored_at") or 0.0),
            ttl=int(parsed.get("ttl") or 0),
        )


@dataclass
class CacheEntry:
    """Local store entry with an absolute expiry (clock seconds)."""

    value: CachedResponse
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class ResponseCache:
    """Two-tier TTL cache keyed by provider, endpoint and parameters.

    Reads go to redis while it is connected and fall back to the local
    store on any redis error; without a redis connection only the local
    store is used. Writes always land locally and are mirrored to redis on
    a best-effort basis.

    Example:
        >>> cache = ResponseCache("redis://localhost:6379/0")
        >>> await cache.connect()
        >>> key = cache.generate_key("polygon", "quote", {"symbol": "IBM"})
        >>> await cache.set(key, {"price": 1.0}, source="polygon", ttl=300)
        >>> (await cache.get(key)).data
        {'price': 1.0}
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        max_local_entries: int = DEFAULT_MAX_LOCAL_ENTRIES,
        client: Optional[aioredis.Redis] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache.

        Args:
            redis_url: Remote store URL; None keeps the cache local-only
            default_ttl: TTL in seconds when ``set`` is given none
            key_prefix: Prefix for every generated key
            max_local_entries: Local size above which expired entries are swept
            client: Pre-built redis client (takes precedence over ``redis_url``)
            clock: Wall-clock source for local expiry, injectable for tests
        """
        self._redis_url = redis_url
        self._client = client
        self._owns_client = client is None
        self._connected = False
        self._local: Dict[str, CacheEntry] = {}
        self._clock = clock
        self.default_ttl = default_ttl
        self.key_prefix = key_prefix
        self.max_local_entries = max_local_entries

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def local_size(self) -> int:
        return len(self._local)

    async def connect(self) -> None:
        """Connect to the remote store, staying local-only on failure."""
        if self._connected:
            return
        if self._client is None:
            if not self._redis_url:
                logger.info("No redis URL configured, using local cache only")
                return
            self._client = aioredis.from_url(self._redis_url, decode_responses=True)

        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            logger.warning(f"Failed to connect to redis, falling back to local cache: {e}")
            self._connected = False
            return

        self._connected = True
        logger.info("Response cache connected to redis")

    async def disconnect(self) -> None:
        """Close the remote connection if this cache created it."""
        if self._client is not None and self._owns_client:
            try:
                await self._client.aclose()
            except (RedisError, OSError) as e:
                logger.warning(f"Error closing redis connection: {e}")
            self._client = None
        self._connected = False

    def generate_key(self, provider: str, endpoint: str, params: Dict[str, Any]) -> str:
        """Build ``{prefix}{provider}:{endpoint}:{hash}``.

        The hash covers the parameters serialized with sorted keys, so
        parameter order never changes the key.
        """
        serialized = json.dumps(params, sort_keys=True, default=str)
        digest = hashlib.sha256(serialized.encode("utf-8")).hexdigest()[:16]
        return f"{self.key_prefix}{provider}:{endpoint}:{digest}"

    async def get(self, key: str) -> Optional[CachedResponse]:
        """Return the cached response for ``key`` or None."""
        if not self._connected or self._client is None:
            return self._get_local(key)

        try:
            raw = await self._client.get(key)
        except (RedisError, OSError) as e:
            logger.warning(f"Redis get failed for {key}, using local cache: {e}")
            return self._get_local(key)

        if raw is None:
            return None
        try:
            return CachedResponse.from_json(raw)
        except (ValueError, TypeError) as e:
            logger.warning(f"Discarding undecodable cache entry {key}: {e}")
            return self._get_local(key)

    async def set(
        self,
        key: str,
        data: Any,
        *,
        source: str,
        ttl: Optional[int] = None,
    ) -> None:
        """Store ``data`` under ``key`` for ``ttl`` seconds (default TTL when None).

        Both stores hold the JSON form of ``data``, so a hit returns the same
        value whichever store answered. Data that is not JSON-serializable is
        not cached.
        """
        try:
            payload = json.dumps(data)
        except (TypeError, ValueError) as e:
            logger.warning(f"Not caching {key}: data is not JSON-serializable ({e})")
            return

        cache_ttl = ttl or self.default_ttl
        value = CachedResponse(
            data=json.loads(payload), source=source, stored_at=self._clock(), ttl=cache_ttl
        )
        self._set_local(key, value)

        if self._connected and self._client is not None:
            try:
                await self._client.setex(key, cache_ttl, value.to_json())
            except (RedisError, OSError) as e:
                logger.warning(f"Redis set failed for {key}: {e}")

    async def delete(self, key: str) -> int:
        """Delete ``key`` from both stores; returns 1 if it existed anywhere."""
        removed = self._local.pop(key, None) is not None

        if self._connected and self._client is not None:
            try:
                removed = bool(await self._client.delete(key)) or removed
            except (RedisError, OSError) as e:
                logger.warning(f"Redis delete failed for {key}: {e}")

        return int(removed)

    async def clear_by_prefix(self, pattern: str) -> int:
        """Delete every key starting with ``{key_prefix}{pattern}``.

        Returns:
            Number of distinct keys removed across both stores
        """
        full_prefix = f"{self.key_prefix}{pattern}"
        removed: Set[str] = {k for k in self._local if k.startswith(full_prefix)}
        for key in removed:
            del self._local[key]

        removed |= await self._delete_remote_matching(f"{full_prefix}*")
        return len(removed)

    async def clear_all(self) -> int:
        """Delete every key under ``key_prefix`` from both stores."""
        return await self.clear_by_prefix("")

    async def stats(self) -> Dict[str, Any]:
        """Connection state and sizes of both stores."""
        result: Dict[str, Any] = {
            "remote_connected": self._connected,
            "local_size": len(self._local),
        }
        if self._connected and self._client is not None:
            try:
                count = 0
                async for _ in self._client.scan_iter(match=f"{self.key_prefix}*"):
                    count += 1
                result["remote_size"] = count
            except (RedisError, OSError) as e:
                logger.warning(f"Redis stats failed: {e}")
        return result

    async def health_check(self) -> bool:
        """Remote ping result, or True in local-only mode."""
        if not self._connected or self._client is None:
            return True
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError):
            return False

    def _get_local(self, key: str) -> Optional[CachedResponse]:
        entry = self._local.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._local[key]
            return None
        return entry.value

    def _set_local(self, key: str, value: CachedResponse) -> None:
        self._local[key] = CacheEntry(value=value, expires_at=value.stored_at + value.ttl)
        if len(self._local) > self.max_local_entries:
            self._sweep_local()

    def _sweep_local(self) -> None:
        now = self._clock()
        expired = [k for k, entry in self._local.items() if entry.is_expired(now)]
        for key in expired:
            del self._local[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired local cache entries")

    async def _delete_remote_matching(self, match: str, batch_size: int = 100) -> Set[str]:
        """SCAN and delete remote keys in batches; returns the keys deleted."""
        deleted: Set[str] = set()
        if not self._connected or self._client is None:
            return deleted

        try:
            batch = []
            async for key in self._client.scan_iter(match=match, count=batch_size):
                batch.append(key.decode("utf-8") if isinstance(key, bytes) else key)
                if len(batch) >= batch_size:
                    await self._client.delete(*batch)
                    deleted.update(batch)
                    batch = []
            if batch:
                await self._client.delete(*batch)
                deleted.update(batch)
        except (RedisError, OSError) as e:
            logger.warning(f"Redis delete by pattern {match!r} failed: {e}")
        return deleted
