"""Shared fixtures for gateway tests.

Provides an in-process redis double, scripted provider transports, a
controllable clock and a fast-retry gateway config so tests never wait on
real backoff delays.
"""

import fnmatch
from typing import Any, Dict, List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from diligence_gateway.config import (
    GatewayConfig,
    ProviderConfig,
    RateLimitSettings,
    RetrySettings,
)


class FakeRedis:
    """Minimal async redis double covering the commands the cache uses."""

    def __init__(self) -> None:
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.fail = False
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("Connection refused")

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.store.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                self.ttls.pop(key, None)
                removed += 1
        return removed

    async def scan_iter(self, match: Optional[str] = None, count: Optional[int] = None):
        self._check()
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self) -> None:
        self.closed = True


class ScriptedTransport:
    """Transport that replays a script of results and exceptions.

    The last scripted item repeats once the script is exhausted.
    """

    def __init__(self, *script: Any) -> None:
        self.script: List[Any] = list(script) or [{"ok": True}]
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, endpoint: str, params: Dict[str, Any], timeout: float) -> Any:
        self.calls.append({"endpoint": endpoint, "params": dict(params), "timeout": timeout})
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, BaseException):
            raise item
        return item

    @property
    def call_count(self) -> int:
        return len(self.calls)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def fast_config(*providers: ProviderConfig, **overrides: Any) -> GatewayConfig:
    """Gateway config with millisecond retries and no drain spacing."""
    retry = overrides.pop(
        "retry",
        RetrySettings(
            max_attempts=3,
            initial_delay=0.001,
            max_delay=0.01,
            jitter=0.0,
            rate_limit_retry_after=0.01,
        ),
    )
    return GatewayConfig(
        providers={p.name: p for p in providers},
        retry=retry,
        rate_limit=RateLimitSettings(drain_spacing=0.0),
        **overrides,
    )


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def make_config():
    return fast_config


@pytest.fixture
def scripted():
    return ScriptedTransport
