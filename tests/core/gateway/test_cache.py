"""Tests for ResponseCache.

Tests cover:
- Key generation (format, parameter-order independence)
- Local-only mode: TTL expiry, lazy eviction, size-triggered sweep
- Remote mode: mirrored writes, remote reads, JSON value format
- Remote failures degrading to the local store without raising
- Prefix clearing and health checks
"""

import json
import re

import pytest

from diligence_gateway.core.gateway.cache import ResponseCache


class TestGenerateKey:
    """Tests for cache key generation."""

    def test_key_format(self):
        cache = ResponseCache()
        key = cache.generate_key("polygon", "quote", {"symbol": "IBM"})
        assert re.fullmatch(r"mcp:polygon:quote:[0-9a-f]{16}", key)

    def test_parameter_order_does_not_change_key(self):
        cache = ResponseCache()
        a = cache.generate_key("exa", "search", {"q": "acme", "limit": 10, "type": "neural"})
        b = cache.generate_key("exa", "search", {"type": "neural", "limit": 10, "q": "acme"})
        assert a == b

    def test_different_params_produce_different_keys(self):
        cache = ResponseCache()
        a = cache.generate_key("exa", "search", {"q": "acme"})
        b = cache.generate_key("exa", "search", {"q": "globex"})
        assert a != b

    def test_custom_prefix(self):
        cache = ResponseCache(key_prefix="dd:")
        assert cache.generate_key("github", "repo", {}).startswith("dd:github:repo:")


class TestLocalStore:
    """Tests for local-only operation (no redis configured)."""

    @pytest.mark.asyncio
    async def test_set_then_get(self, clock):
        cache = ResponseCache(clock=clock)
        await cache.connect()
        await cache.set("mcp:a:b:1", {"price": 10}, source="polygon", ttl=60)

        hit = await cache.get("mcp:a:b:1")
        assert hit is not None
        assert hit.data == {"price": 10}
        assert hit.source == "polygon"
        assert cache.connected is False

    @pytest.mark.asyncio
    async def test_miss_returns_none(self):
        cache = ResponseCache()
        assert await cache.get("mcp:missing") is None

    @pytest.mark.asyncio
    async def test_expired_entry_is_never_returned(self, clock):
        """An entry read after its TTL is gone and stays gone."""
        cache = ResponseCache(clock=clock)
        await cache.set("k", "v", source="exa", ttl=10)

        clock.advance(9.9)
        assert (await cache.get("k")).data == "v"

        clock.advance(0.1)
        assert await cache.get("k") is None
        assert cache.local_size == 0
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_default_ttl_applies(self, clock):
        cache = ResponseCache(default_ttl=5, clock=clock)
        await cache.set("k", "v", source="exa")
        clock.advance(5)
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_sweep_when_store_exceeds_threshold(self, clock):
        cache = ResponseCache(max_local_entries=3, clock=clock)
        for i in range(3):
            await cache.set(f"old{i}", i, source="exa", ttl=1)
        clock.advance(2)

        await cache.set("fresh", "x", source="exa", ttl=100)

        assert cache.local_size == 1
        assert (await cache.get("fresh")).data == "x"

    @pytest.mark.asyncio
    async def test_delete(self):
        cache = ResponseCache()
        await cache.set("k", "v", source="exa")
        assert await cache.delete("k") == 1
        assert await cache.delete("k") == 0
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_health_check_true_without_remote(self):
        assert await ResponseCache().health_check() is True


class TestRemoteStore:
    """Tests with a connected redis double."""

    @pytest.mark.asyncio
    async def test_connect_with_client(self, fake_redis):
        cache = ResponseCache(client=fake_redis)
        await cache.connect()
        assert cache.connected is True

    @pytest.mark.asyncio
    async def test_set_writes_both_stores(self, fake_redis, clock):
        cache = ResponseCache(client=fake_redis, clock=clock)
        await cache.connect()
        await cache.set("mcp:polygon:quote:abc", {"p": 1}, source="polygon", ttl=300)

        assert cache.local_size == 1
        assert fake_redis.ttls["mcp:polygon:quote:abc"] == 300
        stored = json.loads(fake_redis.store["mcp:polygon:quote:abc"])
        assert stored == {"data": {"p": 1}, "source": "polygon", "stored_at": clock.now, "ttl": 300}

    @pytest.mark.asyncio
    async def test_get_reads_remote(self, fake_redis):
        cache = ResponseCache(client=fake_redis)
        await cache.connect()
        fake_redis.store["mcp:x"] = json.dumps(
            {"data": [1, 2], "source": "exa", "stored_at": 0, "ttl": 60}
        )

        hit = await cache.get("mcp:x")
        assert hit.data == [1, 2]
        assert hit.source == "exa"

    @pytest.mark.asyncio
    async def test_remote_miss_is_a_miss(self, fake_redis):
        cache = ResponseCache(client=fake_redis)
        await cache.connect()
        assert await cache.get("mcp:nothing") is None

    @pytest.mark.asyncio
    async def test_remote_get_error_falls_back_to_local(self, fake_redis):
        cache = ResponseCache(client=fake_redis)
        await cache.connect()
        await cache.set("k", "local-copy", source="exa")

        fake_redis.fail = True
        hit = await cache.get("k")
        assert hit.data == "local-copy"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ['["legacy"]', "42", "not json", '"text"'])
    async def test_malformed_remote_entry_is_a_miss(self, fake_redis, raw):
        cache = ResponseCache(client=fake_redis)
        await cache.connect()
        fake_redis.store["mcp:polygon:quote:1"] = raw

        assert await cache.get("mcp:polygon:quote:1") is None

    @pytest.mark.asyncio
    async def test_both_stores_return_json_form(self, fake_redis):
        """Local and remote hits agree on the stored value."""
        cache = ResponseCache(client=fake_redis)
        await cache.connect()
        await cache.set("k", {"range": (1, 2)}, source="polygon")

        remote_hit = await cache.get("k")
        fake_redis.fail = True
        local_hit = await cache.get("k")

        assert remote_hit.data == {"range": [1, 2]}
        assert local_hit.data == remote_hit.data

    @pytest.mark.asyncio
    async def test_non_json_data_not_cached(self, fake_redis):
        cache = ResponseCache(client=fake_redis)
        await cache.connect()

        await cache.set("k", {"when": object()}, source="polygon")

        assert cache.local_size == 0
        assert "k" not in fake_redis.store
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_remote_set_error_is_not_raised(self, fake_redis):
        cache = ResponseCache(client=fake_redis)
        await cache.connect()
        fake_redis.fail = True

        await cache.set("k", "v", source="exa")

        assert cache.local_size == 1

    @pytest.mark.asyncio
    async def test_failed_connect_uses_local_only(self, fake_redis):
        """A remote that never connected is bypassed entirely."""
        fake_redis.fail = True
        cache = ResponseCache(client=fake_redis)
        await cache.connect()
        assert cache.connected is False

        fake_redis.fail = False
        fake_redis.store["k"] = json.dumps({"data": "remote", "source": "x", "stored_at": 0, "ttl": 9})
        await cache.set("k2", "local", source="exa")

        assert await cache.get("k") is None
        assert (await cache.get("k2")).data == "local"
        assert "k2" not in fake_redis.store

    @pytest.mark.asyncio
    async def test_clear_by_prefix_counts_distinct_keys(self, fake_redis):
        cache = ResponseCache(client=fake_redis)
        await cache.connect()
        await cache.set("mcp:polygon:quote:1", 1, source="polygon")
        await cache.set("mcp:polygon:quote:2", 2, source="polygon")
        await cache.set("mcp:exa:search:1", 3, source="exa")
        fake_redis.store["mcp:polygon:aggs:9"] = "{}"

        removed = await cache.clear_by_prefix("polygon:")

        assert removed == 3
        assert list(fake_redis.store) == ["mcp:exa:search:1"]
        assert (await cache.get("mcp:exa:search:1")).data == 3

    @pytest.mark.asyncio
    async def test_clear_all(self, fake_redis):
        cache = ResponseCache(client=fake_redis)
        await cache.connect()
        await cache.set("mcp:a:b:1", 1, source="a")
        await cache.set("mcp:c:d:2", 2, source="c")

        assert await cache.clear_all() == 2
        assert cache.local_size == 0
        assert fake_redis.store == {}

    @pytest.mark.asyncio
    async def test_stats(self, fake_redis):
        cache = ResponseCache(client=fake_redis)
        await cache.connect()
        await cache.set("mcp:a:b:1", 1, source="a")

        stats = await cache.stats()
        assert stats == {"remote_connected": True, "local_size": 1, "remote_size": 1}

    @pytest.mark.asyncio
    async def test_health_check_reflects_ping(self, fake_redis):
        cache = ResponseCache(client=fake_redis)
        await cache.connect()
        assert await cache.health_check() is True

        fake_redis.fail = True
        assert await cache.health_check() is False

    @pytest.mark.asyncio
    async def test_disconnect_leaves_injected_client_open(self, fake_redis):
        cache = ResponseCache(client=fake_redis)
        await cache.connect()
        await cache.disconnect()

        assert cache.connected is False
        assert fake_redis.closed is False
