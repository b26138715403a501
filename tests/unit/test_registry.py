"""
Unit tests for CacheRegistry and the shared client read endpoint.
"""

import asyncio

import pytest

from sessioncache.cache import Member, SessionedCache
from sessioncache.core.config import ConfigManager
from sessioncache.core.exceptions import CacheConfigurationError, DuplicateCacheError
from tests.conftest import FAST_RETRY


@pytest.mark.unit
class TestCreateCache:
    def test_create_registers_cache(self, registry):
        cache = registry.create_cache("Coins")

        assert isinstance(cache, SessionedCache)
        assert "Coins" in registry
        assert registry.get("Coins") is cache
        assert registry.names() == ["Coins"]
        assert registry.caches() == [cache]

    def test_duplicate_returns_none(self, registry, caplog):
        first = registry.create_cache("Coins")

        assert registry.create_cache("Coins") is None
        assert registry.get("Coins") is first
        assert "Cache already exists" in caplog.text

    def test_duplicate_strict_raises(self, registry):
        registry.create_cache("Coins")
        with pytest.raises(DuplicateCacheError):
            registry.create_cache("Coins", strict=True)

    def test_invalid_options_raise(self, registry):
        with pytest.raises(CacheConfigurationError):
            registry.create_cache("Coins", {"call_attempts": 0})
        assert "Coins" not in registry

    def test_yaml_options_applied(self, registry):
        ConfigManager.set_override("caches.Coins", {"template_data": {"Coins": 5}})
        assert registry.create_cache("Coins").options.template_data == {"Coins": 5}

    def test_caches_share_collaborators(self, registry):
        coins = registry.create_cache("Coins")
        gems = registry.create_cache("Gems")

        assert coins.get_store() is gems.get_store() is registry.store
        assert coins.arbiter is gems.arbiter is registry.arbiter

    async def test_admitted_count_sizes_budget(self, registry, roster):
        coins = registry.create_cache("Coins", FAST_RETRY)
        gems = registry.create_cache("Gems", FAST_RETRY)
        first, second = Member(entity_id=1), Member(entity_id=2)
        roster.join(first)
        roster.join(second)

        await coins.load(first)
        await coins.load(second)
        await gems.load(first)

        assert registry.admitted_count() == 3
        assert registry.budget.capacity() == 10_000 + 10 * 3


@pytest.mark.unit
class TestGetCache:
    async def test_existing_cache_returned_immediately(self, registry):
        cache = registry.create_cache("Coins")
        assert await registry.get_cache("Coins", timeout=0) is cache

    async def test_waits_for_creation(self, registry, monkeypatch):
        monkeypatch.setattr("sessioncache.core.config.Config.TICK_INTERVAL", 0.01)
        waiter = asyncio.create_task(registry.get_cache("Coins", timeout=1.0))
        await asyncio.sleep(0.02)

        cache = registry.create_cache("Coins")

        assert await waiter is cache

    async def test_times_out(self, registry, monkeypatch):
        monkeypatch.setattr("sessioncache.core.config.Config.TICK_INTERVAL", 0.01)
        assert await registry.get_cache("Missing", timeout=0.03) is None


@pytest.mark.unit
class TestClientEndpoint:
    async def test_reads_own_data_copy(self, registry, player):
        cache = registry.create_cache(
            "Coins",
            {"template_data": {"Coins": 0}, "allow_client_side_to_read": True, **FAST_RETRY},
        )
        data = await cache.load(player)
        endpoint = registry.client_endpoint

        result = await endpoint.invoke(player, "Coins")

        assert endpoint.name == "DataCacherRemote"
        assert result == {"Coins": 0}
        assert result is not data

    async def test_refuses_non_string_name(self, registry, player):
        registry.create_cache("Coins", {"allow_client_side_to_read": True})
        assert await registry.client_endpoint.invoke(player, 42) is None

    async def test_refuses_unregistered_cache(self, registry, player):
        cache = registry.create_cache("Secret", FAST_RETRY)
        await cache.load(player)
        assert await registry.client_endpoint.invoke(player, "Secret") is None

    async def test_entity_not_admitted(self, registry, player):
        registry.create_cache("Coins", {"allow_client_side_to_read": True})
        assert await registry.client_endpoint.invoke(player, "Coins") is None

    def test_endpoint_is_shared(self, registry):
        registry.create_cache("Coins", {"allow_client_side_to_read": True, "client_endpoint_name": "First"})
        registry.create_cache("Gems", {"allow_client_side_to_read": True, "client_endpoint_name": "Second"})

        endpoint = registry.client_endpoint
        assert endpoint.name == "First"
        assert endpoint.is_allowed("Coins") and endpoint.is_allowed("Gems")
