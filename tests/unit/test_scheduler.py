"""
Unit tests for CacheScheduler: auto-save, cross-instance eviction, forced
release of departed entities and the drain barrier.
"""

import asyncio
from typing import Optional

import pytest

from sessioncache.cache import CacheScheduler, EntityState, LocalRoster, Member
from sessioncache.core.config import Config, ConfigManager
from sessioncache.core.event import CacheEvent
from sessioncache.core.exceptions import CacheConfigurationError
from sessioncache.core.store import InMemoryKeyValueStore, RecordDict
from tests.conftest import FAST_RETRY, START_TIME, FakeClock, GatedStore, settle

KEY = "Coins/Player_1"
FOREIGN_RECORD = {
    "data": {"Coins": 0},
    "version": 1,
    "session": {"active": True, "owner": "place-1:job-b", "timestamp": int(START_TIME)},
}


class SlowReadStore(InMemoryKeyValueStore):
    def __init__(self) -> None:
        super().__init__()
        self.read_gate = asyncio.Event()
        self.read_gate.set()

    async def get(self, key: str) -> Optional[RecordDict]:
        await self.read_gate.wait()
        return await super().get(key)


@pytest.fixture
def ticker() -> FakeClock:
    return FakeClock(start=0.0)


@pytest.fixture
def make_scheduler(ticker):
    def factory(registry, **overrides):
        settings = {
            "tick_interval": 0.01,
            "auto_save_interval": 300,
            "lock_check_interval": 60,
            "grace_period": 1.0,
            "max_eviction_deferrals": 10,
            "clock": ticker,
        }
        settings.update(overrides)
        return CacheScheduler(registry, **settings)

    return factory


def gated_cache(make_registry, roster, **options):
    store = GatedStore()
    registry = make_registry(store, roster)
    cache = registry.create_cache("Coins", {"template_data": {"Coins": 0}, **FAST_RETRY, **options})
    return store, registry, cache


# ============================================================================
# CONFIGURATION
# ============================================================================


@pytest.mark.unit
class TestConfiguration:
    def test_auto_save_must_beat_lock_timeout(self, registry, make_scheduler):
        with pytest.raises(CacheConfigurationError):
            make_scheduler(registry, auto_save_interval=Config.SESSION_LOCK_TIMEOUT)

    def test_defaults_come_from_config(self, registry):
        scheduler = CacheScheduler(registry)
        assert scheduler.tick_interval == Config.TICK_INTERVAL
        assert scheduler.auto_save_interval == Config.AUTO_SAVE_INTERVAL
        assert scheduler.max_eviction_deferrals == Config.MAX_EVICTION_DEFERRALS

    def test_yaml_tunables_override_defaults(self, registry):
        ConfigManager.set_override("scheduler.tick_interval", 0.5)
        assert CacheScheduler(registry).tick_interval == 0.5


# ============================================================================
# TICK
# ============================================================================


@pytest.mark.unit
class TestTick:
    async def test_overlapping_tick_is_dropped(self, make_registry, roster, player, make_scheduler):
        store = SlowReadStore()
        registry = make_registry(store, roster)
        cache = registry.create_cache("Coins", {"template_data": {"Coins": 0}, **FAST_RETRY})
        await cache.load(player)
        scheduler = make_scheduler(registry, lock_check_interval=0)

        store.read_gate.clear()
        first = asyncio.create_task(scheduler.tick())
        await settle()

        assert await scheduler.tick() is False
        assert scheduler.dropped_ticks == 1

        store.read_gate.set()
        assert await first is True

    async def test_autosave_when_due(self, registry, store, player, clock, ticker, make_scheduler):
        cache = registry.create_cache(
            "Coins",
            {"template_data": {"Coins": 0}, "create_listeners": True, **FAST_RETRY},
        )
        autosaves = []
        cache.add_listener(CacheEvent.AUTOSAVE, lambda entity: autosaves.append(entity))
        data = await cache.load(player)
        scheduler = make_scheduler(registry)

        await scheduler.tick()
        data["Coins"] = 8
        ticker.advance(300)
        clock.advance(300)
        await scheduler.tick()
        await settle()
        await cache.flush_listeners()

        record = store._data[KEY]
        assert record["data"] == {"Coins": 8}
        assert record["version"] == 1
        assert record["session"]["timestamp"] == int(START_TIME + 300)
        assert autosaves == [player]

    async def test_no_autosave_before_interval(self, registry, store, player, ticker, make_scheduler):
        cache = registry.create_cache("Coins", {"template_data": {"Coins": 0}, **FAST_RETRY})
        await cache.load(player)
        scheduler = make_scheduler(registry)
        writes = store.writes

        await scheduler.tick()
        ticker.advance(299)
        await scheduler.tick()
        await settle()

        assert store.writes == writes

    async def test_due_autosave_replaces_pending_one(
        self, make_registry, roster, player, ticker, make_scheduler
    ):
        store, registry, cache = gated_cache(make_registry, roster)
        await cache.load(player)
        scheduler = make_scheduler(registry)
        await scheduler.tick()
        writes = store.writes

        store.gate.clear()
        ticker.advance(300)
        await scheduler.tick()
        await settle()
        first = scheduler._clocks["Coins"][1].save_task
        assert store.cas_calls == 2

        ticker.advance(300)
        await scheduler.tick()
        await settle()
        second = scheduler._clocks["Coins"][1].save_task

        assert first.cancelled()
        assert second is not first
        assert not second.done()
        assert cache.has_write_in_flight(player)

        store.gate.set()
        assert await second is True
        assert store.writes == writes + 1
        assert not cache.has_write_in_flight(player)

    async def test_rejected_entity_forgotten_once_gone(self, make_registry, store, make_scheduler):
        player = Member(entity_id=1)
        owner = make_registry(store, LocalRoster([player]), job_id="job-a")
        await owner.create_cache("Coins", {"template_data": {"Coins": 0}, **FAST_RETRY}).load(player)
        roster_b = LocalRoster([player])
        registry_b = make_registry(store, roster_b, job_id="job-b")
        cache_b = registry_b.create_cache("Coins", {"template_data": {"Coins": 0}, **FAST_RETRY})

        assert await cache_b.load(player) is None
        assert cache_b.state(player) is EntityState.REJECTED
        assert cache_b.tracked_lock_count() == 0

        await make_scheduler(registry_b).tick()

        assert cache_b.state(player) is EntityState.UNLOADED
        assert cache_b.rejected_entity_ids() == []

    async def test_rejected_entity_kept_while_present(self, make_registry, store, make_scheduler):
        player = Member(entity_id=1)
        owner = make_registry(store, LocalRoster([player]), job_id="job-a")
        await owner.create_cache("Coins", {"template_data": {"Coins": 0}, **FAST_RETRY}).load(player)
        roster_b = LocalRoster([player])
        registry_b = make_registry(store, roster_b, job_id="job-b")
        cache_b = registry_b.create_cache("Coins", {"template_data": {"Coins": 0}, **FAST_RETRY})
        await cache_b.load(player)

        roster_b.join(player)
        await make_scheduler(registry_b).tick()

        assert cache_b.state(player) is EntityState.REJECTED

    async def test_changes_polled_each_tick(self, registry, player, make_scheduler):
        cache = registry.create_cache(
            "Coins",
            {"template_data": {"Coins": 0}, "create_listeners": True, **FAST_RETRY},
        )
        changes = []
        cache.add_listener(CacheEvent.CHANGED, lambda entity, old, new: changes.append(new))
        data = await cache.load(player)
        scheduler = make_scheduler(registry)

        data["Coins"] = 2
        await scheduler.tick()
        await cache.flush_listeners()

        assert changes == [{"Coins": 2}]


# ============================================================================
# CROSS-INSTANCE EVICTION
# ============================================================================


@pytest.mark.unit
class TestEviction:
    async def test_foreign_lock_evicts_entity(self, registry, store, roster, player, make_scheduler):
        cache = registry.create_cache("Coins", {"template_data": {"Coins": 0}, **FAST_RETRY})
        data = await cache.load(player)
        data["Coins"] = 50
        await store.set(KEY, FOREIGN_RECORD)
        scheduler = make_scheduler(registry, lock_check_interval=0)

        await scheduler.tick()

        assert roster.kicked[1] == Config.SESSION_KICK_MESSAGE
        assert cache.is_kicked(player)

        await scheduler.tick()
        await settle()

        assert not cache.is_admitted(player)
        assert store._data[KEY] == FOREIGN_RECORD

    async def test_own_lock_is_left_alone(self, registry, roster, player, make_scheduler):
        cache = registry.create_cache("Coins", {"template_data": {"Coins": 0}, **FAST_RETRY})
        await cache.load(player)
        scheduler = make_scheduler(registry, lock_check_interval=0)

        await scheduler.tick()

        assert roster.kicked == {}
        assert cache.is_fully_admitted(player)

    async def test_eviction_deferred_while_write_in_flight(
        self, make_registry, roster, player, make_scheduler
    ):
        store, registry, cache = gated_cache(make_registry, roster)
        await cache.load(player)
        await store.set(KEY, FOREIGN_RECORD)
        scheduler = make_scheduler(registry, lock_check_interval=0, max_eviction_deferrals=2)

        store.gate.clear()
        autosave = asyncio.create_task(cache.save(player, autosave=True))
        await settle()

        await scheduler.tick()
        await scheduler.tick()
        assert roster.kicked == {}

        await scheduler.tick()
        assert roster.kicked[1] == Config.SESSION_KICK_MESSAGE

        store.gate.set()
        assert await autosave is False


# ============================================================================
# FORCED RELEASE
# ============================================================================


@pytest.mark.unit
class TestForcedRelease:
    async def test_departed_entity_is_released(self, registry, store, roster, player, make_scheduler):
        cache = registry.create_cache("Coins", {"template_data": {"Coins": 0}, **FAST_RETRY})
        data = await cache.load(player)
        data["Coins"] = 12
        scheduler = make_scheduler(registry)

        roster.leave(player)
        await scheduler.tick()
        await settle()

        record = store._data[KEY]
        assert record["data"] == {"Coins": 12}
        assert record["session"]["active"] is False
        assert record["version"] == 2
        assert not cache.is_admitted(player)

    async def test_release_waits_for_in_flight_write(
        self, make_registry, roster, player, make_scheduler
    ):
        store, registry, cache = gated_cache(make_registry, roster)
        data = await cache.load(player)
        data["Coins"] = 3
        scheduler = make_scheduler(registry)

        store.gate.clear()
        autosave = asyncio.create_task(cache.save(player, autosave=True))
        await settle()
        roster.leave(player)
        await scheduler.tick()
        await asyncio.sleep(0.05)

        assert cache.is_admitted(player)

        store.gate.set()
        assert await autosave is True
        await scheduler.drain()

        assert store._data[KEY]["version"] == 2
        assert store._data[KEY]["session"]["active"] is False

    async def test_foreign_lock_blocks_final_write(self, registry, store, roster, player, make_scheduler):
        cache = registry.create_cache("Coins", {"template_data": {"Coins": 0}, **FAST_RETRY})
        data = await cache.load(player)
        data["Coins"] = 99
        await store.set(KEY, FOREIGN_RECORD)
        scheduler = make_scheduler(registry)

        roster.leave(player)
        await scheduler.tick()
        await settle()

        assert not cache.is_admitted(player)
        assert store._data[KEY] == FOREIGN_RECORD


# ============================================================================
# DRAIN
# ============================================================================


@pytest.mark.unit
class TestDrain:
    async def test_drain_releases_everything(self, registry, store, roster, make_scheduler):
        coins = registry.create_cache("Coins", {"template_data": {"Coins": 0}, **FAST_RETRY})
        gems = registry.create_cache("Gems", {"template_data": {"Gems": 0}, **FAST_RETRY})
        players = []
        for entity_id in (1, 2):
            player = Member(entity_id=entity_id)
            roster.join(player)
            players.append(player)
            await coins.load(player)
        await gems.load(players[0])
        scheduler = make_scheduler(registry)

        report = await scheduler.drain()

        assert (report.issued, report.completed, report.succeeded, report.failed) == (3, 3, 3, 0)
        assert all(not record["session"]["active"] for record in store._data.values())
        assert coins.draining and gems.draining
        assert await coins.load(players[0]) is None

    async def test_drain_waits_for_in_flight_autosave(
        self, make_registry, roster, player, make_scheduler
    ):
        store, registry, cache = gated_cache(make_registry, roster)
        await cache.load(player)
        scheduler = make_scheduler(registry)

        store.gate.clear()
        autosave = asyncio.create_task(cache.save(player, autosave=True))
        await settle()
        drain = asyncio.create_task(scheduler.drain())
        await settle()
        assert not drain.done()

        store.gate.set()
        report = await drain
        await autosave

        assert report.issued == report.completed == 1
        assert report.succeeded == 1
        assert store._data[KEY]["session"]["active"] is False

    async def test_drain_reports_failures(self, make_registry, flaky_store, roster, player, make_scheduler):
        registry = make_registry(flaky_store, roster)
        cache = registry.create_cache("Coins", {"template_data": {"Coins": 0}, **FAST_RETRY})
        await cache.load(player)
        flaky_store.fail_writes = 3
        scheduler = make_scheduler(registry)

        report = await scheduler.drain()

        assert (report.issued, report.completed, report.succeeded, report.failed) == (1, 1, 0, 1)

    async def test_tick_skips_draining_caches(self, registry, store, roster, player, ticker, make_scheduler):
        cache = registry.create_cache("Coins", {"template_data": {"Coins": 0}, **FAST_RETRY})
        await cache.load(player)
        scheduler = make_scheduler(registry)
        cache.begin_draining()
        roster.leave(player)

        await scheduler.tick()
        await settle()

        assert cache.is_admitted(player)


# ============================================================================
# BACKGROUND LOOP
# ============================================================================


@pytest.mark.unit
class TestLoop:
    async def test_start_and_stop(self, registry, make_scheduler):
        scheduler = make_scheduler(registry)

        scheduler.start()
        await asyncio.sleep(0.05)
        assert scheduler.running
        assert scheduler.ticks > 0

        await scheduler.stop()
        assert not scheduler.running
