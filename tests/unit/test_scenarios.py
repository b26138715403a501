"""
End-to-end scenarios across processes sharing one backing store.

Two registries built over the same `InMemoryKeyValueStore` with different
job ids stand in for two server processes.
"""

import pytest

from sessioncache.cache import EntityState, LocalRoster, Member
from sessioncache.cache.reconcile import reconcile_copy
from sessioncache.core.config import Config
from tests.conftest import FAST_RETRY, START_TIME

KEY = "Coins/Player_1"
COINS = {"template_data": {"Coins": 0}, **FAST_RETRY}


def two_processes(make_registry, store):
    roster_a, roster_b = LocalRoster(), LocalRoster()
    player = Member(entity_id=1, name="player1")
    roster_a.join(player)
    roster_b.join(player)
    cache_a = make_registry(store, roster_a, job_id="job-a").create_cache("Coins", COINS)
    cache_b = make_registry(store, roster_b, job_id="job-b").create_cache("Coins", COINS)
    return player, (cache_a, roster_a), (cache_b, roster_b)


@pytest.mark.unit
class TestScenarios:
    async def test_first_load_claims_session(self, coins, store, player):
        assert await coins.load(player) == {"Coins": 0}
        assert store._data[KEY]["session"]["active"] is True

    async def test_second_process_is_refused(self, make_registry, store):
        player, (cache_a, _), (cache_b, roster_b) = two_processes(make_registry, store)

        assert await cache_a.load(player) is not None
        assert await cache_b.load(player) is None

        assert cache_b.state(player) is EntityState.REJECTED
        assert roster_b.kicked[1] == Config.SESSION_KICK_MESSAGE
        assert store._data[KEY]["session"]["owner"] == "place-1:job-a"

    async def test_stale_lock_is_taken_over(self, make_registry, store, clock):
        player, (cache_a, _), (cache_b, _) = two_processes(make_registry, store)
        await cache_a.load(player)
        clock.advance(40 * 60)

        assert await cache_b.load(player) == {"Coins": 0}

        session = store._data[KEY]["session"]
        assert session["owner"] == "place-1:job-b"
        assert session["timestamp"] == int(START_TIME + 40 * 60)

    async def test_release_persists_changes(self, coins, store, player):
        data = await coins.load(player)
        data["Coins"] = 10

        await coins.save(player)

        record = store._data[KEY]
        assert record["data"]["Coins"] == 10
        assert record["version"] == 2
        assert record["session"]["active"] is False

    async def test_template_growth_backfills_on_next_load(self, make_registry, store):
        player = Member(entity_id=1)
        first = make_registry(store, LocalRoster([player])).create_cache("Coins", COINS)
        data = await first.load(player)
        data["Coins"] = 10
        await first.save(player)

        grown = make_registry(store, LocalRoster([player])).create_cache(
            "Coins", {"template_data": {"Coins": 0, "Gems": 0}, **FAST_RETRY}
        )

        assert await grown.load(player) == {"Coins": 10, "Gems": 0}


@pytest.mark.unit
class TestProperties:
    async def test_single_admission(self, make_registry, store):
        player, (cache_a, _), (cache_b, roster_b) = two_processes(make_registry, store)

        await cache_a.load(player)
        await cache_b.load(player)
        assert [cache_a.is_admitted(player), cache_b.is_admitted(player)] == [True, False]

        await cache_a.save(player)
        roster_b.join(player)
        assert await cache_b.load(player) == {"Coins": 0}
        assert store._data[KEY]["session"]["owner"] == "place-1:job-b"

    async def test_version_strictly_increases_on_release_only(self, coins, store, player):
        versions = []
        for _ in range(3):
            await coins.load(player)
            await coins.save(player, autosave=True)
            versions.append(store._data[KEY]["version"])
            await coins.save(player)
            versions.append(store._data[KEY]["version"])

        assert versions == [1, 2, 2, 3, 3, 4]

    @pytest.mark.parametrize(
        "seed",
        [
            None,
            {"Coins": 4},
            {"Coins": 4, "Stats": {"Level": 2}, "Extra": [1, 2]},
        ],
    )
    async def test_round_trip(self, registry, player, seed):
        template = {"Coins": 0, "Stats": {"Level": 1, "Xp": 0}}
        cache = registry.create_cache("RoundTrip", {"template_data": template, **FAST_RETRY})

        await cache.load(player, migrated_seed=seed)

        assert cache.get(player) == reconcile_copy(seed or {}, template)
