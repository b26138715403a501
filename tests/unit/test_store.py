"""
Unit tests for the in-memory store, Redis record encoding, RetryPolicy and
RequestBudget.
"""

import pytest

from sessioncache.cache.reconcile import reconcile
from sessioncache.core.exceptions import (
    CacheConfigurationError,
    RecordEncodingError,
    StoreError,
    StoreUnavailableError,
    VersionConflictError,
    WriteRejectedError,
    is_transient_error,
)
from sessioncache.core.store import (
    METHOD_GET,
    METHOD_UPDATE,
    InMemoryKeyValueStore,
    RedisKeyValueStore,
    RequestBudget,
    RetryPolicy,
)
from tests.conftest import FakeClock


async def no_sleep(_: float) -> None:
    return None


# ============================================================================
# IN-MEMORY STORE
# ============================================================================


@pytest.mark.unit
class TestInMemoryStore:
    async def test_get_returns_copy(self, store):
        await store.set("k", {"data": {"Coins": 1}, "version": 1})

        record = await store.get("k")
        record["data"]["Coins"] = 99

        assert (await store.get("k"))["data"]["Coins"] == 1

    async def test_missing_key(self, store):
        assert await store.get("missing") is None

    async def test_cas_receives_latest_and_writes(self, store):
        await store.set("k", {"version": 1})
        seen = []

        def bump(latest):
            seen.append(latest)
            return {"version": latest["version"] + 1}

        assert await store.compare_and_swap("k", bump) == {"version": 2}
        assert seen == [{"version": 1}]
        assert store._data["k"] == {"version": 2}

    async def test_cas_declined_leaves_record(self, store):
        await store.set("k", {"version": 1})
        writes = store.writes

        assert await store.compare_and_swap("k", lambda latest: None) is None
        assert store._data["k"] == {"version": 1}
        assert store.writes == writes

    async def test_cas_on_missing_key_sees_none(self, store):
        seen = []
        await store.compare_and_swap("k", lambda latest: seen.append(latest) or {"version": 1})
        assert seen == [None]

    async def test_initial_records_and_delete(self):
        store = InMemoryKeyValueStore({"a": {"version": 1}})
        assert store.keys() == ["a"]
        assert await store.delete("a") is True
        assert await store.delete("a") is False


# ============================================================================
# RETRY POLICY
# ============================================================================


@pytest.mark.unit
class TestRetryPolicy:
    async def test_retries_transient_errors(self):
        policy = RetryPolicy(max_attempts=3, delay=0.5)
        calls = []
        delays = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StoreUnavailableError("GET", "k")
            return "ok"

        async def record_sleep(seconds):
            delays.append(seconds)

        assert await policy.execute(flaky, "get", sleep=record_sleep) == "ok"
        assert len(calls) == 3
        assert delays == [0.5, 0.5]

    async def test_gives_up_after_attempts(self):
        policy = RetryPolicy(max_attempts=2, delay=0.0)
        calls = []

        async def always_fails():
            calls.append(1)
            raise VersionConflictError("k", expected=1, found=2)

        with pytest.raises(VersionConflictError):
            await policy.execute(always_fails, "update", sleep=no_sleep)
        assert len(calls) == 2

    async def test_permanent_errors_are_not_retried(self):
        policy = RetryPolicy(max_attempts=5, delay=0.0)
        calls = []

        async def rejected():
            calls.append(1)
            raise WriteRejectedError("k", "session lost")

        with pytest.raises(WriteRejectedError):
            await policy.execute(rejected, "update", sleep=no_sleep)
        assert len(calls) == 1

    async def test_encoding_errors_are_not_retried(self):
        policy = RetryPolicy(max_attempts=5, delay=0.0)
        calls = []

        async def unencodable():
            calls.append(1)
            return RedisKeyValueStore._encode("k", {"data": {"Born": object()}})

        with pytest.raises(RecordEncodingError):
            await policy.execute(unencodable, "set", sleep=no_sleep)
        assert len(calls) == 1

    async def test_disabled_runs_once(self):
        policy = RetryPolicy(max_attempts=5, delay=0.0, enabled=False)
        calls = []

        async def fails():
            calls.append(1)
            raise StoreError("GET", "k")

        assert policy.max_attempts == 1
        with pytest.raises(StoreError):
            await policy.execute(fails, "get", sleep=no_sleep)
        assert len(calls) == 1

    @pytest.mark.parametrize(
        "exc, transient",
        [
            (StoreError("GET", "k"), True),
            (StoreUnavailableError("GET", "k"), True),
            (VersionConflictError("k", expected=1, found=3), True),
            (WriteRejectedError("k", "kicked"), False),
            (CacheConfigurationError("call_attempts", "bad"), False),
            (RecordEncodingError("ENCODE", "k"), False),
            (ValueError("x"), False),
        ],
    )
    def test_transient_classification(self, exc, transient):
        assert is_transient_error(exc) is transient


# ============================================================================
# REQUEST BUDGET
# ============================================================================


@pytest.mark.unit
class TestRequestBudget:
    def test_capacity_grows_with_entities(self):
        count = {"n": 0}
        budget = RequestBudget(lambda: count["n"], base=60, per_entity=10)

        assert budget.capacity() == 60
        count["n"] = 4
        assert budget.capacity() == 100

    async def test_acquire_within_capacity(self):
        clock = FakeClock(start=0.0)
        budget = RequestBudget(base=2, per_entity=0, window=60, clock=clock, sleep=no_sleep)

        await budget.acquire(METHOD_GET)
        await budget.acquire(METHOD_GET)

        assert budget.get_remaining(METHOD_GET) == 0
        assert budget.get_remaining(METHOD_UPDATE) == 2

    async def test_acquire_waits_for_window(self):
        clock = FakeClock(start=0.0)
        waits = []

        async def advancing_sleep(seconds):
            waits.append(seconds)
            clock.advance(seconds)

        budget = RequestBudget(base=1, per_entity=0, window=60, clock=clock, sleep=advancing_sleep)

        await budget.acquire(METHOD_UPDATE)
        clock.advance(15)
        await budget.acquire(METHOD_UPDATE)

        assert waits == [45]
        assert budget.get_status()["waits"] == 1

    async def test_methods_are_budgeted_separately(self):
        budget = RequestBudget(base=1, per_entity=0, clock=FakeClock(0.0), sleep=no_sleep)

        await budget.acquire(METHOD_GET)
        await budget.acquire(METHOD_UPDATE)

        assert budget.get_status()["in_window"] == {METHOD_GET: 1, METHOD_UPDATE: 1}


# ============================================================================
# REDIS RECORD ENCODING
# ============================================================================


@pytest.mark.unit
class TestRedisRecordEncoding:
    def test_integer_keys_survive(self):
        record = {"data": {"Inventory": {1: "sword", 2: "shield"}, "Slots": [{3: True}]}, "version": 1}

        decoded = RedisKeyValueStore._decode("k", RedisKeyValueStore._encode("k", record))

        assert decoded == record
        assert list(decoded["data"]["Inventory"]) == [1, 2]

    def test_reconcile_after_decode_keeps_integer_keyed_data(self):
        record = {"data": {"Inventory": {1: "sword"}}, "version": 1}
        decoded = RedisKeyValueStore._decode("k", RedisKeyValueStore._encode("k", record))

        reconcile(decoded["data"], {"Inventory": {1: "stick"}})

        assert decoded["data"] == {"Inventory": {1: "sword"}}

    def test_marker_prefixed_string_keys_are_escaped(self):
        record = {"data": {"#i:5": "text", "#tag": 1, 5: "int"}}

        encoded = RedisKeyValueStore._encode("k", record)

        assert RedisKeyValueStore._decode("k", encoded) == record

    def test_untagged_json_decodes_as_is(self):
        assert RedisKeyValueStore._decode("k", '{"data":{"Coins":3},"version":2}') == {
            "data": {"Coins": 3},
            "version": 2,
        }

    @pytest.mark.parametrize("bad_key", [1.5, None, True, (1, 2)])
    def test_unsupported_keys_rejected(self, bad_key):
        with pytest.raises(RecordEncodingError) as info:
            RedisKeyValueStore._encode("k", {"data": {bad_key: 1}})

        assert info.value.is_retryable is False
        assert info.value.operation == "ENCODE"

    def test_unserialisable_value_is_not_transient(self):
        with pytest.raises(RecordEncodingError) as info:
            RedisKeyValueStore._encode("k", {"data": {"Born": object()}})

        assert not is_transient_error(info.value)

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"#i:x": 1}'])
    def test_malformed_stored_values(self, raw):
        with pytest.raises(RecordEncodingError):
            RedisKeyValueStore._decode("k", raw)
