"""
Pytest Configuration and Fixtures for sessioncache Tests
========================================================

Purpose
-------
Centralized test fixtures and configuration for the sessioncache test suite.
Provides reusable fixtures for stores, rosters, process identities, caches
and registries.

Responsibilities
----------------
- Test environment variables (set before the package is imported)
- Isolated ConfigManager state per test
- Controllable clocks for session-lock ageing
- Registry factories that behave like separate processes sharing one store
- Testcontainers setup for Redis integration tests

Architecture Notes
------------------
- Unit tests use `InMemoryKeyValueStore` (fast, isolated)
- Integration tests use testcontainers (real Redis)
- Two registries built over the same store model two server processes
"""

from __future__ import annotations

import asyncio
import os

os.environ["ENVIRONMENT"] = "testing"
os.environ["LOG_FILE_ENABLED"] = "false"
os.environ["LOG_COLORS"] = "false"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["PLACE_ID"] = "place-1"
os.environ["JOB_ID"] = "job-a"

from typing import Any, Callable, Dict, Generator, Optional

import pytest
from testcontainers.redis import RedisContainer

from sessioncache.cache import (
    CacheRegistry,
    LocalRoster,
    Member,
    ProcessIdentity,
    SessionArbiter,
    SessionedCache,
)
from sessioncache.core.config import ConfigManager
from sessioncache.core.exceptions import StoreUnavailableError
from sessioncache.core.logging.logger import get_logger
from sessioncache.core.store import InMemoryKeyValueStore, RecordDict, RequestBudget, UpdateFn

logger = get_logger(__name__)

START_TIME = 1_700_000_000.0

# Options that keep retries instant in tests
FAST_RETRY: Dict[str, Any] = {"call_attempts": 3, "retry_delay": 0.0}


# ============================================================================
# PYTEST CONFIGURATION
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_config(tmp_path) -> Generator[None, None, None]:
    """Point ConfigManager at an empty directory for every test."""
    ConfigManager.reset()
    ConfigManager.initialize(tmp_path / "config")
    yield
    ConfigManager.reset()


# ============================================================================
# TEST DOUBLES
# ============================================================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyStore(InMemoryKeyValueStore):
    """In-memory store that fails the next N reads or writes."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_gets = 0
        self.fail_writes = 0

    async def get(self, key: str) -> Optional[RecordDict]:
        if self.fail_gets > 0:
            self.fail_gets -= 1
            raise StoreUnavailableError("GET", key)
        return await super().get(key)

    async def compare_and_swap(self, key: str, update_fn: UpdateFn) -> Optional[RecordDict]:
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise StoreUnavailableError("CAS", key)
        return await super().compare_and_swap(key, update_fn)


class GatedStore(InMemoryKeyValueStore):
    """In-memory store whose writes wait until `gate` is opened."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.gate.set()
        self.cas_calls = 0

    async def compare_and_swap(self, key: str, update_fn: UpdateFn) -> Optional[RecordDict]:
        self.cas_calls += 1
        await self.gate.wait()
        return await super().compare_and_swap(key, update_fn)


async def settle(rounds: int = 5) -> None:
    """Let pending tasks run up to their next real suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def flaky_store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def roster() -> LocalRoster:
    return LocalRoster()


@pytest.fixture
def player(roster: LocalRoster) -> Member:
    member = Member(entity_id=1, name="player1")
    roster.join(member)
    return member


@pytest.fixture
def make_registry(clock: FakeClock) -> Callable[..., CacheRegistry]:
    """
    Build a registry that acts as one server process.

    Registries sharing a store but using different `job_id`s behave like
    separate processes contending for the same records.
    """

    def factory(
        store: InMemoryKeyValueStore,
        roster: Optional[LocalRoster] = None,
        job_id: str = "job-a",
    ) -> CacheRegistry:
        arbiter = SessionArbiter(ProcessIdentity("place-1", job_id), clock=clock)
        return CacheRegistry(
            store,
            roster if roster is not None else LocalRoster(),
            arbiter=arbiter,
            budget=RequestBudget(base=10_000),
        )

    return factory


@pytest.fixture
def registry(
    make_registry: Callable[..., CacheRegistry],
    store: InMemoryKeyValueStore,
    roster: LocalRoster,
) -> CacheRegistry:
    return make_registry(store, roster)


@pytest.fixture
def coins(registry: CacheRegistry) -> SessionedCache:
    cache = registry.create_cache("Coins", {"template_data": {"Coins": 0}, **FAST_RETRY})
    assert cache is not None
    return cache


# ============================================================================
# TESTCONTAINERS FIXTURES (Integration Tests)
# ============================================================================


@pytest.fixture(scope="session")
def redis_container():
    """
    Start Redis testcontainer for integration tests.

    Scope: session (container persists across all tests)
    Skipped when Docker is not available.
    """
    container = RedisContainer(image="redis:7-alpine")
    try:
        container.start()
    except Exception as exc:
        pytest.skip(f"Docker unavailable: {exc}")

    logger.info(
        "Redis testcontainer started",
        extra={
            "host": container.get_container_host_ip(),
            "port": container.get_exposed_port(6379),
        },
    )
    yield container
    container.stop()
