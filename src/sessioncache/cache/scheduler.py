"""
CacheScheduler: periodic maintenance and the graceful-shutdown barrier.

Purpose
-------
Drive every registered cache once per tick: auto-save admitted entities,
detect sessions stolen by another process, and release entities that left
without a final save. On shutdown, flush everything before the process
exits.

Responsibilities
----------------
- Background tick loop (`start` / `stop`) with a re-entrancy guard
- Per-entity auto-save clock; each auto-save replaces the previous trigger
- Cross-instance lock check with bounded eviction deferral while a write is
  in flight or the entity is still loading
- One forced release per departed entity, bounded by the grace period
- `drain()`: stop admissions, release every admitted entity, and wait until
  every issued and in-flight save has completed

Non-Responsibilities
--------------------
- Session arbitration rules (see `SessionArbiter`)
- The save algorithm itself (see `SessionedCache.save`)

Design Decisions
----------------
- Background saves are tracked in a task set (`add_done_callback(discard)`),
  the same pattern the listener signals use, so the drain barrier can wait
  on them.
- A deferred eviction re-uses the record read that triggered it instead of
  re-reading the store every tick.

Configuration Keys
------------------
- scheduler.tick_interval            (Config.TICK_INTERVAL)
- scheduler.auto_save_interval       (Config.AUTO_SAVE_INTERVAL)
- scheduler.lock_check_interval      (Config.LOCK_CHECK_INTERVAL)
- scheduler.grace_period             (Config.FORCED_SAVE_GRACE_PERIOD)
- scheduler.max_eviction_deferrals   (Config.MAX_EVICTION_DEFERRALS)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional, Set, Tuple

from sessioncache.cache.models import Record
from sessioncache.cache.registry import CacheRegistry
from sessioncache.cache.service import SessionedCache, entity_id_of
from sessioncache.core.config import Config, ConfigManager
from sessioncache.core.exceptions import CacheConfigurationError
from sessioncache.core.logging.logger import LogContext, get_logger
from sessioncache.core.store import RecordDict

logger = get_logger(__name__)


@dataclass
class DrainReport:
    """Outcome of the shutdown barrier."""

    issued: int
    completed: int
    succeeded: int
    failed: int


@dataclass
class _EntityClock:
    entity: Any
    last_save: float
    last_lock_check: float
    deferred: bool = False
    deferrals: int = 0
    pending_record: Optional[RecordDict] = None
    save_task: Optional["asyncio.Task[bool]"] = None

    def clear_deferral(self) -> None:
        self.deferred = False
        self.deferrals = 0
        self.pending_record = None


def _setting(key: str, explicit: Optional[float], fallback: float) -> Any:
    if explicit is not None:
        return explicit
    return ConfigManager.get(f"scheduler.{key}", fallback)


class CacheScheduler:
    def __init__(
        self,
        registry: CacheRegistry,
        *,
        tick_interval: Optional[float] = None,
        auto_save_interval: Optional[float] = None,
        lock_check_interval: Optional[float] = None,
        grace_period: Optional[float] = None,
        max_eviction_deferrals: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.tick_interval = float(_setting("tick_interval", tick_interval, Config.TICK_INTERVAL))
        self.auto_save_interval = float(
            _setting("auto_save_interval", auto_save_interval, Config.AUTO_SAVE_INTERVAL)
        )
        self.lock_check_interval = float(
            _setting("lock_check_interval", lock_check_interval, Config.LOCK_CHECK_INTERVAL)
        )
        self.grace_period = float(_setting("grace_period", grace_period, Config.FORCED_SAVE_GRACE_PERIOD))
        self.max_eviction_deferrals = int(
            _setting("max_eviction_deferrals", max_eviction_deferrals, Config.MAX_EVICTION_DEFERRALS)
        )

        if self.auto_save_interval >= registry.arbiter.lock_timeout:
            raise CacheConfigurationError(
                "auto_save_interval",
                f"must be shorter than the session lock timeout ({registry.arbiter.lock_timeout:g}s)",
            )

        self._clock = clock
        self._sleep = sleep
        self._clocks: Dict[str, Dict[int, _EntityClock]] = {}
        self._releases: Dict[Tuple[str, int], "asyncio.Task[bool]"] = {}
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._ticking = False
        self._loop_task: Optional["asyncio.Task[None]"] = None
        self.ticks = 0
        self.dropped_ticks = 0

    # ═══════════════════════════════════════════════════════════════════════
    # BACKGROUND LOOP
    # ═══════════════════════════════════════════════════════════════════════

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        if self.running:
            return
        self._loop_task = asyncio.get_running_loop().create_task(self._run(), name="cache-scheduler")
        logger.info(
            "Cache scheduler started",
            extra={
                "tick_interval": self.tick_interval,
                "auto_save_interval": self.auto_save_interval,
                "lock_check_interval": self.lock_check_interval,
            },
        )

    async def stop(self) -> None:
        task = self._loop_task
        self._loop_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Cache scheduler stopped", extra={"ticks": self.ticks})

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as exc:
                logger.error(
                    "Scheduler tick failed",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                    exc_info=True,
                )
            await self._sleep(self.tick_interval)

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> "asyncio.Task[Any]":
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background cache task failed",
                extra={
                    "task_name": task.get_name(),
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )

    def get_background_task_count(self) -> int:
        return len(self._tasks)

    # ═══════════════════════════════════════════════════════════════════════
    # TICK
    # ═══════════════════════════════════════════════════════════════════════

    async def tick(self) -> bool:
        """
        Run one maintenance pass over every cache.

        Returns
        -------
        bool
            False if a previous tick was still running and this one was dropped.
        """
        if self._ticking:
            self.dropped_ticks += 1
            return False

        self._ticking = True
        try:
            for cache in self.registry.caches():
                clocks = self._clocks.setdefault(cache.name, {})
                self._prune(cache, clocks)
                await cache.poll_changes()

                if cache.draining:
                    continue

                for entity in cache.admitted_entities():
                    if self.registry.roster.is_entity_present(entity):
                        await self._tend(cache, clocks, entity)
                    else:
                        self._schedule_forced_release(cache, entity)
            self.ticks += 1
        finally:
            self._ticking = False
        return True

    def _prune(self, cache: SessionedCache, clocks: Dict[int, _EntityClock]) -> None:
        roster = self.registry.roster
        for entity_id, state in list(clocks.items()):
            if roster.is_entity_present(state.entity) and cache.is_admitted(entity_id):
                continue
            if state.save_task is not None and not state.save_task.done():
                state.save_task.cancel()
            del clocks[entity_id]
            cache.forget(entity_id)

        rejected = cache.rejected_entity_ids()
        if rejected:
            present = {entity_id_of(entity) for entity in roster.list_active_entities()}
            for entity_id in rejected:
                if entity_id not in present:
                    cache.forget(entity_id)

    async def _tend(self, cache: SessionedCache, clocks: Dict[int, _EntityClock], entity: Any) -> None:
        entity_id = entity_id_of(entity)
        now = self._clock()
        state = clocks.get(entity_id)
        if state is None:
            state = _EntityClock(entity=entity, last_save=now, last_lock_check=now)
            clocks[entity_id] = state

        if now - state.last_save >= self.auto_save_interval:
            state.last_save = now
            if state.save_task is not None and not state.save_task.done():
                state.save_task.cancel()
            state.save_task = self._spawn(
                cache.save(entity, autosave=True),
                name=f"autosave-{cache.name}-{entity_id}",
            )
            await cache.fire_autosave(entity)

        if state.deferred or now - state.last_lock_check >= self.lock_check_interval:
            state.last_lock_check = now
            await self._check_lock(cache, state, entity)

    async def _check_lock(self, cache: SessionedCache, state: _EntityClock, entity: Any) -> None:
        entity_id = entity_id_of(entity)
        latest = state.pending_record
        if latest is None:
            latest = await cache.get_data_async(entity_id, bypass_cache=True)

        record = Record.from_dict(latest)
        session = record.session if record is not None else None
        if not cache.arbiter.is_foreign_active(session):
            state.clear_deferral()
            return

        if cache.has_write_in_flight(entity) or not cache.is_fully_admitted(entity):
            state.deferrals += 1
            if state.deferrals <= self.max_eviction_deferrals:
                state.deferred = True
                state.pending_record = latest
                logger.debug(
                    "Eviction deferred",
                    extra={
                        "entity_id": entity_id,
                        "cache_name": cache.name,
                        "deferrals": state.deferrals,
                    },
                )
                return
            logger.warning(
                "Eviction deferral limit reached",
                extra={
                    "entity_id": entity_id,
                    "cache_name": cache.name,
                    "max_eviction_deferrals": self.max_eviction_deferrals,
                },
            )

        state.clear_deferral()
        cache.mark_kicked(entity)
        logger.warning(
            "Session held by another process; evicting entity",
            extra={
                "entity_id": entity_id,
                "cache_name": cache.name,
                "session_owner": session.owner if session is not None else None,
            },
        )
        self.registry.roster.kick(entity, cache.kick_message)

    # ═══════════════════════════════════════════════════════════════════════
    # FORCED RELEASE
    # ═══════════════════════════════════════════════════════════════════════

    def _schedule_forced_release(self, cache: SessionedCache, entity: Any) -> None:
        key = (cache.name, entity_id_of(entity))
        if key in self._releases:
            return

        task = self._spawn(
            self._forced_release(cache, entity),
            name=f"release-{cache.name}-{key[1]}",
        )
        self._releases[key] = task

        def _forget(done: "asyncio.Task[bool]") -> None:
            if self._releases.get(key) is done:
                del self._releases[key]

        task.add_done_callback(_forget)

    async def _forced_release(self, cache: SessionedCache, entity: Any) -> bool:
        entity_id = entity_id_of(entity)
        async with LogContext(entity_id=entity_id, cache_name=cache.name, operation="forced_release"):
            if cache.has_write_in_flight(entity):
                deadline = self._clock() + self.grace_period
                while cache.has_write_in_flight(entity) and self._clock() < deadline:
                    await self._sleep(self.tick_interval)

            if self.registry.roster.is_entity_present(entity) or not cache.is_admitted(entity):
                return False

            latest = Record.from_dict(await cache.get_data_async(entity_id, bypass_cache=True))
            if latest is not None and cache.arbiter.is_foreign_active(latest.session):
                cache.mark_kicked(entity)

            success = await cache.save(entity)
            logger.info(
                "Departed entity released",
                extra={"entity_id": entity_id, "cache_name": cache.name, "success": success},
            )
            return success

    # ═══════════════════════════════════════════════════════════════════════
    # DRAIN
    # ═══════════════════════════════════════════════════════════════════════

    async def drain(self) -> DrainReport:
        """
        Release every admitted entity and wait for all outstanding saves.

        Every cache enters draining mode first, so no new entity is admitted
        while the barrier is open.
        """
        caches = self.registry.caches()
        for cache in caches:
            cache.begin_draining()

        issued = []
        for cache in caches:
            for entity in cache.admitted_entities():
                issued.append(
                    self._spawn(
                        cache.save(entity),
                        name=f"drain-{cache.name}-{entity_id_of(entity)}",
                    )
                )

        logger.info("Drain started", extra={"caches": len(caches), "issued": len(issued)})

        results = await asyncio.gather(*issued, return_exceptions=True)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        for cache in caches:
            await cache.flush_listeners()

        succeeded = sum(1 for result in results if result is True)
        report = DrainReport(
            issued=len(issued),
            completed=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
        )
        logger.info(
            "Drain complete",
            extra={
                "issued": report.issued,
                "completed": report.completed,
                "succeeded": report.succeeded,
                "failed": report.failed,
            },
        )
        return report

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "ticks": self.ticks,
            "dropped_ticks": self.dropped_ticks,
            "background_tasks": len(self._tasks),
            "pending_releases": len(self._releases),
            "tracked_entities": {name: len(clocks) for name, clocks in self._clocks.items()},
        }
