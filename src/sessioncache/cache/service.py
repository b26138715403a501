"""
SessionedCache: in-memory, session-locked record cache for one dataset.

Purpose
-------
Hold the authoritative in-memory copy of every admitted entity's record,
and move records between memory and the shared backing store with
optimistic concurrency.

Responsibilities
----------------
- Load: fetch with bounded retry, arbitrate the session lock, filter and
  reconcile data, persist the session claim, emit LOADED.
- Save: snapshot, optional float compression, compare-and-swap write that
  either refreshes (auto-save) or releases (final save) the session.
- Wipe, out-of-band reads/writes (`get_data_async` / `save_data_async`).
- Listener signals and change detection.

Non-Responsibilities
--------------------
- Periodic work (auto-save timing, cross-instance eviction, forced release
  of departed entities, drain barrier) lives in `CacheScheduler`.
- Cache discovery lives in `CacheRegistry`.

Concurrency
-----------
- Single event loop. A per-entity `asyncio.Lock` serialises load, save,
  auto-save and wipe for the same entity; different entities interleave.
- A release save evicts the entry and detaches change detection
  synchronously, *before* waiting for the lock or the network, so the
  entity can never be observed as admitted while its final write is
  pending.
- Writes in flight are counted per entity; the scheduler defers evictions
  while a write is pending.

Error Handling
--------------
- Store failures are retried under the cache's `RetryPolicy`. Exhausted
  loads fall back to seed/template data; exhausted saves return False.
- A kicked entity's write is refused (`WriteRejectedError`, not retried).
- A version mismatch (`VersionConflictError`) is retried like a transient
  failure, then surfaces as a failed save.
- An exception raised by a save transform fails that save (logged, False)
  without writing; a release still evicts and fires RELEASED.
- Nothing raises past `save()`; listener failures are isolated by `Signal`.
"""

from __future__ import annotations

import asyncio
import math
from typing import Any, Callable, Dict, List, Optional, Set, Union

from sessioncache.cache.filtering import ContentFilter, PassthroughFilter, filter_strings
from sessioncache.cache.models import CacheEntry, EntityState, Record
from sessioncache.cache.options import CacheOptions
from sessioncache.cache.reconcile import deep_copy, is_identical, map_leaves, reconcile
from sessioncache.cache.roster import Roster
from sessioncache.cache.session import Admission, SessionArbiter
from sessioncache.core.config import Config
from sessioncache.core.event import CacheEvent, CallbackType, Connection, Signal
from sessioncache.core.exceptions import (
    SessionCacheException,
    VersionConflictError,
    WriteRejectedError,
)
from sessioncache.core.logging.logger import LogContext, get_logger
from sessioncache.core.store import (
    METHOD_GET,
    METHOD_UPDATE,
    KeyValueStore,
    RecordDict,
    RequestBudget,
    RetryPolicy,
)

logger = get_logger(__name__)

EntityRef = Union[int, Any]
SaveTransform = Callable[[RecordDict, RecordDict], Optional[RecordDict]]


def entity_id_of(entity: EntityRef) -> int:
    if isinstance(entity, int) and not isinstance(entity, bool):
        return entity
    return int(entity.entity_id)


class SessionedCache:
    """
    One named cache of session-locked entity records.

    Instances are created by `CacheRegistry.create_cache`; constructing one
    directly is supported for single-cache deployments and tests.
    """

    def __init__(
        self,
        name: str,
        options: CacheOptions,
        *,
        store: KeyValueStore,
        roster: Roster,
        arbiter: Optional[SessionArbiter] = None,
        content_filter: Optional[ContentFilter] = None,
        budget: Optional[RequestBudget] = None,
        kick_message: Optional[str] = None,
    ) -> None:
        self.name = name
        self.options = options
        self._store = store
        self._roster = roster
        self._arbiter = arbiter or SessionArbiter()
        self._content_filter = content_filter or PassthroughFilter()
        self._budget = budget or RequestBudget(lambda: len(self._entries))
        self._kick_message = kick_message or Config.SESSION_KICK_MESSAGE
        self._retry = RetryPolicy(
            max_attempts=options.call_attempts,
            delay=options.retry_delay,
            enabled=options.retry_enabled,
        )

        self._entries: Dict[int, CacheEntry] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._loading: Set[int] = set()
        self._saving: Set[int] = set()
        self._kicked: Set[int] = set()
        self._rejected: Set[int] = set()
        self._writes_in_flight: Dict[int, int] = {}
        self._signals: Dict[CacheEvent, Signal] = {}
        self._draining = False

    def __repr__(self) -> str:
        return f"SessionedCache(name={self.name!r}, admitted={len(self._entries)})"

    # ═══════════════════════════════════════════════════════════════════════
    # KEYS & HELPERS
    # ═══════════════════════════════════════════════════════════════════════

    def store_key(self, entity: EntityRef) -> str:
        return f"{self.name}/{self.options.format_key(entity_id_of(entity))}"

    def _lock_for(self, entity_id: int) -> asyncio.Lock:
        lock = self._locks.get(entity_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[entity_id] = lock
        return lock

    def _discard_idle_lock(self, entity_id: int) -> None:
        """Drop the entity's lock once nothing holds, awaits or needs it."""
        if (
            entity_id in self._entries
            or entity_id in self._loading
            or entity_id in self._saving
            or self._writes_in_flight.get(entity_id, 0) > 0
        ):
            return
        lock = self._locks.get(entity_id)
        if lock is not None and not lock.locked():
            self._locks.pop(entity_id, None)

    def _write_started(self, entity_id: int) -> None:
        self._writes_in_flight[entity_id] = self._writes_in_flight.get(entity_id, 0) + 1

    def _write_finished(self, entity_id: int) -> None:
        remaining = self._writes_in_flight.get(entity_id, 0) - 1
        if remaining > 0:
            self._writes_in_flight[entity_id] = remaining
        else:
            self._writes_in_flight.pop(entity_id, None)

    async def _fetch(self, key: str) -> Optional[RecordDict]:
        async def attempt() -> Optional[RecordDict]:
            await self._budget.acquire(METHOD_GET)
            return await self._store.get(key)

        return await self._retry.execute(attempt, f"GET:{key}")

    def _compress(self, value: Any, _key: Any) -> Any:
        if isinstance(value, float) and math.isfinite(value):
            factor = 10 ** self.options.decimal_places
            return math.floor(value * factor) / factor
        return value

    def _snapshot(self, entry: CacheEntry, *, release: bool) -> Record:
        snapshot = entry.record.copy()
        if release:
            snapshot.last_left = self._arbiter.now()
        if self.options.compress_float_numbers and snapshot.data is not None:
            snapshot.data = map_leaves(snapshot.data, self._compress)
        return snapshot

    # ═══════════════════════════════════════════════════════════════════════
    # LOAD
    # ═══════════════════════════════════════════════════════════════════════

    async def load(
        self,
        entity: EntityRef,
        migrated_seed: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Admit `entity` into this cache and return its live data.

        Parameters
        ----------
        entity:
            The entity (anything with `entity_id`) to admit.
        migrated_seed:
            Data to start from when the store has no usable record (for
            example data migrated from a legacy system). Reconciled against
            the template.

        Returns
        -------
        Optional[Dict[str, Any]]
            The live data mapping, or None if the entity is already admitted
            or loading, the cache is draining, or the session is held by
            another process (the entity is kicked).
        """
        entity_id = entity_id_of(entity)
        if entity_id in self._entries or entity_id in self._loading:
            return None
        if self._draining:
            logger.debug(
                "Load refused while draining",
                extra={"entity_id": entity_id, "cache_name": self.name},
            )
            return None

        key = self.store_key(entity_id)
        self._loading.add(entity_id)
        self._rejected.discard(entity_id)
        self._kicked.discard(entity_id)

        try:
            async with LogContext(entity_id=entity_id, cache_name=self.name, operation="load"):
                async with self._lock_for(entity_id):
                    entry = await self._admit(entity, entity_id, key, migrated_seed)
        finally:
            self._loading.discard(entity_id)
            self._discard_idle_lock(entity_id)

        if entry is None or self._entries.get(entity_id) is not entry:
            return None

        entry.admitted = True
        if CacheEvent.CHANGED in self._signals:
            entry.snapshot = deep_copy(entry.record.data)

        logger.info(
            "Entity admitted",
            extra={
                "entity_id": entity_id,
                "cache_name": self.name,
                "version": entry.record.version,
            },
        )
        await self._fire(CacheEvent.LOADED, entity, entry.record.data)
        return entry.record.data

    async def _admit(
        self,
        entity: EntityRef,
        entity_id: int,
        key: str,
        migrated_seed: Optional[Dict[str, Any]],
    ) -> Optional[CacheEntry]:
        try:
            stored = Record.from_dict(await self._fetch(key))
        except SessionCacheException as exc:
            logger.warning(
                "Record fetch failed; admitting with seed data",
                extra={
                    "key": key,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            stored = None

        if self._arbiter.evaluate(stored) is Admission.REJECT:
            self._reject(entity, entity_id, stored.session.owner if stored and stored.session else None)
            return None

        template = self.options.template_data
        if stored is not None and stored.data is not None:
            data = stored.data
            if self.options.filter_string_content:
                data = await filter_strings(
                    data, entity_id, self.options, self._content_filter
                )
            reconcile(data, template)
        elif isinstance(migrated_seed, dict):
            data = reconcile(deep_copy(migrated_seed), template)
        else:
            data = deep_copy(template)

        if self._draining:
            return None

        record = stored if stored is not None else Record()
        record.data = data
        record.last_joined = self._arbiter.now()
        self._arbiter.claim(record)

        entry = CacheEntry(entity=entity, record=record)
        self._entries[entity_id] = entry

        self._write_started(entity_id)
        try:
            await self._commit(entity_id, key, self._snapshot(entry, release=False), None, autosave=True)
        except WriteRejectedError as exc:
            self._entries.pop(entity_id, None)
            self._reject(entity, entity_id, None, reason=exc.reason)
            return None
        finally:
            self._write_finished(entity_id)

        return entry

    def _reject(
        self,
        entity: EntityRef,
        entity_id: int,
        holder: Optional[str],
        reason: str = "session active elsewhere",
    ) -> None:
        self._rejected.add(entity_id)
        logger.info(
            "Admission rejected; kicking entity",
            extra={
                "entity_id": entity_id,
                "cache_name": self.name,
                "session_owner": holder,
                "reason": reason,
            },
        )
        if not isinstance(entity, int):
            self._roster.kick(entity, self._kick_message)

    # ═══════════════════════════════════════════════════════════════════════
    # SAVE
    # ═══════════════════════════════════════════════════════════════════════

    async def save(
        self,
        entity: EntityRef,
        transform: Optional[SaveTransform] = None,
        autosave: bool = False,
    ) -> bool:
        """
        Persist the entity's record.

        Parameters
        ----------
        entity:
            The admitted entity.
        transform:
            Optional `transform(snapshot, latest) -> record | None` replacing
            the default session transition inside the compare-and-swap.
            Returning None declines the write.
        autosave:
            True for a periodic save that keeps the entity admitted and
            renews the session; False for the final, releasing save.

        Returns
        -------
        bool
            True if a record was written. Never raises for store or transform
            failures; either leaves the stored record untouched.
        """
        entity_id = entity_id_of(entity)
        entry = self._entries.get(entity_id)
        if entry is None:
            return False

        key = self.store_key(entity_id)
        operation = "autosave" if autosave else "release"

        async with LogContext(entity_id=entity_id, cache_name=self.name, operation=operation):
            if autosave:
                return await self._autosave(entry, entity_id, key, transform)
            return await self._release(entry, entity_id, key, transform)

    async def _autosave(
        self,
        entry: CacheEntry,
        entity_id: int,
        key: str,
        transform: Optional[SaveTransform],
    ) -> bool:
        self._write_started(entity_id)
        try:
            async with self._lock_for(entity_id):
                if self._entries.get(entity_id) is not entry:
                    return False
                snapshot = self._snapshot(entry, release=False)
                try:
                    written = await self._commit(entity_id, key, snapshot, transform, autosave=True)
                except WriteRejectedError:
                    return False
        finally:
            self._write_finished(entity_id)

        if written is not None and self._entries.get(entity_id) is entry:
            renewed = Record.from_dict(written)
            if renewed is not None and renewed.session is not None:
                entry.record.session = renewed.session
        return written is not None

    async def _release(
        self,
        entry: CacheEntry,
        entity_id: int,
        key: str,
        transform: Optional[SaveTransform],
    ) -> bool:
        snapshot = self._snapshot(entry, release=True)

        # Evict before the write so a slow store never shows a released entity.
        self._entries.pop(entity_id, None)
        entry.snapshot = None
        entry.admitted = False
        self._saving.add(entity_id)
        self._write_started(entity_id)

        written: Optional[RecordDict] = None
        try:
            async with self._lock_for(entity_id):
                try:
                    written = await self._commit(entity_id, key, snapshot, transform, autosave=False)
                except WriteRejectedError:
                    written = None
        finally:
            self._write_finished(entity_id)
            self._saving.discard(entity_id)
            self._kicked.discard(entity_id)
            self._discard_idle_lock(entity_id)

        logger.info(
            "Entity released",
            extra={
                "entity_id": entity_id,
                "cache_name": self.name,
                "success": written is not None,
            },
        )
        await self._fire(CacheEvent.RELEASED, entry.entity)
        return written is not None

    async def _commit(
        self,
        entity_id: int,
        key: str,
        snapshot: Record,
        transform: Optional[SaveTransform],
        *,
        autosave: bool,
    ) -> Optional[RecordDict]:
        """
        Compare-and-swap `snapshot` into the store under the retry policy.

        Returns the written record, or None when the write was declined or
        failed after all retries. `WriteRejectedError` propagates so callers
        can tell a refused write apart from a failed one.
        """

        def update(latest_raw: Optional[RecordDict]) -> Optional[RecordDict]:
            latest = Record.from_dict(latest_raw)
            latest_version = latest.version if latest is not None else 1

            if entity_id in self._kicked:
                raise WriteRejectedError(key, "entity was kicked")
            if snapshot.version != latest_version:
                raise VersionConflictError(key, snapshot.version, latest_version)

            candidate = snapshot.copy()
            if transform is not None:
                previous = latest_raw if latest_raw is not None else {"version": 1}
                return transform(candidate.to_dict(), deep_copy(previous))
            if autosave:
                self._arbiter.refresh(candidate, latest, key)
            else:
                self._arbiter.release(candidate)
            return candidate.to_dict()

        async def attempt() -> Optional[RecordDict]:
            await self._budget.acquire(METHOD_UPDATE)
            return await self._store.compare_and_swap(key, update)

        try:
            return await self._retry.execute(attempt, f"UPDATE:{key}")
        except WriteRejectedError as exc:
            logger.info(
                "Write rejected",
                extra={"key": key, "reason": exc.reason, "autosave": autosave},
            )
            raise
        except SessionCacheException as exc:
            logger.warning(
                "Save failed",
                extra={
                    "key": key,
                    "autosave": autosave,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            return None
        except Exception as exc:
            # Raised by a caller-supplied transform; the write never happened.
            logger.error(
                "Save transform failed",
                extra={
                    "key": key,
                    "autosave": autosave,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
                exc_info=True,
            )
            return None

    # ═══════════════════════════════════════════════════════════════════════
    # READ / WIPE / OUT-OF-BAND ACCESS
    # ═══════════════════════════════════════════════════════════════════════

    def get(self, entity: EntityRef, raw: bool = False) -> Optional[Dict[str, Any]]:
        """
        Return the live data mapping, or a copy of the full record if `raw`.

        Mutating the returned data between load and save is the intended
        write path for application code.
        """
        entry = self._entries.get(entity_id_of(entity))
        if entry is None:
            return None
        if raw:
            return entry.record.to_dict()
        return entry.record.data

    async def wipe(self, entity: EntityRef) -> bool:
        """
        Reset the entity's data to a fresh template copy and persist it.

        The session lock and version are kept; `lastLeft` is cleared. The
        live data mapping is reset in place so held references stay valid.
        """
        entity_id = entity_id_of(entity)
        entry = self._entries.get(entity_id)
        if entry is None:
            return False

        key = self.store_key(entity_id)
        async with LogContext(entity_id=entity_id, cache_name=self.name, operation="wipe"):
            self._write_started(entity_id)
            try:
                async with self._lock_for(entity_id):
                    if self._entries.get(entity_id) is not entry:
                        return False

                    record = entry.record
                    if record.data is None:
                        record.data = {}
                    record.data.clear()
                    record.data.update(deep_copy(self.options.template_data))
                    record.last_joined = self._arbiter.now()
                    record.last_left = None
                    payload = record.to_dict()

                    async def attempt() -> None:
                        await self._budget.acquire(METHOD_UPDATE)
                        await self._store.set(key, payload)

                    try:
                        await self._retry.execute(attempt, f"SET:{key}")
                        success = True
                    except SessionCacheException as exc:
                        logger.warning(
                            "Wipe write failed",
                            extra={"key": key, "error": str(exc), "error_type": type(exc).__name__},
                        )
                        success = False
            finally:
                self._write_finished(entity_id)

        await self._fire(CacheEvent.WIPED, entry.entity)
        return success

    async def get_data_async(
        self,
        entity_id: int,
        bypass_cache: bool = False,
    ) -> Optional[RecordDict]:
        """
        Read an entity's authoritative record.

        Served from memory when the entity is admitted here (unless
        `bypass_cache`), otherwise read from the store. Returns a copy, or
        None when absent or unreadable.
        """
        entry = self._entries.get(entity_id)
        if entry is not None and not bypass_cache:
            return entry.record.to_dict()

        key = self.store_key(entity_id)
        try:
            return await self._fetch(key)
        except SessionCacheException as exc:
            logger.warning(
                "Record read failed",
                extra={"key": key, "error": str(exc), "error_type": type(exc).__name__},
            )
            return None

    async def save_data_async(
        self,
        entity_id: int,
        record: RecordDict,
        force: bool = False,
    ) -> bool:
        """
        Overwrite an entity's stored record directly (out-of-band tooling).

        Refused while the current record's session is active, unless `force`.
        """
        key = self.store_key(entity_id)

        if not force:
            entry = self._entries.get(entity_id)
            try:
                current = entry.record.to_dict() if entry is not None else await self._fetch(key)
            except SessionCacheException as exc:
                logger.warning(
                    "Direct write refused; current record unreadable",
                    extra={"key": key, "error": str(exc), "error_type": type(exc).__name__},
                )
                return False

            current_record = Record.from_dict(current)
            if current_record is not None and current_record.session is not None and current_record.session.active:
                logger.info(
                    "Direct write refused; session active",
                    extra={"key": key, "session_owner": current_record.session.owner},
                )
                return False

        payload = deep_copy(record)

        async def attempt() -> None:
            await self._budget.acquire(METHOD_UPDATE)
            await self._store.set(key, payload)

        try:
            await self._retry.execute(attempt, f"SET:{key}")
        except SessionCacheException as exc:
            logger.warning(
                "Direct write failed",
                extra={"key": key, "error": str(exc), "error_type": type(exc).__name__},
            )
            return False

        logger.info("Direct write applied", extra={"key": key, "forced": force})
        return True

    def get_store(self) -> KeyValueStore:
        return self._store

    # ═══════════════════════════════════════════════════════════════════════
    # LISTENERS & CHANGE DETECTION
    # ═══════════════════════════════════════════════════════════════════════

    def add_listener(self, event: Union[str, CacheEvent], callback: CallbackType) -> Optional[Connection]:
        """
        Connect `callback` to `event`; a no-op unless `create_listeners` is set.

        Raises
        ------
        ValueError
            If `event` is not a known cache event.
        """
        if not self.options.create_listeners:
            logger.debug(
                "Listener ignored; listeners disabled for cache",
                extra={"cache_name": self.name, "event_name": str(event)},
            )
            return None

        parsed = CacheEvent.parse(event)
        if parsed is None:
            raise ValueError(f"Unknown cache event: {event!r}")

        signal = self._signals.get(parsed)
        if signal is None:
            signal = Signal(f"{self.name}.{parsed.value}")
            self._signals[parsed] = signal
            if parsed is CacheEvent.CHANGED:
                for entry in self._entries.values():
                    if entry.admitted:
                        entry.snapshot = deep_copy(entry.record.data)

        return signal.connect(callback)

    def remove_listener(self, event: Union[str, CacheEvent]) -> None:
        parsed = CacheEvent.parse(event)
        signal = self._signals.pop(parsed, None) if parsed is not None else None
        if signal is None:
            return
        signal.destroy()
        if parsed is CacheEvent.CHANGED:
            for entry in self._entries.values():
                entry.snapshot = None

    def clear_listeners(self) -> None:
        for event in list(self._signals):
            self.remove_listener(event)

    def get_signal(self, event: Union[str, CacheEvent]) -> Optional[Signal]:
        parsed = CacheEvent.parse(event)
        return self._signals.get(parsed) if parsed is not None else None

    async def _fire(self, event: CacheEvent, *args: Any) -> None:
        signal = self._signals.get(event)
        if signal is None:
            return
        await signal.fire(*(deep_copy(arg) for arg in args))

    async def fire_autosave(self, entity: EntityRef) -> None:
        await self._fire(CacheEvent.AUTOSAVE, entity)

    async def poll_changes(self) -> int:
        """
        Run one change-detection pass over admitted entities.

        Returns
        -------
        int
            Number of CHANGED events fired.
        """
        if CacheEvent.CHANGED not in self._signals:
            return 0

        fired = 0
        for entity_id, entry in list(self._entries.items()):
            if not entry.admitted or self._entries.get(entity_id) is not entry:
                continue
            current = entry.record.data
            if entry.snapshot is None:
                entry.snapshot = deep_copy(current)
                continue
            if is_identical(entry.snapshot, current):
                continue

            previous = entry.snapshot
            entry.snapshot = deep_copy(current)
            fired += 1
            await self._fire(CacheEvent.CHANGED, entry.entity, previous, current)
        return fired

    async def flush_listeners(self) -> None:
        """Wait for fire-and-continue listener callbacks currently running."""
        for signal in list(self._signals.values()):
            await signal.flush()

    # ═══════════════════════════════════════════════════════════════════════
    # INTROSPECTION
    # ═══════════════════════════════════════════════════════════════════════

    def state(self, entity: EntityRef) -> EntityState:
        entity_id = entity_id_of(entity)
        if entity_id in self._saving:
            return EntityState.SAVING
        entry = self._entries.get(entity_id)
        if entry is not None:
            return EntityState.ADMITTED if entry.admitted else EntityState.LOADING
        if entity_id in self._loading:
            return EntityState.LOADING
        if entity_id in self._rejected:
            return EntityState.REJECTED
        return EntityState.UNLOADED

    def admitted_entities(self) -> List[Any]:
        return [entry.entity for entry in self._entries.values()]

    def admitted_count(self) -> int:
        return len(self._entries)

    def is_admitted(self, entity: EntityRef) -> bool:
        return entity_id_of(entity) in self._entries

    def is_fully_admitted(self, entity: EntityRef) -> bool:
        entry = self._entries.get(entity_id_of(entity))
        return entry is not None and entry.admitted

    def has_write_in_flight(self, entity: EntityRef) -> bool:
        return self._writes_in_flight.get(entity_id_of(entity), 0) > 0

    def is_kicked(self, entity: EntityRef) -> bool:
        return entity_id_of(entity) in self._kicked

    def mark_kicked(self, entity: EntityRef) -> None:
        """Refuse every further write for the entity until it is released."""
        self._kicked.add(entity_id_of(entity))

    def forget(self, entity: EntityRef) -> None:
        """Drop idle per-entity bookkeeping for an entity that left."""
        entity_id = entity_id_of(entity)
        if entity_id in self._entries or entity_id in self._loading:
            return
        self._rejected.discard(entity_id)
        self._discard_idle_lock(entity_id)

    def rejected_entity_ids(self) -> List[int]:
        return list(self._rejected)

    def tracked_lock_count(self) -> int:
        return len(self._locks)

    def begin_draining(self) -> None:
        if not self._draining:
            self._draining = True
            logger.info(
                "Cache draining",
                extra={"cache_name": self.name, "admitted": len(self._entries)},
            )

    @property
    def draining(self) -> bool:
        return self._draining

    @property
    def arbiter(self) -> SessionArbiter:
        return self._arbiter

    @property
    def kick_message(self) -> str:
        return self._kick_message

    @property
    def roster(self) -> Roster:
        return self._roster
