"""
CacheRegistry: process-wide catalogue of named caches.

Purpose
-------
Create caches by name, hand them out to callers that may start before the
cache exists, and own the collaborators every cache shares (store, roster,
content filter, session arbiter, request budget).

Responsibilities
----------------
- Resolve and validate `CacheOptions` (defaults, YAML `caches.<name>`,
  explicit options) and construct `SessionedCache` instances
- Refuse duplicate names (warning + None, or `DuplicateCacheError` when strict)
- Let callers wait for a cache that has not been created yet
- Expose the total admitted count that sizes the shared `RequestBudget`
- Lazily create the shared `ClientReadEndpoint`

Non-Responsibilities
--------------------
- Periodic work (see `CacheScheduler`)
- Loading or saving entities (see `SessionedCache`)

Design Decisions
----------------
- The registry is an explicit object passed by reference; there is no
  module-level singleton.
- `get_cache` polls once per `Config.TICK_INTERVAL`, the same cadence the
  scheduler runs at, instead of keeping per-name futures.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from sessioncache.cache.client import ClientReadEndpoint
from sessioncache.cache.filtering import ContentFilter, PassthroughFilter
from sessioncache.cache.options import CacheOptions, resolve_options
from sessioncache.cache.roster import Roster
from sessioncache.cache.service import SessionedCache
from sessioncache.cache.session import ProcessIdentity, SessionArbiter
from sessioncache.core.config import Config
from sessioncache.core.exceptions import DuplicateCacheError
from sessioncache.core.logging.logger import get_logger
from sessioncache.core.store import KeyValueStore, RequestBudget

logger = get_logger(__name__)


class CacheRegistry:
    def __init__(
        self,
        store: KeyValueStore,
        roster: Roster,
        *,
        content_filter: Optional[ContentFilter] = None,
        identity: Optional[ProcessIdentity] = None,
        budget: Optional[RequestBudget] = None,
        arbiter: Optional[SessionArbiter] = None,
    ) -> None:
        self.store = store
        self.roster = roster
        self.content_filter = content_filter or PassthroughFilter()
        self.arbiter = arbiter or SessionArbiter(identity)
        self.budget = budget or RequestBudget()
        self.budget.bind_entity_count(self.admitted_count)

        self._caches: Dict[str, SessionedCache] = {}
        self._client_endpoint: Optional[ClientReadEndpoint] = None

    def __contains__(self, name: object) -> bool:
        return name in self._caches

    def __iter__(self) -> Iterator[SessionedCache]:
        return iter(list(self._caches.values()))

    def __len__(self) -> int:
        return len(self._caches)

    @property
    def owner(self) -> str:
        return self.arbiter.owner

    # ═══════════════════════════════════════════════════════════════════════
    # CREATION
    # ═══════════════════════════════════════════════════════════════════════

    def create_cache(
        self,
        name: str,
        options: Union[CacheOptions, Mapping[str, Any], None] = None,
        *,
        strict: bool = False,
    ) -> Optional[SessionedCache]:
        """
        Create and register a cache.

        Parameters
        ----------
        name:
            Unique cache name; also the namespace of its stored keys.
        options:
            A complete `CacheOptions`, or a mapping of option overrides
            applied on top of defaults and YAML `caches.<name>`.
        strict:
            Raise instead of returning None on a duplicate name.

        Returns
        -------
        Optional[SessionedCache]
            The new cache, or None if `name` was already registered.

        Raises
        ------
        CacheConfigurationError
            If the resolved options fail validation.
        DuplicateCacheError
            If `strict` and `name` is already registered.
        """
        if not isinstance(name, str) or not name:
            raise TypeError("Cache name must be a non-empty string")

        if name in self._caches:
            if strict:
                raise DuplicateCacheError(name)
            logger.warning("Cache already exists", extra={"cache_name": name})
            return None

        resolved = resolve_options(name, options)
        cache = SessionedCache(
            name,
            resolved,
            store=self.store,
            roster=self.roster,
            arbiter=self.arbiter,
            content_filter=self.content_filter,
            budget=self.budget,
        )
        self._caches[name] = cache

        if resolved.allow_client_side_to_read:
            self.client_endpoint.allow(name)

        logger.info(
            "Cache created",
            extra={
                "cache_name": name,
                "key_template": resolved.key_template,
                "create_listeners": resolved.create_listeners,
                "client_readable": resolved.allow_client_side_to_read,
            },
        )
        return cache

    # ═══════════════════════════════════════════════════════════════════════
    # LOOKUP
    # ═══════════════════════════════════════════════════════════════════════

    def get(self, name: str) -> Optional[SessionedCache]:
        return self._caches.get(name)

    async def get_cache(self, name: str, timeout: Optional[float] = None) -> Optional[SessionedCache]:
        """
        Return the cache named `name`, waiting for it to be created.

        Parameters
        ----------
        timeout:
            Seconds to wait; None waits indefinitely.

        Returns
        -------
        Optional[SessionedCache]
            The cache, or None if `timeout` elapsed first.
        """
        cache = self._caches.get(name)
        if cache is not None:
            return cache

        interval = Config.TICK_INTERVAL
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.debug("Timed out waiting for cache", extra={"cache_name": name, "timeout": timeout})
                    return None
                await asyncio.sleep(min(interval, remaining))
            else:
                await asyncio.sleep(interval)

            cache = self._caches.get(name)
            if cache is not None:
                return cache

    def names(self) -> List[str]:
        return list(self._caches)

    def caches(self) -> List[SessionedCache]:
        return list(self._caches.values())

    def admitted_count(self) -> int:
        return sum(cache.admitted_count() for cache in self._caches.values())

    @property
    def client_endpoint(self) -> ClientReadEndpoint:
        if self._client_endpoint is None:
            self._client_endpoint = ClientReadEndpoint(self)
        return self._client_endpoint

    def get_status(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "caches": {
                name: {
                    "admitted": cache.admitted_count(),
                    "draining": cache.draining,
                }
                for name, cache in self._caches.items()
            },
            "budget": self.budget.get_status(),
        }

    async def close(self) -> None:
        """Destroy listeners and close the shared store."""
        for cache in self._caches.values():
            cache.clear_listeners()
        await self.store.close()
        logger.info("Cache registry closed", extra={"caches": len(self._caches)})
