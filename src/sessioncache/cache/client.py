"""
Read-only endpoint through which a connected client fetches its own data.

One endpoint is shared by every cache created with
`allow_client_side_to_read`; it is named after the first such cache's
`client_endpoint_name`. A request names a cache and receives a deep copy
of the requester's own data in that cache, never anyone else's.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional, Set

from sessioncache.cache.reconcile import deep_copy
from sessioncache.core.config import Config
from sessioncache.core.logging.logger import get_logger

if TYPE_CHECKING:
    from sessioncache.cache.registry import CacheRegistry

logger = get_logger(__name__)


class ClientReadEndpoint:
    def __init__(self, registry: "CacheRegistry") -> None:
        self._registry = registry
        self._allowed: Set[str] = set()
        self.name: Optional[str] = None

    def allow(self, cache_name: str) -> None:
        """Register `cache_name` as readable by clients."""
        if self.name is None:
            cache = self._registry.get(cache_name)
            self.name = cache.options.client_endpoint_name if cache is not None else None
            logger.info("Client read endpoint created", extra={"endpoint": self.name})
        self._allowed.add(cache_name)

    def is_allowed(self, cache_name: str) -> bool:
        return cache_name in self._allowed

    async def invoke(self, entity: Any, cache_name: Any) -> Optional[Dict[str, Any]]:
        """
        Serve one client read request.

        Returns
        -------
        Optional[Dict[str, Any]]
            A copy of `entity`'s data in `cache_name`; None when the name is
            not a string, not registered for client reads, or the entity is
            not admitted there.
        """
        if not isinstance(cache_name, str) or cache_name not in self._allowed:
            logger.debug(
                "Client read refused",
                extra={"entity_id": getattr(entity, "entity_id", None), "requested": repr(cache_name)},
            )
            return None

        cache = await self._registry.get_cache(cache_name, timeout=Config.TICK_INTERVAL)
        if cache is None:
            return None

        data = cache.get(entity)
        return deep_copy(data) if data is not None else None
