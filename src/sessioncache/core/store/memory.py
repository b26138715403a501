"""
In-process key-value store.

Used for single-process deployments, local development and tests. Several
`SessionedCache` instances sharing one `InMemoryKeyValueStore` behave like
separate server processes sharing a backing store.

Records are deep-copied on the way in and out so callers can never alias
stored state. Compare-and-swap is atomic because `update_fn` is synchronous
and runs without yielding to the event loop.
"""

from __future__ import annotations

import copy
from typing import Dict, List, Optional

from sessioncache.core.logging.logger import get_logger
from sessioncache.core.store.base import RecordDict, UpdateFn

logger = get_logger(__name__)


class InMemoryKeyValueStore:
    def __init__(self, initial: Optional[Dict[str, RecordDict]] = None) -> None:
        self._data: Dict[str, RecordDict] = {
            key: copy.deepcopy(value) for key, value in (initial or {}).items()
        }
        self.reads = 0
        self.writes = 0

    async def get(self, key: str) -> Optional[RecordDict]:
        self.reads += 1
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, record: RecordDict) -> None:
        self.writes += 1
        self._data[key] = copy.deepcopy(record)

    async def compare_and_swap(self, key: str, update_fn: UpdateFn) -> Optional[RecordDict]:
        latest = self._data.get(key)
        updated = update_fn(copy.deepcopy(latest) if latest is not None else None)
        if updated is None:
            logger.debug("Compare-and-swap declined by update function", extra={"key": key})
            return None

        self.writes += 1
        self._data[key] = copy.deepcopy(updated)
        return copy.deepcopy(updated)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self) -> List[str]:
        return sorted(self._data)

    async def close(self) -> None:
        return None
