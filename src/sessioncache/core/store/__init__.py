"""
Backing-store infrastructure: store implementations, retry and throttling.
"""

from sessioncache.core.store.base import KeyValueStore, RecordDict, UpdateFn
from sessioncache.core.store.memory import InMemoryKeyValueStore
from sessioncache.core.store.rate_limiter import METHOD_GET, METHOD_UPDATE, RequestBudget
from sessioncache.core.store.redis_store import RedisKeyValueStore
from sessioncache.core.store.retry_policy import RetryPolicy

__all__ = [
    "KeyValueStore",
    "RecordDict",
    "UpdateFn",
    "InMemoryKeyValueStore",
    "RedisKeyValueStore",
    "RequestBudget",
    "RetryPolicy",
    "METHOD_GET",
    "METHOD_UPDATE",
]
