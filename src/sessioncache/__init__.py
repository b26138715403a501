"""
sessioncache: session-locked, auto-saving entity record cache.

Usage
-----
```python
from sessioncache import CacheRegistry, CacheScheduler, LocalRoster
from sessioncache.core.store import RedisKeyValueStore

registry = CacheRegistry(RedisKeyValueStore.from_config(), LocalRoster())
coins = registry.create_cache("Coins", {"template_data": {"Coins": 0}})

data = await coins.load(player)
data["Coins"] += 10
await coins.save(player)
```
"""

# Config must be importable before the cache modules pull it in.
from sessioncache.core.config import Config, ConfigManager
from sessioncache.cache import (
    CacheOptions,
    CacheRegistry,
    CacheScheduler,
    DrainReport,
    EntityState,
    LocalRoster,
    Member,
    Record,
    SessionArbiter,
    SessionedCache,
)
from sessioncache.core.event import CacheEvent
from sessioncache.lifecycle import CacheLifecycle

__version__ = "0.1.0"

__all__ = [
    "Config",
    "ConfigManager",
    "CacheRegistry",
    "SessionedCache",
    "CacheScheduler",
    "CacheLifecycle",
    "DrainReport",
    "CacheOptions",
    "CacheEvent",
    "EntityState",
    "Record",
    "SessionArbiter",
    "LocalRoster",
    "Member",
]
