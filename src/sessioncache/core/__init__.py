"""
Core infrastructure layer for sessioncache.

Purpose
-------
Provide a single import surface for the infrastructure subsystems the cache
is built on:

- Configuration management (Config, ConfigManager)
- Logging (structured logging, logger factory, log context)
- Backing stores (KeyValueStore protocol, in-memory and Redis stores)
- Retry policy and request budget
- Signals and cache events
- Exception hierarchy

Design Decisions
----------------
- This module is intentionally thin: no logic, no configuration, no I/O.
- Public API is explicit via __all__.
"""

from __future__ import annotations

from sessioncache.core.config import Config, ConfigManager
from sessioncache.core.event import CacheEvent, Connection, Signal
from sessioncache.core.exceptions import (
    CacheConfigurationError,
    CyclicStructureError,
    DuplicateCacheError,
    ErrorSeverity,
    SessionCacheException,
    StoreError,
    StoreUnavailableError,
    VersionConflictError,
    WriteRejectedError,
)
from sessioncache.core.logging import LogContext, get_logger, setup_logging, shutdown_logging
from sessioncache.core.store import (
    InMemoryKeyValueStore,
    KeyValueStore,
    RedisKeyValueStore,
    RequestBudget,
    RetryPolicy,
)

__all__ = [
    # Configuration
    "Config",
    "ConfigManager",
    # Logging
    "setup_logging",
    "shutdown_logging",
    "get_logger",
    "LogContext",
    # Stores
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "RedisKeyValueStore",
    "RequestBudget",
    "RetryPolicy",
    # Events
    "Signal",
    "Connection",
    "CacheEvent",
    # Exceptions
    "SessionCacheException",
    "ErrorSeverity",
    "CacheConfigurationError",
    "DuplicateCacheError",
    "StoreError",
    "StoreUnavailableError",
    "VersionConflictError",
    "WriteRejectedError",
    "CyclicStructureError",
]
