"""
RedisKeyValueStore: Redis-backed record store for sessioncache.

Purpose
-------
Persist session-locked records in Redis so that every process sharing the
same Redis deployment arbitrates admission against the same data.

Responsibilities
----------------
- Own an async Redis client (redis-py asyncio) with a connection pool
- Serialize records as JSON strings, keeping integer mapping keys intact
- Implement compare-and-swap with WATCH / MULTI / EXEC
- Translate redis-py failures into `StoreError` / `StoreUnavailableError`,
  and unencodable records into a non-retryable `RecordEncodingError`

Non-Responsibilities
--------------------
- Retrying failed calls (handled by `RetryPolicy` in the cache)
- Request throttling (handled by `RequestBudget`)

Configuration Keys
------------------
- redis.url                    : str   (fallback Config.REDIS_URL)
- redis.socket_timeout_seconds : int   (fallback Config.REDIS_SOCKET_TIMEOUT)
- redis.max_connections        : int   (fallback Config.REDIS_MAX_CONNECTIONS)
- redis.key_prefix             : str   (default "")

Architecture Notes
------------------
- Optimistic transactions: a WatchError means another client changed the
  key between read and EXEC; the read-modify-write is replayed with the
  fresh value. The update function must therefore be free of side effects.
- An update function returning None (or raising) leaves the key untouched.
"""

from __future__ import annotations

import json
import time
from typing import Any, Optional, Set, Union

from redis.asyncio.client import Redis as AsyncRedis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    RedisError,
    TimeoutError as RedisTimeoutError,
    WatchError,
)

from sessioncache.core.config import Config, ConfigManager
from sessioncache.core.exceptions import RecordEncodingError, StoreError, StoreUnavailableError
from sessioncache.core.logging.logger import get_logger
from sessioncache.core.store.base import RecordDict, UpdateFn

logger = get_logger(__name__)

# JSON object keys are strings. Integer keys are tagged so they decode back
# to integers; string keys that start with the marker are escaped by doubling it.
_KEY_MARKER = "#"
_INT_KEY_TAG = "#i:"


class _UnsupportedKey(TypeError):
    pass


def _tag_key(name: Any) -> str:
    if isinstance(name, str):
        return _KEY_MARKER + name if name.startswith(_KEY_MARKER) else name
    if isinstance(name, int) and not isinstance(name, bool):
        return f"{_INT_KEY_TAG}{name}"
    raise _UnsupportedKey(f"unsupported mapping key {name!r} ({type(name).__name__})")


def _untag_key(name: str) -> Union[str, int]:
    if name.startswith(_INT_KEY_TAG):
        return int(name[len(_INT_KEY_TAG):])
    if name.startswith(_KEY_MARKER * 2):
        return name[1:]
    return name


def _tag_keys(value: Any, active: Set[int]) -> Any:
    if not isinstance(value, (dict, list, tuple)):
        return value
    marker = id(value)
    if marker in active:
        raise ValueError("circular reference detected")
    active.add(marker)
    try:
        if isinstance(value, dict):
            return {_tag_key(name): _tag_keys(item, active) for name, item in value.items()}
        return [_tag_keys(item, active) for item in value]
    finally:
        active.discard(marker)


def _untag_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {_untag_key(name): _untag_keys(item) for name, item in value.items()}
    if isinstance(value, list):
        return [_untag_keys(item) for item in value]
    return value


class RedisKeyValueStore:
    """
    Key-value store over a Redis server.

    Parameters
    ----------
    client : AsyncRedis
        A redis-py asyncio client created with `decode_responses=True`
    key_prefix : str
        Prepended to every key (namespacing several deployments on one Redis)
    max_cas_attempts : int
        WATCH conflicts tolerated before giving up with a retryable StoreError
    """

    def __init__(
        self,
        client: AsyncRedis,
        *,
        key_prefix: str = "",
        max_cas_attempts: int = 50,
    ) -> None:
        self._client = client
        self._key_prefix = key_prefix
        self._max_cas_attempts = max_cas_attempts

    # ═══════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    def from_config(cls, url: Optional[str] = None) -> "RedisKeyValueStore":
        """Build a store from `ConfigManager` `redis.*` keys with `Config` fallbacks."""
        url = url or cls._get_config_str("redis.url", Config.REDIS_URL)
        socket_timeout = cls._get_config_int(
            "redis.socket_timeout_seconds", Config.REDIS_SOCKET_TIMEOUT
        )
        max_connections = cls._get_config_int(
            "redis.max_connections", Config.REDIS_MAX_CONNECTIONS
        )
        key_prefix = cls._get_config_str("redis.key_prefix", "")

        client = AsyncRedis.from_url(
            url,
            socket_timeout=socket_timeout,
            encoding="utf-8",
            decode_responses=True,
            max_connections=max_connections,
            retry_on_timeout=False,  # RetryPolicy handles retries
            health_check_interval=30,
        )

        logger.info(
            "RedisKeyValueStore created",
            extra={
                "url_scheme": url.split("://")[0] if "://" in url else "unknown",
                "socket_timeout_seconds": socket_timeout,
                "max_connections": max_connections,
                "key_prefix": key_prefix,
            },
        )
        return cls(client, key_prefix=key_prefix)

    async def ping(self) -> bool:
        """Verify connectivity; raises StoreUnavailableError when unreachable."""
        try:
            return bool(await self._client.ping())
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            raise StoreUnavailableError("PING", "", exc) from exc

    async def close(self) -> None:
        try:
            await self._client.aclose()
            logger.info("RedisKeyValueStore closed")
        except RedisError as exc:
            logger.error(
                "Error closing Redis client",
                extra={"error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )

    # ═══════════════════════════════════════════════════════════════════════
    # OPERATIONS
    # ═══════════════════════════════════════════════════════════════════════

    async def get(self, key: str) -> Optional[RecordDict]:
        full_key = self._full_key(key)
        start_time = time.monotonic()
        try:
            raw = await self._client.get(full_key)
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            raise StoreUnavailableError("GET", key, exc) from exc
        except RedisError as exc:
            raise StoreError("GET", key, exc) from exc

        logger.debug(
            "Redis GET operation",
            extra={
                "key": full_key,
                "found": raw is not None,
                "latency_ms": round((time.monotonic() - start_time) * 1000, 2),
            },
        )
        return self._decode(key, raw)

    async def set(self, key: str, record: RecordDict) -> None:
        full_key = self._full_key(key)
        payload = self._encode(key, record)
        try:
            await self._client.set(full_key, payload)
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            raise StoreUnavailableError("SET", key, exc) from exc
        except RedisError as exc:
            raise StoreError("SET", key, exc) from exc

        logger.debug("Redis SET operation", extra={"key": full_key, "bytes": len(payload)})

    async def compare_and_swap(self, key: str, update_fn: UpdateFn) -> Optional[RecordDict]:
        """
        Atomically apply `update_fn` to the latest record using WATCH/MULTI.

        Returns
        -------
        Optional[RecordDict]
            The record written, or None when `update_fn` declined the write.
        """
        full_key = self._full_key(key)

        try:
            async with self._client.pipeline(transaction=True) as pipe:
                for attempt in range(1, self._max_cas_attempts + 1):
                    try:
                        await pipe.watch(full_key)
                        raw = await pipe.get(full_key)
                        updated = update_fn(self._decode(key, raw))
                        if updated is None:
                            await pipe.unwatch()
                            return None

                        pipe.multi()
                        pipe.set(full_key, self._encode(key, updated))
                        await pipe.execute()
                        return updated
                    except WatchError:
                        logger.debug(
                            "Redis CAS conflict; replaying",
                            extra={"key": full_key, "attempt": attempt},
                        )
                        continue
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            raise StoreUnavailableError("CAS", key, exc) from exc
        except RedisError as exc:
            raise StoreError("CAS", key, exc) from exc

        raise StoreError("CAS", key, message="too many concurrent modifications")

    # ═══════════════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════════════

    def _full_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    @staticmethod
    def _encode(key: str, record: RecordDict) -> str:
        try:
            return json.dumps(_tag_keys(record, set()), separators=(",", ":"))
        except _UnsupportedKey as exc:
            raise RecordEncodingError("ENCODE", key, message=str(exc)) from exc
        except (TypeError, ValueError) as exc:
            raise RecordEncodingError("ENCODE", key, exc, message="record is not JSON-serialisable") from exc

    @staticmethod
    def _decode(key: str, raw: Optional[str]) -> Optional[RecordDict]:
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except ValueError as exc:
            raise RecordEncodingError("DECODE", key, exc, message="stored value is not valid JSON") from exc
        if not isinstance(value, dict):
            raise RecordEncodingError("DECODE", key, message="stored value is not a mapping")
        try:
            return _untag_keys(value)
        except ValueError as exc:
            raise RecordEncodingError("DECODE", key, exc, message="stored value has a malformed key") from exc

    @staticmethod
    def _get_config_str(key: str, default: str) -> str:
        val = ConfigManager.get(key)
        return val if isinstance(val, str) else default

    @staticmethod
    def _get_config_int(key: str, default: int) -> int:
        val = ConfigManager.get(key)
        return val if isinstance(val, int) and not isinstance(val, bool) else default

    def get_status(self) -> dict[str, Any]:
        return {"key_prefix": self._key_prefix, "max_cas_attempts": self._max_cas_attempts}
