"""
String content filtering applied to records on load.

A `ContentFilter` sanitises user-provided text (names, bios, pet names)
before it is admitted into the cache. Each string leaf is filtered on its
own; a failing call substitutes `Config.FILTERED_RESULT` for that leaf and
loading continues.

Selection modes (from `CacheOptions`):

- neither list enabled: every string leaf under a string key
- allow-list: only leaves whose key is in `filter_key_list`
- deny-list: every leaf except those whose key is in `filter_key_list`
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional, Protocol, runtime_checkable

from sessioncache.cache.options import CacheOptions
from sessioncache.core.config import Config
from sessioncache.core.logging.logger import get_logger

logger = get_logger(__name__)


@runtime_checkable
class ContentFilter(Protocol):
    async def filter(self, entity_id: int, text: str) -> str:
        ...


class PassthroughFilter:
    """Filter that returns text unchanged."""

    async def filter(self, entity_id: int, text: str) -> str:
        return text


def _should_filter(options: CacheOptions, key: Any) -> bool:
    if not isinstance(key, str):
        return False
    if options.filter_allow_list_enabled:
        return key in options.filter_key_list
    if options.filter_deny_list_enabled:
        return key not in options.filter_key_list
    return True


async def filter_strings(
    data: Any,
    entity_id: int,
    options: CacheOptions,
    content_filter: ContentFilter,
    placeholder: Optional[str] = None,
) -> Any:
    """Return a copy of `data` with selected string leaves filtered."""
    fallback = Config.FILTERED_RESULT if placeholder is None else placeholder

    async def walk(value: Any, key: Any) -> Any:
        if isinstance(value, Mapping):
            return {k: await walk(v, k) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            items = [await walk(v, i) for i, v in enumerate(value)]
            return tuple(items) if isinstance(value, tuple) else items
        if isinstance(value, str) and _should_filter(options, key):
            try:
                return await content_filter.filter(entity_id, value)
            except Exception as exc:
                logger.warning(
                    "Content filter failed; substituting placeholder",
                    extra={
                        "entity_id": entity_id,
                        "field": key,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                )
                return fallback
        return value

    return await walk(data, None)
