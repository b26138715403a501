"""
Core event types for sessioncache signals.

Purpose
-------
Fundamental type definitions for the signal system: the cache event names,
callback types and the connection handle returned by `Signal.connect`.

Design Decisions
----------------
- **CacheEvent as str enum**: values double as log field values.
- **CallbackType union**: both async and sync callbacks are supported.
- **Connection with slots**: memory-efficient handle; disconnecting is
  idempotent and delegated back to the owning signal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

CallbackType = Union[
    Callable[..., Any],
    Callable[..., Awaitable[Any]],
]


class CacheEvent(str, Enum):
    """
    Events emitted by a `SessionedCache`.

    Values
    ------
    CHANGED:
        `(entity, old_data, new_data)` after change detection saw a difference.
    LOADED:
        `(entity, data)` once an entity is admitted.
    RELEASED:
        `(entity,)` after a release write finished (success or not).
    WIPED:
        `(entity,)` after the entity's data was reset to the template.
    AUTOSAVE:
        `(entity,)` when the scheduler triggers a periodic save.
    """

    CHANGED = "Changed"
    LOADED = "Loaded"
    RELEASED = "Released"
    WIPED = "Wiped"
    AUTOSAVE = "AutoSave"

    @classmethod
    def parse(cls, value: Union[str, "CacheEvent"]) -> Optional["CacheEvent"]:
        """Accept an enum member or its string value; None when unknown."""
        if isinstance(value, cls):
            return value
        for member in cls:
            if member.value == value or member.name == value:
                return member
        return None


@dataclass(slots=True, eq=False)
class Connection:
    """
    Handle for one connected callback.

    Attributes
    ----------
    callback:
        Async or sync callable invoked with the fired arguments.
    identifier:
        Unique string identifier used in logs.
    once:
        If True, the connection is disconnected before its first execution.
    """

    callback: CallbackType
    identifier: str
    once: bool = False
    connected: bool = True
    _on_disconnect: Optional[Callable[["Connection"], None]] = field(default=None, repr=False)

    @classmethod
    def from_callback(
        cls,
        signal_name: str,
        callback: CallbackType,
        once: bool,
        on_disconnect: Callable[["Connection"], None],
    ) -> "Connection":
        module = getattr(callback, "__module__", "unknown")
        qualname = getattr(callback, "__qualname__", getattr(callback, "__name__", "callback"))
        return cls(
            callback=callback,
            identifier=f"{module}.{qualname}@{signal_name}",
            once=once,
            _on_disconnect=on_disconnect,
        )

    def disconnect(self) -> None:
        if not self.connected:
            return
        self.connected = False
        if self._on_disconnect is not None:
            self._on_disconnect(self)
            self._on_disconnect = None
