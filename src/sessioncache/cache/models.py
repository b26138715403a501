"""
Record and session data model for sessioncache.

Purpose
-------
Typed views over the persisted record shape plus the process-local
bookkeeping the cache keeps per entity.

Persisted shape
---------------
```
{
  "data":       {...},                                 # application payload
  "version":    1,                                     # bumped on release only
  "session":    {"active": true, "owner": "p:j", "timestamp": 1700000000},
  "lastJoined": 1700000000,
  "lastLeft":   1700000100                             # absent until released
}
```

`Record.from_dict` is tolerant of missing or malformed fields so that
legacy records (or records written by other tooling) still load.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from sessioncache.cache.reconcile import deep_copy


class EntityState(str, Enum):
    """Per-entity lifecycle inside one cache."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    ADMITTED = "admitted"
    SAVING = "saving"
    REJECTED = "rejected"


@runtime_checkable
class Entity(Protocol):
    """Anything with a stable integer identifier (a player, a user, a device)."""

    entity_id: int


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None


@dataclass(slots=True)
class SessionLock:
    active: bool = False
    owner: Optional[str] = None
    timestamp: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"active": self.active, "owner": self.owner, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["SessionLock"]:
        if not isinstance(raw, dict):
            return None
        owner = raw.get("owner")
        return cls(
            active=bool(raw.get("active", False)),
            owner=owner if isinstance(owner, str) else None,
            timestamp=_as_int(raw.get("timestamp")),
        )

    def clear(self) -> None:
        self.active = False
        self.owner = None
        self.timestamp = None


@dataclass(slots=True)
class Record:
    """One entity's persisted record."""

    data: Optional[Dict[str, Any]] = None
    version: int = 1
    session: Optional[SessionLock] = None
    last_joined: Optional[int] = None
    last_left: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to the persisted shape (deep copy of `data`)."""
        payload: Dict[str, Any] = {
            "data": deep_copy(self.data) if self.data is not None else None,
            "version": self.version,
        }
        if self.session is not None:
            payload["session"] = self.session.to_dict()
        if self.last_joined is not None:
            payload["lastJoined"] = self.last_joined
        if self.last_left is not None:
            payload["lastLeft"] = self.last_left
        return payload

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> Optional["Record"]:
        if raw is None:
            return None
        if not isinstance(raw, dict):
            return None

        data = raw.get("data")
        version = _as_int(raw.get("version"))
        return cls(
            data=deep_copy(data) if isinstance(data, dict) else None,
            version=version if version is not None and version >= 1 else 1,
            session=SessionLock.from_dict(raw.get("session")),
            last_joined=_as_int(raw.get("lastJoined")),
            last_left=_as_int(raw.get("lastLeft")),
        )

    def copy(self) -> "Record":
        return Record.from_dict(self.to_dict())  # type: ignore[return-value]


@dataclass(slots=True, eq=False)
class CacheEntry:
    """
    Process-local wrapper around an admitted record.

    Attributes
    ----------
    record:
        The in-memory record; `record.data` is the live object handed out
        by `SessionedCache.get`.
    admitted:
        True once the admission write finished and LOADED fired.
    snapshot:
        Last observed copy of `record.data` for change detection; None while
        no CHANGED listener is attached.
    """

    entity: Any
    record: Record
    admitted: bool = False
    snapshot: Optional[Dict[str, Any]] = field(default=None, repr=False)
