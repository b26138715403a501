"""
Backing key-value store contract.

Purpose
-------
Define the minimal interface the cache needs from an eventually-consistent
key-value store shared across processes:

- `get(key)` returns the stored record or None
- `set(key, record)` unconditionally overwrites
- `compare_and_swap(key, update_fn)` atomically applies `update_fn` to the
  latest stored record

Compare-and-swap semantics
--------------------------
`update_fn(latest)` receives a private copy of the latest record (None when
absent) and returns the new record, or None to leave the store untouched.
An exception raised by `update_fn` aborts the write and propagates to the
caller. Implementations must guarantee per-key atomicity: no other write to
the same key may land between reading `latest` and persisting the result.

Implementations raise `StoreError` / `StoreUnavailableError` for transport
failures so the retry policy can classify them.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

RecordDict = Dict[str, Any]
UpdateFn = Callable[[Optional[RecordDict]], Optional[RecordDict]]


@runtime_checkable
class KeyValueStore(Protocol):
    """Async key-value store with per-key compare-and-swap."""

    async def get(self, key: str) -> Optional[RecordDict]:
        ...

    async def set(self, key: str, record: RecordDict) -> None:
        ...

    async def compare_and_swap(self, key: str, update_fn: UpdateFn) -> Optional[RecordDict]:
        ...

    async def close(self) -> None:
        ...
