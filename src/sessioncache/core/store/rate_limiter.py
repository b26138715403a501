"""
Request budget for backing-store calls.

Purpose
-------
Process-wide throttle on backing-store reads and writes so a burst of joins,
auto-saves and lock checks never exceeds the store's request quota.

Responsibilities
----------------
- Track calls per method ("GET", "UPDATE") over a rolling window
- Compute capacity as `base + per_entity * admitted entities`
- Suspend callers cooperatively until capacity frees up
- Expose remaining capacity and a status snapshot for diagnostics

Non-Responsibilities
--------------------
- No distributed coordination: the quota being protected is per process
- No rejection: over-budget callers wait, they are never dropped or errored

Configuration Keys
------------------
- REQUEST_BUDGET_BASE       : int   (default 60)
- REQUEST_BUDGET_PER_ENTITY : int   (default 10)
- REQUEST_BUDGET_WINDOW     : float (default 60.0 seconds)

Design Decisions
----------------
- Rolling window over a deque of call timestamps per method; waiters sleep
  exactly until the oldest call ages out.
- The entity count is read through a callable at acquire time, so capacity
  grows and shrinks with admissions without explicit notifications.
- Clock and sleep are injectable for deterministic tests.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from sessioncache.core.config.config import Config
from sessioncache.core.logging.logger import get_logger

logger = get_logger(__name__)


METHOD_GET = "GET"
METHOD_UPDATE = "UPDATE"


class RequestBudget:
    """
    Rolling-window request throttle keyed by store method.

    Parameters
    ----------
    entity_count : Callable[[], int]
        Returns the number of currently admitted entities
    base : int
        Calls allowed per window with zero entities
    per_entity : int
        Additional calls allowed per admitted entity
    window : float
        Window length in seconds
    """

    def __init__(
        self,
        entity_count: Optional[Callable[[], int]] = None,
        *,
        base: Optional[int] = None,
        per_entity: Optional[int] = None,
        window: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._entity_count = entity_count or (lambda: 0)
        self._base = base if base is not None else Config.REQUEST_BUDGET_BASE
        self._per_entity = (
            per_entity if per_entity is not None else Config.REQUEST_BUDGET_PER_ENTITY
        )
        self._window = window if window is not None else Config.REQUEST_BUDGET_WINDOW
        self._clock = clock
        self._sleep = sleep
        self._calls: Dict[str, Deque[float]] = {}
        self._waits = 0

    def bind_entity_count(self, entity_count: Callable[[], int]) -> None:
        """Attach the admitted-entity source after construction."""
        self._entity_count = entity_count

    # ════════════════════════════════════════════════════════════════════
    # Public API
    # ════════════════════════════════════════════════════════════════════

    def capacity(self) -> int:
        return self._base + self._per_entity * max(0, self._entity_count())

    async def acquire(self, method: str) -> None:
        """
        Consume one call of `method`, waiting while the window is full.

        Parameters
        ----------
        method : str
            Store method bucket ("GET" or "UPDATE")
        """
        calls = self._calls.setdefault(method, deque())
        logged = False

        while True:
            now = self._clock()
            self._prune(calls, now)
            if len(calls) < self.capacity():
                calls.append(now)
                return

            wait = max(0.0, calls[0] + self._window - now)
            if not logged:
                self._waits += 1
                logged = True
                logger.warning(
                    "Request budget exhausted; waiting for capacity",
                    extra={
                        "method": method,
                        "capacity": self.capacity(),
                        "wait_seconds": round(wait, 3),
                    },
                )
            await self._sleep(wait)

    def get_remaining(self, method: str) -> int:
        calls = self._calls.get(method)
        if calls is None:
            return self.capacity()
        self._prune(calls, self._clock())
        return max(0, self.capacity() - len(calls))

    def get_status(self) -> Dict[str, Any]:
        """Return a configuration and usage snapshot for diagnostics."""
        return {
            "base": self._base,
            "per_entity": self._per_entity,
            "window_seconds": self._window,
            "capacity": self.capacity(),
            "in_window": {method: len(calls) for method, calls in self._calls.items()},
            "waits": self._waits,
        }

    # ════════════════════════════════════════════════════════════════════
    # Helpers
    # ════════════════════════════════════════════════════════════════════

    def _prune(self, calls: Deque[float], now: float) -> None:
        cutoff = now - self._window
        while calls and calls[0] <= cutoff:
            calls.popleft()
