"""
Signal: observer primitive for sessioncache events.

Purpose
-------
A minimal connect / fire / disconnect signal used by `SessionedCache` for
its listener events, usable on its own as a general async observer.

Responsibilities
----------------
- Register callbacks (`connect`, `once`) and return disconnectable handles
- Dispatch fired arguments to every connected callback with error isolation
- Let coroutines `wait()` for the next fire, with an optional timeout
- Tear down cleanly (`disconnect_all`, `destroy`)

Dispatch Modes
--------------
- `wait_until_finished = False` (fire-and-continue): each callback runs in
  its own tracked background task; `fire()` returns immediately.
- `wait_until_finished = True` (fire-and-block): callbacks run sequentially
  and `fire()` returns after the last one finished.

Design Decisions
----------------
- Sync callbacks are called inline on the event loop thread. Callbacks
  receive live objects and must not be moved to an executor.
- Background tasks are held in a set until done to prevent premature
  garbage collection.
- A destroyed signal ignores every call; pending `wait()` calls resume.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, List, Optional, Set, Tuple

from sessioncache.core.event.errors import handle_listener_error
from sessioncache.core.event.types import CallbackType, Connection
from sessioncache.core.logging.logger import get_logger

logger = get_logger(__name__)


class Signal:
    """
    Async signal with fire-and-continue and fire-and-block dispatch.

    Examples
    --------
    >>> signal = Signal("Loaded")
    >>> conn = signal.connect(lambda entity, data: print(entity, data))
    >>> await signal.fire(player, {"Coins": 0})
    >>> conn.disconnect()
    """

    def __init__(self, name: str = "signal", *, wait_until_finished: bool = False) -> None:
        self.name = name
        self.wait_until_finished = wait_until_finished
        self.destroyed = False
        self._connections: List[Connection] = []
        self._waiters: Set[asyncio.Future[Tuple[Any, ...]]] = set()
        self._background_tasks: Set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._connections)

    # ════════════════════════════════════════════════════════════════════
    # Connections
    # ════════════════════════════════════════════════════════════════════

    def connect(self, callback: CallbackType) -> Optional[Connection]:
        """Register `callback`; returns None once the signal is destroyed."""
        return self._add(callback, once=False)

    def once(self, callback: CallbackType) -> Optional[Connection]:
        """Register `callback` for the next fire only."""
        return self._add(callback, once=True)

    def _add(self, callback: CallbackType, *, once: bool) -> Optional[Connection]:
        if self.destroyed:
            return None
        if not callable(callback):
            raise TypeError(f"Signal callback must be callable, got {type(callback).__name__}")

        connection = Connection.from_callback(self.name, callback, once, self._remove)
        self._connections.append(connection)
        return connection

    def _remove(self, connection: Connection) -> None:
        try:
            self._connections.remove(connection)
        except ValueError:
            pass

    def disconnect_all(self) -> None:
        if self.destroyed:
            return
        for connection in list(self._connections):
            connection.disconnect()
        self._connections.clear()

    def destroy(self) -> None:
        """Disconnect everything and resume pending waiters."""
        if self.destroyed:
            return
        self.disconnect_all()
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(())
        self._waiters.clear()
        self.destroyed = True

    # ════════════════════════════════════════════════════════════════════
    # Waiting
    # ════════════════════════════════════════════════════════════════════

    async def wait(self, timeout: Optional[float] = None) -> Optional[float]:
        """
        Suspend until the next `fire()`, `destroy()` or `timeout` elapses.

        Returns
        -------
        Optional[float]
            Seconds spent waiting, or None if the signal is destroyed.
        """
        if self.destroyed:
            return None

        waiter: asyncio.Future[Tuple[Any, ...]] = asyncio.get_running_loop().create_future()
        self._waiters.add(waiter)
        start = time.monotonic()
        try:
            await asyncio.wait({waiter}, timeout=timeout)
        finally:
            self._waiters.discard(waiter)
        return time.monotonic() - start

    # ════════════════════════════════════════════════════════════════════
    # Dispatch
    # ════════════════════════════════════════════════════════════════════

    async def fire(self, *args: Any) -> None:
        """
        Invoke every connected callback with `args`.

        Callback failures are logged and never propagate.
        """
        if self.destroyed:
            return

        for waiter in list(self._waiters):
            if not waiter.done():
                waiter.set_result(args)

        for connection in list(self._connections):
            if not connection.connected:
                continue
            if connection.once:
                connection.disconnect()

            if self.wait_until_finished:
                await self._run_connection(connection, args)
                continue

            task = asyncio.get_running_loop().create_task(
                self._run_connection(connection, args),
                name=f"signal-{self.name}-{connection.identifier}",
            )
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

    async def _run_connection(self, connection: Connection, args: Tuple[Any, ...]) -> Any:
        try:
            result = connection.callback(*args)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as exc:
            handle_listener_error(
                logger=logger,
                signal_name=self.name,
                connection=connection,
                exc=exc,
            )
            return None

    def get_background_task_count(self) -> int:
        return len(self._background_tasks)

    async def flush(self) -> None:
        """Wait for every fire-and-continue callback currently running."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
