"""
Cache lifecycle management.

Purpose
-------
Handle process startup and graceful shutdown for a cache deployment: the
point where every admitted record is released back to the store before the
process exits.

Responsibilities
----------------
- Startup validation (static config, ConfigManager initialisation)
- Backing-store health check with latency
- Start the scheduler and install SIGINT / SIGTERM handlers
- Graceful shutdown: drain barrier, stop scheduler, close store, stop logging

Non-Responsibilities
--------------------
- Entity admission and saving (SessionedCache)
- Periodic maintenance (CacheScheduler)

Architecture Notes
------------------
- `StoreHealth` and `ShutdownMetrics` are dataclasses for clear state modeling.
- Shutdown is idempotent; a second signal while draining is ignored.
"""

from __future__ import annotations

import asyncio
import signal
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sessioncache.cache.registry import CacheRegistry
from sessioncache.cache.scheduler import CacheScheduler, DrainReport
from sessioncache.core.config import Config, ConfigManager
from sessioncache.core.logging.logger import get_logger, shutdown_logging

logger = get_logger(__name__)


@dataclass
class StoreHealth:
    """Health status for the backing store."""

    healthy: bool
    error: Optional[str] = None
    latency_ms: Optional[float] = None


@dataclass
class ShutdownMetrics:
    """Metrics collected during shutdown."""

    total_time_ms: float
    drain: DrainReport


class CacheLifecycle:
    """
    Owns startup and shutdown of one registry and its scheduler.

    Examples
    --------
    >>> lifecycle = CacheLifecycle(registry, scheduler)
    >>> await lifecycle.start()
    >>> await lifecycle.wait_closed()
    """

    def __init__(
        self,
        registry: CacheRegistry,
        scheduler: CacheScheduler,
        *,
        stop_logging: bool = True,
    ) -> None:
        self.registry = registry
        self.scheduler = scheduler
        self._stop_logging = stop_logging
        self._is_shutting_down = False
        self._closed = asyncio.Event()
        self._shutdown_task: Optional["asyncio.Task[None]"] = None
        self._signals_installed: list[signal.Signals] = []
        self.last_shutdown: Optional[ShutdownMetrics] = None

    # ════════════════════════════════════════════════════════════════════════
    # STARTUP
    # ════════════════════════════════════════════════════════════════════════

    async def start(self, install_signal_handlers: bool = True) -> None:
        """
        Validate configuration, check the store and start the scheduler.

        Raises
        ------
        ConfigValidationError
            If the static configuration is invalid.
        """
        start_time = time.perf_counter()
        logger.info("Starting cache lifecycle", extra={"owner": self.registry.owner})

        Config.validate()
        ConfigManager.initialize()

        health = await self.check_store_health()
        if not health.healthy:
            logger.warning(
                "Backing store unhealthy at startup",
                extra={"error": health.error, "latency_ms": health.latency_ms},
            )

        self.scheduler.start()
        if install_signal_handlers:
            self._install_signal_handlers()

        logger.info(
            "Cache lifecycle started",
            extra={
                "caches": self.registry.names(),
                "store_healthy": health.healthy,
                "time_ms": round((time.perf_counter() - start_time) * 1000, 2),
            },
        )

    async def check_store_health(self) -> StoreHealth:
        """Ping the store when it supports it; stores without `ping` count as healthy."""
        ping = getattr(self.registry.store, "ping", None)
        if ping is None:
            return StoreHealth(healthy=True)

        start_time = time.perf_counter()
        try:
            healthy = bool(await ping())
            return StoreHealth(healthy=healthy, latency_ms=(time.perf_counter() - start_time) * 1000)
        except Exception as exc:
            return StoreHealth(
                healthy=False,
                error=str(exc),
                latency_ms=(time.perf_counter() - start_time) * 1000,
            )

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
                self._signals_installed.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers not supported on this platform", extra={"signal": sig.name})

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("Shutdown signal received", extra={"signal": sig.name})
        self.request_shutdown()

    def request_shutdown(self) -> None:
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.get_running_loop().create_task(
                self.shutdown(), name="cache-shutdown"
            )

    # ════════════════════════════════════════════════════════════════════════
    # SHUTDOWN
    # ════════════════════════════════════════════════════════════════════════

    async def shutdown(self) -> Optional[DrainReport]:
        """
        Release every admitted entity, then stop and close everything.

        Returns
        -------
        Optional[DrainReport]
            The drain outcome, or None if a shutdown was already in progress.
        """
        if self._is_shutting_down:
            logger.warning("Shutdown already in progress")
            return None

        self._is_shutting_down = True
        start_time = time.perf_counter()
        logger.info("Starting graceful shutdown")

        try:
            report = await self.scheduler.drain()
            await self.scheduler.stop()

            try:
                await asyncio.wait_for(self.registry.close(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Store close timed out")
            except Exception as exc:
                logger.error(
                    "Error closing store during shutdown",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                    exc_info=True,
                )

            self._remove_signal_handlers()
            self.last_shutdown = ShutdownMetrics(
                total_time_ms=(time.perf_counter() - start_time) * 1000,
                drain=report,
            )
            logger.info(
                "Graceful shutdown complete",
                extra={
                    "total_time_ms": round(self.last_shutdown.total_time_ms, 2),
                    "released": report.succeeded,
                    "failed": report.failed,
                },
            )
        finally:
            self._closed.set()
            if self._stop_logging:
                shutdown_logging()
        return report

    def _remove_signal_handlers(self) -> None:
        if not self._signals_installed:
            return
        loop = asyncio.get_running_loop()
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed.clear()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    @property
    def is_shutting_down(self) -> bool:
        return self._is_shutting_down

    def get_metrics_snapshot(self) -> Dict[str, Any]:
        return {
            "shutting_down": self._is_shutting_down,
            "registry": self.registry.get_status(),
            "scheduler": self.scheduler.get_status(),
            "last_shutdown_ms": self.last_shutdown.total_time_ms if self.last_shutdown else None,
        }
