"""
sessioncache - process entry point
==================================

Runs a standalone cache process: caches declared under `caches:` in the
YAML config are created, the scheduler is started, and the process drains
every admitted record on SIGINT / SIGTERM.

    python -m sessioncache            # Redis store from REDIS_URL
    python -m sessioncache --memory   # in-process store (development)
"""

import argparse
import asyncio
import sys

from sessioncache.cache import CacheRegistry, CacheScheduler, LocalRoster
from sessioncache.core.config import Config, ConfigManager
from sessioncache.core.logging.logger import get_logger, setup_logging
from sessioncache.core.store import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore
from sessioncache.lifecycle import CacheLifecycle

logger = get_logger(__name__)


# ============================================================================
# Application Bootstrap
# ============================================================================

def _build_store(use_memory: bool) -> KeyValueStore:
    if use_memory:
        return InMemoryKeyValueStore()
    return RedisKeyValueStore.from_config()


async def _startup(use_memory: bool) -> CacheLifecycle:
    logger.info("========== SESSIONCACHE INITIALIZATION START ==========")

    Config.validate()
    ConfigManager.initialize()

    registry = CacheRegistry(_build_store(use_memory), LocalRoster())
    for name in ConfigManager.get_section("caches"):
        registry.create_cache(name)

    scheduler = CacheScheduler(registry)
    lifecycle = CacheLifecycle(registry, scheduler)
    await lifecycle.start()

    logger.info(
        "========== SESSIONCACHE READY ==========",
        extra={"owner": registry.owner, "caches": registry.names()},
    )
    return lifecycle


# ============================================================================
# Application Entrypoint
# ============================================================================

async def main(argv: "list[str] | None" = None) -> None:
    parser = argparse.ArgumentParser(prog="sessioncache")
    parser.add_argument("--memory", action="store_true", help="use the in-process store")
    args = parser.parse_args(argv)

    setup_logging()
    lifecycle = await _startup(args.memory)
    await lifecycle.wait_closed()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Manual shutdown via keyboard interrupt.")
    except Exception as exc:
        logger.critical(f"Startup failure: {exc}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
