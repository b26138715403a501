"""
Store retry policy for sessioncache.

Purpose
-------
Implement bounded retry with a fixed inter-attempt delay for transient
backing-store failures and compare-and-swap version conflicts.

Responsibilities
----------------
- Execute operations with automatic retry on transient failures
- Wait a fixed delay between attempts
- Respect the configured attempt count (validated at cache creation)
- Log retry attempts and outcomes
- Distinguish between transient and permanent failures

Non-Responsibilities
--------------------
- No rate limiting (handled by `RequestBudget`)
- No fallback decisions (load falls back to seed data, save reports False)

Configuration Keys
------------------
Per cache, via `CacheOptions`:
- retry_enabled : bool  (default True)
- call_attempts : int   (default 5)
- retry_delay   : float (default 1.0 seconds)

Architecture Notes
------------------
- A fixed delay keeps the total retry budget predictable:
  `call_attempts * retry_delay` is bounded below 30 seconds at setup time.
- Only exceptions for which `is_transient_error` is true are retried
  (`StoreError`, `StoreUnavailableError`, `VersionConflictError`).
- When retries are disabled the operation runs exactly once.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sessioncache.core.exceptions import is_transient_error
from sessioncache.core.logging.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Fixed-delay retry policy for store operations.

    Parameters
    ----------
    max_attempts : int
        Total attempts including the first one
    delay : float
        Seconds to wait between attempts
    enabled : bool
        When False every operation runs exactly once
    """

    def __init__(self, max_attempts: int = 5, delay: float = 1.0, enabled: bool = True) -> None:
        self._max_attempts = max(1, max_attempts)
        self._delay = max(0.0, delay)
        self._enabled = enabled

    @property
    def max_attempts(self) -> int:
        return self._max_attempts if self._enabled else 1

    @property
    def delay(self) -> float:
        return self._delay

    # ═══════════════════════════════════════════════════════════════════════
    # RETRY EXECUTION
    # ═══════════════════════════════════════════════════════════════════════

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> T:
        """
        Execute operation with retry logic.

        Parameters
        ----------
        operation : Callable
            The async operation to execute
        operation_name : str
            Human-readable operation name for logging
        max_attempts : Optional[int]
            Override the configured attempt count
        sleep : Callable
            Awaitable used for the inter-attempt wait

        Returns
        -------
        T
            The result of the successful operation

        Raises
        ------
        Exception
            The last exception if all retries are exhausted, or the first
            non-transient exception immediately
        """
        attempts = max_attempts if max_attempts is not None else self.max_attempts

        for attempt in range(1, attempts + 1):
            try:
                result = await operation()
            except Exception as exc:
                if not is_transient_error(exc):
                    raise

                if attempt >= attempts:
                    logger.error(
                        "Store operation failed after all retries",
                        extra={
                            "operation": operation_name,
                            "attempts": attempt,
                            "error": str(exc),
                            "error_type": type(exc).__name__,
                        },
                    )
                    raise

                logger.warning(
                    "Store operation failed, retrying",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt,
                        "total_attempts": attempts,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                        "retry_delay_seconds": self._delay,
                    },
                )
                await sleep(self._delay)
                continue

            if attempt > 1:
                logger.info(
                    "Store operation succeeded after retry",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt,
                        "total_attempts": attempts,
                    },
                )
            return result

        raise RuntimeError(f"Store operation '{operation_name}' ran zero attempts")
