"""
Error handling for signal callback execution.

Centralizes logging for callback failures so one misbehaving listener never
breaks dispatch to the others or the cache operation that fired the event.
"""

from __future__ import annotations

from logging import Logger

from sessioncache.core.event.types import Connection


def handle_listener_error(
    *,
    logger: Logger,
    signal_name: str,
    connection: Connection,
    exc: Exception,
) -> None:
    """
    Log a callback execution error.

    This function never raises.

    Parameters
    ----------
    logger:
        Logger instance to use for error logging.
    signal_name:
        Name of the signal that was being fired.
    connection:
        The connection whose callback raised.
    exc:
        The exception that was raised.
    """
    logger.error(
        "Signal listener error",
        extra={
            "signal_name": signal_name,
            "listener_id": connection.identifier,
            "error": str(exc),
            "error_type": type(exc).__name__,
        },
        exc_info=True,
    )
