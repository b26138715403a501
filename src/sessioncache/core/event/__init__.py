"""
Signal / event infrastructure for sessioncache.
"""

from sessioncache.core.event.errors import handle_listener_error
from sessioncache.core.event.signal import Signal
from sessioncache.core.event.types import CacheEvent, CallbackType, Connection

__all__ = [
    "Signal",
    "Connection",
    "CacheEvent",
    "CallbackType",
    "handle_listener_error",
]
