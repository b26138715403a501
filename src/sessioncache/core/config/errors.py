"""
Configuration error hierarchy for sessioncache.

Purpose
-------
Provides domain-specific exceptions for dynamic configuration operations
with clear error classification and helpful error messages.

Non-Responsibilities
--------------------
- Per-cache option validation (raises `CacheConfigurationError` from
  `sessioncache.core.exceptions`, which is fatal at setup time)
- Error logging (handled by the caller's logger)

Exception Hierarchy
-------------------
ConfigError (base)
├── ConfigValidationError (type/shape validation failures)
└── ConfigInitializationError (startup/init failures)
"""


class ConfigError(Exception):
    """
    Base exception for all configuration-related errors.

    Example
    -------
    >>> try:
    ...     ConfigManager.set_override("scheduler.tick_interval", "fast")
    ... except ConfigError as e:
    ...     logger.error(f"Config operation failed: {e}")
    """
    pass


class ConfigValidationError(ConfigError):
    """
    Raised when a configuration value has the wrong shape.

    This exception is raised when:
    - An override key is empty or malformed
    - A YAML section expected to be a mapping is something else
    """
    pass


class ConfigInitializationError(ConfigError):
    """
    Raised when ConfigManager initialization fails.

    This is a critical error that typically requires intervention
    before the application can continue.

    Example
    -------
    >>> try:
    ...     ConfigManager.initialize()
    ... except ConfigInitializationError as e:
    ...     logger.critical(f"Cannot start - config init failed: {e}")
    ...     sys.exit(1)
    """
    pass


__all__ = [
    "ConfigError",
    "ConfigValidationError",
    "ConfigInitializationError",
]
