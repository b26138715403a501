"""
Static configuration management for sessioncache.

Purpose
-------
Provides centralized static configuration loaded from environment variables
with sensible defaults, type validation, and bounds checking. This module
handles non-dynamic configuration that is set at process startup.

Responsibilities
----------------
- Load configuration from environment variables with .env support
- Provide type-safe access to all static configuration values
- Validate critical settings on startup (auto-save must beat the lock timeout)
- Track which values came from the environment versus defaults

Non-Responsibilities
--------------------
- Dynamic configuration (handled by ConfigManager)
- Per-cache options (handled by CacheOptions)

Architecture Notes
------------------
- Singleton pattern via class methods (no instantiation)
- Auto-loads on module import via Config.validate()
- Supports safe reload for non-critical configs

Configuration Categories
------------------------
1. Environment: environment type, logging
2. Redis: backing store connection settings
3. Process identity: place id and job id used as the session owner
4. Sessions: lock timeout, auto-save interval, kick message
5. Scheduler: tick interval, lock check interval, grace period, deferrals
6. Request budget: throttle capacity for store reads and writes

Dependencies
------------
- python-dotenv: Environment variable loading
- pathlib: Cross-platform path handling
- logging: Basic logging (bootstrap only)
"""

import logging
import os
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

load_dotenv()


class Environment(Enum):
    """Deployment environment types."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"

    @classmethod
    def from_string(cls, value: str) -> "Environment":
        """
        Parse environment string safely with fallback.

        Example
        -------
        >>> Environment.from_string("production") == Environment.PRODUCTION
        True
        >>> Environment.from_string("invalid") == Environment.DEVELOPMENT
        True
        """
        try:
            return cls(value.lower())
        except ValueError:
            logging.warning(f"Unknown environment '{value}', defaulting to development")
            return cls.DEVELOPMENT


class _ConfigLoadMetrics:
    """Tracks which configuration values came from environment vs defaults."""

    def __init__(self):
        self.env_vars_loaded: Dict[str, bool] = {}
        self.validation_errors: Dict[str, str] = {}
        self.defaults_used: Dict[str, Any] = {}
        self.last_reload: Optional[str] = None

    def record_env_load(self, key: str, from_env: bool, value: Any, default: Any):
        self.env_vars_loaded[key] = from_env
        if not from_env:
            self.defaults_used[key] = default

    def record_validation_error(self, key: str, error: str):
        self.validation_errors[key] = error

    def get_summary(self) -> Dict[str, Any]:
        return {
            "total_configs": len(self.env_vars_loaded),
            "from_environment": sum(1 for v in self.env_vars_loaded.values() if v),
            "from_defaults": sum(1 for v in self.env_vars_loaded.values() if not v),
            "validation_errors": len(self.validation_errors),
            "defaults_used": list(self.defaults_used.keys()),
            "last_reload": self.last_reload,
        }


class Config:
    """
    Centralized static configuration for sessioncache.

    All values are loaded from environment variables with sensible defaults.

    Usage
    -----
    >>> Config.SESSION_LOCK_TIMEOUT
    1800
    >>> Config.is_production()
    False
    """

    _metrics: Optional[_ConfigLoadMetrics] = None
    _validated: bool = False

    # =========================================================================
    # Environment / Logging
    # =========================================================================

    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: Optional[bool] = None
    LOG_COLORS: bool = True
    LOG_FILE_ENABLED: bool = True
    LOGS_DIR: Path = Path.cwd() / "logs"
    CONFIG_DIR: Path = Path("config")

    # =========================================================================
    # Redis
    # =========================================================================

    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_SOCKET_TIMEOUT: int = 5
    REDIS_MAX_CONNECTIONS: int = 50

    # =========================================================================
    # Process identity (session owner)
    # =========================================================================

    PLACE_ID: str = "0"
    JOB_ID: str = uuid.uuid4().hex

    # =========================================================================
    # Sessions
    # =========================================================================

    # Seconds before another process may take over an unrenewed session lock
    SESSION_LOCK_TIMEOUT: int = 30 * 60
    # Must stay lower than SESSION_LOCK_TIMEOUT
    AUTO_SAVE_INTERVAL: int = 5 * 60
    SESSION_KICK_MESSAGE: str = "A session was already loaded! Please rejoin later."
    FILTERED_RESULT: str = "###?"

    # =========================================================================
    # Scheduler
    # =========================================================================

    TICK_INTERVAL: float = 1.0
    LOCK_CHECK_INTERVAL: float = 60.0
    FORCED_SAVE_GRACE_PERIOD: float = 60.0
    MAX_EVICTION_DEFERRALS: int = 10

    # =========================================================================
    # Request budget
    # =========================================================================

    REQUEST_BUDGET_BASE: int = 60
    REQUEST_BUDGET_PER_ENTITY: int = 10
    REQUEST_BUDGET_WINDOW: float = 60.0

    # =========================================================================
    # Helper Methods
    # =========================================================================

    @classmethod
    def _init_metrics(cls):
        if cls._metrics is None:
            cls._metrics = _ConfigLoadMetrics()

    @classmethod
    def _safe_int(
        cls,
        key: str,
        default: int,
        min_val: Optional[int] = None,
        max_val: Optional[int] = None,
    ) -> int:
        """
        Safely parse integer from environment with validation.

        Example
        -------
        >>> Config._safe_int("MAX_EVICTION_DEFERRALS", 10, min_val=0)
        10
        """
        cls._init_metrics()

        raw_value = os.getenv(key)
        if raw_value is None:
            cls._metrics.record_env_load(key, False, default, default)
            return default

        try:
            value = int(raw_value)
        except ValueError:
            error = f"{key}='{raw_value}' is not a valid integer, using default {default}"
            logging.warning(error)
            cls._metrics.record_validation_error(key, error)
            return default

        if min_val is not None and value < min_val:
            error = f"{key}={value} is below minimum {min_val}, using default {default}"
            logging.warning(error)
            cls._metrics.record_validation_error(key, error)
            return default

        if max_val is not None and value > max_val:
            error = f"{key}={value} exceeds maximum {max_val}, using default {default}"
            logging.warning(error)
            cls._metrics.record_validation_error(key, error)
            return default

        cls._metrics.record_env_load(key, True, value, default)
        return value

    @classmethod
    def _safe_float(cls, key: str, default: float, min_val: Optional[float] = None) -> float:
        """Safely parse a float from environment with a lower bound."""
        cls._init_metrics()

        raw_value = os.getenv(key)
        if raw_value is None:
            cls._metrics.record_env_load(key, False, default, default)
            return default

        try:
            value = float(raw_value)
        except ValueError:
            error = f"{key}='{raw_value}' is not a valid number, using default {default}"
            logging.warning(error)
            cls._metrics.record_validation_error(key, error)
            return default

        if min_val is not None and value < min_val:
            error = f"{key}={value} is below minimum {min_val}, using default {default}"
            logging.warning(error)
            cls._metrics.record_validation_error(key, error)
            return default

        cls._metrics.record_env_load(key, True, value, default)
        return value

    @classmethod
    def _safe_bool(cls, key: str, default: bool) -> bool:
        """
        Safely parse boolean from environment.

        Recognizes: true/false, yes/no, 1/0, on/off (case-insensitive).
        """
        cls._init_metrics()

        raw_value = os.getenv(key)
        if raw_value is None:
            cls._metrics.record_env_load(key, False, default, default)
            return default

        normalized = raw_value.lower().strip()
        if normalized in {"true", "yes", "1", "on"}:
            value = True
        elif normalized in {"false", "no", "0", "off"}:
            value = False
        else:
            error = f"{key}='{raw_value}' is not a valid boolean, using default {default}"
            logging.warning(error)
            cls._metrics.record_validation_error(key, error)
            return default

        cls._metrics.record_env_load(key, True, value, default)
        return value

    @classmethod
    def _safe_optional_bool(cls, key: str) -> Optional[bool]:
        if os.getenv(key) is None:
            return None
        return cls._safe_bool(key, False)

    @classmethod
    def _safe_str(cls, key: str, default: str) -> str:
        cls._init_metrics()
        value = os.getenv(key, default)
        cls._metrics.record_env_load(key, key in os.environ, value, default)
        return value

    # =========================================================================
    # Configuration Loading
    # =========================================================================

    @classmethod
    def load(cls) -> None:
        """
        Load all configuration from environment variables with validation.

        Called automatically on module import; can be called again to pick up
        environment changes (tests do this after monkeypatching env vars).
        """
        cls._init_metrics()

        cls.ENVIRONMENT = cls._safe_str("ENVIRONMENT", "development")
        cls.LOG_LEVEL = cls._safe_str("LOG_LEVEL", "INFO")
        cls.LOG_JSON = cls._safe_optional_bool("LOG_JSON")
        cls.LOG_COLORS = cls._safe_bool("LOG_COLORS", True)
        cls.LOG_FILE_ENABLED = cls._safe_bool("LOG_FILE_ENABLED", True)
        cls.LOGS_DIR = Path(cls._safe_str("LOGS_DIR", str(Path.cwd() / "logs")))
        cls.CONFIG_DIR = Path(cls._safe_str("CONFIG_DIR", "config"))

        cls.REDIS_URL = cls._safe_str("REDIS_URL", "redis://localhost:6379/0")
        cls.REDIS_SOCKET_TIMEOUT = cls._safe_int("REDIS_SOCKET_TIMEOUT", 5, min_val=1, max_val=60)
        cls.REDIS_MAX_CONNECTIONS = cls._safe_int(
            "REDIS_MAX_CONNECTIONS", 50, min_val=1, max_val=500
        )

        cls.PLACE_ID = cls._safe_str("PLACE_ID", "0")
        cls.JOB_ID = cls._safe_str("JOB_ID", cls.JOB_ID)

        cls.SESSION_LOCK_TIMEOUT = cls._safe_int("SESSION_LOCK_TIMEOUT", 30 * 60, min_val=1)
        cls.AUTO_SAVE_INTERVAL = cls._safe_int("AUTO_SAVE_INTERVAL", 5 * 60, min_val=1)
        cls.SESSION_KICK_MESSAGE = cls._safe_str(
            "SESSION_KICK_MESSAGE", "A session was already loaded! Please rejoin later."
        )
        cls.FILTERED_RESULT = cls._safe_str("FILTERED_RESULT", "###?")

        cls.TICK_INTERVAL = cls._safe_float("TICK_INTERVAL", 1.0, min_val=0.001)
        cls.LOCK_CHECK_INTERVAL = cls._safe_float("LOCK_CHECK_INTERVAL", 60.0, min_val=0.0)
        cls.FORCED_SAVE_GRACE_PERIOD = cls._safe_float(
            "FORCED_SAVE_GRACE_PERIOD", 60.0, min_val=0.0
        )
        cls.MAX_EVICTION_DEFERRALS = cls._safe_int("MAX_EVICTION_DEFERRALS", 10, min_val=0)

        cls.REQUEST_BUDGET_BASE = cls._safe_int("REQUEST_BUDGET_BASE", 60, min_val=1)
        cls.REQUEST_BUDGET_PER_ENTITY = cls._safe_int("REQUEST_BUDGET_PER_ENTITY", 10, min_val=0)
        cls.REQUEST_BUDGET_WINDOW = cls._safe_float("REQUEST_BUDGET_WINDOW", 60.0, min_val=0.001)

        cls._metrics.last_reload = datetime.now(timezone.utc).isoformat()

    @classmethod
    def validate(cls) -> None:
        """
        Validate critical configuration values on startup.

        Raises
        ------
        ValueError:
            In production, if the auto-save interval does not beat the
            session lock timeout (sessions would expire between renewals).
        """
        if cls._validated:
            return

        logger = logging.getLogger(__name__)
        cls.load()

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if cls.LOG_LEVEL.upper() not in valid_log_levels:
            logger.warning(f"Invalid LOG_LEVEL '{cls.LOG_LEVEL}', using INFO")
            cls.LOG_LEVEL = "INFO"

        if cls.AUTO_SAVE_INTERVAL >= cls.SESSION_LOCK_TIMEOUT:
            error = (
                f"AUTO_SAVE_INTERVAL={cls.AUTO_SAVE_INTERVAL} must be lower than "
                f"SESSION_LOCK_TIMEOUT={cls.SESSION_LOCK_TIMEOUT}"
            )
            cls._metrics.record_validation_error("AUTO_SAVE_INTERVAL", error)
            if cls.is_production():
                raise ValueError(error)
            logger.warning(error)

        cls._validated = True

        if cls._metrics.validation_errors:
            logger.warning(f"Configuration warnings: {cls._metrics.validation_errors}")

    @classmethod
    def reset(cls) -> None:
        """Forget validation state so the next validate() reloads everything."""
        cls._validated = False
        cls._metrics = None

    # =========================================================================
    # Environment Checks
    # =========================================================================

    @classmethod
    def is_production(cls) -> bool:
        return cls.ENVIRONMENT.lower() == "production"

    @classmethod
    def is_development(cls) -> bool:
        return cls.ENVIRONMENT.lower() == "development"

    @classmethod
    def is_testing(cls) -> bool:
        return cls.ENVIRONMENT.lower() == "testing"

    # =========================================================================
    # Metrics & Summary
    # =========================================================================

    @classmethod
    def get_metrics(cls) -> Optional[_ConfigLoadMetrics]:
        return cls._metrics

    @classmethod
    def get_config_summary(cls) -> Dict[str, Any]:
        """Non-sensitive configuration summary for debugging."""
        return {
            "environment": cls.ENVIRONMENT,
            "log_level": cls.LOG_LEVEL,
            "place_id": cls.PLACE_ID,
            "job_id": cls.JOB_ID,
            "session_lock_timeout": cls.SESSION_LOCK_TIMEOUT,
            "auto_save_interval": cls.AUTO_SAVE_INTERVAL,
            "tick_interval": cls.TICK_INTERVAL,
            "redis_max_connections": cls.REDIS_MAX_CONNECTIONS,
        }


# Auto-validate on import
Config.validate()
