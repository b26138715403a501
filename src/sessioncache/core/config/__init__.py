"""
Configuration management subsystem for sessioncache.

Purpose
-------
Provides both static (environment-based) and dynamic (YAML-based)
configuration.

Static vs Dynamic Configuration
--------------------------------
**Static (Config):**
- Loaded from environment variables at startup (.env supported)
- Includes: Redis URL, process identity, session lock timeout, scheduler
  intervals, request budget
- Validated on import

**Dynamic (ConfigManager):**
- Loaded from YAML files in `Config.CONFIG_DIR`
- Includes: per-cache option overrides (`caches.<name>.*`), scheduler and
  store tunables
- In-memory overrides for tests and tooling

Usage Examples
--------------
```python
from sessioncache.core.config import Config, ConfigManager

timeout = Config.SESSION_LOCK_TIMEOUT

ConfigManager.initialize()
attempts = ConfigManager.get("caches.Coins.call_attempts", default=5)
```
"""

from sessioncache.core.config.config import Config, Environment
from sessioncache.core.config.errors import (
    ConfigError,
    ConfigInitializationError,
    ConfigValidationError,
)
from sessioncache.core.config.manager import ConfigManager

__all__ = [
    "Config",
    "Environment",
    "ConfigManager",
    "ConfigError",
    "ConfigInitializationError",
    "ConfigValidationError",
]
