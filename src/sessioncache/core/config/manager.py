"""
ConfigManager: dynamic, YAML-backed configuration access for sessioncache.

Purpose
-------
- Provide hierarchical, dot-notation access to tunable configuration values.
- Back configuration with YAML files discovered under `Config.CONFIG_DIR`.
- Allow runtime overrides (tests, operator tooling) layered on top of YAML.

Responsibilities
----------------
- Load and deep-merge every `*.yaml` / `*.yml` file in the config directory.
- Serve reads from an in-memory cache with fallback to YAML defaults.
- Apply in-process overrides without touching the files on disk.

Non-Responsibilities
--------------------
- Static, environment-driven settings (handled by `Config`)
- Validating per-cache options (handled by `CacheOptions.validate`)

Key Design Decisions
--------------------
- YAML is the single source for **defaults**; overrides only live in memory.
- Per-cache option overrides live under `caches.<cache name>.<option>`.
- Scheduler and store tunables live under `scheduler.*` and `redis.*`.
- Accessing the manager before `initialize()` lazily bootstraps from YAML,
  logged at warning level.

Dependencies
------------
- PyYAML: `yaml.safe_load` for config files
- `sessioncache.core.logging.logger.get_logger`: structured logging
"""

from __future__ import annotations

import copy
import time
from pathlib import Path
from typing import Any, Dict, List, MutableMapping, Optional

import yaml

from sessioncache.core.config.config import Config
from sessioncache.core.config.errors import ConfigInitializationError, ConfigValidationError
from sessioncache.core.logging.logger import get_logger

logger = get_logger(__name__)


class ConfigManager:
    """
    Dynamic configuration management backed by YAML files.

    Features
    --------
    - Hierarchical config access with dot notation (e.g. `"caches.Coins.call_attempts"`).
    - Deep-merged YAML defaults from every file in the config directory.
    - In-memory overrides with `set_override()`.
    """

    _cache: Dict[str, Any] = {}
    _defaults: Dict[str, Any] = {}
    _initialized: bool = False
    _config_dir: Optional[Path] = None
    _files_loaded: int = 0

    # =========================================================================
    # YAML LOADING & DEFAULTS
    # =========================================================================

    @staticmethod
    def _deep_merge_dict(
        target: MutableMapping[str, Any],
        source: MutableMapping[str, Any],
    ) -> None:
        """Recursively merge `source` into `target` (in-place)."""
        for key, value in source.items():
            if isinstance(value, dict) and isinstance(target.get(key), dict):
                ConfigManager._deep_merge_dict(target[key], value)
            else:
                target[key] = value

    @classmethod
    def _load_yaml_configs(cls, config_dir: Path) -> None:
        """
        Recursively load all YAML config files from `config_dir` into `_defaults`.

        Files are merged in sorted path order so later files win on conflicts.
        A file that fails to parse is logged and skipped.
        """
        cls._defaults = {}
        cls._files_loaded = 0

        if not config_dir.exists():
            logger.info(
                "Config directory not found; using built-in defaults only",
                extra={"config_dir": str(config_dir)},
            )
            return

        if not config_dir.is_dir():
            raise ConfigInitializationError(f"Config path is not a directory: {config_dir}")

        yaml_files = sorted(
            list(config_dir.rglob("*.yaml")) + list(config_dir.rglob("*.yml"))
        )

        for yaml_file in yaml_files:
            try:
                with yaml_file.open("r", encoding="utf-8") as handle:
                    data = yaml.safe_load(handle)
            except (OSError, yaml.YAMLError) as exc:
                logger.warning(
                    "Failed to load YAML config",
                    extra={
                        "file": str(yaml_file.relative_to(config_dir)),
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                    exc_info=True,
                )
                continue

            if isinstance(data, dict):
                cls._deep_merge_dict(cls._defaults, data)
                cls._files_loaded += 1
                logger.debug(
                    "Loaded YAML config",
                    extra={"file": str(yaml_file.relative_to(config_dir))},
                )
            elif data is not None:
                logger.warning(
                    "Ignoring non-dict YAML root object",
                    extra={
                        "file": str(yaml_file.relative_to(config_dir)),
                        "root_type": type(data).__name__,
                    },
                )

    # =========================================================================
    # INITIALIZATION
    # =========================================================================

    @classmethod
    def initialize(cls, config_dir: Optional[Path] = None) -> None:
        """
        Initialize ConfigManager from YAML files (idempotent).

        Parameters
        ----------
        config_dir:
            Directory to scan. Defaults to `Config.CONFIG_DIR`.

        Raises
        ------
        ConfigInitializationError
            If the configured path exists but is not a directory.
        """
        if cls._initialized:
            return

        start = time.perf_counter()
        cls._config_dir = Path(config_dir) if config_dir is not None else Config.CONFIG_DIR
        cls._load_yaml_configs(cls._config_dir)
        cls._cache = copy.deepcopy(cls._defaults)
        cls._initialized = True

        logger.info(
            "ConfigManager initialized",
            extra={
                "config_dir": str(cls._config_dir),
                "yaml_file_count": cls._files_loaded,
                "top_level_keys": len(cls._cache),
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )

    @classmethod
    def reset(cls) -> None:
        """
        Drop all loaded values and overrides and mark uninitialized.

        Intended for tests and controlled maintenance operations.
        """
        cls._cache = {}
        cls._defaults = {}
        cls._initialized = False
        cls._config_dir = None
        cls._files_loaded = 0

    # =========================================================================
    # READS
    # =========================================================================

    @staticmethod
    def _traverse(source: Dict[str, Any], key: str) -> Any:
        value: Any = source
        for part in key.split("."):
            if not isinstance(value, dict):
                return None
            value = value.get(part)
            if value is None:
                return None
        return value

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """
        Retrieve a configuration value by dot-notation path.

        Parameters
        ----------
        key:
            Dot-notation config path (e.g. `"scheduler.tick_interval"`).
        default:
            Value to return if the key is not found in cache or defaults.

        Examples
        --------
        >>> ConfigManager.get("caches.Coins.call_attempts", 5)
        5
        """
        if not cls._initialized:
            logger.warning(
                "ConfigManager accessed before explicit initialization; "
                "loading defaults now"
            )
            cls.initialize()

        value = cls._traverse(cls._cache, key)
        if value is None:
            value = cls._traverse(cls._defaults, key)
        return default if value is None else value

    @classmethod
    def get_section(cls, key: str) -> Dict[str, Any]:
        """
        Return a copy of the mapping stored at `key`, or an empty dict.

        Raises
        ------
        ConfigValidationError
            If a non-mapping value is stored at `key`.
        """
        value = cls.get(key)
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ConfigValidationError(
                f"Expected a mapping at '{key}', found {type(value).__name__}"
            )
        return copy.deepcopy(value)

    @classmethod
    def get_all_keys(cls) -> List[str]:
        """Return all top-level configuration keys currently in cache."""
        return list(cls._cache.keys())

    # =========================================================================
    # OVERRIDES
    # =========================================================================

    @classmethod
    def set_override(cls, key: str, value: Any) -> None:
        """
        Set an in-memory override at a dot-notation path.

        Intermediate mappings are created as needed. Overrides are lost on
        `reset()` and never written back to YAML.
        """
        parts = [p for p in key.split(".") if p]
        if not parts:
            raise ConfigValidationError("Override key must not be empty")

        if not cls._initialized:
            cls.initialize()

        node: Dict[str, Any] = cls._cache
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

        logger.info("Config override applied", extra={"config_key": key})

    # =========================================================================
    # HEALTH
    # =========================================================================

    @classmethod
    def health_snapshot(cls) -> Dict[str, Any]:
        """Return a compact health snapshot for diagnostics."""
        return {
            "initialized": cls._initialized,
            "config_dir": str(cls._config_dir) if cls._config_dir else None,
            "yaml_file_count": cls._files_loaded,
            "top_level_keys": len(cls._cache),
        }


__all__ = ["ConfigManager"]
