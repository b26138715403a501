"""
Per-cache options.

Purpose
-------
Typed, validated configuration for one `SessionedCache`.

Precedence
----------
Options are resolved by `resolve_options` from, lowest to highest:

1. `CacheOptions()` defaults
2. YAML overrides under `caches.<cache name>` (via `ConfigManager`)
3. The explicit `options` passed to `CacheRegistry.create_cache`
   - a mapping overrides only the keys it names
   - a `CacheOptions` instance is taken as complete and replaces 1 and 2

Validation
----------
`CacheOptions.validate()` raises `CacheConfigurationError` (fatal at setup
time) when:

- retries are enabled and `call_attempts < 1`
- retries are enabled and `call_attempts * retry_delay >= 30` seconds
- `retry_delay` is negative
- `key_template` does not format exactly one integer
- `decimal_places` is negative
- both the allow-list and the deny-list are enabled
- `template_data` is not a mapping
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from sessioncache.cache.reconcile import deep_copy
from sessioncache.core.config import ConfigManager
from sessioncache.core.exceptions import CacheConfigurationError

# Upper bound on `call_attempts * retry_delay`, in seconds
MAX_RETRY_DURATION = 30.0


@dataclass(slots=True)
class CacheOptions:
    # Stored key for an entity; `%i` receives the entity id
    key_template: str = "Player_%i"
    # Default data reconciled into every loaded record
    template_data: Dict[str, Any] = field(default_factory=dict)

    create_listeners: bool = False

    compress_float_numbers: bool = False
    decimal_places: int = 3

    filter_string_content: bool = False
    filter_allow_list_enabled: bool = False
    filter_deny_list_enabled: bool = False
    filter_key_list: Tuple[str, ...] = ()

    allow_client_side_to_read: bool = False
    client_endpoint_name: str = "DataCacherRemote"

    retry_enabled: bool = True
    call_attempts: int = 5
    retry_delay: float = 1.0

    # ------------------------------------------------------------------

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in dataclasses.fields(cls))

    @classmethod
    def from_mapping(
        cls,
        values: Mapping[str, Any],
        base: Optional["CacheOptions"] = None,
    ) -> "CacheOptions":
        """
        Build options from a mapping of option names, on top of `base`.

        Raises
        ------
        CacheConfigurationError
            If the mapping names an unknown option.
        """
        known = set(cls.field_names())
        unknown = sorted(str(k) for k in values if k not in known)
        if unknown:
            raise CacheConfigurationError(unknown[0], "unknown cache option")

        merged = (base or cls()).to_dict()
        merged.update(deep_copy(dict(values)))
        if "filter_key_list" in merged:
            merged["filter_key_list"] = tuple(merged["filter_key_list"] or ())
        return cls(**merged)

    def to_dict(self) -> Dict[str, Any]:
        return {name: deep_copy(getattr(self, name)) for name in self.field_names()}

    def format_key(self, entity_id: int) -> str:
        return self.key_template % entity_id

    @property
    def total_attempts(self) -> int:
        return self.call_attempts if self.retry_enabled else 1

    # ------------------------------------------------------------------

    def validate(self) -> "CacheOptions":
        if self.retry_enabled:
            if not isinstance(self.call_attempts, int) or self.call_attempts < 1:
                raise CacheConfigurationError(
                    "call_attempts", "cannot be less than 1 attempt(s)"
                )
            if self.call_attempts * self.retry_delay >= MAX_RETRY_DURATION:
                raise CacheConfigurationError(
                    "call_attempts",
                    f"total retry duration must stay below {MAX_RETRY_DURATION:g} seconds",
                )

        if self.retry_delay < 0:
            raise CacheConfigurationError("retry_delay", "cannot be negative")

        if not isinstance(self.key_template, str):
            raise CacheConfigurationError("key_template", "must be a string")
        try:
            first = self.key_template % 1
            second = self.key_template % 2
        except (TypeError, ValueError) as exc:
            raise CacheConfigurationError(
                "key_template", f"must format exactly one integer ({exc})"
            ) from exc
        if first == second:
            raise CacheConfigurationError("key_template", "must include the entity id")

        if not isinstance(self.decimal_places, int) or self.decimal_places < 0:
            raise CacheConfigurationError("decimal_places", "must be a non-negative integer")

        if self.filter_allow_list_enabled and self.filter_deny_list_enabled:
            raise CacheConfigurationError(
                "filter_allow_list_enabled", "allow-list and deny-list cannot both be enabled"
            )

        if not isinstance(self.template_data, dict):
            raise CacheConfigurationError("template_data", "must be a mapping")

        if self.allow_client_side_to_read and not self.client_endpoint_name:
            raise CacheConfigurationError("client_endpoint_name", "must not be empty")

        return self


def resolve_options(
    name: str,
    options: Union[CacheOptions, Mapping[str, Any], None] = None,
) -> CacheOptions:
    """Merge defaults, YAML `caches.<name>` and explicit options, then validate."""
    if isinstance(options, CacheOptions):
        return CacheOptions.from_mapping(options.to_dict()).validate()

    resolved = CacheOptions.from_mapping(ConfigManager.get_section(f"caches.{name}"))
    if options:
        resolved = CacheOptions.from_mapping(options, base=resolved)
    return resolved.validate()
