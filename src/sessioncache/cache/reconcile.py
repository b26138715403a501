"""
Reconciliation and structural copy utilities.

Purpose
-------
Schema migration for stored records: a template describes the current
shape of an entity's data, and `reconcile` backfills whatever an older
record is missing without ever destroying what it already has.

Operations
----------
- `reconcile(target, template, replace_type=False)` fills missing keys in
  place and returns `target`.
- `reconcile_copy(...)` does the same on a deep copy, leaving `target` alone.
- `deep_copy(value)` clones nested mappings / lists / tuples and refuses
  cyclic structures.
- `is_identical(old, new)` deep structural equality used by change detection.
- `map_leaves(value, fn)` copy with `fn(leaf, key)` applied to every leaf.

Rules
-----
- A key is missing when absent from `target` or mapped to None.
- Nested mappings present in both are reconciled recursively; sequences are
  treated as leaves.
- Keys in `target` that the template does not know are kept.
- Existing non-None values are never overwritten, even on a type mismatch,
  unless `replace_type=True`, in which case the template value wins.
- Values copied from the template are deep copies; the template is never
  aliased into a record.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Callable, Dict, MutableMapping, Optional, Set

from sessioncache.core.exceptions import CyclicStructureError

_MISSING = object()


def _kind(value: Any) -> str:
    if value is None:
        return "nil"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping):
        return "mapping"
    if isinstance(value, (list, tuple)):
        return "sequence"
    return type(value).__name__


# ---------------------------------------------------------------------------
# Copying
# ---------------------------------------------------------------------------


def deep_copy(value: Any) -> Any:
    """
    Structural clone of mappings, lists and tuples; other values are shared.

    Raises
    ------
    CyclicStructureError
        If a container (directly or indirectly) contains itself.
    """
    return _copy(value, set(), None, "")


def map_leaves(value: Any, fn: Callable[[Any, Any], Any]) -> Any:
    """
    Deep copy of `value` with `fn(leaf, key)` applied to every non-container.

    `key` is the mapping key or sequence index the leaf sits under (None for
    a bare scalar).
    """
    return _copy(value, set(), fn, None)


def _copy(
    value: Any,
    path: Set[int],
    fn: Optional[Callable[[Any, Any], Any]],
    key: Any,
) -> Any:
    if isinstance(value, (dict, list, tuple)) or isinstance(value, Mapping):
        marker = id(value)
        if marker in path:
            raise CyclicStructureError(type(value).__name__)
        path.add(marker)
        try:
            if isinstance(value, Mapping):
                return {k: _copy(v, path, fn, k) for k, v in value.items()}
            items = [_copy(v, path, fn, i) for i, v in enumerate(value)]
            return tuple(items) if isinstance(value, tuple) else items
        finally:
            path.discard(marker)

    if fn is not None:
        return fn(value, key)
    return value


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def reconcile(
    target: MutableMapping[Any, Any],
    template: Mapping[Any, Any],
    replace_type: bool = False,
) -> MutableMapping[Any, Any]:
    """
    Backfill `target` from `template` in place and return it.

    Examples
    --------
    >>> reconcile({"Coins": 10}, {"Coins": 0, "Gems": 0})
    {'Coins': 10, 'Gems': 0}
    >>> reconcile({"Coins": "10"}, {"Coins": 0}, replace_type=True)
    {'Coins': 0}
    """
    for key, template_value in template.items():
        current = target.get(key)

        if current is None:
            if template_value is not None:
                target[key] = deep_copy(template_value)
            continue

        same_kind = _kind(current) == _kind(template_value)
        if replace_type and not same_kind and template_value is not None:
            target[key] = deep_copy(template_value)
            continue

        if same_kind and isinstance(template_value, Mapping):
            reconcile(current, template_value, replace_type)

    return target


def reconcile_copy(
    target: Mapping[Any, Any],
    template: Mapping[Any, Any],
    replace_type: bool = False,
) -> Dict[Any, Any]:
    """Reconcile a deep copy of `target`; the argument is left untouched."""
    duplicate = deep_copy(target)
    reconcile(duplicate, template, replace_type)
    return duplicate


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------


def is_identical(old: Any, new: Any) -> bool:
    """
    Deep structural equality.

    Mappings compare key count first, then every key of `old` recursively.
    Sequences compare length, then element-wise.
    """
    if isinstance(old, Mapping):
        if not isinstance(new, Mapping) or len(old) != len(new):
            return False
        for key, value in old.items():
            other = new.get(key, _MISSING)
            if other is _MISSING or not is_identical(value, other):
                return False
        return True

    if isinstance(old, (list, tuple)):
        if not isinstance(new, (list, tuple)) or len(old) != len(new):
            return False
        return all(is_identical(a, b) for a, b in zip(old, new))

    if isinstance(new, (Mapping, list, tuple)):
        return False
    if isinstance(old, bool) != isinstance(new, bool):
        return False
    return old == new


__all__ = [
    "deep_copy",
    "map_leaves",
    "reconcile",
    "reconcile_copy",
    "is_identical",
]
