"""JSON-merge-patch style deltas between state trees.

A state tree is a nested ``dict`` of JSON values. A delta has the same shape,
except that a ``None`` leaf means "delete this key". Lists are never diffed
element-wise: a changed list is re-sent whole. Keys starting with ``_`` are
private bookkeeping (timers, secrets); they are skipped by ``diff``, ``apply``
and ``clone`` and therefore never reach the wire.

Because ``None`` encodes deletion, a key holding ``None`` is treated exactly
like an absent key throughout this module.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, MutableMapping

Tree = Dict[str, Any]
Delta = Dict[str, Any]

_UNCHANGED = object()


def is_private_key(key: Any) -> bool:
    return isinstance(key, str) and key.startswith("_")


def clone(value: Any) -> Any:
    """Deep-copy a JSON value, dropping private keys at every level."""

    if isinstance(value, Mapping):
        return {key: clone(item) for key, item in value.items() if not is_private_key(key)}
    if isinstance(value, (list, tuple)):
        return [clone(item) for item in value]
    return value


def _leaf_equal(a: Any, b: Any) -> bool:
    # bool is an int subclass in Python but a distinct JSON type.
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    return a == b


def deep_equal(a: Any, b: Any) -> bool:
    """Structural equality that ignores private keys and ``None``-valued keys."""

    if a is b:
        return True
    if isinstance(a, Mapping) and isinstance(b, Mapping):
        for key, value in a.items():
            if is_private_key(key) or value is None:
                continue
            if key not in b or not deep_equal(value, b[key]):
                return False
        for key, value in b.items():
            if is_private_key(key) or value is None:
                continue
            if a.get(key) is None:
                return False
        return True
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        if len(a) != len(b):
            return False
        return all(deep_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, (Mapping, list, tuple)) or isinstance(b, (Mapping, list, tuple)):
        return False
    return _leaf_equal(a, b)


def _diff_value(current: Any, old: Any) -> Any:
    if current is None:
        return _UNCHANGED if old is None else None
    if isinstance(current, Mapping):
        if not isinstance(old, Mapping):
            return clone(current)
        nested = _diff_mapping(current, old)
        return nested if nested else _UNCHANGED
    if isinstance(current, (list, tuple)):
        return _UNCHANGED if deep_equal(current, old) else clone(current)
    if old is not None and not isinstance(old, (Mapping, list, tuple)) and _leaf_equal(current, old):
        return _UNCHANGED
    return current


def _diff_mapping(current: Mapping[str, Any], previous: Mapping[str, Any]) -> Delta:
    result: Delta = {}
    for key, value in current.items():
        if is_private_key(key):
            continue
        change = _diff_value(value, previous.get(key))
        if change is not _UNCHANGED:
            result[key] = change
    for key, value in previous.items():
        if is_private_key(key) or value is None:
            continue
        if current.get(key) is None and key not in result:
            result[key] = None
    return result


def diff(current: Mapping[str, Any], previous: Mapping[str, Any]) -> Delta:
    """Return the minimal delta ``D`` such that ``apply(previous, D)`` yields ``current``."""

    return _diff_mapping(current, previous)


def apply(target: MutableMapping[str, Any], delta: Mapping[str, Any]) -> None:
    """Apply ``delta`` to ``target`` in place."""

    for key, value in delta.items():
        if is_private_key(key):
            continue
        if value is None:
            target.pop(key, None)
        elif isinstance(value, Mapping):
            child = target.get(key)
            if not isinstance(child, MutableMapping):
                child = {}
                target[key] = child
            apply(child, value)
        elif isinstance(value, (list, tuple)):
            target[key] = clone(value)
        else:
            target[key] = value


def is_empty(delta: Mapping[str, Any] | None) -> bool:
    return not delta


__all__ = [
    "Delta",
    "Tree",
    "apply",
    "clone",
    "deep_equal",
    "diff",
    "is_empty",
    "is_private_key",
]
