"""Dotted variable paths and nested mapping helpers.

A path such as ``"inventory.items[0].name"`` is normalized to the segment
list ``["inventory", "items", "0", "name"]``.  The helpers below walk,
assign and delete along such segment lists inside plain dict/list trees.
None of them raise on malformed input; callers get ``None`` / ``False`` /
``MISSING`` instead.
"""
from __future__ import annotations

import re
from typing import Any, Optional

_INDEX_RE = re.compile(r"\[([^\[\]]*)\]")


class _Missing:
    """Sentinel for "no value at this path" (distinct from a stored ``None``)."""

    _instance: Optional[_Missing] = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def normalize_path(path: object) -> Optional[list[str]]:
    """Split *path* into segments, or ``None`` when it is not a valid path."""
    if not isinstance(path, str):
        return None
    path = path.strip()
    if not path:
        return None
    segments = _INDEX_RE.sub(r".\1", path).split(".")
    if any(not s for s in segments):
        return None
    return segments


def join_path(segments: list[str]) -> str:
    return ".".join(segments)


def _list_index(container: list[Any], segment: str) -> Optional[int]:
    if not segment.isdigit():
        return None
    index = int(segment)
    return index if index < len(container) else None


def resolve(root: Any, segments: list[str]) -> Any:
    """Value at *segments* inside *root*, or ``MISSING``."""
    current = root
    for segment in segments:
        if isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, list):
            index = _list_index(current, segment)
            if index is None:
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def assign(root: dict[str, Any], segments: list[str], value: Any) -> bool:
    """Write *value* at *segments*, creating intermediate mappings.

    A scalar intermediate is replaced by a mapping.  List intermediates are
    only indexed in range; an out-of-range index leaves *root* untouched and
    returns ``False``.
    """
    current: Any = root
    for segment in segments[:-1]:
        if isinstance(current, list):
            index = _list_index(current, segment)
            if index is None:
                return False
            if not isinstance(current[index], (dict, list)):
                current[index] = {}
            current = current[index]
        else:
            nxt = current.get(segment)
            if not isinstance(nxt, (dict, list)):
                nxt = {}
                current[segment] = nxt
            current = nxt

    last = segments[-1]
    if isinstance(current, list):
        index = _list_index(current, last)
        if index is None:
            return False
        current[index] = value
    else:
        current[last] = value
    return True


def remove(root: dict[str, Any], segments: list[str]) -> bool:
    """Delete the leaf at *segments*; ``True`` when something was removed."""
    parent = resolve(root, segments[:-1]) if len(segments) > 1 else root
    last = segments[-1]
    if isinstance(parent, dict):
        if last in parent:
            del parent[last]
            return True
        return False
    if isinstance(parent, list):
        index = _list_index(parent, last)
        if index is not None:
            del parent[index]
            return True
    return False


def flatten(value: Any, prefix: str = "") -> dict[str, Any]:
    """Dotted path → leaf value for every non-mapping leaf under *value*."""
    if not isinstance(value, dict):
        return {prefix: value} if prefix else {}
    flat: dict[str, Any] = {}
    for key, child in value.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        flat.update(flatten(child, path))
    return flat
