"""Dot-path access into nested dict/list trees.

Paths use dot segments with optional array indexes, so ``a.b[0].c`` and
``a.b.0.c`` address the same value.
"""

from __future__ import annotations

import copy
import re
from typing import Any

from ensemble.exceptions import ValidationError

_SEGMENT_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")

PathSegment = str | int


def parse_path(path: str) -> list[PathSegment]:
    """Split a path into key and index segments.

    Args:
        path: Dot path such as ``steps.summary[0].text``

    Returns:
        Segments; numeric segments become ints

    Raises:
        ValidationError: If the path is empty or malformed
    """
    if not path or not path.strip():
        raise ValidationError("Context path must not be empty")

    segments: list[PathSegment] = []
    position = 0
    stripped = path.strip()
    while position < len(stripped):
        if stripped[position] == ".":
            position += 1
            if position == len(stripped) or stripped[position] in ".[":
                raise ValidationError(f"Invalid context path: {path}")
            continue
        match = _SEGMENT_RE.match(stripped, position)
        if match is None:
            raise ValidationError(f"Invalid context path: {path}")
        key, index = match.groups()
        if index is not None:
            segments.append(int(index))
        elif key.isdigit():
            segments.append(int(key))
        else:
            segments.append(key)
        position = match.end()

    return segments


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Read the value at ``path``, returning ``default`` when absent."""
    current = data
    for segment in parse_path(path):
        if isinstance(current, dict):
            key = str(segment)
            if key not in current:
                return default
            current = current[key]
        elif isinstance(current, list) and isinstance(segment, int):
            if segment >= len(current):
                return default
            current = current[segment]
        else:
            return default
    return current


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    """Write ``value`` at ``path``, creating intermediate containers.

    A missing container becomes a list when the next segment is an index and
    a dict otherwise, and an intermediate scalar is replaced the same way.
    List indexes may append at ``len(list)``.

    Raises:
        ValidationError: If the path keys into a list or skips list slots
    """
    segments = parse_path(path)
    current: Any = data

    for position, segment in enumerate(segments):
        last = position == len(segments) - 1
        next_container: Any = None
        if not last:
            next_container = [] if isinstance(segments[position + 1], int) else {}

        if isinstance(current, dict):
            key = str(segment)
            if last:
                current[key] = value
                return
            if not isinstance(current.get(key), dict | list):
                current[key] = next_container
            current = current[key]
        elif isinstance(current, list) and isinstance(segment, int):
            if segment > len(current):
                raise ValidationError(
                    f"Index {segment} out of range in context path: {path}"
                )
            if segment == len(current):
                current.append(value if last else next_container)
            elif last:
                current[segment] = value
            elif not isinstance(current[segment], dict | list):
                current[segment] = next_container
            if last:
                return
            current = current[segment]
        else:
            raise ValidationError(f"Cannot use key {segment!r} on a list at context path: {path}")


def delete_path(data: dict[str, Any], path: str) -> bool:
    """Remove the value at ``path``. Returns True if something was removed."""
    segments = parse_path(path)
    parent = get_path(data, ".".join(str(s) for s in segments[:-1])) if len(segments) > 1 else data
    leaf = segments[-1]
    if isinstance(parent, dict) and str(leaf) in parent:
        del parent[str(leaf)]
        return True
    if isinstance(parent, list) and isinstance(leaf, int) and leaf < len(parent):
        parent.pop(leaf)
        return True
    return False


def deep_merge(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``source`` into a copy of ``target``.

    Nested dicts merge; every other value in ``source`` replaces the
    target's value.
    """
    merged = copy.deepcopy(target)
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def nesting_depth(value: Any, level: int = 0) -> int:
    """Depth of the deepest container inside ``value``."""
    if isinstance(value, dict):
        return max((nesting_depth(v, level + 1) for v in value.values()), default=level + 1)
    if isinstance(value, list):
        return max((nesting_depth(v, level + 1) for v in value), default=level + 1)
    return level
