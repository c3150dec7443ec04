"""Best-effort object size estimation for cache telemetry.

The estimate walks the reachable object graph iteratively and sums rough
primitive sizes. It is advisory only: the cache reports it and warns when a
configured ceiling is crossed, but never evicts based on it.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel

STR_BYTES_PER_CHAR = 2
NUMBER_BYTES = 8
BOOL_BYTES = 4


def _children(value: Any) -> list[Any]:
    """Return the values reachable from a container-like object."""

    if isinstance(value, Mapping):
        children: list[Any] = []
        for key, item in value.items():
            children.append(key)
            children.append(item)
        return children
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    if isinstance(value, BaseModel):
        return [value.model_dump()]
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return [getattr(value, field.name) for field in dataclasses.fields(value)]
    if hasattr(value, "__dict__"):
        return list(vars(value).values())
    slots = getattr(type(value), "__slots__", ())
    if isinstance(slots, str):
        slots = (slots,)
    return [getattr(value, name) for name in slots if hasattr(value, name)]


def estimate_size(value: Any) -> int:
    """Estimate the in-memory footprint of ``value`` in bytes.

    Strings count 2 bytes per character, numbers 8, booleans 4 and raw bytes
    1 per byte. Containers contribute the size of what they hold. Objects
    already visited are skipped, so cyclic graphs terminate.

    Args:
        value: Any Python object.

    Returns:
        Estimated size in bytes.
    """

    # visited objects stay referenced so ids of temporaries are never reused
    visited: dict[int, Any] = {}
    stack: list[Any] = [value]
    total = 0

    while stack:
        current = stack.pop()

        if current is None:
            continue
        # bool must be checked before int (bool is an int subclass)
        if isinstance(current, bool):
            total += BOOL_BYTES
            continue
        if isinstance(current, (int, float, complex)):
            total += NUMBER_BYTES
            continue
        if isinstance(current, str):
            total += len(current) * STR_BYTES_PER_CHAR
            continue
        if isinstance(current, (bytes, bytearray, memoryview)):
            total += len(current)
            continue
        if callable(current) or isinstance(current, type):
            continue

        marker = id(current)
        if marker in visited:
            continue
        visited[marker] = current
        stack.extend(_children(current))

    return total
