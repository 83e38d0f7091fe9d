"""Type aliases shared across the archive packages.

Kept dependency-free so any module can import it without cycles.
"""

# [nav:section public-api]

from __future__ import annotations

__all__ = [
    "JsonPrimitive",
    "JsonValue",
]


type JsonPrimitive = str | int | float | bool | None

# Anything json.dumps accepts without a default hook; used for log extras and
# Problem Details extensions.
type JsonValue = JsonPrimitive | dict[str, JsonValue] | list[JsonValue]
