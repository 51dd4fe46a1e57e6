"""Deterministic canonical JSON for schema snapshots and condition trees."""

from __future__ import annotations

import json
import math
from typing import Any


class CanonicalJsonTypeError(TypeError):
    """Raised when a value has no canonical JSON form."""


def to_plain(obj: Any, path: str = "$") -> Any:
    """Convert schema objects, tuples and nested containers to plain JSON data.

    Objects exposing ``to_dict()`` (the schema dataclasses) are expanded first.
    """
    if hasattr(obj, "to_dict") and callable(obj.to_dict):
        return to_plain(obj.to_dict(), path)
    if isinstance(obj, dict):
        out = {}
        for key, value in obj.items():
            if not isinstance(key, str):
                raise CanonicalJsonTypeError(
                    f"Unsupported key type at {path}: {type(key).__name__}"
                )
            out[key] = to_plain(value, f"{path}.{key}")
        return out
    if isinstance(obj, (list, tuple)):
        return [to_plain(item, f"{path}[{idx}]") for idx, item in enumerate(obj)]
    if obj is None or isinstance(obj, (str, bool, int)):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError(f"Non-finite float at {path}: {obj!r}")
        return obj
    raise CanonicalJsonTypeError(f"Unsupported type at {path}: {type(obj).__name__}")


def canonical_dumps(obj: Any) -> str:
    """Serialize to canonical JSON: sorted keys, no whitespace, UTF-8 kept."""
    return json.dumps(
        to_plain(obj),
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        allow_nan=False,
    )


def canonical_loads(text: str) -> Any:
    if not isinstance(text, (str, bytes, bytearray)):
        raise CanonicalJsonTypeError(f"Expected JSON text, got {type(text).__name__}")
    return json.loads(text)
