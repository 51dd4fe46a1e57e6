"""Content hashing for schema snapshots and report specs."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_dumps


def schema_hash(schema_obj: Any) -> str:
    """Return the ``sha256:`` content hash of a schema (or any JSON-able object)."""
    data = canonical_dumps(schema_obj).encode("utf-8")
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def is_schema_hash(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("sha256:") and len(value) == 71
