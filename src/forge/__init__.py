"""objectforge kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps, canonical_loads, to_plain
from .schema_hash import is_schema_hash, schema_hash

__all__ = [
    "CanonicalJsonTypeError",
    "canonical_dumps",
    "canonical_loads",
    "is_schema_hash",
    "schema_hash",
    "to_plain",
]
