"""In-memory versioned schema snapshots keyed by content hash."""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from app.schema_model import Schema
from app.schema_validate import validate_schema
from forge.canonical_json import canonical_loads
from forge.schema_hash import schema_hash


logger = logging.getLogger("forge.schema")

Issue = Dict[str, Any]


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _content(schema: Schema) -> dict:
    data = schema.to_dict()
    data.pop("version", None)
    data.pop("updatedAt", None)
    return data


def load_schema_file(path: str) -> Schema:
    with open(path, "r", encoding="utf-8") as handle:
        return Schema.from_dict(canonical_loads(handle.read()))


class SchemaStore:
    def __init__(self) -> None:
        self._snapshots: Dict[str, dict] = {}
        self._head: str | None = None
        self._audit: List[dict] = []

    def head_hash(self) -> str | None:
        return self._head

    def get_head(self) -> Schema | None:
        if self._head is None:
            return None
        return self.get(self._head)

    def get(self, hash_value: str) -> Schema:
        record = self._snapshots.get(hash_value)
        if record is None:
            raise KeyError("Snapshot not found")
        return Schema.from_dict(copy.deepcopy(record["schema"]))

    def history(self) -> list[dict]:
        return list(self._audit)

    def _record_audit(self, action: str, from_hash: str | None, to_hash: str | None, actor: dict | None, reason: str | None) -> str:
        audit_id = str(uuid.uuid4())
        self._audit.insert(
            0,
            {
                "audit_id": audit_id,
                "action": action,
                "from_hash": from_hash,
                "to_hash": to_hash,
                "actor": actor,
                "reason": reason,
                "at": _now(),
            },
        )
        return audit_id

    def save(self, schema: Schema, actor: dict | None = None, reason: str = "save") -> dict:
        errors, warnings = validate_schema(schema)
        if errors:
            logger.info("schema_rejected errors=%s", len(errors))
            return {"ok": False, "errors": errors, "warnings": warnings, "from_hash": self._head, "to_hash": None, "audit_id": None}
        new_hash = schema_hash(_content(schema))
        if new_hash == self._head:
            warnings.append(_issue("SCHEMA_UNCHANGED", "schema matches the current head", None))
            return {"ok": True, "errors": [], "warnings": warnings, "from_hash": new_hash, "to_hash": new_hash, "audit_id": None}
        head = self._snapshots.get(self._head) if self._head else None
        data = copy.deepcopy(schema.to_dict())
        data["version"] = (head["schema"].get("version", 0) + 1) if head else max(schema.version, 1)
        data["updatedAt"] = _now()
        self._snapshots[new_hash] = {"schema": data, "created_at": data["updatedAt"], "created_by": actor, "reason": reason}
        from_hash = self._head
        self._head = new_hash
        audit_id = self._record_audit("save", from_hash, new_hash, actor, reason)
        logger.info("schema_saved from=%s to=%s version=%s", from_hash, new_hash, data["version"])
        return {"ok": True, "errors": [], "warnings": warnings, "from_hash": from_hash, "to_hash": new_hash, "audit_id": audit_id}

    def rollback(self, to_hash: str, actor: dict | None = None, reason: str = "rollback") -> dict:
        if to_hash not in self._snapshots:
            errors = [_issue("ROLLBACK_UNKNOWN_HASH", "hash not found", "to_hash")]
            return {"ok": False, "errors": errors, "warnings": [], "from_hash": self._head, "to_hash": None, "audit_id": None}
        from_hash = self._head
        self._head = to_hash
        audit_id = self._record_audit("rollback", from_hash, to_hash, actor, reason)
        logger.info("schema_rollback from=%s to=%s", from_hash, to_hash)
        return {"ok": True, "errors": [], "warnings": [], "from_hash": from_hash, "to_hash": to_hash, "audit_id": audit_id}
