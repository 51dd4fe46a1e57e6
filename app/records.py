"""All-or-nothing record commit on top of the validation engine."""

from __future__ import annotations

import copy
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from app.diagnostics import Issue, issue
from app.field_types import ErrorKind, FieldType, default_value, join_multi, to_number
from app.layout_composer import default_layout
from app.lookups import collection_key
from app.records_validation import evaluate_validation_rules, message_for, validate
from app.schema_model import SYSTEM_RECORD_KEYS, ObjectDef, PageLayout, Schema
from formula_eval import ExpressionEvalError, eval_formula


logger = logging.getLogger("forge.records")

DiagnosticHook = Callable[[Issue], None]

_MUTABLE_SYSTEM_KEYS = {"recordTypeId", "pageLayoutId"}
_AUTO_TOKEN_RE = re.compile(r"\{(0+|YYYY|YY|MM|DD)\}")
_SEQ_TOKEN_RE = re.compile(r"\{0+\}")


@dataclass
class RecordCommitError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


@dataclass
class RecordValidationError(RecordCommitError):
    errors: Dict[str, ErrorKind] = field(default_factory=dict)
    messages: Dict[str, str] = field(default_factory=dict)
    rule_failures: Dict[str, dict] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "errors": {k: v.value for k, v in self.errors.items()},
            "messages": dict(self.messages),
            "rule_failures": {k: {"kind": v["kind"].value, "message": v["message"]} for k, v in self.rule_failures.items()},
        }


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _actor_id(actor: dict | str | None) -> str | None:
    if isinstance(actor, dict):
        return actor.get("id") or actor.get("user_id") or actor.get("email")
    return actor


def _object(schema: Schema, object_api: str) -> ObjectDef:
    obj = schema.get_object(object_api)
    if obj is None:
        raise RecordCommitError("OBJECT_NOT_FOUND", f"Unknown object: {object_api}", "object")
    return obj


def _resolve_layout(obj: ObjectDef, record: dict, layout_id: str | None, layout_type: str) -> PageLayout:
    if layout_id:
        layout = obj.get_layout(layout_id)
        if layout is None:
            raise RecordCommitError("LAYOUT_NOT_FOUND", "Invalid page layout for this object", "pageLayoutId")
        return layout
    return obj.layout_for_record(record, layout_type) or default_layout(obj, layout_type)


def _user_values(obj: ObjectDef, data: dict, on_diagnostic: DiagnosticHook | None) -> dict:
    known = obj.field_lookup()
    values = {}
    for key, value in (data or {}).items():
        if key in known or key in _MUTABLE_SYSTEM_KEYS:
            values[key] = copy.deepcopy(value)
        elif key not in SYSTEM_RECORD_KEYS and on_diagnostic is not None:
            on_diagnostic(issue("UNKNOWN_FIELD", f"Field not on {obj.api_name}: {key}", key))
    return values


def _raise_if_invalid(obj: ObjectDef, layout: PageLayout, record: dict, errors: dict, rule_failures: dict) -> None:
    if not errors and not rule_failures:
        return
    lookup = obj.field_lookup()
    messages = {api: message_for(lookup[api], kind, record.get(api)) for api, kind in errors.items()}
    messages.update({name: failure["message"] for name, failure in rule_failures.items()})
    logger.info(
        "record_rejected object=%s layout=%s fields=%s rules=%s",
        obj.api_name,
        layout.id,
        ",".join(sorted(errors)),
        ",".join(sorted(rule_failures)),
    )
    raise RecordValidationError(
        code="RECORD_INVALID",
        message="Record failed validation",
        errors=errors,
        messages=messages,
        rule_failures=rule_failures,
    )


def _normalize(obj: ObjectDef, record: dict) -> None:
    for fdef in obj.fields:
        if fdef.field_type == FieldType.MULTI_PICKLIST and isinstance(record.get(fdef.api_name), (list, tuple)):
            record[fdef.api_name] = join_multi(record[fdef.api_name])


def _auto_number_pattern(display_format: str) -> re.Pattern:
    parts = []
    pos = 0
    named = False
    for match in _AUTO_TOKEN_RE.finditer(display_format):
        parts.append(re.escape(display_format[pos:match.start()]))
        token = match.group(1)
        if token.startswith("0"):
            parts.append(r"\d+" if named else r"(?P<seq>\d+)")
            named = True
        else:
            parts.append(r"\d{%d}" % len(token))
        pos = match.end()
    parts.append(re.escape(display_format[pos:]))
    return re.compile("^" + "".join(parts) + "$")


def format_auto_number(display_format: str, sequence: int, today: datetime | None = None) -> str:
    """``A-{00000}`` with 7 -> ``A-00007``; ``{YYYY}``/``{YY}``/``{MM}``/``{DD}`` stamp the date."""
    today = today or datetime.now(timezone.utc)

    def _sub(match: re.Match) -> str:
        token = match.group(1)
        if token.startswith("0"):
            return str(sequence).zfill(len(token))
        if token == "YYYY":
            return f"{today.year:04d}"
        if token == "YY":
            return f"{today.year % 100:02d}"
        if token == "MM":
            return f"{today.month:02d}"
        return f"{today.day:02d}"

    return _AUTO_TOKEN_RE.sub(_sub, _with_sequence(display_format))


def _with_sequence(display_format: str | None) -> str:
    display_format = display_format or "{0}"
    return display_format if _SEQ_TOKEN_RE.search(display_format) else display_format + "{0}"


def next_auto_number(fdef, existing: List[dict]) -> str:
    config = fdef.auto_number or {}
    display_format = _with_sequence(config.get("displayFormat"))
    starting = int(to_number(config.get("startingNumber")) or 1)
    pattern = _auto_number_pattern(display_format)
    highest = None
    for record in existing:
        value = record.get(fdef.api_name)
        match = pattern.match(value) if isinstance(value, str) else None
        if match and match.groupdict().get("seq"):
            seq = int(match.group("seq"))
            highest = seq if highest is None else max(highest, seq)
    sequence = starting if highest is None else max(starting, highest + 1)
    return format_auto_number(display_format, sequence)


def _compute_rollup(fdef, record: dict, store) -> Any:
    config = fdef.rollup or {}
    related = config.get("relatedObject")
    link = config.get("relationshipField")
    if not related or not link:
        return None
    children = [r for r in store.get(collection_key(related)) if str(r.get(link)) == str(record.get("id"))]
    aggregate = str(config.get("aggregate") or "COUNT").upper()
    if aggregate == "COUNT":
        return len(children)
    values = [n for n in (to_number(c.get(config.get("targetField"))) for c in children) if n is not None]
    if not values:
        return 0 if aggregate == "SUM" else None
    if aggregate == "SUM":
        return sum(values)
    if aggregate == "MIN":
        return min(values)
    if aggregate == "MAX":
        return max(values)
    return sum(values) / len(values)


def _compute_derived(obj: ObjectDef, record: dict, store, on_diagnostic: DiagnosticHook | None) -> None:
    for fdef in obj.fields:
        if fdef.field_type == FieldType.ROLLUP_SUMMARY:
            record[fdef.api_name] = _compute_rollup(fdef, record, store)
    for fdef in obj.fields:
        if fdef.field_type != FieldType.FORMULA or not fdef.formula_expr:
            continue
        try:
            record[fdef.api_name] = eval_formula(fdef.formula_expr, record)
        except ExpressionEvalError as exc:
            record[fdef.api_name] = None
            logger.warning("formula_failed object=%s field=%s code=%s", obj.api_name, fdef.api_name, exc.code)
            if on_diagnostic is not None:
                on_diagnostic(issue(exc.code, exc.message, f"{obj.api_name}.{fdef.api_name}"))


def create_record(
    schema: Schema,
    object_api: str,
    data: dict,
    store,
    actor: dict | str | None = None,
    layout_id: str | None = None,
    record_type_id: str | None = None,
    on_diagnostic: DiagnosticHook | None = None,
) -> dict:
    """Validate a create-layout submission and persist it, or raise without writing."""
    obj = _object(schema, object_api)
    record = _user_values(obj, data, on_diagnostic)
    if record_type_id:
        record["recordTypeId"] = record_type_id
    layout = _resolve_layout(obj, record, layout_id or record.get("pageLayoutId"), "create")
    defaults = {}
    for fdef in obj.fields:
        if fdef.auto_generated:
            continue
        value = default_value(fdef)
        if value is not None:
            defaults[fdef.api_name] = value
            record.setdefault(fdef.api_name, copy.deepcopy(value))
    errors = validate(layout, record, obj, on_diagnostic, original=defaults)
    rule_failures = evaluate_validation_rules(obj, record, on_diagnostic)
    _raise_if_invalid(obj, layout, record, errors, rule_failures)

    _normalize(obj, record)
    now = _now()
    actor_id = _actor_id(actor)
    record.update(
        {
            "id": str(uuid.uuid4()),
            "createdBy": actor_id,
            "createdAt": now,
            "lastModifiedBy": actor_id,
            "lastModifiedAt": now,
        }
    )
    key = collection_key(obj.api_name)
    with store.lock(key):
        existing = None
        for fdef in obj.fields:
            if fdef.field_type == FieldType.AUTO_NUMBER:
                existing = existing if existing is not None else store.get(key)
                record[fdef.api_name] = next_auto_number(fdef, existing)
        _compute_derived(obj, record, store, on_diagnostic)
        saved = store.upsert(key, record)
    logger.info("record_created object=%s id=%s actor=%s", obj.api_name, record["id"], actor_id)
    return saved


def update_record(
    schema: Schema,
    object_api: str,
    record_id: str,
    changes: dict,
    store,
    actor: dict | str | None = None,
    on_diagnostic: DiagnosticHook | None = None,
) -> dict:
    """Validate field-level changes against the stored record; write all or nothing."""
    obj = _object(schema, object_api)
    key = collection_key(obj.api_name)
    with store.lock(key):
        existing = store.get_record(key, record_id)
        if existing is None:
            raise RecordCommitError("RECORD_NOT_FOUND", f"{obj.api_name} record not found: {record_id}", "id")
        merged = copy.deepcopy(existing)
        merged.update(_user_values(obj, changes, on_diagnostic))
        layout = _resolve_layout(obj, merged, merged.get("pageLayoutId"), "edit")
        errors = validate(layout, merged, obj, on_diagnostic, original=existing)
        rule_failures = evaluate_validation_rules(obj, merged, on_diagnostic)
        _raise_if_invalid(obj, layout, merged, errors, rule_failures)

        _normalize(obj, merged)
        merged["lastModifiedBy"] = _actor_id(actor)
        merged["lastModifiedAt"] = _now()
        _compute_derived(obj, merged, store, on_diagnostic)
        saved = store.upsert(key, merged)
    logger.info("record_updated object=%s id=%s actor=%s", obj.api_name, record_id, _actor_id(actor))
    return saved


def delete_record(schema: Schema, object_api: str, record_id: str, store, actor: dict | str | None = None) -> None:
    obj = _object(schema, object_api)
    key = collection_key(obj.api_name)
    if not store.delete(key, record_id):
        raise RecordCommitError("RECORD_NOT_FOUND", f"{obj.api_name} record not found: {record_id}", "id")
    logger.info("record_deleted object=%s id=%s actor=%s", obj.api_name, record_id, _actor_id(actor))
