"""Validation engine for layout submissions."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, Mapping

from app.diagnostics import Issue, issue
from app.field_types import ErrorKind, FieldType, to_number, type_spec
from app.schema_model import FieldDef, ObjectDef, PageLayout
from formula_eval import ExpressionEvalError, evaluate_rule
from visibility_eval import evaluate, is_empty


logger = logging.getLogger("forge.validation")

DiagnosticHook = Callable[[Issue], None]

_FORMAT_MESSAGES = {
    FieldType.EMAIL: "Invalid email format",
    FieldType.URL: "Invalid URL format",
    FieldType.PHONE: "Invalid phone format",
    FieldType.NUMBER: "Must be a valid number",
    FieldType.CURRENCY: "Must be a valid number",
    FieldType.PERCENT: "Must be a valid number",
    FieldType.ROLLUP_SUMMARY: "Must be a valid number",
    FieldType.DATE: "Must be a valid date (YYYY-MM-DD)",
    FieldType.DATETIME: "Must be a valid date and time",
    FieldType.TIME: "Must be a valid time (HH:MM)",
    FieldType.PICKLIST: "Select a valid option",
    FieldType.MULTI_PICKLIST: "Select valid options",
    FieldType.GEOLOCATION: "Invalid coordinates",
}


def field_map(fields: Any) -> Dict[str, FieldDef]:
    """Accept an ObjectDef, a mapping keyed by api name, or an iterable of FieldDefs."""
    if isinstance(fields, ObjectDef):
        return fields.field_lookup()
    if isinstance(fields, Mapping):
        return dict(fields)
    if fields is None:
        return {}
    return {f.api_name: f for f in fields if isinstance(f, FieldDef)}


def _same(left: Any, right: Any) -> bool:
    if is_empty(left) and is_empty(right):
        return True
    return left == right


def _range_error(fdef: FieldDef, value: Any) -> ErrorKind | None:
    spec = type_spec(fdef.type)
    low, high = to_number(fdef.min), to_number(fdef.max)
    if spec is not None and spec.numeric and (low is not None or high is not None):
        number = to_number(value)
        if number is not None:
            if low is not None and number < low:
                return ErrorKind.OUT_OF_RANGE
            if high is not None and number > high:
                return ErrorKind.OUT_OF_RANGE
    if isinstance(value, str):
        shortest, longest = to_number(fdef.min_length), to_number(fdef.max_length)
        if shortest is not None and len(value) < shortest:
            return ErrorKind.OUT_OF_RANGE
        if longest is not None and len(value) > longest:
            return ErrorKind.OUT_OF_RANGE
    return None


def check_field(fdef: FieldDef, value: Any, original: Mapping | None = None, present: bool = True) -> ErrorKind | None:
    """First violation for one field, in priority order, or ``None``."""
    auto = fdef.auto_generated
    if original is not None and present and (fdef.read_only or auto):
        if not _same(value, original.get(fdef.api_name)):
            return ErrorKind.READ_ONLY_VIOLATION
    if is_empty(value):
        if fdef.required and not auto:
            return ErrorKind.MISSING_REQUIRED_FIELD
        return None
    spec = type_spec(fdef.type)
    if spec is not None:
        kind = spec.validate(fdef, value)
        if kind is not None:
            return kind
    return _range_error(fdef, value)


def _walk_visible(
    layout: PageLayout,
    record: dict,
    fields: Dict[str, FieldDef],
    on_diagnostic: DiagnosticHook | None,
) -> Iterable[FieldDef]:
    seen: set[str] = set()
    tabs = sorted(layout.tabs, key=lambda t: t.order)
    for tab in tabs:
        for section in sorted(tab.sections, key=lambda s: s.order):
            if not evaluate(section.visible_if, record, on_diagnostic):
                continue
            for layout_field in section.fields:
                api_name = layout_field.api_name
                if api_name in seen:
                    continue
                seen.add(api_name)
                fdef = fields.get(api_name)
                if fdef is None:
                    if on_diagnostic is not None:
                        on_diagnostic(
                            issue(
                                "UNKNOWN_FIELD",
                                f"Layout field not defined on object: {api_name}",
                                f"{layout.id}.{section.label}.{api_name}",
                            )
                        )
                    continue
                if not evaluate(fdef.visible_if, record, on_diagnostic):
                    continue
                yield fdef


def validate(
    layout: PageLayout,
    record: dict,
    fields: Any,
    on_diagnostic: DiagnosticHook | None = None,
    original: Mapping | None = None,
) -> Dict[str, ErrorKind]:
    """Classify every visible, on-layout field of ``record``.

    Returns ``{api_name: ErrorKind}``; the record is committable iff the map is
    empty. ``original`` switches on read-only enforcement against the stored
    values (pass ``{}`` on create). Never raises and never mutates ``record``.
    """
    record = record if isinstance(record, dict) else {}
    errors: Dict[str, ErrorKind] = {}
    if layout is None:
        return errors
    lookup = field_map(fields)
    for fdef in _walk_visible(layout, record, lookup, on_diagnostic):
        kind = check_field(fdef, record.get(fdef.api_name), original, fdef.api_name in record)
        if kind is not None:
            errors[fdef.api_name] = kind
    if errors:
        logger.info("validation_failed layout=%s fields=%s", layout.id, ",".join(sorted(errors)))
    return errors


def message_for(fdef: FieldDef, kind: ErrorKind, value: Any = None) -> str:
    label = fdef.label or fdef.api_name
    if kind == ErrorKind.MISSING_REQUIRED_FIELD:
        return f"{label} is required"
    if kind == ErrorKind.READ_ONLY_VIOLATION:
        return f"{label} is read-only"
    if kind == ErrorKind.INVALID_FORMAT:
        return _FORMAT_MESSAGES.get(fdef.field_type, f"Invalid {label} value")
    if kind == ErrorKind.OUT_OF_RANGE:
        number = to_number(value)
        spec = type_spec(fdef.type)
        low, high = to_number(fdef.min), to_number(fdef.max)
        if number is not None and spec is not None and spec.numeric:
            if low is not None and number < low:
                return f"Value must be at least {low:g}"
            if high is not None and number > high:
                return f"Value must be at most {high:g}"
        shortest, longest = to_number(fdef.min_length), to_number(fdef.max_length)
        if isinstance(value, str) and shortest is not None and len(value) < shortest:
            return f"Must be at least {shortest:g} characters"
        return f"Must be at most {longest:g} characters" if longest is not None else f"{label} is out of range"
    return f"{label} is invalid"


def validate_messages(
    layout: PageLayout,
    record: dict,
    fields: Any,
    on_diagnostic: DiagnosticHook | None = None,
    original: Mapping | None = None,
) -> Dict[str, str]:
    """Same walk as ``validate`` but rendered as inline form messages."""
    lookup = field_map(fields)
    errors = validate(layout, record, lookup, on_diagnostic, original)
    record = record if isinstance(record, dict) else {}
    return {api: message_for(lookup[api], kind, record.get(api)) for api, kind in errors.items()}


def evaluate_validation_rules(
    object_def: ObjectDef,
    record: dict,
    on_diagnostic: DiagnosticHook | None = None,
) -> Dict[str, dict]:
    """Run active validation rules; a rule whose condition holds is a violation.

    Returns ``{rule_name: {"kind": ValidationRuleFailed, "message": ...}}``.
    """
    failures: Dict[str, dict] = {}
    for rule in object_def.validation_rules:
        if not rule.active or not rule.condition:
            continue
        key = rule.name or rule.id
        try:
            violated = evaluate_rule(rule.condition, record)
        except ExpressionEvalError as exc:
            logger.warning("validation_rule_malformed object=%s rule=%s code=%s", object_def.api_name, key, exc.code)
            if on_diagnostic is not None:
                on_diagnostic(
                    issue(
                        "MALFORMED_CONDITION",
                        f"Validation rule {key} could not be evaluated: {exc.message}",
                        f"{object_def.api_name}.validationRules.{key}",
                        {"expression_code": exc.code},
                    )
                )
            continue
        if violated:
            failures[key] = {
                "kind": ErrorKind.VALIDATION_RULE_FAILED,
                "message": rule.error_message or f"Validation rule {key} failed",
            }
    return failures
