"""Field deletion helpers: refuse while a field is still referenced."""

from __future__ import annotations

import copy
import logging

from app.diagnostics import issue
from app.lookups import collection_key
from app.schema_model import Schema
from formula_eval import ExpressionEvalError, expression_fields
from visibility_eval import condition_fields, is_empty


logger = logging.getLogger("forge.fields")


def _expression_refs(text: str | None) -> set[str]:
    if not text:
        return set()
    try:
        return expression_fields(text)
    except ExpressionEvalError:
        return set()


def _condition_refs(obj, field_api: str) -> list[str]:
    paths = []
    for fdef in obj.fields:
        if fdef.api_name == field_api:
            continue
        if field_api in condition_fields(fdef.visible_if):
            paths.append(f"fields.{fdef.api_name}.visibleIf")
        if field_api in _expression_refs(fdef.formula_expr):
            paths.append(f"fields.{fdef.api_name}.formulaExpr")
        if fdef.controlling_field == field_api:
            paths.append(f"fields.{fdef.api_name}.controllingField")
    for layout in obj.page_layouts:
        for tab in layout.tabs:
            for section in tab.sections:
                if field_api in condition_fields(section.visible_if):
                    paths.append(f"pageLayouts.{layout.id}.{tab.label}.{section.label}.visibleIf")
    for rule in obj.validation_rules:
        if field_api in _expression_refs(rule.condition):
            paths.append(f"validationRules.{rule.name or rule.id}")
    return paths


def check_field_delete(schema: Schema, object_api: str, field_api: str, store) -> dict:
    errors: list[dict] = []
    warnings: list[dict] = []
    obj = schema.get_object(object_api)
    if obj is None:
        errors.append(issue("OBJECT_NOT_FOUND", f"Unknown object: {object_api}", "object"))
        return {"ok": False, "errors": errors, "warnings": warnings}
    if obj.get_field(field_api) is None:
        errors.append(issue("FIELD_NOT_FOUND", f"Unknown field: {field_api}", "field"))
        return {"ok": False, "errors": errors, "warnings": warnings}

    layout_paths = [
        f"pageLayouts.{layout.id}.{tab.label}.{section.label}"
        for layout in obj.page_layouts
        for tab, section, lf in layout.walk()
        if lf.api_name == field_api
    ]
    if layout_paths:
        errors.append(
            issue("FIELD_IN_LAYOUT", "Field is placed on page layouts", field_api, {"layouts": list(dict.fromkeys(layout_paths))})
        )

    records = store.get(collection_key(obj.api_name))
    record_count = sum(1 for r in records if not is_empty(r.get(field_api)))
    if record_count:
        errors.append(issue("FIELD_HAS_VALUES", "Stored records still hold values for this field", field_api, {"record_count": record_count}))

    refs = _condition_refs(obj, field_api)
    if refs:
        errors.append(issue("FIELD_REFERENCED_BY_CONDITION", "Conditions or expressions depend on this field", field_api, {"references": refs}))

    for other in schema.objects:
        for fdef in other.fields:
            if other.api_name != obj.api_name and (fdef.rollup or {}).get("targetField") == field_api and (fdef.rollup or {}).get("relatedObject") == obj.api_name:
                warnings.append(issue("FIELD_USED_BY_ROLLUP", f"Roll-up {other.api_name}.{fdef.api_name} summarizes this field", field_api))
    return {"ok": not errors, "errors": errors, "warnings": warnings}


def delete_field(
    schema: Schema,
    object_api: str,
    field_api: str,
    store,
    force: bool = False,
    actor: dict | None = None,
) -> dict:
    """Remove a field from a copy of the schema.

    Blocked while the field is referenced unless ``force`` is set, in which
    case it is stripped from layouts and stored records first. Dangling
    condition references are reported as warnings and left in place.
    """
    check = check_field_delete(schema, object_api, field_api, store)
    blocking = [e for e in check["errors"] if e["code"] not in ("FIELD_IN_LAYOUT", "FIELD_HAS_VALUES", "FIELD_REFERENCED_BY_CONDITION")]
    if blocking or (check["errors"] and not force):
        return {"ok": False, "errors": check["errors"], "warnings": check["warnings"], "schema": None}

    updated = copy.deepcopy(schema)
    obj = updated.get_object(object_api)
    obj.fields = [f for f in obj.fields if f.api_name != field_api]
    for layout in obj.page_layouts:
        for tab in layout.tabs:
            for section in tab.sections:
                section.fields = [lf for lf in section.fields if lf.api_name != field_api]

    key = collection_key(obj.api_name)
    stripped = 0
    with store.lock(key):
        records = store.get(key)
        for record in records:
            if field_api in record:
                record.pop(field_api)
                stripped += 1
        if stripped:
            store.put(key, records)

    warnings = list(check["warnings"])
    warnings += [dict(e, code=f"{e['code']}_FORCED") for e in check["errors"] if e["code"] == "FIELD_REFERENCED_BY_CONDITION"]
    actor_id = actor.get("id") if isinstance(actor, dict) else actor
    logger.info("field_deleted object=%s field=%s forced=%s records=%s actor=%s", object_api, field_api, force, stripped, actor_id)
    return {"ok": True, "errors": [], "warnings": warnings, "schema": updated}
