"""Schema invariant checks."""

from __future__ import annotations

from typing import Any, Dict, List, Tuple

from app.field_types import LOOKUP_TYPES, PICKLIST_TYPES, FieldType, to_number
from app.layout_composer import compose
from app.schema_model import ObjectDef, Schema
from formula_eval import validate_expression
from visibility_eval import MalformedCondition, parse_condition


Issue = Dict[str, Any]


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _check_condition(condition: Any, path: str, warnings: list[Issue]) -> None:
    if condition is None:
        return
    try:
        parse_condition(condition)
    except MalformedCondition as exc:
        warnings.append(_issue(exc.code, exc.message, f"{path}{(exc.path or '$')[1:]}"))


def _validate_fields(obj: ObjectDef, path: str, object_names: set[str], errors: list[Issue], warnings: list[Issue]) -> None:
    seen: set[str] = set()
    for idx, fdef in enumerate(obj.fields):
        fpath = f"{path}.fields[{idx}]"
        if not fdef.api_name:
            errors.append(_issue("SCHEMA_FIELD_API_NAME_MISSING", "field apiName is required", fpath))
            continue
        if fdef.api_name in seen:
            errors.append(_issue("SCHEMA_DUPLICATE_FIELD", f"Duplicate field apiName: {fdef.api_name}", fpath))
        seen.add(fdef.api_name)
        if not isinstance(fdef.type, FieldType):
            errors.append(_issue("SCHEMA_UNKNOWN_FIELD_TYPE", f"Unknown field type: {fdef.type}", f"{fpath}.type"))
            continue
        if fdef.type in PICKLIST_TYPES and not fdef.picklist_values:
            errors.append(_issue("SCHEMA_PICKLIST_VALUES_MISSING", "picklistValues required for picklist fields", f"{fpath}.picklistValues"))
        if fdef.type in LOOKUP_TYPES:
            if not fdef.lookup_object:
                errors.append(_issue("SCHEMA_LOOKUP_TARGET_MISSING", "lookupObject required for lookup fields", f"{fpath}.lookupObject"))
            elif fdef.type == FieldType.LOOKUP and fdef.lookup_object not in object_names:
                warnings.append(
                    _issue("SCHEMA_LOOKUP_TARGET_UNKNOWN", f"lookupObject not in schema: {fdef.lookup_object}", f"{fpath}.lookupObject")
                )
        for key, raw in fdef.bound_errors.items():
            errors.append(_issue("SCHEMA_RANGE_INVALID", f"{key} must be a number", f"{fpath}.{key}", {"value": raw}))
        low, high = to_number(fdef.min), to_number(fdef.max)
        if low is not None and high is not None and low > high:
            errors.append(_issue("SCHEMA_RANGE_INVALID", "min must not exceed max", fpath))
        shortest, longest = to_number(fdef.min_length), to_number(fdef.max_length)
        if shortest is not None and longest is not None and shortest > longest:
            errors.append(_issue("SCHEMA_RANGE_INVALID", "minLength must not exceed maxLength", fpath))
        if fdef.type == FieldType.FORMULA and fdef.formula_expr:
            for item in validate_expression(fdef.formula_expr):
                warnings.append(_issue("MALFORMED_CONDITION", item["message"], f"{fpath}.formulaExpr", {"expression_code": item["code"]}))
        _check_condition(fdef.visible_if, f"{fpath}.visibleIf", warnings)


def _validate_layouts(obj: ObjectDef, path: str, errors: list[Issue], warnings: list[Issue]) -> None:
    known = obj.field_lookup()
    layout_ids: set[str] = set()
    for lidx, layout in enumerate(obj.page_layouts):
        lpath = f"{path}.pageLayouts[{lidx}]"
        if layout.id in layout_ids:
            errors.append(_issue("SCHEMA_DUPLICATE_LAYOUT", f"Duplicate layout id: {layout.id}", lpath))
        layout_ids.add(layout.id)
        for tidx, tab in enumerate(layout.tabs):
            for sidx, section in enumerate(tab.sections):
                spath = f"{lpath}.tabs[{tidx}].sections[{sidx}]"
                if not isinstance(section.columns, int) or not 1 <= section.columns <= 3:
                    errors.append(_issue("SCHEMA_SECTION_COLUMNS_INVALID", "columns must be 1, 2 or 3", f"{spath}.columns"))
                _check_condition(section.visible_if, f"{spath}.visibleIf", warnings)
                for fidx, lf in enumerate(section.fields):
                    if lf.api_name not in known:
                        warnings.append(_issue("UNKNOWN_FIELD", f"Layout field not defined on object: {lf.api_name}", f"{spath}.fields[{fidx}]"))
        for grid in compose(layout):
            for cell in grid.collisions:
                errors.append(
                    _issue(
                        "SCHEMA_LAYOUT_CELL_COLLISION",
                        f"{cell.field.api_name} shares row {cell.row}, column {cell.column}",
                        f"{lpath}.{grid.tab_label}.{grid.section_label}",
                        {"row": cell.row, "column": cell.column, "apiName": cell.field.api_name},
                    )
                )


def validate_schema(schema: Schema) -> Tuple[List[Issue], List[Issue]]:
    """Return ``(errors, warnings)`` for the whole schema."""
    errors: list[Issue] = []
    warnings: list[Issue] = []
    object_names = set(schema.object_names())
    seen: set[str] = set()
    for oidx, obj in enumerate(schema.objects):
        path = f"objects[{oidx}]"
        if not obj.api_name:
            errors.append(_issue("SCHEMA_OBJECT_API_NAME_MISSING", "object apiName is required", path))
            continue
        if obj.api_name in seen:
            errors.append(_issue("SCHEMA_DUPLICATE_OBJECT", f"Duplicate object apiName: {obj.api_name}", path))
        seen.add(obj.api_name)
        _validate_fields(obj, path, object_names, errors, warnings)
        _validate_layouts(obj, path, errors, warnings)
        layout_ids = {layout.id for layout in obj.page_layouts}
        for ridx, record_type in enumerate(obj.record_types):
            if record_type.page_layout_id and record_type.page_layout_id not in layout_ids:
                errors.append(
                    _issue(
                        "SCHEMA_RECORD_TYPE_LAYOUT_UNKNOWN",
                        f"Record type layout not found: {record_type.page_layout_id}",
                        f"{path}.recordTypes[{ridx}].pageLayoutId",
                    )
                )
        if obj.default_record_type_id and obj.get_record_type(obj.default_record_type_id) is None:
            errors.append(
                _issue("SCHEMA_DEFAULT_RECORD_TYPE_UNKNOWN", f"Default record type not found: {obj.default_record_type_id}", f"{path}.defaultRecordTypeId")
            )
        for vidx, rule in enumerate(obj.validation_rules):
            for item in validate_expression(rule.condition):
                warnings.append(_issue("MALFORMED_CONDITION", item["message"], f"{path}.validationRules[{vidx}].condition", {"expression_code": item["code"]}))
    return errors, warnings


def validate_schema_raw(raw: dict) -> Tuple[Schema, List[Issue], List[Issue]]:
    schema = Schema.from_dict(raw)
    errors, warnings = validate_schema(schema)
    return schema, errors, warnings
