"""Report query engine: project, filter, sort and group records."""

from __future__ import annotations

import functools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from app.diagnostics import Issue, issue
from app.field_types import to_number
from app.schema_model import Schema
from visibility_eval import is_empty


logger = logging.getLogger("forge.reports")

DiagnosticHook = Callable[[Issue], None]

UNASSIGNED = "Unassigned"
FILTER_OPERATORS = {"equals", "contains", "greaterThan", "lessThan"}
REPORT_FORMATS = {"tabular", "summary", "matrix"}
AGGREGATE_FIELD_HINTS = ("value", "amount", "price", "budget", "estimatedValue", "totalAmount", "probability")
MONEY_DISPLAY_HINTS = ("value", "Amount", "price", "budget")


@dataclass
class FilterCondition:
    field: str
    operator: str = "equals"
    value: Any = None

    @classmethod
    def from_dict(cls, data: dict) -> "FilterCondition":
        return cls(field=data.get("field") or "", operator=data.get("operator") or "equals", value=data.get("value"))

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator, "value": self.value}

    @property
    def is_noop(self) -> bool:
        return not self.field or self.value is None or self.value == ""


@dataclass
class ReportSpec:
    object_type: str
    fields: List[str] = field(default_factory=list)
    filters: List[FilterCondition] = field(default_factory=list)
    group_by: Optional[str] = None
    sort_by: Optional[str] = None
    sort_order: str = "asc"
    format: str = "tabular"
    id: Optional[str] = None
    name: Optional[str] = None
    version: int = 1

    @classmethod
    def from_dict(cls, data: dict) -> "ReportSpec":
        sort_order = (data.get("sortOrder") or "asc").lower()
        report_format = data.get("format") or "tabular"
        return cls(
            object_type=data.get("objectType") or "",
            fields=[f for f in data.get("fields") or [] if isinstance(f, str)],
            filters=[FilterCondition.from_dict(f) for f in data.get("filters") or [] if isinstance(f, dict)],
            group_by=data.get("groupBy") or None,
            sort_by=data.get("sortBy") or None,
            sort_order=sort_order if sort_order in ("asc", "desc") else "asc",
            format=report_format if report_format in REPORT_FORMATS else "tabular",
            id=data.get("id"),
            name=data.get("name"),
            version=data.get("version") or 1,
        )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "objectType": self.object_type,
            "format": self.format,
            "fields": list(self.fields),
            "filters": [f.to_dict() for f in self.filters],
            "groupBy": self.group_by,
            "sortBy": self.sort_by,
            "sortOrder": self.sort_order,
            "version": self.version,
        }
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class RunResult:
    rows: List[dict] = field(default_factory=list)
    groups: Optional[Dict[str, List[dict]]] = None
    warnings: List[Issue] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"rows": self.rows, "groups": self.groups, "warnings": self.warnings}


def strip_prefix(field_name: str, object_type: str) -> str:
    prefix = f"{object_type}__"
    return field_name[len(prefix):] if object_type and field_name.startswith(prefix) else field_name


def read_field(record: dict, field_name: str, object_type: str) -> Any:
    """Exact name first, then the name without the ``Object__`` prefix."""
    if field_name in record and record[field_name] is not None:
        return record[field_name]
    return record.get(strip_prefix(field_name, object_type))


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _matches(condition: FilterCondition, value: Any) -> bool:
    op = condition.operator
    if op == "equals":
        return value is not None and _text(value).lower() == _text(condition.value).lower()
    if op == "contains":
        return value is not None and _text(condition.value).lower() in _text(value).lower()
    left, right = to_number(value), to_number(condition.value)
    if left is None or right is None:
        return False
    return left > right if op == "greaterThan" else left < right


def compare_values(left: Any, right: Any) -> int:
    left_num, right_num = to_number(left), to_number(right)
    if left_num is not None and right_num is not None:
        return (left_num > right_num) - (left_num < right_num)
    a, b = _text(left).casefold(), _text(right).casefold()
    return (a > b) - (a < b)


def _sort_key(sort_by: str, descending: bool):
    def _cmp(left: tuple, right: tuple) -> int:
        a, b = left[1].get(sort_by), right[1].get(sort_by)
        if is_empty(a) and is_empty(b):
            return 0
        if is_empty(a):
            return 1
        if is_empty(b):
            return -1
        result = compare_values(a, b)
        return -result if descending else result

    return functools.cmp_to_key(_cmp)


def group_key(value: Any) -> str:
    return UNASSIGNED if is_empty(value) else _text(value)


def _schema_warnings(spec: ReportSpec, schema: Schema | None) -> List[Issue]:
    if schema is None:
        return []
    obj = schema.get_object(spec.object_type)
    if obj is None:
        return [issue("UNKNOWN_OBJECT", f"Unknown object type: {spec.object_type}", "objectType")]
    known = set(obj.field_lookup()) | {"id"}
    refs = [(f"fields[{i}]", name) for i, name in enumerate(spec.fields)]
    refs += [(f"filters[{i}].field", c.field) for i, c in enumerate(spec.filters) if c.field]
    refs += [(key, value) for key, value in (("sortBy", spec.sort_by), ("groupBy", spec.group_by)) if value]
    warnings = []
    for path, name in refs:
        if strip_prefix(name, spec.object_type) not in known and name not in known:
            warnings.append(issue("UNKNOWN_FIELD", f"Field not on {obj.api_name}: {name}", path, {"field": name}))
    return warnings


def run(
    spec: ReportSpec | dict,
    records: List[dict],
    schema: Schema | None = None,
    on_diagnostic: DiagnosticHook | None = None,
) -> RunResult:
    """Projection, filtering, sorting and grouping, in that order.

    Pure: the input records are never modified and the same spec over the
    same records always yields the same result.
    """
    if isinstance(spec, dict):
        spec = ReportSpec.from_dict(spec)
    warnings = _schema_warnings(spec, schema)
    for idx, condition in enumerate(spec.filters):
        if condition.is_noop:
            continue
        if condition.operator not in FILTER_OPERATORS:
            warnings.append(
                issue("UNKNOWN_OPERATOR", f"Unsupported filter operator ignored: {condition.operator}", condition.field, {"operator": condition.operator})
            )
        elif condition.field not in spec.fields:
            warnings.append(
                issue(
                    "FILTER_FIELD_NOT_PROJECTED",
                    f"Filter field is not a report column and matches nothing: {condition.field}",
                    f"filters[{idx}].field",
                    {"field": condition.field},
                )
            )
    if on_diagnostic is not None:
        for item in warnings:
            on_diagnostic(item)

    active = [c for c in spec.filters if not c.is_noop and c.operator in FILTER_OPERATORS]
    extra = [name for name in [spec.sort_by, spec.group_by] if name and name not in spec.fields]
    pairs = []
    for record in records or []:
        if not isinstance(record, dict):
            continue
        row = {name: read_field(record, name, spec.object_type) for name in spec.fields}
        if not all(_matches(c, row.get(c.field)) for c in active):
            continue
        keys = {name: read_field(record, name, spec.object_type) for name in extra}
        pairs.append((row, {**row, **keys}))

    if spec.sort_by:
        pairs.sort(key=_sort_key(spec.sort_by, spec.sort_order == "desc"))

    rows = [row for row, _ in pairs]
    groups = None
    if spec.group_by:
        groups = {}
        for row, full in pairs:
            groups.setdefault(group_key(full.get(spec.group_by)), []).append(row)
    logger.info(
        "report_run object=%s input=%s rows=%s groups=%s warnings=%s",
        spec.object_type,
        len(records or []),
        len(rows),
        len(groups) if groups is not None else None,
        len(warnings),
    )
    return RunResult(rows=rows, groups=groups, warnings=warnings)


def is_aggregate_field(field_name: str) -> bool:
    """Money-like name heuristic deciding which fields get totals."""
    lowered = field_name.lower()
    return any(hint.lower() in lowered for hint in AGGREGATE_FIELD_HINTS)


def summarize(rows: List[dict], field_name: str) -> dict | None:
    if not is_aggregate_field(field_name):
        return None
    values = [to_number(row.get(field_name)) or 0.0 for row in rows]
    total = sum(values)
    return {
        "count": len(rows),
        "sum": total,
        "average": total / len(values) if values else 0.0,
    }


def group_summaries(result: RunResult, fields: List[str]) -> Dict[str, dict | None]:
    """Per-group summary of the first aggregate-eligible field."""
    target = next((f for f in fields if is_aggregate_field(f)), None)
    if result.groups is None:
        return {}
    return {key: summarize(rows, target) if target else None for key, rows in result.groups.items()}


def _locale_number(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.3f}".rstrip("0").rstrip(".")


def format_value(field_name: str, value: Any) -> str:
    if value is None:
        return "N/A"
    if isinstance(value, dict):
        if any(key in value for key in ("street", "city", "postalCode")):
            parts = [value.get(k) for k in ("street", "city", "state", "postalCode", "country") if value.get(k)]
            return ", ".join(str(p) for p in parts) if parts else "N/A"
        if any(key in value for key in ("firstName", "lastName", "Contact__name_firstName")):
            parts = [
                value.get("salutation") or value.get("Contact__name_salutation"),
                value.get("firstName") or value.get("Contact__name_firstName"),
                value.get("lastName") or value.get("Contact__name_lastName"),
            ]
            parts = [p for p in parts if p]
            return " ".join(str(p) for p in parts) if parts else "N/A"
        return json.dumps(value)
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (int, float)) and any(hint in field_name for hint in MONEY_DISPLAY_HINTS):
        return f"${_locale_number(value)}"
    return _text(value)
