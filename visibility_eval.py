"""Visibility condition evaluator for layout fields and sections.

A condition is either a leaf ``{"field", "operator", "value"}`` or a
combinator ``{"op": "AND" | "OR" | "NOT", "children": [...]}``. The legacy
``visibleIf`` shape (a list of ``{"left", "op", "right"}`` leaves joined by
AND) is accepted as well.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict

from forge.canonical_json import canonical_dumps, canonical_loads


logger = logging.getLogger("forge.visibility")

Issue = Dict[str, Any]
DiagnosticHook = Callable[[Issue], None]

DEPTH_LIMIT = 10
COMBINATORS = {"AND", "OR", "NOT"}
LEAF_OPERATORS = {
    "equals",
    "notEquals",
    "isEmpty",
    "isNotEmpty",
    "contains",
    "greaterThan",
    "lessThan",
    "greaterOrEqual",
    "lessOrEqual",
    "in",
    "startsWith",
}
UNARY_OPERATORS = {"isEmpty", "isNotEmpty"}
OPERATOR_ALIASES = {
    "==": "equals",
    "!=": "notEquals",
    ">": "greaterThan",
    "<": "lessThan",
    ">=": "greaterOrEqual",
    "<=": "lessOrEqual",
    "IN": "in",
    "INCLUDES": "contains",
    "CONTAINS": "contains",
    "STARTS_WITH": "startsWith",
    "eq": "equals",
    "neq": "notEquals",
    "not_equals": "notEquals",
    "is_empty": "isEmpty",
    "is_not_empty": "isNotEmpty",
    "greater_than": "greaterThan",
    "less_than": "lessThan",
    "greater_or_equal": "greaterOrEqual",
    "less_or_equal": "lessOrEqual",
    "starts_with": "startsWith",
}
OPERATOR_LABELS = {
    "equals": "equals",
    "notEquals": "not equals",
    "isEmpty": "is empty",
    "isNotEmpty": "is not empty",
    "contains": "contains",
    "greaterThan": "greater than",
    "lessThan": "less than",
    "greaterOrEqual": "greater than or equal",
    "lessOrEqual": "less than or equal",
    "in": "is in",
    "startsWith": "starts with",
}


@dataclass
class MalformedCondition(Exception):
    message: str
    path: str | None = None
    code: str = "MALFORMED_CONDITION"

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base

    def to_issue(self) -> Issue:
        return {"code": self.code, "message": self.message, "path": self.path, "detail": None}


def normalize_operator(operator: Any) -> str | None:
    if not isinstance(operator, str):
        return None
    if operator in LEAF_OPERATORS:
        return operator
    return OPERATOR_ALIASES.get(operator) or OPERATOR_ALIASES.get(operator.upper())


def _classify(node: Any, path: str) -> tuple:
    """Return ``("group", op, children)`` or ``("leaf", field, operator, value)``."""
    if isinstance(node, list):
        return ("group", "AND", node)
    if not isinstance(node, dict):
        raise MalformedCondition("Condition must be object or list", path)
    if "left" in node:
        field = node.get("left")
        operator = normalize_operator(node.get("op"))
        value = node.get("right")
    elif "field" in node or "operator" in node:
        field = node.get("field")
        operator = normalize_operator(node.get("operator"))
        value = node.get("value")
    else:
        op = node.get("op")
        if not isinstance(op, str) or op.upper() not in COMBINATORS:
            raise MalformedCondition(f"Unknown combinator: {op!r}", path)
        children = node.get("children", node.get("conditions"))
        if not isinstance(children, list):
            raise MalformedCondition("children must be list", f"{path}.children")
        op = op.upper()
        if op == "NOT" and len(children) != 1:
            raise MalformedCondition("NOT requires single child", f"{path}.children")
        return ("group", op, children)
    if not isinstance(field, str) or not field:
        raise MalformedCondition("Leaf requires a field name", f"{path}.field")
    if operator is None:
        raw = node.get("op") if "left" in node else node.get("operator")
        raise MalformedCondition(f"Unknown operator: {raw!r}", f"{path}.operator")
    return ("leaf", field, operator, value)


def parse_condition(raw: Any, depth_limit: int = DEPTH_LIMIT) -> dict | None:
    """Validate a condition tree and return its canonical plain-dict form.

    Raises ``MalformedCondition`` on the first problem found.
    """
    if raw is None:
        return None
    return _parse(raw, "$", 1, depth_limit)


def _parse(node: Any, path: str, depth: int, limit: int) -> dict:
    if depth > limit:
        raise MalformedCondition("Depth limit exceeded", path)
    kind = _classify(node, path)
    if kind[0] == "leaf":
        _, field, operator, value = kind
        leaf = {"field": field, "operator": operator}
        if operator not in UNARY_OPERATORS:
            leaf["value"] = value
        return leaf
    _, op, children = kind
    return {
        "op": op,
        "children": [
            _parse(child, f"{path}.children[{idx}]", depth + 1, limit)
            for idx, child in enumerate(children)
        ],
    }


def condition_to_json(condition: Any) -> str:
    return canonical_dumps(parse_condition(condition))


def condition_from_json(text: str) -> dict | None:
    return parse_condition(canonical_loads(text))


def condition_fields(condition: Any) -> set[str]:
    """Field names a condition reads; malformed nodes contribute nothing."""
    fields: set[str] = set()

    def _walk(node: Any, path: str, depth: int) -> None:
        if depth > DEPTH_LIMIT:
            return
        try:
            kind = _classify(node, path)
        except MalformedCondition:
            return
        if kind[0] == "leaf":
            fields.add(kind[1])
            return
        for idx, child in enumerate(kind[2]):
            _walk(child, f"{path}.children[{idx}]", depth + 1)

    if condition is not None:
        _walk(condition, "$", 1)
    return fields


def get_value(record: Any, field: str) -> Any:
    if not isinstance(record, dict):
        return None
    if field in record:
        return record.get(field)
    current: Any = record
    for part in field.split("."):
        if isinstance(current, dict) and part in current:
            current = current.get(part)
        else:
            return None
    return current


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _compare(left: Any, right: Any) -> int | None:
    if is_empty(left) or is_empty(right):
        return None
    left_num = _to_number(left)
    right_num = _to_number(right)
    if left_num is not None and right_num is not None:
        return (left_num > right_num) - (left_num < right_num)
    if isinstance(left, str) and isinstance(right, str):
        return (left > right) - (left < right)
    return None


def _values_of(value: Any) -> list:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, str) and ";" in value:
        return [part for part in value.split(";") if part != ""]
    return [value]


def _same(left: Any, right: Any) -> bool:
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _eval_leaf(field: str, operator: str, expected: Any, record: Any) -> bool:
    actual = get_value(record, field)
    if operator == "isEmpty":
        return is_empty(actual)
    if operator == "isNotEmpty":
        return not is_empty(actual)
    if operator == "equals":
        return not is_empty(actual) and _same(actual, expected)
    if operator == "notEquals":
        return not _same(actual, expected)
    if operator == "contains":
        if is_empty(actual):
            return False
        if isinstance(actual, str) and ";" not in actual:
            if isinstance(expected, (list, tuple)):
                return any(isinstance(e, str) and e in actual for e in expected)
            return isinstance(expected, str) and expected in actual
        values = _values_of(actual)
        if isinstance(expected, (list, tuple)):
            return any(e in values for e in expected)
        return expected in values
    if operator == "in":
        if not isinstance(expected, (list, tuple)) or is_empty(actual):
            return False
        return any(v in expected for v in _values_of(actual))
    if operator == "startsWith":
        return isinstance(actual, str) and isinstance(expected, str) and actual.startswith(expected)
    cmp = _compare(actual, expected)
    if cmp is None:
        return False
    if operator == "greaterThan":
        return cmp > 0
    if operator == "lessThan":
        return cmp < 0
    if operator == "greaterOrEqual":
        return cmp >= 0
    return cmp <= 0


def evaluate(
    condition: Any,
    record: Any,
    on_diagnostic: DiagnosticHook | None = None,
    depth_limit: int = DEPTH_LIMIT,
) -> bool:
    """Decide whether a field or section is shown for the given record snapshot.

    Absent conditions are visible. Malformed nodes are reported and treated
    as ``True``; this function never raises.
    """
    if condition is None:
        return True
    return _eval_node(condition, record if isinstance(record, dict) else {}, "$", 1, depth_limit, on_diagnostic)


def _report(exc: MalformedCondition, on_diagnostic: DiagnosticHook | None) -> None:
    logger.warning("visibility_malformed path=%s message=%s", exc.path, exc.message)
    if on_diagnostic is not None:
        on_diagnostic(exc.to_issue())


def _eval_node(node: Any, record: dict, path: str, depth: int, limit: int, on_diagnostic: DiagnosticHook | None) -> bool:
    try:
        if depth > limit:
            raise MalformedCondition("Depth limit exceeded", path)
        kind = _classify(node, path)
    except MalformedCondition as exc:
        _report(exc, on_diagnostic)
        return True
    if kind[0] == "leaf":
        _, field, operator, value = kind
        return _eval_leaf(field, operator, value, record)
    _, op, children = kind
    results = (
        _eval_node(child, record, f"{path}.children[{idx}]", depth + 1, limit, on_diagnostic)
        for idx, child in enumerate(children)
    )
    if op == "AND":
        return all(results)
    if op == "OR":
        return any(results)
    return not next(results)


def format_condition(condition: Any, labels: Dict[str, str] | None = None) -> str:
    """Human readable rendering, e.g. ``Status equals Active``."""
    labels = labels or {}
    try:
        node = parse_condition(condition)
    except MalformedCondition:
        return "(invalid condition)"
    if node is None:
        return "(always)"

    def _fmt(item: dict, nested: bool) -> str:
        if "field" in item:
            label = labels.get(item["field"], item["field"])
            text = f"{label} {OPERATOR_LABELS[item['operator']]}"
            if "value" in item:
                value = item["value"]
                shown = ", ".join(str(v) for v in value) if isinstance(value, list) else value
                text = f"{text} {shown}"
            return text
        if item["op"] == "NOT":
            return f"NOT ({_fmt(item['children'][0], False)})"
        inner = f" {item['op']} ".join(_fmt(child, True) for child in item["children"])
        return f"({inner})" if nested and len(item["children"]) > 1 else inner

    return _fmt(node, False)
