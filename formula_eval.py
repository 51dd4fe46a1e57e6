"""String expression evaluator for validation rules and formula fields.

Expressions read record fields by api name, e.g.
``amount > 1000 && stage == "Closed Won"`` or ``CONCAT(firstName, " ", lastName)``.
Nothing is passed to Python's ``eval``; text is tokenized and parsed into the
same ``{"literal"} / {"var"} / {"op"} / {"call"}`` node shapes used elsewhere.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List


@dataclass
class ExpressionEvalError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


class ExpressionSyntaxError(ExpressionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("EXPR_SYNTAX_ERROR", message, path)


class ExpressionDepthError(ExpressionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("EXPR_DEPTH_EXCEEDED", message, path)


class UnknownFunctionError(ExpressionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("EXPR_UNKNOWN_FUNCTION", message, path)


class ExprTypeError(ExpressionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("EXPR_TYPE_ERROR", message, path)


DEPTH_LIMIT = 32
_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<string>"(?:[^"\\]|\\.)*")
      | (?P<number>\d+(?:\.\d+)?)
      | (?P<op>&&|\|\||==|!=|>=|<=|[<>+\-*/%!])
      | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
      | (?P<punct>[()\[\],])
    )""",
    re.VERBOSE,
)
_WORD_OPS = {"IN", "INCLUDES", "CONTAINS", "STARTS_WITH"}
_RELATIONAL = {">", "<", ">=", "<="} | _WORD_OPS


def _tokenize(text: str) -> List[tuple]:
    tokens: List[tuple] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise ExpressionSyntaxError(f"Unexpected character {text[pos:pos + 1]!r}", f"col {pos}")
        kind = match.lastgroup
        value = match.group(kind)
        if kind == "name":
            upper = value.upper()
            if upper in _WORD_OPS or upper in {"AND", "OR"}:
                kind, value = "op", {"AND": "&&", "OR": "||"}.get(upper, upper)
            elif upper == "NOT":
                kind, value = "op", "NOT"
        tokens.append((kind, value, match.start(kind)))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0
        self.depth = 0

    def _peek(self) -> tuple | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _peek_value(self) -> str | None:
        tok = self._peek()
        return tok[1] if tok and tok[0] in ("op", "punct") else None

    def _advance(self) -> tuple:
        tok = self._peek()
        if tok is None:
            raise ExpressionSyntaxError("Unexpected end of expression", f"col {len(self.text)}")
        self.pos += 1
        return tok

    def _expect(self, value: str) -> None:
        tok = self._peek()
        if tok is None or tok[1] != value or tok[0] not in ("op", "punct"):
            got = tok[1] if tok else "end of expression"
            raise ExpressionSyntaxError(f"Expected {value!r}, got {got!r}", f"col {tok[2] if tok else len(self.text)}")
        self.pos += 1

    def parse(self) -> dict:
        node = self._or()
        tok = self._peek()
        if tok is not None:
            raise ExpressionSyntaxError(f"Unexpected token {tok[1]!r}", f"col {tok[2]}")
        return node

    def _binary(self, ops: set, next_level) -> dict:
        left = next_level()
        while self._peek_value() in ops:
            op = self._advance()[1]
            right = next_level()
            left = {"op": op, "left": left, "right": right}
        return left

    def _or(self) -> dict:
        self.depth += 1
        if self.depth > DEPTH_LIMIT:
            raise ExpressionDepthError("Depth limit exceeded", "$")
        try:
            return self._binary({"||"}, self._and)
        finally:
            self.depth -= 1

    def _and(self) -> dict:
        return self._binary({"&&"}, self._equality)

    def _equality(self) -> dict:
        return self._binary({"==", "!="}, self._relational)

    def _relational(self) -> dict:
        return self._binary(_RELATIONAL, self._additive)

    def _additive(self) -> dict:
        return self._binary({"+", "-"}, self._multiplicative)

    def _multiplicative(self) -> dict:
        return self._binary({"*", "/", "%"}, self._unary)

    def _unary(self) -> dict:
        value = self._peek_value()
        if value in ("NOT", "!"):
            self._advance()
            return {"call": "NOT", "args": [self._unary()]}
        if value == "-":
            self._advance()
            return {"op": "neg", "left": self._unary()}
        return self._primary()

    def _primary(self) -> dict:
        tok = self._advance()
        kind, value, col = tok
        if kind == "punct" and value == "(":
            node = self._or()
            self._expect(")")
            return node
        if kind == "punct" and value == "[":
            items = self._args("]")
            return {"array": items}
        if kind == "string":
            body = value[1:-1]
            return {"literal": re.sub(r"\\(.)", r"\1", body)}
        if kind == "number":
            return {"literal": float(value) if "." in value else int(value)}
        if kind == "name":
            if value in ("true", "false"):
                return {"literal": value == "true"}
            if value == "null":
                return {"literal": None}
            if self._peek_value() == "(":
                self._advance()
                name = value.upper()
                if name not in FUNCTIONS:
                    raise UnknownFunctionError(f"Unknown function: {value}", f"col {col}")
                return {"call": name, "args": self._args(")")}
            return {"var": value}
        raise ExpressionSyntaxError(f"Unexpected token {value!r}", f"col {col}")

    def _args(self, closing: str) -> List[dict]:
        args: List[dict] = []
        while self._peek_value() != closing:
            args.append(self._or())
            if self._peek_value() == ",":
                self._advance()
            elif self._peek_value() != closing:
                tok = self._peek()
                got = tok[1] if tok else "end of expression"
                raise ExpressionSyntaxError(f"Expected ',' or {closing!r}, got {got!r}", f"col {tok[2] if tok else len(self.text)}")
        self._advance()
        return args


@lru_cache(maxsize=512)
def _parse_cached(text: str) -> dict:
    return _Parser(text).parse()


def parse_expression(text: str) -> dict:
    if not isinstance(text, str) or not text.strip():
        raise ExpressionSyntaxError("Expression must be a non-empty string", "$")
    return _parse_cached(text)


def _num(value: Any, path: str) -> float:
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
    raise ExprTypeError(f"Expected number, got {type(value).__name__}", path)


def _parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


def _round(value: Any, digits: Any = 0) -> float:
    return round(_num(value, "ROUND"), int(_num(digits, "ROUND")))


def _date_part(part: str):
    def _fn(value: Any) -> int | None:
        parsed = _parse_date(value)
        return getattr(parsed, part) if parsed else None

    return _fn


def _avg(*args: Any) -> float:
    nums = [_num(a, "AVG") for a in args]
    return sum(nums) / len(nums) if nums else 0


FUNCTIONS: Dict[str, Any] = {
    "CONCAT": lambda *args: "".join("" if a is None else _text(a) for a in args),
    "LEN": lambda value=None: len("" if value is None else _text(value)),
    "UPPER": lambda value=None: ("" if value is None else _text(value)).upper(),
    "LOWER": lambda value=None: ("" if value is None else _text(value)).lower(),
    "TRIM": lambda value=None: ("" if value is None else _text(value)).strip(),
    "ABS": lambda value=None: abs(_num(value, "ABS")),
    "ROUND": _round,
    "MAX": lambda *args: max(_num(a, "MAX") for a in args) if args else None,
    "MIN": lambda *args: min(_num(a, "MIN") for a in args) if args else None,
    "SUM": lambda *args: sum(_num(a, "SUM") for a in args),
    "AVG": _avg,
    "NOW": lambda: datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    "TODAY": lambda: date.today().isoformat(),
    "YEAR": _date_part("year"),
    "MONTH": _date_part("month"),
    "DAY": _date_part("day"),
    "ISNULL": lambda value=None: value is None,
    "ISBLANK": lambda value=None: value is None or _text(value).strip() == "",
    "NOT": lambda value=None: not value,
    "IF": lambda cond=None, then=None, otherwise=None: then if cond else otherwise,
}


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _equal(left: Any, right: Any) -> bool:
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _ordered(op: str, left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    numeric = (int, float)
    if isinstance(left, numeric) and isinstance(right, numeric) and not isinstance(left, bool) and not isinstance(right, bool):
        pass
    elif isinstance(left, str) and isinstance(right, str):
        pass
    else:
        return False
    if op == ">":
        return left > right
    if op == "<":
        return left < right
    if op == ">=":
        return left >= right
    return left <= right


def _eval(node: dict, ctx: dict, path: str) -> Any:
    if "literal" in node:
        return node["literal"]
    if "var" in node:
        return ctx.get(node["var"]) if isinstance(ctx, dict) else None
    if "array" in node:
        return [_eval(item, ctx, f"{path}[{idx}]") for idx, item in enumerate(node["array"])]
    if "call" in node:
        name = node["call"]
        if name == "IF":
            args = node["args"]
            cond = _eval(args[0], ctx, f"{path}.IF[0]") if args else None
            branch = 1 if cond else 2
            return _eval(args[branch], ctx, f"{path}.IF[{branch}]") if len(args) > branch else None
        values = [_eval(arg, ctx, f"{path}.{name}[{idx}]") for idx, arg in enumerate(node["args"])]
        try:
            return FUNCTIONS[name](*values)
        except TypeError as exc:
            raise ExprTypeError(f"{name}: {exc}", path) from exc

    op = node["op"]
    if op == "neg":
        return -_num(_eval(node["left"], ctx, path), path)
    if op == "&&":
        return bool(_eval(node["left"], ctx, path)) and bool(_eval(node["right"], ctx, path))
    if op == "||":
        return bool(_eval(node["left"], ctx, path)) or bool(_eval(node["right"], ctx, path))

    left = _eval(node["left"], ctx, f"{path}.left")
    right = _eval(node["right"], ctx, f"{path}.right")
    if op == "==":
        return _equal(left, right)
    if op == "!=":
        return not _equal(left, right)
    if op in (">", "<", ">=", "<="):
        return _ordered(op, left, right)
    if op == "IN":
        return isinstance(right, list) and left in right
    if op == "INCLUDES":
        values = left.split(";") if isinstance(left, str) else left
        return isinstance(values, list) and right in values
    if op == "CONTAINS":
        return isinstance(left, str) and isinstance(right, str) and right in left
    if op == "STARTS_WITH":
        return isinstance(left, str) and isinstance(right, str) and left.startswith(right)
    if op == "+" and (isinstance(left, str) or isinstance(right, str)):
        return ("" if left is None else _text(left)) + ("" if right is None else _text(right))
    a = _num(left, f"{path}.left")
    b = _num(right, f"{path}.right")
    if op == "+":
        result = a + b
    elif op == "-":
        result = a - b
    elif op == "*":
        result = a * b
    else:
        if b == 0:
            raise ExprTypeError("Division by zero", path)
        result = a / b if op == "/" else math.fmod(a, b)
    if isinstance(result, float) and not math.isfinite(result):
        raise ExprTypeError("Non-finite number", path)
    return result


def eval_formula(text: str, record: dict | None) -> Any:
    """Evaluate an expression string against a record's field values."""
    return _eval(parse_expression(text), record or {}, "$")


def evaluate_rule(text: str, record: dict | None) -> bool:
    return bool(eval_formula(text, record))


def expression_fields(text: str) -> set[str]:
    fields: set[str] = set()

    def _walk(node: Any) -> None:
        if not isinstance(node, dict):
            return
        if "var" in node:
            fields.add(node["var"])
        for key in ("left", "right"):
            if key in node:
                _walk(node[key])
        for item in node.get("args") or node.get("array") or []:
            _walk(item)

    _walk(parse_expression(text))
    return fields


def validate_expression(text: str) -> list[dict]:
    try:
        parse_expression(text)
    except ExpressionEvalError as exc:
        return [{"code": exc.code, "message": exc.message, "path": exc.path, "detail": {"expression": text}}]
    return []
