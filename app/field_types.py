"""Field type catalog: one dispatch entry per supported field kind."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Callable, Dict
from urllib.parse import urlparse


class FieldType(str, Enum):
    TEXT = "Text"
    TEXT_AREA = "TextArea"
    LONG_TEXT_AREA = "LongTextArea"
    RICH_TEXT_AREA = "RichTextArea"
    ENCRYPTED_TEXT = "EncryptedText"
    EMAIL = "Email"
    PHONE = "Phone"
    URL = "URL"
    NUMBER = "Number"
    CURRENCY = "Currency"
    PERCENT = "Percent"
    DATE = "Date"
    DATETIME = "DateTime"
    TIME = "Time"
    CHECKBOX = "Checkbox"
    PICKLIST = "Picklist"
    MULTI_PICKLIST = "MultiPicklist"
    ADDRESS = "Address"
    GEOLOCATION = "Geolocation"
    LOOKUP = "Lookup"
    EXTERNAL_LOOKUP = "ExternalLookup"
    AUTO_NUMBER = "AutoNumber"
    FORMULA = "Formula"
    ROLLUP_SUMMARY = "RollupSummary"


class ErrorKind(str, Enum):
    MISSING_REQUIRED_FIELD = "MissingRequiredField"
    INVALID_FORMAT = "InvalidFormat"
    OUT_OF_RANGE = "OutOfRange"
    READ_ONLY_VIOLATION = "ReadOnlyViolation"
    VALIDATION_RULE_FAILED = "ValidationRuleFailed"
    UNRESOLVED_LOOKUP = "UnresolvedLookup"
    UNKNOWN_FIELD = "UnknownField"
    MALFORMED_CONDITION = "MalformedCondition"


_ALIASES = {
    "longtext": FieldType.LONG_TEXT_AREA,
    "richtext": FieldType.RICH_TEXT_AREA,
    "multiselect": FieldType.MULTI_PICKLIST,
    "boolean": FieldType.CHECKBOX,
    "bool": FieldType.CHECKBOX,
    "string": FieldType.TEXT,
}
_BY_LOWER = {ft.value.lower(): ft for ft in FieldType}

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[\d\s\-+()]+$")
TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d(:[0-5]\d(\.\d+)?)?$")
ADDRESS_KEYS = ("street", "city", "state", "postalCode", "country")
_HOST_SCHEMES = {"http", "https", "ftp", "ws", "wss"}


def parse_field_type(raw: Any) -> FieldType | None:
    if isinstance(raw, FieldType):
        return raw
    if not isinstance(raw, str):
        return None
    key = raw.strip().lower()
    return _BY_LOWER.get(key) or _ALIASES.get(key)


def to_number(value: Any) -> float | None:
    """Coerce like a form input would: numbers and numeric strings, finite only."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text or "_" in text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def split_multi(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if v not in (None, "")]
    return [part for part in str(value).split(";") if part != ""]


def join_multi(value: Any) -> str:
    return ";".join(split_multi(value))


def _picklist(field: Any) -> list:
    return list(getattr(field, "picklist_values", None) or [])


# -- validators: return an ErrorKind for a non-empty value, or None ---------

def _accept(field: Any, value: Any) -> ErrorKind | None:
    return None


def _text(field: Any, value: Any) -> ErrorKind | None:
    return None if isinstance(value, (str, int, float)) and not isinstance(value, bool) else ErrorKind.INVALID_FORMAT


def _email(field: Any, value: Any) -> ErrorKind | None:
    return None if isinstance(value, str) and EMAIL_RE.match(value) else ErrorKind.INVALID_FORMAT


def _phone(field: Any, value: Any) -> ErrorKind | None:
    return None if isinstance(value, str) and PHONE_RE.match(value) else ErrorKind.INVALID_FORMAT


def _url(field: Any, value: Any) -> ErrorKind | None:
    if not isinstance(value, str) or any(ch.isspace() for ch in value.strip()):
        return ErrorKind.INVALID_FORMAT
    parsed = urlparse(value.strip())
    if not parsed.scheme or not re.match(r"^[A-Za-z][A-Za-z0-9+.\-]*$", parsed.scheme):
        return ErrorKind.INVALID_FORMAT
    if parsed.scheme.lower() in _HOST_SCHEMES and not parsed.netloc:
        return ErrorKind.INVALID_FORMAT
    if not parsed.netloc and not parsed.path:
        return ErrorKind.INVALID_FORMAT
    return None


def _number(field: Any, value: Any) -> ErrorKind | None:
    return None if to_number(value) is not None else ErrorKind.INVALID_FORMAT


def _date(field: Any, value: Any) -> ErrorKind | None:
    if isinstance(value, date) and not isinstance(value, datetime):
        return None
    if not isinstance(value, str):
        return ErrorKind.INVALID_FORMAT
    try:
        date.fromisoformat(value)
    except ValueError:
        return ErrorKind.INVALID_FORMAT
    return None


def _datetime(field: Any, value: Any) -> ErrorKind | None:
    if isinstance(value, datetime):
        return None
    if not isinstance(value, str):
        return ErrorKind.INVALID_FORMAT
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return ErrorKind.INVALID_FORMAT
    return None


def _time(field: Any, value: Any) -> ErrorKind | None:
    if isinstance(value, time):
        return None
    return None if isinstance(value, str) and TIME_RE.match(value) else ErrorKind.INVALID_FORMAT


def _checkbox(field: Any, value: Any) -> ErrorKind | None:
    if isinstance(value, bool) or value in ("true", "false"):
        return None
    return ErrorKind.INVALID_FORMAT


def _picklist_value(field: Any, value: Any) -> ErrorKind | None:
    allowed = _picklist(field)
    if not isinstance(value, str):
        return ErrorKind.INVALID_FORMAT
    return None if not allowed or value in allowed else ErrorKind.INVALID_FORMAT


def _multi_picklist(field: Any, value: Any) -> ErrorKind | None:
    if not isinstance(value, (str, list, tuple)):
        return ErrorKind.INVALID_FORMAT
    allowed = _picklist(field)
    if allowed and any(item not in allowed for item in split_multi(value)):
        return ErrorKind.INVALID_FORMAT
    return None


def _address(field: Any, value: Any) -> ErrorKind | None:
    if not isinstance(value, dict) or any(key not in ADDRESS_KEYS for key in value):
        return ErrorKind.INVALID_FORMAT
    if any(v is not None and not isinstance(v, str) for v in value.values()):
        return ErrorKind.INVALID_FORMAT
    return None


def _geolocation(field: Any, value: Any) -> ErrorKind | None:
    if not isinstance(value, dict):
        return ErrorKind.INVALID_FORMAT
    lat = to_number(value.get("latitude"))
    lon = to_number(value.get("longitude"))
    if lat is None or lon is None or not -90 <= lat <= 90 or not -180 <= lon <= 180:
        return ErrorKind.INVALID_FORMAT
    return None


def _reference(field: Any, value: Any) -> ErrorKind | None:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return ErrorKind.INVALID_FORMAT
    return None


# -- defaults ---------------------------------------------------------------

def _default_none(field: Any) -> Any:
    return None


def _default_false(field: Any) -> Any:
    return False


def _default_empty_text(field: Any) -> Any:
    return ""


# -- display formatting -----------------------------------------------------

def _format_plain(field: Any, value: Any) -> str:
    return "" if value is None else str(value)


def _format_number(field: Any, value: Any) -> str:
    number = to_number(value)
    if number is None:
        return _format_plain(field, value)
    scale = getattr(field, "scale", None)
    if isinstance(scale, int) and scale >= 0:
        return f"{number:,.{scale}f}"
    return f"{number:,.0f}" if number.is_integer() else f"{number:,}"


def _format_currency(field: Any, value: Any) -> str:
    number = to_number(value)
    if number is None:
        return _format_plain(field, value)
    scale = getattr(field, "scale", None)
    digits = scale if isinstance(scale, int) and scale >= 0 else 2
    sign = "-" if number < 0 else ""
    return f"{sign}${abs(number):,.{digits}f}"


def _format_percent(field: Any, value: Any) -> str:
    number = to_number(value)
    if number is None:
        return _format_plain(field, value)
    text = f"{number:.0f}" if number.is_integer() else f"{number:g}"
    return f"{text}%"


def _format_checkbox(field: Any, value: Any) -> str:
    if value is None:
        return ""
    return "Yes" if value is True or value == "true" else "No"


def _format_multi(field: Any, value: Any) -> str:
    return ", ".join(split_multi(value))


def format_address(value: Any) -> str:
    if not isinstance(value, dict):
        return _format_plain(None, value)
    return ", ".join(str(value[key]) for key in ADDRESS_KEYS if value.get(key))


def _format_address(field: Any, value: Any) -> str:
    return format_address(value)


def _format_geolocation(field: Any, value: Any) -> str:
    if not isinstance(value, dict):
        return _format_plain(field, value)
    lat, lon = value.get("latitude"), value.get("longitude")
    if lat is None or lon is None:
        return ""
    return f"{lat}, {lon}"


def _format_encrypted(field: Any, value: Any) -> str:
    if value is None:
        return ""
    text = str(value)
    encryption = getattr(field, "encryption", None) or {}
    if encryption.get("masked", True):
        return "••••" + text[-4:]
    return text


@dataclass(frozen=True)
class FieldTypeSpec:
    field_type: FieldType
    label: str
    category: str
    storage: str
    icon: str
    validate: Callable[[Any, Any], ErrorKind | None]
    default_value: Callable[[Any], Any]
    format_for_display: Callable[[Any, Any], str]
    auto_generated: bool = False
    numeric: bool = False
    textual: bool = False


def _spec(ft: FieldType, label: str, category: str, storage: str, icon: str, validate, default=_default_none, fmt=_format_plain, **flags) -> FieldTypeSpec:
    return FieldTypeSpec(ft, label, category, storage, icon, validate, default, fmt, **flags)


FIELD_TYPES: Dict[FieldType, FieldTypeSpec] = {
    FieldType.TEXT: _spec(FieldType.TEXT, "Text", "Text", "scalar", "type", _text, textual=True),
    FieldType.TEXT_AREA: _spec(FieldType.TEXT_AREA, "Text Area", "Text", "scalar", "align-left", _text, textual=True),
    FieldType.LONG_TEXT_AREA: _spec(FieldType.LONG_TEXT_AREA, "Text Area (Long)", "Text", "scalar", "align-justify", _text, textual=True),
    FieldType.RICH_TEXT_AREA: _spec(FieldType.RICH_TEXT_AREA, "Text Area (Rich)", "Text", "scalar", "file-text", _text, textual=True),
    FieldType.ENCRYPTED_TEXT: _spec(FieldType.ENCRYPTED_TEXT, "Text (Encrypted)", "Text", "scalar", "lock", _text, fmt=_format_encrypted, textual=True),
    FieldType.EMAIL: _spec(FieldType.EMAIL, "Email", "Other", "scalar", "mail", _email, textual=True),
    FieldType.PHONE: _spec(FieldType.PHONE, "Phone", "Other", "scalar", "phone", _phone, textual=True),
    FieldType.URL: _spec(FieldType.URL, "URL", "Other", "scalar", "globe", _url, textual=True),
    FieldType.NUMBER: _spec(FieldType.NUMBER, "Number", "Number", "scalar", "hash", _number, fmt=_format_number, numeric=True),
    FieldType.CURRENCY: _spec(FieldType.CURRENCY, "Currency", "Number", "scalar", "dollar-sign", _number, fmt=_format_currency, numeric=True),
    FieldType.PERCENT: _spec(FieldType.PERCENT, "Percent", "Number", "scalar", "percent", _number, fmt=_format_percent, numeric=True),
    FieldType.DATE: _spec(FieldType.DATE, "Date", "Date/Time", "scalar", "calendar", _date),
    FieldType.DATETIME: _spec(FieldType.DATETIME, "Date/Time", "Date/Time", "scalar", "calendar-clock", _datetime),
    FieldType.TIME: _spec(FieldType.TIME, "Time", "Date/Time", "scalar", "clock", _time),
    FieldType.CHECKBOX: _spec(FieldType.CHECKBOX, "Checkbox", "Other", "scalar", "check-square", _checkbox, default=_default_false, fmt=_format_checkbox),
    FieldType.PICKLIST: _spec(FieldType.PICKLIST, "Picklist", "Selection", "scalar", "list", _picklist_value),
    FieldType.MULTI_PICKLIST: _spec(FieldType.MULTI_PICKLIST, "Multi-Select Picklist", "Selection", "set", "list-checks", _multi_picklist, default=_default_empty_text, fmt=_format_multi),
    FieldType.ADDRESS: _spec(FieldType.ADDRESS, "Address", "Other", "composite", "map", _address, fmt=_format_address),
    FieldType.GEOLOCATION: _spec(FieldType.GEOLOCATION, "Geolocation", "Other", "composite", "map-pin", _geolocation, fmt=_format_geolocation),
    FieldType.LOOKUP: _spec(FieldType.LOOKUP, "Lookup Relationship", "Relationship", "reference", "link", _reference),
    FieldType.EXTERNAL_LOOKUP: _spec(FieldType.EXTERNAL_LOOKUP, "External Lookup", "Relationship", "reference", "external-link", _reference),
    FieldType.AUTO_NUMBER: _spec(FieldType.AUTO_NUMBER, "Auto Number", "Advanced", "scalar", "hash", _accept, auto_generated=True),
    FieldType.FORMULA: _spec(FieldType.FORMULA, "Formula", "Advanced", "scalar", "function", _accept, auto_generated=True),
    FieldType.ROLLUP_SUMMARY: _spec(FieldType.ROLLUP_SUMMARY, "Roll-Up Summary", "Advanced", "scalar", "sigma", _accept, fmt=_format_number, auto_generated=True, numeric=True),
}

_missing = set(FieldType) - set(FIELD_TYPES)
if _missing:  # pragma: no cover - import-time guard
    raise RuntimeError(f"field types without a catalog entry: {sorted(ft.value for ft in _missing)}")

LOOKUP_TYPES = frozenset({FieldType.LOOKUP, FieldType.EXTERNAL_LOOKUP})
PICKLIST_TYPES = frozenset({FieldType.PICKLIST, FieldType.MULTI_PICKLIST})
AUTO_GENERATED_TYPES = frozenset(ft for ft, spec in FIELD_TYPES.items() if spec.auto_generated)


def type_spec(field_type: Any) -> FieldTypeSpec | None:
    parsed = parse_field_type(field_type)
    return FIELD_TYPES.get(parsed) if parsed else None


def is_auto_generated(field_type: Any) -> bool:
    return parse_field_type(field_type) in AUTO_GENERATED_TYPES


def format_for_display(field: Any, value: Any) -> str:
    spec = type_spec(getattr(field, "type", None))
    if spec is None:
        return _format_plain(field, value)
    return spec.format_for_display(field, value)


def default_value(field: Any) -> Any:
    declared = getattr(field, "default_value", None)
    if declared is not None:
        return declared
    spec = type_spec(getattr(field, "type", None))
    return spec.default_value(field) if spec else None
