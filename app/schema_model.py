"""In-memory schema model: objects, fields, layouts, record types and rules.

The wire form is the camelCase JSON the schema store persists; ``from_dict``
accepts the legacy shapes too (fields keyed by api name, ``name`` instead of
``label`` on record types).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from app.field_types import AUTO_GENERATED_TYPES, FieldType, parse_field_type, to_number


SYSTEM_RECORD_KEYS = (
    "id",
    "recordTypeId",
    "pageLayoutId",
    "createdBy",
    "createdAt",
    "lastModifiedBy",
    "lastModifiedAt",
)


def _items(raw: Any, key_name: str) -> list[dict]:
    if isinstance(raw, list):
        return [item for item in raw if isinstance(item, dict)]
    if isinstance(raw, dict):
        out = []
        for key, value in raw.items():
            if isinstance(value, dict):
                item = dict(value)
                item.setdefault(key_name, key)
                out.append(item)
        return out
    return []


def _int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return default


def _bound(value: Any) -> int | float | None:
    number = to_number(value)
    if number is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return int(number) if number.is_integer() else number


def _length(value: Any) -> int | None:
    number = to_number(value)
    if number is None or not number.is_integer() or number < 0:
        return None
    return int(number)


def _compact(data: dict) -> dict:
    return {key: value for key, value in data.items() if value is not None}


@dataclass
class LayoutField:
    api_name: str
    order: int = 0
    column: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "LayoutField":
        return cls(
            api_name=data.get("apiName") or data.get("api_name") or "",
            order=_int(data.get("order")),
            column=_int(data.get("column")),
        )

    def to_dict(self) -> dict:
        return {"apiName": self.api_name, "order": self.order, "column": self.column}


@dataclass
class Section:
    label: str
    order: int = 0
    columns: int = 1
    fields: List[LayoutField] = field(default_factory=list)
    visible_if: Any = None
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Section":
        return cls(
            label=data.get("label") or "",
            order=_int(data.get("order")),
            columns=_int(data.get("columns"), 1),
            fields=[LayoutField.from_dict(f) for f in _items(data.get("fields"), "apiName")],
            visible_if=data.get("visibleIf"),
            id=data.get("id"),
        )

    def to_dict(self) -> dict:
        return _compact(
            {
                "id": self.id,
                "label": self.label,
                "order": self.order,
                "columns": self.columns,
                "fields": [f.to_dict() for f in self.fields],
                "visibleIf": self.visible_if,
            }
        )


@dataclass
class Tab:
    label: str
    order: int = 0
    sections: List[Section] = field(default_factory=list)
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Tab":
        return cls(
            label=data.get("label") or "",
            order=_int(data.get("order")),
            sections=[Section.from_dict(s) for s in _items(data.get("sections"), "id")],
            id=data.get("id"),
        )

    def to_dict(self) -> dict:
        return _compact(
            {
                "id": self.id,
                "label": self.label,
                "order": self.order,
                "sections": [s.to_dict() for s in self.sections],
            }
        )


@dataclass
class PageLayout:
    id: str
    name: str
    layout_type: str = "edit"
    is_default: bool = False
    tabs: List[Tab] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "PageLayout":
        layout_type = data.get("layoutType") or data.get("layout_type") or "edit"
        return cls(
            id=str(data.get("id") or ""),
            name=data.get("name") or "",
            layout_type=layout_type if layout_type in ("create", "edit") else "edit",
            is_default=bool(data.get("isDefault", data.get("is_default", False))),
            tabs=[Tab.from_dict(t) for t in _items(data.get("tabs"), "id")],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "layoutType": self.layout_type,
            "isDefault": self.is_default,
            "tabs": [t.to_dict() for t in self.tabs],
        }

    def walk(self) -> Iterator[tuple[Tab, Section, LayoutField]]:
        """Declaration-order walk over every placed field."""
        for tab in self.tabs:
            for section in tab.sections:
                for layout_field in section.fields:
                    yield tab, section, layout_field

    def field_api_names(self) -> list[str]:
        return list(dict.fromkeys(lf.api_name for _, _, lf in self.walk()))


@dataclass
class RecordType:
    id: str
    label: str
    page_layout_id: Optional[str] = None
    description: Optional[str] = None
    default: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "RecordType":
        return cls(
            id=str(data.get("id") or ""),
            label=data.get("label") or data.get("name") or "",
            page_layout_id=data.get("pageLayoutId") or data.get("page_layout_id"),
            description=data.get("description"),
            default=bool(data.get("default", False)),
        )

    def to_dict(self) -> dict:
        return _compact(
            {
                "id": self.id,
                "label": self.label,
                "pageLayoutId": self.page_layout_id,
                "description": self.description,
                "default": self.default or None,
            }
        )


@dataclass
class ValidationRule:
    id: str
    name: str
    condition: str
    error_message: str
    active: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "ValidationRule":
        return cls(
            id=str(data.get("id") or data.get("name") or ""),
            name=data.get("name") or "",
            condition=data.get("condition") or "",
            error_message=data.get("errorMessage") or data.get("error_message") or "",
            active=bool(data.get("active", True)),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "condition": self.condition,
            "errorMessage": self.error_message,
            "active": self.active,
        }


_FIELD_KEYS = {
    "min": "min",
    "max": "max",
    "minLength": "min_length",
    "maxLength": "max_length",
    "precision": "precision",
    "scale": "scale",
    "lookupObject": "lookup_object",
    "relationshipName": "relationship_name",
    "helpText": "help_text",
    "defaultValue": "default_value",
    "formulaExpr": "formula_expr",
    "autoNumber": "auto_number",
    "encryption": "encryption",
    "rollup": "rollup",
    "controllingField": "controlling_field",
    "dependentValues": "dependent_values",
}

_NUMERIC_FIELD_KEYS = {
    "min": _bound,
    "max": _bound,
    "minLength": _length,
    "maxLength": _length,
    "precision": _length,
    "scale": _length,
}


@dataclass
class FieldDef:
    api_name: str
    label: str
    type: Any
    required: bool = False
    read_only: bool = False
    unique: bool = False
    custom: bool = False
    picklist_values: Optional[List[str]] = None
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    lookup_object: Optional[str] = None
    relationship_name: Optional[str] = None
    visible_if: Any = None
    help_text: Optional[str] = None
    default_value: Any = None
    formula_expr: Optional[str] = None
    auto_number: Optional[Dict[str, Any]] = None
    encryption: Optional[Dict[str, Any]] = None
    rollup: Optional[Dict[str, Any]] = None
    controlling_field: Optional[str] = None
    dependent_values: Optional[Dict[str, List[str]]] = None
    id: Optional[str] = None
    bound_errors: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict) -> "FieldDef":
        raw_type = data.get("type")
        parsed = parse_field_type(raw_type)
        kwargs = {attr: data.get(key) for key, attr in _FIELD_KEYS.items() if data.get(key) is not None}
        bound_errors = {}
        for key, convert in _NUMERIC_FIELD_KEYS.items():
            attr = _FIELD_KEYS[key]
            if attr in kwargs:
                number = convert(kwargs[attr])
                if number is None:
                    bound_errors[key] = kwargs.pop(attr)
                else:
                    kwargs[attr] = number
        lookup = data.get("lookupObject") or (data.get("relationship") or {}).get("targetObject")
        if lookup:
            kwargs["lookup_object"] = lookup
        picklist = data.get("picklistValues")
        return cls(
            api_name=data.get("apiName") or data.get("api_name") or "",
            label=data.get("label") or data.get("apiName") or "",
            type=parsed if parsed is not None else raw_type,
            required=bool(data.get("required", False)),
            read_only=bool(data.get("readOnly", data.get("read_only", False))),
            unique=bool(data.get("unique", False)),
            custom=bool(data.get("custom", False)),
            picklist_values=list(picklist) if isinstance(picklist, list) else None,
            visible_if=data.get("visibleIf"),
            id=data.get("id"),
            bound_errors=bound_errors,
            **kwargs,
        )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "apiName": self.api_name,
            "label": self.label,
            "type": self.type.value if isinstance(self.type, FieldType) else self.type,
            "required": self.required,
            "readOnly": self.read_only,
            "unique": self.unique or None,
            "custom": self.custom or None,
            "picklistValues": self.picklist_values,
            "visibleIf": self.visible_if,
        }
        for key, attr in _FIELD_KEYS.items():
            data[key] = getattr(self, attr)
        return _compact(data)

    @property
    def field_type(self) -> FieldType | None:
        return self.type if isinstance(self.type, FieldType) else None

    @property
    def auto_generated(self) -> bool:
        return self.field_type in AUTO_GENERATED_TYPES


@dataclass
class ObjectDef:
    api_name: str
    label: str
    plural_label: Optional[str] = None
    fields: List[FieldDef] = field(default_factory=list)
    page_layouts: List[PageLayout] = field(default_factory=list)
    record_types: List[RecordType] = field(default_factory=list)
    validation_rules: List[ValidationRule] = field(default_factory=list)
    default_record_type_id: Optional[str] = None
    description: Optional[str] = None
    search_layouts: Optional[Dict[str, Any]] = None
    compact_layout: Optional[Dict[str, Any]] = None
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ObjectDef":
        return cls(
            api_name=data.get("apiName") or data.get("api_name") or "",
            label=data.get("label") or data.get("apiName") or "",
            plural_label=data.get("pluralLabel"),
            fields=[FieldDef.from_dict(f) for f in _items(data.get("fields"), "apiName")],
            page_layouts=[PageLayout.from_dict(p) for p in _items(data.get("pageLayouts"), "id")],
            record_types=[RecordType.from_dict(r) for r in _items(data.get("recordTypes"), "id")],
            validation_rules=[ValidationRule.from_dict(v) for v in _items(data.get("validationRules"), "id")],
            default_record_type_id=data.get("defaultRecordTypeId"),
            description=data.get("description"),
            search_layouts=data.get("searchLayouts"),
            compact_layout=data.get("compactLayout"),
            id=data.get("id"),
        )

    def to_dict(self) -> dict:
        return _compact(
            {
                "id": self.id,
                "apiName": self.api_name,
                "label": self.label,
                "pluralLabel": self.plural_label,
                "description": self.description,
                "fields": [f.to_dict() for f in self.fields],
                "pageLayouts": [p.to_dict() for p in self.page_layouts],
                "recordTypes": [r.to_dict() for r in self.record_types],
                "validationRules": [v.to_dict() for v in self.validation_rules],
                "defaultRecordTypeId": self.default_record_type_id,
                "searchLayouts": self.search_layouts,
                "compactLayout": self.compact_layout,
            }
        )

    def get_field(self, api_name: str) -> FieldDef | None:
        for fdef in self.fields:
            if fdef.api_name == api_name:
                return fdef
        return None

    def field_lookup(self) -> Dict[str, FieldDef]:
        return {fdef.api_name: fdef for fdef in self.fields}

    def get_layout(self, layout_id: str | None) -> PageLayout | None:
        if not layout_id:
            return None
        for layout in self.page_layouts:
            if layout.id == layout_id:
                return layout
        return None

    def get_record_type(self, record_type_id: str | None) -> RecordType | None:
        if not record_type_id:
            return None
        for record_type in self.record_types:
            if record_type.id == record_type_id:
                return record_type
        return None

    def default_layout(self, layout_type: str | None = None) -> PageLayout | None:
        candidates = [l for l in self.page_layouts if layout_type is None or l.layout_type == layout_type]
        for layout in candidates:
            if layout.is_default:
                return layout
        return candidates[0] if candidates else None

    def layout_for_record(self, record: dict | None, layout_type: str = "edit") -> PageLayout | None:
        """Record override, then record type (or the object's default), then defaults."""
        record = record or {}
        layout = self.get_layout(record.get("pageLayoutId"))
        if layout:
            return layout
        record_type = self.get_record_type(record.get("recordTypeId") or self.default_record_type_id)
        if record_type:
            layout = self.get_layout(record_type.page_layout_id)
            if layout:
                return layout
        return self.default_layout(layout_type) or self.default_layout()


@dataclass
class Schema:
    objects: List[ObjectDef] = field(default_factory=list)
    version: int = 1
    updated_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "Schema":
        data = data if isinstance(data, dict) else {}
        return cls(
            objects=[ObjectDef.from_dict(o) for o in _items(data.get("objects"), "apiName")],
            version=_int(data.get("version"), 1),
            updated_at=data.get("updatedAt"),
        )

    def to_dict(self) -> dict:
        return _compact(
            {
                "version": self.version,
                "updatedAt": self.updated_at,
                "objects": [o.to_dict() for o in self.objects],
            }
        )

    def get_object(self, api_name: str) -> ObjectDef | None:
        for obj in self.objects:
            if obj.api_name == api_name:
                return obj
        lowered = api_name.lower() if isinstance(api_name, str) else None
        for obj in self.objects:
            if obj.api_name.lower() == lowered:
                return obj
        return None

    def object_names(self) -> list[str]:
        return [obj.api_name for obj in self.objects]
