"""Lookup resolution: turn a referenced record id into a display label."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Tuple, Union

from app.diagnostics import Issue, issue
from app.field_types import LOOKUP_TYPES, format_address
from app.schema_model import ObjectDef


logger = logging.getLogger("forge.lookups")

DiagnosticHook = Callable[[Issue], None]
LabelPart = Union[str, Callable[[dict], Any]]


def collection_key(api_name: str) -> str:
    """``Contact`` -> ``contacts``, ``Property`` -> ``properties``."""
    key = (api_name or "").strip().lower()
    if not key:
        return key
    if key.endswith("y"):
        return key[:-1] + "ies"
    return key + "s"


def _composite_name(record: dict) -> str | None:
    name = record.get("name")
    if isinstance(name, dict):
        parts = [name.get(k) for k in ("salutation", "firstName", "lastName") if name.get(k)]
        if parts:
            return " ".join(str(p) for p in parts)
    return None


def _first_last(record: dict) -> str | None:
    parts = [record.get(k) for k in ("firstName", "lastName") if record.get(k)]
    return " ".join(str(p) for p in parts) if parts else None


def _address(record: dict) -> str | None:
    value = record.get("address")
    if isinstance(value, dict):
        return format_address(value) or None
    return value or None


GENERIC_STRATEGY: Tuple[LabelPart, ...] = ("name", "label", "title")

LABEL_STRATEGIES: Dict[str, Tuple[LabelPart, ...]] = {
    "Contact": (_composite_name, _first_last, "email", "contactNumber"),
    "Account": ("accountName", "name", "accountNumber"),
    "Property": ("propertyName", "name", "propertyNumber", _address),
    "Lead": ("leadName", "name", "leadNumber", "company"),
    "Deal": ("dealName", "name", "dealNumber"),
    "Product": ("productName", "name", "productNumber"),
    "Quote": ("quoteName", "name", "quoteNumber"),
    "Project": ("projectName", "name", "projectNumber"),
    "Service": ("serviceName", "name", "serviceNumber"),
    "Installation": ("installationName", "name", "installationNumber"),
    "User": ("name", "email"),
}


def label_for(object_type: str, record: dict, fallback: str) -> str:
    """Apply the per-type priority list; unknown types use the generic one."""
    for part in LABEL_STRATEGIES.get(object_type, GENERIC_STRATEGY):
        value = part(record) if callable(part) else record.get(part)
        if isinstance(value, dict):
            continue
        if value not in (None, ""):
            return str(value)
    return fallback


def _unresolved(target: str, record_id: str, reason: str, on_diagnostic: DiagnosticHook | None) -> str:
    if on_diagnostic is not None:
        on_diagnostic(
            issue(
                "UNRESOLVED_LOOKUP",
                f"{target} record {record_id} could not be resolved",
                f"{collection_key(target)}.{record_id}",
                {"reason": reason},
            )
        )
    return record_id


def resolve_label(
    target_object_type: str,
    record_id: Any,
    store,
    on_diagnostic: DiagnosticHook | None = None,
) -> str:
    """Display label for ``record_id``; degrades to the raw id, never raises."""
    raw_id = "" if record_id is None else str(record_id)
    if not raw_id:
        return raw_id
    key = collection_key(target_object_type)
    try:
        records = store.get(key)
    except Exception as exc:
        logger.warning("lookup_store_failed key=%s id=%s error=%s", key, raw_id, exc)
        return _unresolved(target_object_type, raw_id, "store_error", on_diagnostic)
    for record in records or []:
        if isinstance(record, dict) and str(record.get("id")) == raw_id:
            return label_for(target_object_type, record, raw_id)
    return _unresolved(target_object_type, raw_id, "not_found", on_diagnostic)


def resolve_record_labels(
    object_def: ObjectDef,
    record: dict,
    store,
    on_diagnostic: DiagnosticHook | None = None,
) -> Dict[str, str]:
    labels: Dict[str, str] = {}
    for fdef in object_def.fields:
        if fdef.field_type not in LOOKUP_TYPES or not fdef.lookup_object:
            continue
        value = record.get(fdef.api_name)
        if value in (None, ""):
            continue
        labels[fdef.api_name] = resolve_label(fdef.lookup_object, value, store, on_diagnostic)
    return labels


def lookup_options(target_object_type: str, store, q: str | None = None, limit: int = 50) -> List[dict]:
    """``{id, label}`` pairs for a lookup picker, filtered by label prefix."""
    key = collection_key(target_object_type)
    try:
        records = store.get(key)
    except Exception as exc:
        logger.warning("lookup_options_failed key=%s error=%s", key, exc)
        return []
    needle = q.strip().lower() if isinstance(q, str) and q.strip() else None
    options: List[dict] = []
    for record in records or []:
        if not isinstance(record, dict) or record.get("id") is None:
            continue
        record_id = str(record["id"])
        label = label_for(target_object_type, record, record_id)
        if needle and not label.lower().startswith(needle):
            continue
        options.append({"id": record_id, "label": label})
        if len(options) >= limit:
            break
    return options
