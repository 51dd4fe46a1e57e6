"""FastAPI app for the objectforge metadata engine."""

from __future__ import annotations

import os
import sys
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import json
import logging

from app.diagnostics import DiagnosticLog
from app.field_delete import delete_field
from app.layout_composer import compose, default_layout, visible_grids
from app.lookups import collection_key, lookup_options, resolve_label, resolve_record_labels
from app.records import RecordCommitError, RecordValidationError, create_record, delete_record, update_record
from app.records_validation import evaluate_validation_rules, validate, validate_messages
from app.report_export import export_filename, to_delimited
from app.reports import ReportSpec, group_summaries, run as run_report
from app.schema_model import ObjectDef, Schema
from app.stores import FallbackRecordStore, HttpRecordStore, MemoryRecordStore, RecordStoreError
from app.stores_db import DbRecordStore
from schema_store import SchemaStore, load_schema_file
from visibility_eval import evaluate


app = FastAPI(title="objectforge")
logger = logging.getLogger("forge")
logging.basicConfig(level=logging.INFO)

USE_DB = os.getenv("USE_DB", "").strip() == "1"
FORGE_SCHEMA_PATH = os.getenv("FORGE_SCHEMA_PATH", "").strip()
FORGE_API_URL = os.getenv("FORGE_API_URL", "").strip()
FORGE_HTTP_TIMEOUT = float(os.getenv("FORGE_HTTP_TIMEOUT", "10"))
_LOCAL_CORS_ORIGINS = {
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
}
_EXTRA_CORS_ORIGINS = {
    origin.strip().rstrip("/")
    for origin in os.getenv("FORGE_CORS_ORIGINS", "").split(",")
    if origin.strip()
}
_CORS_ORIGINS = _LOCAL_CORS_ORIGINS | _EXTRA_CORS_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(_CORS_ORIGINS),
    allow_origin_regex=r"http://localhost:\d+|http://127\.0\.0\.1:\d+",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def build_record_store():
    if USE_DB:
        return DbRecordStore()
    if FORGE_API_URL:
        return FallbackRecordStore(HttpRecordStore(FORGE_API_URL, timeout=FORGE_HTTP_TIMEOUT), MemoryRecordStore())
    return MemoryRecordStore()


record_store = build_record_store()
schema_store = SchemaStore()
if FORGE_SCHEMA_PATH:
    _initial = schema_store.save(load_schema_file(FORGE_SCHEMA_PATH), reason="startup")
    if not _initial["ok"]:
        logger.error("schema_load_failed path=%s errors=%s", FORGE_SCHEMA_PATH, _initial["errors"])


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _validation_response(exc: RecordValidationError, warnings: list | None = None) -> JSONResponse:
    errors = [
        {"code": "VALIDATION_RULE_FAILED" if name in exc.rule_failures else exc.errors[name].value, "message": message, "path": name, "detail": None}
        for name, message in exc.messages.items()
    ]
    body = {"ok": False, "errors": errors, "warnings": warnings or [], "field_errors": exc.to_dict()["errors"]}
    return JSONResponse(jsonable_encoder(body), status_code=422)


def _commit_error_response(exc: RecordCommitError) -> JSONResponse:
    status = 404 if exc.code.endswith("_NOT_FOUND") and exc.code != "LAYOUT_NOT_FOUND" else 400
    return _error_response(exc.code, exc.message, exc.path, status=status)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return {}
    return body if isinstance(body, dict) else {}


def _actor(request: Request) -> dict | None:
    actor_id = request.headers.get("X-Actor-Id")
    return {"id": actor_id} if actor_id else None


def _schema() -> Schema:
    return schema_store.get_head() or Schema()


def _object_or_error(api_name: str) -> tuple[ObjectDef | None, JSONResponse | None]:
    obj = _schema().get_object(api_name)
    if obj is None:
        return None, _error_response("OBJECT_NOT_FOUND", f"Unknown object: {api_name}", "object", status=404)
    return obj, None


@app.get("/schema")
async def get_schema() -> JSONResponse:
    return _ok_response({"schema": _schema().to_dict(), "hash": schema_store.head_hash()})


@app.put("/schema")
async def put_schema(request: Request) -> JSONResponse:
    body = await _json_body(request)
    result = schema_store.save(Schema.from_dict(body.get("schema") or body), actor=_actor(request), reason=body.get("reason") or "api")
    if not result["ok"]:
        return JSONResponse(jsonable_encoder(result), status_code=400)
    return JSONResponse(jsonable_encoder(result))


@app.get("/objects")
async def list_objects() -> JSONResponse:
    items = [
        {"apiName": obj.api_name, "label": obj.label, "pluralLabel": obj.plural_label, "fieldCount": len(obj.fields)}
        for obj in _schema().objects
    ]
    return _ok_response({"objects": items})


@app.get("/objects/{api_name}")
async def get_object(api_name: str) -> JSONResponse:
    obj, error = _object_or_error(api_name)
    if error:
        return error
    return _ok_response({"object": obj.to_dict()})


@app.get("/objects/{api_name}/layouts/{layout_id}/compose")
async def compose_layout(api_name: str, layout_id: str) -> JSONResponse:
    obj, error = _object_or_error(api_name)
    if error:
        return error
    layout = obj.get_layout(layout_id)
    if layout is None and layout_id == "default":
        layout = obj.default_layout() or default_layout(obj)
    if layout is None:
        return _error_response("LAYOUT_NOT_FOUND", f"Layout not found: {layout_id}", "layout_id", status=404)
    return _ok_response({"layout": {"id": layout.id, "name": layout.name}, "grids": [g.to_dict() for g in compose(layout)]})


@app.post("/objects/{api_name}/records/validate")
async def validate_record(api_name: str, request: Request) -> JSONResponse:
    obj, error = _object_or_error(api_name)
    if error:
        return error
    body = await _json_body(request)
    record = body.get("record") if isinstance(body.get("record"), dict) else {}
    diagnostics = DiagnosticLog("validate")
    original = None
    if body.get("recordId"):
        original = record_store.get_record(collection_key(obj.api_name), body["recordId"])
        if original is None:
            return _error_response("RECORD_NOT_FOUND", "record not found", "recordId", status=404)
        record = {**original, **record}
    layout = obj.get_layout(body.get("layoutId")) or obj.layout_for_record(record) or default_layout(obj)
    errors = validate(layout, record, obj, diagnostics, original)
    messages = validate_messages(layout, record, obj, None, original)
    rules = evaluate_validation_rules(obj, record, diagnostics)
    grids = visible_grids(layout, record, obj.field_lookup())
    return _ok_response(
        {
            "valid": not errors and not rules,
            "layout_id": layout.id,
            "field_errors": {k: v.value for k, v in errors.items()},
            "messages": messages,
            "rule_failures": {k: v["message"] for k, v in rules.items()},
            "grids": [g.to_dict() for g in grids],
        },
        warnings=diagnostics.issues,
    )


@app.get("/objects/{api_name}/records")
async def list_records(api_name: str) -> JSONResponse:
    obj, error = _object_or_error(api_name)
    if error:
        return error
    return _ok_response({"records": record_store.get(collection_key(obj.api_name))})


@app.post("/objects/{api_name}/records")
async def post_record(api_name: str, request: Request) -> JSONResponse:
    body = await _json_body(request)
    data = body.get("record") if isinstance(body.get("record"), dict) else body
    diagnostics = DiagnosticLog("create")
    try:
        record = create_record(
            _schema(),
            api_name,
            data,
            record_store,
            actor=_actor(request),
            layout_id=body.get("layoutId"),
            record_type_id=body.get("recordTypeId"),
            on_diagnostic=diagnostics,
        )
    except RecordValidationError as exc:
        return _validation_response(exc, diagnostics.issues)
    except RecordCommitError as exc:
        return _commit_error_response(exc)
    except RecordStoreError as exc:
        return _error_response(exc.code, exc.message, exc.path)
    return _ok_response({"record": record}, warnings=diagnostics.issues, status=201)


@app.get("/objects/{api_name}/records/{record_id}")
async def get_record(api_name: str, record_id: str) -> JSONResponse:
    obj, error = _object_or_error(api_name)
    if error:
        return error
    record = record_store.get_record(collection_key(obj.api_name), record_id)
    if record is None:
        return _error_response("RECORD_NOT_FOUND", "record not found", "id", status=404)
    diagnostics = DiagnosticLog("labels")
    labels = resolve_record_labels(obj, record, record_store, diagnostics)
    return _ok_response({"record": record, "labels": labels}, warnings=diagnostics.issues)


@app.patch("/objects/{api_name}/records/{record_id}")
async def patch_record(api_name: str, record_id: str, request: Request) -> JSONResponse:
    body = await _json_body(request)
    changes = body.get("changes") if isinstance(body.get("changes"), dict) else body
    diagnostics = DiagnosticLog("update")
    try:
        record = update_record(_schema(), api_name, record_id, changes, record_store, actor=_actor(request), on_diagnostic=diagnostics)
    except RecordValidationError as exc:
        return _validation_response(exc, diagnostics.issues)
    except RecordCommitError as exc:
        return _commit_error_response(exc)
    return _ok_response({"record": record}, warnings=diagnostics.issues)


@app.delete("/objects/{api_name}/records/{record_id}")
async def remove_record(api_name: str, record_id: str, request: Request) -> JSONResponse:
    try:
        delete_record(_schema(), api_name, record_id, record_store, actor=_actor(request))
    except RecordCommitError as exc:
        return _commit_error_response(exc)
    return _ok_response({"deleted": record_id})


@app.delete("/objects/{api_name}/fields/{field_api}")
async def remove_field(api_name: str, field_api: str, request: Request, force: bool = False) -> JSONResponse:
    result = delete_field(_schema(), api_name, field_api, record_store, force=force, actor=_actor(request))
    if not result["ok"]:
        status = 404 if any(e["code"].endswith("_NOT_FOUND") for e in result["errors"]) else 409
        return JSONResponse(jsonable_encoder({k: v for k, v in result.items() if k != "schema"}), status_code=status)
    saved = schema_store.save(result["schema"], actor=_actor(request), reason=f"delete field {api_name}.{field_api}")
    if not saved["ok"]:
        return JSONResponse(jsonable_encoder(saved), status_code=400)
    return _ok_response({"hash": saved["to_hash"]}, warnings=result["warnings"] + saved["warnings"])


@app.get("/lookups/{api_name}/{record_id}")
async def get_lookup_label(api_name: str, record_id: str) -> JSONResponse:
    diagnostics = DiagnosticLog("lookup")
    label = resolve_label(api_name, record_id, record_store, diagnostics)
    return _ok_response({"id": record_id, "label": label, "resolved": not diagnostics}, warnings=diagnostics.issues)


@app.get("/lookups/{api_name}")
async def list_lookup_options(api_name: str, q: str | None = None, limit: int = 50) -> JSONResponse:
    limit = limit if 0 < limit <= 500 else 50
    return _ok_response({"options": lookup_options(api_name, record_store, q=q, limit=limit)})


def _report_inputs(body: dict) -> tuple[ReportSpec, list]:
    spec = ReportSpec.from_dict(body.get("spec") if isinstance(body.get("spec"), dict) else body)
    records = body.get("records")
    if not isinstance(records, list):
        records = record_store.get(collection_key(spec.object_type))
    return spec, records


@app.post("/reports/run")
async def post_report_run(request: Request) -> JSONResponse:
    body = await _json_body(request)
    spec, records = _report_inputs(body)
    if not spec.object_type:
        return _error_response("REPORT_INVALID", "objectType is required", "objectType")
    result = run_report(spec, records, schema=schema_store.get_head())
    summaries = group_summaries(result, spec.fields) if result.groups is not None else None
    payload = result.to_dict()
    payload.pop("warnings")
    return _ok_response({**payload, "summaries": summaries}, warnings=result.warnings)


@app.post("/reports/export")
async def post_report_export(request: Request) -> Response:
    body = await _json_body(request)
    spec, records = _report_inputs(body)
    if not spec.object_type:
        return _error_response("REPORT_INVALID", "objectType is required", "objectType")
    result = run_report(spec, records)
    filename = export_filename(spec.name or spec.object_type)
    return Response(
        content=to_delimited(spec, result),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/collections/{key}")
async def get_collection(key: str) -> JSONResponse:
    return JSONResponse(jsonable_encoder({"records": record_store.get(key)}))


@app.put("/collections/{key}")
async def put_collection(key: str, request: Request) -> JSONResponse:
    body = await _json_body(request)
    records = body.get("records")
    try:
        record_store.put(key, records)
    except RecordStoreError as exc:
        return _error_response(exc.code, exc.message, exc.path)
    return _ok_response({"count": len(records)})


@app.post("/visibility/evaluate")
async def post_visibility_evaluate(request: Request) -> JSONResponse:
    body = await _json_body(request)
    diagnostics = DiagnosticLog("visibility")
    record = body.get("record") if isinstance(body.get("record"), dict) else {}
    visible = evaluate(body.get("condition"), record, diagnostics)
    return _ok_response({"visible": visible}, warnings=diagnostics.issues)
