"""Postgres-backed record store."""

from __future__ import annotations

import copy
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, List

import psycopg2

from app.db import execute, fetch_all, fetch_one, get_conn
from app.stores import KeyLocks, RecordStoreError


logger = logging.getLogger("forge.stores")

SCHEMA_SQL = """
create table if not exists records_collections (
    collection_key text not null,
    record_id text not null,
    position integer not null default 0,
    data jsonb not null,
    updated_at text not null,
    primary key (collection_key, record_id)
)
"""


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


def _decode(row: dict) -> dict:
    data = row.get("data")
    if isinstance(data, str):
        data = json.loads(data)
    record = copy.deepcopy(data) if isinstance(data, dict) else {}
    record["id"] = record.get("id", row.get("record_id"))
    return record


@contextmanager
def _db_errors(key: str, action: str):
    try:
        yield
    except psycopg2.Error as exc:
        logger.warning("db_store_failed action=%s key=%s error=%s", action, key, exc)
        raise RecordStoreError("STORE_UNAVAILABLE", f"record store {action} failed: {exc}", key) from exc


class DbRecordStore:
    """One row per record, keyed by ``(collection_key, record_id)``."""

    def __init__(self, ensure_schema: bool = True) -> None:
        self._key_locks = KeyLocks()
        if ensure_schema:
            with get_conn() as conn:
                execute(conn, SCHEMA_SQL, query_name="records_collections.ensure_schema")

    def lock(self, key: str):
        return self._key_locks.lock(key)

    def get(self, key: str) -> List[dict]:
        with _db_errors(key, "get"), get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select record_id, data
                from records_collections
                where collection_key=%s
                order by position asc, record_id asc
                """,
                [key],
                query_name="records_collections.get",
            )
        return [_decode(row) for row in rows]

    def put(self, key: str, records: List[dict]) -> None:
        if not isinstance(records, list) or any(not isinstance(r, dict) for r in records):
            raise RecordStoreError("INVALID_COLLECTION", "collection must be a list of objects", key)
        missing = [idx for idx, r in enumerate(records) if r.get("id") is None]
        if missing:
            raise RecordStoreError("RECORD_ID_MISSING", f"records without id at {missing}", key)
        now = _now()
        with self.lock(key), _db_errors(key, "put"), get_conn() as conn:
            execute(conn, "delete from records_collections where collection_key=%s", [key], query_name="records_collections.clear")
            for position, record in enumerate(records):
                execute(
                    conn,
                    """
                    insert into records_collections (collection_key, record_id, position, data, updated_at)
                    values (%s,%s,%s,%s,%s)
                    """,
                    [key, str(record["id"]), position, _json_dumps(record), now],
                    query_name="records_collections.insert",
                )
        logger.info("collection_replaced key=%s count=%s", key, len(records))

    def get_record(self, key: str, record_id: Any) -> dict | None:
        with _db_errors(key, "get_record"), get_conn() as conn:
            row = fetch_one(
                conn,
                """
                select record_id, data
                from records_collections
                where collection_key=%s and record_id=%s
                """,
                [key, str(record_id)],
                query_name="records_collections.get_record",
            )
        return _decode(row) if row else None

    def upsert(self, key: str, record: dict) -> dict:
        if record.get("id") is None:
            raise RecordStoreError("RECORD_ID_MISSING", "record id is required", key)
        with self.lock(key), _db_errors(key, "upsert"), get_conn() as conn:
            execute(
                conn,
                """
                insert into records_collections (collection_key, record_id, position, data, updated_at)
                values (
                    %s, %s,
                    (select coalesce(max(position) + 1, 0) from records_collections where collection_key=%s),
                    %s, %s
                )
                on conflict (collection_key, record_id)
                do update set data=excluded.data, updated_at=excluded.updated_at
                """,
                [key, str(record["id"]), key, _json_dumps(record), _now()],
                query_name="records_collections.upsert",
            )
        return copy.deepcopy(record)

    def delete(self, key: str, record_id: Any) -> bool:
        with self.lock(key), _db_errors(key, "delete"), get_conn() as conn:
            count = execute(
                conn,
                "delete from records_collections where collection_key=%s and record_id=%s",
                [key, str(record_id)],
                query_name="records_collections.delete",
            )
        return count > 0
