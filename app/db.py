"""Postgres connection pool and query helpers for the record store."""

from __future__ import annotations

import contextvars
import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterable

import psycopg2
import psycopg2.extras
from psycopg2.pool import SimpleConnectionPool


_logger = logging.getLogger("forge.db")
_query_logger = logging.getLogger("forge.db.query")

_POOL: SimpleConnectionPool | None = None
_POOL_LOCK = threading.Lock()
_STATS: contextvars.ContextVar[dict | None] = contextvars.ContextVar("forge_db_stats", default=None)

SLOW_QUERY_MS = float(os.getenv("FORGE_QUERY_SLOW_MS", "200"))
LOG_ALL_QUERIES = os.getenv("FORGE_QUERY_LOG", "").strip() == "1"


def get_db_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required when USE_DB=1")
    return url


def init_pool(minconn: int | None = None, maxconn: int | None = None) -> SimpleConnectionPool:
    global _POOL
    with _POOL_LOCK:
        if _POOL is None:
            low = minconn if minconn is not None else int(os.getenv("FORGE_DB_POOL_MIN", "1"))
            high = maxconn if maxconn is not None else int(os.getenv("FORGE_DB_POOL_MAX", "10"))
            _POOL = SimpleConnectionPool(low, high, dsn=get_db_url())
            _logger.info("db_pool_ready min=%s max=%s", low, high)
        return _POOL


@contextmanager
def get_conn():
    """Borrow a pooled connection; commit on success, roll back on error."""
    pool = init_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def get_db_stats() -> dict:
    stats = _STATS.get()
    if not isinstance(stats, dict):
        return {"queries": 0, "total_ms": 0.0}
    return stats


def reset_db_stats() -> None:
    _STATS.set({"queries": 0, "total_ms": 0.0})


def _redact_params(params: Iterable[Any] | None) -> list[Any] | None:
    if params is None:
        return None
    out: list[Any] = []
    for val in params:
        if isinstance(val, (bytes, bytearray)):
            out.append(f"<bytes:{len(val)}>")
        elif isinstance(val, str) and len(val) > 80:
            out.append(f"{val[:40]}…{val[-10:]}")
        else:
            out.append(val)
    return out


def _record(query_name: str | None, params: Iterable[Any] | None, elapsed_ms: float, rowcount: int | None) -> None:
    stats = dict(get_db_stats())
    stats["queries"] = stats.get("queries", 0) + 1
    stats["total_ms"] = stats.get("total_ms", 0.0) + elapsed_ms
    _STATS.set(stats)
    slow = elapsed_ms >= SLOW_QUERY_MS
    if not (slow or LOG_ALL_QUERIES):
        return
    level = logging.WARNING if slow else logging.INFO
    _query_logger.log(
        level,
        "db_query name=%s ms=%.2f rowcount=%s params=%s slow=%s",
        query_name or "unnamed",
        elapsed_ms,
        rowcount,
        _redact_params(params),
        slow,
    )


def _run(conn, sql: str, params: Iterable[Any] | None, query_name: str | None, reader: Callable[[Any], Any], dict_rows: bool = True):
    factory = psycopg2.extras.RealDictCursor if dict_rows else None
    start = time.perf_counter()
    with conn.cursor(cursor_factory=factory) as cur:
        cur.execute(sql, list(params) if params is not None else [])
        result = reader(cur)
        rowcount = cur.rowcount
    _record(query_name, params, (time.perf_counter() - start) * 1000, rowcount)
    return result


def fetch_one(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> dict | None:
    def read(cur):
        row = cur.fetchone()
        return dict(row) if row else None

    return _run(conn, sql, params, query_name, read)


def fetch_all(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> list[dict]:
    return _run(conn, sql, params, query_name, lambda cur: [dict(r) for r in cur.fetchall()])


def execute(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
    return _run(conn, sql, params, query_name, lambda cur: cur.rowcount, dict_rows=False)
