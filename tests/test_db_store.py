import os
import sys
import unittest
import uuid
from unittest.mock import patch

import psycopg2

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
for path in (ROOT, SRC):
    if path not in sys.path:
        sys.path.insert(0, path)

from app.db import _redact_params, get_db_stats, reset_db_stats
from app.lookups import resolve_label
from app.stores import RecordStoreError
from app.stores_db import DbRecordStore, _decode

USE_DB = os.getenv("USE_DB", "0") == "1"
DB_URL = os.getenv("DATABASE_URL")


class TestDbHelpers(unittest.TestCase):
    def test_redact_params(self) -> None:
        long_text = "x" * 100
        redacted = _redact_params(["deals", b"\x00\x01", long_text, 3])
        self.assertEqual(redacted[0], "deals")
        self.assertEqual(redacted[1], "<bytes:2>")
        self.assertEqual(len(redacted[2]), 51)
        self.assertEqual(redacted[3], 3)
        self.assertIsNone(_redact_params(None))

    def test_decode_row(self) -> None:
        self.assertEqual(_decode({"record_id": "d1", "data": '{"value": 1}'}), {"value": 1, "id": "d1"})
        self.assertEqual(_decode({"record_id": "d2", "data": {"id": "d2", "stage": "Won"}}), {"id": "d2", "stage": "Won"})

    def test_stats_default(self) -> None:
        stats = get_db_stats()
        self.assertIn("queries", stats)
        self.assertIn("total_ms", stats)

    def test_reset_stats(self) -> None:
        reset_db_stats()
        self.assertEqual(get_db_stats(), {"queries": 0, "total_ms": 0.0})


class TestDbRecordStore(unittest.TestCase):
    def test_driver_errors_become_store_errors(self) -> None:
        store = DbRecordStore(ensure_schema=False)
        with patch("app.stores_db.get_conn", side_effect=psycopg2.OperationalError("connection refused")):
            with self.assertRaises(RecordStoreError) as ctx:
                store.get("contacts")
            self.assertEqual(ctx.exception.code, "STORE_UNAVAILABLE")
            self.assertEqual(ctx.exception.path, "contacts")
            with self.assertRaises(RecordStoreError):
                store.upsert("contacts", {"id": "c1"})
            with self.assertRaises(RecordStoreError):
                store.delete("contacts", "c1")

    def test_lookup_through_unavailable_database(self) -> None:
        store = DbRecordStore(ensure_schema=False)
        with patch("app.stores_db.get_conn", side_effect=psycopg2.OperationalError("connection refused")):
            self.assertEqual(resolve_label("Contact", "c1", store), "c1")

    @unittest.skipUnless(USE_DB and DB_URL, "DB store test requires USE_DB=1 and DATABASE_URL")
    def test_collection_round_trip(self) -> None:
        store = DbRecordStore()
        key = f"deals_{uuid.uuid4().hex[:8]}"
        try:
            store.put(key, [{"id": "d1", "value": 1}, {"id": "d2", "value": 2}])
            self.assertEqual([r["id"] for r in store.get(key)], ["d1", "d2"])
            store.upsert(key, {"id": "d1", "value": 10})
            store.upsert(key, {"id": "d3", "value": 3})
            self.assertEqual(store.get_record(key, "d1")["value"], 10)
            self.assertEqual([r["id"] for r in store.get(key)], ["d1", "d2", "d3"])
            self.assertTrue(store.delete(key, "d2"))
            self.assertFalse(store.delete(key, "d2"))
            self.assertGreater(get_db_stats()["queries"], 0)
        finally:
            store.put(key, [])


if __name__ == "__main__":
    unittest.main()
