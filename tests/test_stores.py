import json
import os
import sys
import threading
import unittest

import httpx


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.stores import FallbackRecordStore, HttpRecordStore, KeyLocks, MemoryRecordStore, RecordStoreError


def _collection_api(collections: dict, calls: list):
    def handler(request: httpx.Request) -> httpx.Response:
        key = request.url.path.rsplit("/", 1)[-1]
        calls.append((request.method, key))
        if request.method == "GET":
            if key not in collections:
                return httpx.Response(404, json={"detail": "not found"})
            return httpx.Response(200, json={"records": collections[key]})
        collections[key] = json.loads(request.content)["records"]
        return httpx.Response(200, json={"ok": True})

    return httpx.MockTransport(handler)


def _down(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


class TestMemoryRecordStore(unittest.TestCase):
    def test_put_and_get_are_copies(self) -> None:
        store = MemoryRecordStore()
        records = [{"id": "c1", "firstName": "Ada"}]
        store.put("contacts", records)
        records[0]["firstName"] = "changed"
        fetched = store.get("contacts")
        fetched[0]["firstName"] = "also changed"
        self.assertEqual(store.get("contacts"), [{"id": "c1", "firstName": "Ada"}])
        self.assertEqual(store.get("unknown"), [])
        self.assertEqual(store.keys(), ["contacts"])

    def test_record_operations(self) -> None:
        store = MemoryRecordStore({"deals": [{"id": "d1", "value": 1}]})
        store.upsert("deals", {"id": "d2", "value": 2})
        store.upsert("deals", {"id": "d1", "value": 10})
        self.assertEqual(store.get_record("deals", "d1"), {"id": "d1", "value": 10})
        self.assertEqual([r["id"] for r in store.get("deals")], ["d1", "d2"])
        self.assertTrue(store.delete("deals", "d1"))
        self.assertFalse(store.delete("deals", "d1"))
        self.assertIsNone(store.get_record("deals", "d1"))

    def test_invalid_input(self) -> None:
        store = MemoryRecordStore()
        with self.assertRaises(RecordStoreError):
            store.put("deals", {"id": "d1"})
        with self.assertRaises(RecordStoreError):
            store.put("deals", ["d1"])
        with self.assertRaises(RecordStoreError) as ctx:
            store.upsert("deals", {"value": 1})
        self.assertEqual(ctx.exception.code, "RECORD_ID_MISSING")

    def test_numeric_ids_match_strings(self) -> None:
        store = MemoryRecordStore({"deals": [{"id": 7}]})
        self.assertEqual(store.get_record("deals", "7"), {"id": 7})


class TestKeyLocks(unittest.TestCase):
    def test_lock_is_reentrant_and_exclusive(self) -> None:
        locks = KeyLocks()
        seen = []
        with locks.lock("deals"):
            with locks.lock("deals"):
                worker = threading.Thread(target=lambda: seen.append(locks._locks["deals"].acquire(blocking=False)))
                worker.start()
                worker.join()
        self.assertEqual(seen, [False])


class TestHttpRecordStore(unittest.TestCase):
    def setUp(self) -> None:
        self.collections = {"contacts": [{"id": "c1", "firstName": "Ada"}]}
        self.calls = []
        self.store = HttpRecordStore("http://records.test/", transport=_collection_api(self.collections, self.calls))

    def tearDown(self) -> None:
        self.store.close()

    def test_get(self) -> None:
        self.assertEqual(self.store.get("contacts"), [{"id": "c1", "firstName": "Ada"}])
        self.assertEqual(self.store.get("deals"), [])

    def test_put_sends_records_envelope(self) -> None:
        self.store.put("deals", [{"id": "d1"}])
        self.assertEqual(self.collections["deals"], [{"id": "d1"}])
        self.assertEqual(self.calls[-1], ("PUT", "deals"))

    def test_record_operations_use_collection_round_trip(self) -> None:
        self.store.upsert("contacts", {"id": "c2", "firstName": "Grace"})
        self.assertEqual([r["id"] for r in self.collections["contacts"]], ["c1", "c2"])
        self.assertEqual(self.store.get_record("contacts", "c2")["firstName"], "Grace")
        self.assertTrue(self.store.delete("contacts", "c1"))
        self.assertEqual(self.collections["contacts"], [{"id": "c2", "firstName": "Grace"}])

    def test_bare_list_payload(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=[{"id": "x"}, "junk"]))
        store = HttpRecordStore("http://records.test", transport=transport)
        self.assertEqual(store.get("things"), [{"id": "x"}])

    def test_bad_payload_and_server_error(self) -> None:
        store = HttpRecordStore("http://records.test", transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"records": "nope"})))
        with self.assertRaises(RecordStoreError):
            store.get("things")
        store = HttpRecordStore("http://records.test", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        with self.assertRaises(httpx.HTTPStatusError):
            store.get("things")


class TestFallbackRecordStore(unittest.TestCase):
    def test_uses_primary_when_available(self) -> None:
        collections = {"contacts": [{"id": "c1"}]}
        primary = HttpRecordStore("http://records.test", transport=_collection_api(collections, []))
        store = FallbackRecordStore(primary)
        self.assertEqual(store.get("contacts"), [{"id": "c1"}])
        store.upsert("contacts", {"id": "c2"})
        self.assertEqual(len(collections["contacts"]), 2)

    def test_falls_back_on_transport_error(self) -> None:
        fallback = MemoryRecordStore({"contacts": [{"id": "local"}]})
        store = FallbackRecordStore(HttpRecordStore("http://records.test", transport=httpx.MockTransport(_down)), fallback)
        with self.assertLogs("forge.stores", level="WARNING"):
            self.assertEqual(store.get("contacts"), [{"id": "local"}])
        store.upsert("contacts", {"id": "new"})
        self.assertEqual(fallback.get_record("contacts", "new"), {"id": "new"})
        self.assertTrue(store.delete("contacts", "local"))


if __name__ == "__main__":
    unittest.main()
