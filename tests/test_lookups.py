import os
import sys
import unittest

import httpx
import psycopg2


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
for path in (ROOT, SRC):
    if path not in sys.path:
        sys.path.insert(0, path)

from app.diagnostics import DiagnosticLog
from app.lookups import collection_key, label_for, lookup_options, resolve_label, resolve_record_labels
from app.schema_model import ObjectDef
from app.stores import MemoryRecordStore


class _DownStore:
    def get(self, key):
        raise httpx.ConnectError("connection refused")


class _DownDbStore:
    def get(self, key):
        raise psycopg2.OperationalError("connection refused")


class _UnconfiguredDbStore:
    def get(self, key):
        raise RuntimeError("DATABASE_URL is required when USE_DB=1")


class TestCollectionKey(unittest.TestCase):
    def test_pluralization(self) -> None:
        self.assertEqual(collection_key("Contact"), "contacts")
        self.assertEqual(collection_key("Property"), "properties")
        self.assertEqual(collection_key("Installation"), "installations")
        self.assertEqual(collection_key("Solar_Survey__c"), "solar_survey__cs")
        self.assertEqual(collection_key(""), "")


class TestResolveLabel(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryRecordStore(
            {
                "contacts": [
                    {"id": "c1", "firstName": "Ada", "lastName": "Lovelace"},
                    {"id": "c2", "name": {"salutation": "Dr.", "firstName": "Grace", "lastName": "Hopper"}},
                    {"id": "c3", "email": "anon@example.com"},
                ],
                "properties": [{"id": "p1", "address": {"street": "1 Main St", "city": "Perth"}}],
            }
        )

    def test_contact_first_last(self) -> None:
        self.assertEqual(resolve_label("Contact", "c1", self.store), "Ada Lovelace")

    def test_missing_record_falls_back_to_id(self) -> None:
        log = DiagnosticLog("test")
        self.assertEqual(resolve_label("Contact", "missing", self.store, log), "missing")
        self.assertEqual(log.codes(), ["UNRESOLVED_LOOKUP"])
        self.assertEqual(log.issues[0]["detail"], {"reason": "not_found"})

    def test_store_failure_falls_back_to_id(self) -> None:
        log = DiagnosticLog("test")
        self.assertEqual(resolve_label("Contact", "c1", _DownStore(), log), "c1")
        self.assertEqual(log.issues[0]["detail"], {"reason": "store_error"})

    def test_database_failure_falls_back_to_id(self) -> None:
        log = DiagnosticLog("test")
        with self.assertLogs("forge.lookups", level="WARNING"):
            self.assertEqual(resolve_label("Contact", "c1", _DownDbStore(), log), "c1")
        self.assertEqual(log.codes(), ["UNRESOLVED_LOOKUP"])
        self.assertEqual(log.issues[0]["detail"], {"reason": "store_error"})
        self.assertEqual(resolve_label("Contact", "c1", _UnconfiguredDbStore()), "c1")

    def test_label_strategies(self) -> None:
        self.assertEqual(resolve_label("Contact", "c2", self.store), "Dr. Grace Hopper")
        self.assertEqual(resolve_label("Contact", "c3", self.store), "anon@example.com")
        self.assertEqual(resolve_label("Property", "p1", self.store), "1 Main St, Perth")
        self.assertEqual(label_for("Account", {"accountName": "Acme", "name": "ignored"}, "a1"), "Acme")
        self.assertEqual(label_for("Deal", {"dealNumber": "D-0001"}, "d1"), "D-0001")
        self.assertEqual(label_for("Widget", {"title": "Blue"}, "w1"), "Blue")
        self.assertEqual(label_for("Widget", {}, "w1"), "w1")

    def test_empty_id(self) -> None:
        self.assertEqual(resolve_label("Contact", None, self.store), "")

    def test_resolve_record_labels(self) -> None:
        deal = ObjectDef.from_dict(
            {
                "apiName": "Deal",
                "fields": [
                    {"apiName": "contact", "type": "Lookup", "lookupObject": "Contact"},
                    {"apiName": "property", "type": "Lookup", "lookupObject": "Property"},
                    {"apiName": "stage", "type": "Text"},
                ],
            }
        )
        labels = resolve_record_labels(deal, {"contact": "c1", "property": "", "stage": "Open"}, self.store)
        self.assertEqual(labels, {"contact": "Ada Lovelace"})


class TestLookupOptions(unittest.TestCase):
    def test_prefix_filter_and_limit(self) -> None:
        store = MemoryRecordStore(
            {
                "accounts": [
                    {"id": "a1", "accountName": "Acme Solar"},
                    {"id": "a2", "accountName": "Bright Energy"},
                    {"id": "a3", "accountName": "acme Storage"},
                ]
            }
        )
        options = lookup_options("Account", store, q="acme")
        self.assertEqual([o["id"] for o in options], ["a1", "a3"])
        self.assertEqual(len(lookup_options("Account", store, limit=2)), 2)
        self.assertEqual(lookup_options("Account", _DownStore()), [])
        self.assertEqual(lookup_options("Account", _DownDbStore()), [])
        self.assertEqual(lookup_options("Account", _UnconfiguredDbStore()), [])


if __name__ == "__main__":
    unittest.main()
