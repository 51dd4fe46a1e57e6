import json
import os
import sys
import tempfile
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.schema_model import Schema
from schema_store import SchemaStore, load_schema_file


def _schema(*field_names: str) -> Schema:
    return Schema.from_dict(
        {
            "objects": [
                {
                    "apiName": "Lead",
                    "label": "Lead",
                    "fields": [{"apiName": name, "label": name, "type": "Text"} for name in field_names],
                }
            ]
        }
    )


class TestSchemaStore(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SchemaStore()

    def test_save_sets_head(self) -> None:
        self.assertIsNone(self.store.get_head())
        result = self.store.save(_schema("company"), actor={"id": "admin"}, reason="init")
        self.assertTrue(result["ok"], result)
        self.assertIsNone(result["from_hash"])
        self.assertTrue(result["to_hash"].startswith("sha256:"))
        self.assertEqual(self.store.head_hash(), result["to_hash"])
        head = self.store.get_head()
        self.assertEqual(head.version, 1)
        self.assertIsNotNone(head.updated_at)
        self.assertEqual(head.get_object("Lead").get_field("company").label, "company")

    def test_unchanged_content_is_not_a_new_version(self) -> None:
        first = self.store.save(_schema("company"))
        bumped = _schema("company")
        bumped.version = 9
        second = self.store.save(bumped)
        self.assertTrue(second["ok"])
        self.assertEqual(second["to_hash"], first["to_hash"])
        self.assertIsNone(second["audit_id"])
        self.assertEqual([w["code"] for w in second["warnings"]], ["SCHEMA_UNCHANGED"])
        self.assertEqual(len(self.store.history()), 1)

    def test_versions_increment(self) -> None:
        self.store.save(_schema("company"))
        result = self.store.save(_schema("company", "email"))
        self.assertEqual(self.store.get_head().version, 2)
        self.assertNotEqual(result["from_hash"], result["to_hash"])

    def test_invalid_schema_is_rejected(self) -> None:
        first = self.store.save(_schema("company"))
        result = self.store.save(_schema("company", "company"))
        self.assertFalse(result["ok"])
        self.assertEqual([e["code"] for e in result["errors"]], ["SCHEMA_DUPLICATE_FIELD"])
        self.assertEqual(self.store.head_hash(), first["to_hash"])

    def test_rollback(self) -> None:
        first = self.store.save(_schema("company"))
        self.store.save(_schema("company", "email"))
        result = self.store.rollback(first["to_hash"], actor={"id": "admin"})
        self.assertTrue(result["ok"])
        self.assertEqual(self.store.head_hash(), first["to_hash"])
        self.assertIsNone(self.store.get_head().get_object("Lead").get_field("email"))
        self.assertEqual([a["action"] for a in self.store.history()], ["rollback", "save", "save"])

    def test_rollback_unknown_hash(self) -> None:
        result = self.store.rollback("sha256:" + "0" * 64)
        self.assertFalse(result["ok"])
        self.assertEqual(result["errors"][0]["code"], "ROLLBACK_UNKNOWN_HASH")

    def test_get_unknown_snapshot(self) -> None:
        with self.assertRaises(KeyError):
            self.store.get("sha256:missing")

    def test_snapshots_are_isolated(self) -> None:
        schema = _schema("company")
        result = self.store.save(schema)
        schema.objects[0].fields[0].label = "mutated"
        snapshot = self.store.get(result["to_hash"])
        snapshot.objects[0].label = "also mutated"
        self.assertEqual(self.store.get_head().get_object("Lead").get_field("company").label, "company")
        self.assertEqual(self.store.get_head().get_object("Lead").label, "Lead")


class TestLoadSchemaFile(unittest.TestCase):
    def test_load(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "schema.json")
            with open(path, "w", encoding="utf-8") as handle:
                json.dump(_schema("company").to_dict(), handle)
            schema = load_schema_file(path)
        self.assertEqual(schema.object_names(), ["Lead"])


if __name__ == "__main__":
    unittest.main()
