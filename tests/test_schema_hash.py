import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from forge.schema_hash import is_schema_hash, schema_hash


class TestSchemaHash(unittest.TestCase):
    def test_hash_deterministic_with_key_order(self) -> None:
        a = {"objects": [], "version": 1}
        b = {"version": 1, "objects": []}
        self.assertEqual(schema_hash(a), schema_hash(b))

    def test_hash_differs_for_different_content(self) -> None:
        self.assertNotEqual(schema_hash({"apiName": "Deal"}), schema_hash({"apiName": "Lead"}))

    def test_hash_format(self) -> None:
        h = schema_hash({"a": 1})
        self.assertTrue(h.startswith("sha256:"))
        self.assertEqual(len(h), len("sha256:") + 64)
        self.assertTrue(is_schema_hash(h))

    def test_is_schema_hash_rejects_other_values(self) -> None:
        self.assertFalse(is_schema_hash("sha256:abc"))
        self.assertFalse(is_schema_hash(None))
        self.assertFalse(is_schema_hash("md5:" + "0" * 64))

    def test_hash_rejects_nan(self) -> None:
        with self.assertRaises(ValueError):
            schema_hash({"bad": float("nan")})

    def test_hash_numeric_distinction(self) -> None:
        self.assertNotEqual(schema_hash({"n": 1}), schema_hash({"n": 1.0}))


if __name__ == "__main__":
    unittest.main()
