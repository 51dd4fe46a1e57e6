import os
import sys
import unittest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from fastapi.testclient import TestClient

os.environ["USE_DB"] = "0"
os.environ.pop("FORGE_API_URL", None)
os.environ.pop("FORGE_SCHEMA_PATH", None)

import app.main as main
from app.schema_model import Schema
from app.stores import MemoryRecordStore
from schema_store import SchemaStore


SCHEMA = {
    "objects": [
        {
            "apiName": "Deal",
            "label": "Deal",
            "pluralLabel": "Deals",
            "fields": [
                {"apiName": "dealName", "label": "Deal Name", "type": "Text", "required": True},
                {"apiName": "value", "label": "Value", "type": "Currency", "required": True},
                {"apiName": "stage", "label": "Stage", "type": "Picklist", "picklistValues": ["Proposal", "Negotiation", "Closed Won"]},
                {"apiName": "contact", "label": "Contact", "type": "Lookup", "lookupObject": "Contact"},
                {"apiName": "notes", "label": "Notes", "type": "TextArea"},
            ],
            "pageLayouts": [
                {
                    "id": "deal-edit",
                    "name": "Deal Edit",
                    "isDefault": True,
                    "tabs": [
                        {
                            "label": "Main",
                            "sections": [
                                {
                                    "label": "Details",
                                    "columns": 2,
                                    "fields": [
                                        {"apiName": "dealName", "order": 0, "column": 0},
                                        {"apiName": "value", "order": 1, "column": 1},
                                        {"apiName": "stage", "order": 2, "column": 0},
                                        {"apiName": "contact", "order": 3, "column": 1},
                                    ],
                                }
                            ],
                        }
                    ],
                }
            ],
        },
        {
            "apiName": "Contact",
            "label": "Contact",
            "fields": [
                {"apiName": "firstName", "label": "First Name", "type": "Text"},
                {"apiName": "lastName", "label": "Last Name", "type": "Text", "required": True},
            ],
        },
    ]
}


class TestApi(unittest.TestCase):
    def setUp(self) -> None:
        main.record_store = MemoryRecordStore({"contacts": [{"id": "c1", "firstName": "Ada", "lastName": "Lovelace"}]})
        main.schema_store = SchemaStore()
        saved = main.schema_store.save(Schema.from_dict(SCHEMA), actor={"id": "test"})
        self.assertTrue(saved["ok"], saved)
        self.client = TestClient(main.app)

    def test_schema_endpoints(self) -> None:
        body = self.client.get("/schema").json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["hash"], main.schema_store.head_hash())
        res = self.client.put("/schema", json={"schema": {"objects": [{"apiName": "Deal", "fields": [{"apiName": "x", "type": "Nope"}]}]}})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "SCHEMA_UNKNOWN_FIELD_TYPE")

    def test_objects(self) -> None:
        body = self.client.get("/objects").json()
        self.assertEqual([o["apiName"] for o in body["objects"]], ["Deal", "Contact"])
        self.assertEqual(self.client.get("/objects/deal").json()["object"]["apiName"], "Deal")
        res = self.client.get("/objects/Quote")
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "OBJECT_NOT_FOUND")

    def test_compose(self) -> None:
        body = self.client.get("/objects/Deal/layouts/deal-edit/compose").json()
        self.assertEqual(body["grids"][0]["rows"], [["dealName", "value"], ["stage", "contact"]])
        body = self.client.get("/objects/Contact/layouts/default/compose").json()
        self.assertEqual(body["layout"]["id"], "Contact-default-edit")
        self.assertEqual(self.client.get("/objects/Deal/layouts/nope/compose").status_code, 404)

    def test_validate_endpoint(self) -> None:
        body = self.client.post("/objects/Deal/records/validate", json={"record": {"stage": "Proposal", "dealName": "Roof"}}).json()
        self.assertFalse(body["valid"])
        self.assertEqual(body["field_errors"], {"value": "MissingRequiredField"})
        self.assertEqual(body["messages"], {"value": "Value is required"})
        self.assertEqual(body["layout_id"], "deal-edit")

    def test_record_lifecycle(self) -> None:
        res = self.client.post(
            "/objects/Deal/records",
            json={"record": {"dealName": "Roof", "value": 1200, "stage": "Proposal", "contact": "c1"}},
            headers={"X-Actor-Id": "u1"},
        )
        self.assertEqual(res.status_code, 201, res.json())
        record = res.json()["record"]
        self.assertEqual(record["createdBy"], "u1")

        body = self.client.get(f"/objects/Deal/records/{record['id']}").json()
        self.assertEqual(body["labels"], {"contact": "Ada Lovelace"})

        res = self.client.patch(f"/objects/Deal/records/{record['id']}", json={"changes": {"stage": "Closed Won"}})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["record"]["stage"], "Closed Won")

        listing = self.client.get("/objects/Deal/records").json()
        self.assertEqual(len(listing["records"]), 1)

        self.assertEqual(self.client.delete(f"/objects/Deal/records/{record['id']}").status_code, 200)
        self.assertEqual(self.client.delete(f"/objects/Deal/records/{record['id']}").status_code, 404)
        self.assertEqual(self.client.get(f"/objects/Deal/records/{record['id']}").status_code, 404)

    def test_invalid_create(self) -> None:
        res = self.client.post("/objects/Deal/records", json={"record": {"dealName": "Roof", "stage": "Lost"}})
        self.assertEqual(res.status_code, 422)
        body = res.json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["field_errors"], {"value": "MissingRequiredField", "stage": "InvalidFormat"})
        self.assertEqual(main.record_store.get("deals"), [])
        res = self.client.post("/objects/Deal/records", json={"record": {"dealName": "x", "value": 1}, "layoutId": "nope"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(self.client.post("/objects/Quote/records", json={"record": {}}).status_code, 404)

    def test_lookups(self) -> None:
        body = self.client.get("/lookups/Contact/c1").json()
        self.assertEqual((body["label"], body["resolved"]), ("Ada Lovelace", True))
        body = self.client.get("/lookups/Contact/missing").json()
        self.assertEqual((body["label"], body["resolved"]), ("missing", False))
        self.assertEqual(body["warnings"][0]["code"], "UNRESOLVED_LOOKUP")
        options = self.client.get("/lookups/Contact", params={"q": "ada"}).json()["options"]
        self.assertEqual(options, [{"id": "c1", "label": "Ada Lovelace"}])

    def test_reports(self) -> None:
        spec = {
            "objectType": "Product",
            "name": "Big Products",
            "fields": ["productName", "unitPrice"],
            "filters": [{"field": "unitPrice", "operator": "greaterThan", "value": "100"}],
            "sortBy": "unitPrice",
            "sortOrder": "desc",
        }
        records = [
            {"productName": "A", "unitPrice": 50},
            {"productName": "B", "unitPrice": 200},
            {"productName": "C", "unitPrice": 150},
        ]
        body = self.client.post("/reports/run", json={"spec": spec, "records": records}).json()
        self.assertEqual(body["rows"], [{"productName": "B", "unitPrice": 200}, {"productName": "C", "unitPrice": 150}])
        self.assertEqual(body["warnings"][0]["code"], "UNKNOWN_OBJECT")
        res = self.client.post("/reports/export", json={"spec": spec, "records": records})
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.headers["content-type"].startswith("text/csv"))
        self.assertIn("Big_Products_", res.headers["content-disposition"])
        self.assertEqual(res.text.split("\n"), ["productName,unitPrice", '"B","200"', '"C","150"'])
        self.assertEqual(self.client.post("/reports/run", json={"spec": {}}).status_code, 400)

    def test_grouped_report_from_store(self) -> None:
        main.record_store.put("deals", [{"id": "d1", "dealName": "A", "value": 10, "stage": "Proposal"}, {"id": "d2", "dealName": "B", "value": 30}])
        body = self.client.post("/reports/run", json={"objectType": "Deal", "fields": ["dealName", "value"], "groupBy": "stage"}).json()
        self.assertEqual(sorted(body["groups"]), ["Proposal", "Unassigned"])
        self.assertEqual(body["summaries"]["Unassigned"], {"count": 1, "sum": 30.0, "average": 30.0})

    def test_collections(self) -> None:
        res = self.client.put("/collections/widgets", json={"records": [{"id": "w1"}]})
        self.assertEqual(res.json()["count"], 1)
        self.assertEqual(self.client.get("/collections/widgets").json(), {"records": [{"id": "w1"}]})
        self.assertEqual(self.client.put("/collections/widgets", json={"records": "nope"}).status_code, 400)

    def test_visibility_evaluate(self) -> None:
        body = self.client.post(
            "/visibility/evaluate",
            json={"condition": {"field": "stage", "operator": "equals", "value": "Won"}, "record": {"stage": "Lost"}},
        ).json()
        self.assertFalse(body["visible"])
        body = self.client.post("/visibility/evaluate", json={"condition": {"field": "stage", "operator": "??"}, "record": {}}).json()
        self.assertTrue(body["visible"])
        self.assertEqual(body["warnings"][0]["code"], "MALFORMED_CONDITION")

    def test_field_delete(self) -> None:
        res = self.client.delete("/objects/Deal/fields/stage")
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.json()["errors"][0]["code"], "FIELD_IN_LAYOUT")
        self.assertEqual(self.client.delete("/objects/Deal/fields/ghost").status_code, 404)
        res = self.client.delete("/objects/Deal/fields/notes")
        self.assertEqual(res.status_code, 200, res.json())
        self.assertIsNone(main.schema_store.get_head().get_object("Deal").get_field("notes"))
        res = self.client.delete("/objects/Deal/fields/stage", params={"force": "true"})
        self.assertEqual(res.status_code, 200)
        layout = main.schema_store.get_head().get_object("Deal").get_layout("deal-edit")
        self.assertNotIn("stage", layout.field_api_names())


if __name__ == "__main__":
    unittest.main()
