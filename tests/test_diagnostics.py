import os
import sys
import unittest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from app.diagnostics import DiagnosticLog, issue


class TestDiagnostics(unittest.TestCase):
    def test_issue_shape(self) -> None:
        self.assertEqual(
            issue("UNKNOWN_FIELD", "Field not on Deal: colour", "colour"),
            {"code": "UNKNOWN_FIELD", "message": "Field not on Deal: colour", "path": "colour", "detail": None},
        )

    def test_log_collects_and_logs(self) -> None:
        log = DiagnosticLog("render")
        self.assertFalse(log)
        with self.assertLogs("forge.diagnostics", level="WARNING") as captured:
            log(issue("MALFORMED_CONDITION", "Unknown operator", "$.operator"))
            log.report("UNRESOLVED_LOOKUP", "Contact c9 could not be resolved", "contacts.c9", {"reason": "not_found"})
        self.assertEqual(len(log), 2)
        self.assertEqual(log.codes(), ["MALFORMED_CONDITION", "UNRESOLVED_LOOKUP"])
        self.assertIn("source=render", captured.output[0])
        self.assertEqual(log.issues[1]["detail"], {"reason": "not_found"})

    def test_issues_are_copies(self) -> None:
        log = DiagnosticLog()
        item = issue("UNKNOWN_FIELD", "x")
        log.add(item)
        item["code"] = "CHANGED"
        log.issues.append({"code": "EXTRA"})
        self.assertEqual(log.codes(), ["UNKNOWN_FIELD"])
        log.clear()
        self.assertEqual(len(log), 0)


if __name__ == "__main__":
    unittest.main()
