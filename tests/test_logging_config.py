"""
Logging test suite.

Critical invariant tested:
    KEY MATERIAL NEVER REACHES A LOG LINE
"""

import json
import logging
import unittest

from hive_signer.logging_config import (
    AuditLogger,
    StructuredFormatter,
    get_request_id,
    sanitize_for_logging,
    set_request_id,
)


class TestSanitize(unittest.TestCase):

    def test_redacts_nested_fields(self):
        data = {
            "account_name": "skateuser",
            "keys": {"owner": "5Kxyz"},
            "body": {"master_password": "P0abc", "items": [{"seed": "s"}, "plain"]},
            "X-Signer-Token": "secret",
        }
        clean = sanitize_for_logging(data)
        self.assertEqual(clean["account_name"], "skateuser")
        self.assertEqual(clean["keys"], "[REDACTED]")
        self.assertEqual(clean["body"]["master_password"], "[REDACTED]")
        self.assertEqual(clean["body"]["items"], [{"seed": "[REDACTED]"}, "plain"])
        self.assertEqual(clean["X-Signer-Token"], "[REDACTED]")
        # input is not modified
        self.assertEqual(data["keys"], {"owner": "5Kxyz"})


class TestStructuredFormatter(unittest.TestCase):

    def test_json_line_with_request_id(self):
        set_request_id("req-42")
        record = logging.LogRecord("hive_signer", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        record.extra_fields = {"event_type": "X", "private_keys": {"owner": "5K"}}
        line = json.loads(StructuredFormatter().format(record))
        self.assertEqual(line["message"], "hello world")
        self.assertEqual(line["request_id"], "req-42")
        self.assertEqual(line["private_keys"], "[REDACTED]")

    def test_generated_request_id(self):
        rid = set_request_id()
        self.assertEqual(get_request_id(), rid)
        self.assertEqual(len(rid), 36)


class TestAuditLogger(unittest.TestCase):

    def test_event_fields(self):
        audit = AuditLogger("hive_signer.audit.test")
        with self.assertLogs("hive_signer.audit.test", level="INFO") as captured:
            audit.account_created("skateuser", "ab" * 20, "session")
        [record] = captured.records
        self.assertEqual(record.extra_fields["event_type"], "ACCOUNT_CREATED")
        self.assertEqual(record.extra_fields["transaction_id"], "ab" * 20)

    def test_disabled_level_is_skipped(self):
        audit = AuditLogger("hive_signer.audit.quiet")
        with self.assertLogs("hive_signer.audit.quiet", level="INFO") as captured:
            audit.state_transition("sid", "PREPARED", "FINALIZING")
            audit.security_event("auth_failed", severity="medium", auth="invalid")
        self.assertEqual([r.levelno for r in captured.records], [logging.WARNING])


if __name__ == "__main__":
    unittest.main()
