"""test_timeline.py — Change timelines and change-reason rules.

Run from shared_layer directory:
    python3 -m pytest test_timeline.py -v
"""

from __future__ import annotations

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(__file__))

from fakes import FakeVersionTable

from prepg3_shared import timeline
from prepg3_shared.change_reason import get_change_reason, requires_reason, validate_reason
from prepg3_shared.errors import ValidationError
from prepg3_shared.versioned_store import VersionedRecordStore


class TimelineTests(unittest.TestCase):
    def setUp(self):
        self.store = VersionedRecordStore(FakeVersionTable(), "investor")
        self.store.append_version("i1", lambda p: {"firstName": "Ada", "phone": "1"}, "u1", reason="created")
        self.store.append_version("i1", lambda p: dict(p, phone="2"), "u2", reason="new phone")
        self.store.append_version("i1", lambda p: dict(p, city="Leeds"), "u3")

    def test_three_versions(self):
        entries = timeline.build(self.store.get_history("i1"))
        self.assertEqual(len(entries), 3)
        self.assertEqual([e["version"] for e in entries], [3, 2, 1])
        self.assertEqual(entries[0]["changes"], [{"field": "city", "oldValue": None, "newValue": "Leeds"}])
        self.assertEqual(entries[1]["changes"], [{"field": "phone", "oldValue": "1", "newValue": "2"}])
        self.assertEqual(entries[2]["changes"], [])
        self.assertEqual(entries[1]["user"], "u2")
        self.assertEqual(entries[1]["reason"], "new phone")
        self.assertEqual([e["isCurrent"] for e in entries], [True, False, False])

    def test_empty_history(self):
        self.assertEqual(timeline.build([]), [])
        self.assertEqual(timeline.summary("x", [])["totalVersions"], 0)

    def test_summary(self):
        body = timeline.summary("i1", self.store.get_history("i1"))
        self.assertEqual(body["entityId"], "i1")
        self.assertEqual(body["currentVersion"], 3)
        self.assertEqual(body["totalVersions"], 3)
        self.assertEqual(len(body["timeline"]), 3)

    def test_removed_field_has_null_new_value(self):
        self.store.append_version("i1", lambda p: {k: v for k, v in p.items() if k != "city"}, "u4")
        entries = timeline.build(self.store.get_history("i1"))
        self.assertEqual(entries[0]["changes"], [{"field": "city", "oldValue": "Leeds", "newValue": None}])


class ChangeReasonTests(unittest.TestCase):
    def test_critical_field_requires_reason(self):
        with self.assertRaises(ValidationError):
            get_change_reason(["kycStatus"])
        with self.assertRaises(ValidationError):
            get_change_reason(["phone", "bankAccounts"], "   ")

    def test_prefixes(self):
        self.assertEqual(
            get_change_reason(["kycStatus", "accountStatus"], "documents verified"),
            "KYC Status Change: documents verified",
        )
        self.assertEqual(
            get_change_reason(["accountStatus"], "account reopened"),
            "Account Status Change: account reopened",
        )
        self.assertEqual(get_change_reason(["email"], "typo in address"), "Email Change: typo in address")
        self.assertEqual(get_change_reason(["isPEP"], "screening result"), "screening result")

    def test_reason_bounds(self):
        with self.assertRaises(ValidationError):
            get_change_reason(["kycStatus"], "short")
        with self.assertRaises(ValidationError):
            validate_reason("x" * 501)
        self.assertEqual(validate_reason("  long enough reason  "), "long enough reason")

    def test_auto_reasons(self):
        self.assertEqual(
            get_change_reason(["totalInvested"], context={"investmentId": "inv-9"}),
            "Investment inv-9 recorded - portfolio updated",
        )
        self.assertEqual(get_change_reason(["totalROI"]), "Portfolio ROI recalculated")
        self.assertEqual(get_change_reason(["address"]), "Profile information updated by investor")
        self.assertEqual(get_change_reason(["communicationPreferences"]), "Communication preferences updated")
        self.assertEqual(get_change_reason(["firstName", "lastName"]), "Updated: firstName, lastName")

    def test_requires_reason(self):
        self.assertTrue(requires_reason(["phone", "sanctionsCheckStatus"]))
        self.assertFalse(requires_reason(["phone"]))


if __name__ == "__main__":
    unittest.main()
