"""test_document_lifecycle.py — Document status machine, listings and purge.

Run from shared_layer directory:
    python3 -m pytest test_document_lifecycle.py -v
"""

from __future__ import annotations

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(__file__))

from fakes import Clock, FakeBlobStore, FakeVersionTable, RecordingAlerts, RecordingMetrics, make_claims

from prepg3_shared.claims import Role
from prepg3_shared.document_lifecycle import (
    PENDING_UPLOAD,
    SUPERSEDED,
    UPLOADED,
    VERIFIED,
    WITHDRAWN,
    DocumentLifecycle,
    can_transition,
)
from prepg3_shared.errors import (
    AuthorizationError,
    ConfirmationRequiredError,
    InconsistentStateError,
    InvalidTransitionError,
    NotFoundError,
    RetentionPolicyViolationError,
    StorageUnavailableError,
    ValidationError,
)
from prepg3_shared.versioned_store import VersionedRecordStore

PDF = b"%PDF-1.4 test"


class LifecycleTestCase(unittest.TestCase):
    def setUp(self):
        self.clock = Clock()
        self.table = FakeVersionTable()
        self.store = VersionedRecordStore(self.table, "document")
        self.blobs = FakeBlobStore("docs-bucket")
        self.metrics = RecordingMetrics()
        self.alerts = RecordingAlerts()
        ids = iter(f"doc-{n}" for n in range(1, 20))
        self.lifecycle = DocumentLifecycle(
            self.store,
            self.blobs,
            metrics=self.metrics,
            alerts=self.alerts,
            bucket="docs-bucket",
            clock=self.clock,
            id_factory=lambda: next(ids),
        )
        self.investor = make_claims(Role.INVESTOR, owner_id="inv-1", email="ada@example.com")
        self.other = make_claims(Role.INVESTOR, owner_id="inv-2", subject_id="user-2")
        self.compliance = make_claims(Role.COMPLIANCE, subject_id="compliance-1")
        self.admin = make_claims(Role.ADMIN, subject_id="admin-1")
        self.super_admin = make_claims(Role.SUPER_ADMIN, subject_id="root-1")

    def _reserve(self, document_type="PROOF_OF_ADDRESS", file_name="bill.pdf", claims=None, investor_id="inv-1"):
        return self.lifecycle.reserve_upload(
            claims or self.investor, investor_id, document_type, file_name, "application/pdf", 1024
        )

    def _uploaded(self, **kwargs):
        record = self._reserve(**kwargs)
        return self.lifecycle.upload(self.investor, record.id, PDF)

    def _verified(self, **kwargs):
        record = self._uploaded(**kwargs)
        return self.lifecycle.verify(self.compliance, record.id)


class TransitionTableTests(unittest.TestCase):
    def test_allowed(self):
        self.assertTrue(can_transition(PENDING_UPLOAD, UPLOADED))
        self.assertTrue(can_transition(PENDING_UPLOAD, WITHDRAWN))
        self.assertTrue(can_transition(UPLOADED, VERIFIED))
        self.assertTrue(can_transition(UPLOADED, SUPERSEDED))
        self.assertTrue(can_transition(VERIFIED, SUPERSEDED))
        self.assertTrue(can_transition(VERIFIED, WITHDRAWN))

    def test_disallowed(self):
        self.assertFalse(can_transition(PENDING_UPLOAD, VERIFIED))
        self.assertFalse(can_transition(VERIFIED, UPLOADED))
        self.assertFalse(can_transition(SUPERSEDED, WITHDRAWN))
        self.assertFalse(can_transition(WITHDRAWN, UPLOADED))
        self.assertFalse(can_transition(None, UPLOADED))


class ReserveUploadTests(LifecycleTestCase):
    def test_reserve_creates_pending_version_one(self):
        record = self._reserve()
        self.assertEqual(record.id, "doc-1")
        self.assertEqual(record.version, 1)
        self.assertEqual(record.get("status"), PENDING_UPLOAD)
        self.assertEqual(record.get("s3Key"), "investors/inv-1/documents/doc-1/v1/bill.pdf")
        self.assertEqual(record.get("s3Bucket"), "docs-bucket")
        self.assertEqual(record.get("createdAt"), "2024-03-01T12:00:00Z")
        self.assertEqual(record.updated_by, "ada@example.com")
        self.assertIn("DocumentReserved", self.metrics.names())

    def test_reserve_for_another_investor_denied(self):
        with self.assertRaises(AuthorizationError):
            self._reserve(investor_id="inv-2")

    def test_admin_may_reserve_for_any_investor(self):
        record = self._reserve(claims=self.admin, investor_id="inv-2")
        self.assertEqual(record.get("investorId"), "inv-2")

    def test_reserve_validation(self):
        with self.assertRaises(ValidationError):
            self._reserve(file_name="../etc/passwd")
        with self.assertRaises(ValidationError):
            self._reserve(document_type="")
        with self.assertRaises(ValidationError):
            self.lifecycle.reserve_upload(self.investor, "inv-1", "PROOF_OF_ADDRESS", "a.pdf", "application/pdf", 0)
        self.assertEqual(self.table.items, {})


class TransitionTests(LifecycleTestCase):
    def test_full_forward_sequence(self):
        record = self._reserve()
        uploaded = self.lifecycle.upload(self.investor, record.id, PDF)
        self.assertEqual(uploaded.get("status"), UPLOADED)
        self.assertEqual(uploaded.get("uploadedBy"), "ada@example.com")
        self.assertEqual(uploaded.get("fileSize"), len(PDF))
        self.assertEqual(
            self.blobs.objects[("docs-bucket", "investors/inv-1/documents/doc-1/v1/bill.pdf")],
            (PDF, "application/pdf"),
        )

        verified = self.lifecycle.verify(self.compliance, record.id)
        self.assertEqual(verified.get("status"), VERIFIED)
        self.assertEqual(verified.get("verifiedBy"), "compliance-1")
        self.assertEqual(verified.version, 3)
        self.assertEqual(verified.changed_fields, ("status", "verifiedAt", "verifiedBy"))

        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.confirm(self.investor, record.id)
        self.assertEqual(self.store.get_current(record.id).version, 3)

    def test_terminal_states_reject_transitions(self):
        record = self._reserve()
        self.lifecycle.withdraw(self.investor, record.id, "uploaded the wrong file")
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.confirm(self.investor, record.id)
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.withdraw(self.investor, record.id, "uploaded the wrong file")

    def test_transition_back_to_pending_rejected(self):
        record = self._uploaded()
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.transition(self.admin, record.id, PENDING_UPLOAD)

    def test_unknown_status_rejected(self):
        record = self._reserve()
        with self.assertRaises(ValidationError):
            self.lifecycle.transition(self.admin, record.id, "ARCHIVED")

    def test_verify_requires_compliance(self):
        record = self._uploaded()
        with self.assertRaises(AuthorizationError):
            self.lifecycle.verify(self.investor, record.id)

    def test_verify_pending_document_rejected(self):
        record = self._reserve()
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.verify(self.compliance, record.id)

    def test_upload_into_non_pending_rejected_before_writing_bytes(self):
        record = self._uploaded()
        self.blobs.objects.clear()
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.upload(self.investor, record.id, b"other")
        self.assertEqual(self.blobs.objects, {})

    def test_upload_empty_content_rejected(self):
        record = self._reserve()
        with self.assertRaises(ValidationError):
            self.lifecycle.upload(self.investor, record.id, b"")

    def test_upload_other_investors_document_denied(self):
        record = self._reserve()
        with self.assertRaises(AuthorizationError):
            self.lifecycle.upload(self.other, record.id, PDF)

    def test_withdraw_requires_reason(self):
        record = self._uploaded()
        with self.assertRaises(ValidationError):
            self.lifecycle.withdraw(self.investor, record.id, "oops")
        with self.assertRaises(ValidationError):
            self.lifecycle.withdraw(self.investor, record.id, None)

    def test_withdraw_sets_fields(self):
        record = self._uploaded()
        withdrawn = self.lifecycle.withdraw(self.investor, record.id, "no longer relevant")
        self.assertEqual(withdrawn.get("status"), WITHDRAWN)
        self.assertEqual(withdrawn.get("withdrawnBy"), "ada@example.com")
        self.assertEqual(withdrawn.get("withdrawnReason"), "no longer relevant")
        self.assertEqual(withdrawn.change_reason, "no longer relevant")
        self.assertIn(("DocumentStatusTransition", 1, {"Status": WITHDRAWN}), self.metrics.records)

    def test_verified_identity_document_cannot_be_withdrawn(self):
        record = self._verified(document_type="IDENTITY_DOCUMENT", file_name="passport.pdf")
        with self.assertRaises(ValidationError):
            self.lifecycle.withdraw(self.investor, record.id, "do not want this any more")

    def test_withdraw_other_investors_document_denied(self):
        record = self._uploaded()
        with self.assertRaises(AuthorizationError):
            self.lifecycle.withdraw(self.other, record.id, "not my document at all")


class ReplaceTests(LifecycleTestCase):
    def test_replace_links_documents(self):
        old = self._verified()
        result = self.lifecycle.replace(
            self.investor, old.id, "bill-2024.pdf", "application/pdf", 2048, "newer utility bill available"
        )
        new, superseded = result["document"], result["replacedDocument"]
        self.assertEqual(new.get("status"), PENDING_UPLOAD)
        self.assertEqual(new.get("replacesDocumentId"), old.id)
        self.assertEqual(new.get("replacementReason"), "newer utility bill available")
        self.assertEqual(new.get("documentType"), "PROOF_OF_ADDRESS")
        self.assertEqual(superseded.get("status"), SUPERSEDED)
        self.assertEqual(superseded.get("supersededBy"), new.id)
        self.assertEqual(superseded.get("supersededReason"), "newer utility bill available")

    def test_replace_requires_reason(self):
        old = self._uploaded()
        with self.assertRaises(ValidationError):
            self.lifecycle.replace(self.investor, old.id, "b.pdf", "application/pdf", 10, "short")
        self.assertEqual(len(self.store.scan_current()), 1)

    def test_replace_pending_document_rejected(self):
        old = self._reserve()
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.replace(self.investor, old.id, "b.pdf", "application/pdf", 10, "a better scan of it")
        self.assertEqual(len(self.store.scan_current()), 1)


class ReadTests(LifecycleTestCase):
    def test_get_document_ownership(self):
        record = self._reserve()
        with self.assertRaises(AuthorizationError):
            self.lifecycle.get_document(self.other, record.id)
        body = self.lifecycle.get_document(self.investor, record.id)
        self.assertEqual(body["id"], record.id)
        self.assertTrue(body["isCurrent"])
        self.assertNotIn("downloadUrl", body)

    def test_get_document_signed_url_once_uploaded(self):
        record = self._uploaded()
        body = self.lifecycle.get_document(self.investor, record.id)
        self.assertIn("X-Amz-Expires=300", body["downloadUrl"])
        self.assertEqual(body["downloadUrlExpiresAt"], "2024-03-01T12:05:00Z")

    def test_get_document_missing(self):
        with self.assertRaises(NotFoundError):
            self.lifecycle.get_document(self.investor, "nope")

    def test_history_timeline(self):
        record = self._uploaded()
        body = self.lifecycle.get_history(self.investor, record.id)
        self.assertEqual(body["totalVersions"], 2)
        self.assertEqual(body["currentVersion"], 2)
        first_change = body["timeline"][0]["changes"][0]
        self.assertEqual(first_change, {"field": "status", "oldValue": PENDING_UPLOAD, "newValue": UPLOADED})
        self.assertEqual(body["timeline"][1]["changes"], [])
        with self.assertRaises(AuthorizationError):
            self.lifecycle.get_history(self.other, record.id)

    def test_list_my_documents(self):
        first = self._uploaded()
        self.clock.advance(minutes=5)
        second = self._reserve(file_name="second.pdf")
        self.lifecycle.withdraw(self.investor, first.id, "replaced outside the portal")
        self._reserve(claims=self.admin, investor_id="inv-2")

        mine = self.lifecycle.list_my_documents(self.investor)
        self.assertEqual([r.id for r in mine], [second.id])
        everything = self.lifecycle.list_my_documents(self.investor, include_withdrawn=True)
        self.assertEqual([r.id for r in everything], [second.id, first.id])

    def test_list_my_documents_without_owner_claim(self):
        self._reserve()
        self.assertEqual(self.lifecycle.list_my_documents(self.admin), [])

    def test_list_all_documents_priority_order(self):
        verified = self._verified(file_name="a.pdf")
        self.clock.advance(minutes=1)
        pending = self._reserve(file_name="b.pdf")
        self.clock.advance(minutes=1)
        uploaded = self._uploaded(file_name="c.pdf")
        self.clock.advance(minutes=1)
        withdrawn = self._reserve(file_name="d.pdf")
        self.lifecycle.withdraw(self.investor, withdrawn.id, "duplicate of another upload")

        listed = self.lifecycle.list_all_documents(self.compliance)
        self.assertEqual([r.id for r in listed], [uploaded.id, pending.id, verified.id])

        listed = self.lifecycle.list_all_documents(self.compliance, include_withdrawn=True)
        self.assertEqual(listed[-1].id, withdrawn.id)

        only_withdrawn = self.lifecycle.list_all_documents(self.compliance, status=WITHDRAWN)
        self.assertEqual([r.id for r in only_withdrawn], [withdrawn.id])

    def test_list_all_documents_filters(self):
        self._reserve()
        other = self._reserve(claims=self.admin, investor_id="inv-2", document_type="BANK_STATEMENT")
        by_investor = self.lifecycle.list_all_documents(self.compliance, investor_id="inv-2")
        self.assertEqual([r.id for r in by_investor], [other.id])
        by_type = self.lifecycle.list_all_documents(self.compliance, document_type="BANK_STATEMENT")
        self.assertEqual([r.id for r in by_type], [other.id])
        with self.assertRaises(ValidationError):
            self.lifecycle.list_all_documents(self.compliance, status="LOST")

    def test_list_all_documents_requires_compliance(self):
        with self.assertRaises(AuthorizationError):
            self.lifecycle.list_all_documents(self.investor)


class PurgeTests(LifecycleTestCase):
    def setUp(self):
        super().setUp()
        self.record = self._uploaded()
        self.key = ("docs-bucket", "investors/inv-1/documents/doc-1/v1/bill.pdf")

    def test_purge_within_retention_window_fails(self):
        self.clock.now = self.clock.now.replace(year=2030)
        with self.assertRaises(RetentionPolicyViolationError) as ctx:
            self.lifecycle.purge_expired(self.super_admin, self.record.id, confirm=True)
        self.assertEqual(ctx.exception.details["earliestDeletionDate"], "2031-03-01T12:00:00Z")
        self.assertEqual(self.table.versions_of(self.record.id), [1, 2])
        self.assertIn(self.key, self.blobs.objects)

    def test_purge_exactly_at_window_boundary_fails(self):
        self.clock.now = self.clock.now.replace(year=2031)
        with self.assertRaises(RetentionPolicyViolationError):
            self.lifecycle.purge_expired(self.super_admin, self.record.id, confirm=True)

    def test_purge_after_retention_window(self):
        self.clock.now = self.clock.now.replace(year=2032)
        result = self.lifecycle.purge_expired(self.super_admin, self.record.id, confirm=True)
        self.assertEqual(result["deletedVersions"], 2)
        self.assertEqual(result["deletedObjects"], 1)
        self.assertEqual(self.table.versions_of(self.record.id), [])
        self.assertEqual(self.blobs.objects, {})
        self.assertIn("DocumentPurged", self.metrics.names())
        with self.assertRaises(NotFoundError):
            self.lifecycle.purge_expired(self.super_admin, self.record.id, confirm=True)

    def test_purge_requires_confirmation(self):
        self.clock.now = self.clock.now.replace(year=2032)
        with self.assertRaises(ConfirmationRequiredError):
            self.lifecycle.purge_expired(self.super_admin, self.record.id)
        self.assertIn(self.key, self.blobs.objects)

    def test_purge_requires_super_admin(self):
        self.clock.now = self.clock.now.replace(year=2032)
        with self.assertRaises(AuthorizationError):
            self.lifecycle.purge_expired(self.admin, self.record.id, confirm=True)

    def test_table_failure_after_blob_delete_is_reported(self):
        self.clock.now = self.clock.now.replace(year=2032)
        self.table.fail_deletes = True
        with self.assertRaises(InconsistentStateError):
            self.lifecycle.purge_expired(self.super_admin, self.record.id, confirm=True)
        self.assertEqual(self.blobs.objects, {})
        self.assertEqual(self.table.versions_of(self.record.id), [1, 2])
        self.assertEqual(len(self.alerts.alerts), 1)
        kind, entity_id, detail = self.alerts.alerts[0]
        self.assertEqual((kind, entity_id), ("document", self.record.id))
        self.assertEqual(detail["objects_deleted"], 1)

        # Re-running completes the cleanup.
        self.table.fail_deletes = False
        self.lifecycle.purge_expired(self.super_admin, self.record.id, confirm=True)
        self.assertEqual(self.table.versions_of(self.record.id), [])

    def test_partial_table_purge_keeps_current_version(self):
        self.lifecycle.verify(self.compliance, self.record.id)
        self.clock.now = self.clock.now.replace(year=2032)
        self.table.fail_deletes = True
        self.table.deletes_before_failure = 1
        with self.assertRaises(InconsistentStateError):
            self.lifecycle.purge_expired(self.super_admin, self.record.id, confirm=True)
        self.assertEqual(self.table.deleted, [1])
        self.assertEqual(self.table.versions_of(self.record.id), [2, 3])
        current = self.store.get_current(self.record.id)
        self.assertEqual((current.version, current.get("status")), (3, VERIFIED))
        detail = self.alerts.alerts[0][2]
        self.assertEqual(detail["versions_deleted"], 1)

        self.table.fail_deletes = False
        result = self.lifecycle.purge_expired(self.super_admin, self.record.id, confirm=True)
        self.assertEqual(result["deletedVersions"], 2)
        self.assertEqual(self.table.deleted, [1, 2, 3])
        self.assertEqual(self.table.versions_of(self.record.id), [])

    def test_versions_appended_during_purge_are_removed(self):
        def _late_write(blobs, key):
            self.store.append_version(self.record.id, lambda p: p.update(note="late"), "late-writer")

        self.blobs.before_delete = _late_write
        self.clock.now = self.clock.now.replace(year=2032)
        result = self.lifecycle.purge_expired(self.super_admin, self.record.id, confirm=True)
        self.assertEqual(result["deletedVersions"], 3)
        self.assertEqual(self.table.versions_of(self.record.id), [])

    def test_blob_failure_before_anything_deleted_propagates(self):
        self.clock.now = self.clock.now.replace(year=2032)
        self.blobs.fail_deletes = True
        with self.assertRaises(StorageUnavailableError):
            self.lifecycle.purge_expired(self.super_admin, self.record.id, confirm=True)
        self.assertEqual(self.alerts.alerts, [])
        self.assertEqual(self.table.versions_of(self.record.id), [1, 2])


if __name__ == "__main__":
    unittest.main()
