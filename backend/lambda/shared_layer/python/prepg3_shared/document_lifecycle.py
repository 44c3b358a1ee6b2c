"""prepg3_shared.document_lifecycle — Document status machine and retention purge.

Status flow:

    PENDING_UPLOAD -> UPLOADED -> VERIFIED
          |              |           |
          +--------------+-----------+--> WITHDRAWN
                         |           |
                         +-----------+--> SUPERSEDED

SUPERSEDED and WITHDRAWN are terminal. Every transition appends a new version
to the document's chain; nothing is updated in place. Documents are destroyed
only by ``purge_expired`` once the retention window has passed.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import config, policy, timeline
from .change_reason import validate_reason
from .claims import Claims
from .errors import (
    AppError,
    InconsistentStateError,
    InvalidTransitionError,
    NotFoundError,
    RetentionPolicyViolationError,
    ValidationError,
)
from .observability import CloudWatchMetrics, OperatorAlerts, _emit_structured_observability
from .serialization import _add_years, _format_ts, _now, _parse_ts
from .versioned_store import VersionedRecord, VersionedRecordStore

logger = logging.getLogger(__name__)

PENDING_UPLOAD = "PENDING_UPLOAD"
UPLOADED = "UPLOADED"
VERIFIED = "VERIFIED"
SUPERSEDED = "SUPERSEDED"
WITHDRAWN = "WITHDRAWN"

STATUSES = (PENDING_UPLOAD, UPLOADED, VERIFIED, SUPERSEDED, WITHDRAWN)

_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    PENDING_UPLOAD: (UPLOADED, WITHDRAWN),
    UPLOADED: (VERIFIED, SUPERSEDED, WITHDRAWN),
    VERIFIED: (SUPERSEDED, WITHDRAWN),
    SUPERSEDED: (),
    WITHDRAWN: (),
}

# Capability that gates each target status.
_TRANSITION_CAPABILITY: Dict[str, str] = {
    UPLOADED: "UploadDocument",
    VERIFIED: "VerifyDocument",
    SUPERSEDED: "ReplaceDocument",
    WITHDRAWN: "WithdrawDocument",
}

_REASON_REQUIRED = {SUPERSEDED, WITHDRAWN}

# Review queue order for listAllDocuments.
_STATUS_PRIORITY: Dict[str, int] = {
    UPLOADED: 0,
    PENDING_UPLOAD: 1,
    VERIFIED: 2,
    SUPERSEDED: 3,
    WITHDRAWN: 4,
}

# Statuses whose object bytes are expected to exist.
_STORED_STATUSES = {UPLOADED, VERIFIED, SUPERSEDED}

IDENTITY_DOCUMENT = "IDENTITY_DOCUMENT"

# Attributes owned by the lifecycle; generic record updates may not touch them.
LIFECYCLE_FIELDS = frozenset(
    {
        "status",
        "investorId",
        "s3Bucket",
        "s3Key",
        "createdAt",
        "uploadedAt",
        "uploadedBy",
        "verifiedAt",
        "verifiedBy",
        "supersededAt",
        "supersededBy",
        "supersededReason",
        "withdrawnAt",
        "withdrawnBy",
        "withdrawnReason",
        "replacesDocumentId",
        "replacementReason",
    }
)


def can_transition(current: str, target: str) -> bool:
    return target in _TRANSITIONS.get(current, ())


def _recency(record: VersionedRecord) -> str:
    return str(record.get("uploadedAt") or record.get("createdAt") or record.updated_at or "")


def _object_key(investor_id: str, document_id: str, file_name: str) -> str:
    return f"investors/{investor_id}/documents/{document_id}/v1/{file_name}"


class DocumentLifecycle:
    """Document operations over a version store and a blob store."""

    def __init__(
        self,
        store: VersionedRecordStore,
        blobs: Any,
        metrics: Optional[CloudWatchMetrics] = None,
        alerts: Optional[OperatorAlerts] = None,
        bucket: Optional[str] = None,
        clock: Callable[[], dt.datetime] = _now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.store = store
        self.blobs = blobs
        self.metrics = metrics or CloudWatchMetrics()
        self.alerts = alerts or OperatorAlerts(metrics=self.metrics)
        self.bucket = bucket or config.DOCUMENTS_BUCKET
        self._clock = clock
        self._new_id = id_factory

    def _stamp(self) -> str:
        return _format_ts(self._clock())

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def reserve_upload(
        self,
        claims: Claims,
        investor_id: str,
        document_type: str,
        file_name: str,
        file_type: str,
        file_size: int,
        extra: Optional[Dict[str, Any]] = None,
    ) -> VersionedRecord:
        """Create version 1 of a new document in PENDING_UPLOAD."""
        policy.check("UploadDocument", claims, investor_id)
        missing = [
            name
            for name, value in (
                ("investorId", investor_id),
                ("documentType", document_type),
                ("fileName", file_name),
                ("fileType", file_type),
            )
            if not str(value or "").strip()
        ]
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}", fields=missing)
        if "/" in file_name or file_name in {".", ".."}:
            raise ValidationError("fileName must not contain path separators")
        try:
            size = int(file_size)
        except (TypeError, ValueError):
            raise ValidationError("fileSize must be an integer") from None
        if size <= 0:
            raise ValidationError("fileSize must be positive")

        document_id = self._new_id()
        now = self._stamp()
        payload: Dict[str, Any] = {
            "status": PENDING_UPLOAD,
            "investorId": investor_id,
            "documentType": document_type,
            "fileName": file_name,
            "fileType": file_type,
            "fileSize": size,
            "s3Bucket": self.bucket,
            "s3Key": _object_key(investor_id, document_id, file_name),
            "createdAt": now,
        }
        if extra:
            payload.update(extra)

        record = self.store.append_version(
            document_id,
            lambda current: payload,
            claims.actor,
            reason="Upload slot reserved",
        )
        self.metrics.record("DocumentReserved", 1, {"DocumentType": document_type})
        _emit_structured_observability(
            component="document_lifecycle",
            event="upload_reserved",
            entity_id=document_id,
            actor=claims.actor,
            extra={"investor_id": investor_id, "document_type": document_type},
        )
        return record

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(
        self,
        claims: Claims,
        document_id: str,
        target: str,
        reason: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> VersionedRecord:
        """Move a document to ``target``, appending one version."""
        if target not in STATUSES:
            raise ValidationError(f"Unknown document status: {target}")

        started = time.monotonic()
        current = self.store.get_current(document_id)
        capability = _TRANSITION_CAPABILITY.get(target)
        if capability is None:
            raise InvalidTransitionError(current.get("status"), target, document_id=document_id)
        policy.check(capability, claims, current.get("investorId"))

        if target in _REASON_REQUIRED:
            label = "Reason for replacement" if target == SUPERSEDED else "Reason for withdrawal"
            reason = validate_reason(reason, label)

        actor = claims.actor

        def _apply(payload: Dict[str, Any]) -> Dict[str, Any]:
            status = payload.get("status")
            if not can_transition(status, target):
                raise InvalidTransitionError(status, target, document_id=document_id)
            if target == WITHDRAWN and status == VERIFIED and payload.get("documentType") == IDENTITY_DOCUMENT:
                raise ValidationError(
                    "Cannot withdraw verified identity documents. "
                    "Please upload a replacement document instead."
                )
            now = self._stamp()
            payload["status"] = target
            if target == UPLOADED:
                payload["uploadedAt"] = now
                payload["uploadedBy"] = actor
            elif target == VERIFIED:
                payload["verifiedAt"] = now
                payload["verifiedBy"] = actor
            elif target == SUPERSEDED:
                payload["supersededAt"] = now
                payload["supersededReason"] = reason
            elif target == WITHDRAWN:
                payload["withdrawnAt"] = now
                payload["withdrawnBy"] = actor
                payload["withdrawnReason"] = reason
            if extra:
                payload.update(extra)
            return payload

        record = self.store.append_version(
            document_id,
            _apply,
            actor,
            reason=reason or f"Status changed to {target}",
        )
        self.metrics.record("DocumentStatusTransition", 1, {"Status": target})
        _emit_structured_observability(
            component="document_lifecycle",
            event="status_transition",
            entity_id=document_id,
            actor=actor,
            latency_ms=int((time.monotonic() - started) * 1000),
            extra={"from_status": current.get("status"), "to_status": target, "version": record.version},
        )
        return record

    def upload(
        self,
        claims: Claims,
        document_id: str,
        content: bytes,
    ) -> VersionedRecord:
        """Store the object bytes, then mark the document UPLOADED."""
        current = self.store.get_current(document_id)
        policy.check("UploadDocument", claims, current.get("investorId"))
        status = current.get("status")
        if not can_transition(status, UPLOADED):
            raise InvalidTransitionError(status, UPLOADED, document_id=document_id)
        if not content:
            raise ValidationError("Document content is empty")

        self.blobs.put_object(
            current.get("s3Key"),
            content,
            content_type=current.get("fileType"),
            bucket=current.get("s3Bucket") or self.bucket,
        )
        return self.transition(claims, document_id, UPLOADED, extra={"fileSize": len(content)})

    def confirm(self, claims: Claims, document_id: str) -> VersionedRecord:
        """Mark an out-of-band upload as received."""
        return self.transition(claims, document_id, UPLOADED)

    def verify(self, claims: Claims, document_id: str) -> VersionedRecord:
        return self.transition(claims, document_id, VERIFIED)

    def withdraw(self, claims: Claims, document_id: str, reason: Optional[str]) -> VersionedRecord:
        return self.transition(claims, document_id, WITHDRAWN, reason=reason)

    def replace(
        self,
        claims: Claims,
        document_id: str,
        file_name: str,
        file_type: str,
        file_size: int,
        reason: Optional[str],
    ) -> Dict[str, VersionedRecord]:
        """Reserve a replacement for ``document_id`` and supersede the old one."""
        reason = validate_reason(reason, "Reason for replacement")
        old = self.store.get_current(document_id)
        policy.check("ReplaceDocument", claims, old.get("investorId"))
        status = old.get("status")
        if not can_transition(status, SUPERSEDED):
            raise InvalidTransitionError(status, SUPERSEDED, document_id=document_id)

        new = self.reserve_upload(
            claims,
            old.get("investorId"),
            old.get("documentType"),
            file_name,
            file_type,
            file_size,
            extra={"replacesDocumentId": document_id, "replacementReason": reason},
        )
        superseded = self.transition(
            claims,
            document_id,
            SUPERSEDED,
            reason=reason,
            extra={"supersededBy": new.id},
        )
        logger.info("document %s replaced by %s", document_id, new.id)
        return {"document": new, "replacedDocument": superseded}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_document(self, claims: Claims, document_id: str) -> Dict[str, Any]:
        """Current version plus a short-lived download URL when the bytes exist."""
        record = self.store.get_current(document_id)
        policy.check("ViewDocument", claims, record.get("investorId"))
        out = record.as_dict()
        if record.get("status") in _STORED_STATUSES and record.get("s3Key"):
            ttl = config.DOWNLOAD_URL_TTL_SECONDS
            out["downloadUrl"] = self.blobs.signed_read_url(
                record.get("s3Key"), ttl, bucket=record.get("s3Bucket") or self.bucket
            )
            out["downloadUrlExpiresAt"] = _format_ts(self._clock() + dt.timedelta(seconds=ttl))
        return out

    def get_history(self, claims: Claims, document_id: str) -> Dict[str, Any]:
        history = self.store.get_history(document_id)
        if not history:
            raise NotFoundError("Document", entity_id=document_id)
        policy.check("ViewDocumentHistory", claims, history[0].get("investorId"))
        return timeline.summary(document_id, history)

    def list_my_documents(self, claims: Claims, include_withdrawn: bool = False) -> List[VersionedRecord]:
        """The caller's own current documents, newest first."""
        owner_id = claims.owner_id
        policy.check("ViewDocument", claims, owner_id)
        if not owner_id:
            return []

        def _mine(record: VersionedRecord) -> bool:
            if record.get("investorId") != owner_id:
                return False
            return include_withdrawn or record.get("status") != WITHDRAWN

        return sorted(self.store.scan_current(_mine), key=_recency, reverse=True)

    def list_all_documents(
        self,
        claims: Claims,
        investor_id: Optional[str] = None,
        status: Optional[str] = None,
        document_type: Optional[str] = None,
        include_withdrawn: bool = False,
    ) -> List[VersionedRecord]:
        """Every current document matching the filters, in review-queue order."""
        policy.check("ViewAllDocuments", claims)
        if status and status not in STATUSES:
            raise ValidationError(f"Unknown document status: {status}")

        def _matches(record: VersionedRecord) -> bool:
            if investor_id and record.get("investorId") != investor_id:
                return False
            if status and record.get("status") != status:
                return False
            if document_type and record.get("documentType") != document_type:
                return False
            if record.get("status") == WITHDRAWN and not include_withdrawn and status != WITHDRAWN:
                return False
            return True

        records = sorted(self.store.scan_current(_matches), key=_recency, reverse=True)
        records.sort(key=lambda r: _STATUS_PRIORITY.get(r.get("status"), len(_STATUS_PRIORITY)))
        return records

    # ------------------------------------------------------------------
    # Retention purge
    # ------------------------------------------------------------------

    def earliest_deletion_date(self, history: List[VersionedRecord]) -> dt.datetime:
        """Retention anchor (uploadedAt, else createdAt) plus the retention window."""
        anchor = None
        for record in history:
            anchor = _parse_ts(record.get("uploadedAt")) or _parse_ts(record.get("createdAt"))
            if anchor is not None:
                break
        if anchor is None:
            anchor = _parse_ts(history[-1].updated_at) or self._clock()
        return _add_years(anchor, config.RETENTION_YEARS)

    def purge_expired(self, claims: Claims, document_id: str, confirm: bool = False) -> Dict[str, Any]:
        """Permanently destroy a document whose retention window has passed.

        Object bytes go first, then the table versions. A failure after the
        first destructive step raises InconsistentStateError and alerts the
        operator; running the purge again finishes the job.
        """
        policy.check("DeleteDocumentPermanently", claims, confirmed=confirm)
        started = time.monotonic()

        history = self.store.get_history(document_id)
        if not history:
            raise NotFoundError("Document", entity_id=document_id)

        earliest = self.earliest_deletion_date(history)
        if not self._clock() > earliest:
            raise RetentionPolicyViolationError(earliest, document_id=document_id)

        objects: List[Tuple[str, str]] = []
        for record in history:
            key = record.get("s3Key")
            if not key:
                continue
            ref = (record.get("s3Bucket") or self.bucket, key)
            if ref not in objects:
                objects.append(ref)

        destroyed = 0
        try:
            for bucket, key in objects:
                self.blobs.delete_object(key, bucket=bucket)
                destroyed += 1
            # Re-read the chain so versions appended meanwhile are purged too.
            deleted_versions = self.store.purge_all_versions(document_id)
        except AppError as exc:
            versions_deleted = int(exc.details.get("versionsDeleted") or 0)
            if destroyed == 0 and versions_deleted == 0:
                raise
            detail = {
                "document_id": document_id,
                "objects_deleted": destroyed,
                "versions_deleted": versions_deleted,
                "objects_total": len(objects),
                "error_code": exc.code,
            }
            self.alerts.inconsistent_state("document", document_id, detail)
            _emit_structured_observability(
                component="document_lifecycle",
                event="purge_incomplete",
                entity_id=document_id,
                actor=claims.actor,
                latency_ms=int((time.monotonic() - started) * 1000),
                error_code=InconsistentStateError.code,
            )
            raise InconsistentStateError(document_id=document_id) from exc

        self.metrics.record("DocumentPurged", 1)
        _emit_structured_observability(
            component="document_lifecycle",
            event="document_purged",
            entity_id=document_id,
            actor=claims.actor,
            latency_ms=int((time.monotonic() - started) * 1000),
            extra={"versions_deleted": deleted_versions, "objects_deleted": destroyed},
        )
        return {
            "success": True,
            "documentId": document_id,
            "deletedVersions": deleted_versions,
            "deletedObjects": destroyed,
        }
