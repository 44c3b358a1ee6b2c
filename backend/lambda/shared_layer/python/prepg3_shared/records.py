"""prepg3_shared.records — Authorized record operations per entity kind.

``RecordService`` wraps a VersionedRecordStore with the capability checks,
field rules and change reasons of one entity kind (document, investor,
property). Document status changes do not go through here; they belong to
DocumentLifecycle.
"""

from __future__ import annotations

import copy
import logging
import re
import uuid
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Tuple

from . import policy, timeline
from .change_reason import get_change_reason, validate_reason
from .claims import Claims
from .document_lifecycle import LIFECYCLE_FIELDS
from .errors import AppError, ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from .observability import CloudWatchMetrics, _emit_structured_observability
from .serialization import _now_z
from .versioned_store import RESERVED_FIELDS, VersionedRecord, VersionedRecordStore, changed_fields

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^[\d\s\-\+\(\)]+$")

KYC_PENDING = "PENDING"
KYC_IN_PROGRESS = "IN_PROGRESS"
KYC_APPROVED = "APPROVED"
KYC_REJECTED = "REJECTED"
KYC_MORE_INFO_REQUIRED = "MORE_INFO_REQUIRED"

_REVIEW_STATUSES = (KYC_PENDING, KYC_IN_PROGRESS, KYC_MORE_INFO_REQUIRED)


class EntityKind(NamedTuple):
    name: str
    view: str
    history: str
    create: str
    update: str
    owner_of: Callable[[str, Dict[str, Any]], Optional[str]]
    required: Tuple[str, ...] = ()
    # field -> capability needed (in addition to ``update``) to change it
    guarded: Dict[str, str] = {}
    # fields generic updates may never change
    locked: FrozenSet[str] = frozenset()


KINDS: Dict[str, EntityKind] = {
    "document": EntityKind(
        name="document",
        view="ViewDocument",
        history="ViewDocumentHistory",
        create="UploadDocument",
        update="UploadDocument",
        owner_of=lambda entity_id, payload: payload.get("investorId"),
        required=("investorId", "documentType", "fileName"),
        locked=LIFECYCLE_FIELDS,
    ),
    "investor": EntityKind(
        name="investor",
        view="ViewInvestor",
        history="ViewInvestor",
        create="CreateInvestor",
        update="UpdateInvestor",
        owner_of=lambda entity_id, payload: entity_id,
        required=("email", "firstName", "lastName"),
        guarded={
            "email": "ChangeInvestorEmail",
            "kycStatus": "ApproveKYC",
            "amlCheckStatus": "ApproveKYC",
            "sanctionsCheckStatus": "ApproveKYC",
            "accountStatus": "ManageUsers",
            "isPEP": "ApproveKYC",
        },
    ),
    "property": EntityKind(
        name="property",
        view="ViewProperty",
        history="ViewProperty",
        create="CreateProperty",
        update="UpdateProperty",
        owner_of=lambda entity_id, payload: None,
        required=("propertyName",),
        guarded={
            "status": "UpdatePropertyListingStatus",
            "listingStatus": "UpdatePropertyListingStatus",
        },
    ),
}


def _validate_fields(changes: Dict[str, Any]) -> None:
    email = changes.get("email")
    if email is not None and not _EMAIL_RE.match(str(email)):
        raise ValidationError("Invalid email format", field="email")
    phone = changes.get("phone")
    if phone and not _PHONE_RE.match(str(phone)):
        raise ValidationError("Invalid phone number format", field="phone")
    for name in ("firstName", "lastName", "propertyName"):
        if name in changes and changes[name] is not None and not str(changes[name]).strip():
            raise ValidationError(f"{name} cannot be empty", field=name)


def _last_touched(record: VersionedRecord) -> str:
    return record.updated_at or str(record.get("createdAt") or "")


class RecordService:
    """getCurrent / getHistory / getVersion / appendVersion / create for one kind."""

    def __init__(
        self,
        kind: str,
        store: VersionedRecordStore,
        metrics: Optional[CloudWatchMetrics] = None,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        if kind not in KINDS:
            raise ValueError(f"Unknown record kind: {kind}")
        self.kind = KINDS[kind]
        self.store = store
        self.metrics = metrics or CloudWatchMetrics()
        self._new_id = id_factory

    @property
    def _label(self) -> str:
        return self.kind.name.capitalize()

    def _owner(self, record: VersionedRecord) -> Optional[str]:
        return self.kind.owner_of(record.id, record.payload)

    def get_current(self, claims: Claims, entity_id: str) -> VersionedRecord:
        record = self.store.get_current(entity_id)
        policy.check(self.kind.view, claims, self._owner(record))
        return record

    def get_history(self, claims: Claims, entity_id: str) -> Dict[str, Any]:
        history = self.store.get_history(entity_id)
        if not history:
            raise NotFoundError(self._label, entity_id=entity_id)
        policy.check(self.kind.history, claims, self._owner(history[0]))
        return timeline.summary(entity_id, history)

    def get_version(self, claims: Claims, entity_id: str, version: int) -> VersionedRecord:
        try:
            version = int(version)
        except (TypeError, ValueError):
            raise ValidationError("version must be an integer") from None
        # Ownership is judged on the current version; it may have moved.
        current = self.store.get_current(entity_id)
        policy.check(self.kind.history, claims, self._owner(current))
        return self.store.get_version(entity_id, version)

    def create(
        self,
        claims: Claims,
        payload: Dict[str, Any],
        entity_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> VersionedRecord:
        """Write version 1 of a new record."""
        payload = {k: v for k, v in (payload or {}).items() if v is not None}
        guarded = [n for n in payload if n in self.kind.guarded and n not in self.kind.required]
        if self.kind.name == "investor":
            entity_id = entity_id or claims.owner_id or self._new_id()
            payload.setdefault("kycStatus", KYC_PENDING)
            payload.setdefault("userId", claims.subject_id)
        else:
            entity_id = entity_id or self._new_id()

        policy.check(self.kind.create, claims, self.kind.owner_of(entity_id, payload))
        for name in guarded:
            policy.check(self.kind.guarded[name], claims)

        reserved = sorted(set(payload) & set(RESERVED_FIELDS))
        if reserved:
            raise ValidationError(f"Reserved attribute(s) cannot be set: {', '.join(reserved)}")
        missing = [name for name in self.kind.required if not str(payload.get(name) or "").strip()]
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}", fields=missing)
        _validate_fields(payload)
        if "email" in payload:
            payload["email"] = str(payload["email"]).strip().lower()
        payload.setdefault("createdAt", _now_z())

        def _create(current: Dict[str, Any]) -> Dict[str, Any]:
            if current:
                raise ConflictError(f"{self._label} already exists", entity_id=entity_id)
            return payload

        record = self.store.append_version(
            entity_id,
            _create,
            claims.actor,
            reason=reason or f"{self._label} created",
        )
        _emit_structured_observability(
            component="records",
            event=f"{self.kind.name}_created",
            entity_id=entity_id,
            actor=claims.actor,
        )
        return record

    def append_version(
        self,
        claims: Claims,
        entity_id: str,
        changes: Dict[str, Any],
        reason: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> VersionedRecord:
        """Apply ``changes`` (None removes an attribute) as a new version."""
        changes = dict(changes or {})
        changes.pop("id", None)
        if not changes:
            raise ValidationError("No changes supplied")

        current = self.store.get_current(entity_id)
        policy.check(self.kind.update, claims, self._owner(current))

        reserved = sorted(set(changes) & set(RESERVED_FIELDS))
        if reserved:
            raise ValidationError(f"Reserved attribute(s) cannot be set: {', '.join(reserved)}")
        locked = sorted(set(changes) & self.kind.locked)
        if locked:
            raise ValidationError(
                f"Field(s) managed by the {self.kind.name} lifecycle: {', '.join(locked)}",
                fields=locked,
            )
        _validate_fields(changes)
        if changes.get("email"):
            changes["email"] = str(changes["email"]).strip().lower()

        for name, value in changes.items():
            capability = self.kind.guarded.get(name)
            if capability and current.payload.get(name) != value:
                policy.check(capability, claims)

        def _apply(payload: Dict[str, Any]) -> Dict[str, Any]:
            for name, value in changes.items():
                if value is None:
                    payload.pop(name, None)
                else:
                    payload[name] = value
            return payload

        if not changed_fields(current.payload, _apply(copy.deepcopy(current.payload))):
            logger.info("%s %s: no changes detected, keeping version %d", self.kind.name, entity_id, current.version)
            return current

        record = self.store.append_version(
            entity_id,
            _apply,
            claims.actor,
            reason=lambda fields: get_change_reason(fields, reason, context),
        )
        _emit_structured_observability(
            component="records",
            event=f"{self.kind.name}_updated",
            entity_id=entity_id,
            actor=claims.actor,
            extra={"version": record.version, "changed_fields": list(record.changed_fields)},
        )
        return record

    # ------------------------------------------------------------------
    # Investor KYC decisions
    # ------------------------------------------------------------------

    def _decide_kyc(
        self,
        claims: Claims,
        capability: str,
        investor_id: str,
        decision: str,
        reason: str,
        extra: Dict[str, Any],
    ) -> VersionedRecord:
        if self.kind.name != "investor":
            raise ValueError("KYC decisions apply to investors only")
        policy.check(capability, claims)
        current = self.store.get_current(investor_id)
        method = str((current.get("identityVerification") or {}).get("verificationMethod") or "MANUAL")

        def _apply(payload: Dict[str, Any]) -> Dict[str, Any]:
            status = payload.get("kycStatus") or KYC_PENDING
            if status == decision:
                raise InvalidTransitionError(status, decision, investor_id=investor_id)
            payload["kycStatus"] = decision
            payload["kycDecidedAt"] = _now_z()
            payload["kycDecidedBy"] = claims.actor
            payload.update(extra)
            return payload

        record = self.store.append_version(
            investor_id,
            _apply,
            claims.actor,
            reason=lambda fields: get_change_reason(fields, reason),
        )
        logger.info("KYC %s for investor %s by %s (version %d)", decision, investor_id, claims.actor, record.version)
        self.metrics.record("KYCDecision", 1, {"Decision": decision, "Method": method})
        _emit_structured_observability(
            component="records",
            event="kyc_decision",
            entity_id=investor_id,
            actor=claims.actor,
            extra={"decision": decision, "version": record.version},
        )
        return record

    def approve_kyc(self, claims: Claims, investor_id: str, notes: Optional[str] = None) -> VersionedRecord:
        reason = f"KYC approved by {claims.actor}"
        if notes and notes.strip():
            reason = f"{reason}. {notes.strip()}"
        return self._decide_kyc(
            claims,
            "ApproveKYC",
            investor_id,
            KYC_APPROVED,
            reason[:500],
            {"accountStatus": "ACTIVE"},
        )

    def reject_kyc(self, claims: Claims, investor_id: str, reason: Optional[str]) -> VersionedRecord:
        reason = validate_reason(reason, "Rejection reason")
        return self._decide_kyc(
            claims,
            "RejectKYC",
            investor_id,
            KYC_REJECTED,
            reason,
            {"kycRejectionReason": reason},
        )

    def bulk_decide_kyc(
        self,
        claims: Claims,
        investor_ids: Iterable[str],
        decision: str,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Approve or reject several investors; each id succeeds or fails on its own."""
        if decision not in (KYC_APPROVED, KYC_REJECTED):
            raise ValidationError(f"Unsupported KYC decision: {decision}")
        policy.check("ApproveKYC" if decision == KYC_APPROVED else "RejectKYC", claims)
        if decision == KYC_REJECTED:
            reason = validate_reason(reason, "Rejection reason")

        ids = list(dict.fromkeys(str(i).strip() for i in (investor_ids or []) if str(i).strip()))
        if not ids:
            raise ValidationError("investorIds must name at least one investor", field="investorIds")

        notes = reason or "Bulk operation"
        decided: List[str] = []
        errors: List[Dict[str, Any]] = []
        for investor_id in ids:
            try:
                if decision == KYC_APPROVED:
                    self.approve_kyc(claims, investor_id, notes)
                else:
                    self.reject_kyc(claims, investor_id, reason)
            except AppError as exc:
                logger.warning("bulk KYC %s failed for %s: %s", decision, investor_id, exc.code)
                errors.append({"investorId": investor_id, "code": exc.code, "error": exc.message})
                continue
            decided.append(investor_id)

        logger.info("bulk KYC %s: %d of %d succeeded", decision, len(decided), len(ids))
        return {
            "totalProcessed": len(ids),
            "successCount": len(decided),
            "failureCount": len(errors),
            "succeeded": decided,
            "errors": errors,
        }

    # ------------------------------------------------------------------
    # KYC review queue
    # ------------------------------------------------------------------

    def _awaiting_review(self, claims: Claims, statuses: Tuple[str, ...]) -> List[VersionedRecord]:
        if self.kind.name != "investor":
            raise ValueError("KYC queues apply to investors only")
        policy.check("ViewAllInvestors", claims)
        return self.store.scan_current(lambda r: (r.get("kycStatus") or KYC_PENDING) in statuses)

    def list_pending_kyc(self, claims: Claims) -> Dict[str, Any]:
        """Investors waiting on a first decision, most recently touched first."""
        records = sorted(
            self._awaiting_review(claims, (KYC_PENDING, KYC_IN_PROGRESS)),
            key=_last_touched,
            reverse=True,
        )
        return {"items": records, "total": len(records)}

    def kyc_review_queue(self, claims: Claims) -> Dict[str, Any]:
        """Investors needing review, grouped by status, oldest first."""
        records = self._awaiting_review(claims, _REVIEW_STATUSES)
        groups: Dict[str, List[VersionedRecord]] = {status: [] for status in _REVIEW_STATUSES}
        for record in sorted(records, key=_last_touched):
            groups[record.get("kycStatus") or KYC_PENDING].append(record)

        self.metrics.record("PendingKYCCount", len(groups[KYC_PENDING]))
        self.metrics.record("InProgressKYCCount", len(groups[KYC_IN_PROGRESS]))
        self.metrics.record("MoreInfoRequiredKYCCount", len(groups[KYC_MORE_INFO_REQUIRED]))
        return {
            "pending": groups[KYC_PENDING],
            "inProgress": groups[KYC_IN_PROGRESS],
            "requiresMoreInfo": groups[KYC_MORE_INFO_REQUIRED],
            "totalCount": len(records),
        }
