"""records_api/lambda_function.py — Resolver entrypoint for versioned records.

Maps a GraphQL field name to a records-core operation. Events arrive in the
direct Lambda resolver shape:

    {
        "info": {"fieldName": "getDocument"},
        "arguments": {"documentId": "..."},
        "identity": {"claims": {"sub": "...", "cognito:groups": [...], ...}}
    }

Responses:
    success -> {"success": true, "data": ...}
    failure -> {"success": false, "error": message,
                "error_envelope": {code, message, retryable, details}}

Environment variables: see prepg3_shared.config.
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from prepg3_shared import config, policy
from prepg3_shared.claims import Claims, from_event
from prepg3_shared.document_lifecycle import DocumentLifecycle
from prepg3_shared.errors import AppError, ValidationError
from prepg3_shared.observability import CloudWatchMetrics, OperatorAlerts, _emit_structured_observability
from prepg3_shared.records import KYC_APPROVED, KYC_REJECTED, RecordService
from prepg3_shared.storage import DynamoVersionTable, S3BlobStore
from prepg3_shared.versioned_store import VersionedRecord, VersionedRecordStore

logger = logging.getLogger()
logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))


class Services(NamedTuple):
    documents: DocumentLifecycle
    document_records: RecordService
    investors: RecordService
    properties: RecordService


def _build_services() -> Services:
    """Wire the core for one invocation."""
    metrics = CloudWatchMetrics()

    def _store(table_name: str, kind: str) -> VersionedRecordStore:
        return VersionedRecordStore(DynamoVersionTable(table_name), kind)

    documents_store = _store(config.DOCUMENTS_TABLE, "document")
    return Services(
        documents=DocumentLifecycle(
            documents_store,
            S3BlobStore(config.DOCUMENTS_BUCKET),
            metrics=metrics,
            alerts=OperatorAlerts(metrics=metrics),
        ),
        document_records=RecordService("document", documents_store, metrics),
        investors=RecordService("investor", _store(config.INVESTORS_TABLE, "investor"), metrics),
        properties=RecordService("property", _store(config.PROPERTIES_TABLE, "property"), metrics),
    )


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def _input(args: Dict[str, Any]) -> Dict[str, Any]:
    value = args.get("input")
    return dict(value) if isinstance(value, dict) else dict(args)


def _required(args: Dict[str, Any], *names: str) -> Any:
    """First non-empty value among ``names``; ValidationError naming the first."""
    for name in names:
        value = args.get(name)
        if value is not None and str(value).strip():
            return value
    raise ValidationError(f"{names[0]} is required", field=names[0])


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def _plain(value: Any) -> Any:
    if isinstance(value, VersionedRecord):
        return value.as_dict()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


def _get_document(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    return svc.documents.get_document(claims, _required(args, "documentId", "id"))


def _get_document_history(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    return svc.documents.get_history(claims, _required(args, "documentId", "id"))


def _list_my_documents(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    return svc.documents.list_my_documents(claims, include_withdrawn=_flag(args.get("includeWithdrawn")))


def _list_all_documents(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    filters = args.get("filters") if isinstance(args.get("filters"), dict) else args
    return svc.documents.list_all_documents(
        claims,
        investor_id=filters.get("investorId"),
        status=filters.get("status"),
        document_type=filters.get("documentType"),
        include_withdrawn=_flag(filters.get("includeWithdrawn")),
    )


def _reserve_document_upload(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    data = _input(args)
    return svc.documents.reserve_upload(
        claims,
        investor_id=data.get("investorId") or claims.owner_id,
        document_type=data.get("documentType"),
        file_name=data.get("fileName"),
        file_type=data.get("fileType") or data.get("mimeType"),
        file_size=data.get("fileSize"),
    )


def _upload_document(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    data = _input(args)
    document_id = _required(data, "documentId", "id")
    encoded = _required(data, "content")
    try:
        content = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError, TypeError):
        raise ValidationError("content must be base64 encoded", field="content") from None
    return svc.documents.upload(claims, document_id, content)


def _confirm_document_upload(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    return svc.documents.confirm(claims, _required(args, "documentId", "id"))


def _verify_document(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    return svc.documents.verify(claims, _required(args, "documentId", "id"))


def _replace_document(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    data = _input(args)
    return svc.documents.replace(
        claims,
        _required(data, "documentIdToReplace", "documentId"),
        file_name=data.get("fileName"),
        file_type=data.get("fileType") or data.get("mimeType"),
        file_size=data.get("fileSize"),
        reason=data.get("reason"),
    )


def _withdraw_document(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    data = _input(args)
    return svc.documents.withdraw(claims, _required(data, "documentId", "id"), data.get("reason"))


def _permanently_delete_document(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    data = _input(args)
    return svc.documents.purge_expired(
        claims,
        _required(data, "documentId", "id"),
        confirm=data.get("confirm") is True,
    )


def _update_document(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    data = _input(args)
    document_id = _required(data, "documentId", "id")
    reason = data.pop("changeReason", None)
    data.pop("documentId", None)
    return svc.document_records.append_version(claims, document_id, data, reason=reason)


# ---------------------------------------------------------------------------
# Investors / properties
# ---------------------------------------------------------------------------


def _get_record(attr: str) -> Callable[[Services, Claims, Dict[str, Any]], Any]:
    def _handler(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
        return getattr(svc, attr).get_current(claims, _required(args, "id"))

    return _handler


def _get_record_versions(attr: str) -> Callable[[Services, Claims, Dict[str, Any]], Any]:
    def _handler(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
        return getattr(svc, attr).get_history(claims, _required(args, "id"))

    return _handler


def _get_investor_version(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    return svc.investors.get_version(claims, _required(args, "id"), _required(args, "version"))


def _create_record(attr: str) -> Callable[[Services, Claims, Dict[str, Any]], Any]:
    def _handler(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
        data = _input(args)
        entity_id = data.pop("id", None)
        reason = data.pop("changeReason", None)
        return getattr(svc, attr).create(claims, data, entity_id=entity_id, reason=reason)

    return _handler


def _update_record(attr: str) -> Callable[[Services, Claims, Dict[str, Any]], Any]:
    def _handler(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
        data = _input(args)
        entity_id = _required(data, "id")
        reason = data.pop("changeReason", None)
        return getattr(svc, attr).append_version(claims, entity_id, data, reason=reason)

    return _handler


def _approve_kyc(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    return svc.investors.approve_kyc(claims, _required(args, "investorId", "id"), args.get("notes"))


def _reject_kyc(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    return svc.investors.reject_kyc(claims, _required(args, "investorId", "id"), args.get("reason"))


def _investor_ids(args: Dict[str, Any]) -> List[str]:
    ids = args.get("investorIds")
    if not isinstance(ids, (list, tuple)):
        raise ValidationError("investorIds must be a list", field="investorIds")
    return [str(i) for i in ids]


def _bulk_approve_kyc(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    return svc.investors.bulk_decide_kyc(claims, _investor_ids(args), KYC_APPROVED, args.get("notes"))


def _bulk_reject_kyc(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    return svc.investors.bulk_decide_kyc(claims, _investor_ids(args), KYC_REJECTED, args.get("reason"))


def _list_pending_kyc(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    return svc.investors.list_pending_kyc(claims)


def _get_kyc_review_queue(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    return svc.investors.kyc_review_queue(claims)


def _get_my_permissions(svc: Services, claims: Claims, args: Dict[str, Any]) -> Any:
    return policy.permission_summary(claims)


_ROUTES: Dict[str, Callable[[Services, Claims, Dict[str, Any]], Any]] = {
    "getDocument": _get_document,
    "getDocumentHistory": _get_document_history,
    "listMyDocuments": _list_my_documents,
    "listAllDocuments": _list_all_documents,
    "reserveDocumentUpload": _reserve_document_upload,
    "uploadDocument": _upload_document,
    "confirmDocumentUpload": _confirm_document_upload,
    "verifyDocument": _verify_document,
    "replaceDocument": _replace_document,
    "withdrawDocument": _withdraw_document,
    "permanentlyDeleteDocument": _permanently_delete_document,
    "updateDocument": _update_document,
    "getInvestor": _get_record("investors"),
    "getInvestorVersions": _get_record_versions("investors"),
    "getInvestorVersion": _get_investor_version,
    "createInvestor": _create_record("investors"),
    "updateInvestor": _update_record("investors"),
    "approveKYC": _approve_kyc,
    "rejectKYC": _reject_kyc,
    "bulkApproveKYC": _bulk_approve_kyc,
    "bulkRejectKYC": _bulk_reject_kyc,
    "listPendingKYC": _list_pending_kyc,
    "getKYCReviewQueue": _get_kyc_review_queue,
    "getProperty": _get_record("properties"),
    "getPropertyVersions": _get_record_versions("properties"),
    "createProperty": _create_record("properties"),
    "updateProperty": _update_record("properties"),
    "getMyPermissions": _get_my_permissions,
}


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


def _ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": _plain(data)}


def _error(exc: AppError) -> Dict[str, Any]:
    envelope = exc.to_envelope()
    return {
        "success": False,
        "error": envelope["message"],
        "error_envelope": envelope,
    }


def lambda_handler(event: Dict, context: Any) -> Dict:
    started = time.monotonic()
    info = event.get("info") or {}
    field_name = str(info.get("fieldName") or event.get("fieldName") or "")
    args = event.get("arguments") or {}
    actor: Optional[str] = None

    route = _ROUTES.get(field_name)
    if route is None:
        return _error(ValidationError(f"Unknown field: {field_name or '(none)'}"))

    try:
        claims = from_event(event)
        actor = claims.actor
        services = _build_services()
        result = route(services, claims, args)
    except AppError as exc:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("[%s] %s failed: %s %s", field_name, actor or "anonymous", exc.code, exc.message)
        _emit_structured_observability(
            component="records_api",
            event=field_name,
            actor=actor,
            latency_ms=int((time.monotonic() - started) * 1000),
            error_code=exc.code,
        )
        return _error(exc)
    except Exception:
        logger.exception("[%s] unhandled error", field_name)
        _emit_structured_observability(
            component="records_api",
            event=field_name,
            actor=actor,
            latency_ms=int((time.monotonic() - started) * 1000),
            error_code=AppError.code,
        )
        return _error(AppError())

    _emit_structured_observability(
        component="records_api",
        event=field_name,
        actor=actor,
        latency_ms=int((time.monotonic() - started) * 1000),
    )
    return _ok(result)
