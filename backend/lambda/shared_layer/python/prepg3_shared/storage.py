"""prepg3_shared.storage — DynamoDB version table and S3 blob store adapters.

The version table is keyed by ``id`` (partition) and ``version`` (sort).
Transient failures are retried by the botocore clients themselves (see
aws_clients); whatever still fails reaches the caller as
``StorageUnavailableError`` with no table, key or SDK text in its message.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .aws_clients import _get_ddb, _get_s3
from .errors import ConflictError, StorageUnavailableError
from .serialization import _deserialize, _serialize, _serialize_item

logger = logging.getLogger(__name__)

# put() conditions
IF_VERSION_ABSENT = "version_absent"


def _error_code(exc: Exception) -> str:
    if not isinstance(exc, ClientError):
        return ""
    return str(exc.response.get("Error", {}).get("Code", ""))


def _unavailable(operation: str, exc: Exception) -> StorageUnavailableError:
    logger.error("storage %s failed: %s", operation, exc)
    return StorageUnavailableError(operation=operation)


class DynamoVersionTable:
    """Append-only version items in one DynamoDB table."""

    def __init__(self, table_name: str, client_fn: Callable[[], Any] = _get_ddb) -> None:
        self.table_name = table_name
        self._client_fn = client_fn

    def _key(self, entity_id: str, version: int) -> Dict[str, Any]:
        return {"id": _serialize(entity_id), "version": _serialize(int(version))}

    def _chain_params(self, entity_id: str) -> Dict[str, Any]:
        return {
            "TableName": self.table_name,
            "KeyConditionExpression": "#id = :id",
            "ExpressionAttributeNames": {"#id": "id"},
            "ExpressionAttributeValues": {":id": _serialize(entity_id)},
            "ScanIndexForward": False,
            "ConsistentRead": True,
        }

    def get(self, entity_id: str, version: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Return one version, or the highest version when ``version`` is None."""
        ddb = self._client_fn()
        try:
            if version is not None:
                resp = ddb.get_item(
                    TableName=self.table_name,
                    Key=self._key(entity_id, version),
                    ConsistentRead=True,
                )
                raw = resp.get("Item")
                return _deserialize(raw) if raw else None
            resp = ddb.query(Limit=1, **self._chain_params(entity_id))
        except (ClientError, BotoCoreError) as exc:
            raise _unavailable("get", exc) from exc
        items = resp.get("Items") or []
        return _deserialize(items[0]) if items else None

    def query(self, entity_id: str) -> List[Dict[str, Any]]:
        """All versions of one id, newest first."""
        ddb = self._client_fn()
        params = self._chain_params(entity_id)
        out: List[Dict[str, Any]] = []
        while True:
            try:
                resp = ddb.query(**params)
            except (ClientError, BotoCoreError) as exc:
                raise _unavailable("query", exc) from exc
            out.extend(_deserialize(item) for item in resp.get("Items", []))
            lek = resp.get("LastEvaluatedKey")
            if not lek:
                break
            params["ExclusiveStartKey"] = lek
        return out

    def put(self, item: Dict[str, Any], condition: Optional[str] = None) -> None:
        """Write one item. ``IF_VERSION_ABSENT`` turns an overwrite into ConflictError."""
        params: Dict[str, Any] = {
            "TableName": self.table_name,
            "Item": _serialize_item(item),
        }
        if condition == IF_VERSION_ABSENT:
            params["ConditionExpression"] = "attribute_not_exists(#v)"
            params["ExpressionAttributeNames"] = {"#v": "version"}
        elif condition is not None:
            raise ValueError(f"Unsupported put condition: {condition}")

        try:
            self._client_fn().put_item(**params)
        except (ClientError, BotoCoreError) as exc:
            if _error_code(exc) == "ConditionalCheckFailedException":
                raise ConflictError(entity_id=item.get("id"), version=item.get("version")) from exc
            raise _unavailable("put", exc) from exc

    def delete(self, entity_id: str, version: int) -> None:
        """Delete one version. Deleting an absent version is a no-op."""
        try:
            self._client_fn().delete_item(
                TableName=self.table_name,
                Key=self._key(entity_id, version),
            )
        except (ClientError, BotoCoreError) as exc:
            raise _unavailable("delete", exc) from exc

    def scan(self, predicate: Optional[Callable[[Dict[str, Any]], bool]] = None) -> List[Dict[str, Any]]:
        """Full-table scan, filtered client side by ``predicate``."""
        ddb = self._client_fn()
        params: Dict[str, Any] = {"TableName": self.table_name}
        out: List[Dict[str, Any]] = []
        while True:
            try:
                resp = ddb.scan(**params)
            except (ClientError, BotoCoreError) as exc:
                raise _unavailable("scan", exc) from exc
            for raw in resp.get("Items", []):
                item = _deserialize(raw)
                if predicate is None or predicate(item):
                    out.append(item)
            lek = resp.get("LastEvaluatedKey")
            if not lek:
                break
            params["ExclusiveStartKey"] = lek
        return out


class S3BlobStore:
    """Document object bytes in S3."""

    def __init__(self, bucket: str, client_fn: Callable[[], Any] = _get_s3) -> None:
        self.bucket = bucket
        self._client_fn = client_fn

    def put_object(
        self,
        key: str,
        body: bytes,
        content_type: Optional[str] = None,
        bucket: Optional[str] = None,
    ) -> None:
        params: Dict[str, Any] = {
            "Bucket": bucket or self.bucket,
            "Key": key,
            "Body": body,
            "ServerSideEncryption": "AES256",
        }
        if content_type:
            params["ContentType"] = content_type
        try:
            self._client_fn().put_object(**params)
        except (ClientError, BotoCoreError) as exc:
            raise _unavailable("put_object", exc) from exc

    def signed_read_url(self, key: str, ttl_seconds: int, bucket: Optional[str] = None) -> str:
        # Presigning is local; no network call.
        return self._client_fn().generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket or self.bucket, "Key": key},
            ExpiresIn=int(ttl_seconds),
        )

    def delete_object(self, key: str, bucket: Optional[str] = None) -> None:
        """Delete one object. S3 reports success for an absent key."""
        try:
            self._client_fn().delete_object(Bucket=bucket or self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            if _error_code(exc) in {"NoSuchKey", "404"}:
                logger.info("delete_object: %s already absent", key)
                return
            raise _unavailable("delete_object", exc) from exc
