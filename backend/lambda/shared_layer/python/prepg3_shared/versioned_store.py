"""prepg3_shared.versioned_store — Append-only version chains.

Each logical entity is a chain of immutable items keyed by (id, version).
The current version is derived, never stored: it is the item with the highest
version number. An append is therefore a single conditional put on a version
that must not exist yet, so readers never observe zero or two current
versions and concurrent appenders cannot both claim the same version number.
"""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from . import config
from .errors import AppError, ConflictError, NotFoundError, ValidationError
from .observability import _emit_structured_observability
from .serialization import _now_z
from .storage import IF_VERSION_ABSENT

logger = logging.getLogger(__name__)

RESERVED_FIELDS = ("id", "version", "changedFields", "updatedAt", "updatedBy", "changeReason", "isCurrent")

Mutator = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]
ReasonSource = Union[str, Callable[[List[str]], Optional[str]], None]


@dataclass(frozen=True)
class VersionedRecord:
    id: str
    version: int
    payload: Dict[str, Any]
    changed_fields: tuple = ()
    updated_at: str = ""
    updated_by: str = ""
    change_reason: Optional[str] = None
    is_current: bool = False

    @classmethod
    def from_item(cls, item: Dict[str, Any], is_current: bool = False) -> "VersionedRecord":
        payload = {k: v for k, v in item.items() if k not in RESERVED_FIELDS}
        return cls(
            id=str(item["id"]),
            version=int(item["version"]),
            payload=payload,
            changed_fields=tuple(item.get("changedFields") or ()),
            updated_at=str(item.get("updatedAt") or ""),
            updated_by=str(item.get("updatedBy") or ""),
            change_reason=item.get("changeReason"),
            is_current=is_current,
        )

    def to_item(self) -> Dict[str, Any]:
        item: Dict[str, Any] = dict(self.payload)
        item.update(
            {
                "id": self.id,
                "version": self.version,
                "changedFields": list(self.changed_fields),
                "updatedAt": self.updated_at,
                "updatedBy": self.updated_by,
            }
        )
        if self.change_reason:
            item["changeReason"] = self.change_reason
        return item

    def as_dict(self) -> Dict[str, Any]:
        """Flat plain-data view returned to callers."""
        out = self.to_item()
        out["isCurrent"] = self.is_current
        return out

    def get(self, name: str, default: Any = None) -> Any:
        return self.payload.get(name, default)


def changed_fields(previous: Dict[str, Any], current: Dict[str, Any]) -> List[str]:
    """Keys whose values differ, in order of first appearance (new keys first)."""
    out = [k for k in current if k not in previous or previous[k] != current[k]]
    out.extend(k for k in previous if k not in current)
    return out


class VersionedRecordStore:
    """Version chains of one entity kind stored in one table."""

    def __init__(self, table: Any, kind: str, conflict_attempts: Optional[int] = None) -> None:
        self.table = table
        self.kind = kind
        self.conflict_attempts = max(
            1, config.APPEND_CONFLICT_ATTEMPTS if conflict_attempts is None else conflict_attempts
        )

    @property
    def _label(self) -> str:
        return self.kind.capitalize()

    def get_current(self, entity_id: str) -> VersionedRecord:
        item = self.table.get(entity_id)
        if not item:
            raise NotFoundError(self._label, entity_id=entity_id)
        return VersionedRecord.from_item(item, is_current=True)

    def get_history(self, entity_id: str) -> List[VersionedRecord]:
        items = sorted(self.table.query(entity_id), key=lambda i: int(i["version"]), reverse=True)
        return [VersionedRecord.from_item(item, is_current=(idx == 0)) for idx, item in enumerate(items)]

    def get_version(self, entity_id: str, version: int) -> VersionedRecord:
        item = self.table.get(entity_id, int(version))
        if not item:
            raise NotFoundError(f"Version {version} of {self.kind}", entity_id=entity_id, version=version)
        latest = self.table.get(entity_id)
        return VersionedRecord.from_item(item, is_current=bool(latest) and int(latest["version"]) == int(version))

    def append_version(
        self,
        entity_id: str,
        mutator: Mutator,
        actor: str,
        reason: ReasonSource = None,
    ) -> VersionedRecord:
        """Apply ``mutator`` to a copy of the current payload and append the result.

        Every successful call writes exactly one new version, even when the
        payload is unchanged. On a version collision the chain is re-read and
        the mutator re-applied to the fresh payload; after
        ``conflict_attempts`` collisions the ConflictError propagates.
        """
        started = time.monotonic()
        for attempt in range(1, self.conflict_attempts + 1):
            current_item = self.table.get(entity_id)
            current = VersionedRecord.from_item(current_item, is_current=True) if current_item else None
            previous_payload = dict(current.payload) if current else {}

            working = copy.deepcopy(previous_payload)
            result = mutator(working)
            new_payload = working if result is None else dict(result)

            reserved = sorted(set(new_payload) & set(RESERVED_FIELDS))
            if reserved:
                raise ValidationError(f"Reserved attribute(s) cannot be set: {', '.join(reserved)}")

            fields = changed_fields(previous_payload, new_payload)
            change_reason = reason(fields) if callable(reason) else reason
            record = VersionedRecord(
                id=entity_id,
                version=(current.version if current else 0) + 1,
                payload=new_payload,
                changed_fields=tuple(fields) if current is not None else (),
                updated_at=_now_z(),
                updated_by=actor,
                change_reason=change_reason,
                is_current=True,
            )
            try:
                self.table.put(record.to_item(), condition=IF_VERSION_ABSENT)
            except ConflictError:
                logger.warning(
                    "%s %s: version %d already written (attempt %d/%d), re-reading",
                    self.kind, entity_id, record.version, attempt, self.conflict_attempts,
                )
                continue

            _emit_structured_observability(
                component="versioned_store",
                event="version_appended",
                entity_id=entity_id,
                actor=actor,
                latency_ms=int((time.monotonic() - started) * 1000),
                extra={"kind": self.kind, "version": record.version, "changed_fields": list(fields)},
            )
            return record

        raise ConflictError(entity_id=entity_id)

    def purge_all_versions(self, entity_id: str, versions: Optional[Sequence[int]] = None) -> int:
        """Physically delete a chain, oldest version first. Retention purge only.

        The current version goes last, so a purge that stops part way never
        exposes an older version as current. When deletes have already
        happened, the raised error carries ``versionsDeleted`` in its details.
        """
        if versions is None:
            versions = [int(item["version"]) for item in self.table.query(entity_id)]
        deleted = 0
        try:
            for version in sorted(int(v) for v in versions):
                self.table.delete(entity_id, version)
                deleted += 1
        except AppError as exc:
            if deleted:
                exc.details["versionsDeleted"] = deleted
            raise
        logger.info("%s %s: purged %d version(s)", self.kind, entity_id, deleted)
        return deleted

    def scan_current(self, predicate: Optional[Callable[[VersionedRecord], bool]] = None) -> List[VersionedRecord]:
        """Current record of every chain, optionally filtered."""
        latest: Dict[str, Dict[str, Any]] = {}
        for item in self.table.scan():
            seen = latest.get(item["id"])
            if seen is None or int(item["version"]) > int(seen["version"]):
                latest[item["id"]] = item
        records = [VersionedRecord.from_item(item, is_current=True) for item in latest.values()]
        if predicate is None:
            return records
        return [r for r in records if predicate(r)]
