"""prepg3_shared.timeline — Field-level change timeline for a version chain."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from .versioned_store import VersionedRecord


def build(history: Sequence[VersionedRecord]) -> List[Dict[str, Any]]:
    """One entry per version of ``history`` (newest first).

    Each entry pairs a version with the next-older one; the oldest version has
    nothing to compare against and so lists no changes.
    """
    entries: List[Dict[str, Any]] = []
    for idx, record in enumerate(history):
        previous = history[idx + 1] if idx + 1 < len(history) else None
        changes = [
            {
                "field": name,
                "oldValue": previous.payload.get(name) if previous is not None else None,
                "newValue": record.payload.get(name),
            }
            for name in (record.changed_fields if previous is not None else ())
        ]
        entries.append(
            {
                "version": record.version,
                "timestamp": record.updated_at,
                "user": record.updated_by,
                "reason": record.change_reason,
                "isCurrent": record.is_current,
                "changes": changes,
            }
        )
    return entries


def summary(entity_id: str, history: Sequence[VersionedRecord]) -> Dict[str, Any]:
    """History response body: ``{entityId, currentVersion, totalVersions, timeline}``."""
    return {
        "entityId": entity_id,
        "currentVersion": history[0].version if history else None,
        "totalVersions": len(history),
        "timeline": build(history),
    }
