"""
Field history tracker.

Every mutating service call on a tracked entity goes through `track_changes`:
the pre-image is captured before the caller mutates the object, the
post-image after a flush, and one FieldHistoryEntry is written for each field
whose value differs. Values are compared as whole JSON-native structures, so
lists and dicts are never diffed element by element. Inserts and deletes are
recorded in the audit log only, unless the call site asks for field rows.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Session

from manualdb.apps.audit import services as audit_services

from . import models
from .snapshot import to_json_value

logger = logging.getLogger(__name__)

# Bookkeeping columns rewritten on every update.
UNTRACKED_FIELDS = frozenset({"updated_at", "updated_by"})

# Per-table columns that are too large or derived to be worth a history row.
UNTRACKED_BY_TABLE = {
    "revisions": frozenset({"snapshot", "snapshot_sha256"}),
}


def capture(obj: Any) -> Dict[str, Any]:
    """Return the JSON-native value of every tracked column of `obj`."""
    table_name = obj.__tablename__
    skip = UNTRACKED_FIELDS | UNTRACKED_BY_TABLE.get(table_name, frozenset())
    mapper = sa_inspect(obj).mapper
    return {
        attr.key: to_json_value(getattr(obj, attr.key))
        for attr in mapper.column_attrs
        if attr.key not in skip
    }


def changed_fields(before: Dict[str, Any], after: Dict[str, Any]) -> List[str]:
    return [key for key in after if key in before and before[key] != after[key]]


def record_field_changes(
    db: Session,
    *,
    table_name: str,
    record_id: str,
    before: Dict[str, Any],
    after: Dict[str, Any],
    actor_id: Optional[str],
    manual_id: str,
    revision_id: Optional[str] = None,
) -> List[models.FieldHistoryEntry]:
    entries = []
    for field_name in changed_fields(before, after):
        entries.append(
            models.FieldHistoryEntry(
                manual_id=manual_id,
                revision_id=revision_id,
                table_name=table_name,
                record_id=str(record_id),
                field_name=field_name,
                old_value=before[field_name],
                new_value=after[field_name],
                change_type=models.ChangeType.UPDATED,
                changed_by=actor_id,
            )
        )
    if entries:
        db.add_all(entries)
        db.flush()
    return entries


@contextmanager
def track_changes(
    db: Session,
    obj: Any,
    *,
    actor_id: Optional[str],
    manual_id: str,
    revision_id: Optional[str] = None,
    actor_email: Optional[str] = None,
    audit_action: Optional[str] = "updated",
) -> Iterator[List[models.FieldHistoryEntry]]:
    """
    Record field-level history for the mutations made inside the block.

        with track_changes(db, manual, actor_id=user.id, manual_id=manual.id) as entries:
            manual.title = "New title"
        # entries now holds one FieldHistoryEntry for "title"

    When `audit_action` is set and anything changed, one audit entry listing
    the changed fields is written as well.
    """
    before = capture(obj)
    entries: List[models.FieldHistoryEntry] = []
    yield entries

    db.add(obj)
    db.flush()
    after = capture(obj)
    entries.extend(
        record_field_changes(
            db,
            table_name=obj.__tablename__,
            record_id=obj.id,
            before=before,
            after=after,
            actor_id=actor_id,
            manual_id=manual_id,
            revision_id=revision_id,
        )
    )
    if entries:
        logger.debug("Recorded %d field changes on %s %s", len(entries), obj.__tablename__, obj.id)
    if entries and audit_action:
        audit_services.record(
            db,
            actor_id=actor_id,
            actor_email=actor_email,
            action=audit_action,
            entity_type=obj.__tablename__,
            entity_id=obj.id,
            manual_id=manual_id,
            metadata={"fields": [entry.field_name for entry in entries]},
        )


def _record_lifecycle(
    db: Session,
    obj: Any,
    *,
    change_type: models.ChangeType,
    actor_id: Optional[str],
    manual_id: str,
    revision_id: Optional[str],
    actor_email: Optional[str],
    metadata: Optional[dict],
    field_rows: bool,
) -> List[models.FieldHistoryEntry]:
    values = capture(obj)
    audit_services.record(
        db,
        actor_id=actor_id,
        actor_email=actor_email,
        action=change_type.value,
        entity_type=obj.__tablename__,
        entity_id=obj.id,
        manual_id=manual_id,
        metadata=metadata or {},
    )
    if not field_rows:
        return []

    entries = [
        models.FieldHistoryEntry(
            manual_id=manual_id,
            revision_id=revision_id,
            table_name=obj.__tablename__,
            record_id=str(obj.id),
            field_name=key,
            old_value=None if change_type == models.ChangeType.CREATED else value,
            new_value=value if change_type == models.ChangeType.CREATED else None,
            change_type=change_type,
            changed_by=actor_id,
        )
        for key, value in values.items()
        if value is not None
    ]
    db.add_all(entries)
    db.flush()
    return entries


def record_insert(
    db: Session,
    obj: Any,
    *,
    actor_id: Optional[str],
    manual_id: str,
    revision_id: Optional[str] = None,
    actor_email: Optional[str] = None,
    metadata: Optional[dict] = None,
    field_rows: bool = False,
) -> List[models.FieldHistoryEntry]:
    """Audit a newly flushed tracked row."""
    return _record_lifecycle(
        db,
        obj,
        change_type=models.ChangeType.CREATED,
        actor_id=actor_id,
        manual_id=manual_id,
        revision_id=revision_id,
        actor_email=actor_email,
        metadata=metadata,
        field_rows=field_rows,
    )


def record_delete(
    db: Session,
    obj: Any,
    *,
    actor_id: Optional[str],
    manual_id: str,
    revision_id: Optional[str] = None,
    actor_email: Optional[str] = None,
    metadata: Optional[dict] = None,
    field_rows: bool = False,
) -> List[models.FieldHistoryEntry]:
    """Audit a tracked row about to be deleted. Call before `db.delete`."""
    return _record_lifecycle(
        db,
        obj,
        change_type=models.ChangeType.DELETED,
        actor_id=actor_id,
        manual_id=manual_id,
        revision_id=revision_id,
        actor_email=actor_email,
        metadata=metadata,
        field_rows=field_rows,
    )


def list_field_history(
    db: Session,
    manual_id: str,
    *,
    table_name: Optional[str] = None,
    field_name: Optional[str] = None,
    record_id: Optional[str] = None,
    revision_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[models.FieldHistoryEntry], int]:
    query = db.query(models.FieldHistoryEntry).filter(models.FieldHistoryEntry.manual_id == manual_id)
    if table_name:
        query = query.filter(models.FieldHistoryEntry.table_name == table_name)
    if field_name:
        query = query.filter(models.FieldHistoryEntry.field_name == field_name)
    if record_id:
        query = query.filter(models.FieldHistoryEntry.record_id == record_id)
    if revision_id:
        query = query.filter(models.FieldHistoryEntry.revision_id == revision_id)

    total = query.count()
    rows = (
        query.order_by(
            models.FieldHistoryEntry.changed_at.desc(),
            models.FieldHistoryEntry.id.desc(),
        )
        .offset(max(0, offset))
        .limit(max(1, min(limit, 500)))
        .all()
    )
    return rows, total
