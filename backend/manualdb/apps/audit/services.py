from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import models, schemas

logger = logging.getLogger(__name__)


def record(
    db: Session,
    *,
    actor_id: Optional[str],
    action: str,
    entity_type: str,
    entity_id: str,
    manual_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    actor_email: Optional[str] = None,
) -> str:
    """
    Append one audit entry inside the caller's transaction and return its id.

    The entry is flushed immediately so that a storage failure surfaces here
    and aborts the enclosing business operation. Nothing in this module
    updates or deletes entries.
    """
    entry = models.AuditLogEntry(
        actor_id=actor_id,
        actor_email=actor_email,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        manual_id=manual_id,
        metadata_json=metadata or {},
    )
    try:
        db.add(entry)
        db.flush()
    except Exception:
        logger.warning(
            "Failed to write audit entry",
            extra={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "action": action,
            },
        )
        raise
    return entry.id


def list_entries(
    db: Session,
    filters: Optional[schemas.AuditLogFilter] = None,
    *,
    limit: int = 50,
    offset: int = 0,
) -> schemas.AuditLogPage:
    filters = filters or schemas.AuditLogFilter()
    query = db.query(models.AuditLogEntry)
    if filters.actor_id:
        query = query.filter(models.AuditLogEntry.actor_id == filters.actor_id)
    if filters.entity_type:
        query = query.filter(models.AuditLogEntry.entity_type == filters.entity_type)
    if filters.entity_id:
        query = query.filter(models.AuditLogEntry.entity_id == filters.entity_id)
    if filters.manual_id:
        query = query.filter(models.AuditLogEntry.manual_id == filters.manual_id)
    if filters.action:
        query = query.filter(models.AuditLogEntry.action == filters.action)
    if filters.start:
        query = query.filter(models.AuditLogEntry.created_at >= filters.start)
    if filters.end:
        query = query.filter(models.AuditLogEntry.created_at <= filters.end)

    limit = max(1, min(int(limit), 500))
    offset = max(0, int(offset))
    total = query.count()
    rows = (
        query.order_by(
            models.AuditLogEntry.created_at.desc(),
            models.AuditLogEntry.id.desc(),
        )
        .offset(offset)
        .limit(limit)
        .all()
    )
    return schemas.AuditLogPage(
        items=[schemas.AuditLogRead.model_validate(row) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )
