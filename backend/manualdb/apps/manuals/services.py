"""
Manual services: creation, metadata edits, archival, restore and the read
side (revisions, diffs, field history, audit trail).

Functions here flush but never commit; the router (or the caller in scripts
and tests) owns the transaction. Lifecycle transitions live in `lifecycle`.
"""

from __future__ import annotations

import copy
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from manualdb.apps.accounts.models import AccountRole
from manualdb.apps.audit import schemas as audit_schemas
from manualdb.apps.audit import services as audit_services

from . import chapters, history, models
from .errors import PermissionDenied, PreconditionFailed
from .numbering import next_revision_number
from .repository import (
    ActorRef,
    load_manual,
    load_revision,
    require_editable,
    require_owner_or_elevated,
    resolve_actor,
    working_revision,
)
from .snapshot import build_snapshot, chapters_affected, diff_snapshots, load_snapshot, snapshot_digest

logger = logging.getLogger(__name__)

AUTHOR_ROLES = frozenset({AccountRole.SYSADMIN, AccountRole.MANAGER})

# Public name -> column attribute for editable manual metadata.
MANUAL_EDITABLE_FIELDS = {
    "title": "title",
    "description": "description",
    "organization_name": "organization_name",
    "review_due_date": "review_due_date",
    "language": "language",
    "reference_number": "reference_number",
    "tags": "tags",
    "metadata": "metadata_json",
}

REQUIRED_TEXT_FIELDS = frozenset({"title", "organization_name"})


def _coerce_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def create_manual(
    db: Session,
    actor: ActorRef,
    *,
    manual_code: str,
    title: str,
    organization_name: str,
    description: Optional[str] = None,
    language: str = "en",
    reference_number: Optional[str] = None,
    review_due_date: Optional[date] = None,
    tags: Optional[List[str]] = None,
    metadata: Optional[dict] = None,
) -> models.Manual:
    """
    Create a manual in draft with its front matter chapter and an initial
    draft revision. `current_revision` stays "0" until the first approval.
    """
    actor = resolve_actor(db, actor)
    if not actor.is_superuser and actor.role not in AUTHOR_ROLES:
        raise PermissionDenied("Only managers and sysadmins can create manuals")
    if not (title or "").strip() or not (organization_name or "").strip() or not (manual_code or "").strip():
        raise PreconditionFailed("Manual code, title and organization are required", code="missing_requirements")

    code = manual_code.strip()
    if db.query(models.Manual.id).filter(models.Manual.manual_code == code).first() is not None:
        raise PreconditionFailed(f"Manual code {code} is already in use", code="duplicate_code")

    manual = models.Manual(
        manual_code=code,
        title=title.strip(),
        organization_name=organization_name.strip(),
        description=description,
        status=models.ManualStatus.DRAFT,
        current_revision="0",
        language=language or "en",
        reference_number=reference_number,
        review_due_date=_coerce_date(review_due_date),
        tags=list(tags or []),
        metadata_json=dict(metadata or {}),
        created_by=actor.id,
        updated_by=actor.id,
    )
    db.add(manual)
    db.flush()
    history.record_insert(
        db,
        manual,
        actor_id=actor.id,
        actor_email=actor.email,
        manual_id=manual.id,
        metadata={"manual_code": manual.manual_code, "title": manual.title},
    )

    chapters.ensure_chapter_zero(db, manual, actor.id)

    snap = build_snapshot(db, manual.id)
    revision = models.Revision(
        manual_id=manual.id,
        revision_number=next_revision_number(db, manual.id, draft=True),
        status=models.RevisionStatus.DRAFT,
        snapshot=snap,
        snapshot_sha256=snapshot_digest(snap),
        changes_summary="Initial draft",
        chapters_affected=chapters_affected(snap),
        created_by=actor.id,
    )
    db.add(revision)
    db.flush()
    history.record_insert(
        db,
        revision,
        actor_id=actor.id,
        actor_email=actor.email,
        manual_id=manual.id,
        revision_id=revision.id,
        metadata={"revision_number": revision.revision_number},
    )
    logger.info("Created manual %s (%s)", manual.id, manual.manual_code)
    return manual


def get_manual(db: Session, manual_id: str) -> models.Manual:
    return load_manual(db, manual_id)


def update_manual(db: Session, manual_id: str, actor: ActorRef, changes: Dict[str, Any]) -> models.Manual:
    actor = resolve_actor(db, actor)
    manual = require_editable(db, manual_id, actor)

    unknown = set(changes) - set(MANUAL_EDITABLE_FIELDS)
    if unknown:
        raise PreconditionFailed(f"Fields cannot be changed: {', '.join(sorted(unknown))}", code="invalid_fields")
    for name in REQUIRED_TEXT_FIELDS & set(changes):
        if not str(changes[name] or "").strip():
            raise PreconditionFailed(f"{name} cannot be empty", code="missing_requirements")

    revision = working_revision(db, manual_id)
    with history.track_changes(
        db,
        manual,
        actor_id=actor.id,
        actor_email=actor.email,
        manual_id=manual.id,
        revision_id=revision.id if revision else None,
    ):
        for name, value in changes.items():
            if name == "review_due_date":
                value = _coerce_date(value)
            elif name == "tags":
                value = list(value or [])
            elif name == "metadata":
                value = dict(value or {})
            setattr(manual, MANUAL_EDITABLE_FIELDS[name], value)
        manual.updated_by = actor.id
    return manual


def archive_manual(db: Session, manual_id: str, actor: ActorRef) -> models.Manual:
    actor = resolve_actor(db, actor)
    manual = load_manual(db, manual_id, for_update=True)
    require_owner_or_elevated(manual, actor)
    if manual.status == models.ManualStatus.IN_REVIEW:
        raise PreconditionFailed("A manual under review cannot be archived", code="in_review")
    if manual.is_archived:
        return manual

    with history.track_changes(
        db,
        manual,
        actor_id=actor.id,
        actor_email=actor.email,
        manual_id=manual.id,
        audit_action="archived",
    ):
        manual.is_archived = True
        manual.updated_by = actor.id
    return manual


def list_revisions(db: Session, manual_id: str) -> List[models.Revision]:
    """All revisions of a manual in creation order."""
    load_manual(db, manual_id)
    return (
        db.query(models.Revision)
        .filter(models.Revision.manual_id == manual_id)
        .order_by(models.Revision.created_at.asc(), models.Revision.id.asc())
        .all()
    )


def get_revision(db: Session, manual_id: str, revision_id: str) -> models.Revision:
    return load_revision(db, manual_id, revision_id)


def diff_revisions(db: Session, manual_id: str, old_revision_id: str, new_revision_id: str) -> Dict[str, Any]:
    old = load_revision(db, manual_id, old_revision_id)
    new = load_revision(db, manual_id, new_revision_id)
    out = diff_snapshots(old.snapshot, new.snapshot)
    out["from_revision"] = old.revision_number
    out["to_revision"] = new.revision_number
    return out


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
    load_manual(db, manual_id)
    return history.list_field_history(
        db,
        manual_id,
        table_name=table_name,
        field_name=field_name,
        record_id=record_id,
        revision_id=revision_id,
        limit=limit,
        offset=offset,
    )


def list_audit_log(
    db: Session,
    manual_id: str,
    filters: Optional[audit_schemas.AuditLogFilter] = None,
    *,
    limit: int = 50,
    offset: int = 0,
) -> audit_schemas.AuditLogPage:
    load_manual(db, manual_id)
    filters = (filters or audit_schemas.AuditLogFilter()).model_copy(update={"manual_id": manual_id})
    return audit_services.list_entries(db, filters, limit=limit, offset=offset)


def restore_from_revision(db: Session, manual_id: str, revision_id: str, actor: ActorRef) -> models.Revision:
    """
    Rebuild the live manual (metadata and chapter tree) from a stored
    revision's snapshot. The source revision is only read.

    Returns the draft revision the restored content now belongs to.
    """
    actor = resolve_actor(db, actor)
    manual = require_editable(db, manual_id, actor)
    source = load_revision(db, manual_id, revision_id)
    snap = load_snapshot(source.snapshot)
    stored = snap["manual"]

    target = working_revision(db, manual_id)
    if target is None or target.status != models.RevisionStatus.DRAFT:
        number = next_revision_number(db, manual_id, draft=True)
        target = models.Revision(
            manual_id=manual_id,
            revision_number=number,
            status=models.RevisionStatus.DRAFT,
            snapshot=copy.deepcopy(source.snapshot),
            snapshot_sha256=source.snapshot_sha256,
            changes_summary=f"Restored from revision {source.revision_number}",
            chapters_affected=[],
            created_by=actor.id,
        )
        db.add(target)
        db.flush()
        history.record_insert(
            db,
            target,
            actor_id=actor.id,
            actor_email=actor.email,
            manual_id=manual_id,
            revision_id=target.id,
            metadata={"revision_number": number, "restored_from": source.revision_number},
        )
    else:
        with history.track_changes(
            db,
            target,
            actor_id=actor.id,
            actor_email=actor.email,
            manual_id=manual_id,
            revision_id=target.id,
        ):
            target.changes_summary = f"Restored from revision {source.revision_number}"

    with history.track_changes(
        db,
        manual,
        actor_id=actor.id,
        actor_email=actor.email,
        manual_id=manual_id,
        revision_id=target.id,
    ):
        for name, column in MANUAL_EDITABLE_FIELDS.items():
            if name not in stored:
                continue
            value = stored[name]
            if name == "review_due_date":
                value = _coerce_date(value)
            elif name == "tags":
                value = list(value or [])
            elif name == "metadata":
                value = dict(value or {})
            setattr(manual, column, value)
        manual.updated_by = actor.id

    restored = chapters.rebuild_from_snapshot(db, manual, stored.get("chapters") or [], actor, target.id)

    audit_services.record(
        db,
        actor_id=actor.id,
        actor_email=actor.email,
        action="restored",
        entity_type="manuals",
        entity_id=manual.id,
        manual_id=manual.id,
        metadata={
            "source_revision": source.revision_number,
            "target_revision": target.revision_number,
            "chapters": restored,
        },
    )
    logger.info("Restored manual %s from revision %s", manual.id, source.revision_number)
    return target

