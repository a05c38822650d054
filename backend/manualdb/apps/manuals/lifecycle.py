"""
Manual lifecycle state machine.

    draft ──submit──▶ in_review ──approve──▶ approved ──start next──▶ draft
    rejected ─submit─▶ in_review ──reject───▶ rejected

Each transition runs as one transaction: the manual row is locked and
re-read, the workflow registry validates the source state and guards, the
revision and manual rows are written through the field history tracker, the
status_change audit entry is written, and only then is the transaction
committed. Notifications go out after the commit and cannot undo it.
"""

from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from manualdb.apps.accounts import services as account_services
from manualdb.apps.accounts.models import User
from manualdb.apps.notifications import senders
from manualdb.apps.workflow import TransitionError, apply_transition

from . import history, models
from .errors import (
    Conflict,
    ManualsError,
    NotFound,
    PermissionDenied,
    PreconditionFailed,
    StorageUnavailable,
)
from .numbering import is_final_label, next_revision_number
from .repository import ActorRef, latest_revision, load_manual, load_revision, resolve_actor
from .snapshot import build_snapshot, chapters_affected as snapshot_chapters, snapshot_digest

logger = logging.getLogger(__name__)

ENTITY_TYPE = "manual"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class NextRevisionResult:
    manual: models.Manual
    new_revision_number: str
    revision: models.Revision


def _from_transition_error(exc: TransitionError) -> ManualsError:
    reasons = "; ".join(item.get("reason", "") for item in exc.detail)
    if exc.code == "forbidden":
        return PermissionDenied(reasons or "Not allowed", code="forbidden", detail=exc.detail)
    return PreconditionFailed(reasons or exc.code, code=exc.code, detail=exc.detail)


@contextmanager
def _transaction(db: Session, operation: str, manual_id: str) -> Iterator[None]:
    """Commit on success; roll back and translate errors otherwise."""
    try:
        yield
        db.commit()
    except TransitionError as exc:
        db.rollback()
        logger.warning("%s refused for manual %s: %s", operation, manual_id, exc.code)
        raise _from_transition_error(exc) from exc
    except ManualsError as exc:
        db.rollback()
        logger.warning("%s refused for manual %s: %s", operation, manual_id, exc.code)
        raise
    except IntegrityError as exc:
        db.rollback()
        logger.warning("%s hit a constraint for manual %s", operation, manual_id, exc_info=True)
        raise Conflict(f"{operation} conflicted with a concurrent change; re-read and retry") from exc
    except DBAPIError as exc:
        db.rollback()
        logger.warning("%s could not be committed for manual %s", operation, manual_id, exc_info=True)
        raise StorageUnavailable(f"{operation} could not be committed") from exc
    except Exception:
        db.rollback()
        raise


def _coerce_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise PreconditionFailed(f"Invalid effective date {value!r}", code="missing_requirements") from exc


def _guard_payloads(manual: models.Manual, actor: User, **after: Any):
    before_obj = {"status": manual.status.value, "created_by": manual.created_by}
    after_obj = {"actor_id": actor.id, "actor_elevated": actor.is_elevated}
    after_obj.update(after)
    return before_obj, after_obj


def _transition(
    db: Session,
    manual: models.Manual,
    actor: User,
    to_state: models.ManualStatus,
    *,
    after: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    before_obj, after_obj = _guard_payloads(manual, actor, **(after or {}))
    after_obj["status"] = to_state.value
    return apply_transition(
        db,
        actor_user_id=actor.id,
        entity_type=ENTITY_TYPE,
        entity_id=manual.id,
        from_state=manual.status.value,
        to_state=to_state.value,
        before_obj=before_obj,
        after_obj=after_obj,
        manual_id=manual.id,
        actor_email=actor.email,
        metadata=dict(metadata or {}, manual_title=manual.title),
    )


def _set_manual_status(db: Session, manual: models.Manual, actor: User, revision_id: str, **fields: Any) -> None:
    # status_change in the audit log covers this mutation; field rows only.
    with history.track_changes(
        db,
        manual,
        actor_id=actor.id,
        manual_id=manual.id,
        revision_id=revision_id,
        audit_action=None,
    ):
        for key, value in fields.items():
            setattr(manual, key, value)
        manual.updated_by = actor.id


def _notification_context(manual: models.Manual, revision: models.Revision, actor: User, **extra: Any) -> dict:
    context = {
        "manual_id": manual.id,
        "manual_code": manual.manual_code,
        "manual_title": manual.title,
        "organization_name": manual.organization_name,
        "revision_id": revision.id,
        "revision_number": revision.revision_number,
        "actor_name": actor.full_name,
        "actor_email": actor.email,
    }
    context.update({k: (v.isoformat() if isinstance(v, date) else v) for k, v in extra.items()})
    return context


def _owner_recipients(db: Session, manual: models.Manual) -> List[str]:
    if not manual.created_by:
        return []
    owner = db.query(User).filter(User.id == manual.created_by).first()
    return [owner.email] if owner is not None and owner.is_active else []


def submit_for_review(
    db: Session,
    manual_id: str,
    actor: ActorRef,
    *,
    chapters_affected: Optional[List[str]] = None,
    notifier: Optional[senders.NotificationSender] = None,
) -> models.Revision:
    """
    draft|rejected -> in_review.

    The newest revision is promoted in place when it is still a draft, or
    reopened when it was the one rejected; otherwise a new revision is
    created directly in review with the next draft number.
    """
    actor = resolve_actor(db, actor)
    with _transaction(db, "submit_for_review", manual_id):
        manual = load_manual(db, manual_id, for_update=True)
        if manual.is_archived:
            raise PreconditionFailed("Archived manuals cannot be submitted", code="archived")

        candidate = latest_revision(db, manual_id, for_update=True)
        reuse = candidate if candidate is not None and candidate.status in models.EDITABLE_STATUSES else None
        revision_number = reuse.revision_number if reuse else next_revision_number(db, manual_id, draft=True)

        _transition(
            db,
            manual,
            actor,
            models.ManualStatus.IN_REVIEW,
            metadata={
                "revision_number": revision_number,
                "reopened": bool(reuse is not None and reuse.status == models.RevisionStatus.REJECTED),
            },
        )

        snap = build_snapshot(db, manual_id)
        affected = list(chapters_affected) if chapters_affected is not None else snapshot_chapters(snap)
        now = _utcnow()

        if reuse is not None:
            revision = reuse
            with history.track_changes(
                db,
                revision,
                actor_id=actor.id,
                manual_id=manual_id,
                revision_id=revision.id,
                audit_action=None,
            ):
                revision.status = models.RevisionStatus.IN_REVIEW
                revision.snapshot = snap
                revision.snapshot_sha256 = snapshot_digest(snap)
                revision.chapters_affected = affected
                revision.submitted_for_review_at = now
                revision.submitted_by = actor.id
        else:
            revision = models.Revision(
                manual_id=manual_id,
                revision_number=revision_number,
                status=models.RevisionStatus.IN_REVIEW,
                snapshot=snap,
                snapshot_sha256=snapshot_digest(snap),
                chapters_affected=affected,
                submitted_for_review_at=now,
                submitted_by=actor.id,
                created_by=actor.id,
            )
            db.add(revision)
            db.flush()
            history.record_insert(
                db,
                revision,
                actor_id=actor.id,
                actor_email=actor.email,
                manual_id=manual_id,
                revision_id=revision.id,
                metadata={"revision_number": revision_number},
            )

        _set_manual_status(db, manual, actor, revision.id, status=models.ManualStatus.IN_REVIEW)

        recipients = [user.email for user in account_services.list_reviewers(db)]
        context = _notification_context(manual, revision, actor)

    logger.info("Manual %s submitted for review as revision %s", manual_id, revision.revision_number)
    notifier = notifier or senders.get_notifier()
    senders.dispatch(notifier.send_review_request, recipients=recipients, context=context)
    return revision


def approve(
    db: Session,
    manual_id: str,
    revision_id: str,
    actor: ActorRef,
    effective_date: Any,
    comment: Optional[str] = None,
    *,
    notifier: Optional[senders.NotificationSender] = None,
) -> models.Revision:
    """in_review -> approved. The only transition that advances `current_revision`."""
    actor = resolve_actor(db, actor)
    effective = _coerce_date(effective_date)
    with _transaction(db, "approve", manual_id):
        manual = load_manual(db, manual_id, for_update=True)
        revision = load_revision(db, manual_id, revision_id)

        _transition(
            db,
            manual,
            actor,
            models.ManualStatus.APPROVED,
            after={"effective_date": effective},
            metadata={
                "revision_number": revision.revision_number,
                "effective_date": effective.isoformat() if effective else None,
            },
        )

        active = latest_revision(db, manual_id, models.RevisionStatus.IN_REVIEW, for_update=True)
        if active is None:
            raise NotFound(f"Manual {manual_id} has no revision awaiting review")
        if active.id != revision.id:
            raise PreconditionFailed(
                f"Revision {revision.revision_number} is not the revision under review",
                code="revision_mismatch",
            )

        label = revision.revision_number
        if not is_final_label(label):
            label = next_revision_number(db, manual_id, draft=False)

        with history.track_changes(
            db,
            revision,
            actor_id=actor.id,
            manual_id=manual_id,
            revision_id=revision.id,
            audit_action=None,
        ):
            revision.status = models.RevisionStatus.APPROVED
            revision.revision_number = label
            revision.approved_at = _utcnow()
            revision.approved_by = actor.id
            revision.effective_date = effective
            revision.changes_summary = (comment or "").strip() or "Approved"

        _set_manual_status(
            db,
            manual,
            actor,
            revision.id,
            status=models.ManualStatus.APPROVED,
            current_revision=label,
            effective_date=effective,
            revision_date=_utcnow().date(),
        )

        recipients = _owner_recipients(db, manual)
        context = _notification_context(manual, revision, actor, effective_date=effective, comment=comment)

    logger.info("Manual %s approved at revision %s", manual_id, revision.revision_number)
    notifier = notifier or senders.get_notifier()
    senders.dispatch(notifier.send_approval, recipients=recipients, context=context)
    return revision


def reject(
    db: Session,
    manual_id: str,
    revision_id: str,
    actor: ActorRef,
    reason: Optional[str],
    *,
    notifier: Optional[senders.NotificationSender] = None,
) -> models.Revision:
    """in_review -> rejected. The manual becomes editable again."""
    actor = resolve_actor(db, actor)
    reason = (reason or "").strip()
    with _transaction(db, "reject", manual_id):
        manual = load_manual(db, manual_id, for_update=True)
        revision = load_revision(db, manual_id, revision_id)

        _transition(
            db,
            manual,
            actor,
            models.ManualStatus.REJECTED,
            after={"rejection_reason": reason},
            metadata={"revision_number": revision.revision_number, "reason": reason},
        )

        active = latest_revision(db, manual_id, models.RevisionStatus.IN_REVIEW, for_update=True)
        if active is None:
            raise NotFound(f"Manual {manual_id} has no revision awaiting review")
        if active.id != revision.id:
            raise PreconditionFailed(
                f"Revision {revision.revision_number} is not the revision under review",
                code="revision_mismatch",
            )

        with history.track_changes(
            db,
            revision,
            actor_id=actor.id,
            manual_id=manual_id,
            revision_id=revision.id,
            audit_action=None,
        ):
            revision.status = models.RevisionStatus.REJECTED
            revision.rejected_at = _utcnow()
            revision.rejected_by = actor.id
            revision.rejection_reason = reason

        _set_manual_status(db, manual, actor, revision.id, status=models.ManualStatus.REJECTED)

        recipients = _owner_recipients(db, manual)
        context = _notification_context(manual, revision, actor, reason=reason)

    logger.info("Manual %s revision %s rejected", manual_id, revision.revision_number)
    notifier = notifier or senders.get_notifier()
    senders.dispatch(notifier.send_rejection, recipients=recipients, context=context)
    return revision


def start_next_revision(db: Session, manual_id: str, actor: ActorRef) -> NextRevisionResult:
    """
    approved -> draft.

    Opens a new draft revision seeded with the approved snapshot. The
    approved revision is left untouched and `current_revision` keeps its
    label until the new draft is itself approved.
    """
    actor = resolve_actor(db, actor)
    with _transaction(db, "start_next_revision", manual_id):
        manual = load_manual(db, manual_id, for_update=True)
        if manual.is_archived:
            raise PreconditionFailed("Archived manuals cannot start a new revision", code="archived")
        number = next_revision_number(db, manual_id, draft=True)

        _transition(
            db,
            manual,
            actor,
            models.ManualStatus.DRAFT,
            metadata={"revision_number": number, "based_on": manual.current_revision},
        )

        if latest_revision(db, manual_id, models.RevisionStatus.DRAFT) is not None:
            raise PreconditionFailed("A draft revision already exists for this manual", code="draft_exists")

        approved = latest_revision(db, manual_id, models.RevisionStatus.APPROVED)
        if approved is not None:
            snap = copy.deepcopy(approved.snapshot)
            digest = approved.snapshot_sha256
            based_on = approved.revision_number
        else:
            snap = build_snapshot(db, manual_id)
            digest = snapshot_digest(snap)
            based_on = manual.current_revision

        revision = models.Revision(
            manual_id=manual_id,
            revision_number=number,
            status=models.RevisionStatus.DRAFT,
            snapshot=snap,
            snapshot_sha256=digest,
            changes_summary=f"New draft based on approved revision {based_on}",
            chapters_affected=[],
            created_by=actor.id,
        )
        db.add(revision)
        db.flush()
        history.record_insert(
            db,
            revision,
            actor_id=actor.id,
            actor_email=actor.email,
            manual_id=manual_id,
            revision_id=revision.id,
            metadata={"revision_number": number, "based_on": based_on},
        )

        _set_manual_status(db, manual, actor, revision.id, status=models.ManualStatus.DRAFT)

    logger.info("Manual %s opened revision %s", manual_id, number)
    return NextRevisionResult(manual=manual, new_revision_number=number, revision=revision)
