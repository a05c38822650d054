"""
Row access shared by the manual services: loading, locking, actor checks and
commit error translation.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from manualdb.apps.accounts.models import User

from . import models
from .errors import Conflict, NotFound, PermissionDenied, PreconditionFailed, StorageUnavailable

logger = logging.getLogger(__name__)

ActorRef = Union[User, str]


def resolve_actor(db: Session, actor: ActorRef) -> User:
    if isinstance(actor, User):
        return actor
    user = db.query(User).filter(User.id == str(actor)).first()
    if user is None or not user.is_active:
        raise PermissionDenied(f"Unknown or inactive actor {actor}")
    return user


def load_manual(db: Session, manual_id: str, *, for_update: bool = False) -> models.Manual:
    """
    Load a manual, optionally taking a row lock (SELECT ... FOR UPDATE).

    `populate_existing` makes the session overwrite any cached copy with the
    row as it is now, so guards never run against stale state.
    """
    query = db.query(models.Manual).filter(models.Manual.id == manual_id)
    if for_update:
        query = query.with_for_update().populate_existing()
    manual = query.first()
    if manual is None:
        raise NotFound(f"Manual {manual_id} not found")
    return manual


def load_revision(db: Session, manual_id: str, revision_id: str) -> models.Revision:
    revision = (
        db.query(models.Revision)
        .filter(
            models.Revision.id == revision_id,
            models.Revision.manual_id == manual_id,
        )
        .first()
    )
    if revision is None:
        raise NotFound(f"Revision {revision_id} not found for manual {manual_id}")
    return revision


def latest_revision(
    db: Session,
    manual_id: str,
    status: Optional[models.ManualStatus] = None,
    *,
    for_update: bool = False,
) -> Optional[models.Revision]:
    query = db.query(models.Revision).filter(models.Revision.manual_id == manual_id)
    if status is not None:
        query = query.filter(models.Revision.status == status)
    if for_update:
        query = query.with_for_update().populate_existing()
    return query.order_by(models.Revision.created_at.desc(), models.Revision.id.desc()).first()


def working_revision(db: Session, manual_id: str) -> Optional[models.Revision]:
    """The revision edits are attributed to: the newest one, while it is still open for editing."""
    revision = latest_revision(db, manual_id)
    if revision is not None and revision.status in models.EDITABLE_STATUSES:
        return revision
    return None


def is_owner_or_elevated(manual: models.Manual, actor: User) -> bool:
    return actor.is_elevated or (manual.created_by is not None and manual.created_by == actor.id)


def require_owner_or_elevated(manual: models.Manual, actor: User) -> None:
    if not is_owner_or_elevated(manual, actor):
        raise PermissionDenied("Only the manual owner or a sysadmin may change this manual")


def require_editable(db: Session, manual_id: str, actor: User) -> models.Manual:
    """Lock the manual and check it can be edited by `actor`."""
    manual = load_manual(db, manual_id, for_update=True)
    if manual.is_archived:
        raise PreconditionFailed("Archived manuals cannot be edited", code="archived")
    if manual.status not in models.EDITABLE_STATUSES:
        raise PreconditionFailed(
            f"Manual is {manual.status.value}; only draft or rejected manuals can be edited",
            code="not_editable",
        )
    require_owner_or_elevated(manual, actor)
    return manual


def commit_or_raise(db: Session) -> None:
    """Commit, translating storage failures into the manuals error taxonomy."""
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Commit rejected by constraint", exc_info=True)
        raise Conflict(f"Concurrent update detected: {exc.orig}") from exc
    except DBAPIError as exc:
        db.rollback()
        logger.warning("Commit failed", exc_info=True)
        raise StorageUnavailable(f"Database unavailable: {exc.orig}") from exc
