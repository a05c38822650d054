from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from manualdb.apps.accounts.models import User
from manualdb.apps.audit import schemas as audit_schemas
from manualdb.database import get_db, get_read_db
from manualdb.security import get_current_active_user

from . import chapters, lifecycle, services
from .errors import ManualsError, to_http_exception
from .repository import commit_or_raise
from .schemas import (
    ApproveRequest,
    ChapterCreate,
    ChapterOut,
    ChapterUpdate,
    ContentBlockCreate,
    ContentBlockOut,
    ContentBlockUpdate,
    FieldHistoryPage,
    ManualCreate,
    ManualOut,
    ManualUpdate,
    NextRevisionOut,
    RejectRequest,
    RemarkCreate,
    RemarkOut,
    RestoreRequest,
    RevisionDetail,
    RevisionOut,
    SnapshotDiff,
    SubmitReviewRequest,
)

router = APIRouter(prefix="/manuals", tags=["Manuals"], dependencies=[Depends(get_current_active_user)])


def _fail(exc: ManualsError, db: Optional[Session] = None):
    if db is not None:
        db.rollback()
    raise to_http_exception(exc) from exc


@router.post("", response_model=ManualOut, status_code=status.HTTP_201_CREATED)
def create_manual(
    payload: ManualCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    try:
        manual = services.create_manual(db, current_user, **payload.model_dump())
        commit_or_raise(db)
    except ManualsError as exc:
        _fail(exc, db)
    return manual


@router.get("/{manual_id}", response_model=ManualOut)
def get_manual(manual_id: str, db: Session = Depends(get_read_db)):
    try:
        return services.get_manual(db, manual_id)
    except ManualsError as exc:
        _fail(exc)


@router.patch("/{manual_id}", response_model=ManualOut)
def update_manual(
    manual_id: str,
    payload: ManualUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    try:
        manual = services.update_manual(db, manual_id, current_user, payload.model_dump(exclude_unset=True))
        commit_or_raise(db)
    except ManualsError as exc:
        _fail(exc, db)
    return manual


@router.post("/{manual_id}/archive", response_model=ManualOut)
def archive_manual(
    manual_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    try:
        manual = services.archive_manual(db, manual_id, current_user)
        commit_or_raise(db)
    except ManualsError as exc:
        _fail(exc, db)
    return manual


# ---------------------------------------------------------------------------
# Chapters
# ---------------------------------------------------------------------------


@router.get("/{manual_id}/chapters")
def list_chapters(manual_id: str, db: Session = Depends(get_read_db)):
    try:
        return chapters.list_tree(db, manual_id)
    except ManualsError as exc:
        _fail(exc)


@router.post("/{manual_id}/chapters", response_model=ChapterOut, status_code=status.HTTP_201_CREATED)
def add_chapter(
    manual_id: str,
    payload: ChapterCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    try:
        chapter = chapters.add_chapter(db, manual_id, current_user, **payload.model_dump())
        commit_or_raise(db)
    except ManualsError as exc:
        _fail(exc, db)
    return chapter


@router.patch("/{manual_id}/chapters/{chapter_id}", response_model=ChapterOut)
def update_chapter(
    manual_id: str,
    chapter_id: str,
    payload: ChapterUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    try:
        chapter = chapters.update_chapter(db, manual_id, chapter_id, current_user, payload.model_dump(exclude_unset=True))
        commit_or_raise(db)
    except ManualsError as exc:
        _fail(exc, db)
    return chapter


@router.delete("/{manual_id}/chapters/{chapter_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_chapter(
    manual_id: str,
    chapter_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    try:
        chapters.delete_chapter(db, manual_id, chapter_id, current_user)
        commit_or_raise(db)
    except ManualsError as exc:
        _fail(exc, db)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{manual_id}/chapters/{chapter_id}/blocks",
    response_model=ContentBlockOut,
    status_code=status.HTTP_201_CREATED,
)
def add_content_block(
    manual_id: str,
    chapter_id: str,
    payload: ContentBlockCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    try:
        block = chapters.add_content_block(db, manual_id, chapter_id, current_user, **payload.model_dump())
        commit_or_raise(db)
    except ManualsError as exc:
        _fail(exc, db)
    return block


@router.patch("/{manual_id}/blocks/{block_id}", response_model=ContentBlockOut)
def update_content_block(
    manual_id: str,
    block_id: str,
    payload: ContentBlockUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    try:
        block = chapters.update_content_block(db, manual_id, block_id, current_user, payload.model_dump(exclude_unset=True))
        commit_or_raise(db)
    except ManualsError as exc:
        _fail(exc, db)
    return block


@router.post(
    "/{manual_id}/chapters/{chapter_id}/remarks",
    response_model=RemarkOut,
    status_code=status.HTTP_201_CREATED,
)
def add_remark(
    manual_id: str,
    chapter_id: str,
    payload: RemarkCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    try:
        remark = chapters.add_remark(db, manual_id, chapter_id, current_user, payload.remark_text)
        commit_or_raise(db)
    except ManualsError as exc:
        _fail(exc, db)
    return remark


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@router.post("/{manual_id}/submit-review", response_model=RevisionOut)
def submit_review(
    manual_id: str,
    payload: Optional[SubmitReviewRequest] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    try:
        return lifecycle.submit_for_review(
            db,
            manual_id,
            current_user,
            chapters_affected=payload.chapters_affected if payload else None,
        )
    except ManualsError as exc:
        _fail(exc)


@router.post("/{manual_id}/review/approve", response_model=RevisionOut)
def approve_review(
    manual_id: str,
    payload: ApproveRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    try:
        return lifecycle.approve(
            db,
            manual_id,
            payload.revision_id,
            current_user,
            payload.effective_date,
            payload.comment,
        )
    except ManualsError as exc:
        _fail(exc)


@router.post("/{manual_id}/review/reject", response_model=RevisionOut)
def reject_review(
    manual_id: str,
    payload: RejectRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    try:
        return lifecycle.reject(db, manual_id, payload.revision_id, current_user, payload.reason)
    except ManualsError as exc:
        _fail(exc)


@router.post("/{manual_id}/create-revision", response_model=NextRevisionOut)
def create_revision(
    manual_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    try:
        result = lifecycle.start_next_revision(db, manual_id, current_user)
    except ManualsError as exc:
        _fail(exc)
    return NextRevisionOut(
        manual=ManualOut.model_validate(result.manual),
        new_revision_number=result.new_revision_number,
        revision=RevisionOut.model_validate(result.revision),
    )


@router.post("/{manual_id}/restore-from-revision", response_model=RevisionOut)
def restore_from_revision(
    manual_id: str,
    payload: RestoreRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    try:
        revision = services.restore_from_revision(db, manual_id, payload.revision_id, current_user)
        commit_or_raise(db)
    except ManualsError as exc:
        _fail(exc, db)
    return revision


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@router.get("/{manual_id}/revisions", response_model=List[RevisionOut])
def list_revisions(manual_id: str, db: Session = Depends(get_read_db)):
    try:
        return services.list_revisions(db, manual_id)
    except ManualsError as exc:
        _fail(exc)


@router.get("/{manual_id}/revisions/{revision_id}", response_model=RevisionDetail)
def get_revision(manual_id: str, revision_id: str, db: Session = Depends(get_read_db)):
    try:
        return services.get_revision(db, manual_id, revision_id)
    except ManualsError as exc:
        _fail(exc)


@router.get("/{manual_id}/revisions/{revision_id}/diff/{other_revision_id}", response_model=SnapshotDiff)
def diff_revisions(manual_id: str, revision_id: str, other_revision_id: str, db: Session = Depends(get_read_db)):
    try:
        return services.diff_revisions(db, manual_id, revision_id, other_revision_id)
    except ManualsError as exc:
        _fail(exc)


@router.get("/{manual_id}/field-history", response_model=FieldHistoryPage)
def list_field_history(
    manual_id: str,
    table_name: Optional[str] = None,
    field_name: Optional[str] = None,
    record_id: Optional[str] = None,
    revision_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_read_db),
):
    try:
        items, total = services.list_field_history(
            db,
            manual_id,
            table_name=table_name,
            field_name=field_name,
            record_id=record_id,
            revision_id=revision_id,
            limit=limit,
            offset=offset,
        )
    except ManualsError as exc:
        _fail(exc)
    return FieldHistoryPage(items=items, total=total, limit=limit, offset=offset)


@router.get("/{manual_id}/audit-logs", response_model=audit_schemas.AuditLogPage)
def list_audit_logs(
    manual_id: str,
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_read_db),
):
    try:
        return services.list_audit_log(
            db,
            manual_id,
            audit_schemas.AuditLogFilter(
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                actor_id=actor_id,
                start=start,
                end=end,
            ),
            limit=limit,
            offset=offset,
        )
    except ManualsError as exc:
        _fail(exc)
