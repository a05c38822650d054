from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy.exc import OperationalError

from manualdb.apps.accounts.models import AccountRole, User
from manualdb.apps.audit import models as audit_models
from manualdb.apps.audit import services as audit_services
from manualdb.apps.manuals import chapters, history, lifecycle, models, services, snapshot
from manualdb.apps.manuals.errors import (
    Conflict,
    NotFound,
    PermissionDenied,
    PreconditionFailed,
    StorageUnavailable,
)


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    def send_review_request(self, *, recipients, context):
        self.calls.append(("review_request", list(recipients), context))

    def send_approval(self, *, recipients, context):
        self.calls.append(("approval", list(recipients), context))

    def send_rejection(self, *, recipients, context):
        self.calls.append(("rejection", list(recipients), context))


class FailingNotifier(RecordingNotifier):
    def send_approval(self, *, recipients, context):
        raise RuntimeError("mail relay unreachable")


def _users(db_session):
    owner = User(email="owner@example.com", full_name="Owner", role=AccountRole.MANAGER, hashed_password="x")
    admin = User(email="admin@example.com", full_name="Admin", role=AccountRole.SYSADMIN, hashed_password="x")
    viewer = User(email="viewer@example.com", full_name="Viewer", role=AccountRole.VIEW_ONLY, hashed_password="x")
    db_session.add_all([owner, admin, viewer])
    db_session.commit()
    return owner, admin, viewer


def _seed(db_session):
    owner, admin, viewer = _users(db_session)
    manual = services.create_manual(
        db_session,
        owner,
        manual_code="MOE",
        title="Maintenance Organisation Exposition",
        organization_name="Acme Aero",
    )
    intro = chapters.add_chapter(db_session, manual.id, owner, heading="Introduction")
    db_session.commit()
    return owner, admin, viewer, manual, intro


def _status_changes(db_session, manual_id):
    return (
        db_session.query(audit_models.AuditLogEntry)
        .filter(
            audit_models.AuditLogEntry.manual_id == manual_id,
            audit_models.AuditLogEntry.action == "status_change",
        )
        .order_by(audit_models.AuditLogEntry.created_at, audit_models.AuditLogEntry.id)
        .all()
    )


def test_create_manual_starts_in_draft_with_revision_one(db_session):
    owner, _, viewer = _users(db_session)

    manual = services.create_manual(
        db_session,
        owner,
        manual_code="QM",
        title="Quality Manual",
        organization_name="Acme Aero",
    )
    db_session.commit()

    assert manual.status == models.ManualStatus.DRAFT
    assert manual.current_revision == "0"
    revisions = services.list_revisions(db_session, manual.id)
    assert [(r.revision_number, r.status, r.changes_summary) for r in revisions] == [
        ("1", models.RevisionStatus.DRAFT, "Initial draft")
    ]

    with pytest.raises(PreconditionFailed) as exc:
        services.create_manual(db_session, owner, manual_code="QM", title="Again", organization_name="Acme Aero")
    assert exc.value.code == "duplicate_code"

    with pytest.raises(PermissionDenied):
        services.create_manual(db_session, viewer, manual_code="VM", title="View", organization_name="Acme Aero")


def test_full_revision_cycle(db_session):
    owner, admin, _, manual, intro = _seed(db_session)
    notifier = RecordingNotifier()

    first = lifecycle.submit_for_review(db_session, manual.id, owner, notifier=notifier)
    assert first.revision_number == "1"
    assert first.status == models.RevisionStatus.IN_REVIEW
    assert first.submitted_by == owner.id
    assert first.chapters_affected == ["0", "1"]
    assert first.snapshot_sha256 == snapshot.snapshot_digest(first.snapshot)
    assert manual.status == models.ManualStatus.IN_REVIEW
    assert notifier.calls[-1][0] == "review_request"
    assert notifier.calls[-1][1] == ["admin@example.com"]

    approved = lifecycle.approve(
        db_session, manual.id, first.id, admin, date(2026, 3, 1), "Initial issue", notifier=notifier
    )
    assert approved.status == models.RevisionStatus.APPROVED
    assert approved.approved_by == admin.id
    assert approved.changes_summary == "Initial issue"
    assert manual.status == models.ManualStatus.APPROVED
    assert manual.current_revision == "1"
    assert manual.effective_date == date(2026, 3, 1)
    assert notifier.calls[-1][:2] == ("approval", ["owner@example.com"])

    result = lifecycle.start_next_revision(db_session, manual.id, owner)
    assert result.new_revision_number == "2"
    assert result.revision.status == models.RevisionStatus.DRAFT
    assert result.revision.changes_summary == "New draft based on approved revision 1"
    assert result.revision.snapshot == approved.snapshot
    assert manual.status == models.ManualStatus.DRAFT
    assert manual.current_revision == "1"

    chapters.update_chapter(db_session, manual.id, intro.id, owner, {"heading": "General"})
    db_session.commit()

    second = lifecycle.submit_for_review(db_session, manual.id, owner, notifier=notifier)
    assert second.id == result.revision.id
    rejected = lifecycle.reject(db_session, manual.id, second.id, admin, "Clarify section 1", notifier=notifier)
    assert rejected.status == models.RevisionStatus.REJECTED
    assert rejected.rejection_reason == "Clarify section 1"
    assert manual.status == models.ManualStatus.REJECTED
    assert manual.current_revision == "1"
    assert notifier.calls[-1][0] == "rejection"

    # Rejected manuals are editable again and resubmission reopens the same revision.
    chapters.update_chapter(db_session, manual.id, intro.id, owner, {"heading": "General Information"})
    db_session.commit()
    reopened = lifecycle.submit_for_review(db_session, manual.id, owner, notifier=notifier)
    assert reopened.id == second.id
    assert reopened.revision_number == "2"
    assert reopened.snapshot["manual"]["chapters"][1]["heading"] == "General Information"

    lifecycle.approve(db_session, manual.id, reopened.id, admin, "2026-06-01", notifier=notifier)
    assert manual.current_revision == "2"
    assert manual.effective_date == date(2026, 6, 1)

    transitions = [
        (entry.metadata_json["from_status"], entry.metadata_json["to_status"])
        for entry in _status_changes(db_session, manual.id)
    ]
    assert transitions == [
        ("draft", "in_review"),
        ("in_review", "approved"),
        ("approved", "draft"),
        ("draft", "in_review"),
        ("in_review", "rejected"),
        ("rejected", "in_review"),
        ("in_review", "approved"),
    ]

    # The first approved revision is untouched by everything after it.
    assert snapshot.verify_snapshot(approved) is True
    assert approved.snapshot["manual"]["chapters"][1]["heading"] == "Introduction"


def test_reject_then_resubmit_keeps_revision_one(db_session):
    owner, admin, _ = _users(db_session)
    manual = services.create_manual(db_session, owner, manual_code="M", title="M", organization_name="Acme Aero")
    db_session.commit()
    notifier = RecordingNotifier()

    submitted = lifecycle.submit_for_review(db_session, manual.id, owner, notifier=notifier)
    assert [r.revision_number for r in services.list_revisions(db_session, manual.id)] == ["1"]

    lifecycle.reject(db_session, manual.id, submitted.id, admin, "incomplete", notifier=notifier)
    resubmitted = lifecycle.submit_for_review(db_session, manual.id, owner, notifier=notifier)
    assert resubmitted.id == submitted.id
    assert resubmitted.status == models.RevisionStatus.IN_REVIEW

    lifecycle.approve(db_session, manual.id, resubmitted.id, admin, "2025-01-01", notifier=notifier)
    assert manual.status == models.ManualStatus.APPROVED
    assert manual.current_revision == "1"

    result = lifecycle.start_next_revision(db_session, manual.id, owner)
    assert result.new_revision_number == "2"
    assert manual.status == models.ManualStatus.DRAFT
    assert [r.revision_number for r in services.list_revisions(db_session, manual.id)] == ["1", "2"]


def test_only_elevated_users_may_approve_or_reject(db_session):
    owner, _, _, manual, _ = _seed(db_session)
    revision = lifecycle.submit_for_review(db_session, manual.id, owner, notifier=RecordingNotifier())

    with pytest.raises(PermissionDenied):
        lifecycle.approve(db_session, manual.id, revision.id, owner, date(2026, 1, 1), notifier=RecordingNotifier())
    with pytest.raises(PermissionDenied):
        lifecycle.reject(db_session, manual.id, revision.id, owner, "No", notifier=RecordingNotifier())

    db_session.refresh(manual)
    assert manual.status == models.ManualStatus.IN_REVIEW
    assert len(_status_changes(db_session, manual.id)) == 1


def test_approve_and_reject_require_their_inputs(db_session):
    owner, admin, _, manual, _ = _seed(db_session)
    revision = lifecycle.submit_for_review(db_session, manual.id, owner, notifier=RecordingNotifier())

    with pytest.raises(PreconditionFailed) as exc:
        lifecycle.approve(db_session, manual.id, revision.id, admin, None, notifier=RecordingNotifier())
    assert exc.value.code == "missing_requirements"

    with pytest.raises(PreconditionFailed) as exc:
        lifecycle.reject(db_session, manual.id, revision.id, admin, "   ", notifier=RecordingNotifier())
    assert exc.value.code == "missing_requirements"

    db_session.refresh(manual)
    assert manual.status == models.ManualStatus.IN_REVIEW


def test_transitions_from_wrong_state_are_refused(db_session):
    owner, admin, _, manual, _ = _seed(db_session)
    draft = services.list_revisions(db_session, manual.id)[0]

    with pytest.raises(PreconditionFailed) as exc:
        lifecycle.approve(db_session, manual.id, draft.id, admin, date(2026, 1, 1), notifier=RecordingNotifier())
    assert exc.value.code == "invalid_transition"

    with pytest.raises(PreconditionFailed) as exc:
        lifecycle.start_next_revision(db_session, manual.id, owner)
    assert exc.value.code == "invalid_transition"

    with pytest.raises(NotFound):
        lifecycle.submit_for_review(db_session, "missing", owner, notifier=RecordingNotifier())


def test_approve_checks_the_revision_under_review(db_session):
    owner, admin, _, manual, _ = _seed(db_session)
    revision = lifecycle.submit_for_review(db_session, manual.id, owner, notifier=RecordingNotifier())
    stray = models.Revision(
        manual_id=manual.id,
        revision_number="9",
        status=models.RevisionStatus.REJECTED,
        snapshot={},
        snapshot_sha256="0" * 64,
    )
    db_session.add(stray)
    db_session.commit()

    with pytest.raises(PreconditionFailed) as exc:
        lifecycle.approve(db_session, manual.id, stray.id, admin, date(2026, 1, 1), notifier=RecordingNotifier())
    assert exc.value.code == "revision_mismatch"

    lifecycle.approve(db_session, manual.id, revision.id, admin, date(2026, 1, 1), notifier=RecordingNotifier())
    assert manual.current_revision == "1"


def test_second_approval_from_another_session_is_refused(file_session_factory):
    first = file_session_factory()
    second = file_session_factory()
    try:
        owner, admin, _, manual, _ = _seed(first)
        revision = lifecycle.submit_for_review(first, manual.id, owner, notifier=RecordingNotifier())

        # The second session has the manual cached as in_review.
        stale = second.query(models.Manual).filter_by(id=manual.id).one()
        assert stale.status == models.ManualStatus.IN_REVIEW

        lifecycle.approve(first, manual.id, revision.id, admin, date(2026, 1, 1), notifier=RecordingNotifier())

        with pytest.raises(PreconditionFailed) as exc:
            lifecycle.approve(second, manual.id, revision.id, admin.id, date(2026, 2, 1), notifier=RecordingNotifier())
        assert exc.value.code == "invalid_transition"

        approvals = [
            entry
            for entry in _status_changes(second, manual.id)
            if entry.metadata_json["to_status"] == "approved"
        ]
        assert len(approvals) == 1
        refreshed = second.query(models.Manual).filter_by(id=manual.id).one()
        assert refreshed.effective_date == date(2026, 1, 1)
    finally:
        first.close()
        second.close()


def test_notification_failure_does_not_undo_approval(db_session, caplog):
    owner, admin, _, manual, _ = _seed(db_session)
    revision = lifecycle.submit_for_review(db_session, manual.id, owner, notifier=RecordingNotifier())

    approved = lifecycle.approve(db_session, manual.id, revision.id, admin, date(2026, 1, 1), notifier=FailingNotifier())

    assert approved.status == models.RevisionStatus.APPROVED
    db_session.expire_all()
    assert db_session.query(models.Manual).filter_by(id=manual.id).one().status == models.ManualStatus.APPROVED
    assert "Notification dispatch failed" in caplog.text


def test_start_next_revision_refuses_when_draft_exists(db_session):
    owner, admin, _, manual, _ = _seed(db_session)
    revision = lifecycle.submit_for_review(db_session, manual.id, owner, notifier=RecordingNotifier())
    lifecycle.approve(db_session, manual.id, revision.id, admin, date(2026, 1, 1), notifier=RecordingNotifier())
    db_session.add(
        models.Revision(
            manual_id=manual.id,
            revision_number="5",
            status=models.RevisionStatus.DRAFT,
            snapshot={},
            snapshot_sha256="0" * 64,
        )
    )
    db_session.commit()

    with pytest.raises(PreconditionFailed) as exc:
        lifecycle.start_next_revision(db_session, manual.id, owner)
    assert exc.value.code == "draft_exists"
    assert exc.value.retryable is False
    db_session.refresh(manual)
    assert manual.status == models.ManualStatus.APPROVED


def test_restore_rebuilds_live_content_from_revision(db_session):
    owner, admin, _, manual, intro = _seed(db_session)
    chapters.add_content_block(db_session, manual.id, intro.id, owner, content={"text": "Original"})
    db_session.commit()
    revision = lifecycle.submit_for_review(db_session, manual.id, owner, notifier=RecordingNotifier())
    lifecycle.approve(db_session, manual.id, revision.id, admin, date(2026, 1, 1), notifier=RecordingNotifier())
    frozen_digest = revision.snapshot_sha256
    draft = lifecycle.start_next_revision(db_session, manual.id, owner).revision

    services.update_manual(db_session, manual.id, owner, {"title": "Scratch title"})
    chapters.delete_chapter(db_session, manual.id, intro.id, owner)
    chapters.add_chapter(db_session, manual.id, owner, heading="Scratch chapter")
    db_session.commit()

    target = services.restore_from_revision(db_session, manual.id, revision.id, owner)
    db_session.commit()

    assert target.id == draft.id
    assert target.changes_summary == "Restored from revision 1"
    assert manual.title == "Maintenance Organisation Exposition"
    tree = chapters.list_tree(db_session, manual.id)
    assert [node["heading"] for node in tree] == ["Frontmatter", "Introduction"]
    assert tree[1]["content_blocks"][0]["content"] == {"text": "Original"}
    assert revision.snapshot_sha256 == frozen_digest
    assert snapshot.verify_snapshot(revision) is True
    restored = (
        db_session.query(audit_models.AuditLogEntry)
        .filter_by(manual_id=manual.id, action="restored")
        .one()
    )
    assert restored.metadata_json["source_revision"] == "1"


def test_archived_manual_is_frozen(db_session):
    owner, _, _, manual, _ = _seed(db_session)

    services.archive_manual(db_session, manual.id, owner)
    db_session.commit()

    assert manual.is_archived is True
    with pytest.raises(PreconditionFailed) as exc:
        services.update_manual(db_session, manual.id, owner, {"title": "Nope"})
    assert exc.value.code == "archived"
    db_session.rollback()
    with pytest.raises(PreconditionFailed):
        lifecycle.submit_for_review(db_session, manual.id, owner, notifier=RecordingNotifier())


def test_archived_manual_cannot_start_next_revision(db_session):
    owner, admin, _, manual, _ = _seed(db_session)
    revision = lifecycle.submit_for_review(db_session, manual.id, owner, notifier=RecordingNotifier())
    lifecycle.approve(db_session, manual.id, revision.id, admin, date(2026, 1, 1), notifier=RecordingNotifier())
    services.archive_manual(db_session, manual.id, owner)
    db_session.commit()

    with pytest.raises(PreconditionFailed) as exc:
        lifecycle.start_next_revision(db_session, manual.id, owner)
    assert exc.value.code == "archived"

    db_session.expire_all()
    refreshed = db_session.query(models.Manual).filter_by(id=manual.id).one()
    assert refreshed.status == models.ManualStatus.APPROVED
    assert [rev.revision_number for rev in services.list_revisions(db_session, manual.id)] == ["1"]


def _approval_side_effects(db_session, manual_id):
    return (
        db_session.query(models.FieldHistoryEntry).filter_by(manual_id=manual_id).count(),
        len(_status_changes(db_session, manual_id)),
    )


def test_audit_failure_rolls_back_approval(db_session, monkeypatch):
    owner, admin, _, manual, _ = _seed(db_session)
    revision = lifecycle.submit_for_review(db_session, manual.id, owner, notifier=RecordingNotifier())
    before = _approval_side_effects(db_session, manual.id)
    notifier = RecordingNotifier()

    def _unavailable(*args, **kwargs):
        raise RuntimeError("audit store unavailable")

    monkeypatch.setattr(audit_services, "record", _unavailable)
    with pytest.raises(RuntimeError):
        lifecycle.approve(db_session, manual.id, revision.id, admin, date(2026, 1, 1), notifier=notifier)
    monkeypatch.undo()

    db_session.expire_all()
    assert db_session.query(models.Manual).filter_by(id=manual.id).one().status == models.ManualStatus.IN_REVIEW
    stored = db_session.query(models.Revision).filter_by(id=revision.id).one()
    assert stored.status == models.RevisionStatus.IN_REVIEW
    assert stored.approved_at is None
    assert _approval_side_effects(db_session, manual.id) == before
    assert notifier.calls == []


def test_field_history_failure_rolls_back_approval(db_session, monkeypatch):
    owner, admin, _, manual, _ = _seed(db_session)
    revision = lifecycle.submit_for_review(db_session, manual.id, owner, notifier=RecordingNotifier())
    before = _approval_side_effects(db_session, manual.id)

    def _unavailable(*args, **kwargs):
        raise RuntimeError("history store unavailable")

    monkeypatch.setattr(history, "record_field_changes", _unavailable)
    with pytest.raises(RuntimeError):
        lifecycle.approve(db_session, manual.id, revision.id, admin, date(2026, 1, 1), notifier=RecordingNotifier())
    monkeypatch.undo()

    db_session.expire_all()
    refreshed = db_session.query(models.Manual).filter_by(id=manual.id).one()
    assert refreshed.status == models.ManualStatus.IN_REVIEW
    assert refreshed.current_revision == "0"
    assert refreshed.effective_date is None
    stored = db_session.query(models.Revision).filter_by(id=revision.id).one()
    assert stored.status == models.RevisionStatus.IN_REVIEW
    # The status_change entry was flushed before the failure and went with the rollback.
    assert _approval_side_effects(db_session, manual.id) == before


def test_revision_number_clash_is_reported_as_retryable_conflict(db_session, monkeypatch):
    owner, _, _, manual, _ = _seed(db_session)
    # A newer closed revision forces submit to open a new one.
    db_session.add(
        models.Revision(
            manual_id=manual.id,
            revision_number="9",
            status=models.RevisionStatus.APPROVED,
            snapshot={},
            snapshot_sha256="0" * 64,
        )
    )
    db_session.commit()
    monkeypatch.setattr(lifecycle, "next_revision_number", lambda db, manual_id, draft=True: "9")

    with pytest.raises(Conflict) as exc:
        lifecycle.submit_for_review(db_session, manual.id, owner, notifier=RecordingNotifier())
    assert exc.value.retryable is True

    db_session.expire_all()
    assert db_session.query(models.Manual).filter_by(id=manual.id).one().status == models.ManualStatus.DRAFT
    assert sorted(rev.revision_number for rev in services.list_revisions(db_session, manual.id)) == ["1", "9"]


def test_commit_failure_is_reported_as_storage_unavailable(db_session, monkeypatch):
    owner, _, _, manual, _ = _seed(db_session)

    def _locked():
        raise OperationalError("COMMIT", None, Exception("database is locked"))

    monkeypatch.setattr(db_session, "commit", _locked)
    with pytest.raises(StorageUnavailable) as exc:
        lifecycle.submit_for_review(db_session, manual.id, owner, notifier=RecordingNotifier())
    monkeypatch.undo()

    assert exc.value.retryable is True
    db_session.expire_all()
    assert db_session.query(models.Manual).filter_by(id=manual.id).one().status == models.ManualStatus.DRAFT
