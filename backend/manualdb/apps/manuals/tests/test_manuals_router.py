from __future__ import annotations

import importlib
from datetime import date

import pytest
from fastapi import HTTPException

from manualdb.apps.accounts.models import AccountRole, User
from manualdb.apps.manuals import models, schemas
from manualdb.apps.notifications import senders

manuals_router = importlib.import_module("manualdb.apps.manuals.router")


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    def send_review_request(self, *, recipients, context):
        self.calls.append(("review_request", recipients))

    def send_approval(self, *, recipients, context):
        self.calls.append(("approval", recipients))

    def send_rejection(self, *, recipients, context):
        self.calls.append(("rejection", recipients))


@pytest.fixture()
def notifier(monkeypatch):
    recorder = RecordingNotifier()
    monkeypatch.setattr(senders, "get_notifier", lambda: recorder)
    return recorder


def _users(db_session):
    owner = User(email="owner@example.com", full_name="Owner", role=AccountRole.MANAGER, hashed_password="x")
    admin = User(email="admin@example.com", full_name="Admin", role=AccountRole.SYSADMIN, hashed_password="x")
    db_session.add_all([owner, admin])
    db_session.commit()
    return owner, admin


def _create(db_session, owner):
    return manuals_router.create_manual(
        payload=schemas.ManualCreate(manual_code="MOE", title="Exposition", organization_name="Acme Aero"),
        db=db_session,
        current_user=owner,
    )


def test_router_has_expected_routes():
    def _has(path: str, method: str) -> bool:
        return any(route.path == path and method in (route.methods or []) for route in manuals_router.router.routes)

    assert _has("/manuals", "POST")
    assert _has("/manuals/{manual_id}/chapters", "POST")
    assert _has("/manuals/{manual_id}/submit-review", "POST")
    assert _has("/manuals/{manual_id}/review/approve", "POST")
    assert _has("/manuals/{manual_id}/review/reject", "POST")
    assert _has("/manuals/{manual_id}/create-revision", "POST")
    assert _has("/manuals/{manual_id}/restore-from-revision", "POST")
    assert _has("/manuals/{manual_id}/revisions", "GET")
    assert _has("/manuals/{manual_id}/field-history", "GET")
    assert _has("/manuals/{manual_id}/audit-logs", "GET")


def test_review_flow_through_endpoints(db_session, notifier):
    owner, admin = _users(db_session)
    manual = _create(db_session, owner)
    chapter = manuals_router.add_chapter(
        manual_id=manual.id,
        payload=schemas.ChapterCreate(heading="Introduction"),
        db=db_session,
        current_user=owner,
    )
    assert chapter.label == "1"

    revision = manuals_router.submit_review(manual_id=manual.id, payload=None, db=db_session, current_user=owner)
    assert revision.status == models.RevisionStatus.IN_REVIEW
    assert notifier.calls == [("review_request", ["admin@example.com"])]

    approved = manuals_router.approve_review(
        manual_id=manual.id,
        payload=schemas.ApproveRequest(revision_id=revision.id, effective_date=date(2026, 1, 1)),
        db=db_session,
        current_user=admin,
    )
    assert approved.status == models.RevisionStatus.APPROVED

    nxt = manuals_router.create_revision(manual_id=manual.id, db=db_session, current_user=owner)
    assert nxt.new_revision_number == "2"
    assert nxt.manual.current_revision == "1"

    diff = manuals_router.diff_revisions(
        manual_id=manual.id,
        revision_id=revision.id,
        other_revision_id=nxt.revision.id,
        db=db_session,
    )
    assert diff["added"] == [] and diff["removed"] == []

    page = manuals_router.list_audit_logs(
        manual_id=manual.id,
        action="status_change",
        entity_type=None,
        entity_id=None,
        actor_id=None,
        start=None,
        end=None,
        limit=50,
        offset=0,
        db=db_session,
    )
    assert page.total == 3


def test_errors_map_to_http_status(db_session, notifier):
    owner, admin = _users(db_session)
    manual = _create(db_session, owner)
    revision = manuals_router.submit_review(manual_id=manual.id, payload=None, db=db_session, current_user=owner)

    with pytest.raises(HTTPException) as exc:
        manuals_router.get_manual(manual_id="missing", db=db_session)
    assert exc.value.status_code == 404

    with pytest.raises(HTTPException) as exc:
        manuals_router.approve_review(
            manual_id=manual.id,
            payload=schemas.ApproveRequest(revision_id=revision.id, effective_date=date(2026, 1, 1)),
            db=db_session,
            current_user=owner,
        )
    assert exc.value.status_code == 403
    assert exc.value.detail["code"] == "forbidden"

    with pytest.raises(HTTPException) as exc:
        manuals_router.approve_review(
            manual_id=manual.id,
            payload=schemas.ApproveRequest(revision_id=revision.id),
            db=db_session,
            current_user=admin,
        )
    assert exc.value.status_code == 400
    assert exc.value.detail["errors"][0]["field"] == "effective_date"

    with pytest.raises(HTTPException) as exc:
        manuals_router.update_manual(
            manual_id=manual.id,
            payload=schemas.ManualUpdate(title="Mid-review edit"),
            db=db_session,
            current_user=owner,
        )
    assert exc.value.status_code == 409
    assert exc.value.detail["code"] == "not_editable"
