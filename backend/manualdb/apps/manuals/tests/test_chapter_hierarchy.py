from __future__ import annotations

import pytest

from manualdb.apps.accounts.models import AccountRole, User
from manualdb.apps.manuals import chapters, lifecycle, models, services
from manualdb.apps.manuals.errors import PermissionDenied, PreconditionFailed


class _SilentNotifier:
    def send_review_request(self, *, recipients, context):
        pass

    def send_approval(self, *, recipients, context):
        pass

    def send_rejection(self, *, recipients, context):
        pass


def _seed(db_session):
    owner = User(email="owner@example.com", full_name="Owner", role=AccountRole.MANAGER, hashed_password="x")
    other = User(email="other@example.com", full_name="Other", role=AccountRole.MANAGER, hashed_password="x")
    db_session.add_all([owner, other])
    db_session.commit()
    manual = services.create_manual(
        db_session,
        owner,
        manual_code="TPM",
        title="Training Procedures Manual",
        organization_name="Acme Aero",
    )
    db_session.commit()
    return owner, other, manual


def test_new_manual_has_mandatory_frontmatter(db_session):
    _, _, manual = _seed(db_session)

    rows = db_session.query(models.Chapter).filter(models.Chapter.manual_id == manual.id).all()

    assert len(rows) == 1
    assert rows[0].label == "0"
    assert rows[0].is_mandatory is True
    assert rows[0].heading == chapters.FRONTMATTER_HEADING


def test_add_chapter_numbers_each_level(db_session):
    owner, _, manual = _seed(db_session)

    one = chapters.add_chapter(db_session, manual.id, owner, heading="General")
    two = chapters.add_chapter(db_session, manual.id, owner, heading="Organisation")
    section = chapters.add_chapter(db_session, manual.id, owner, heading="Purpose", parent_id=one.id)
    second_section = chapters.add_chapter(db_session, manual.id, owner, heading="Scope", parent_id=one.id)
    subsection = chapters.add_chapter(db_session, manual.id, owner, heading="Applicability", parent_id=second_section.id)
    clause = chapters.add_chapter(db_session, manual.id, owner, heading="Exceptions", parent_id=subsection.id)
    db_session.commit()

    assert [c.label for c in (one, two, section, second_section, subsection, clause)] == [
        "1",
        "2",
        "1.1",
        "1.2",
        "1.2.1",
        "1.2.1.1",
    ]
    assert clause.depth == 3
    assert clause.coordinates == (1, 2, 1, 1)

    with pytest.raises(PreconditionFailed) as exc:
        chapters.add_chapter(db_session, manual.id, owner, heading="Too deep", parent_id=clause.id)
    assert exc.value.code == "invalid_depth"


def test_explicit_number_must_be_free(db_session):
    owner, _, manual = _seed(db_session)
    chapters.add_chapter(db_session, manual.id, owner, heading="General", number=5)

    with pytest.raises(PreconditionFailed) as exc:
        chapters.add_chapter(db_session, manual.id, owner, heading="Clash", number=5)
    assert exc.value.code == "duplicate_number"

    nxt = chapters.add_chapter(db_session, manual.id, owner, heading="Next")
    assert nxt.label == "6"


def test_validate_coordinates():
    chapters.validate_coordinates(2, [1, 2, 3, None])
    with pytest.raises(PreconditionFailed):
        chapters.validate_coordinates(1, [1, None, None, None])
    with pytest.raises(PreconditionFailed):
        chapters.validate_coordinates(0, [1, 2, None, None])
    with pytest.raises(PreconditionFailed):
        chapters.validate_coordinates(4, [1, 1, 1, 1])


def test_delete_removes_subtree_but_never_frontmatter(db_session):
    owner, _, manual = _seed(db_session)
    zero = db_session.query(models.Chapter).filter_by(manual_id=manual.id, chapter_number=0).one()
    one = chapters.add_chapter(db_session, manual.id, owner, heading="General")
    section = chapters.add_chapter(db_session, manual.id, owner, heading="Purpose", parent_id=one.id)
    chapters.add_content_block(db_session, manual.id, section.id, owner, content={"text": "x"})
    chapters.add_remark(db_session, manual.id, one.id, owner, "Review wording")
    db_session.commit()

    with pytest.raises(PreconditionFailed) as exc:
        chapters.delete_chapter(db_session, manual.id, zero.id, owner)
    assert exc.value.code == "mandatory_chapter"

    labels = chapters.delete_chapter(db_session, manual.id, one.id, owner)
    db_session.commit()

    assert sorted(labels) == ["1", "1.1"]
    assert db_session.query(models.Chapter).filter_by(manual_id=manual.id).count() == 1
    assert db_session.query(models.ContentBlock).count() == 0
    assert db_session.query(models.ChapterRemark).count() == 0


def test_remarks_and_blocks_are_ordered(db_session):
    owner, _, manual = _seed(db_session)
    one = chapters.add_chapter(db_session, manual.id, owner, heading="General")
    first = chapters.add_remark(db_session, manual.id, one.id, owner, "First")
    second = chapters.add_remark(db_session, manual.id, one.id, owner, "Second")
    block = chapters.add_content_block(db_session, manual.id, one.id, owner, content={"text": "a"})
    db_session.commit()

    assert (first.display_order, second.display_order) == (0, 1)

    chapters.update_content_block(db_session, manual.id, block.id, owner, {"content": {"text": "b"}})
    db_session.commit()
    assert block.content == {"text": "b"}

    tree = chapters.list_tree(db_session, manual.id)
    assert [r["remark_text"] for r in tree[1]["remarks"]] == ["First", "Second"]


def test_edits_require_owner_and_editable_status(db_session):
    owner, other, manual = _seed(db_session)

    with pytest.raises(PermissionDenied):
        chapters.add_chapter(db_session, manual.id, other, heading="Intruder")
    db_session.rollback()

    lifecycle.submit_for_review(db_session, manual.id, owner, notifier=_SilentNotifier())

    with pytest.raises(PreconditionFailed) as exc:
        chapters.add_chapter(db_session, manual.id, owner, heading="Late change")
    assert exc.value.code == "not_editable"
