"""
Chapter hierarchy manager.

Keeps the chapter/section/subsection/clause tree of a manual consistent:
coordinates follow the depth, siblings never share a number, and chapter 0
(front matter) always exists and cannot be removed. Every change is written
through the field history tracker inside the caller's transaction.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from manualdb.apps.accounts.models import User

from . import history, models
from .errors import NotFound, PreconditionFailed
from .repository import ActorRef, require_editable, resolve_actor, working_revision
from .snapshot import build_snapshot

logger = logging.getLogger(__name__)

FRONTMATTER_HEADING = "Frontmatter"

COORDINATE_FIELDS = ("chapter_number", "section_number", "subsection_number", "clause_number")

CHAPTER_EDITABLE_FIELDS = frozenset({"heading", "display_order", "page_break", "regulatory_references"})
BLOCK_EDITABLE_FIELDS = frozenset({"block_type", "content", "display_order"})


def validate_coordinates(depth: int, coordinates: Iterable[Optional[int]]) -> None:
    """A node at depth n has coordinates 0..n set and none beyond."""
    coords = list(coordinates)
    coords += [None] * (4 - len(coords))
    if depth < 0 or depth > models.MAX_CHAPTER_DEPTH:
        raise PreconditionFailed(f"Depth {depth} is outside 0..{models.MAX_CHAPTER_DEPTH}", code="invalid_depth")
    for level, value in enumerate(coords):
        if level <= depth and value is None:
            raise PreconditionFailed(f"Coordinate {COORDINATE_FIELDS[level]} is required at depth {depth}", code="invalid_numbering")
        if level > depth and value is not None:
            raise PreconditionFailed(f"Coordinate {COORDINATE_FIELDS[level]} must be empty at depth {depth}", code="invalid_numbering")
        if value is not None and value < 0:
            raise PreconditionFailed("Chapter numbers cannot be negative", code="invalid_numbering")


def _coordinate_filter(query, coords: List[Optional[int]]):
    for name, value in zip(COORDINATE_FIELDS, coords):
        column = getattr(models.Chapter, name)
        query = query.filter(column.is_(None) if value is None else column == value)
    return query


def _load_chapter(db: Session, manual_id: str, chapter_id: str) -> models.Chapter:
    chapter = (
        db.query(models.Chapter)
        .filter(models.Chapter.id == chapter_id, models.Chapter.manual_id == manual_id)
        .first()
    )
    if chapter is None:
        raise NotFound(f"Chapter {chapter_id} not found")
    return chapter


def _revision_id(db: Session, manual_id: str) -> Optional[str]:
    revision = working_revision(db, manual_id)
    return revision.id if revision else None


def ensure_chapter_zero(db: Session, manual: models.Manual, actor_id: Optional[str]) -> models.Chapter:
    existing = (
        db.query(models.Chapter)
        .filter(
            models.Chapter.manual_id == manual.id,
            models.Chapter.depth == 0,
            models.Chapter.chapter_number == 0,
        )
        .first()
    )
    if existing is not None:
        return existing

    chapter = models.Chapter(
        manual_id=manual.id,
        chapter_number=0,
        depth=0,
        heading=FRONTMATTER_HEADING,
        display_order=0,
        is_mandatory=True,
        regulatory_references=[],
        created_by=actor_id,
        updated_by=actor_id,
    )
    db.add(chapter)
    db.flush()
    history.record_insert(db, chapter, actor_id=actor_id, manual_id=manual.id, metadata={"number": "0"})
    return chapter


def add_chapter(
    db: Session,
    manual_id: str,
    actor: ActorRef,
    *,
    heading: str,
    parent_id: Optional[str] = None,
    number: Optional[int] = None,
    display_order: Optional[int] = None,
    page_break: bool = False,
    regulatory_references: Optional[List[str]] = None,
) -> models.Chapter:
    actor = resolve_actor(db, actor)
    require_editable(db, manual_id, actor)
    if not heading or not heading.strip():
        raise PreconditionFailed("Chapter heading is required", code="missing_requirements")

    parent = _load_chapter(db, manual_id, parent_id) if parent_id else None
    depth = 0 if parent is None else parent.depth + 1
    if depth > models.MAX_CHAPTER_DEPTH:
        raise PreconditionFailed("Clauses cannot have children", code="invalid_depth")

    level_field = COORDINATE_FIELDS[depth]
    level_column = getattr(models.Chapter, level_field)
    siblings = db.query(models.Chapter).filter(models.Chapter.manual_id == manual_id, models.Chapter.depth == depth)
    siblings = siblings.filter(
        models.Chapter.parent_id.is_(None) if parent is None else models.Chapter.parent_id == parent.id
    )

    if number is None:
        current_max = siblings.with_entities(func.max(level_column)).scalar()
        number = 1 if current_max is None else current_max + 1

    coords: List[Optional[int]] = [None, None, None, None]
    if parent is not None:
        for level in range(parent.depth + 1):
            coords[level] = getattr(parent, COORDINATE_FIELDS[level])
    coords[depth] = number
    validate_coordinates(depth, coords)

    clash = _coordinate_filter(db.query(models.Chapter).filter(models.Chapter.manual_id == manual_id), coords).first()
    if clash is not None:
        raise PreconditionFailed(f"Chapter {clash.label} already exists", code="duplicate_number")

    if display_order is None:
        max_order = siblings.with_entities(func.max(models.Chapter.display_order)).scalar()
        display_order = 0 if max_order is None else max_order + 1

    chapter = models.Chapter(
        manual_id=manual_id,
        parent_id=parent.id if parent else None,
        depth=depth,
        heading=heading.strip(),
        display_order=display_order,
        page_break=page_break,
        is_mandatory=False,
        regulatory_references=list(regulatory_references or []),
        created_by=actor.id,
        updated_by=actor.id,
        **dict(zip(COORDINATE_FIELDS, coords)),
    )
    db.add(chapter)
    db.flush()
    history.record_insert(
        db,
        chapter,
        actor_id=actor.id,
        actor_email=actor.email,
        manual_id=manual_id,
        revision_id=_revision_id(db, manual_id),
        metadata={"number": chapter.label},
    )
    return chapter


def update_chapter(
    db: Session,
    manual_id: str,
    chapter_id: str,
    actor: ActorRef,
    changes: Dict[str, Any],
) -> models.Chapter:
    actor = resolve_actor(db, actor)
    require_editable(db, manual_id, actor)
    chapter = _load_chapter(db, manual_id, chapter_id)

    unknown = set(changes) - CHAPTER_EDITABLE_FIELDS
    if unknown:
        raise PreconditionFailed(f"Fields cannot be changed: {', '.join(sorted(unknown))}", code="invalid_fields")
    if "heading" in changes and not str(changes["heading"] or "").strip():
        raise PreconditionFailed("Chapter heading is required", code="missing_requirements")

    with history.track_changes(
        db,
        chapter,
        actor_id=actor.id,
        actor_email=actor.email,
        manual_id=manual_id,
        revision_id=_revision_id(db, manual_id),
    ):
        for key, value in changes.items():
            if key == "regulatory_references":
                value = list(value or [])
            elif key == "heading":
                value = value.strip()
            setattr(chapter, key, value)
        chapter.updated_by = actor.id
    return chapter


def _subtree(db: Session, manual_id: str, root: models.Chapter) -> List[models.Chapter]:
    all_chapters = db.query(models.Chapter).filter(models.Chapter.manual_id == manual_id).all()
    children: Dict[Optional[str], List[models.Chapter]] = {}
    for chapter in all_chapters:
        children.setdefault(chapter.parent_id, []).append(chapter)

    ordered: List[models.Chapter] = []
    stack = [root]
    while stack:
        node = stack.pop()
        ordered.append(node)
        stack.extend(children.get(node.id, []))
    return ordered


def delete_chapter(db: Session, manual_id: str, chapter_id: str, actor: ActorRef) -> List[str]:
    """Delete a chapter and everything under it. Returns the deleted labels."""
    actor = resolve_actor(db, actor)
    require_editable(db, manual_id, actor)
    chapter = _load_chapter(db, manual_id, chapter_id)
    if chapter.is_mandatory:
        raise PreconditionFailed(f"Chapter {chapter.label} is mandatory and cannot be deleted", code="mandatory_chapter")

    revision_id = _revision_id(db, manual_id)
    nodes = _subtree(db, manual_id, chapter)
    labels = [node.label for node in nodes]
    # Children before parents so the self-referencing FK never dangles.
    for node in reversed(nodes):
        history.record_delete(
            db,
            node,
            actor_id=actor.id,
            actor_email=actor.email,
            manual_id=manual_id,
            revision_id=revision_id,
            metadata={"number": node.label},
        )
        db.delete(node)
        db.flush()
    return labels


def add_content_block(
    db: Session,
    manual_id: str,
    chapter_id: str,
    actor: ActorRef,
    *,
    block_type: str = "text",
    content: Optional[dict] = None,
    display_order: Optional[int] = None,
) -> models.ContentBlock:
    actor = resolve_actor(db, actor)
    require_editable(db, manual_id, actor)
    chapter = _load_chapter(db, manual_id, chapter_id)

    if display_order is None:
        max_order = (
            db.query(func.max(models.ContentBlock.display_order))
            .filter(models.ContentBlock.chapter_id == chapter.id)
            .scalar()
        )
        display_order = 0 if max_order is None else max_order + 1

    block = models.ContentBlock(
        chapter_id=chapter.id,
        block_type=block_type,
        content=dict(content or {}),
        display_order=display_order,
        created_by=actor.id,
        updated_by=actor.id,
    )
    db.add(block)
    db.flush()
    history.record_insert(
        db,
        block,
        actor_id=actor.id,
        actor_email=actor.email,
        manual_id=manual_id,
        revision_id=_revision_id(db, manual_id),
        metadata={"chapter": chapter.label},
    )
    return block


def update_content_block(
    db: Session,
    manual_id: str,
    block_id: str,
    actor: ActorRef,
    changes: Dict[str, Any],
) -> models.ContentBlock:
    actor = resolve_actor(db, actor)
    require_editable(db, manual_id, actor)
    block = (
        db.query(models.ContentBlock)
        .join(models.Chapter, models.Chapter.id == models.ContentBlock.chapter_id)
        .filter(models.ContentBlock.id == block_id, models.Chapter.manual_id == manual_id)
        .first()
    )
    if block is None:
        raise NotFound(f"Content block {block_id} not found")

    unknown = set(changes) - BLOCK_EDITABLE_FIELDS
    if unknown:
        raise PreconditionFailed(f"Fields cannot be changed: {', '.join(sorted(unknown))}", code="invalid_fields")

    with history.track_changes(
        db,
        block,
        actor_id=actor.id,
        actor_email=actor.email,
        manual_id=manual_id,
        revision_id=_revision_id(db, manual_id),
    ):
        for key, value in changes.items():
            setattr(block, key, dict(value or {}) if key == "content" else value)
        block.updated_by = actor.id
    return block


def add_remark(
    db: Session,
    manual_id: str,
    chapter_id: str,
    actor: ActorRef,
    remark_text: str,
) -> models.ChapterRemark:
    actor = resolve_actor(db, actor)
    require_editable(db, manual_id, actor)
    chapter = _load_chapter(db, manual_id, chapter_id)
    if not remark_text or not remark_text.strip():
        raise PreconditionFailed("Remark text is required", code="missing_requirements")

    max_order = (
        db.query(func.max(models.ChapterRemark.display_order))
        .filter(models.ChapterRemark.chapter_id == chapter.id)
        .scalar()
    )
    remark = models.ChapterRemark(
        chapter_id=chapter.id,
        remark_text=remark_text.strip(),
        display_order=0 if max_order is None else max_order + 1,
        created_by=actor.id,
        updated_by=actor.id,
    )
    db.add(remark)
    db.flush()
    history.record_insert(
        db,
        remark,
        actor_id=actor.id,
        actor_email=actor.email,
        manual_id=manual_id,
        revision_id=_revision_id(db, manual_id),
        metadata={"chapter": chapter.label},
    )
    return remark


def list_tree(db: Session, manual_id: str) -> List[Dict[str, Any]]:
    """The live chapter tree, in the same shape snapshots use."""
    return build_snapshot(db, manual_id)["manual"]["chapters"]


def rebuild_from_snapshot(
    db: Session,
    manual: models.Manual,
    chapters: List[Dict[str, Any]],
    actor: User,
    revision_id: Optional[str],
) -> int:
    """
    Replace the live chapter tree with the nodes of a stored snapshot.

    Used by restore; returns the number of chapters written.
    """
    existing = db.query(models.Chapter).filter(models.Chapter.manual_id == manual.id).all()
    by_parent: Dict[Optional[str], List[models.Chapter]] = {}
    for chapter in existing:
        by_parent.setdefault(chapter.parent_id, []).append(chapter)
    doomed: List[models.Chapter] = []
    for root in by_parent.get(None, []):
        doomed.extend(_subtree(db, manual.id, root))
    for chapter in reversed(doomed):
        history.record_delete(
            db,
            chapter,
            actor_id=actor.id,
            actor_email=actor.email,
            manual_id=manual.id,
            revision_id=revision_id,
            metadata={"number": chapter.label, "reason": "restore"},
        )
        db.delete(chapter)
        db.flush()

    written = 0

    def _write(node: Dict[str, Any], parent: Optional[models.Chapter]) -> None:
        nonlocal written
        depth = node.get("depth") or 0
        coords = [node.get(name) for name in COORDINATE_FIELDS]
        validate_coordinates(depth, coords)
        chapter = models.Chapter(
            manual_id=manual.id,
            parent_id=parent.id if parent else None,
            depth=depth,
            heading=node.get("heading") or "",
            display_order=node.get("display_order") or 0,
            page_break=bool(node.get("page_break")),
            is_mandatory=bool(node.get("is_mandatory")),
            regulatory_references=list(node.get("regulatory_references") or []),
            created_by=actor.id,
            updated_by=actor.id,
            **dict(zip(COORDINATE_FIELDS, coords)),
        )
        db.add(chapter)
        db.flush()
        for block in node.get("content_blocks") or []:
            db.add(
                models.ContentBlock(
                    chapter_id=chapter.id,
                    block_type=block.get("block_type") or "text",
                    content=block.get("content") or {},
                    display_order=block.get("display_order") or 0,
                    created_by=actor.id,
                    updated_by=actor.id,
                )
            )
        for remark in node.get("remarks") or []:
            db.add(
                models.ChapterRemark(
                    chapter_id=chapter.id,
                    remark_text=remark.get("remark_text") or "",
                    display_order=remark.get("display_order") or 0,
                    created_by=actor.id,
                    updated_by=actor.id,
                )
            )
        db.flush()
        history.record_insert(
            db,
            chapter,
            actor_id=actor.id,
            actor_email=actor.email,
            manual_id=manual.id,
            revision_id=revision_id,
            metadata={"number": chapter.label, "reason": "restore"},
        )
        written += 1
        for child in node.get("children") or []:
            _write(child, chapter)

    for root in chapters:
        _write(root, None)
    ensure_chapter_zero(db, manual, actor.id)
    return written
