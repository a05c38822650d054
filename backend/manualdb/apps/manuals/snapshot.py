"""
Snapshot builder.

A snapshot is the frozen, self-contained copy of a manual (metadata plus the
whole chapter tree with content) embedded in a Revision. It is stored as an
opaque JSON value; the `schema_version` key lets readers recognise older
shapes. Building is read-only and deterministic for a given database state:
no timestamps of the build itself, stable ordering everywhere.
"""

from __future__ import annotations

import copy
import hashlib
import json
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session, selectinload

from . import models
from .errors import NotFound, PreconditionFailed

SNAPSHOT_SCHEMA_VERSION = 2

# Manual columns copied into the snapshot. Lifecycle bookkeeping (status,
# current_revision, timestamps) belongs to the Revision, not the content.
MANUAL_FIELDS = (
    "id",
    "manual_code",
    "title",
    "description",
    "organization_name",
    "effective_date",
    "revision_date",
    "review_due_date",
    "language",
    "reference_number",
    "tags",
    "metadata_json",
    "is_archived",
)

CHAPTER_FIELDS = (
    "chapter_number",
    "section_number",
    "subsection_number",
    "clause_number",
    "depth",
    "heading",
    "display_order",
    "page_break",
    "is_mandatory",
    "regulatory_references",
)


def to_json_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(v) for v in value]
    return value


def _sort_key(chapter: models.Chapter) -> Tuple:
    coords = (
        chapter.chapter_number,
        chapter.section_number,
        chapter.subsection_number,
        chapter.clause_number,
    )
    return tuple(-1 if c is None else c for c in coords) + (chapter.display_order or 0, chapter.id)


def _chapter_node(chapter: models.Chapter) -> Dict[str, Any]:
    node = {name: to_json_value(getattr(chapter, name)) for name in CHAPTER_FIELDS}
    node["number"] = chapter.label
    node["content_blocks"] = [
        {
            "block_type": block.block_type,
            "content": to_json_value(block.content),
            "display_order": block.display_order,
        }
        for block in sorted(chapter.content_blocks, key=lambda b: (b.display_order or 0, b.id))
    ]
    node["remarks"] = [
        {"remark_text": remark.remark_text, "display_order": remark.display_order}
        for remark in sorted(chapter.remarks, key=lambda r: (r.display_order or 0, r.id))
    ]
    node["children"] = []
    return node


def _manual_fields(manual: models.Manual) -> Dict[str, Any]:
    out = {}
    for name in MANUAL_FIELDS:
        key = "metadata" if name == "metadata_json" else name
        out[key] = to_json_value(getattr(manual, name))
    return out


def build_snapshot(db: Session, manual_id: str) -> Dict[str, Any]:
    manual = db.query(models.Manual).filter(models.Manual.id == manual_id).first()
    if manual is None:
        raise NotFound(f"Manual {manual_id} not found")

    chapters = (
        db.query(models.Chapter)
        .options(
            selectinload(models.Chapter.content_blocks),
            selectinload(models.Chapter.remarks),
        )
        .filter(models.Chapter.manual_id == manual_id)
        .all()
    )
    chapters.sort(key=_sort_key)

    nodes = {chapter.id: _chapter_node(chapter) for chapter in chapters}
    roots: List[Dict[str, Any]] = []
    for chapter in chapters:
        parent = nodes.get(chapter.parent_id) if chapter.parent_id else None
        if parent is None:
            roots.append(nodes[chapter.id])
        else:
            parent["children"].append(nodes[chapter.id])

    manual_payload = _manual_fields(manual)
    manual_payload["chapters"] = roots
    return {"schema_version": SNAPSHOT_SCHEMA_VERSION, "manual": manual_payload}


def canonical_json(snapshot: Dict[str, Any]) -> str:
    return json.dumps(snapshot, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def snapshot_digest(snapshot: Dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(snapshot).encode("utf-8")).hexdigest()


def verify_snapshot(revision: models.Revision) -> bool:
    """True when the stored snapshot still matches the digest taken when it was frozen."""
    return snapshot_digest(revision.snapshot) == revision.snapshot_sha256


def _label_from_coordinates(node: Dict[str, Any]) -> str:
    depth = node.get("depth") or 0
    coords = [
        node.get("chapter_number"),
        node.get("section_number"),
        node.get("subsection_number"),
        node.get("clause_number"),
    ][: depth + 1]
    return ".".join(str(c) for c in coords if c is not None)


def _upgrade_v1(raw: Dict[str, Any]) -> Dict[str, Any]:
    # v1 stored the raw manual row plus a flat chapter list and a build timestamp.
    manual = dict(raw.get("manual") or {})
    flat = manual.pop("chapters", None) or raw.get("chapters") or []
    for key in ("status", "current_revision", "created_at", "updated_at", "created_by", "updated_by"):
        manual.pop(key, None)
    if "metadata_json" in manual:
        manual["metadata"] = manual.pop("metadata_json")

    nodes: Dict[Any, Dict[str, Any]] = {}
    order: List[Tuple[Any, Optional[Any]]] = []
    for index, chapter in enumerate(flat):
        node = {name: chapter.get(name) for name in CHAPTER_FIELDS}
        node["number"] = chapter.get("number") or _label_from_coordinates(chapter)
        node["content_blocks"] = list(chapter.get("content_blocks") or [])
        node["remarks"] = list(chapter.get("remarks") or [])
        node["children"] = []
        key = chapter.get("id", index)
        nodes[key] = node
        order.append((key, chapter.get("parent_id")))

    roots = []
    for key, parent_key in order:
        parent = nodes.get(parent_key) if parent_key is not None else None
        (parent["children"] if parent is not None else roots).append(nodes[key])
    manual["chapters"] = roots
    return {"schema_version": SNAPSHOT_SCHEMA_VERSION, "manual": manual}


def load_snapshot(raw: Any) -> Dict[str, Any]:
    """
    Read a stored snapshot of any known version into the current shape.

    The stored value is never rewritten; upgrades happen on a copy.
    """
    if isinstance(raw, (str, bytes)):
        raw = json.loads(raw)
    if not isinstance(raw, dict) or "manual" not in raw:
        raise PreconditionFailed("Snapshot is not a manual snapshot", code="unsupported_snapshot")

    version = raw.get("schema_version")
    if version is None:
        return _upgrade_v1(copy.deepcopy(raw))
    if version == SNAPSHOT_SCHEMA_VERSION:
        return copy.deepcopy(raw)
    raise PreconditionFailed(
        f"Unsupported snapshot schema version {version!r}",
        code="unsupported_snapshot",
    )


def iter_chapters(snapshot: Dict[str, Any]):
    """Depth-first walk over chapter nodes in document order."""
    stack = list(reversed(snapshot["manual"].get("chapters") or []))
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.get("children") or []))


def chapters_affected(snapshot: Dict[str, Any]) -> List[str]:
    return [node["number"] for node in iter_chapters(snapshot)]


def _flatten(snapshot: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    out = {}
    for node in iter_chapters(snapshot):
        out[node["number"]] = {k: v for k, v in node.items() if k != "children"}
    return out


def diff_snapshots(old: Any, new: Any) -> Dict[str, Any]:
    """
    Compare two snapshots by chapter label and manual metadata.

    Returns added/removed labels, changed chapters with the fields that
    differ, and changed manual fields with their old and new values.
    """
    old_snap = load_snapshot(old)
    new_snap = load_snapshot(new)
    old_chapters = _flatten(old_snap)
    new_chapters = _flatten(new_snap)

    changed = []
    for label in new_chapters:
        if label not in old_chapters:
            continue
        before, after = old_chapters[label], new_chapters[label]
        fields = sorted(k for k in set(before) | set(after) if before.get(k) != after.get(k))
        if fields:
            changed.append({"number": label, "fields": fields})

    old_manual = {k: v for k, v in old_snap["manual"].items() if k != "chapters"}
    new_manual = {k: v for k, v in new_snap["manual"].items() if k != "chapters"}
    manual_changes = {
        key: {"old": old_manual.get(key), "new": new_manual.get(key)}
        for key in sorted(set(old_manual) | set(new_manual))
        if old_manual.get(key) != new_manual.get(key)
    }

    return {
        "added": [label for label in new_chapters if label not in old_chapters],
        "removed": [label for label in old_chapters if label not in new_chapters],
        "changed": changed,
        "manual": manual_changes,
    }
