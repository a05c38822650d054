"""
Revision numbering.

Labels are strings of the form "<int>" or "<int>.<int>". Only the integer
base counts: a decimal sub-revision never advances it. Draft cycles target
base + 1; finalising on approval keeps the base.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from . import models

_LABEL_RE = re.compile(r"^([0-9]+)(?:\.([0-9]+))?$")


def parse_revision_base(label: Optional[str]) -> Optional[int]:
    """Return the integer base of a label, or None when it is not a revision label."""
    if label is None:
        return None
    match = _LABEL_RE.match(str(label).strip())
    if not match:
        return None
    return int(match.group(1))


def is_final_label(label: Optional[str]) -> bool:
    return label is not None and re.fullmatch(r"[0-9]+", str(label).strip()) is not None


def highest_base(labels: Iterable[Optional[str]]) -> int:
    bases = [b for b in (parse_revision_base(label) for label in labels) if b is not None]
    return max(bases, default=0)


def next_revision_number(db: Session, manual_id: str, draft: bool = True) -> str:
    labels = [
        row[0]
        for row in db.query(models.Revision.revision_number)
        .filter(models.Revision.manual_id == manual_id)
        .all()
    ]
    base = highest_base(labels)
    return str(base + 1) if draft else str(base)
