from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from manualdb.database import Base
from manualdb.utils.append_only import make_append_only
from manualdb.utils.identifiers import generate_short_id, generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _values(enum_cls):
    return [member.value for member in enum_cls]


class ManualStatus(str, enum.Enum):
    DRAFT = "draft"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"


# A revision carries a private copy of the manual's lifecycle status.
RevisionStatus = ManualStatus

EDITABLE_STATUSES = frozenset({ManualStatus.DRAFT, ManualStatus.REJECTED})


class ChangeType(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


MAX_CHAPTER_DEPTH = 3


class Manual(Base):
    __tablename__ = "manuals"
    __table_args__ = (
        Index("ix_manuals_status_archived", "status", "is_archived"),
    )

    id = Column(String(36), primary_key=True, default=generate_short_id)
    manual_code = Column(String(64), nullable=False, unique=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    organization_name = Column(String(255), nullable=False)
    status = Column(
        Enum(ManualStatus, name="manual_status_enum", native_enum=False, values_callable=_values),
        nullable=False,
        default=ManualStatus.DRAFT,
        index=True,
    )
    current_revision = Column(String(32), nullable=False, default="0")
    effective_date = Column(Date, nullable=True)
    revision_date = Column(Date, nullable=True)
    review_due_date = Column(Date, nullable=True)
    language = Column(String(16), nullable=False, default="en")
    reference_number = Column(String(64), nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    is_archived = Column(Boolean, nullable=False, default=False, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    updated_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    chapters = relationship("Chapter", back_populates="manual", cascade="all, delete-orphan", passive_deletes=True)
    revisions = relationship(
        "Revision",
        back_populates="manual",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Revision.created_at",
    )

    def __repr__(self) -> str:
        return f"<Manual id={self.id} code={self.manual_code} status={self.status}>"


class Chapter(Base):
    """
    Node in the chapter/section/subsection/clause tree.

    A node at depth n has coordinates 0..n populated and none beyond.
    `parent_id` is a back-reference; the manual owns every node directly.
    """

    __tablename__ = "chapters"
    __table_args__ = (
        CheckConstraint("depth >= 0 AND depth <= 3", name="ck_chapters_depth"),
        CheckConstraint(
            "(depth = 0 AND section_number IS NULL AND subsection_number IS NULL AND clause_number IS NULL)"
            " OR (depth = 1 AND section_number IS NOT NULL AND subsection_number IS NULL AND clause_number IS NULL)"
            " OR (depth = 2 AND section_number IS NOT NULL AND subsection_number IS NOT NULL AND clause_number IS NULL)"
            " OR (depth = 3 AND section_number IS NOT NULL AND subsection_number IS NOT NULL AND clause_number IS NOT NULL)",
            name="ck_chapters_valid_numbering",
        ),
        UniqueConstraint(
            "manual_id",
            "chapter_number",
            "section_number",
            "subsection_number",
            "clause_number",
            name="uq_chapters_manual_coordinates",
        ),
        Index("ix_chapters_manual_parent", "manual_id", "parent_id"),
    )

    id = Column(String(36), primary_key=True, default=generate_short_id)
    manual_id = Column(String(36), ForeignKey("manuals.id", ondelete="CASCADE"), nullable=False, index=True)
    parent_id = Column(String(36), ForeignKey("chapters.id", ondelete="CASCADE"), nullable=True)
    chapter_number = Column(Integer, nullable=False)
    section_number = Column(Integer, nullable=True)
    subsection_number = Column(Integer, nullable=True)
    clause_number = Column(Integer, nullable=True)
    depth = Column(Integer, nullable=False, default=0)
    heading = Column(String(500), nullable=False)
    display_order = Column(Integer, nullable=False, default=0)
    page_break = Column(Boolean, nullable=False, default=False)
    is_mandatory = Column(Boolean, nullable=False, default=False)
    regulatory_references = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_by = Column(String(36), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    updated_by = Column(String(36), nullable=True)

    manual = relationship("Manual", back_populates="chapters")
    content_blocks = relationship(
        "ContentBlock",
        back_populates="chapter",
        cascade="all, delete-orphan",
        order_by="ContentBlock.display_order",
    )
    remarks = relationship(
        "ChapterRemark",
        back_populates="chapter",
        cascade="all, delete-orphan",
        order_by="ChapterRemark.display_order",
    )

    @property
    def coordinates(self) -> tuple:
        values = (self.chapter_number, self.section_number, self.subsection_number, self.clause_number)
        return tuple(v for v in values[: (self.depth or 0) + 1])

    @property
    def label(self) -> str:
        return ".".join(str(v) for v in self.coordinates)


class ContentBlock(Base):
    __tablename__ = "content_blocks"

    id = Column(String(36), primary_key=True, default=generate_short_id)
    chapter_id = Column(String(36), ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False, index=True)
    block_type = Column(String(32), nullable=False, default="text")
    content = Column(JSON, nullable=False, default=dict)
    display_order = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_by = Column(String(36), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    updated_by = Column(String(36), nullable=True)

    chapter = relationship("Chapter", back_populates="content_blocks")


class ChapterRemark(Base):
    __tablename__ = "chapter_remarks"
    __table_args__ = (
        UniqueConstraint("chapter_id", "display_order", name="uq_chapter_remarks_order"),
    )

    id = Column(String(36), primary_key=True, default=generate_short_id)
    chapter_id = Column(String(36), ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False, index=True)
    remark_text = Column(Text, nullable=False)
    display_order = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_by = Column(String(36), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    updated_by = Column(String(36), nullable=True)

    chapter = relationship("Chapter", back_populates="remarks")


class Revision(Base):
    """
    Point-in-time record of a manual at a lifecycle transition.

    Mutable while draft or in_review. Once approved or rejected the row is
    frozen; `snapshot` is never regenerated after the revision leaves draft.
    """

    __tablename__ = "revisions"
    __table_args__ = (
        UniqueConstraint("manual_id", "revision_number", name="uq_revisions_manual_number"),
        Index("ix_revisions_manual_status", "manual_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=generate_short_id)
    manual_id = Column(String(36), ForeignKey("manuals.id", ondelete="CASCADE"), nullable=False, index=True)
    revision_number = Column(String(32), nullable=False)
    status = Column(
        Enum(RevisionStatus, name="revision_status_enum", native_enum=False, values_callable=_values),
        nullable=False,
        default=RevisionStatus.DRAFT,
    )
    snapshot = Column(JSON, nullable=False)
    snapshot_sha256 = Column(String(64), nullable=False)
    changes_summary = Column(Text, nullable=True)
    chapters_affected = Column(JSON, nullable=False, default=list)
    effective_date = Column(Date, nullable=True)

    submitted_for_review_at = Column(DateTime(timezone=True), nullable=True)
    submitted_by = Column(String(36), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    approved_by = Column(String(36), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejected_by = Column(String(36), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_by = Column(String(36), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    manual = relationship("Manual", back_populates="revisions")

    def __repr__(self) -> str:
        return f"<Revision id={self.id} manual={self.manual_id} number={self.revision_number} status={self.status}>"


class FieldHistoryEntry(Base):
    """One changed field of one mutation. Write-once (storage-enforced)."""

    __tablename__ = "field_history"
    __table_args__ = (
        Index("ix_field_history_manual_time", "manual_id", "changed_at"),
        Index("ix_field_history_record", "table_name", "record_id"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    manual_id = Column(String(36), nullable=False, index=True)
    revision_id = Column(String(36), nullable=True, index=True)
    table_name = Column(String(64), nullable=False)
    record_id = Column(String(36), nullable=False)
    field_name = Column(String(64), nullable=False)
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    change_type = Column(
        Enum(ChangeType, name="field_change_type_enum", native_enum=False, values_callable=_values),
        nullable=False,
        default=ChangeType.UPDATED,
    )
    changed_by = Column(String(36), nullable=True)
    changed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


make_append_only(FieldHistoryEntry.__table__)
