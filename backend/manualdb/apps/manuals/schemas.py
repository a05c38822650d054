from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import ChangeType, ManualStatus


class ManualCreate(BaseModel):
    manual_code: str
    title: str
    organization_name: str
    description: Optional[str] = None
    language: str = "en"
    reference_number: Optional[str] = None
    review_due_date: Optional[date] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ManualUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    organization_name: Optional[str] = None
    language: Optional[str] = None
    reference_number: Optional[str] = None
    review_due_date: Optional[date] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class ManualOut(BaseModel):
    id: str
    manual_code: str
    title: str
    description: Optional[str] = None
    organization_name: str
    status: ManualStatus
    current_revision: str
    effective_date: Optional[date] = None
    revision_date: Optional[date] = None
    review_due_date: Optional[date] = None
    language: str
    reference_number: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_json")
    is_archived: bool
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ChapterCreate(BaseModel):
    heading: str
    parent_id: Optional[str] = None
    number: Optional[int] = None
    display_order: Optional[int] = None
    page_break: bool = False
    regulatory_references: List[str] = Field(default_factory=list)


class ChapterUpdate(BaseModel):
    heading: Optional[str] = None
    display_order: Optional[int] = None
    page_break: Optional[bool] = None
    regulatory_references: Optional[List[str]] = None


class ChapterOut(BaseModel):
    id: str
    manual_id: str
    parent_id: Optional[str] = None
    chapter_number: int
    section_number: Optional[int] = None
    subsection_number: Optional[int] = None
    clause_number: Optional[int] = None
    depth: int
    label: str
    heading: str
    display_order: int
    page_break: bool
    is_mandatory: bool
    regulatory_references: List[str] = Field(default_factory=list)

    class Config:
        from_attributes = True


class ContentBlockCreate(BaseModel):
    block_type: str = "text"
    content: Dict[str, Any] = Field(default_factory=dict)
    display_order: Optional[int] = None


class ContentBlockOut(BaseModel):
    id: str
    chapter_id: str
    block_type: str
    content: Dict[str, Any]
    display_order: int

    class Config:
        from_attributes = True


class RemarkCreate(BaseModel):
    remark_text: str


class RemarkOut(BaseModel):
    id: str
    chapter_id: str
    remark_text: str
    display_order: int

    class Config:
        from_attributes = True


class RevisionOut(BaseModel):
    id: str
    manual_id: str
    revision_number: str
    status: ManualStatus
    changes_summary: Optional[str] = None
    chapters_affected: List[str] = Field(default_factory=list)
    effective_date: Optional[date] = None
    submitted_for_review_at: Optional[datetime] = None
    submitted_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: datetime
    created_by: Optional[str] = None

    class Config:
        from_attributes = True


class RevisionDetail(RevisionOut):
    snapshot: Dict[str, Any]
    snapshot_sha256: str


class SubmitReviewRequest(BaseModel):
    chapters_affected: Optional[List[str]] = None


class ApproveRequest(BaseModel):
    revision_id: str
    # Optional here so a missing date is reported by the workflow guard.
    effective_date: Optional[date] = None
    comment: Optional[str] = None


class RejectRequest(BaseModel):
    revision_id: str
    reason: Optional[str] = None


class RestoreRequest(BaseModel):
    revision_id: str


class NextRevisionOut(BaseModel):
    manual: ManualOut
    new_revision_number: str
    revision: RevisionOut


class FieldHistoryOut(BaseModel):
    id: str
    manual_id: str
    revision_id: Optional[str] = None
    table_name: str
    record_id: str
    field_name: str
    old_value: Any = None
    new_value: Any = None
    change_type: ChangeType
    changed_by: Optional[str] = None
    changed_at: datetime

    class Config:
        from_attributes = True


class FieldHistoryPage(BaseModel):
    items: List[FieldHistoryOut]
    total: int
    limit: int
    offset: int


class SnapshotDiff(BaseModel):
    from_revision: str
    to_revision: str
    added: List[str]
    removed: List[str]
    changed: List[Dict[str, Any]]
    manual: Dict[str, Any]


class ContentBlockUpdate(BaseModel):
    block_type: Optional[str] = None
    content: Optional[Dict[str, Any]] = None
    display_order: Optional[int] = None
