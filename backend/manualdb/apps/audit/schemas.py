from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class AuditLogRead(BaseModel):
    id: str
    actor_id: Optional[str] = None
    actor_email: Optional[str] = None
    action: str
    entity_type: str
    entity_id: str
    manual_id: Optional[str] = None
    created_at: datetime
    metadata: Optional[dict] = Field(default=None, validation_alias="metadata_json")

    class Config:
        from_attributes = True


class AuditLogFilter(BaseModel):
    actor_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    manual_id: Optional[str] = None
    action: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class AuditLogPage(BaseModel):
    items: List[AuditLogRead]
    total: int
    limit: int
    offset: int
