from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from manualdb.apps.accounts.models import User
from manualdb.database import get_read_db
from manualdb.security import get_current_active_user

from . import schemas, services


router = APIRouter(
    prefix="/audit",
    tags=["audit"],
    dependencies=[Depends(get_current_active_user)],
)


@router.get("/", response_model=schemas.AuditLogPage)
def list_audit_log(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    actor_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_read_db),
    current_user: User = Depends(get_current_active_user),
):
    # Non-elevated users only ever see their own entries.
    if not current_user.is_elevated:
        actor_id = current_user.id
    return services.list_entries(
        db,
        schemas.AuditLogFilter(
            actor_id=actor_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            start=start,
            end=end,
        ),
        limit=limit,
        offset=offset,
    )
