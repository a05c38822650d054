from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, JSON, String, desc

from ...database import Base
from ...utils.append_only import make_append_only
from ...utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditLogEntry(Base):
    """
    Append-only ledger of every mutation to a tracked entity.

    UPDATE and DELETE are refused by database triggers (see
    `utils.append_only`); the service layer exposes inserts and reads only.
    Actor and manual references are plain strings, not foreign keys, so the
    ledger can never be rewritten by a cascade.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
        Index("ix_audit_logs_manual_time", "manual_id", "created_at"),
        Index("ix_audit_logs_actor_time", "actor_id", "created_at"),
        Index("ix_audit_logs_time_desc", desc("created_at")),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7, index=True)
    actor_id = Column(String(36), nullable=True, index=True)
    actor_email = Column(String(255), nullable=True)
    action = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(64), nullable=False, index=True)
    entity_id = Column(String(64), nullable=False, index=True)
    manual_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    metadata_json = Column("metadata", JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLogEntry id={self.id} entity={self.entity_type}:{self.entity_id} action={self.action}>"


make_append_only(AuditLogEntry.__table__)
