from __future__ import annotations

from datetime import datetime, timezone
import enum

from sqlalchemy import Column, DateTime, Enum as SAEnum, Index, String, Text

from manualdb.database import Base
from manualdb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EmailStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED_NO_PROVIDER = "SKIPPED_NO_PROVIDER"


class EmailLog(Base):
    """
    One lifecycle email to one recipient.

    Rows point at the revision the email announces, so the delivery trail of
    a review round can be read next to its audit entries.
    """

    __tablename__ = "email_logs"
    __table_args__ = (
        Index("ix_email_logs_manual_revision", "manual_id", "revision_number"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    manual_id = Column(String(36), nullable=True)
    revision_id = Column(String(36), nullable=True, index=True)
    revision_number = Column(String(32), nullable=True)

    # manual_review_request | manual_approved | manual_rejected
    template_key = Column(String(64), nullable=False, index=True)
    recipient = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=False)
    status = Column(
        SAEnum(EmailStatus, name="email_status_enum", native_enum=False),
        nullable=False,
        default=EmailStatus.QUEUED,
        index=True,
    )
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<EmailLog id={self.id} template={self.template_key} "
            f"revision={self.revision_number} status={self.status}>"
        )
