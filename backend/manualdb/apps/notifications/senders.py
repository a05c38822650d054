"""
Lifecycle notifications.

The lifecycle calls a NotificationSender after its transaction commits.
Senders are fire-and-forget from the lifecycle's point of view: `dispatch`
logs any failure and never re-raises, so a broken mail setup cannot undo an
approval.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Protocol

from sqlalchemy.orm import Session, sessionmaker

from manualdb.database import WriteSessionLocal

from . import service

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    def send_review_request(self, *, recipients: List[str], context: dict) -> None:
        ...

    def send_approval(self, *, recipients: List[str], context: dict) -> None:
        ...

    def send_rejection(self, *, recipients: List[str], context: dict) -> None:
        ...


class EmailNotificationSender:
    """Sends lifecycle emails through `notifications.service.send_email`, one per recipient."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or WriteSessionLocal

    def _send_all(self, template_key: str, subject: str, recipients: List[str], context: dict) -> None:
        db: Session = self._session_factory()
        try:
            for recipient in recipients:
                service.send_email(
                    db,
                    template_key=template_key,
                    recipient=recipient,
                    subject=subject,
                    context=context,
                )
            db.commit()
        finally:
            db.close()

    def send_review_request(self, *, recipients: List[str], context: dict) -> None:
        subject = f"Review requested: {context.get('manual_title')} revision {context.get('revision_number')}"
        self._send_all("manual_review_request", subject, recipients, context)

    def send_approval(self, *, recipients: List[str], context: dict) -> None:
        subject = f"Approved: {context.get('manual_title')} revision {context.get('revision_number')}"
        self._send_all("manual_approved", subject, recipients, context)

    def send_rejection(self, *, recipients: List[str], context: dict) -> None:
        subject = f"Changes requested: {context.get('manual_title')} revision {context.get('revision_number')}"
        self._send_all("manual_rejected", subject, recipients, context)


def get_notifier() -> NotificationSender:
    return EmailNotificationSender()


def dispatch(send: Callable[..., None], *, recipients: List[str], context: dict) -> bool:
    """Run one sender call after commit. Returns False when it failed."""
    if not recipients:
        return True
    try:
        send(recipients=recipients, context=context)
        return True
    except Exception:
        logger.exception(
            "Notification dispatch failed",
            extra={"manual_id": context.get("manual_id"), "recipients": len(recipients)},
        )
        return False
