from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from . import models, providers

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def send_email(
    db: Session,
    *,
    template_key: str,
    recipient: str,
    subject: str,
    context: dict,
) -> models.EmailLog:
    """
    Hand one lifecycle email to the configured provider and log the outcome.

    `context` is the lifecycle notification context; its manual and revision
    keys are copied onto the log row. Provider errors are recorded on the row
    as FAILED rather than raised. The caller owns the session and commits.
    """
    log = models.EmailLog(
        manual_id=context.get("manual_id"),
        revision_id=context.get("revision_id"),
        revision_number=context.get("revision_number"),
        template_key=template_key,
        recipient=recipient,
        subject=subject,
        status=models.EmailStatus.QUEUED,
    )
    db.add(log)
    db.flush()

    provider, configured = providers.get_email_provider()
    if not configured:
        log.status = models.EmailStatus.SKIPPED_NO_PROVIDER
        log.error = "No provider configured"
    else:
        try:
            provider.send(
                template_key=template_key,
                recipient=recipient,
                subject=subject,
                context=context,
            )
            log.status = models.EmailStatus.SENT
            log.sent_at = _utcnow()
        except Exception as exc:
            logger.warning("Email %s to %s failed: %s", template_key, recipient, exc)
            log.status = models.EmailStatus.FAILED
            log.error = str(exc)

    db.flush()
    return log
