from __future__ import annotations

import logging
import os
from typing import Tuple

logger = logging.getLogger(__name__)


class EmailProvider:
    def send(
        self,
        *,
        template_key: str,
        recipient: str,
        subject: str,
        context: dict,
    ) -> None:
        raise NotImplementedError


class NoopProvider(EmailProvider):
    def send(
        self,
        *,
        template_key: str,
        recipient: str,
        subject: str,
        context: dict,
    ) -> None:
        return None


class LogProvider(EmailProvider):
    """Writes each message to the log instead of delivering it (local development)."""

    def send(
        self,
        *,
        template_key: str,
        recipient: str,
        subject: str,
        context: dict,
    ) -> None:
        logger.info(
            "Email %s to %s: %s",
            template_key,
            recipient,
            subject,
            extra={"revision_number": context.get("revision_number")},
        )


def get_email_provider() -> Tuple[EmailProvider, bool]:
    provider_name = (
        os.getenv("NOTIFICATIONS_EMAIL_PROVIDER")
        or os.getenv("EMAIL_PROVIDER")
        or ""
    ).strip().lower()
    if not provider_name or provider_name in {"none", "noop", "disabled"}:
        return NoopProvider(), False
    if provider_name == "log":
        return LogProvider(), True
    raise ValueError(f"Unsupported email provider: {provider_name}")
