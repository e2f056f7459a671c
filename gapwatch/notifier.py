"""Outbound notifications: SMTP delivery and the founder critical-gap policy."""
from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Protocol

import aiosmtplib

from gapwatch.errors import NotificationError
from gapwatch.schemas import Assessment, AssessmentGap, GapCategory
from gapwatch.settings import DEFAULT_SETTINGS, EngineSettings

log = logging.getLogger(__name__)


@dataclass
class NotificationResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


class NotificationService(Protocol):
    async def send_notification(self, to: str, subject: str, html_body: str, text_body: str) -> NotificationResult: ...


class Notifier:
    """Async email delivery over SMTP.

    Configured from ``SMTP_HOST``, ``SMTP_PORT``, ``SMTP_USER``,
    ``SMTP_PASSWORD`` and ``EMAIL_FROM`` unless given explicitly.
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        user: str | None = None,
        password: str | None = None,
        from_email: str | None = None,
    ):
        self.host = host or os.environ.get("SMTP_HOST", "")
        self.port = port or int(os.environ.get("SMTP_PORT", "587"))
        self.user = user or os.environ.get("SMTP_USER", "")
        self.password = password or os.environ.get("SMTP_PASSWORD", "")
        self.from_email = from_email or os.environ.get("EMAIL_FROM", "noreply@gapwatch.local")

    @property
    def is_configured(self) -> bool:
        return bool(self.host)

    async def send_notification(self, to: str, subject: str, html_body: str, text_body: str) -> NotificationResult:
        if not self.is_configured:
            log.warning("Email service not configured, skipping send to %s: %s", to, subject)
            return NotificationResult(success=False, error="Email service not configured")
        if not to:
            return NotificationResult(success=False, error="No recipient address")

        message = MIMEMultipart("alternative")
        message_id = f"<{uuid.uuid4().hex}@gapwatch>"
        message["From"] = self.from_email
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = message_id
        message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))

        try:
            await aiosmtplib.send(
                message,
                hostname=self.host,
                port=self.port,
                username=self.user or None,
                password=self.password or None,
                start_tls=bool(self.user),
            )
        except aiosmtplib.SMTPException as exc:
            log.warning("Failed to send email to %s: %s", to, exc)
            return NotificationResult(success=False, error=str(exc))
        except OSError as exc:
            log.warning("SMTP connection to %s failed: %s", self.host, exc)
            return NotificationResult(success=False, error=str(exc))

        log.info("Sent email to %s: %s", to, subject)
        return NotificationResult(success=True, message_id=message_id)


def text_to_html(text: str) -> str:
    return escape(text.strip()).replace("\n", "<br>")


async def deliver(notifier: NotificationService, to: str, subject: str, text_body: str) -> NotificationResult:
    """Send *text_body* as text and html; raise ``NotificationError`` on failure."""
    result = await notifier.send_notification(to, subject, text_to_html(text_body), text_body)
    if not result.success:
        raise NotificationError(result.error or "Notification delivery failed", {"to": to, "subject": subject})
    return result


# ---------------------------------------------------------------------------
# Founder notifications
# ---------------------------------------------------------------------------


class FounderNotifier:
    """Escalates critical gaps to the founder once they pass a threshold."""

    def __init__(
        self,
        notifier: NotificationService,
        settings: EngineSettings = DEFAULT_SETTINGS,
        support_email: str | None = None,
    ):
        self.notifier = notifier
        self.settings = settings
        self.support_email = support_email or os.environ.get("SUPPORT_EMAIL", "support@gapwatch.local")

    @staticmethod
    def urgency(critical_count: int) -> str:
        return "critical" if critical_count > 5 else "high"

    async def evaluate_critical_gaps(self, assessment: Assessment, critical_gaps: list[AssessmentGap]) -> bool:
        """Send the critical-gap notification if enough gaps warrant it.

        Returns True when a notification was sent.
        """
        if len(critical_gaps) < self.settings.founder_critical_gap_threshold:
            return False

        urgency = self.urgency(len(critical_gaps))
        prefix = "[URGENT] " if urgency == "critical" else "[HIGH PRIORITY] "
        name = assessment.title or assessment.company_id
        subject = f"{prefix}Critical Information Gaps in Your {name} Assessment"
        await deliver(self.notifier, assessment.contact_email, subject, self._critical_gaps_body(assessment, critical_gaps))
        log.info("Founder notification sent for assessment %s (%d critical gaps, urgency %s)",
                 assessment.id, len(critical_gaps), urgency)
        return True

    def _critical_gaps_body(self, assessment: Assessment, gaps: list[AssessmentGap]) -> str:
        shown = [g for g in gaps if g.category == GapCategory.CRITICAL][:3]
        details = "\n".join(f"- {g.description} ({g.domain.replace('-', ' ')})" for g in shown)
        more = f"\n...and {len(gaps) - 3} more gaps" if len(gaps) > 3 else ""
        return (
            f"Assessment ID: {assessment.id}\n\n"
            f"Your assessment has identified {len(gaps)} critical information gap(s) that require "
            "your immediate attention to ensure accurate analysis.\n\n"
            f"Critical Gaps Identified:\n{details}{more}\n\n"
            "What happens next:\n"
            "- Your assessment timeline is currently paused\n"
            "- Review each gap and provide the requested information\n"
            "- Your assessment will automatically resume once all critical gaps are resolved\n"
            "- You'll receive confirmation when processing resumes\n\n"
            f"Need help? Contact {self.support_email}."
        )
