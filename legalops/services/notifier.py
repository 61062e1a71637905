"""
Outbound notification interface.

The engine only builds the link a recipient follows; subject and body
formatting belong to the Notifier implementation.
"""
import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from functools import partial
from typing import Any, Dict

from legalops.config import get_settings

logger = logging.getLogger(__name__)


class TemplateKind(str, Enum):
    SURVEY_INVITATION = "survey_invitation"
    OBLIGATION_REMINDER = "obligation_reminder"


def survey_link(token: str, base_url: str | None = None) -> str:
    base = (base_url or get_settings().FRONTEND_URL).rstrip("/")
    return f"{base}/compliance-survey/{token}"


def confirmation_link(token: str, base_url: str | None = None) -> str:
    base = (base_url or get_settings().FRONTEND_URL).rstrip("/")
    return f"{base}/compliance-confirm/{token}"


class Notifier(ABC):
    """Delivers one message to one recipient"""

    @abstractmethod
    async def send(
        self,
        recipient_email: str,
        template_kind: TemplateKind,
        payload: Dict[str, Any],
    ) -> bool:
        """Return True when the message was accepted for delivery"""
        pass


class LoggingNotifier(Notifier):
    """Development notifier - writes the message to the log instead of sending it"""

    async def send(self, recipient_email, template_kind, payload) -> bool:
        logger.info(
            f"[{TemplateKind(template_kind).value}] to={recipient_email} "
            f"title={payload.get('title')!r} link={payload.get('link')}"
        )
        return True


_STAGE_LABELS = {
    "two_weeks": "due in two weeks",
    "one_week": "due in one week",
    "due_date": "due today",
    "overdue": "overdue",
}


def render_message(template_kind: TemplateKind, payload: Dict[str, Any]) -> tuple[str, str]:
    """Build (subject, html body) for a template"""
    kind = TemplateKind(template_kind)
    name = payload.get("recipient_name") or "colleague"
    if kind == TemplateKind.SURVEY_INVITATION:
        subject = f"Compliance survey: {payload.get('title')}"
        body = (
            f"<p>Dear {name},</p>"
            f"<p>{payload.get('created_by_name') or 'The legal team'} has asked "
            f"{payload.get('department_name') or 'your department'} to complete the "
            f"compliance survey <strong>{payload.get('title')}</strong>.</p>"
            f"<p>{payload.get('description') or ''}</p>"
            f"<p>Due date: {payload.get('due_date')}</p>"
            f"<p><a href=\"{payload.get('link')}\">Open the survey</a></p>"
        )
        return subject, body

    stage = _STAGE_LABELS.get(str(payload.get("stage")), "reminder")
    subject = f"Compliance reminder ({stage}): {payload.get('title')}"
    body = (
        f"<p>Dear {name},</p>"
        f"<p><strong>{payload.get('title')}</strong> is {stage}.</p>"
        f"<p>{payload.get('description') or ''}</p>"
        f"<p>Due date: {payload.get('due_date')}</p>"
        f"<p>Once handled, please <a href=\"{payload.get('link')}\">confirm here</a>.</p>"
    )
    return subject, body


class SmtpNotifier(Notifier):
    """SMTP delivery; smtplib is blocking so each send runs in the default executor"""

    def __init__(self, settings=None):
        self.settings = settings or get_settings()

    def _send_sync(self, recipient_email: str, subject: str, body: str) -> None:
        msg = MIMEMultipart()
        msg["From"] = self.settings.FROM_EMAIL
        msg["To"] = recipient_email
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "html"))

        with smtplib.SMTP(self.settings.SMTP_SERVER, self.settings.SMTP_PORT) as server:
            if self.settings.SMTP_USE_TLS:
                server.starttls()
            if self.settings.SMTP_USERNAME and self.settings.SMTP_PASSWORD:
                server.login(self.settings.SMTP_USERNAME, self.settings.SMTP_PASSWORD)
            server.send_message(msg, to_addrs=[recipient_email])

    async def send(self, recipient_email, template_kind, payload) -> bool:
        subject, body = render_message(template_kind, payload)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None, partial(self._send_sync, recipient_email, subject, body)
            )
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {recipient_email}: {e}")
            return False
        logger.info(f"Email sent successfully to {recipient_email}")
        return True


def get_notifier() -> Notifier:
    """Dependency returning the configured notifier"""
    backend = get_settings().NOTIFIER_BACKEND.lower()
    if backend == "smtp":
        return SmtpNotifier()
    if backend != "log":
        logger.warning(f"Unknown NOTIFIER_BACKEND '{backend}', falling back to log")
    return LoggingNotifier()
