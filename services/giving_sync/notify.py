"""
Operator notifications for runs that end in ``partial`` or ``error``.

Delivery is best-effort: a failed notification is logged and never changes
the outcome of the run.
"""

import smtplib
from email.message import EmailMessage
from typing import Any, Dict, Optional, Protocol, Tuple

import structlog

from .settings import GivingSyncSettings

logger = structlog.get_logger(__name__)

NOTIFY_STATUSES = frozenset({"partial", "error"})


class Notifier(Protocol):
    def notify(self, subject: str, body: str) -> None:
        ...


class LogNotifier:
    """Notification channel used when no recipient is configured."""

    def notify(self, subject: str, body: str) -> None:
        logger.warning("Sync notification", subject=subject, body=body)


class EmailNotifier:
    """Sends plain-text email through an SMTP relay."""

    def __init__(
        self,
        recipient: str,
        sender: Optional[str] = None,
        host: str = "localhost",
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        starttls: bool = True,
        timeout: float = 30.0,
    ):
        self.recipient = recipient
        self.sender = sender or f"giving-sync@{host}"
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.starttls = starttls
        self.timeout = timeout

    def notify(self, subject: str, body: str) -> None:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.sender
        message["To"] = self.recipient
        message.set_content(body)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.starttls:
                    smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password or "")
                smtp.send_message(message)
            logger.info("Notification sent", recipient=self.recipient, subject=subject)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Notification failed", recipient=self.recipient, error=str(e))


def build_notifier(config: GivingSyncSettings) -> Notifier:
    """Email when a recipient and relay are configured, otherwise the log."""
    if config.notification_email and config.smtp_host:
        return EmailNotifier(
            recipient=config.notification_email,
            sender=config.mail_from,
            host=config.smtp_host,
            port=config.smtp_port,
            user=config.smtp_user,
            password=config.smtp_password,
            starttls=config.smtp_starttls,
        )
    return LogNotifier()


def format_run_summary(result: Dict[str, Any]) -> Tuple[str, str]:
    """
    Subject and body for a run result dictionary.

    Example:
        >>> subject, body = format_run_summary({"sync_type": "batch", "status": "partial"})
        >>> subject
        '[Giving Sync] Batch sync PARTIAL'
    """
    sync_type = str(result.get("sync_type", "sync"))
    status = str(result.get("status", ""))
    subject = f"[Giving Sync] {sync_type.capitalize()} sync {status.upper()}"

    window = result.get("window") or {}
    lines = [
        f"{sync_type.capitalize()} sync run finished",
        f"Status: {status}",
        f"Window: {window.get('since', '?')} to {window.get('until', '?')}",
        f"Fetched: {result.get('fetched', 0)}",
        f"Committed: {result.get('committed', 0)}",
        f"Skipped: {result.get('skipped', 0)}",
    ]

    unmapped = result.get("skipped_unmapped") or []
    if unmapped:
        lines.append("")
        lines.append("Skipped (unmapped):")
        lines.extend(f"  {item.get('record_id')}: {item.get('reason')}" for item in unmapped)

    errors = result.get("errors") or []
    if errors:
        lines.append("")
        lines.append("Errors:")
        lines.extend(f"  {error.get('message', error)}" for error in errors)

    return subject, "\n".join(lines)
