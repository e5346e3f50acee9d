"""
E-mail run summaries over SMTP.
"""

import logging
import os
import smtplib
from email.mime.text import MIMEText

from busy_mirror.models import DestinationResult
from busy_mirror.models import NotificationError
from busy_mirror.models import SmtpSettings

logger = logging.getLogger(__name__)


def format_summary(destination_id: str, result: DestinationResult) -> tuple[str, str]:
    """Return (subject, body) describing one destination's run."""
    subject = (
        f"busy-mirror: {destination_id}: "
        f"{result.created} created, {result.deleted} deleted, {result.errors} errored"
    )
    lines = [
        f"Destination calendar: {destination_id}",
        "",
        f"Created: {result.created}",
        f"Deleted: {result.deleted}",
        f"Errored: {result.errors}",
    ]
    if result.error is not None:
        lines += ["", f"The destination was skipped ({result.error.value})."]
    if result.issues:
        lines += ["", "Issues:"]
        lines += [f"  - [{i.kind.value}] {i.calendar_id}: {i.message}" for i in result.issues]
    return subject, "\n".join(lines) + "\n"


class EmailNotifier:
    """Sends run summaries through an SMTP relay."""

    def __init__(self, settings: SmtpSettings):
        self.settings = settings

    def _password(self) -> str | None:
        return os.environ.get(self.settings.password_env)

    def notify(self, destination_id: str, result: DestinationResult, recipients: list[str]):
        """Send the summary; raises NotificationError on any delivery failure."""
        if not recipients:
            return
        sender = self.settings.sender or self.settings.user
        if not sender:
            raise NotificationError("No smtp_sender or smtp_user configured")

        subject, body = format_summary(destination_id, result)
        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = ", ".join(recipients)

        try:
            with smtplib.SMTP(self.settings.host, self.settings.port, timeout=30) as server:
                if self.settings.starttls:
                    server.starttls()
                password = self._password()
                if self.settings.user and password:
                    server.login(self.settings.user, password)
                server.sendmail(sender, recipients, msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Failed to e-mail {', '.join(recipients)}: {e}") from e

        logger.info("Summary for %s sent to %s", destination_id, ", ".join(recipients))
