"""
auth/mailer.py -- Outbound email collaborator.

The auth services only depend on the Mailer protocol:
    send_invitation(email, name, temporary_password, verification_url, invited_by)
    send_password_reset(email, name, reset_url, expires_at)

LogFileMailer is the default implementation: it appends one JSON line per
message to a log directory for a delivery worker (or a developer) to pick up,
which is how the studio app has always handed mail off. Real SMTP delivery is
outside this subsystem.

Secrets (temporary passwords, reset links) go into the mail payload only.
They are never written to the application log; log lines carry the subject
and a redacted recipient.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

logger = logging.getLogger("aperture.mailer")

INVITATION_SUBJECT = "You have been invited to Aperture Studio CRM"
PASSWORD_RESET_SUBJECT = "Reset your Aperture Studio CRM password"


@dataclass(frozen=True)
class MailerResult:
    sent: bool
    message: str
    log_path: str | None = None


class Mailer(Protocol):
    def send_invitation(
        self,
        email: str,
        name: str | None,
        temporary_password: str,
        verification_url: str,
        invited_by: str | None,
    ) -> MailerResult: ...

    def send_password_reset(
        self,
        email: str,
        name: str | None,
        reset_url: str,
        expires_at: datetime,
    ) -> MailerResult: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class LogFileMailer:
    """Append outbound messages as JSON lines under log_dir.

    Usage:
        mailer = LogFileMailer("content/logs")
        mailer.send_password_reset("a@example.com", None, url, expires_at)
    """

    INVITATION_LOG = "user-invitations.log"
    PASSWORD_RESET_LOG = "user-password-resets.log"

    def __init__(self, log_dir: str | Path) -> None:
        self.log_dir = Path(log_dir)

    def _append(self, file_name: str, payload: dict) -> MailerResult:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_dir / file_name
        entry = dict(payload, timestamp=datetime.now(timezone.utc).isoformat())
        with log_path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(entry) + "\n")
        logger.info("Queued %s email to %s", payload["type"], redact_email(payload["email"]))
        return MailerResult(sent=True, message="Email logged for delivery.", log_path=str(log_path))

    def send_invitation(
        self,
        email: str,
        name: str | None,
        temporary_password: str,
        verification_url: str,
        invited_by: str | None,
    ) -> MailerResult:
        return self._append(
            self.INVITATION_LOG,
            {
                "type": "invitation",
                "subject": INVITATION_SUBJECT,
                "invited_by": invited_by,
                "email": email,
                "name": name,
                "temporary_password": temporary_password,
                "verification_url": verification_url,
            },
        )

    def send_password_reset(
        self,
        email: str,
        name: str | None,
        reset_url: str,
        expires_at: datetime,
    ) -> MailerResult:
        return self._append(
            self.PASSWORD_RESET_LOG,
            {
                "type": "password-reset",
                "subject": PASSWORD_RESET_SUBJECT,
                "email": email,
                "name": name,
                "reset_url": reset_url,
                "expires_at": expires_at.isoformat(),
            },
        )
