"""
tests/test_mailer.py -- LogFileMailer JSON-line output and log redaction.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from auth.mailer import LogFileMailer, redact_email


def test_invitation_is_appended_as_json_line(tmp_path) -> None:
    mailer = LogFileMailer(tmp_path / "logs")
    mailer.send_invitation("a@example.com", "Ana", "temp-secret", "https://x/verify-email?token=t", "boss@example.com")
    result = mailer.send_invitation("b@example.com", None, "temp-2", "https://x/verify-email?token=u", None)

    lines = (tmp_path / "logs" / "user-invitations.log").read_text().splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["type"] == "invitation"
    assert first["email"] == "a@example.com"
    assert first["temporary_password"] == "temp-secret"
    assert first["invited_by"] == "boss@example.com"
    assert "timestamp" in first
    assert result.sent is True
    assert result.log_path.endswith("user-invitations.log")


def test_password_reset_log(tmp_path) -> None:
    expires = datetime(2026, 3, 2, 10, 30, tzinfo=timezone.utc)
    LogFileMailer(tmp_path).send_password_reset("a@example.com", None, "https://x/reset-password?token=t", expires)
    entry = json.loads((tmp_path / "user-password-resets.log").read_text())
    assert entry["type"] == "password-reset"
    assert entry["reset_url"] == "https://x/reset-password?token=t"
    assert entry["expires_at"] == expires.isoformat()


def test_application_log_never_carries_secrets(tmp_path, caplog) -> None:
    with caplog.at_level(logging.INFO, logger="aperture.mailer"):
        LogFileMailer(tmp_path).send_invitation(
            "someone@example.com", None, "temp-secret", "https://x/verify-email?token=abc", None
        )
    assert "temp-secret" not in caplog.text
    assert "token=abc" not in caplog.text
    assert "someone@example.com" not in caplog.text
    assert "so***@example.com" in caplog.text


def test_redact_email() -> None:
    assert redact_email("someone@example.com") == "so***@example.com"
    assert redact_email("not-an-email") == "redacted"
