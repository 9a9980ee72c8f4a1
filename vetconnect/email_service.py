"""Outbox mailer for sign-in codes and account notices."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from pathlib import Path
from textwrap import dedent

from .config import Settings, get_settings

logger = logging.getLogger(__name__)


class EmailService:
    """Writes outbound mail to a local outbox directory."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.outbox_dir = Path(self.settings.email_outbox_dir) if self.settings.email_outbox_dir else None
        if self.outbox_dir:
            self.outbox_dir.mkdir(parents=True, exist_ok=True)
        self.last_message: dict[str, str] | None = None

    def send_login_code(self, *, to_email: str, code: str) -> None:
        subject = f"Your {self.settings.app_name} sign-in code"
        body = dedent(
            f"""
            Hello,

            Your one-time sign-in code is:

            {code}

            It expires in {self.settings.email_otp_exp_minutes} minutes. If you did not
            request it, you can ignore this message.
            """
        ).strip()
        self._send(to_email=to_email, subject=subject, body=body)

    def send_welcome(self, *, to_email: str, full_name: str) -> None:
        subject = f"Welcome to {self.settings.app_name}"
        body = dedent(
            f"""
            Hello {full_name},

            Your account is ready. You can now sign in at {self.settings.public_base_url}.
            """
        ).strip()
        self._send(to_email=to_email, subject=subject, body=body)

    def _send(self, *, to_email: str, subject: str, body: str) -> None:
        message = f"From: {self.settings.email_from}\nTo: {to_email}\nSubject: {subject}\n\n{body}\n"
        logger.info("Email queued for %s with subject '%s'", to_email, subject)
        self.last_message = {"to": to_email, "subject": subject, "body": body}
        if not self.outbox_dir:
            return
        filename = self.outbox_dir / f"{datetime.now().strftime('%Y%m%dT%H%M%S%f')}_{uuid.uuid4().hex}.eml"
        filename.write_text(message, encoding="utf-8")
