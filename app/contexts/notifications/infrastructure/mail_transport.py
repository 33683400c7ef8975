from __future__ import annotations

import logging
import smtplib
import threading
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Mapping

from app.contexts.notifications.domain.transport import MailDeliveryError, MailTransport


logger = logging.getLogger("app")


class SmtpMailTransport(MailTransport):
    def __init__(
        self,
        *,
        server: str,
        port: int = 587,
        use_tls: bool = True,
        username: str | None = None,
        password: str | None = None,
        sender: str | None = None,
        timeout_seconds: int = 15,
    ) -> None:
        self.server = server
        self.port = int(port)
        self.use_tls = bool(use_tls)
        self.username = username
        self.password = password
        self.sender = sender or f"noreply@{server}"
        self.timeout_seconds = int(timeout_seconds)

    def send_one(self, to_address: str, subject: str, html_body: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to_address
        msg.attach(MIMEText(html_body, "html"))

        try:
            with smtplib.SMTP(self.server, self.port, timeout=self.timeout_seconds) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except smtplib.SMTPRecipientsRefused as exc:
            raise MailDeliveryError(str(exc), code="recipient_refused", definitive=True) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise MailDeliveryError(str(exc), code="smtp_unavailable") from exc


class LogOnlyMailTransport(MailTransport):
    """Used when MAIL_SERVER is not configured: messages are logged and kept in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.outbox: List[dict] = []

    def send_one(self, to_address: str, subject: str, html_body: str) -> None:
        with self._lock:
            self.outbox.append({"to": to_address, "subject": subject, "html": html_body})
        logger.info("mail_log_only", extra={"recipient": to_address, "subject": subject})


def build_mail_transport(config: Mapping) -> MailTransport:
    server = str(config.get("MAIL_SERVER") or "").strip()
    if not server:
        return LogOnlyMailTransport()
    return SmtpMailTransport(
        server=server,
        port=int(config.get("MAIL_PORT") or 587),
        use_tls=bool(config.get("MAIL_USE_TLS", True)),
        username=config.get("MAIL_USERNAME"),
        password=config.get("MAIL_PASSWORD"),
        sender=config.get("MAIL_DEFAULT_SENDER"),
        timeout_seconds=int(config.get("MAIL_TIMEOUT_SECONDS") or 15),
    )
