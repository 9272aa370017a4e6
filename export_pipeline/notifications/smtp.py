"""SMTP delivery for export run notifications (plain text plus HTML alternative)."""

import asyncio
import html
import smtplib
from email.message import EmailMessage

from ..utils.logging import get_logger

logger = get_logger("notifications.smtp")

_HTML_BODY = """<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; color: #222;">
<h2 style="font-size: 16px;">{subject}</h2>
<p style="line-height: 1.5;">{body}</p>
<p style="font-size: 11px; color: #888;">Sent automatically by the export scheduler.</p>
</body>
</html>"""


def build_email(from_addr: str, recipients: list[str], subject: str, text: str) -> EmailMessage:
    """One message addressed to every recipient, text first with an HTML alternative."""
    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = from_addr
    message["To"] = ", ".join(recipients)
    message.set_content(text)
    html_text = "<br>".join(html.escape(line) for line in text.splitlines())
    message.add_alternative(_HTML_BODY.format(subject=html.escape(subject), body=html_text), subtype="html")
    return message


class SMTPSender:
    """Sends export notifications through the configured SMTP relay.

    ``config`` keys: host, port, username, password, from_addr. The blocking
    smtplib session runs in the default thread executor.
    """

    def __init__(self, config: dict | None = None, timeout: float = 30) -> None:
        self._config = config or {}
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self._config.get("host"))

    async def send(self, recipients: list[str], subject: str, text: str) -> bool:
        recipients = [r for r in recipients if r]
        if not self.configured or not recipients:
            logger.error("smtp_not_configured", host=self._config.get("host"), recipients=len(recipients))
            return False

        from_addr = self._config.get("from_addr") or self._config.get("username") or ""
        message = build_email(from_addr, recipients, subject, text)

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_sync, self._config, message, self._timeout)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("smtp_send_error", recipients=len(recipients), error=str(exc))
            return False

        logger.info("smtp_email_sent", recipients=len(recipients), subject=subject)
        return True

    @staticmethod
    def _send_sync(config: dict, message: EmailMessage, timeout: float) -> None:
        host = config["host"]
        port = config.get("port", 587)
        with smtplib.SMTP(host, port, timeout=timeout) as server:
            server.ehlo()
            if port != 25:
                server.starttls()
                server.ehlo()
            if config.get("username") and config.get("password"):
                server.login(config["username"], config["password"])
            server.send_message(message)
