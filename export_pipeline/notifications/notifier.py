"""Export notifier — tells schedule owners that a scheduled run finished."""

import math
from datetime import datetime, timezone

from ..utils.logging import get_logger
from .smtp import SMTPSender
from .webhook import WebhookSender

logger = get_logger("notifications.notifier")

DEFAULT_SUCCESS_SUBJECT = "Scheduled Export Completed"
DEFAULT_SUCCESS_BODY = "Your scheduled export is ready for download."


def format_file_size(size_bytes: int | None) -> str:
    if not size_bytes:
        return "0 bytes"
    units = ["bytes", "KB", "MB", "GB"]
    index = min(int(math.floor(math.log(size_bytes, 1024))), len(units) - 1)
    value = round(size_bytes / (1024 ** index), 2)
    return f"{value:g} {units[index]}"


class ExportNotifier:
    """Sends a schedule's configured notifications after each run.

    Notification config shape (all sections optional)::

        {"email": {"enabled", "recipients", "subject", "body"},
         "webhook": {"enabled", "url", "headers"},
         "in_app": {"enabled"}}
    """

    def __init__(self, smtp_config: dict | None = None) -> None:
        self._webhook_sender = WebhookSender()
        self._smtp_sender = SMTPSender(smtp_config)

    @staticmethod
    def build_message(schedule: dict, job: dict, status: str) -> tuple[str, str]:
        email_cfg = (schedule.get("notifications") or {}).get("email") or {}
        if status == "success":
            subject = email_cfg.get("subject") or DEFAULT_SUCCESS_SUBJECT
            artifact = job.get("artifact") or {}
            body = (
                f"{email_cfg.get('body') or DEFAULT_SUCCESS_BODY}\n\n"
                f"Export Details:\n"
                f"Name: {schedule.get('name')}\n"
                f"Format: {schedule.get('format')}\n"
                f"Records: {job.get('total_records') or 0}\n"
                f"File Size: {format_file_size(artifact.get('size_bytes'))}"
            )
        else:
            subject = f"Scheduled Export Failed: {schedule.get('name')}"
            error = job.get("error") or {}
            body = (
                f"Your scheduled export \"{schedule.get('name')}\" has failed.\n\n"
                f"Error: {error.get('message') or 'Unknown error'}"
            )
        return subject, body

    async def notify(self, schedule: dict, job: dict, status: str) -> None:
        """Send every enabled notification. Failures are logged, never raised."""
        config = schedule.get("notifications") or {}
        if not config:
            return

        subject, body = self.build_message(schedule, job, status)

        in_app = config.get("in_app") or {}
        if in_app.get("enabled"):
            logger.info(
                "in_app_notification",
                owner_id=schedule.get("owner_id"),
                schedule_id=schedule.get("id"),
                export_id=job.get("export_id"),
                subject=subject,
            )

        webhook = config.get("webhook") or {}
        if webhook.get("enabled") and webhook.get("url"):
            try:
                await self._webhook_sender.send(
                    webhook["url"],
                    {
                        "event_type": f"scheduled_export_{status}",
                        "status": status,
                        "subject": subject,
                        "body": body,
                        "schedule_id": schedule.get("id"),
                        "schedule_name": schedule.get("name"),
                        "export_id": job.get("export_id"),
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    },
                    headers=webhook.get("headers"),
                )
            except Exception as exc:
                logger.error("notification_webhook_error", schedule_id=schedule.get("id"), error=str(exc))

        email = config.get("email") or {}
        if email.get("enabled") and email.get("recipients"):
            try:
                await self._smtp_sender.send(list(email["recipients"]), subject, body)
            except Exception as exc:
                logger.error("notification_email_error", schedule_id=schedule.get("id"), error=str(exc))
