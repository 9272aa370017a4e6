"""Webhook delivery for export run notifications.

Slack and Discord endpoints get their native message shapes with a status
colour. Any other endpoint receives the export event as JSON plus a ``text``
summary line.
"""

import httpx

from ..utils.logging import get_logger

logger = get_logger("notifications.webhook")

SLACK_COLORS = {"success": "#2eb67d", "failure": "#e01e5a"}
DISCORD_COLORS = {"success": 0x2EB67D, "failure": 0xE01E5A}
NEUTRAL_SLACK_COLOR = "#9e9e9e"
NEUTRAL_DISCORD_COLOR = 0x9E9E9E


def render_event(url: str, event: dict) -> dict:
    """Shape an export event for the platform behind ``url``."""
    subject = event.get("subject") or "Export notification"
    details = event.get("body") or ""
    status = event.get("status")

    if "hooks.slack.com" in url:
        return {
            "text": subject,
            "attachments": [
                {
                    "color": SLACK_COLORS.get(status, NEUTRAL_SLACK_COLOR),
                    "text": details,
                    "footer": f"export {event.get('export_id') or '-'}",
                }
            ],
        }

    if "discord.com" in url or "discordapp.com" in url:
        return {
            "content": subject,
            "embeds": [
                {
                    "title": event.get("schedule_name") or subject,
                    "description": details,
                    "color": DISCORD_COLORS.get(status, NEUTRAL_DISCORD_COLOR),
                }
            ],
        }

    text = f"{subject}\n{details}" if details else subject
    return {"text": text, **event}


class WebhookSender:
    def __init__(self, timeout: float = 10) -> None:
        self._timeout = timeout

    async def send(self, url: str, event: dict, headers: dict | None = None) -> bool:
        """POST an export event. Returns False on any delivery failure."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=render_event(url, event), headers=headers or None)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "export_webhook_rejected",
                url=url,
                export_id=event.get("export_id"),
                status=exc.response.status_code,
                body=exc.response.text[:200],
            )
            return False
        except httpx.HTTPError as exc:
            logger.error("export_webhook_unreachable", url=url, export_id=event.get("export_id"), error=str(exc))
            return False

        logger.info("export_webhook_delivered", url=url, export_id=event.get("export_id"), status=response.status_code)
        return True
