"""Discord webhook alerts for failed automation runs.

A run that ends FAILED (every branch resolved, at least one step failed) is
reported to the channel configured in DISCORD_WEBHOOK_URL. Alerts are
best-effort: without a webhook, or when Discord is unreachable, the failure
is logged and the caller carries on.

Usage:
    await notify_run_failed(run.id, run.channel_id, trigger_type="auto")
"""

import os
import uuid
from typing import Any

import httpx

from automation.utils.logging import get_logger

log = get_logger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 5.0
MAX_MESSAGE_LENGTH = 2000
MAX_FIELD_LENGTH = 1024

ALERT_COLORS = {
    "CRITICAL": 0xFF0000,
    "WARNING": 0xFFA500,
    "INFO": 0x0000FF,
    "SUCCESS": 0x00FF00,
}
DEFAULT_COLOR = 0x808080


def build_alert_payload(
    level: str, message: str, details: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Build the webhook body: a short content line plus one embed.

    Message and field values are cut to Discord's length limits.
    """
    text = message[:MAX_MESSAGE_LENGTH]
    return {
        "content": f"**{level}**: {text}",
        "embeds": [
            {
                "title": f"{level} Alert",
                "description": text,
                "fields": [
                    {"name": key, "value": str(value)[:MAX_FIELD_LENGTH], "inline": True}
                    for key, value in (details or {}).items()
                ],
                "color": ALERT_COLORS.get(level, DEFAULT_COLOR),
            }
        ],
    }


async def send_alert(level: str, message: str, details: dict[str, Any] | None = None) -> None:
    """Post an alert to the Discord webhook, if one is configured.

    Args:
        level: "CRITICAL", "WARNING", "INFO" or "SUCCESS" (others render grey)
        message: Alert text (truncated to 2000 chars)
        details: Rendered as inline embed fields
    """
    webhook_url = os.getenv("DISCORD_WEBHOOK_URL")
    if not webhook_url:
        log.debug("discord_webhook_not_configured", level=level, message=message[:100])
        return

    payload = build_alert_payload(level, message, details)

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                webhook_url, json=payload, timeout=WEBHOOK_TIMEOUT_SECONDS
            )
            response.raise_for_status()
        log.info("discord_alert_sent", level=level, message=message[:100])
    except httpx.TimeoutException:
        log.error("discord_webhook_timeout", webhook_url=webhook_url[:50])
    except httpx.HTTPStatusError as e:
        log.error(
            "discord_webhook_http_error",
            status_code=e.response.status_code,
            response=e.response.text[:500],
        )
    except httpx.HTTPError as e:
        log.error("discord_webhook_failed", error=str(e))


async def notify_run_failed(
    run_id: uuid.UUID,
    channel_id: uuid.UUID,
    trigger_type: str,
    reason: str | None = None,
) -> None:
    """Report a failed run (WARNING level)."""
    details = {
        "run_id": str(run_id),
        "channel_id": str(channel_id),
        "trigger": trigger_type,
    }
    if reason:
        details["reason"] = reason
    await send_alert("WARNING", "Automation run failed", details=details)
