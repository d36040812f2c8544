"""Operator alerts posted to a Discord webhook.

Only failures a retry cannot fix are reported, chiefly destination
credentials that need re-authorization. Alerts sharing a ``throttle_key`` are
sent at most once per ``ALERT_THROTTLE_SECONDS``; the sweep runs every half
hour and would otherwise repeat the same alert for every due video.

Alerting never raises: a webhook outage is logged and the publish carries on.
"""

import os
import time
from typing import Any

import httpx

from republisher.utils.logging import get_logger

log = get_logger(__name__)

ALERT_THROTTLE_SECONDS = 5 * 60
WEBHOOK_TIMEOUT_SECONDS = 5.0

# Discord limits
MAX_MESSAGE_LENGTH = 2000
MAX_FIELD_LENGTH = 1024

LEVEL_COLORS = {
    "CRITICAL": 0xFF0000,
    "WARNING": 0xFFA500,
    "INFO": 0x0000FF,
}

_last_sent: dict[str, float] = {}


def _should_send_alert(key: str, now: float | None = None) -> bool:
    """Record a send for ``key`` unless one happened inside the window."""
    current = time.monotonic() if now is None else now
    previous = _last_sent.get(key)
    if previous is not None and current - previous < ALERT_THROTTLE_SECONDS:
        return False
    _last_sent[key] = current
    return True


def reset_alert_throttle() -> None:
    _last_sent.clear()


def build_alert_payload(
    level: str, message: str, details: dict[str, str] | None = None
) -> dict[str, Any]:
    text = message[:MAX_MESSAGE_LENGTH]
    return {
        "content": f"**{level}**: {text}",
        "embeds": [
            {
                "title": f"republisher {level.lower()}",
                "description": text,
                "color": LEVEL_COLORS.get(level, 0x808080),
                "fields": [
                    {"name": name, "value": str(value)[:MAX_FIELD_LENGTH], "inline": True}
                    for name, value in (details or {}).items()
                ],
            }
        ],
    }


async def send_alert(
    level: str,
    message: str,
    details: dict[str, str] | None = None,
    throttle_key: str | None = None,
) -> None:
    """Post an alert to ``DISCORD_WEBHOOK_URL`` (no-op when unset).

    Args:
        level: "CRITICAL", "WARNING" or "INFO".
        message: Human-readable summary. Never include tokens.
        details: Short key/value context rendered as embed fields.
        throttle_key: Alerts with the same key are sent once per window.

    Example:
        >>> await send_alert(
        ...     "WARNING",
        ...     "Destination credentials unusable; user must re-authorize",
        ...     details={"user_id": str(user_id)},
        ...     throttle_key=f"credential:{user_id}",
        ... )
    """
    webhook_url = os.getenv("DISCORD_WEBHOOK_URL")
    if not webhook_url:
        log.debug("discord_webhook_not_configured", level=level)
        return

    if throttle_key is not None and not _should_send_alert(throttle_key):
        log.debug("discord_alert_throttled", throttle_key=throttle_key)
        return

    payload = build_alert_payload(level, message, details)
    try:
        async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS) as client:
            response = await client.post(webhook_url, json=payload)
            response.raise_for_status()
    except httpx.TimeoutException:
        log.error("discord_webhook_timeout", level=level)
        return
    except httpx.HTTPStatusError as e:
        log.error(
            "discord_webhook_http_error",
            status_code=e.response.status_code,
            response=e.response.text[:500],
        )
        return
    except httpx.HTTPError as e:
        log.error("discord_webhook_failed", error=str(e), error_type=type(e).__name__)
        return

    log.info("discord_alert_sent", level=level, message=message[:100])
