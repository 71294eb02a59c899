"""
Discord alert helper.

send_discord_alert() is best-effort: severity picks the webhook, failures
are logged and never raised to the caller.

Env:
  DISCORD_WEBHOOK_MAIN    default channel
  DISCORD_WEBHOOK_ERRORS  critical/error alerts (falls back to main)
  DISCORD_SEND_WEBHOOK_URL info-level campaign summaries (falls back to main)
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK = os.getenv("DISCORD_WEBHOOK_MAIN")
ALERT_WEBHOOK = os.getenv("DISCORD_WEBHOOK_ERRORS") or DEFAULT_WEBHOOK
INFO_WEBHOOK = os.getenv("DISCORD_SEND_WEBHOOK_URL") or DEFAULT_WEBHOOK

USERNAME = os.getenv("DISCORD_USERNAME", "wacast")


def _post(url: str, payload: Dict[str, Any]) -> bool:
    """POST with up to 3 attempts; honours 429 Retry-After. Returns True on success."""
    for attempt in range(3):
        try:
            resp = requests.post(url, json=payload, timeout=5)

            if resp.status_code in (200, 204):
                return True

            if resp.status_code == 429:
                retry = float(resp.headers.get("Retry-After", 2 ** attempt))
                logger.warning("Discord rate limited, retrying in %ss", retry)
                time.sleep(retry)
                continue

            # Other 4xx → do not retry
            if 400 <= resp.status_code < 500:
                logger.warning("Discord client error: %s %s", resp.status_code, resp.text[:200])
                return False

            logger.warning("Discord server error: %s %s", resp.status_code, resp.text[:200])
        except requests.RequestException as e:
            logger.warning("Discord post failed: %s", e)
            time.sleep(1 + attempt)
    return False


def _prefix(severity: str) -> str:
    s = severity.lower()
    if s == "critical":
        return "🚨 [CRITICAL]"
    if s == "error":
        return "❌ [ERROR]"
    if s == "info":
        return "ℹ️ [INFO]"
    return f"[{severity.upper()}]"


def _choose_webhook(severity: str) -> Optional[str]:
    if severity.lower() in ("critical", "error"):
        return ALERT_WEBHOOK
    return INFO_WEBHOOK


def _format_context(context: Optional[Dict[str, Any]]) -> str:
    if not context:
        return ""
    lines = [f"- **{k}**: `{v}`" for k, v in context.items()]
    return "\n\n**Context:**\n" + "\n".join(lines)


def send_discord_alert(
    title: str,
    body: str,
    *,
    severity: str = "error",
    context: Optional[Dict[str, Any]] = None,
    webhook: Optional[str] = None,
) -> bool:
    """Send a structured alert embed. Returns False if nothing was delivered."""
    target = webhook or _choose_webhook(severity)
    if not target:
        logger.warning("No Discord webhook configured; severity=%s title=%r body=%r", severity, title, body)
        return False

    embed = {
        "title": f"{_prefix(severity)} {title}",
        "description": body + _format_context(context),
        "color": 0xFF0000 if severity.lower() in ("critical", "error") else 0x5865F2,
    }
    try:
        return _post(target, {"username": USERNAME, "embeds": [embed]})
    except Exception:
        # Never crash the caller.
        logger.exception("Discord alert failed: title=%r severity=%s", title, severity)
        return False
