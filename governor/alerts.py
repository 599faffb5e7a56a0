"""
Alerting Module: Sends notifications via webhook (Slack, Discord, Telegram).

Supports:
- Critical alerts (credential needs re-authorization, quota almost exhausted)
- Warning alerts (quota near limit, job failed permanently)
- Info (status summaries)

Configuration via env vars:
    ALERT_WEBHOOK_URL=https://hooks.slack.com/services/...
    ALERT_CHANNEL=slack  (or 'discord', 'telegram')
    TELEGRAM_CHAT_ID=...  (telegram only; ALERT_WEBHOOK_URL holds the bot token)
"""

import asyncio
import logging
from datetime import datetime

import aiohttp

import config
from governor.clock import utcnow

logger = logging.getLogger("governor.alerts")

# ── Config ───────────────────────────────────────────────────────────

ALERT_WEBHOOK_URL = config.ALERT_WEBHOOK_URL
ALERT_CHANNEL = config.ALERT_CHANNEL
TELEGRAM_CHAT_ID = config.TELEGRAM_CHAT_ID


class AlertLevel:
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


async def send_alert(
    message: str,
    level: str = AlertLevel.INFO,
    title: str = None,
) -> bool:
    """
    Send an alert via the configured webhook.

    Args:
        message: Alert body text
        level: AlertLevel.CRITICAL / WARNING / INFO
        title: Optional title/heading

    Returns:
        True if sent successfully, False otherwise
    """
    if not ALERT_WEBHOOK_URL:
        logger.debug(f"Alert skipped (no webhook): [{level}] {message[:80]}")
        return False

    emoji = {"critical": "🚨", "warning": "⚠️", "info": "ℹ️"}.get(level, "📢")
    heading = title or f"{emoji} Outreach Governor - {level.upper()}"

    if ALERT_CHANNEL == "discord":
        payload = _build_discord_payload(heading, message, level)
    elif ALERT_CHANNEL == "telegram":
        payload = _build_telegram_payload(heading, message)
    else:
        payload = _build_slack_payload(heading, message, level)

    url = ALERT_WEBHOOK_URL
    if ALERT_CHANNEL == "telegram":
        url = f"https://api.telegram.org/bot{ALERT_WEBHOOK_URL}/sendMessage"

    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=10)) as resp:
                if resp.status in (200, 204):
                    logger.info(f"Alert sent: [{level}] {(title or message)[:60]}")
                    return True
                body = await resp.text()
                logger.error(f"Alert webhook returned {resp.status}: {body[:200]}")
                return False
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def notify(message: str, level: str = AlertLevel.INFO, title: str = None) -> bool:
    """
    Synchronous bridge for worker code. Inside a running event loop the
    alert is scheduled and True is returned once queued.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(send_alert(message, level, title))
    loop.create_task(send_alert(message, level, title))
    return True


def _build_slack_payload(title: str, message: str, level: str) -> dict:
    color = {
        "critical": "#FF0000",
        "warning": "#FFA500",
        "info": "#36A64F",
    }.get(level, "#808080")

    return {
        "attachments": [
            {
                "color": color,
                "title": title,
                "text": message,
                "footer": "Outreach Governor",
                "ts": int(datetime.now().timestamp()),
            }
        ]
    }


def _build_discord_payload(title: str, message: str, level: str) -> dict:
    color = {
        "critical": 0xFF0000,
        "warning": 0xFFA500,
        "info": 0x36A64F,
    }.get(level, 0x808080)

    return {
        "embeds": [
            {
                "title": title,
                "description": message,
                "color": color,
                "timestamp": utcnow().isoformat(),
            }
        ]
    }


def _build_telegram_payload(title: str, message: str) -> dict:
    return {
        "chat_id": TELEGRAM_CHAT_ID,
        "text": f"*{title}*\n\n{message}",
        "parse_mode": "Markdown",
    }

