"""Alerting service — webhook notifications for automated exits and errors.

Sends alerts to a Discord/Slack-compatible webhook URL. Falls back to logging
when no webhook is configured. Registered as a reconciliation listener so
automated exits, which have no user in the loop, still surface somewhere.
"""

import logging
from enum import Enum

import httpx

from app.config import settings
from app.services.reconciliation import ExitAttempt, ReconciliationResult

logger = logging.getLogger(__name__)


class AlertLevel(str, Enum):
    """Alert severity levels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# Emoji mapping for alert levels (Discord/Slack rendering)
_LEVEL_EMOJI = {
    AlertLevel.INFO: "\u2139\ufe0f",
    AlertLevel.WARNING: "\u26a0\ufe0f",
    AlertLevel.ERROR: "\u274c",
    AlertLevel.CRITICAL: "\U0001f6a8",
}


class AlertService:
    """Send webhook alerts for trading events.

    Compatible with Discord and Slack incoming webhooks.
    Falls back to logging when no webhook URL is configured.
    """

    def __init__(self, webhook_url: str | None = None) -> None:
        self._webhook_url = webhook_url if webhook_url is not None else settings.alert_webhook_url

    async def send(self, title: str, message: str, level: AlertLevel = AlertLevel.INFO) -> bool:
        """Send an alert via webhook.

        Args:
            title: Short alert title.
            message: Alert body text.
            level: Severity level.

        Returns:
            True if sent successfully, False otherwise.
        """
        emoji = _LEVEL_EMOJI.get(level, "")
        formatted = f"**{emoji} {title}**\n{message}"

        if not self._webhook_url:
            log_fn = {
                AlertLevel.INFO: logger.info,
                AlertLevel.WARNING: logger.warning,
                AlertLevel.ERROR: logger.error,
                AlertLevel.CRITICAL: logger.critical,
            }.get(level, logger.info)
            log_fn("ALERT [%s]: %s | %s", level.value, title, message)
            return False

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                # Discord webhook format (also works with Slack)
                resp = await client.post(self._webhook_url, json={"content": formatted})
                if resp.status_code in (200, 204):
                    return True
                logger.warning(
                    "Webhook returned %d: %s", resp.status_code, resp.text[:200]
                )
                return False
        except httpx.HTTPError as e:
            logger.error("Failed to send webhook alert: %s", e)
            return False

    async def auto_exit_submitted(self, user_id: str, exit_: ExitAttempt) -> bool:
        """Alert on an automated exit accepted by the broker."""
        label = "Profit Target" if exit_.reason.value == "profit_target" else "Stop-Loss"
        return await self.send(
            title=f"{label} Exit: SELL {exit_.symbol}",
            message=(
                f"User: {user_id}\n"
                f"Quantity: {exit_.quantity:g}\n"
                f"P/L: {exit_.pl_pct:+.2f}%\n"
                f"Order: {exit_.broker_order_id}"
            ),
            level=AlertLevel.WARNING if exit_.reason.value == "stop_loss" else AlertLevel.INFO,
        )

    async def auto_exit_failed(self, user_id: str, exit_: ExitAttempt) -> bool:
        """Alert on an automated exit the broker refused or never confirmed."""
        return await self.send(
            title=f"Auto-Exit Failed: {exit_.symbol}",
            message=(
                f"User: {user_id}\n"
                f"P/L: {exit_.pl_pct:+.2f}% ({exit_.reason.value})\n"
                f"Error: {exit_.error}"
            ),
            level=AlertLevel.ERROR,
        )

    async def on_reconciled(self, result: ReconciliationResult) -> None:
        """Reconciliation listener: one alert per exit attempt."""
        for exit_ in result.submitted_exits:
            await self.auto_exit_submitted(result.user_id, exit_)
        for exit_ in result.failed_exits:
            await self.auto_exit_failed(result.user_id, exit_)

    async def system_error(self, component: str, error: str) -> bool:
        """Alert on system-level error (broker down, DB down, etc.)."""
        return await self.send(
            title=f"System Error: {component}",
            message=error,
            level=AlertLevel.CRITICAL,
        )
