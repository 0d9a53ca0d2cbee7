"""
Discord webhook notifier.
"""

import time
from typing import Any

import requests

from kanban.database.models import CardStatus, RuleNotificationEvent
from .base import Notifier, NotificationResult


class DiscordNotifier(Notifier):
    """Sends rule-triggered events via Discord webhook."""

    # Discord embed colors per target column
    STATUS_COLORS = {
        CardStatus.WATCH: 0x95A5A6,  # Grey
        CardStatus.READY_TO_BUY: 0x2ECC71,  # Green
        CardStatus.HOLD: 0x3498DB,  # Blue
        CardStatus.SELL: 0xFFA500,  # Orange
        CardStatus.ALERTS: 0xFF0000,  # Red
        CardStatus.ARCHIVED: 0x7F8C8D,  # Dark grey
    }

    def __init__(
        self,
        webhook_url: str,
        mention_on_alerts: bool = True,
        timeout: float = 10,
    ):
        """
        Initialize Discord notifier.

        Args:
            webhook_url: Discord webhook URL
            mention_on_alerts: Whether to @here when a card moves to ALERTS
            timeout: Seconds to wait for the webhook
        """
        self.webhook_url = webhook_url
        self.mention_on_alerts = mention_on_alerts
        self.timeout = timeout

    def send(self, event: RuleNotificationEvent) -> NotificationResult:
        """Send event to Discord."""
        try:
            payload = self._create_payload(event)
            response = self._send_webhook(payload)

            if response.ok:
                return NotificationResult(success=True, channel="discord")
            else:
                return NotificationResult(
                    success=False,
                    channel="discord",
                    error=f"HTTP {response.status_code}: {response.text}",
                )

        except requests.exceptions.Timeout as e:
            return NotificationResult(
                success=False,
                channel="discord",
                error=f"Timed out: {str(e)}",
            )
        except requests.exceptions.ConnectionError as e:
            return NotificationResult(
                success=False,
                channel="discord",
                error=f"Connection error: {str(e)}",
            )
        except Exception as e:
            return NotificationResult(
                success=False,
                channel="discord",
                error=str(e),
            )

    def _send_webhook(self, payload: dict[str, Any]) -> requests.Response:
        """Send webhook with rate limit handling."""
        response = requests.post(
            self.webhook_url,
            json=payload,
            timeout=self.timeout,
        )

        # Handle rate limiting
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "1")
            time.sleep(min(float(retry_after), self.timeout))
            response = requests.post(
                self.webhook_url,
                json=payload,
                timeout=self.timeout,
            )

        return response

    def _create_payload(self, event: RuleNotificationEvent) -> dict[str, Any]:
        """Create Discord webhook payload."""
        payload: dict[str, Any] = {
            "embeds": [self._create_embed(event)],
        }

        if self.mention_on_alerts and event.new_status == CardStatus.ALERTS:
            payload["content"] = "@here"

        return payload

    def _create_embed(self, event: RuleNotificationEvent) -> dict[str, Any]:
        """Create Discord embed for event."""
        previous = (
            event.previous_status.display_name if event.previous_status else "None"
        )
        stock = f"{event.stock_name} ({event.stock_code})" if event.stock_name else event.stock_code

        return {
            "title": f"{stock} moved to {event.new_status.display_name}",
            "description": event.message,
            "color": self.STATUS_COLORS.get(event.new_status, 0x3498DB),
            "fields": [
                {"name": "Rule", "value": event.rule_name, "inline": True},
                {
                    "name": "Status",
                    "value": f"{previous} → {event.new_status.display_name}",
                    "inline": True,
                },
            ],
            "timestamp": event.triggered_at.isoformat(),
        }
