"""
Notification dispatch: stores in-app notifications and pushes them to users' channels.
"""

import logging
import re
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Mapping, Optional

from kanban.database.models import Notification, RuleNotificationEvent, User
from kanban.database.repository import NotificationRepository, UserRepository
from kanban.notifiers.base import Notifier, NotifierFactory, NotificationResult

logger = logging.getLogger(__name__)

RULE_TRIGGERED = "RULE_TRIGGERED"

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def render_template(template: str, values: Mapping[str, Any]) -> str:
    """
    Substitute {name} placeholders.

    Placeholders with no value (unknown or None) are left as written.
    """

    def replace(match: re.Match) -> str:
        value = values.get(match.group(1))
        if value is None:
            return match.group(0)
        return str(value)

    return _PLACEHOLDER.sub(replace, template)


class NotificationService:
    """Fire-and-forget delivery of rule-triggered events."""

    def __init__(
        self,
        notification_repo: NotificationRepository,
        user_repo: UserRepository,
        discord_config: Optional[dict[str, Any]] = None,
        email_config: Optional[dict[str, Any]] = None,
        max_workers: int = 2,
    ):
        """
        Initialize notification service.

        Args:
            notification_repo: Store for in-app notifications
            user_repo: Used to resolve each user's channels
            discord_config: Defaults for Discord (webhook_url, mention_on_alerts, timeout)
            email_config: SMTP settings; email is skipped when absent
            max_workers: Background delivery threads
        """
        self.notification_repo = notification_repo
        self.user_repo = user_repo
        self.discord_config = discord_config or {}
        self.email_config = email_config or {}
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="kanban-notify"
        )

    def dispatch(self, event: RuleNotificationEvent) -> Future:
        """Queue an event for delivery and return immediately."""
        logger.debug(f"Queueing notification for rule {event.rule_id}, card {event.card_id}")
        return self._executor.submit(self.deliver, event)

    def deliver(self, event: RuleNotificationEvent) -> list[NotificationResult]:
        """Store the notification and push it to every configured channel."""
        results: list[NotificationResult] = []
        try:
            self.notification_repo.create(self._to_notification(event))

            user = self.user_repo.get_by_id(event.user_id)
            if user is None:
                logger.warning(f"User {event.user_id} not found, notification stored only")
                return results

            for notifier in self._notifiers_for(user):
                result = notifier.send(event)
                results.append(result)
                if result.success:
                    logger.info(
                        f"Sent {result.channel} notification for {event.stock_code} "
                        f"to user {user.id}"
                    )
                else:
                    logger.warning(
                        f"{result.channel} notification failed for user {user.id}: "
                        f"{result.error}"
                    )
        except Exception as e:
            logger.error(f"Notification delivery failed for rule {event.rule_id}: {e}")

        return results

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting events; optionally wait for queued deliveries."""
        self._executor.shutdown(wait=wait)

    def _to_notification(self, event: RuleNotificationEvent) -> Notification:
        previous = event.previous_status.display_name if event.previous_status else "None"
        return Notification(
            user_id=event.user_id,
            title=f"Rule triggered: {event.rule_name}",
            message=(
                f"{event.stock_name or event.stock_code} ({event.stock_code}) matched "
                f"rule '{event.rule_name}', status changed from {previous} to "
                f"{event.new_status.display_name}"
            ),
            type=RULE_TRIGGERED,
            rule_id=event.rule_id,
            card_id=event.card_id,
            stock_code=event.stock_code,
            metadata=event.to_dict(),
            created_at=event.triggered_at,
        )

    def _notifiers_for(self, user: User) -> list[Notifier]:
        notifiers = []

        webhook_url = user.discord_webhook_url or self.discord_config.get("webhook_url")
        if webhook_url:
            notifiers.append(
                NotifierFactory.create({**self.discord_config, "type": "discord", "webhook_url": webhook_url})
            )

        if user.email and self.email_config.get("smtp_host"):
            notifiers.append(
                NotifierFactory.create(
                    {**self.email_config, "type": "email", "to_addresses": [user.email]}
                )
            )

        return notifiers
