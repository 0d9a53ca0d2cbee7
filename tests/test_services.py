"""
Audit and notification service tests.
"""

from datetime import datetime
from unittest.mock import Mock, patch

import pytest

from kanban.database.models import CardStatus, RuleNotificationEvent, User
from kanban.notifiers.base import NotificationResult
from kanban.services.audit import AuditService
from kanban.services.notifications import NotificationService, render_template


class TestAuditService:
    """Test audit trail writes."""

    def test_record_status_change(self, repos, clock, user, card):
        """Should store an entry stamped with the clock."""
        service = AuditService(repos.audit, clock=clock)

        entry = service.record_status_change(
            user.id, card, CardStatus.WATCH, CardStatus.SELL, "RSI Overbought"
        )

        assert entry.id is not None
        assert entry.action == "STATUS_CHANGE"
        assert entry.created_at == clock()
        assert repos.audit.find_by_card(card.id)[0].reason == "RSI Overbought"

    def test_write_failure_is_swallowed(self, clock, card):
        """Should return None rather than raise when the store fails."""
        audit_repo = Mock()
        audit_repo.create.side_effect = RuntimeError("disk full")

        entry = AuditService(audit_repo, clock=clock).record_status_change(
            1, card, CardStatus.WATCH, CardStatus.SELL, "manual"
        )

        assert entry is None


class TestRenderTemplate:
    """Test notification template substitution."""

    def test_substitutes_known_values(self):
        """Should replace placeholders with values."""
        assert render_template("{stockCode} at {price}", {"stockCode": "AAPL", "price": 150.5}) == (
            "AAPL at 150.5"
        )

    def test_keeps_unknown_and_unset(self):
        """Should leave placeholders without a value untouched."""
        result = render_template("{rsi} / {nope}", {"rsi": None})
        assert result == "{rsi} / {nope}"

    def test_plain_text(self):
        """Should return text without placeholders unchanged."""
        assert render_template("no placeholders", {}) == "no placeholders"


@pytest.fixture
def event(user, card):
    return RuleNotificationEvent(
        user_id=user.id,
        rule_id=1,
        rule_name="Price above 100",
        card_id=card.id,
        stock_code="AAPL",
        stock_name="Apple Inc.",
        previous_status=CardStatus.WATCH,
        new_status=CardStatus.ALERTS,
        message="Rule 'Price above 100' triggered",
        triggered_at=datetime(2024, 3, 1, 10, 0),
    )


class TestNotificationService:
    """Test storage and channel fan-out."""

    @pytest.fixture
    def service(self, repos):
        notification_service = NotificationService(
            repos.notifications,
            repos.users,
            discord_config={"mention_on_alerts": False, "timeout": 3},
            email_config={"smtp_host": "smtp.example.com", "smtp_port": 587},
        )
        yield notification_service
        notification_service.shutdown()

    def test_stores_in_app_notification(self, service, repos, user, event):
        """Should store a readable notification for the user."""
        with patch("kanban.services.notifications.NotifierFactory.create") as create:
            create.return_value.send.return_value = NotificationResult(True, "discord")
            service.deliver(event)

        stored = repos.notifications.find_by_user(user.id)
        assert len(stored) == 1
        assert stored[0].title == "Rule triggered: Price above 100"
        assert stored[0].message == (
            "Apple Inc. (AAPL) matched rule 'Price above 100', "
            "status changed from Watch to Alerts"
        )
        assert stored[0].metadata["newStatus"] == "ALERTS"
        assert stored[0].created_at == event.triggered_at

    def test_sends_to_user_channels(self, service, event):
        """Should build Discord and email notifiers from the user's settings."""
        with patch("kanban.services.notifications.NotifierFactory.create") as create:
            create.return_value.send.return_value = NotificationResult(True, "discord")
            results = service.deliver(event)

        configs = [c.args[0] for c in create.call_args_list]
        assert configs[0]["type"] == "discord"
        assert configs[0]["webhook_url"] == "https://discord.com/api/webhooks/123/abc"
        assert configs[0]["timeout"] == 3
        assert configs[1]["type"] == "email"
        assert configs[1]["to_addresses"] == ["trader@example.com"]
        assert len(results) == 2

    def test_falls_back_to_default_webhook(self, repos, card):
        """Should use the configured webhook when the user has none."""
        plain = repos.users.create(User(username="plain"))
        service = NotificationService(
            repos.notifications,
            repos.users,
            discord_config={"webhook_url": "https://discord.com/api/webhooks/9/default"},
        )
        event = RuleNotificationEvent(
            user_id=plain.id,
            rule_id=1,
            rule_name="r",
            card_id=card.id,
            stock_code="AAPL",
            stock_name="",
            previous_status=CardStatus.WATCH,
            new_status=CardStatus.HOLD,
            message="m",
            triggered_at=datetime(2024, 3, 1),
        )

        with patch("kanban.services.notifications.NotifierFactory.create") as create:
            create.return_value.send.return_value = NotificationResult(True, "discord")
            results = service.deliver(event)
        service.shutdown()

        assert len(results) == 1
        assert create.call_args.args[0]["webhook_url"].endswith("/default")

    def test_channel_failure_does_not_raise(self, service, event):
        """Should report failures without raising."""
        with patch("kanban.services.notifications.NotifierFactory.create") as create:
            create.return_value.send.side_effect = [
                NotificationResult(False, "discord", "HTTP 500: oops"),
                RuntimeError("smtp exploded"),
            ]
            results = service.deliver(event)

        assert results == [NotificationResult(False, "discord", "HTTP 500: oops")]

    def test_missing_user(self, service, repos, event):
        """Should not send anything when the user is gone."""
        event.user_id = 999
        with patch("kanban.services.notifications.NotifierFactory.create") as create:
            assert service.deliver(event) == []
        create.assert_not_called()

    def test_dispatch_is_asynchronous(self, service, event):
        """Should deliver on a background thread and return a future."""
        with patch.object(service, "deliver", return_value=[]) as deliver:
            future = service.dispatch(event)
            assert future.result(timeout=5) == []
        deliver.assert_called_once_with(event)
