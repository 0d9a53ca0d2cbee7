"""
Pytest configuration and shared fixtures.
"""

from datetime import date, datetime, timedelta
from types import SimpleNamespace

import pytest

from kanban.database.connection import Database
from kanban.database.models import Card, CardStatus, PricePoint, PriceSnapshot, Rule, User
from kanban.database.repository import (
    AuditLogRepository,
    CardRepository,
    ExecutionRepository,
    IndicatorRepository,
    NotificationRepository,
    PriceRepository,
    RuleRepository,
    UserRepository,
)


class FakeClock:
    """Controllable time source."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    """Clock frozen at a fixed instant."""
    return FakeClock(datetime(2024, 3, 1, 10, 0, 0))


@pytest.fixture
def db():
    """Fresh in-memory database."""
    database = Database(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def repos(db):
    """All repositories over the same database."""
    return SimpleNamespace(
        users=UserRepository(db),
        cards=CardRepository(db),
        rules=RuleRepository(db),
        prices=PriceRepository(db),
        indicators=IndicatorRepository(db),
        executions=ExecutionRepository(db),
        audit=AuditLogRepository(db),
        notifications=NotificationRepository(db),
    )


@pytest.fixture
def user(repos):
    """A stored user with a Discord webhook."""
    return repos.users.create(
        User(
            username="trader",
            email="trader@example.com",
            discord_webhook_url="https://discord.com/api/webhooks/123/abc",
        )
    )


@pytest.fixture
def card(repos, user):
    """A stored card in WATCH."""
    return repos.cards.create(
        Card(user_id=user.id, stock_code="AAPL", stock_name="Apple Inc.")
    )


@pytest.fixture
def make_rule(repos, user):
    """Factory for stored rules."""

    def _make(**overrides) -> Rule:
        fields = dict(
            user_id=user.id,
            name="Price above 100",
            condition_expression="price > 100",
            target_status=CardStatus.ALERTS,
            cooldown_seconds=3600,
        )
        fields.update(overrides)
        return repos.rules.create(Rule(**fields))

    return _make


@pytest.fixture
def sample_snapshot():
    """Sample latest quote for AAPL."""
    return PriceSnapshot(
        stock_code="AAPL",
        stock_name="Apple Inc.",
        current_price=150.0,
        open_price=148.0,
        high_price=151.0,
        low_price=147.5,
        previous_close=147.0,
        volume=50_000_000,
        change_percent=2.04,
        updated_at=datetime(2024, 3, 1, 9, 30, 0),
    )


def _make_prices(closes, stock_code="AAPL", volumes=None, start=date(2024, 3, 1)):
    volumes = volumes or [1_000_000] * len(closes)
    return [
        PricePoint(
            stock_code=stock_code,
            trade_date=start - timedelta(days=i),
            open_price=close,
            high_price=close + 1,
            low_price=close - 1,
            close_price=close,
            volume=volume,
        )
        for i, (close, volume) in enumerate(zip(closes, volumes))
    ]


@pytest.fixture
def make_prices():
    """Factory for daily bars from closes given most-recent-first."""
    return _make_prices


@pytest.fixture
def sample_stock_info():
    """Sample Yahoo Finance stock info response."""
    return {
        "regularMarketPrice": 175.50,
        "previousClose": 173.25,
        "open": 174.00,
        "dayHigh": 176.00,
        "dayLow": 173.50,
        "volume": 50_000_000,
        "marketCap": 2_800_000_000_000,
        "shortName": "Apple Inc.",
        "exchange": "NASDAQ",
    }


@pytest.fixture
def sample_discord_webhook_url():
    """Sample Discord webhook URL for testing."""
    return "https://discord.com/api/webhooks/123456789/abcdefghijklmnop"


@pytest.fixture
def sample_smtp_config():
    """Sample SMTP configuration for testing."""
    return {
        "smtp_host": "smtp.gmail.com",
        "smtp_port": 587,
        "smtp_user": "test@gmail.com",
        "smtp_password": "test-app-password",
        "from_address": "alerts@kanban.app",
        "to_addresses": ["recipient@example.com"],
    }
