"""
Data models for the stock kanban rule engine.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional, Any


class CardStatus(str, Enum):
    """Workflow column a card sits in."""

    WATCH = "WATCH"
    READY_TO_BUY = "READY_TO_BUY"
    HOLD = "HOLD"
    SELL = "SELL"
    ALERTS = "ALERTS"
    ARCHIVED = "ARCHIVED"

    @property
    def display_name(self) -> str:
        return _CARD_STATUS_NAMES[self]


_CARD_STATUS_NAMES = {
    CardStatus.WATCH: "Watch",
    CardStatus.READY_TO_BUY: "Ready to Buy",
    CardStatus.HOLD: "Hold",
    CardStatus.SELL: "Sell",
    CardStatus.ALERTS: "Alerts",
    CardStatus.ARCHIVED: "Archived",
}


class RuleType(str, Enum):
    """Where a rule came from."""

    PREDEFINED = "PREDEFINED"
    CUSTOM = "CUSTOM"
    TEMPLATE = "TEMPLATE"


class TriggerEvent(str, Enum):
    """Kind of market event a rule reacts to."""

    PRICE_CHANGE = "PRICE_CHANGE"
    VOLUME_SPIKE = "VOLUME_SPIKE"
    TECHNICAL_INDICATOR = "TECHNICAL_INDICATOR"
    PRICE_ALERT = "PRICE_ALERT"
    TIME_BASED = "TIME_BASED"


class ExecutionStatus(str, Enum):
    """Outcome of one rule evaluation against one card."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    COOLDOWN = "COOLDOWN"


INSUFFICIENT_DATA = "INSUFFICIENT_DATA"
INTERNAL_SOURCE = "INTERNAL"


@dataclass
class User:
    """Owner of rules and cards, with notification settings."""

    id: Optional[int] = None
    username: Optional[str] = None
    email: Optional[str] = None
    discord_webhook_url: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Rule:
    """User-defined automation rule."""

    user_id: int
    name: str
    condition_expression: str
    target_status: CardStatus
    trigger_event: TriggerEvent = TriggerEvent.PRICE_CHANGE
    description: Optional[str] = None
    rule_type: RuleType = RuleType.CUSTOM
    enabled: bool = True
    cooldown_seconds: int = 3600
    priority: int = 5  # lower runs first
    send_notification: bool = True
    notification_template: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    parameters: dict[str, Any] = field(default_factory=dict)
    last_executed_at: Optional[datetime] = None
    trigger_count: int = 0
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Card:
    """A watched stock on a user's kanban board."""

    user_id: int
    stock_code: str
    stock_name: str = ""
    status: CardStatus = CardStatus.WATCH
    note: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class PriceSnapshot:
    """Latest known quote for a stock."""

    stock_code: str
    current_price: Optional[float]
    stock_name: str = ""
    open_price: Optional[float] = None
    high_price: Optional[float] = None
    low_price: Optional[float] = None
    previous_close: Optional[float] = None
    volume: Optional[int] = None
    change_percent: Optional[float] = None
    updated_at: Optional[datetime] = None
    data_source: str = "YAHOO"

    def to_dict(self) -> dict[str, Any]:
        """Fields recorded alongside a rule execution."""
        return {
            "stockCode": self.stock_code,
            "stockName": self.stock_name,
            "currentPrice": self.current_price,
            "openPrice": self.open_price,
            "highPrice": self.high_price,
            "lowPrice": self.low_price,
            "previousClose": self.previous_close,
            "volume": self.volume,
            "changePercent": self.change_percent,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PriceSnapshot":
        updated_at = data.get("updatedAt")
        return cls(
            stock_code=data["stockCode"],
            stock_name=data.get("stockName") or "",
            current_price=data.get("currentPrice"),
            open_price=data.get("openPrice"),
            high_price=data.get("highPrice"),
            low_price=data.get("lowPrice"),
            previous_close=data.get("previousClose"),
            volume=data.get("volume"),
            change_percent=data.get("changePercent"),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )


@dataclass
class PricePoint:
    """One daily OHLCV bar."""

    stock_code: str
    trade_date: date
    open_price: float
    high_price: float
    low_price: float
    close_price: float
    volume: int


@dataclass
class IndicatorSnapshot:
    """Technical indicators computed for a stock at one point in time."""

    stock_code: str
    calculation_date: datetime
    ma5: Optional[float] = None
    ma10: Optional[float] = None
    ma20: Optional[float] = None
    ma60: Optional[float] = None
    rsi14: Optional[float] = None
    kd_k: Optional[float] = None
    kd_d: Optional[float] = None
    macd_line: Optional[float] = None
    macd_signal: Optional[float] = None
    macd_histogram: Optional[float] = None
    volume_ma5: Optional[int] = None
    volume_ma20: Optional[int] = None
    volume_ratio: Optional[float] = None
    data_points_count: int = 0
    calculation_source: str = INTERNAL_SOURCE
    id: Optional[int] = None

    @property
    def is_insufficient(self) -> bool:
        return self.calculation_source == INSUFFICIENT_DATA


@dataclass
class RuleExecution:
    """Append-only record of one rule evaluation attempt."""

    rule_id: int
    card_id: int
    status: ExecutionStatus
    executed_at: datetime
    previous_status: Optional[CardStatus] = None
    new_status: Optional[CardStatus] = None
    condition_result: Optional[str] = None  # JSON
    stock_snapshot: Optional[str] = None  # JSON
    message: Optional[str] = None
    notification_sent: bool = False
    execution_time_ms: int = 0
    id: Optional[int] = None


@dataclass
class AuditLog:
    """Card status change written by the audit sink."""

    user_id: int
    card_id: int
    action: str
    from_status: Optional[CardStatus]
    to_status: Optional[CardStatus]
    reason: str
    created_at: datetime
    id: Optional[int] = None


@dataclass
class Notification:
    """In-app notification for a user."""

    user_id: int
    title: str
    message: str
    type: str = "RULE_TRIGGERED"
    rule_id: Optional[int] = None
    card_id: Optional[int] = None
    stock_code: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    is_read: bool = False
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class RuleNotificationEvent:
    """Payload handed to the notification sink after a transition."""

    user_id: int
    rule_id: int
    rule_name: str
    card_id: int
    stock_code: str
    stock_name: str
    previous_status: Optional[CardStatus]
    new_status: CardStatus
    message: str
    triggered_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "ruleId": self.rule_id,
            "ruleName": self.rule_name,
            "cardId": self.card_id,
            "stockCode": self.stock_code,
            "stockName": self.stock_name,
            "previousStatus": (
                self.previous_status.value if self.previous_status else None
            ),
            "newStatus": self.new_status.value,
            "message": self.message,
            "triggeredAt": self.triggered_at.isoformat(),
        }


@dataclass
class Page:
    """One page of a paginated query."""

    items: list[Any]
    page: int
    size: int
    total_elements: int

    @property
    def total_pages(self) -> int:
        if self.size <= 0:
            return 0
        return (self.total_elements + self.size - 1) // self.size

    @property
    def has_next(self) -> bool:
        return self.page + 1 < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 0
