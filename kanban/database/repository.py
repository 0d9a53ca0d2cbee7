"""
Repository classes for CRUD operations.
"""

import json
from datetime import date, datetime
from typing import Any, Optional

from .connection import Database
from .models import (
    AuditLog,
    Card,
    CardStatus,
    ExecutionStatus,
    IndicatorSnapshot,
    Notification,
    Page,
    PricePoint,
    PriceSnapshot,
    Rule,
    RuleExecution,
    RuleType,
    TriggerEvent,
    User,
)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _status_or_none(value: Optional[str]) -> Optional[CardStatus]:
    return CardStatus(value) if value else None


def _paginate(db: Database, sql: str, count_sql: str, params: tuple,
              page: int, size: int, convert) -> Page:
    total = db.query_one(count_sql, params)[0]
    rows = db.query(f"{sql} LIMIT ? OFFSET ?", params + (size, page * size))
    return Page(
        items=[convert(row) for row in rows],
        page=page,
        size=size,
        total_elements=total,
    )


class UserRepository:
    """CRUD operations for users."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, user: User) -> User:
        """Create a new user."""
        user.created_at = user.created_at or datetime.now()
        cursor = self.db.execute(
            """
            INSERT INTO users (username, email, discord_webhook_url, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (user.username, user.email, user.discord_webhook_url,
             _to_iso(user.created_at)),
        )
        user.id = cursor.lastrowid
        return user

    def get_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID."""
        row = self.db.query_one("SELECT * FROM users WHERE id = ?", (user_id,))
        if row is None:
            return None
        return self._row_to_user(row)

    def list_all(self) -> list[User]:
        """List all users."""
        rows = self.db.query("SELECT * FROM users ORDER BY id")
        return [self._row_to_user(row) for row in rows]

    def _row_to_user(self, row) -> User:
        """Convert database row to User."""
        return User(
            id=row["id"],
            username=row["username"],
            email=row["email"],
            discord_webhook_url=row["discord_webhook_url"],
            created_at=_parse_dt(row["created_at"]),
        )


class CardRepository:
    """CRUD operations for kanban cards."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, card: Card) -> Card:
        """Create a new card."""
        card.created_at = card.created_at or datetime.now()
        cursor = self.db.execute(
            """
            INSERT INTO cards
            (user_id, stock_code, stock_name, status, note, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                card.user_id,
                card.stock_code,
                card.stock_name,
                card.status.value,
                card.note,
                _to_iso(card.created_at),
                _to_iso(card.updated_at),
            ),
        )
        card.id = cursor.lastrowid
        return card

    def get_by_id(self, card_id: int) -> Optional[Card]:
        """Get card by ID."""
        row = self.db.query_one("SELECT * FROM cards WHERE id = ?", (card_id,))
        if row is None:
            return None
        return self._row_to_card(row)

    def find_by_owner(self, user_id: int) -> list[Card]:
        """Get all cards of a user, oldest first."""
        rows = self.db.query(
            "SELECT * FROM cards WHERE user_id = ? ORDER BY created_at, id",
            (user_id,),
        )
        return [self._row_to_card(row) for row in rows]

    def list_stock_codes(self) -> list[str]:
        """Distinct stock codes that appear on any card."""
        rows = self.db.query("SELECT DISTINCT stock_code FROM cards ORDER BY stock_code")
        return [row["stock_code"] for row in rows]

    def count_by_status(self) -> dict[CardStatus, int]:
        """Number of cards per workflow status."""
        rows = self.db.query(
            "SELECT status, COUNT(*) AS n FROM cards GROUP BY status"
        )
        return {CardStatus(row["status"]): row["n"] for row in rows}

    def update(self, card: Card) -> None:
        """Update card details."""
        card.updated_at = datetime.now()
        self.db.execute(
            """
            UPDATE cards
            SET stock_name = ?, status = ?, note = ?, updated_at = ?
            WHERE id = ?
            """,
            (card.stock_name, card.status.value, card.note,
             _to_iso(card.updated_at), card.id),
        )

    def update_status(
        self, card_id: int, status: CardStatus, updated_at: Optional[datetime] = None
    ) -> None:
        """Set a card's status in a single statement keyed by card id."""
        self.db.execute(
            "UPDATE cards SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, _to_iso(updated_at or datetime.now()), card_id),
        )

    def delete(self, card_id: int) -> None:
        """Delete a card."""
        self.db.execute("DELETE FROM cards WHERE id = ?", (card_id,))

    def _row_to_card(self, row) -> Card:
        """Convert database row to Card."""
        return Card(
            id=row["id"],
            user_id=row["user_id"],
            stock_code=row["stock_code"],
            stock_name=row["stock_name"],
            status=CardStatus(row["status"]),
            note=row["note"],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )


class RuleRepository:
    """CRUD operations for automation rules."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, rule: Rule) -> Rule:
        """Create a new rule."""
        rule.created_at = rule.created_at or datetime.now()
        rule.updated_at = rule.updated_at or rule.created_at
        cursor = self.db.execute(
            """
            INSERT INTO rules
            (user_id, name, description, rule_type, condition_expression,
             trigger_event, target_status, enabled, cooldown_seconds, priority,
             send_notification, notification_template, tags, parameters,
             last_executed_at, trigger_count, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                rule.user_id,
                rule.name,
                rule.description,
                rule.rule_type.value,
                rule.condition_expression,
                rule.trigger_event.value,
                rule.target_status.value,
                1 if rule.enabled else 0,
                rule.cooldown_seconds,
                rule.priority,
                1 if rule.send_notification else 0,
                rule.notification_template,
                json.dumps(rule.tags),
                json.dumps(rule.parameters),
                _to_iso(rule.last_executed_at),
                rule.trigger_count,
                _to_iso(rule.created_at),
                _to_iso(rule.updated_at),
            ),
        )
        rule.id = cursor.lastrowid
        return rule

    def get_by_id(self, rule_id: int) -> Optional[Rule]:
        """Get rule by ID."""
        row = self.db.query_one("SELECT * FROM rules WHERE id = ?", (rule_id,))
        if row is None:
            return None
        return self._row_to_rule(row)

    def get_by_owner_and_name(self, user_id: int, name: str) -> Optional[Rule]:
        """Get a user's rule by its (unique) name."""
        row = self.db.query_one(
            "SELECT * FROM rules WHERE user_id = ? AND name = ?",
            (user_id, name),
        )
        if row is None:
            return None
        return self._row_to_rule(row)

    def find_by_owner(self, user_id: int, page: int = 0, size: int = 20) -> Page:
        """Get a page of a user's rules."""
        return _paginate(
            self.db,
            "SELECT * FROM rules WHERE user_id = ? ORDER BY priority, created_at, id",
            "SELECT COUNT(*) FROM rules WHERE user_id = ?",
            (user_id,),
            page,
            size,
            self._row_to_rule,
        )

    def find_enabled_by_owner(self, user_id: int) -> list[Rule]:
        """Get only enabled rules for a user."""
        rows = self.db.query(
            """
            SELECT * FROM rules
            WHERE user_id = ? AND enabled = 1
            ORDER BY priority, created_at, id
            """,
            (user_id,),
        )
        return [self._row_to_rule(row) for row in rows]

    def find_enabled_rules(self) -> list[Rule]:
        """All enabled rules, highest priority (lowest number) first."""
        rows = self.db.query(
            """
            SELECT * FROM rules
            WHERE enabled = 1
            ORDER BY priority, created_at, id
            """
        )
        return [self._row_to_rule(row) for row in rows]

    def update(self, rule: Rule) -> None:
        """Update all mutable rule fields."""
        rule.updated_at = datetime.now()
        self.db.execute(
            """
            UPDATE rules
            SET name = ?, description = ?, rule_type = ?, condition_expression = ?,
                trigger_event = ?, target_status = ?, enabled = ?,
                cooldown_seconds = ?, priority = ?, send_notification = ?,
                notification_template = ?, tags = ?, parameters = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                rule.name,
                rule.description,
                rule.rule_type.value,
                rule.condition_expression,
                rule.trigger_event.value,
                rule.target_status.value,
                1 if rule.enabled else 0,
                rule.cooldown_seconds,
                rule.priority,
                1 if rule.send_notification else 0,
                rule.notification_template,
                json.dumps(rule.tags),
                json.dumps(rule.parameters),
                _to_iso(rule.updated_at),
                rule.id,
            ),
        )

    def record_trigger(self, rule_id: int, executed_at: datetime) -> None:
        """Stamp a successful firing: last_executed_at and trigger_count + 1."""
        self.db.execute(
            """
            UPDATE rules
            SET last_executed_at = ?, trigger_count = trigger_count + 1
            WHERE id = ?
            """,
            (_to_iso(executed_at), rule_id),
        )

    def delete(self, rule_id: int) -> None:
        """Delete a rule."""
        self.db.execute("DELETE FROM rules WHERE id = ?", (rule_id,))

    def _row_to_rule(self, row) -> Rule:
        """Convert database row to Rule."""
        return Rule(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            rule_type=RuleType(row["rule_type"]),
            condition_expression=row["condition_expression"],
            trigger_event=TriggerEvent(row["trigger_event"]),
            target_status=CardStatus(row["target_status"]),
            enabled=bool(row["enabled"]),
            cooldown_seconds=row["cooldown_seconds"],
            priority=row["priority"],
            send_notification=bool(row["send_notification"]),
            notification_template=row["notification_template"],
            tags=json.loads(row["tags"]),
            parameters=json.loads(row["parameters"]),
            last_executed_at=_parse_dt(row["last_executed_at"]),
            trigger_count=row["trigger_count"],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )


class PriceRepository:
    """Latest quotes and daily price history."""

    def __init__(self, db: Database):
        self.db = db

    def upsert_snapshot(self, snapshot: PriceSnapshot) -> None:
        """Replace the latest quote for a stock."""
        snapshot.updated_at = snapshot.updated_at or datetime.now()
        self.db.execute(
            """
            INSERT INTO price_snapshots
            (stock_code, stock_name, current_price, open_price, high_price,
             low_price, previous_close, volume, change_percent, updated_at,
             data_source)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(stock_code) DO UPDATE SET
                stock_name = excluded.stock_name,
                current_price = excluded.current_price,
                open_price = excluded.open_price,
                high_price = excluded.high_price,
                low_price = excluded.low_price,
                previous_close = excluded.previous_close,
                volume = excluded.volume,
                change_percent = excluded.change_percent,
                updated_at = excluded.updated_at,
                data_source = excluded.data_source
            """,
            (
                snapshot.stock_code,
                snapshot.stock_name,
                snapshot.current_price,
                snapshot.open_price,
                snapshot.high_price,
                snapshot.low_price,
                snapshot.previous_close,
                snapshot.volume,
                snapshot.change_percent,
                _to_iso(snapshot.updated_at),
                snapshot.data_source,
            ),
        )

    def get_latest_snapshot(self, stock_code: str) -> Optional[PriceSnapshot]:
        """Latest quote for a stock, or None."""
        row = self.db.query_one(
            "SELECT * FROM price_snapshots WHERE stock_code = ?", (stock_code,)
        )
        if row is None:
            return None
        return PriceSnapshot(
            stock_code=row["stock_code"],
            stock_name=row["stock_name"],
            current_price=row["current_price"],
            open_price=row["open_price"],
            high_price=row["high_price"],
            low_price=row["low_price"],
            previous_close=row["previous_close"],
            volume=row["volume"],
            change_percent=row["change_percent"],
            updated_at=_parse_dt(row["updated_at"]),
            data_source=row["data_source"],
        )

    def save_history(self, points: list[PricePoint]) -> None:
        """Bulk upsert daily bars."""
        with self.db.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO historical_prices
                (stock_code, trade_date, open_price, high_price, low_price,
                 close_price, volume)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(stock_code, trade_date) DO UPDATE SET
                    open_price = excluded.open_price,
                    high_price = excluded.high_price,
                    low_price = excluded.low_price,
                    close_price = excluded.close_price,
                    volume = excluded.volume
                """,
                [
                    (
                        p.stock_code,
                        p.trade_date.isoformat(),
                        p.open_price,
                        p.high_price,
                        p.low_price,
                        p.close_price,
                        p.volume,
                    )
                    for p in points
                ],
            )

    def get_recent_prices(self, stock_code: str, limit: int = 100) -> list[PricePoint]:
        """Most recent daily bars, newest first."""
        rows = self.db.query(
            """
            SELECT * FROM historical_prices
            WHERE stock_code = ?
            ORDER BY trade_date DESC
            LIMIT ?
            """,
            (stock_code, limit),
        )
        return [
            PricePoint(
                stock_code=row["stock_code"],
                trade_date=date.fromisoformat(row["trade_date"]),
                open_price=row["open_price"],
                high_price=row["high_price"],
                low_price=row["low_price"],
                close_price=row["close_price"],
                volume=row["volume"],
            )
            for row in rows
        ]

    def list_stock_codes(self) -> list[str]:
        """Stock codes that have a stored quote."""
        rows = self.db.query("SELECT stock_code FROM price_snapshots ORDER BY stock_code")
        return [row["stock_code"] for row in rows]


class IndicatorRepository:
    """Computed indicator snapshots."""

    _FIELDS = (
        "ma5", "ma10", "ma20", "ma60", "rsi14", "kd_k", "kd_d",
        "macd_line", "macd_signal", "macd_histogram",
        "volume_ma5", "volume_ma20", "volume_ratio",
    )

    def __init__(self, db: Database):
        self.db = db

    def save(self, snapshot: IndicatorSnapshot) -> IndicatorSnapshot:
        """Append an indicator snapshot."""
        columns = ("stock_code", "calculation_date") + self._FIELDS + (
            "data_points_count", "calculation_source",
        )
        values = (
            (snapshot.stock_code, _to_iso(snapshot.calculation_date))
            + tuple(getattr(snapshot, name) for name in self._FIELDS)
            + (snapshot.data_points_count, snapshot.calculation_source)
        )
        placeholders = ", ".join("?" for _ in columns)
        cursor = self.db.execute(
            f"INSERT INTO technical_indicators ({', '.join(columns)}) "
            f"VALUES ({placeholders})",
            values,
        )
        snapshot.id = cursor.lastrowid
        return snapshot

    def find_latest(self, stock_code: str) -> Optional[IndicatorSnapshot]:
        """Most recent snapshot for a stock, or None."""
        row = self.db.query_one(
            """
            SELECT * FROM technical_indicators
            WHERE stock_code = ?
            ORDER BY calculation_date DESC, id DESC
            LIMIT 1
            """,
            (stock_code,),
        )
        if row is None:
            return None
        return IndicatorSnapshot(
            id=row["id"],
            stock_code=row["stock_code"],
            calculation_date=_parse_dt(row["calculation_date"]),
            data_points_count=row["data_points_count"],
            calculation_source=row["calculation_source"],
            **{name: row[name] for name in self._FIELDS},
        )


class ExecutionRepository:
    """Append-only rule execution log."""

    def __init__(self, db: Database):
        self.db = db

    def save(self, execution: RuleExecution) -> RuleExecution:
        """Append an execution record."""
        cursor = self.db.execute(
            """
            INSERT INTO rule_executions
            (rule_id, card_id, status, previous_status, new_status,
             condition_result, stock_snapshot, message, notification_sent,
             execution_time_ms, executed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                execution.rule_id,
                execution.card_id,
                execution.status.value,
                execution.previous_status.value if execution.previous_status else None,
                execution.new_status.value if execution.new_status else None,
                execution.condition_result,
                execution.stock_snapshot,
                execution.message,
                1 if execution.notification_sent else 0,
                execution.execution_time_ms,
                _to_iso(execution.executed_at),
            ),
        )
        execution.id = cursor.lastrowid
        return execution

    def find_most_recent(self, rule_id: int, card_id: int) -> Optional[RuleExecution]:
        """Latest record for a (rule, card) pair."""
        row = self.db.query_one(
            """
            SELECT * FROM rule_executions
            WHERE rule_id = ? AND card_id = ?
            ORDER BY executed_at DESC, id DESC
            LIMIT 1
            """,
            (rule_id, card_id),
        )
        if row is None:
            return None
        return self._row_to_execution(row)

    def find_by_rule(self, rule_id: int, page: int = 0, size: int = 20) -> Page:
        """Page of a rule's executions, newest first."""
        return _paginate(
            self.db,
            "SELECT * FROM rule_executions WHERE rule_id = ? "
            "ORDER BY executed_at DESC, id DESC",
            "SELECT COUNT(*) FROM rule_executions WHERE rule_id = ?",
            (rule_id,),
            page,
            size,
            self._row_to_execution,
        )

    def find_by_card(self, card_id: int, page: int = 0, size: int = 20) -> Page:
        """Page of a card's executions, newest first."""
        return _paginate(
            self.db,
            "SELECT * FROM rule_executions WHERE card_id = ? "
            "ORDER BY executed_at DESC, id DESC",
            "SELECT COUNT(*) FROM rule_executions WHERE card_id = ?",
            (card_id,),
            page,
            size,
            self._row_to_execution,
        )

    def count_since(self, since: datetime) -> dict[ExecutionStatus, int]:
        """Executions per outcome since a point in time."""
        rows = self.db.query(
            """
            SELECT status, COUNT(*) AS n FROM rule_executions
            WHERE executed_at >= ?
            GROUP BY status
            """,
            (since.isoformat(),),
        )
        return {ExecutionStatus(row["status"]): row["n"] for row in rows}

    def _row_to_execution(self, row) -> RuleExecution:
        """Convert database row to RuleExecution."""
        return RuleExecution(
            id=row["id"],
            rule_id=row["rule_id"],
            card_id=row["card_id"],
            status=ExecutionStatus(row["status"]),
            previous_status=_status_or_none(row["previous_status"]),
            new_status=_status_or_none(row["new_status"]),
            condition_result=row["condition_result"],
            stock_snapshot=row["stock_snapshot"],
            message=row["message"],
            notification_sent=bool(row["notification_sent"]),
            execution_time_ms=row["execution_time_ms"],
            executed_at=_parse_dt(row["executed_at"]),
        )


class AuditLogRepository:
    """Card status change audit trail."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, entry: AuditLog) -> AuditLog:
        """Create a new audit entry."""
        cursor = self.db.execute(
            """
            INSERT INTO audit_logs
            (user_id, card_id, action, from_status, to_status, reason, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.user_id,
                entry.card_id,
                entry.action,
                entry.from_status.value if entry.from_status else None,
                entry.to_status.value if entry.to_status else None,
                entry.reason,
                _to_iso(entry.created_at),
            ),
        )
        entry.id = cursor.lastrowid
        return entry

    def find_by_card(self, card_id: int, limit: int = 50) -> list[AuditLog]:
        """Audit entries of a card, newest first."""
        rows = self.db.query(
            """
            SELECT * FROM audit_logs WHERE card_id = ?
            ORDER BY created_at DESC, id DESC LIMIT ?
            """,
            (card_id, limit),
        )
        return [self._row_to_entry(row) for row in rows]

    def find_by_user(self, user_id: int, limit: int = 50) -> list[AuditLog]:
        """Audit entries of a user, newest first."""
        rows = self.db.query(
            """
            SELECT * FROM audit_logs WHERE user_id = ?
            ORDER BY created_at DESC, id DESC LIMIT ?
            """,
            (user_id, limit),
        )
        return [self._row_to_entry(row) for row in rows]

    def _row_to_entry(self, row) -> AuditLog:
        """Convert database row to AuditLog."""
        return AuditLog(
            id=row["id"],
            user_id=row["user_id"],
            card_id=row["card_id"],
            action=row["action"],
            from_status=_status_or_none(row["from_status"]),
            to_status=_status_or_none(row["to_status"]),
            reason=row["reason"],
            created_at=_parse_dt(row["created_at"]),
        )


class NotificationRepository:
    """CRUD operations for in-app notifications."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, notification: Notification) -> Notification:
        """Create a new notification."""
        notification.created_at = notification.created_at or datetime.now()
        cursor = self.db.execute(
            """
            INSERT INTO notifications
            (user_id, title, message, type, rule_id, card_id, stock_code,
             metadata, is_read, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                notification.user_id,
                notification.title,
                notification.message,
                notification.type,
                notification.rule_id,
                notification.card_id,
                notification.stock_code,
                json.dumps(notification.metadata),
                1 if notification.is_read else 0,
                _to_iso(notification.created_at),
            ),
        )
        notification.id = cursor.lastrowid
        return notification

    def find_by_user(self, user_id: int, limit: int = 50) -> list[Notification]:
        """A user's notifications, newest first."""
        rows = self.db.query(
            """
            SELECT * FROM notifications WHERE user_id = ?
            ORDER BY created_at DESC, id DESC LIMIT ?
            """,
            (user_id, limit),
        )
        return [self._row_to_notification(row) for row in rows]

    def mark_read(self, notification_id: int) -> None:
        """Mark notification as read."""
        self.db.execute(
            "UPDATE notifications SET is_read = 1 WHERE id = ?", (notification_id,)
        )

    def count_unread(self, user_id: int) -> int:
        """Number of unread notifications for a user."""
        row = self.db.query_one(
            "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND is_read = 0",
            (user_id,),
        )
        return row[0]

    def _row_to_notification(self, row) -> Notification:
        """Convert database row to Notification."""
        return Notification(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            message=row["message"],
            type=row["type"],
            rule_id=row["rule_id"],
            card_id=row["card_id"],
            stock_code=row["stock_code"],
            metadata=json.loads(row["metadata"]),
            is_read=bool(row["is_read"]),
            created_at=_parse_dt(row["created_at"]),
        )
