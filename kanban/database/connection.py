"""
SQLite database connection and schema management.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional


class Database:
    """SQLite database connection manager."""

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
        """
        self.db_path = db_path
        self._connection: Optional[sqlite3.Connection] = None
        # Scheduler workers share the connection; every statement runs under this lock.
        self.lock = threading.RLock()
        self._tx_depth = 0
        self._connect()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            # Ensure parent directory exists
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        # Enable foreign keys
        self._connection.execute("PRAGMA foreign_keys = ON")

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection."""
        if self._connection is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._connection

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Run one statement and commit unless inside a transaction."""
        with self.lock:
            cursor = self.connection.cursor()
            cursor.execute(sql, params)
            if self._tx_depth == 0:
                self.connection.commit()
            return cursor

    def query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        """Run a read-only statement and return all rows."""
        with self.lock:
            cursor = self.connection.cursor()
            cursor.execute(sql, params)
            return cursor.fetchall()

    def query_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        """Run a read-only statement and return the first row, if any."""
        with self.lock:
            cursor = self.connection.cursor()
            cursor.execute(sql, params)
            return cursor.fetchone()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Unit of work: statements issued inside commit together or not at all.

        Nested calls join the outer transaction.
        """
        with self.lock:
            self._tx_depth += 1
            try:
                yield self.connection
            except Exception:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self.connection.rollback()
                raise
            else:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self.connection.commit()

    def initialize(self) -> None:
        """Create database schema if it doesn't exist."""
        with self.lock:
            cursor = self.connection.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT,
                    email TEXT,
                    discord_webhook_url TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS cards (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    stock_code TEXT NOT NULL,
                    stock_name TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'WATCH',
                    note TEXT,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                    UNIQUE (user_id, stock_code)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS rules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    rule_type TEXT NOT NULL DEFAULT 'CUSTOM',
                    condition_expression TEXT NOT NULL,
                    trigger_event TEXT NOT NULL,
                    target_status TEXT NOT NULL,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    cooldown_seconds INTEGER NOT NULL DEFAULT 3600,
                    priority INTEGER NOT NULL DEFAULT 5,
                    send_notification INTEGER NOT NULL DEFAULT 1,
                    notification_template TEXT,
                    tags TEXT NOT NULL DEFAULT '[]',
                    parameters TEXT NOT NULL DEFAULT '{}',
                    last_executed_at TIMESTAMP,
                    trigger_count INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                    UNIQUE (user_id, name)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS price_snapshots (
                    stock_code TEXT PRIMARY KEY,
                    stock_name TEXT NOT NULL DEFAULT '',
                    current_price REAL,
                    open_price REAL,
                    high_price REAL,
                    low_price REAL,
                    previous_close REAL,
                    volume INTEGER,
                    change_percent REAL,
                    updated_at TIMESTAMP,
                    data_source TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS historical_prices (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    stock_code TEXT NOT NULL,
                    trade_date DATE NOT NULL,
                    open_price REAL,
                    high_price REAL NOT NULL,
                    low_price REAL NOT NULL,
                    close_price REAL NOT NULL,
                    volume INTEGER NOT NULL,
                    UNIQUE (stock_code, trade_date)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS technical_indicators (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    stock_code TEXT NOT NULL,
                    calculation_date TIMESTAMP NOT NULL,
                    ma5 REAL,
                    ma10 REAL,
                    ma20 REAL,
                    ma60 REAL,
                    rsi14 REAL,
                    kd_k REAL,
                    kd_d REAL,
                    macd_line REAL,
                    macd_signal REAL,
                    macd_histogram REAL,
                    volume_ma5 INTEGER,
                    volume_ma20 INTEGER,
                    volume_ratio REAL,
                    data_points_count INTEGER NOT NULL DEFAULT 0,
                    calculation_source TEXT NOT NULL DEFAULT 'INTERNAL'
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS rule_executions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    rule_id INTEGER NOT NULL,
                    card_id INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    previous_status TEXT,
                    new_status TEXT,
                    condition_result TEXT,
                    stock_snapshot TEXT,
                    message TEXT,
                    notification_sent INTEGER NOT NULL DEFAULT 0,
                    execution_time_ms INTEGER NOT NULL DEFAULT 0,
                    executed_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (rule_id) REFERENCES rules(id) ON DELETE CASCADE,
                    FOREIGN KEY (card_id) REFERENCES cards(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS audit_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    card_id INTEGER NOT NULL,
                    action TEXT NOT NULL,
                    from_status TEXT,
                    to_status TEXT,
                    reason TEXT,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    type TEXT NOT NULL,
                    rule_id INTEGER,
                    card_id INTEGER,
                    stock_code TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
            """)

            # Create indexes for common queries
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_cards_user ON cards(user_id, status)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_rules_enabled
                ON rules(enabled, priority, created_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_history_stock_date
                ON historical_prices(stock_code, trade_date DESC)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_indicators_stock_date
                ON technical_indicators(stock_code, calculation_date DESC)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_executions_rule_card
                ON rule_executions(rule_id, card_id, executed_at DESC)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_executions_card
                ON rule_executions(card_id, executed_at DESC)
            """)

            self.connection.commit()

    def close(self) -> None:
        """Close the database connection."""
        with self.lock:
            if self._connection:
                self._connection.close()
                self._connection = None
