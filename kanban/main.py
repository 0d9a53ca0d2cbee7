"""
Main application entry point.
"""

import logging
import signal
import threading
from datetime import datetime
from typing import Callable, Optional

from dotenv import load_dotenv

load_dotenv()

from kanban.config import AppConfig
from kanban.database.connection import Database
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
from kanban.indicators.engine import IndicatorEngine
from kanban.rules.engine import RuleExecutionEngine
from kanban.rules.evaluator import ConditionEvaluator
from kanban.scheduler import RuleScheduler, SchedulerRunSummary
from kanban.services.audit import AuditService
from kanban.services.notifications import NotificationService

logger = logging.getLogger(__name__)


class KanbanApp:
    """Wires repositories, engines and the scheduler together."""

    def __init__(
        self,
        db: Database,
        config: Optional[AppConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the rule engine application.

        Args:
            db: Database instance (already initialized)
            config: Application configuration; defaults are used if omitted
            clock: Time source shared by all components
        """
        self.db = db
        self.config = config or AppConfig()
        scheduler_config = self.config.scheduler
        notifications = self.config.notifications

        # Initialize repositories
        self.user_repo = UserRepository(db)
        self.card_repo = CardRepository(db)
        self.rule_repo = RuleRepository(db)
        self.price_repo = PriceRepository(db)
        self.indicator_repo = IndicatorRepository(db)
        self.execution_repo = ExecutionRepository(db)
        self.audit_repo = AuditLogRepository(db)
        self.notification_repo = NotificationRepository(db)

        # Initialize services
        self.indicator_engine = IndicatorEngine(
            self.price_repo,
            self.indicator_repo,
            history_limit=scheduler_config.history_limit,
            clock=clock,
        )
        self.audit_service = AuditService(self.audit_repo, clock=clock)
        self.notification_service = NotificationService(
            self.notification_repo,
            self.user_repo,
            discord_config={
                "webhook_url": notifications.discord.webhook_url,
                "mention_on_alerts": notifications.discord.mention_on_alerts,
                "timeout": notifications.discord.timeout_seconds,
            },
            email_config={
                "smtp_host": notifications.email.smtp_host,
                "smtp_port": notifications.email.smtp_port,
                "smtp_user": notifications.email.smtp_user,
                "smtp_password": notifications.email.smtp_password,
                "from_address": notifications.email.from_address,
                "timeout": notifications.email.timeout_seconds,
            },
            max_workers=notifications.dispatch_workers,
        )
        self.rule_engine = RuleExecutionEngine(
            db,
            card_repo=self.card_repo,
            rule_repo=self.rule_repo,
            price_repo=self.price_repo,
            indicator_repo=self.indicator_repo,
            execution_repo=self.execution_repo,
            evaluator=ConditionEvaluator(),
            audit_sink=self.audit_service,
            notification_sink=self.notification_service,
            clock=clock,
            lookup_timeout_seconds=scheduler_config.lookup_timeout_seconds,
        )
        self.scheduler = RuleScheduler(
            self.rule_engine,
            self.rule_repo,
            interval_seconds=scheduler_config.interval_seconds,
            max_workers=scheduler_config.max_workers,
            clock=clock,
            indicator_engine=self.indicator_engine,
            card_repo=self.card_repo,
            refresh_indicators=scheduler_config.refresh_indicators,
        )

    def run_once(self) -> Optional[SchedulerRunSummary]:
        """Run one batch of all ready rules."""
        return self.scheduler.run_once()

    def start(self) -> None:
        """Start periodic rule execution."""
        self.scheduler.start()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop the scheduler and drain queued notifications."""
        self.scheduler.stop(timeout)
        self.notification_service.shutdown(wait=True)
        self.rule_engine.close()


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Stock Kanban Rule Engine")
    parser.add_argument(
        "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--once", action="store_true", help="Run a single batch and exit"
    )

    args = parser.parse_args()

    # Load config
    from kanban.config import load_config

    config = load_config(args.config)

    # Setup logging
    log_level = logging.DEBUG if args.debug else getattr(logging, config.advanced.log_level)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Initialize database
    db = Database(config.database.path)
    db.initialize()

    app = KanbanApp(db=db, config=config)

    if args.once:
        app.run_once()
        app.shutdown()
        db.close()
        return

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())

    app.start()
    try:
        while not stop.wait(1):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        logger.info("Shutting down")
        app.shutdown(timeout=config.scheduler.interval_seconds)
        db.close()


if __name__ == "__main__":
    main()
