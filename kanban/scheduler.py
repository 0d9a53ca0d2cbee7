"""
Periodic batch scheduler for rule execution.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Callable, Optional

from kanban.database.models import Rule
from kanban.database.repository import CardRepository, RuleRepository
from kanban.indicators.engine import IndicatorEngine
from kanban.rules.engine import ExecutionSummary, RuleExecutionEngine

logger = logging.getLogger(__name__)


@dataclass
class SchedulerRunSummary:
    """Totals for one scheduler run."""

    started_at: datetime
    rules_total: int = 0
    rules_executed: int = 0
    rules_in_cooldown: int = 0
    rules_failed: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    cooldown: int = 0
    indicators_refreshed: int = 0
    summaries: list[ExecutionSummary] = field(default_factory=list)

    def add(self, summary: ExecutionSummary) -> None:
        self.summaries.append(summary)
        self.rules_executed += 1
        self.success += summary.success
        self.failed += summary.failed
        self.skipped += summary.skipped
        self.cooldown += summary.cooldown


class RuleScheduler:
    """Runs all ready rules on a fixed interval, never overlapping runs."""

    def __init__(
        self,
        engine: RuleExecutionEngine,
        rule_repo: RuleRepository,
        interval_seconds: float = 300,
        max_workers: int = 1,
        clock: Callable[[], datetime] = datetime.now,
        indicator_engine: Optional[IndicatorEngine] = None,
        card_repo: Optional[CardRepository] = None,
        refresh_indicators: bool = False,
    ):
        """
        Initialize scheduler.

        Args:
            engine: Executes a rule across its owner's cards
            rule_repo: Source of enabled rules
            interval_seconds: Time between runs
            max_workers: Rules executed in parallel within one run
            clock: Time source for the rule-level cooldown
            indicator_engine: Used to recompute indicators before each run
            card_repo: Supplies the stock codes whose indicators are refreshed
            refresh_indicators: Whether to recompute indicators before each run
        """
        self.engine = engine
        self.rule_repo = rule_repo
        self.interval_seconds = interval_seconds
        self.max_workers = max_workers
        self.clock = clock
        self.indicator_engine = indicator_engine
        self.card_repo = card_repo
        self.refresh_indicators = refresh_indicators

        self._run_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        """Whether the background loop is alive."""
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Optional[SchedulerRunSummary]:
        """
        Execute every enabled rule that is out of its cooldown.

        Returns:
            Run summary, or None if a previous run is still in progress
        """
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Previous rule run still in progress, skipping")
            return None

        try:
            return self._run()
        finally:
            self._run_lock.release()

    def start(self) -> None:
        """Start the periodic loop in a daemon thread."""
        if self.is_running:
            logger.warning("Scheduler already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name="kanban-scheduler", daemon=True
        )
        self._thread.start()
        logger.info(f"Rule scheduler started (interval {self.interval_seconds}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the loop to stop and wait for the current run to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Scheduler thread did not stop within timeout")
            else:
                self._thread = None
        logger.info("Rule scheduler stopped")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Scheduled rule run failed: {e}", exc_info=True)
            self._stop_event.wait(self.interval_seconds)

    def _run(self) -> SchedulerRunSummary:
        now = self.clock()
        summary = SchedulerRunSummary(started_at=now)
        logger.info("Starting scheduled rule execution")

        if self.refresh_indicators:
            summary.indicators_refreshed = self._refresh_indicators()

        # Ordered by priority, then creation time
        enabled = self.rule_repo.find_enabled_rules()
        ready = [rule for rule in enabled if self._is_ready(rule, now)]
        summary.rules_total = len(enabled)
        summary.rules_in_cooldown = len(enabled) - len(ready)

        if self.max_workers > 1 and len(ready) > 1:
            with ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="kanban-rule"
            ) as pool:
                futures = [
                    (rule, pool.submit(self.engine.execute_rule_for_all_cards, rule))
                    for rule in ready
                ]
                for rule, future in futures:
                    self._collect(summary, rule, future.result)
        else:
            for rule in ready:
                self._collect(summary, rule, partial(self.engine.execute_rule_for_all_cards, rule))

        logger.info(
            f"Completed scheduled rule execution: {summary.rules_executed} rules, "
            f"{summary.rules_in_cooldown} in cooldown, {summary.rules_failed} failed; "
            f"cards success={summary.success}, failed={summary.failed}, "
            f"skipped={summary.skipped}, cooldown={summary.cooldown}"
        )
        return summary

    def _collect(
        self,
        summary: SchedulerRunSummary,
        rule: Rule,
        run: Callable[[], ExecutionSummary],
    ) -> None:
        try:
            summary.add(run())
        except Exception as e:
            summary.rules_failed += 1
            logger.error(f"Error executing rule {rule.id} ('{rule.name}'): {e}", exc_info=True)

    def _is_ready(self, rule: Rule, now: datetime) -> bool:
        if rule.last_executed_at is None:
            return True
        return rule.last_executed_at < now - timedelta(seconds=rule.cooldown_seconds)

    def _refresh_indicators(self) -> int:
        if self.indicator_engine is None or self.card_repo is None:
            return 0
        try:
            codes = self.card_repo.list_stock_codes()
            results = self.indicator_engine.calculate_batch(codes)
        except Exception as e:
            logger.error(f"Indicator refresh failed: {e}")
            return 0
        return sum(1 for snapshot in results.values() if not snapshot.is_insufficient)
