"""
Rule execution engine: applies one rule to one card, or to all of a user's cards.
"""

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Optional, Protocol

from kanban.database.connection import Database
from kanban.database.models import (
    Card,
    CardStatus,
    ExecutionStatus,
    IndicatorSnapshot,
    Page,
    PriceSnapshot,
    Rule,
    RuleExecution,
    RuleNotificationEvent,
)
from kanban.database.repository import (
    CardRepository,
    ExecutionRepository,
    IndicatorRepository,
    PriceRepository,
    RuleRepository,
)
from kanban.errors import NotFoundError
from kanban.services.notifications import render_template
from .context import build_evaluation_context
from .evaluator import ConditionEvaluator, EvaluationResult

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def record_status_change(
        self,
        user_id: int,
        card: Card,
        from_status: Optional[CardStatus],
        to_status: CardStatus,
        reason: str,
    ) -> None: ...


class NotificationSink(Protocol):
    def dispatch(self, event: RuleNotificationEvent) -> Any: ...


@dataclass
class ExecutionSummary:
    """Outcome counts for one rule run over a user's cards."""

    rule_id: Optional[int]
    success: int = 0
    failed: int = 0
    skipped: int = 0
    cooldown: int = 0

    @property
    def total(self) -> int:
        return self.success + self.failed + self.skipped + self.cooldown

    def add(self, status: ExecutionStatus) -> None:
        if status == ExecutionStatus.SUCCESS:
            self.success += 1
        elif status == ExecutionStatus.FAILED:
            self.failed += 1
        elif status == ExecutionStatus.SKIPPED:
            self.skipped += 1
        elif status == ExecutionStatus.COOLDOWN:
            self.cooldown += 1


class RuleExecutionEngine:
    """Runs the cooldown / evaluate / transition / record cycle for rules."""

    def __init__(
        self,
        db: Database,
        card_repo: CardRepository,
        rule_repo: RuleRepository,
        price_repo: PriceRepository,
        indicator_repo: IndicatorRepository,
        execution_repo: ExecutionRepository,
        evaluator: Optional[ConditionEvaluator] = None,
        audit_sink: Optional[AuditSink] = None,
        notification_sink: Optional[NotificationSink] = None,
        clock: Callable[[], datetime] = datetime.now,
        lookup_timeout_seconds: float = 10,
    ):
        """
        Initialize rule execution engine.

        Args:
            db: Database whose transaction() wraps the status transition
            card_repo: Card store
            rule_repo: Rule store
            price_repo: Latest price snapshots
            indicator_repo: Latest indicator snapshots
            execution_repo: Append-only execution log
            evaluator: Condition evaluator (a default one is created if omitted)
            audit_sink: Receives status changes after commit
            notification_sink: Receives rule-triggered events after commit
            clock: Time source
            lookup_timeout_seconds: Upper bound for price/indicator lookups
        """
        self.db = db
        self.card_repo = card_repo
        self.rule_repo = rule_repo
        self.price_repo = price_repo
        self.indicator_repo = indicator_repo
        self.execution_repo = execution_repo
        self.evaluator = evaluator or ConditionEvaluator()
        self.audit_sink = audit_sink
        self.notification_sink = notification_sink
        self.clock = clock
        self.lookup_timeout_seconds = lookup_timeout_seconds

        # (rule id, card id) -> [lock, number of callers holding or waiting]
        self._locks: dict[tuple[int, int], list] = {}
        self._locks_guard = threading.Lock()
        self._lookup_pool = ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="kanban-lookup"
        )

    def execute_rule_for_card(self, rule: Rule, card: Card) -> ExecutionStatus:
        """
        Apply a rule to a single card.

        Only one evaluation per (rule, card) pair runs at a time.

        Args:
            rule: Rule to apply
            card: Card to evaluate and possibly move

        Returns:
            The outcome, also written as an execution record unless COOLDOWN
        """
        with self._lock_for(rule, card):
            return self._execute(rule, card)

    def execute_rule_for_all_cards(self, rule: Rule) -> ExecutionSummary:
        """
        Apply a rule to every card its owner has.

        An exception on one card is logged and counted as FAILED.
        """
        summary = ExecutionSummary(rule_id=rule.id)
        cards = self.card_repo.find_by_owner(rule.user_id)

        for card in cards:
            try:
                status = self.execute_rule_for_card(rule, card)
            except Exception as e:
                logger.error(
                    f"Error executing rule {rule.id} for card {card.id}: {e}",
                    exc_info=True,
                )
                status = ExecutionStatus.FAILED
            summary.add(status)

        logger.info(
            f"Rule '{rule.name}' ({rule.id}) processed {summary.total} cards: "
            f"success={summary.success}, failed={summary.failed}, "
            f"skipped={summary.skipped}, cooldown={summary.cooldown}"
        )
        return summary

    def get_rule_executions(self, rule_id: int, page: int = 0, size: int = 20) -> Page:
        """Execution history of a rule, newest first."""
        if self.rule_repo.get_by_id(rule_id) is None:
            raise NotFoundError(f"Rule not found: {rule_id}")
        return self.execution_repo.find_by_rule(rule_id, page, size)

    def get_card_executions(self, card_id: int, page: int = 0, size: int = 20) -> Page:
        """Execution history of a card, newest first."""
        if self.card_repo.get_by_id(card_id) is None:
            raise NotFoundError(f"Card not found: {card_id}")
        return self.execution_repo.find_by_card(card_id, page, size)

    def close(self) -> None:
        """Release the lookup threads."""
        self._lookup_pool.shutdown(wait=False)

    def _execute(self, rule: Rule, card: Card) -> ExecutionStatus:
        started = time.perf_counter()
        now = self.clock()

        if self._in_cooldown(rule, card, now):
            logger.debug(f"Rule {rule.id} in cooldown for card {card.id}")
            return ExecutionStatus.COOLDOWN

        try:
            snapshot = self._with_timeout(
                self.price_repo.get_latest_snapshot, card.stock_code
            )
        except Exception as e:
            logger.error(f"Price lookup failed for {card.stock_code}: {e}")
            return self._record(
                rule, card, ExecutionStatus.FAILED, started,
                message=f"Price lookup failed: {e or type(e).__name__}",
            )

        if snapshot is None:
            logger.warning(f"No price data for {card.stock_code}")
            return self._record(
                rule, card, ExecutionStatus.SKIPPED, started, message="no price data"
            )

        indicator = self._lookup_indicators(card.stock_code)

        variables = build_evaluation_context(card, snapshot, indicator)
        # Rule parameters (e.g. targetPrice) never shadow market variables
        for key, value in rule.parameters.items():
            if key not in variables:
                variables[key] = value
        result = self.evaluator.evaluate(rule.condition_expression, variables)

        if not result.success:
            return self._record(
                rule, card, ExecutionStatus.FAILED, started,
                result=result,
                snapshot=snapshot,
                message=f"Evaluation failed: {result.error_message}",
            )

        if not result.matched:
            return self._record(
                rule, card, ExecutionStatus.SKIPPED, started,
                result=result,
                snapshot=snapshot,
                message="condition not matched",
            )

        if card.status == rule.target_status:
            return self._record(
                rule, card, ExecutionStatus.SKIPPED, started,
                result=result,
                snapshot=snapshot,
                message="already at target status",
            )

        previous_status = card.status
        new_status = rule.target_status
        message = (
            f"Rule triggered: {previous_status.display_name} -> {new_status.display_name}"
        )

        with self.db.transaction():
            self.card_repo.update_status(card.id, new_status, updated_at=now)
            self.rule_repo.record_trigger(rule.id, now)
            self._record(
                rule, card, ExecutionStatus.SUCCESS, started,
                result=result,
                snapshot=snapshot,
                message=message,
                previous_status=previous_status,
                new_status=new_status,
                notification_sent=rule.send_notification,
                executed_at=now,
            )
        card.status = new_status
        card.updated_at = now
        rule.last_executed_at = now
        rule.trigger_count += 1

        logger.info(
            f"Rule '{rule.name}' moved {card.stock_code} (card {card.id}) "
            f"from {previous_status.value} to {new_status.value}"
        )

        self._after_transition(rule, card, previous_status, new_status, variables, now)
        return ExecutionStatus.SUCCESS

    def _in_cooldown(self, rule: Rule, card: Card, now: datetime) -> bool:
        latest = self.execution_repo.find_most_recent(rule.id, card.id)
        if latest is None:
            return False
        return latest.executed_at > now - timedelta(seconds=rule.cooldown_seconds)

    def _lookup_indicators(self, stock_code: str) -> Optional[IndicatorSnapshot]:
        try:
            return self._with_timeout(self.indicator_repo.find_latest, stock_code)
        except FutureTimeoutError:
            logger.warning(f"Indicator lookup timed out for {stock_code}")
        except Exception as e:
            logger.warning(f"Indicator lookup failed for {stock_code}: {e}")
        return None

    def _with_timeout(self, func: Callable[..., Any], *args: Any) -> Any:
        future = self._lookup_pool.submit(func, *args)
        try:
            return future.result(timeout=self.lookup_timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise

    def _record(
        self,
        rule: Rule,
        card: Card,
        status: ExecutionStatus,
        started: float,
        result: Optional[EvaluationResult] = None,
        snapshot: Optional[PriceSnapshot] = None,
        message: Optional[str] = None,
        previous_status: Optional[CardStatus] = None,
        new_status: Optional[CardStatus] = None,
        notification_sent: bool = False,
        executed_at: Optional[datetime] = None,
    ) -> ExecutionStatus:
        execution = RuleExecution(
            rule_id=rule.id,
            card_id=card.id,
            status=status,
            executed_at=executed_at or self.clock(),
            previous_status=previous_status,
            new_status=new_status,
            condition_result=result.to_json() if result else None,
            stock_snapshot=json.dumps(snapshot.to_dict()) if snapshot else None,
            message=message,
            notification_sent=notification_sent,
            execution_time_ms=int((time.perf_counter() - started) * 1000),
        )
        self.execution_repo.save(execution)
        logger.debug(
            f"Rule {rule.id} on card {card.id}: {status.value} ({message})"
        )
        return status

    def _after_transition(
        self,
        rule: Rule,
        card: Card,
        previous_status: CardStatus,
        new_status: CardStatus,
        variables: dict[str, Any],
        now: datetime,
    ) -> None:
        """Audit and notify; failures are logged and never undo the transition."""
        if self.audit_sink is not None:
            try:
                self.audit_sink.record_status_change(
                    rule.user_id, card, previous_status, new_status, rule.name
                )
            except Exception as e:
                logger.error(f"Audit logging failed for card {card.id}: {e}")

        if not rule.send_notification or self.notification_sink is None:
            return

        try:
            event = RuleNotificationEvent(
                user_id=rule.user_id,
                rule_id=rule.id,
                rule_name=rule.name,
                card_id=card.id,
                stock_code=card.stock_code,
                stock_name=card.stock_name,
                previous_status=previous_status,
                new_status=new_status,
                message=self._notification_message(rule, card, previous_status, variables),
                triggered_at=now,
            )
            self.notification_sink.dispatch(event)
        except Exception as e:
            logger.error(f"Notification dispatch failed for rule {rule.id}: {e}")

    def _notification_message(
        self,
        rule: Rule,
        card: Card,
        previous_status: CardStatus,
        variables: dict[str, Any],
    ) -> str:
        if not rule.notification_template:
            return f"Rule '{rule.name}' triggered"

        values = dict(variables)
        values.update(
            ruleName=rule.name,
            stockCode=card.stock_code,
            stockName=card.stock_name,
            previousStatus=previous_status.value,
            targetStatus=rule.target_status.value,
        )
        return render_template(rule.notification_template, values)

    @contextmanager
    def _lock_for(self, rule: Rule, card: Card) -> Iterator[None]:
        key = (rule.id, card.id)
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]
