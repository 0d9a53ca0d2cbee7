"""
Rule management: create, update and delete rules, and build rules from templates.
"""

import dataclasses
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from kanban.database.models import (
    CardStatus,
    Page,
    Rule,
    RuleType,
    TriggerEvent,
)
from kanban.database.repository import RuleRepository, UserRepository
from kanban.errors import (
    DuplicateRuleError,
    InvalidExpressionError,
    NotFoundError,
    PermissionDeniedError,
)
from .evaluator import ConditionEvaluator

logger = logging.getLogger(__name__)

# Fields callers may set on create/update
EDITABLE_FIELDS = (
    "name",
    "description",
    "rule_type",
    "condition_expression",
    "trigger_event",
    "target_status",
    "enabled",
    "cooldown_seconds",
    "priority",
    "send_notification",
    "notification_template",
    "tags",
    "parameters",
)

DEFAULT_TEMPLATES = (
    Rule(
        user_id=0,
        name="Price Alert",
        description="Fires when the price reaches the targetPrice parameter",
        rule_type=RuleType.TEMPLATE,
        condition_expression="price >= targetPrice",
        trigger_event=TriggerEvent.PRICE_CHANGE,
        target_status=CardStatus.ALERTS,
        cooldown_seconds=3600,
        priority=5,
        notification_template=(
            "{stockName} ({stockCode}) reached {price}, above the target price {targetPrice}"
        ),
        parameters={"targetPrice": None},
    ),
    Rule(
        user_id=0,
        name="Volume Spike",
        description="Fires when volume exceeds twice the average volume",
        rule_type=RuleType.TEMPLATE,
        condition_expression="volume > avgVolume * 2",
        trigger_event=TriggerEvent.VOLUME_SPIKE,
        target_status=CardStatus.ALERTS,
        cooldown_seconds=7200,
        priority=3,
        notification_template=(
            "{stockName} ({stockCode}) volume spike: {volume} is more than twice the average"
        ),
    ),
    Rule(
        user_id=0,
        name="RSI Oversold",
        description="Fires when RSI drops below 30 (possible buy signal)",
        rule_type=RuleType.TEMPLATE,
        condition_expression="rsi < 30",
        trigger_event=TriggerEvent.TECHNICAL_INDICATOR,
        target_status=CardStatus.READY_TO_BUY,
        cooldown_seconds=14400,
        priority=4,
        notification_template="{stockName} ({stockCode}) RSI is {rsi}, oversold",
    ),
    Rule(
        user_id=0,
        name="RSI Overbought",
        description="Fires when RSI rises above 70 (possible sell signal)",
        rule_type=RuleType.TEMPLATE,
        condition_expression="rsi > 70",
        trigger_event=TriggerEvent.TECHNICAL_INDICATOR,
        target_status=CardStatus.SELL,
        cooldown_seconds=14400,
        priority=4,
        notification_template="{stockName} ({stockCode}) RSI is {rsi}, overbought",
    ),
    Rule(
        user_id=0,
        name="MA Golden Cross",
        description="Fires when MA5 has just moved above MA20 (within 1%)",
        rule_type=RuleType.TEMPLATE,
        condition_expression="ma5 > ma20 && ma5_ma20_diff < ma20 * 0.01",
        trigger_event=TriggerEvent.TECHNICAL_INDICATOR,
        target_status=CardStatus.READY_TO_BUY,
        cooldown_seconds=86400,
        priority=2,
        notification_template=(
            "{stockName} ({stockCode}) golden cross, MA5={ma5}, MA20={ma20}"
        ),
    ),
)


def _coerce_enums(fields: dict[str, Any]) -> dict[str, Any]:
    """Accept enum members or their string values."""
    fields = dict(fields)
    for key, enum_type in (("rule_type", RuleType), ("trigger_event", TriggerEvent),
                           ("target_status", CardStatus)):
        if fields.get(key) is not None:
            fields[key] = enum_type(fields[key])
    return fields


class RuleService:
    """Owner-checked CRUD for rules."""

    def __init__(
        self,
        rule_repo: RuleRepository,
        user_repo: UserRepository,
        evaluator: Optional[ConditionEvaluator] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.rule_repo = rule_repo
        self.user_repo = user_repo
        self.evaluator = evaluator or ConditionEvaluator()
        self.clock = clock

    def create_rule(
        self,
        user_id: int,
        name: str,
        condition_expression: str,
        target_status: CardStatus,
        **fields: Any,
    ) -> Rule:
        """
        Create a rule for a user.

        Args:
            user_id: Owner
            name: Rule name, unique per owner
            condition_expression: Condition such as "price > 100"
            target_status: Column the card moves to when the rule fires
            **fields: Any other editable Rule field

        Returns:
            The stored rule

        Raises:
            NotFoundError: If the user does not exist
            DuplicateRuleError: If the owner already has a rule with this name
            InvalidExpressionError: If the expression is empty or does not parse
        """
        self._require_user(user_id)
        self._check_fields(fields)
        fields = _coerce_enums(fields)

        if self.rule_repo.get_by_owner_and_name(user_id, name) is not None:
            raise DuplicateRuleError(f"Rule name already exists: {name}")

        self._validate_expression(condition_expression)

        rule = Rule(
            user_id=user_id,
            name=name,
            condition_expression=condition_expression,
            target_status=CardStatus(target_status),
            **fields,
        )
        rule.trigger_count = 0
        rule.last_executed_at = None
        rule = self.rule_repo.create(rule)

        logger.info(f"Created rule: user_id={user_id}, rule_id={rule.id}, name={rule.name}")
        return rule

    def update_rule(self, user_id: int, rule_id: int, **changes: Any) -> Rule:
        """
        Apply a partial update; None values are ignored.

        Raises:
            NotFoundError: If the rule does not exist
            PermissionDeniedError: If the rule belongs to someone else
            DuplicateRuleError: If renamed to a name the owner already uses
            InvalidExpressionError: If the new expression does not parse
        """
        rule = self._get_owned_rule(user_id, rule_id)
        self._check_fields(changes)
        changes = {key: value for key, value in changes.items() if value is not None}

        new_name = changes.get("name")
        if new_name is not None and new_name != rule.name:
            if self.rule_repo.get_by_owner_and_name(user_id, new_name) is not None:
                raise DuplicateRuleError(f"Rule name already exists: {new_name}")

        if "condition_expression" in changes:
            self._validate_expression(changes["condition_expression"])

        changes = _coerce_enums(changes)
        for key, value in changes.items():
            setattr(rule, key, value)
        self.rule_repo.update(rule)

        logger.info(f"Updated rule: rule_id={rule_id}, user_id={user_id}")
        return rule

    def delete_rule(self, user_id: int, rule_id: int) -> None:
        """Delete a rule owned by the user."""
        self._get_owned_rule(user_id, rule_id)
        self.rule_repo.delete(rule_id)
        logger.info(f"Deleted rule: rule_id={rule_id}, user_id={user_id}")

    def get_rule(self, user_id: int, rule_id: int) -> Rule:
        """Get a rule owned by the user."""
        return self._get_owned_rule(user_id, rule_id)

    def get_user_rules(self, user_id: int, page: int = 0, size: int = 20) -> Page:
        """Page of the user's rules, by priority."""
        self._require_user(user_id)
        return self.rule_repo.find_by_owner(user_id, page, size)

    def get_active_rules(self, user_id: int) -> list[Rule]:
        """The user's enabled rules."""
        self._require_user(user_id)
        return self.rule_repo.find_enabled_by_owner(user_id)

    def toggle_rule(self, user_id: int, rule_id: int, enabled: bool) -> Rule:
        """Enable or disable a rule."""
        rule = self._get_owned_rule(user_id, rule_id)
        rule.enabled = enabled
        self.rule_repo.update(rule)
        logger.info(
            f"{'Enabled' if enabled else 'Disabled'} rule: rule_id={rule_id}, user_id={user_id}"
        )
        return rule

    def get_default_templates(self) -> list[Rule]:
        """Built-in rule templates (copies, safe to modify)."""
        return [dataclasses.replace(t, tags=list(t.tags), parameters=dict(t.parameters))
                for t in DEFAULT_TEMPLATES]

    def create_rule_from_template(
        self,
        user_id: int,
        template_name: str,
        parameters: Optional[dict[str, Any]] = None,
    ) -> Rule:
        """
        Create a PREDEFINED rule from a built-in template.

        The rule name is the template name plus a millisecond timestamp.

        Raises:
            NotFoundError: If the user or the template does not exist
        """
        self._require_user(user_id)

        template = next(
            (t for t in self.get_default_templates() if t.name == template_name), None
        )
        if template is None:
            raise NotFoundError(f"Rule template not found: {template_name}")

        merged = dict(template.parameters)
        merged.update(parameters or {})

        rule = Rule(
            user_id=user_id,
            name=f"{template.name} {int(self.clock().timestamp() * 1000)}",
            description=template.description,
            rule_type=RuleType.PREDEFINED,
            condition_expression=template.condition_expression,
            trigger_event=template.trigger_event,
            target_status=template.target_status,
            enabled=True,
            cooldown_seconds=template.cooldown_seconds,
            priority=template.priority,
            send_notification=template.send_notification,
            notification_template=template.notification_template,
            parameters={k: v for k, v in merged.items() if v is not None},
        )
        rule = self.rule_repo.create(rule)

        logger.info(
            f"Created rule from template: user_id={user_id}, "
            f"template={template_name}, rule_id={rule.id}"
        )
        return rule

    def _require_user(self, user_id: int) -> None:
        if self.user_repo.get_by_id(user_id) is None:
            raise NotFoundError(f"User not found: {user_id}")

    def _get_owned_rule(self, user_id: int, rule_id: int) -> Rule:
        rule = self.rule_repo.get_by_id(rule_id)
        if rule is None:
            raise NotFoundError(f"Rule not found: {rule_id}")
        if rule.user_id != user_id:
            raise PermissionDeniedError(f"User {user_id} may not access rule {rule_id}")
        return rule

    def _check_fields(self, fields: dict[str, Any]) -> None:
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise TypeError(f"Unknown rule fields: {', '.join(sorted(unknown))}")

    def _validate_expression(self, expression: Optional[str]) -> None:
        if expression is None or not expression.strip():
            raise InvalidExpressionError("Condition expression must not be empty")
        error = self.evaluator.check_expression(expression)
        if error is not None:
            raise InvalidExpressionError(f"Invalid condition expression: {error}")
