"""
Condition evaluator: runs a rule expression against an evaluation context.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from kanban.database.models import Card, IndicatorSnapshot, PriceSnapshot
from .context import build_evaluation_context
from .expression import ExpressionError, ExpressionSyntaxError, parse_expression

logger = logging.getLogger(__name__)


@dataclass
class EvaluationResult:
    """Outcome of evaluating one condition."""

    success: bool
    matched: bool
    expression: str
    variables: dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "matched": self.matched,
            "expression": self.expression,
            "variables": self.variables,
            "errorMessage": self.error_message,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_json(cls, raw: str) -> "EvaluationResult":
        data = json.loads(raw)
        return cls(
            success=data["success"],
            matched=data["matched"],
            expression=data["expression"],
            variables=data.get("variables") or {},
            error_message=data.get("errorMessage"),
        )


class ConditionEvaluator:
    """Evaluates rule conditions; never raises for a bad expression."""

    def evaluate(self, expression: str, variables: Mapping[str, Any]) -> EvaluationResult:
        """
        Evaluate a condition against a variable mapping.

        Args:
            expression: Condition such as "price > 100 && rsi < 30"
            variables: Named values from build_evaluation_context

        Returns:
            EvaluationResult; success is False on parse or evaluation errors
        """
        snapshot = dict(variables)
        try:
            matched = parse_expression(expression).evaluate(snapshot)
        except ExpressionError as e:
            logger.warning(f"Rule evaluation failed: expression={expression!r}, error={e}")
            return EvaluationResult(
                success=False,
                matched=False,
                expression=expression,
                variables=snapshot,
                error_message=str(e),
            )

        logger.debug(f"Rule evaluation: expression={expression!r}, result={matched}")
        return EvaluationResult(
            success=True,
            matched=matched,
            expression=expression,
            variables=snapshot,
        )

    def evaluate_card(
        self,
        expression: str,
        card: Card,
        snapshot: Optional[PriceSnapshot],
        indicator: Optional[IndicatorSnapshot],
    ) -> EvaluationResult:
        """Build the context for a card and evaluate the condition on it."""
        variables = build_evaluation_context(card, snapshot, indicator)
        return self.evaluate(expression, variables)

    def check_expression(self, expression: str) -> Optional[str]:
        """Parse without evaluating; return the syntax error message, if any."""
        try:
            parse_expression(expression)
        except ExpressionSyntaxError as e:
            return str(e)
        return None

    def validate_expression(self, expression: str) -> bool:
        """Whether an expression is syntactically valid."""
        error = self.check_expression(expression)
        if error is not None:
            logger.warning(f"Expression validation failed: {expression!r}: {error}")
            return False
        return True
