"""
Rule condition tests.
Tests for the expression language, evaluation context and condition evaluator.
"""

import json
from datetime import datetime

import pytest

from kanban.database.models import (
    INSUFFICIENT_DATA,
    Card,
    IndicatorSnapshot,
)
from kanban.rules.context import ALL_VARIABLES, build_evaluation_context
from kanban.rules.evaluator import ConditionEvaluator, EvaluationResult
from kanban.rules.expression import (
    MAX_NESTING_DEPTH,
    ExpressionEvaluationError,
    ExpressionSyntaxError,
    parse_expression,
)


class TestExpressionParsing:
    """Test the expression grammar."""

    @pytest.mark.parametrize(
        "text",
        [
            "price > 100",
            "price >= 100 && rsi < 30",
            "(ma5 > ma20) || !macd_positive",
            "volume > avgVolume * 2",
            "stockCode == 'AAPL' and not (changePercent < -5)",
            "price % 2 == 0",
        ],
    )
    def test_valid_expressions(self, text):
        """Should parse supported syntax."""
        assert parse_expression(text).source == text

    @pytest.mark.parametrize(
        "text",
        ["price >>> 5", "", "   ", "price >", "(price > 1", "price > 1 > 0", "price.__class__", "f(1)"],
    )
    def test_invalid_expressions(self, text):
        """Should reject malformed input with a syntax error."""
        with pytest.raises(ExpressionSyntaxError):
            parse_expression(text)

    def test_syntax_error_has_position(self):
        """Should report where parsing failed."""
        with pytest.raises(ExpressionSyntaxError) as exc_info:
            parse_expression("price >>> 5")
        assert exc_info.value.position == 7

    @pytest.mark.parametrize(
        "text",
        [
            "(" * 1500 + "price > 1" + ")" * 1500,
            "!" * 3000 + "(price > 1)",
            "-" * 3000 + "price > 1",
        ],
    )
    def test_deep_nesting_rejected(self, text):
        """Should raise a syntax error instead of exhausting the stack."""
        with pytest.raises(ExpressionSyntaxError, match="nested deeper than"):
            parse_expression(text)

    def test_nesting_within_limit(self):
        """Should accept moderately nested input."""
        depth = MAX_NESTING_DEPTH - 1
        expr = parse_expression("(" * depth + "price > 1" + ")" * depth)
        assert expr.evaluate({"price": 2}) is True

    def test_variable_names(self):
        """Should list referenced variables."""
        expr = parse_expression("price > ma20 && (rsi < 30 || volumeRatio > 2)")
        assert expr.variable_names() == {"price", "ma20", "rsi", "volumeRatio"}


class TestExpressionEvaluation:
    """Test evaluation against a variable mapping."""

    def test_arithmetic_and_precedence(self):
        """Should apply multiplication before addition."""
        assert parse_expression("1 + 2 * 3 == 7").evaluate({}) is True

    def test_logical_short_circuit(self):
        """Should not evaluate the right side when the left decides."""
        expr = parse_expression("price > 100 || rsi < 30")
        assert expr.evaluate({"price": 150, "rsi": None}) is True

    def test_string_comparison(self):
        """Should compare strings for equality."""
        expr = parse_expression("cardStatus == 'WATCH'")
        assert expr.evaluate({"cardStatus": "WATCH"}) is True

    def test_unknown_variable(self):
        """Should fail on names outside the mapping."""
        with pytest.raises(ExpressionEvaluationError, match="Unknown variable 'foo'"):
            parse_expression("foo > 1").evaluate({"price": 1})

    def test_unset_variable(self):
        """Should fail rather than treat a missing value as zero."""
        with pytest.raises(ExpressionEvaluationError, match="'rsi' has no value"):
            parse_expression("rsi < 30").evaluate({"rsi": None})

    def test_non_boolean_result(self):
        """Should require a boolean result."""
        with pytest.raises(ExpressionEvaluationError):
            parse_expression("price * 2").evaluate({"price": 3})

    def test_division_by_zero(self):
        """Should fail cleanly on division by zero."""
        with pytest.raises(ExpressionEvaluationError, match="Division by zero"):
            parse_expression("price / volume > 1").evaluate({"price": 1, "volume": 0})

    def test_type_mismatch(self):
        """Should not order a string against a number."""
        with pytest.raises(ExpressionEvaluationError):
            parse_expression("stockCode > 5").evaluate({"stockCode": "AAPL"})

    def test_very_long_chain(self):
        """Should fail cleanly when the tree is too deep to walk."""
        expr = parse_expression("price + " * 5000 + "price > 1")
        with pytest.raises(ExpressionEvaluationError, match="too deeply nested"):
            expr.evaluate({"price": 1})


class TestEvaluationContext:
    """Test variable mapping built from card, quote and indicators."""

    @pytest.fixture
    def card_obj(self):
        return Card(user_id=1, stock_code="AAPL", stock_name="Apple Inc.", id=7)

    @pytest.fixture
    def indicator(self):
        return IndicatorSnapshot(
            stock_code="AAPL",
            calculation_date=datetime(2024, 3, 1),
            ma5=152.0,
            ma20=148.5,
            rsi14=28.4,
            kd_k=40.0,
            kd_d=45.0,
            macd_line=-0.5,
            macd_signal=-0.1,
            macd_histogram=-0.4,
            volume_ratio=1.8,
        )

    def test_all_names_present(self, card_obj):
        """Should expose every variable, unset ones as None."""
        variables = build_evaluation_context(card_obj, None, None)
        assert set(variables) == set(ALL_VARIABLES)
        assert variables["stockCode"] == "AAPL"
        assert variables["cardStatus"] == "WATCH"
        assert variables["price"] is None
        assert variables["rsi"] is None

    def test_price_fields(self, card_obj, sample_snapshot):
        """Should derive change and approximate average volume."""
        variables = build_evaluation_context(card_obj, sample_snapshot, None)
        assert variables["price"] == 150.0
        assert variables["currentPrice"] == 150.0
        assert variables["change"] == 3.0
        assert variables["avgVolume"] == sample_snapshot.volume

    def test_average_volume_from_indicators(self, card_obj, sample_snapshot, indicator):
        """Should prefer the 20-day volume average when indicators carry it."""
        indicator.volume_ma20 = 1_000_000
        variables = build_evaluation_context(card_obj, sample_snapshot, indicator)
        assert variables["avgVolume"] == 1_000_000
        assert variables["volume"] == sample_snapshot.volume

    def test_average_volume_falls_back_to_volume(self, card_obj, sample_snapshot, indicator):
        """Should use today's volume when the indicators have no volume average."""
        variables = build_evaluation_context(card_obj, sample_snapshot, indicator)
        assert variables["avgVolume"] == sample_snapshot.volume

    def test_change_requires_previous_close(self, card_obj, sample_snapshot):
        """Should leave change unset without a previous close."""
        sample_snapshot.previous_close = None
        variables = build_evaluation_context(card_obj, sample_snapshot, None)
        assert variables["change"] is None

    def test_indicator_fields_and_aliases(self, card_obj, indicator):
        """Should map indicators under every alias."""
        variables = build_evaluation_context(card_obj, None, indicator)
        assert variables["rsi"] == variables["rsi14"] == 28.4
        assert variables["macd"] == variables["macdLine"] == -0.5
        assert variables["kdK"] == variables["kValue"] == 40.0
        assert variables["kdD"] == variables["dValue"] == 45.0
        assert variables["ma5_ma20_diff"] == 3.5
        assert variables["macd_positive"] is False
        assert variables["macd_signal_positive"] is False
        assert variables["ma10"] is None

    def test_insufficient_indicators_ignored(self, card_obj):
        """Should not expose values from an insufficient snapshot."""
        snapshot = IndicatorSnapshot(
            stock_code="AAPL",
            calculation_date=datetime(2024, 3, 1),
            calculation_source=INSUFFICIENT_DATA,
        )
        variables = build_evaluation_context(card_obj, None, snapshot)
        assert variables["rsi"] is None


class TestConditionEvaluator:
    """Test evaluator results."""

    @pytest.fixture
    def evaluator(self):
        return ConditionEvaluator()

    def test_matched(self, evaluator):
        """Should report a clean match."""
        result = evaluator.evaluate("price > 100", {"price": 150})
        assert result.success is True
        assert result.matched is True
        assert result.error_message is None

    def test_not_matched(self, evaluator):
        """Should report a clean non-match."""
        result = evaluator.evaluate("price > 100", {"price": 50})
        assert result.success is True
        assert result.matched is False

    def test_malformed_expression(self, evaluator):
        """Should return success=false with a diagnostic for bad syntax."""
        result = evaluator.evaluate("price >>> 5", {"price": 150})
        assert result.success is False
        assert result.matched is False
        assert result.error_message

    def test_deeply_nested_expression(self, evaluator):
        """Should report failure rather than raise for runaway nesting."""
        text = "(" * 1500 + "price > 1" + ")" * 1500

        assert evaluator.validate_expression(text) is False
        assert "nested deeper than" in evaluator.check_expression(text)
        result = evaluator.evaluate(text, {"price": 150})
        assert result.success is False
        assert result.matched is False

    def test_missing_indicator_is_false_safe(self, evaluator):
        """Should not match when a referenced indicator is unset."""
        card_obj = Card(user_id=1, stock_code="AAPL", id=1)
        result = evaluator.evaluate_card("rsi < 30", card_obj, None, None)
        assert result.success is False
        assert result.matched is False
        assert "rsi" in result.error_message

    def test_result_json_round_trip(self, evaluator):
        """Should serialize the result with its variables."""
        result = evaluator.evaluate("price > 100", {"price": 150, "stockCode": "AAPL"})
        restored = EvaluationResult.from_json(result.to_json())
        assert restored == result
        assert json.loads(result.to_json())["variables"]["price"] == 150

    def test_validate_expression(self, evaluator):
        """Should check syntax without needing variables."""
        assert evaluator.validate_expression("unknownName > 1") is True
        assert evaluator.validate_expression("price >>> 5") is False
        assert evaluator.check_expression("price >") is not None
        assert evaluator.check_expression("price > 1") is None
