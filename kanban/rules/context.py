"""
Evaluation context: the variables a rule condition can reference.
"""

from typing import Any, Optional

from kanban.database.models import Card, IndicatorSnapshot, PriceSnapshot

CARD_VARIABLES = ("stockCode", "stockName", "cardStatus")

PRICE_VARIABLES = (
    "price",
    "currentPrice",
    "openPrice",
    "highPrice",
    "lowPrice",
    "previousClose",
    "volume",
    "changePercent",
    "change",
    "avgVolume",
)

INDICATOR_VARIABLES = (
    "ma5",
    "ma10",
    "ma20",
    "ma60",
    "rsi",
    "rsi14",
    "macd",
    "macdLine",
    "macdSignal",
    "macdHistogram",
    "kdK",
    "kValue",
    "kdD",
    "dValue",
    "volumeRatio",
    "ma5_ma20_diff",
    "macd_positive",
    "macd_signal_positive",
)

ALL_VARIABLES = CARD_VARIABLES + PRICE_VARIABLES + INDICATOR_VARIABLES


def build_evaluation_context(
    card: Optional[Card],
    snapshot: Optional[PriceSnapshot],
    indicator: Optional[IndicatorSnapshot],
) -> dict[str, Any]:
    """
    Flatten card, latest quote and latest indicators into named variables.

    Every name in ALL_VARIABLES is present; values whose source is missing
    are None rather than zero.
    """
    variables: dict[str, Any] = dict.fromkeys(ALL_VARIABLES)

    if card is not None:
        variables["stockCode"] = card.stock_code
        variables["stockName"] = card.stock_name
        variables["cardStatus"] = card.status.value

    if snapshot is not None:
        variables.update(_price_variables(snapshot))

    if indicator is not None and not indicator.is_insufficient:
        variables.update(_indicator_variables(indicator))

    return variables


def _price_variables(snapshot: PriceSnapshot) -> dict[str, Any]:
    values = {
        "price": snapshot.current_price,
        "currentPrice": snapshot.current_price,
        "openPrice": snapshot.open_price,
        "highPrice": snapshot.high_price,
        "lowPrice": snapshot.low_price,
        "previousClose": snapshot.previous_close,
        "volume": snapshot.volume,
        "changePercent": snapshot.change_percent,
    }
    if snapshot.current_price is not None and snapshot.previous_close is not None:
        values["change"] = round(snapshot.current_price - snapshot.previous_close, 4)
    # Today's volume stands in for the average until indicators supply volume_ma20.
    if snapshot.volume is not None:
        values["avgVolume"] = snapshot.volume
    return values


def _indicator_variables(indicator: IndicatorSnapshot) -> dict[str, Any]:
    values = {
        "ma5": indicator.ma5,
        "ma10": indicator.ma10,
        "ma20": indicator.ma20,
        "ma60": indicator.ma60,
        "rsi": indicator.rsi14,
        "rsi14": indicator.rsi14,
        "macd": indicator.macd_line,
        "macdLine": indicator.macd_line,
        "macdSignal": indicator.macd_signal,
        "macdHistogram": indicator.macd_histogram,
        "kdK": indicator.kd_k,
        "kValue": indicator.kd_k,
        "kdD": indicator.kd_d,
        "dValue": indicator.kd_d,
        "volumeRatio": indicator.volume_ratio,
    }
    if indicator.ma5 is not None and indicator.ma20 is not None:
        values["ma5_ma20_diff"] = round(indicator.ma5 - indicator.ma20, 4)
    if indicator.macd_line is not None:
        values["macd_positive"] = indicator.macd_line > 0
    if indicator.macd_signal is not None:
        values["macd_signal_positive"] = indicator.macd_signal > 0
    if indicator.volume_ma20 is not None:
        values["avgVolume"] = indicator.volume_ma20
    return values
