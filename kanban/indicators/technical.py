"""
Technical indicator formulas.

Every function takes price data ordered most-recent-first, the way the price
store returns it, and returns None when the window is too short.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence, Union

import pandas as pd

Values = Union[pd.Series, Sequence[float]]

RSI_PERIOD = 14
KD_PERIOD = 9
MACD_FAST = 12
MACD_SLOW = 26

# Single-step KD smoothing against a neutral 50 baseline, and a MACD signal
# blended against zero, instead of the recursive textbook versions. Stored
# values and existing rules depend on these numbers.
KD_WEIGHT = 0.33
KD_BASELINE = 50.0
MACD_SIGNAL_WEIGHT = 0.2


def round_half_up(value: float, places: int) -> float:
    """Round to `places` decimals with halves away from zero, not to even."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP))


def _series(values: Values) -> pd.Series:
    if isinstance(values, pd.Series):
        return values.reset_index(drop=True).astype(float)
    return pd.Series(list(values), dtype=float)


def calculate_sma(closes: Values, period: int) -> Optional[float]:
    """Arithmetic mean of the `period` most recent closes."""
    series = _series(closes)
    if len(series) < period:
        return None
    return round_half_up(float(series.iloc[:period].mean()), 2)


def calculate_rsi(closes: Values, period: int = RSI_PERIOD) -> Optional[float]:
    """
    RSI over the `period` most recent day-over-day changes.

    Gains and losses are averaged over `period`; with no losses RSI is 100.
    """
    series = _series(closes)
    if len(series) < period + 1:
        return None

    # close[i-1] - close[i]: today's change relative to the previous day
    changes = series.iloc[:period].to_numpy() - series.iloc[1 : period + 1].to_numpy()
    avg_gain = round_half_up(float(changes[changes > 0].sum()) / period, 4)
    avg_loss = round_half_up(float(-changes[changes < 0].sum()) / period, 4)

    if avg_loss == 0:
        return 100.0

    rs = round_half_up(avg_gain / avg_loss, 4)
    return round_half_up(100 - round_half_up(100 / (1 + rs), 2), 2)


def calculate_kd(
    closes: Values, highs: Values, lows: Values, period: int = KD_PERIOD
) -> tuple[Optional[float], Optional[float]]:
    """
    Stochastic %K and %D over a `period`-day window.

    RSV = (close - lowest low) / (highest high - lowest low) * 100, or 50 for a
    flat window.
    """
    close_series = _series(closes)
    high_series = _series(highs)
    low_series = _series(lows)
    if min(len(close_series), len(high_series), len(low_series)) < period:
        return None, None

    highest = float(high_series.iloc[:period].max())
    lowest = float(low_series.iloc[:period].min())
    current_close = float(close_series.iloc[0])

    if highest == lowest:
        rsv = 50.0
    else:
        rsv = round_half_up((current_close - lowest) / (highest - lowest), 4) * 100

    k_value = rsv * KD_WEIGHT + KD_BASELINE * (1 - KD_WEIGHT)
    d_value = k_value * KD_WEIGHT + KD_BASELINE * (1 - KD_WEIGHT)
    return round_half_up(k_value, 2), round_half_up(d_value, 2)


def calculate_ema(closes: Values, period: int) -> Optional[float]:
    """
    Exponential moving average of close, as of the most recent close.

    Seeded with the simple average of the oldest `period` closes in the
    window, then smoothed forward with multiplier 2 / (period + 1).
    """
    series = _series(closes)
    if len(series) < period:
        return None

    chronological = series.iloc[::-1].to_numpy()
    multiplier = 2.0 / (period + 1)
    ema = float(chronological[:period].mean())
    for price in chronological[period:]:
        ema = float(price) * multiplier + ema * (1 - multiplier)
    return round_half_up(ema, 4)


def calculate_macd(
    closes: Values,
) -> tuple[Optional[float], Optional[float], Optional[float]]:
    """MACD line, signal and histogram; all None below 26 closes."""
    series = _series(closes)
    if len(series) < MACD_SLOW:
        return None, None, None

    ema_fast = calculate_ema(series, MACD_FAST)
    ema_slow = calculate_ema(series, MACD_SLOW)
    if ema_fast is None or ema_slow is None:
        return None, None, None

    line = round_half_up(ema_fast - ema_slow, 4)
    signal = round_half_up(line * MACD_SIGNAL_WEIGHT, 4)
    histogram = round_half_up(line - signal, 4)
    return line, signal, histogram


def calculate_volume_indicators(
    volumes: Values,
) -> tuple[Optional[int], Optional[int], Optional[float]]:
    """5-day and 20-day average volume and today's volume ratio."""
    series = _series(volumes)
    volume_ma5 = None
    volume_ma20 = None
    volume_ratio = None

    if len(series) >= 5:
        volume_ma5 = int(series.iloc[:5].sum()) // 5

    if len(series) >= 20:
        volume_ma20 = int(series.iloc[:20].sum()) // 20
        if volume_ma20 > 0:
            volume_ratio = round_half_up(float(series.iloc[0]) / volume_ma20, 2)

    return volume_ma5, volume_ma20, volume_ratio
