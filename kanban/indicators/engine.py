"""
Indicator engine: turns price history into indicator snapshots.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Callable, Optional

import pandas as pd

from kanban.database.models import (
    INSUFFICIENT_DATA,
    IndicatorSnapshot,
    PricePoint,
)
from kanban.database.repository import IndicatorRepository, PriceRepository
from . import technical

logger = logging.getLogger(__name__)

MIN_DATA_POINTS = 20
MA_PERIODS = (5, 10, 20, 60)


class IndicatorEngine:
    """Computes and stores technical indicators per stock code."""

    def __init__(
        self,
        price_repo: PriceRepository,
        indicator_repo: IndicatorRepository,
        history_limit: int = 100,
        max_workers: int = 4,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize indicator engine.

        Args:
            price_repo: Source of daily price history
            indicator_repo: Where computed snapshots are stored
            history_limit: Number of most recent bars loaded per stock
            max_workers: Threads used by calculate_batch
            clock: Time source for calculation dates
        """
        self.price_repo = price_repo
        self.indicator_repo = indicator_repo
        self.history_limit = history_limit
        self.max_workers = max_workers
        self.clock = clock

    def compute(self, stock_code: str, prices: list[PricePoint]) -> IndicatorSnapshot:
        """
        Compute indicators from bars ordered most-recent-first.

        Returns an INSUFFICIENT_DATA snapshot with no indicator values when
        fewer than 20 bars are available.
        """
        if len(prices) < MIN_DATA_POINTS:
            return self._insufficient(stock_code)

        frame = pd.DataFrame(
            {
                "close": [p.close_price for p in prices],
                "high": [p.high_price for p in prices],
                "low": [p.low_price for p in prices],
                "volume": [p.volume for p in prices],
            }
        )

        snapshot = IndicatorSnapshot(
            stock_code=stock_code,
            calculation_date=self.clock(),
            data_points_count=len(prices),
        )

        for period in MA_PERIODS:
            setattr(snapshot, f"ma{period}", technical.calculate_sma(frame["close"], period))

        snapshot.rsi14 = technical.calculate_rsi(frame["close"])
        snapshot.kd_k, snapshot.kd_d = technical.calculate_kd(
            frame["close"], frame["high"], frame["low"]
        )
        (
            snapshot.macd_line,
            snapshot.macd_signal,
            snapshot.macd_histogram,
        ) = technical.calculate_macd(frame["close"])
        (
            snapshot.volume_ma5,
            snapshot.volume_ma20,
            snapshot.volume_ratio,
        ) = technical.calculate_volume_indicators(frame["volume"])

        return snapshot

    def calculate_indicators(self, stock_code: str) -> IndicatorSnapshot:
        """Load recent history, compute and persist a snapshot for one stock."""
        logger.debug(f"Calculating technical indicators for {stock_code}")

        prices = self.price_repo.get_recent_prices(stock_code, self.history_limit)
        snapshot = self.compute(stock_code, prices)

        if snapshot.is_insufficient:
            logger.warning(
                f"Insufficient historical data for {stock_code}: {len(prices)} days"
            )
            return snapshot

        saved = self.indicator_repo.save(snapshot)
        logger.debug(f"Stored indicators for {stock_code} ({len(prices)} points)")
        return saved

    def calculate_batch(self, stock_codes: list[str]) -> dict[str, IndicatorSnapshot]:
        """
        Compute indicators for many stocks in parallel.

        A failure for one stock is logged and leaves it out of the result.
        """
        if not stock_codes:
            return {}

        logger.info(f"Starting indicator calculation for {len(stock_codes)} stocks")
        results: dict[str, IndicatorSnapshot] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {
                pool.submit(self.calculate_indicators, code): code
                for code in stock_codes
            }
            for future in as_completed(futures):
                code = futures[future]
                try:
                    results[code] = future.result()
                except Exception as e:
                    logger.error(f"Error calculating indicators for {code}: {e}")

        logger.info(f"Completed indicator calculation for {len(results)} stocks")
        return results

    def get_latest(self, stock_code: str) -> Optional[IndicatorSnapshot]:
        """Latest stored snapshot for a stock."""
        return self.indicator_repo.find_latest(stock_code)

    def _insufficient(self, stock_code: str) -> IndicatorSnapshot:
        return IndicatorSnapshot(
            stock_code=stock_code,
            calculation_date=self.clock(),
            data_points_count=0,
            calculation_source=INSUFFICIENT_DATA,
        )
