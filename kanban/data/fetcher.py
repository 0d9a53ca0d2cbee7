"""
Yahoo Finance data fetcher.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import pandas as pd
import yfinance as yf

from kanban.database.models import PricePoint, PriceSnapshot
from kanban.database.repository import PriceRepository

logger = logging.getLogger(__name__)


class StockDataFetcher:
    """Fetches quotes and daily history from Yahoo Finance."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock

    def get_snapshot(self, stock_code: str) -> PriceSnapshot:
        """
        Fetch the latest quote.

        Args:
            stock_code: Stock symbol (e.g., "AAPL")

        Returns:
            PriceSnapshot with current price info

        Raises:
            ValueError: If symbol is invalid or data unavailable
        """
        info = yf.Ticker(stock_code).info

        if not info or "regularMarketPrice" not in info and "previousClose" not in info:
            raise ValueError(f"Invalid symbol or no data available: {stock_code}")

        # Use regularMarketPrice if available, otherwise fall back to previousClose
        current_price = info.get("regularMarketPrice")
        if current_price is None:
            current_price = info.get("previousClose")

        if current_price is None:
            raise ValueError(f"Invalid symbol or no data available: {stock_code}")

        previous_close = info.get("previousClose", current_price)
        change_percent = None
        if previous_close:
            change_percent = round((current_price - previous_close) / previous_close * 100, 2)

        return PriceSnapshot(
            stock_code=stock_code,
            stock_name=info.get("shortName") or info.get("longName") or "",
            current_price=current_price,
            open_price=info.get("open", current_price),
            high_price=info.get("dayHigh", current_price),
            low_price=info.get("dayLow", current_price),
            previous_close=previous_close,
            volume=info.get("volume", 0),
            change_percent=change_percent,
            updated_at=self.clock(),
        )

    def get_price_history(self, stock_code: str, days: int = 150) -> list[PricePoint]:
        """
        Fetch daily bars, most recent first.

        Args:
            stock_code: Stock symbol
            days: Calendar days of history to request

        Returns:
            List of PricePoint ordered newest to oldest
        """
        hist = yf.Ticker(stock_code).history(period=f"{days}d")

        if hist.empty:
            raise ValueError(f"No historical data available: {stock_code}")

        hist = hist.dropna(subset=["Close"])
        points = [
            PricePoint(
                stock_code=stock_code,
                trade_date=pd.Timestamp(index).date(),
                open_price=float(row["Open"]),
                high_price=float(row["High"]),
                low_price=float(row["Low"]),
                close_price=float(row["Close"]),
                volume=int(row["Volume"]),
            )
            for index, row in hist.iterrows()
        ]
        points.reverse()
        return points


@dataclass
class SyncResult:
    """Result of a price sync run."""

    synced: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class PriceSync:
    """Refreshes the price store from the fetcher."""

    def __init__(self, fetcher: StockDataFetcher, price_repo: PriceRepository):
        self.fetcher = fetcher
        self.price_repo = price_repo

    def sync(self, stock_codes: list[str], history_days: int = 150) -> SyncResult:
        """
        Fetch and store quote and history for each stock code.

        Invalid or unavailable symbols are logged and skipped.
        """
        result = SyncResult()

        for code in stock_codes:
            try:
                snapshot = self.fetcher.get_snapshot(code)
                history = self.fetcher.get_price_history(code, history_days)
            except Exception as e:
                logger.warning(f"Skipping {code}: {e}")
                result.failed.append(code)
                continue

            self.price_repo.upsert_snapshot(snapshot)
            self.price_repo.save_history(history)
            result.synced.append(code)
            logger.debug(f"Synced {code}: {len(history)} bars, price {snapshot.current_price}")

        logger.info(f"Price sync complete: {len(result.synced)} synced, {len(result.failed)} failed")
        return result
