"""
Data fetcher tests.
Tests for Yahoo Finance integration and price sync.
"""

from datetime import date, datetime
from unittest.mock import MagicMock, Mock, patch

import pandas as pd
import pytest

from kanban.data.fetcher import PriceSync, StockDataFetcher


@pytest.fixture
def fetcher(clock):
    """Create fetcher with a frozen clock."""
    return StockDataFetcher(clock=clock)


def _history_frame(closes, end="2024-03-01"):
    """Daily OHLCV frame, oldest first, as yfinance returns it."""
    dates = pd.date_range(end=end, periods=len(closes), freq="D")
    return pd.DataFrame(
        {
            "Open": closes,
            "High": [c + 1 for c in closes],
            "Low": [c - 1 for c in closes],
            "Close": closes,
            "Volume": [1_000_000] * len(closes),
        },
        index=dates,
    )


class TestStockDataFetcher:
    """Test Yahoo Finance data fetching."""

    def test_fetch_snapshot(self, fetcher: StockDataFetcher, sample_stock_info, clock):
        """Should fetch the current quote for a symbol."""
        mock_ticker = MagicMock()
        mock_ticker.info = sample_stock_info

        with patch("yfinance.Ticker", return_value=mock_ticker):
            snapshot = fetcher.get_snapshot("AAPL")

        assert snapshot.stock_code == "AAPL"
        assert snapshot.stock_name == "Apple Inc."
        assert snapshot.current_price == 175.50
        assert snapshot.previous_close == 173.25
        assert snapshot.volume == 50_000_000
        assert snapshot.change_percent == 1.3
        assert snapshot.updated_at == clock()

    def test_fetch_snapshot_invalid_symbol(self, fetcher: StockDataFetcher):
        """Should raise error for invalid symbol."""
        mock_ticker = MagicMock()
        mock_ticker.info = {}

        with patch("yfinance.Ticker", return_value=mock_ticker):
            with pytest.raises(ValueError, match="Invalid symbol"):
                fetcher.get_snapshot("INVALID123")

    def test_fetch_handles_market_closed(self, fetcher: StockDataFetcher):
        """Should fall back to previous close when the market is closed."""
        mock_ticker = MagicMock()
        mock_ticker.info = {"previousClose": 173.25, "longName": "Apple Inc."}

        with patch("yfinance.Ticker", return_value=mock_ticker):
            snapshot = fetcher.get_snapshot("AAPL")

        assert snapshot.current_price == 173.25
        assert snapshot.change_percent == 0.0
        assert snapshot.stock_name == "Apple Inc."

    def test_fetch_history_most_recent_first(self, fetcher: StockDataFetcher):
        """Should return daily bars newest first."""
        mock_ticker = MagicMock()
        mock_ticker.history.return_value = _history_frame([10.0, 11.0, 12.0])

        with patch("yfinance.Ticker", return_value=mock_ticker):
            points = fetcher.get_price_history("AAPL", days=30)

        mock_ticker.history.assert_called_once_with(period="30d")
        assert [p.close_price for p in points] == [12.0, 11.0, 10.0]
        assert points[0].trade_date == date(2024, 3, 1)
        assert points[0].high_price == 13.0
        assert points[0].volume == 1_000_000

    def test_fetch_history_drops_missing_closes(self, fetcher: StockDataFetcher):
        """Should skip rows without a close."""
        frame = _history_frame([10.0, 11.0, 12.0])
        frame.iloc[1, frame.columns.get_loc("Close")] = float("nan")
        mock_ticker = MagicMock()
        mock_ticker.history.return_value = frame

        with patch("yfinance.Ticker", return_value=mock_ticker):
            points = fetcher.get_price_history("AAPL")

        assert [p.close_price for p in points] == [12.0, 10.0]

    def test_fetch_history_empty(self, fetcher: StockDataFetcher):
        """Should raise when no history is available."""
        mock_ticker = MagicMock()
        mock_ticker.history.return_value = pd.DataFrame()

        with patch("yfinance.Ticker", return_value=mock_ticker):
            with pytest.raises(ValueError, match="No historical data"):
                fetcher.get_price_history("AAPL")


class TestPriceSync:
    """Test storing fetched data."""

    def test_sync_stores_quote_and_history(self, repos, sample_snapshot, make_prices):
        """Should store snapshot and bars for each symbol."""
        fetcher = Mock()
        fetcher.get_snapshot.return_value = sample_snapshot
        fetcher.get_price_history.return_value = make_prices([150.0, 149.0])

        result = PriceSync(fetcher, repos.prices).sync(["AAPL"], history_days=60)

        assert result.synced == ["AAPL"]
        fetcher.get_price_history.assert_called_once_with("AAPL", 60)
        assert repos.prices.get_latest_snapshot("AAPL").current_price == 150.0
        assert len(repos.prices.get_recent_prices("AAPL")) == 2

    def test_sync_skips_failures(self, repos, sample_snapshot, make_prices):
        """Should keep going when one symbol fails."""
        fetcher = Mock()

        def snapshot(code):
            if code == "BAD":
                raise ValueError("Invalid symbol or no data available: BAD")
            return sample_snapshot

        fetcher.get_snapshot.side_effect = snapshot
        fetcher.get_price_history.return_value = make_prices([150.0])

        result = PriceSync(fetcher, repos.prices).sync(["BAD", "AAPL"])

        assert result.failed == ["BAD"]
        assert result.synced == ["AAPL"]
        assert repos.prices.get_latest_snapshot("BAD") is None
