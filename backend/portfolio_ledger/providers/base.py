"""
Base interfaces for market data and FX rate providers.
"""

from abc import ABC, abstractmethod
from typing import Optional

from ..models import KlinePoint, Quote


class MarketDataProvider(ABC):
    """
    Abstract base class for market data providers.

    Implementations may hit a remote quote service or return canned data.
    Failures are reported by raising DataUnavailable; callers decide how to
    degrade.
    """

    @abstractmethod
    def get_quotes(self, codes: list[str]) -> dict[str, Quote]:
        """
        Get real-time quotes for a list of asset codes.

        Args:
            codes: Asset codes with market prefix (e.g., ["sh600519", "hk00700"])

        Returns:
            Mapping of code to quote. Codes without data are simply absent.
        """
        pass

    @abstractmethod
    def get_kline(self, code: str, start_date: str, end_date: str) -> list[KlinePoint]:
        """
        Get daily kline (candlestick) data for an asset within a date range.

        Args:
            code: Asset code with market prefix
            start_date: Start date in YYYY-MM-DD format
            end_date: End date in YYYY-MM-DD format

        Returns:
            Daily points sorted by date ascending
        """
        pass


class FxRateProvider(ABC):
    """
    Abstract base class for exchange rate providers.
    """

    @abstractmethod
    def fetch_rate(self, base: str, quote: str) -> Optional[float]:
        """
        Fetch the latest exchange rate for a currency pair.

        Args:
            base: Base currency (e.g., "USD")
            quote: Quote currency (e.g., "CNY")

        Returns:
            Units of ``quote`` per one ``base``, or None if unavailable
        """
        pass
