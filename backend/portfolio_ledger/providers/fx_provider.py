"""
Exchange rate provider backed by the Frankfurter API.
"""

import logging
from typing import Optional

import httpx

from .base import FxRateProvider

logger = logging.getLogger(__name__)

FRANKFURTER_URL = "https://api.frankfurter.app/latest"


class FrankfurterFxProvider(FxRateProvider):
    """
    Fetches ECB reference rates from api.frankfurter.app.
    """

    def __init__(self, timeout: float = 10.0, transport: httpx.BaseTransport | None = None):
        """
        Initialize the Frankfurter provider.

        Args:
            timeout: HTTP request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.timeout = timeout
        self._transport = transport

    def fetch_rate(self, base: str, quote: str) -> Optional[float]:
        params = {"from": base.upper(), "to": quote.upper()}
        try:
            with httpx.Client(timeout=httpx.Timeout(self.timeout, connect=5.0), transport=self._transport) as client:
                response = client.get(FRANKFURTER_URL, params=params)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch {base}-{quote} rate: {e}")
            return None

        rates = payload.get("rates") if isinstance(payload, dict) else None
        raw = rates.get(quote.upper()) if isinstance(rates, dict) else None
        try:
            rate = float(raw)
        except (TypeError, ValueError):
            logger.error(f"Invalid {base}-{quote} rate payload: {payload}")
            return None
        if rate <= 0:
            logger.error(f"Non-positive {base}-{quote} rate: {rate}")
            return None
        return rate
