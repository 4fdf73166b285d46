"""
Tencent finance quote and kline provider.

Quotes come from the qt.gtimg.cn text endpoint (GBK encoded, ``~`` separated
fields); daily klines come from the ifzq JSON endpoints.
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Optional

import httpx

from .base import MarketDataProvider
from ..errors import DataUnavailable
from ..markets import is_index_code, is_valid_quote_code, market_from_code
from ..models import KlinePoint, Quote

logger = logging.getLogger(__name__)

QUOTE_URL = "https://qt.gtimg.cn/q="
KLINE_BASE_URL = "https://web.ifzq.gtimg.cn/appstock/app"

_REQUEST_HEADERS = {
    "Referer": "http://finance.qq.com",
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
    ),
}

# 字段下标: (最少字段数, 成交额, 市盈率, 市值)
_MARKET_LAYOUT: dict[str, tuple[int, int, int, int]] = {
    "sh": (48, 37, 39, 45),
    "sz": (48, 37, 39, 45),
    "hk": (46, 11, 38, 44),
    "us": (46, 37, 39, 45),
}


def _to_float(text: str | None) -> float | None:
    if text is None:
        return None
    try:
        value = float(str(text).strip())
    except (TypeError, ValueError):
        return None
    if value != value:
        return None
    return value


def _parse_quote_time(market: str, raw: str) -> str:
    raw = raw.strip()
    if market in {"sh", "sz"} and len(raw) == 14 and raw.isdigit():
        return datetime.strptime(raw, "%Y%m%d%H%M%S").isoformat()
    for fmt in ("%Y/%m/%d %H:%M:%S", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(raw, fmt).isoformat()
        except ValueError:
            continue
    return datetime.now().replace(microsecond=0).isoformat()


def parse_quote_line(line: str) -> Optional[Quote]:
    """
    Parse one ``v_<code>="..."`` line of the quote endpoint.

    Args:
        line: Raw response line

    Returns:
        Parsed quote, or None when the line is blank, truncated, or from an
        unknown market
    """
    if not line or not line.strip() or "=" not in line:
        return None
    head, _, body = line.partition("=")
    code = head.strip().removeprefix("v_")
    fields = body.strip().rstrip(";").strip('"').split("~")
    market = code[:2]
    layout = _MARKET_LAYOUT.get(market)
    if layout is None:
        logger.warning(f"Unknown market for quote line: {code}")
        return None
    min_fields, turnover_idx, pe_idx, mcap_idx = layout
    if len(fields) < min_fields:
        logger.warning(f"Insufficient quote fields for {code}: {len(fields)}")
        return None

    name = fields[1].strip()
    current_price = _to_float(fields[3])
    change_amount = _to_float(fields[31])
    change_percent = _to_float(fields[32])
    if not name or current_price is None or change_amount is None or change_percent is None:
        logger.warning(f"Quote for {code} is missing essential fields")
        return None

    return Quote(
        code=code,
        name=name,
        current_price=current_price,
        change_amount=change_amount,
        change_percent=change_percent,
        prev_close_price=_to_float(fields[4]),
        open_price=_to_float(fields[5]),
        volume=_to_float(fields[6]),
        high_price=_to_float(fields[33]),
        low_price=_to_float(fields[34]),
        turnover=_to_float(fields[turnover_idx]),
        pe_ratio=_to_float(fields[pe_idx]) or None,
        market_cap=_to_float(fields[mcap_idx]) or None,
        timestamp=_parse_quote_time(market, fields[30]),
    )


def parse_kline_rows(rows: list[Any], start_date: str, end_date: str) -> list[KlinePoint]:
    points: list[KlinePoint] = []
    for row in rows:
        if not isinstance(row, list) or len(row) < 6:
            continue
        values = [_to_float(item) for item in row[1:6]]
        if any(value is None for value in values):
            continue
        date_text = str(row[0])[:10]
        if start_date and date_text < start_date:
            continue
        if end_date and date_text > end_date:
            continue
        open_, close, high, low, volume = values
        points.append(KlinePoint(date=date_text, open=open_, close=close, high=high, low=low, volume=volume))
    points.sort(key=lambda item: item.date)
    return points


class TencentMarketDataProvider(MarketDataProvider):
    """
    Market data provider backed by the public Tencent finance endpoints.

    Supports A-share (sh/sz), Hong Kong (hk) and US (us) codes.
    """

    def __init__(
        self,
        quote_timeout: float = 10.0,
        kline_timeout: float = 15.0,
        max_retries: int = 3,
        retry_backoff_sec: float = 2.0,
        kline_count: int = 640,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the Tencent provider.

        Args:
            quote_timeout: Timeout of the quote request in seconds
            kline_timeout: Timeout of each kline request in seconds
            max_retries: Kline retries after the first attempt
            retry_backoff_sec: Linear backoff unit; retry n waits n * backoff
            kline_count: Maximum number of points requested per kline call
            transport: Optional httpx transport (used by tests)
            sleep: Sleep function used between retries
        """
        self.quote_timeout = quote_timeout
        self.kline_timeout = kline_timeout
        self.max_retries = max_retries
        self.retry_backoff_sec = retry_backoff_sec
        self.kline_count = kline_count
        self._transport = transport
        self._sleep = sleep

    def _client(self, timeout: float) -> httpx.Client:
        return httpx.Client(
            timeout=httpx.Timeout(timeout, connect=5.0),
            headers=_REQUEST_HEADERS,
            transport=self._transport,
        )

    def get_quotes(self, codes: list[str]) -> dict[str, Quote]:
        valid_codes = [code for code in dict.fromkeys(codes) if is_valid_quote_code(code)]
        if not valid_codes:
            return {}
        url = f"{QUOTE_URL}{','.join(valid_codes)}"
        try:
            with self._client(self.quote_timeout) as client:
                response = client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch quotes for {valid_codes}: {e}")
            raise DataUnavailable(f"行情接口请求失败: {e}") from e

        text = response.content.decode("gbk", errors="replace")
        quotes: dict[str, Quote] = {}
        for line in text.splitlines():
            quote = parse_quote_line(line)
            if quote is not None:
                quotes[quote.code] = quote
        return quotes

    @staticmethod
    def _kline_request(code: str) -> tuple[str, str, str]:
        market = market_from_code(code)
        if market in {"sh", "sz"}:
            return "/fqkline/get", code, "qfq"
        if market == "hk":
            return "/hkfqkline/get", code, "qfq"
        if market == "us":
            request_code = code if is_index_code(code) or "." in code else f"{code}.OQ"
            return "/usfqkline/get", request_code, "qfq"
        raise DataUnavailable(f"不支持的市场代码: {code}")

    def get_kline(self, code: str, start_date: str, end_date: str) -> list[KlinePoint]:
        path, request_code, fq = self._kline_request(code)
        params = {"param": f"{request_code},day,{start_date},{end_date},{self.kline_count},{fq}"}
        url = f"{KLINE_BASE_URL}{path}"

        last_error = ""
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                self._sleep(self.retry_backoff_sec * attempt)
            try:
                with self._client(self.kline_timeout) as client:
                    response = client.get(url, params=params)
                    response.raise_for_status()
                    payload = response.json()
            except (httpx.HTTPError, ValueError) as e:
                last_error = str(e)
                logger.warning(f"Kline request for {code} failed (attempt {attempt + 1}): {e}")
                continue

            data = payload.get("data") if isinstance(payload, dict) else None
            container = data.get(request_code) if isinstance(data, dict) else None
            if not isinstance(container, dict):
                logger.error(f"No kline data container for {request_code}")
                return []
            rows = container.get(f"{fq}day")
            if not isinstance(rows, list):
                rows = container.get("day")
            if isinstance(rows, list):
                return parse_kline_rows(rows, start_date, end_date)
            last_error = "kline payload has no day rows"
            logger.warning(f"Kline payload for {code} has no day rows (attempt {attempt + 1})")

        logger.error(f"Kline fetch for {code} failed after {self.max_retries} retries: {last_error}")
        raise DataUnavailable(f"K线数据获取失败: {code}")
