from __future__ import annotations

import re

from .models import Market

MARKET_CURRENCY: dict[str, str] = {
    "sh": "CNY",
    "sz": "CNY",
    "hk": "HKD",
    "us": "USD",
}

_QUOTE_CODE_PATTERN = re.compile(r"^(?:(?:sh|sz|hk)\d+|us[A-Z.]+)$")
_INDEX_CODES = {"hkHSI", "usDJI", "usIXIC", "usINX"}


def normalize_asset_code(raw: str | None) -> str:
    text = str(raw or "").strip()
    if len(text) < 2:
        return text
    return text[:2].lower() + text[2:]


def market_from_code(code: str | None) -> Market | None:
    text = normalize_asset_code(code)
    if len(text) <= 2:
        return None
    prefix = text[:2]
    if prefix in MARKET_CURRENCY:
        return prefix  # type: ignore[return-value]
    return None


def currency_for_code(code: str | None) -> str | None:
    market = market_from_code(code)
    if market is None:
        return None
    return MARKET_CURRENCY[market]


def is_index_code(code: str) -> bool:
    return code in _INDEX_CODES


def is_valid_quote_code(code: str) -> bool:
    return bool(_QUOTE_CODE_PATTERN.match(code)) or is_index_code(code)
