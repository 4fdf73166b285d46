from __future__ import annotations

import logging
from datetime import date, timedelta

import pandas as pd

from .period_returns import close_on
from ..models import Quote

logger = logging.getLogger(__name__)

# (field, lookback days)
PERIOD_FIELDS = (
    ("week_change_percent", 5),
    ("month_change_percent", 10),
    ("year_change_percent", 30),
)
HISTORY_LOOKBACK_DAYS = max(days for _, days in PERIOD_FIELDS)


def period_anchors(today: date) -> dict[str, date]:
    return {
        "week_change_percent": today - timedelta(days=today.weekday()),
        "month_change_percent": today.replace(day=1),
        "year_change_percent": date(today.year, 1, 1),
    }


def history_start(today: date) -> date:
    """First day of the close history needed to price every anchor."""
    return date(today.year, 1, 1) - timedelta(days=HISTORY_LOOKBACK_DAYS)


def base_close(series: pd.Series | None, anchor: date, lookback_days: int) -> float | None:
    """Close of the latest point on or before ``anchor``, at most ``lookback_days`` earlier."""
    if series is None:
        return None
    window = series[series.index >= pd.Timestamp(anchor - timedelta(days=lookback_days))]
    return close_on(window, anchor)


def apply_period_changes(quote: Quote, closes: pd.Series | None, today: date) -> Quote:
    anchors = period_anchors(today)
    price = float(quote.current_price)
    changes: dict[str, float | None] = {}
    for field, lookback_days in PERIOD_FIELDS:
        base = base_close(closes, anchors[field], lookback_days)
        if base is None or base == 0:
            changes[field] = None
            continue
        changes[field] = round((price - base) / base * 100, 2)
    return quote.model_copy(update=changes)
