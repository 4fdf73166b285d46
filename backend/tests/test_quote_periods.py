from __future__ import annotations

import sys
from datetime import date
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portfolio_ledger.core.period_returns import close_series
from portfolio_ledger.core.quote_periods import apply_period_changes, history_start, period_anchors
from portfolio_ledger.models import KlinePoint, Quote


def _closes(prices: dict[str, float]):
    return close_series([KlinePoint(date=day, open=p, close=p, high=p, low=p) for day, p in prices.items()])


def _quote(price: float = 120.0) -> Quote:
    return Quote(code="sh600519", name="贵州茅台", current_price=price)


def test_anchors_and_history_window() -> None:
    anchors = period_anchors(date(2024, 3, 20))
    assert anchors == {
        "week_change_percent": date(2024, 3, 18),
        "month_change_percent": date(2024, 3, 1),
        "year_change_percent": date(2024, 1, 1),
    }
    assert history_start(date(2024, 3, 20)) == date(2023, 12, 2)


def test_changes_use_latest_close_on_or_before_anchor() -> None:
    closes = _closes({"2023-12-29": 101, "2023-12-30": 102, "2023-12-31": 103, "2024-01-02": 107})
    quote = apply_period_changes(_quote(), closes, date(2024, 1, 3))
    assert quote.week_change_percent == 16.5
    assert quote.month_change_percent == 16.5
    assert quote.year_change_percent == 16.5
    assert quote.current_price == 120.0


def test_base_walks_back_over_missing_days() -> None:
    closes = _closes({"2023-12-29": 101, "2024-01-02": 107})
    quote = apply_period_changes(_quote(), closes, date(2024, 1, 3))
    assert quote.year_change_percent == 18.81


def test_base_older_than_lookback_is_ignored() -> None:
    closes = _closes({"2024-03-01": 100})
    quote = apply_period_changes(_quote(110), closes, date(2024, 3, 20))
    assert quote.month_change_percent == 10.0
    # 03-01 早于 03-18 前 5 天
    assert quote.week_change_percent is None
    assert quote.year_change_percent is None


def test_missing_history_or_zero_base_leaves_fields_unset() -> None:
    today = date(2024, 1, 3)
    for closes in (None, _closes({})):
        quote = apply_period_changes(_quote(), closes, today)
        assert quote.week_change_percent is None
        assert quote.month_change_percent is None
        assert quote.year_change_percent is None

    zero = apply_period_changes(_quote(), _closes({"2023-12-31": 0}), today)
    assert zero.year_change_percent is None
