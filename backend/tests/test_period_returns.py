from __future__ import annotations

import sys
from datetime import date
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portfolio_ledger.core.period_returns import (
    DayCountWeighting,
    end_of_day,
    PeriodReturnEngine,
    replay_state,
    resolve_period,
)
from portfolio_ledger.errors import DataUnavailable
from portfolio_ledger.models import KlinePoint, Portfolio, Quote, Transaction
from portfolio_ledger.providers.base import MarketDataProvider

TODAY = date(2024, 3, 31)


class FakeMarket(MarketDataProvider):
    def __init__(self, closes: dict[str, dict[str, float]] | None = None, failing: set[str] | None = None) -> None:
        self.closes = closes or {}
        self.failing = failing or set()
        self.kline_calls: list[tuple[str, str, str]] = []

    def get_quotes(self, codes: list[str]) -> dict[str, Quote]:
        return {}

    def get_kline(self, code: str, start_date: str, end_date: str) -> list[KlinePoint]:
        self.kline_calls.append((code, start_date, end_date))
        if code in self.failing:
            raise DataUnavailable(f"no data for {code}")
        return [
            KlinePoint(date=day, open=close, close=close, high=close, low=close)
            for day, close in sorted(self.closes.get(code, {}).items())
            if start_date <= day <= end_date
        ]


def _rate_to_cny(code: str | None) -> float:
    return 7.2 if (code or "").startswith("us") else 1.0


def _portfolio(initial_cash: float, transactions: list[Transaction]) -> Portfolio:
    return Portfolio(id="p1", name="dietz", cash=0, initial_cash=initial_cash, transactions=transactions)


def _scenario() -> Portfolio:
    return _portfolio(
        100_000,
        [
            Transaction(
                id="b1",
                date="2024-01-10T10:00:00",
                type="BUY",
                asset_code="sh600000",
                quantity=1_000,
                price=10,
                amount=10_000,
                commission=0,
            ),
            Transaction(id="d1", date="2024-03-15T09:00:00", type="DEPOSIT", amount=10_000),
        ],
    )


CLOSES = {"sh600000": {"2024-02-28": 12.0, "2024-03-29": 15.0}}


def test_resolve_period_uses_calendar_offsets() -> None:
    portfolio = _scenario()
    assert resolve_period("monthly", TODAY, portfolio) == (date(2024, 2, 29), TODAY)
    assert resolve_period("yearly", date(2024, 2, 29), portfolio) == (date(2023, 2, 28), date(2024, 2, 29))
    assert resolve_period("weekly", TODAY, portfolio) == (date(2024, 3, 24), TODAY)
    assert resolve_period("daily", TODAY, portfolio) == (date(2024, 3, 30), TODAY)
    assert resolve_period("total", TODAY, portfolio) == (date(2024, 1, 10), TODAY)


def test_empty_portfolio_has_zero_return() -> None:
    engine = PeriodReturnEngine(FakeMarket(), _rate_to_cny)
    stats = engine.calculate(_portfolio(0, []), "monthly", TODAY)
    assert stats.period_return_percent == 0
    assert stats.period_pnl == 0


def test_zero_start_value_with_flows_is_undefined() -> None:
    portfolio = _portfolio(0, [Transaction(id="d1", date="2024-03-20", type="DEPOSIT", amount=1_000)])
    engine = PeriodReturnEngine(FakeMarket(), _rate_to_cny)
    stats = engine.calculate(portfolio, "monthly", TODAY)
    assert stats.period_return_percent is None
    assert stats.period_pnl is None


def test_modified_dietz_with_flat_half_weighting() -> None:
    engine = PeriodReturnEngine(FakeMarket(CLOSES), _rate_to_cny)
    stats = engine.calculate(_scenario(), "monthly", TODAY)
    assert stats.start_value == pytest.approx(102_000)
    assert stats.end_value == pytest.approx(115_000)
    assert stats.cash_flow == pytest.approx(10_000)
    assert stats.period_pnl == pytest.approx(3_000)
    assert stats.period_return_percent == pytest.approx(3_000 / 107_000 * 100, abs=1e-4)


def test_modified_dietz_with_day_count_weighting() -> None:
    engine = PeriodReturnEngine(FakeMarket(CLOSES), _rate_to_cny, weighting=DayCountWeighting())
    stats = engine.calculate(_scenario(), "monthly", TODAY)
    denominator = 102_000 + 10_000 * 16 / 31
    assert stats.period_return_percent == pytest.approx(3_000 / denominator * 100, abs=1e-4)


def test_failed_history_fetch_values_asset_at_zero() -> None:
    engine = PeriodReturnEngine(FakeMarket(CLOSES, failing={"sh600000"}), _rate_to_cny)
    stats = engine.calculate(_scenario(), "monthly", TODAY)
    assert stats.start_value == pytest.approx(90_000)
    assert stats.end_value == pytest.approx(100_000)
    assert stats.period_pnl == pytest.approx(0)
    assert stats.period_return_percent == pytest.approx(0)


def test_foreign_closes_are_converted() -> None:
    portfolio = _portfolio(
        10_000,
        [
            Transaction(
                id="b1",
                date="2024-01-10",
                type="BUY",
                asset_code="usAAPL",
                quantity=10,
                price=100,
                amount=7_200,
                fx_rate=7.2,
            )
        ],
    )
    market = FakeMarket({"usAAPL": {"2024-02-28": 100.0, "2024-03-28": 110.0}})
    stats = PeriodReturnEngine(market, _rate_to_cny).calculate(portfolio, "monthly", TODAY)
    assert stats.start_value == pytest.approx(2_800 + 7_200)
    assert stats.end_value == pytest.approx(2_800 + 7_920)
    assert stats.period_return_percent == pytest.approx(720 / 10_000 * 100)


def test_calculate_many_fetches_each_asset_once() -> None:
    market = FakeMarket(CLOSES)
    engine = PeriodReturnEngine(market, _rate_to_cny)
    results = engine.calculate_many(_scenario(), ["total", "weekly", "monthly", "yearly"], TODAY)
    assert set(results) == {"total", "weekly", "monthly", "yearly"}
    assert len(market.kline_calls) == 1
    code, start_date, end_date = market.kline_calls[0]
    assert code == "sh600000"
    assert end_date == "2024-03-31"
    assert start_date <= "2023-03-16"


def test_unfunded_trade_is_skipped_whole_during_replay() -> None:
    # 买入日期早于入金, 截至 03-07 现金不足
    portfolio = _portfolio(
        1_000,
        [
            Transaction(id="d1", date="2024-03-10T09:00:00", type="DEPOSIT", amount=100_000),
            Transaction(
                id="b1",
                date="2024-03-05T10:00:00",
                type="BUY",
                asset_code="sh600519",
                quantity=100,
                price=500,
                amount=50_010,
                commission=10,
            ),
        ],
    )
    before = replay_state(portfolio, end_of_day(date(2024, 3, 7)))
    assert before.cash == pytest.approx(1_000)
    assert before.holdings == {}

    after = replay_state(portfolio, end_of_day(date(2024, 3, 10)))
    assert after.cash == pytest.approx(50_990)
    assert after.holdings == {"sh600519": 100}
