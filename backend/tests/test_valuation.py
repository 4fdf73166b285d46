from __future__ import annotations

import sys
from datetime import date
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portfolio_ledger.core.valuation import (
    calculate_leverage_cost_by_day,
    calculate_net_deposited_cash,
    calculate_realtime_pnl,
    calculate_total_commission,
    calculate_total_dividend_income,
    summarize_positions,
)
from portfolio_ledger.models import Asset, LeverageInfo, Portfolio, Position, Quote, Transaction


def _position(code: str, quantity: float, total_cost: float) -> Position:
    return Position(
        asset=Asset(code=code, market=code[:2]),
        quantity=quantity,
        cost_price=total_cost / quantity,
        total_cost=total_cost,
    )


def _quote(code: str, price: float, change: float, change_pct: float) -> Quote:
    return Quote(code=code, name=f"name-{code}", current_price=price, change_amount=change, change_percent=change_pct)


def test_realtime_pnl_on_empty_list_is_empty() -> None:
    assert calculate_realtime_pnl([], {}) == []


def test_realtime_pnl_attaches_quote_fields() -> None:
    positions = [_position("sh600519", 50, 75_000)]
    valued = calculate_realtime_pnl(positions, {"sh600519": _quote("sh600519", 1_800, 20, 1.12)})
    item = valued[0]
    assert item.asset.name == "name-sh600519"
    assert item.current_price == pytest.approx(1_800)
    assert item.market_value == pytest.approx(90_000)
    assert item.total_pnl == pytest.approx(15_000)
    assert item.total_pnl_percent == pytest.approx(20)
    assert item.daily_change == pytest.approx(1_000)
    assert item.daily_change_percent == pytest.approx(1.12)
    assert positions[0].market_value is None


def test_missing_quote_values_position_at_zero() -> None:
    valued = calculate_realtime_pnl([_position("hk00700", 100, 30_000)], {})
    item = valued[0]
    assert item.market_value == 0
    assert item.current_price is None
    assert item.total_pnl is None
    assert item.total_cost == pytest.approx(30_000)


def test_zero_cost_position_reports_zero_pnl_percent() -> None:
    position = Position(asset=Asset(code="sz000001", market="sz"), quantity=10, cost_price=0, total_cost=0)
    item = calculate_realtime_pnl([position], {"sz000001": _quote("sz000001", 10, 0, 0)})[0]
    assert item.total_pnl_percent == 0


def test_summarize_converts_foreign_values() -> None:
    positions = calculate_realtime_pnl(
        [_position("usAAPL", 10, 1_000), _position("sh600000", 100, 1_000)],
        {"usAAPL": _quote("usAAPL", 150, 2, 1.3), "sh600000": _quote("sh600000", 11, 0.1, 0.9)},
    )
    totals = summarize_positions(positions, lambda code: 7.2 if code.startswith("us") else 1.0)
    assert totals.total_market_value == pytest.approx(1_500 * 7.2 + 1_100)
    assert totals.daily_pnl == pytest.approx(20 * 7.2 + 10)
    assert totals.total_cost_value == pytest.approx(1_000 * 7.2 + 1_000)


def _portfolio_with(transactions: list[Transaction], cost_rate: float = 0.0) -> Portfolio:
    return Portfolio(
        id="p1",
        name="agg",
        cash=0,
        initial_cash=10_000,
        leverage=LeverageInfo(total_amount=100_000, available_amount=100_000, cost_rate=cost_rate),
        transactions=transactions,
    )


def test_aggregates_over_transaction_log() -> None:
    portfolio = _portfolio_with(
        [
            Transaction(id="d", date="2024-01-01", type="DEPOSIT", amount=5_000),
            Transaction(id="w", date="2024-01-02", type="WITHDRAW", amount=2_000),
            Transaction(id="b", date="2024-01-03", type="BUY", asset_code="sh600000", quantity=100, price=10, amount=1_005, commission=5),
            Transaction(id="s", date="2024-01-04", type="SELL", asset_code="sh600000", quantity=50, price=11, amount=550, commission=3),
            Transaction(id="v", date="2024-01-05", type="DIVIDEND", amount=42),
        ]
    )
    assert calculate_net_deposited_cash(portfolio) == pytest.approx(13_000)
    assert calculate_total_commission(portfolio) == pytest.approx(8)
    assert calculate_total_dividend_income(portfolio) == pytest.approx(42)


def test_leverage_cost_accrues_daily_balance() -> None:
    portfolio = _portfolio_with(
        [
            Transaction(
                id="b",
                date="2024-01-01T10:00:00",
                type="BUY",
                asset_code="sh600000",
                quantity=1_000,
                price=36.5,
                amount=36_500,
                leverage_used=36_500,
            ),
            Transaction(
                id="s",
                date="2024-01-11T10:00:00",
                type="SELL",
                asset_code="sh600000",
                quantity=1_000,
                price=40,
                amount=40_000,
                leverage_repaid=36_500,
            ),
        ],
        cost_rate=0.1,
    )
    # 10 days at 36500 * 0.1 / 365 = 10 per day, repaid on day 11
    assert calculate_leverage_cost_by_day(portfolio, date(2024, 1, 1), date(2024, 1, 31)) == pytest.approx(100)


def test_leverage_cost_is_zero_without_rate() -> None:
    portfolio = _portfolio_with(
        [Transaction(id="b", date="2024-01-01", type="BUY", asset_code="sh600000", quantity=1, price=1, amount=1, leverage_used=1)]
    )
    assert calculate_leverage_cost_by_day(portfolio, date(2024, 1, 1), date(2024, 1, 31)) == 0
