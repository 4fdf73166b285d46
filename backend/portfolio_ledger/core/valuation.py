from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Callable, Iterable

import numpy as np
import pandas as pd

from ..models import Portfolio, Position, Quote, Transaction
from ..utils.time_utils import day_of, parse_timestamp

logger = logging.getLogger(__name__)


def calculate_realtime_pnl(positions: Iterable[Position], quotes: dict[str, Quote]) -> list[Position]:
    """Attach live prices to positions.

    A position without a quote keeps its cost fields, gets market_value 0 and
    leaves the price/PnL fields unset.
    """
    valued: list[Position] = []
    for position in positions:
        item = position.model_copy(deep=True)
        quote = quotes.get(item.asset.code)
        if quote is None:
            logger.warning(f"No quote for {item.asset.code}, market value set to 0")
            item.market_value = 0.0
            valued.append(item)
            continue
        price = float(quote.current_price)
        market_value = price * item.quantity
        total_pnl = market_value - item.total_cost
        if quote.name:
            item.asset.name = quote.name
        item.current_price = price
        item.market_value = market_value
        item.total_pnl = total_pnl
        item.total_pnl_percent = total_pnl / item.total_cost * 100 if item.total_cost != 0 else 0.0
        item.daily_change = float(quote.change_amount) * item.quantity
        item.daily_change_percent = float(quote.change_percent)
        valued.append(item)
    return valued


@dataclass(slots=True)
class ValuationTotals:
    total_market_value: float
    daily_pnl: float
    total_cost_value: float


def summarize_positions(positions: Iterable[Position], rate_to_cny: Callable[[str | None], float]) -> ValuationTotals:
    market_value = 0.0
    daily_pnl = 0.0
    cost_value = 0.0
    for position in positions:
        rate = rate_to_cny(position.asset.code)
        market_value += float(position.market_value or 0.0) * rate
        daily_pnl += float(position.daily_change or 0.0) * rate
        cost_value += position.total_cost * rate
    return ValuationTotals(total_market_value=market_value, daily_pnl=daily_pnl, total_cost_value=cost_value)


def calculate_net_deposited_cash(portfolio: Portfolio) -> float:
    total = float(portfolio.initial_cash)
    for tx in portfolio.transactions:
        if tx.type == "DEPOSIT":
            total += tx.amount
        elif tx.type == "WITHDRAW":
            total -= tx.amount
    return total


def calculate_total_commission(portfolio: Portfolio) -> float:
    return sum(float(tx.commission or 0.0) for tx in portfolio.transactions if tx.type in {"BUY", "SELL"})


def calculate_total_dividend_income(portfolio: Portfolio) -> float:
    return sum(tx.amount for tx in portfolio.transactions if tx.type == "DIVIDEND")


def _chronological(transactions: Iterable[Transaction]) -> list[Transaction]:
    dated = [(parse_timestamp(tx.date), idx, tx) for idx, tx in enumerate(transactions)]
    return [tx for ts, _, tx in sorted((row for row in dated if row[0] is not None), key=lambda row: (row[0], row[1]))]


def calculate_leverage_cost_by_day(portfolio: Portfolio, start: date, end: date) -> float:
    """Interest accrued by the daily-balance method over [start, end].

    Each calendar day accrues ``balance * cost_rate / 365`` on the margin
    balance outstanding at the end of that day.
    """
    rate = float(portfolio.leverage.cost_rate or 0.0)
    if rate <= 0 or end < start:
        return 0.0

    balance = 0.0
    closing: dict[pd.Timestamp, float] = {}
    for tx in _chronological(portfolio.transactions):
        if tx.type == "BUY":
            balance += float(tx.leverage_used or 0.0)
        elif tx.type == "SELL":
            if tx.leverage_repaid is not None:
                repay = float(tx.leverage_repaid)
            else:
                repay = tx.amount - float(tx.commission or 0.0)
            balance -= max(0.0, min(repay, balance))
        else:
            continue
        closing[pd.Timestamp(day_of(tx.date))] = balance
    if not closing:
        return 0.0

    days = pd.date_range(start, end, freq="D")
    series = pd.Series(closing).sort_index()
    daily = series.reindex(series.index.union(days)).ffill().reindex(days).fillna(0.0)
    return float(np.round((daily.to_numpy() * rate / 365).sum(), 2))


def calculate_lifetime_leverage_cost(portfolio: Portfolio, today: date) -> float:
    days = [d for d in (day_of(tx.date) for tx in portfolio.transactions) if d is not None]
    if not days:
        return 0.0
    return calculate_leverage_cost_by_day(portfolio, min(days), today)
