from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable

import pandas as pd

from .ledger_engine import EPSILON, LedgerBalances, replay
from .positions import build_positions
from ..errors import LedgerError
from ..models import CashFlowWeightingName, KlinePoint, PeriodStats, Portfolio, StatsPeriod, Transaction
from ..providers.base import MarketDataProvider
from ..utils.time_utils import day_of, parse_timestamp

logger = logging.getLogger(__name__)


class CashFlowWeighting(ABC):
    """Fraction of the period an external flow counts toward average capital."""

    @abstractmethod
    def weight(self, flow_day: date, start: date, end: date) -> float:
        pass


class FlatHalfWeighting(CashFlowWeighting):
    def weight(self, flow_day: date, start: date, end: date) -> float:
        return 0.5


class DayCountWeighting(CashFlowWeighting):
    def weight(self, flow_day: date, start: date, end: date) -> float:
        span = (end - start).days
        if span <= 0:
            return 0.5
        return min(1.0, max(0.0, (end - flow_day).days / span))


def weighting_from_name(name: CashFlowWeightingName) -> CashFlowWeighting:
    if name == "day_count":
        return DayCountWeighting()
    return FlatHalfWeighting()


def resolve_period(period: StatsPeriod, today: date, portfolio: Portfolio) -> tuple[date, date]:
    end = today
    if period == "total":
        days = [d for d in (day_of(tx.date) for tx in portfolio.transactions) if d is not None]
        return (min(days) if days else end), end
    if period == "daily":
        return end - timedelta(days=1), end
    if period == "weekly":
        return end - timedelta(weeks=1), end
    if period == "monthly":
        return (pd.Timestamp(end) - pd.DateOffset(months=1)).date(), end
    return (pd.Timestamp(end) - pd.DateOffset(years=1)).date(), end


def end_of_day(day: date) -> datetime:
    return datetime.combine(day, time.max)


def close_series(points: list[KlinePoint]) -> pd.Series | None:
    """Daily closes indexed by date, sorted, last point winning on duplicate dates."""
    if not points:
        return None
    series = pd.Series(
        [point.close for point in points],
        index=pd.to_datetime([point.date for point in points]),
    )
    return series[~series.index.duplicated(keep="last")].sort_index()


def close_on(series: pd.Series | None, day: date) -> float | None:
    """Latest close on or before ``day``."""
    if series is None or series.empty:
        return None
    value = series.asof(pd.Timestamp(day))
    if pd.isna(value):
        return None
    return float(value)


@dataclass(slots=True)
class ReplayedState:
    cash: float
    holdings: dict[str, float]


def replay_state(portfolio: Portfolio, cutoff: datetime) -> ReplayedState:
    """Cash and holdings as of ``cutoff``, rebuilt from the opening balances.

    A transaction that fails its preconditions is dropped whole: the balances
    keep their previous values and a dropped trade adds no holding.
    """
    balances = LedgerBalances.opening(portfolio)
    applied: list[Transaction] = []
    for tx in portfolio.transactions:
        tx_time = parse_timestamp(tx.date)
        if tx_time is None or tx_time > cutoff:
            continue
        attempt = balances.copy()
        try:
            replay(attempt, tx)
        except LedgerError as e:
            logger.warning(f"Replay skipped {tx.type} {tx.id} in portfolio {portfolio.id}: {e.message}")
            continue
        balances = attempt
        applied.append(tx)
    positions = build_positions(applied, cutoff=cutoff).positions
    return ReplayedState(cash=balances.cash, holdings={p.asset.code: p.quantity for p in positions})


class PeriodReturnEngine:
    """Modified-Dietz return between two reconstructed portfolio states.

    Both states are valued at historical closes, falling back to the most
    recent earlier close. Any fetch failure values that asset at zero; the
    calculation itself never raises.
    """

    def __init__(
        self,
        market: MarketDataProvider,
        rate_to_cny: Callable[[str | None], float],
        weighting: CashFlowWeighting | None = None,
        lookback_days: int = 14,
    ) -> None:
        self._market = market
        self._rate_to_cny = rate_to_cny
        self.weighting = weighting or FlatHalfWeighting()
        self._lookback_days = lookback_days

    def _close_series(self, code: str, start: date, end: date) -> pd.Series | None:
        fetch_start = start - timedelta(days=self._lookback_days)
        try:
            points = self._market.get_kline(code, fetch_start.isoformat(), end.isoformat())
        except Exception as e:
            logger.warning(f"Historical closes unavailable for {code}: {e}")
            return None
        series = close_series(points)
        if series is None:
            logger.warning(f"No kline points for {code} between {fetch_start} and {end}")
        return series

    def _value(self, state: ReplayedState, day: date, closes: dict[str, pd.Series | None]) -> float:
        total = state.cash
        for code, quantity in state.holdings.items():
            close = close_on(closes.get(code), day)
            if close is None:
                logger.warning(f"No close for {code} on or before {day}, valued at 0")
                continue
            total += quantity * close * self._rate_to_cny(code)
        return total

    def calculate(self, portfolio: Portfolio, period: StatsPeriod, today: date) -> PeriodStats:
        return self.calculate_many(portfolio, [period], today)[period]

    def calculate_many(
        self,
        portfolio: Portfolio,
        periods: list[StatsPeriod],
        today: date,
    ) -> dict[StatsPeriod, PeriodStats]:
        """Stats for several periods sharing one end state and one kline fetch per asset."""
        windows = {period: resolve_period(period, today, portfolio) for period in dict.fromkeys(periods)}
        if not windows:
            return {}
        end = today
        end_state = replay_state(portfolio, end_of_day(end))
        start_states = {
            period: replay_state(portfolio, end_of_day(start - timedelta(days=1)))
            for period, (start, _) in windows.items()
        }

        codes = set(end_state.holdings)
        for state in start_states.values():
            codes.update(state.holdings)
        earliest = min(start for start, _ in windows.values()) - timedelta(days=1)
        closes = {code: self._close_series(code, earliest, end) for code in sorted(codes)}
        end_value = self._value(end_state, end, closes)

        results: dict[StatsPeriod, PeriodStats] = {}
        for period, (start, period_end) in windows.items():
            start_day = start - timedelta(days=1)
            start_value = self._value(start_states[period], start_day, closes)
            results[period] = self._dietz(portfolio, period, start, period_end, start_value, end_value)
        return results

    def _dietz(
        self,
        portfolio: Portfolio,
        period: StatsPeriod,
        start: date,
        end: date,
        start_value: float,
        end_value: float,
    ) -> PeriodStats:
        cash_flow = 0.0
        weighted_flow = 0.0
        for tx in portfolio.transactions:
            if tx.type not in {"DEPOSIT", "WITHDRAW"}:
                continue
            flow_day = day_of(tx.date)
            if flow_day is None or flow_day < start or flow_day > end:
                continue
            signed = tx.amount if tx.type == "DEPOSIT" else -tx.amount
            cash_flow += signed
            weighted_flow += self.weighting.weight(flow_day, start, end) * signed

        stats = PeriodStats(
            period=period,
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            start_value=round(start_value, 4),
            end_value=round(end_value, 4),
            cash_flow=round(cash_flow, 4),
        )
        if abs(start_value) < EPSILON:
            if abs(end_value) < EPSILON and abs(cash_flow) < EPSILON:
                stats.period_return_percent = 0.0
                stats.period_pnl = 0.0
            return stats

        denominator = start_value + weighted_flow
        pnl = end_value - start_value - cash_flow
        stats.period_pnl = round(pnl, 4)
        if abs(denominator) < EPSILON:
            logger.warning(f"Zero average capital for portfolio {portfolio.id} over {period}")
            return stats
        stats.period_return_percent = round(pnl / denominator * 100, 4)
        return stats
