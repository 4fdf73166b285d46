from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable
from uuid import uuid4

from .cache import TTLCache
from .config import ConfigManager, configure_logging
from .core.ledger_engine import LedgerBalances, LedgerEngine, check_invariant
from .core.period_returns import PeriodReturnEngine, close_series, weighting_from_name
from .core.positions import PositionBuildResult, build_positions
from .core.quote_periods import apply_period_changes, history_start
from .core.reconciliation import apply_correction, needs_correction, reconcile
from .core.valuation import (
    calculate_lifetime_leverage_cost,
    calculate_net_deposited_cash,
    calculate_realtime_pnl,
    calculate_total_commission,
    calculate_total_dividend_income,
    summarize_positions,
)
from .currency import DailyRefreshPolicy, FxRateCache, FxRefreshScheduler
from .errors import LedgerValidationError, VersionConflict
from .markets import is_valid_quote_code, market_from_code
from .models import (
    AppConfig,
    CorrectAllResponse,
    CorrectionResult,
    CreatePortfolioRequest,
    CreateTransactionRequest,
    DeletePortfolioResponse,
    ExchangeRatesResponse,
    KlineResponse,
    LeverageInfo,
    Portfolio,
    PortfolioDetail,
    PortfolioListResponse,
    PortfolioStats,
    PortfolioSummary,
    Position,
    PositionsResponse,
    Quote,
    QuotesResponse,
    ReconciliationReport,
    ReversalResult,
    StatsPeriod,
    Transaction,
)
from .providers.base import FxRateProvider, MarketDataProvider
from .providers.fx_provider import FrankfurterFxProvider
from .providers.tencent_provider import TencentMarketDataProvider
from .storage import PortfolioRepository
from .utils.time_utils import now_datetime_text

logger = logging.getLogger(__name__)

SUMMARY_PERIODS: tuple[StatsPeriod, ...] = ("weekly", "monthly", "yearly")


class LedgerService:
    """Entry point for every ledger operation exposed over HTTP.

    Mutations take the portfolio lock, run the ledger engine on a copy and
    commit with a version check. Valuation paths degrade on missing market
    data instead of failing.
    """

    def __init__(
        self,
        repository: PortfolioRepository,
        market: MarketDataProvider,
        fx: FxRateCache,
        config: AppConfig | None = None,
        today: Callable[[], date] = date.today,
        now_datetime: Callable[[], str] = now_datetime_text,
    ) -> None:
        self._config = config or AppConfig()
        self._repository = repository
        self._market = market
        self._fx = fx
        self._today = today
        self._now_datetime = now_datetime
        self._engine = LedgerEngine(rate_to_cny=fx.rate_to_cny)
        self._period_engine = PeriodReturnEngine(
            market,
            fx.rate_to_cny,
            weighting=weighting_from_name(self._config.cash_flow_weighting),
            lookback_days=self._config.history_lookback_days,
        )
        self._scheduler: FxRefreshScheduler | None = None

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def fx(self) -> FxRateCache:
        return self._fx

    @property
    def repository(self) -> PortfolioRepository:
        return self._repository

    def start_background_jobs(self) -> None:
        if not self._config.enable_fx_scheduler or self._scheduler is not None:
            return
        self._scheduler = FxRefreshScheduler(self._fx)
        self._scheduler.start()

    def stop_background_jobs(self) -> None:
        if self._scheduler is not None:
            self._scheduler.stop()
            self._scheduler = None

    # Portfolios

    def list_portfolios(self) -> PortfolioListResponse:
        items = [
            PortfolioSummary(
                id=p.id,
                name=p.name,
                cash=p.cash,
                initial_cash=p.initial_cash,
                leverage=p.leverage,
                transaction_count=len(p.transactions),
                version=p.version,
                updated_at=p.updated_at,
            )
            for p in self._repository.list()
        ]
        return PortfolioListResponse(items=items)

    def create_portfolio(self, payload: CreatePortfolioRequest) -> Portfolio:
        name = payload.name.strip()
        if not name:
            raise LedgerValidationError("组合名称不能为空")
        credit = payload.leverage_info.total_credit if payload.leverage_info else 0.0
        cost_rate = payload.leverage_info.interest_rate if payload.leverage_info else 0.0
        portfolio = Portfolio(
            id=uuid4().hex,
            name=name,
            cash=payload.cash,
            initial_cash=payload.cash,
            initial_leverage_amount=credit,
            leverage=LeverageInfo(
                total_amount=credit,
                used_amount=0.0,
                available_amount=credit,
                cost_rate=cost_rate,
            ),
            created_at=self._now_datetime(),
        )
        created = self._repository.create(portfolio)
        logger.info(f"Created portfolio {created.id} ({created.name}) with cash {created.cash:.2f}")
        return created

    def get_portfolio(self, portfolio_id: str) -> Portfolio:
        return self._repository.get(portfolio_id)

    def delete_portfolio(self, portfolio_id: str) -> DeletePortfolioResponse:
        self._repository.delete(portfolio_id)
        logger.info(f"Deleted portfolio {portfolio_id}")
        return DeletePortfolioResponse(success=True, id=portfolio_id)

    def get_portfolio_detail(self, portfolio_id: str) -> PortfolioDetail:
        portfolio = self._repository.get(portfolio_id)
        built = build_positions(portfolio.transactions)
        totals = summarize_positions(built.positions, self._fx.rate_to_cny)
        total_assets = portfolio.cash + totals.total_cost_value
        return PortfolioDetail(
            portfolio=portfolio,
            positions=built.positions,
            skipped=built.skipped,
            total_cost_value=round(totals.total_cost_value, 4),
            total_assets=round(total_assets, 4),
            net_assets=round(total_assets - portfolio.leverage.used_amount, 4),
        )

    # Transactions

    def list_transactions(self, portfolio_id: str) -> list[Transaction]:
        return self._repository.get(portfolio_id).transactions

    def apply_transaction(self, portfolio_id: str, payload: CreateTransactionRequest) -> Transaction:
        with self._repository.lock_for(portfolio_id):
            current = self._repository.get(portfolio_id)
            if payload.expected_version is not None and payload.expected_version != current.version:
                raise VersionConflict(
                    f"组合 {portfolio_id} 已被修改 (当前版本 {current.version}, 期望 {payload.expected_version})"
                )
            updated, record = self._engine.apply(current, payload)
            self._repository.save(updated, current.version)
        return record

    def reverse_transaction(self, portfolio_id: str, transaction_id: str) -> ReversalResult:
        with self._repository.lock_for(portfolio_id):
            current = self._repository.get(portfolio_id)
            result = self._engine.reverse(current, transaction_id)
            saved = self._repository.save(result.portfolio, current.version)
        return result.model_copy(update={"portfolio": saved})

    # Valuation

    def _fetch_quotes(self, codes: list[str]) -> dict[str, Quote]:
        if not codes:
            return {}
        try:
            return self._market.get_quotes(codes)
        except Exception as e:
            logger.warning(f"Quotes unavailable for {codes}: {e}")
            return {}

    def _valued_positions(self, portfolio: Portfolio) -> tuple[PositionBuildResult, list[Position], list[str]]:
        built = build_positions(portfolio.transactions)
        codes = [p.asset.code for p in built.positions]
        quotes = self._fetch_quotes(codes)
        missing = [code for code in codes if code not in quotes]
        return built, calculate_realtime_pnl(built.positions, quotes), missing

    def get_positions(self, portfolio_id: str) -> PositionsResponse:
        portfolio = self._repository.get(portfolio_id)
        built, valued, _ = self._valued_positions(portfolio)
        return PositionsResponse(portfolio_id=portfolio_id, positions=valued, skipped=built.skipped)

    def get_stats(self, portfolio_id: str, period: StatsPeriod = "total") -> PortfolioStats:
        portfolio = self._repository.get(portfolio_id)
        built, valued, missing = self._valued_positions(portfolio)
        totals = summarize_positions(valued, self._fx.rate_to_cny)
        today = self._today()

        total_assets = portfolio.cash + totals.total_market_value
        net_assets = total_assets - portfolio.leverage.used_amount
        net_deposited = calculate_net_deposited_cash(portfolio)
        periods = self._period_engine.calculate_many(portfolio, [period, *SUMMARY_PERIODS], today)
        requested = periods[period]

        return PortfolioStats(
            portfolio_id=portfolio_id,
            total_market_value=round(totals.total_market_value, 4),
            total_assets=round(total_assets, 4),
            net_assets=round(net_assets, 4),
            net_deposited_cash=round(net_deposited, 4),
            total_commission=round(calculate_total_commission(portfolio), 4),
            leverage_cost=calculate_lifetime_leverage_cost(portfolio, today),
            total_dividend_income=round(calculate_total_dividend_income(portfolio), 4),
            daily_pnl=round(totals.daily_pnl, 4),
            total_pnl=round(net_assets - net_deposited, 4),
            period=period,
            period_return_percent=requested.period_return_percent,
            period_pnl=requested.period_pnl,
            weekly_stats=periods["weekly"],
            monthly_stats=periods["monthly"],
            yearly_stats=periods["yearly"],
            positions=valued,
            skipped=built.skipped,
            missing_quotes=missing,
            timestamp=self._now_datetime(),
        )

    # Reconciliation

    def reconcile(self, portfolio_id: str) -> ReconciliationReport:
        return reconcile(self._repository.get(portfolio_id))

    def correct_cash(self, portfolio_id: str) -> CorrectionResult:
        with self._repository.lock_for(portfolio_id):
            current = self._repository.get(portfolio_id)
            report = reconcile(current)
            corrected = needs_correction(report)
            if corrected:
                if not report.complete:
                    logger.warning(
                        f"Correcting portfolio {portfolio_id} from an incomplete replay "
                        f"({len(report.skipped)} skipped transactions)"
                    )
                fixed = apply_correction(current, report)
                check_invariant(LedgerBalances.from_portfolio(fixed))
                self._repository.save(fixed, current.version)
                logger.info(
                    f"Corrected portfolio {portfolio_id}: cash {report.stored_cash:.2f} -> {report.recalculated_cash:.2f}"
                )
        return CorrectionResult(
            portfolio_id=portfolio_id,
            corrected=corrected,
            previous_cash=report.stored_cash,
            corrected_cash=report.recalculated_cash if corrected else report.stored_cash,
            diff=report.diff,
            leverage_diff=report.leverage_diff,
        )

    def correct_all(self) -> CorrectAllResponse:
        results = [self.correct_cash(p.id) for p in self._repository.list()]
        return CorrectAllResponse(results=results, corrected_count=sum(1 for r in results if r.corrected))

    # Market data

    def get_exchange_rates(self) -> ExchangeRatesResponse:
        last = self._fx.last_refreshed_at
        return ExchangeRatesResponse(
            rates=self._fx.snapshot(),
            last_refreshed_at=last.replace(microsecond=0).isoformat() if last else None,
        )

    def _with_period_changes(self, quote: Quote, today: date) -> Quote:
        try:
            points = self._market.get_kline(quote.code, history_start(today).isoformat(), today.isoformat())
        except Exception as e:
            logger.warning(f"Period changes unavailable for {quote.code}: {e}")
            return quote
        return apply_period_changes(quote, close_series(points), today)

    def get_quotes(self, codes: list[str]) -> QuotesResponse:
        requested = [code.strip() for code in codes if code.strip()]
        if not requested:
            raise LedgerValidationError("codes 不能为空")
        valid = [code for code in requested if is_valid_quote_code(code)]
        quotes = self._market.get_quotes(valid) if valid else {}
        today = self._today()
        enriched = {code: self._with_period_changes(quote, today) for code, quote in quotes.items()}
        return QuotesResponse(
            items=[enriched[code] for code in requested if code in enriched],
            missing=[code for code in requested if code not in quotes],
        )

    def get_kline(self, code: str, start_date: str, end_date: str) -> KlineResponse:
        if market_from_code(code) is None:
            raise LedgerValidationError(f"无法识别的资产代码: {code}")
        for text in (start_date, end_date):
            try:
                datetime.strptime(text, "%Y-%m-%d")
            except ValueError:
                raise LedgerValidationError("日期格式需为 YYYY-MM-DD") from None
        if start_date > end_date:
            raise LedgerValidationError("start_date 不能晚于 end_date")
        return KlineResponse(code=code, items=self._market.get_kline(code, start_date, end_date))


def build_service(
    config_manager: ConfigManager | None = None,
    market: MarketDataProvider | None = None,
    fx_provider: FxRateProvider | None = None,
) -> LedgerService:
    manager = config_manager or ConfigManager()
    config = manager.get_config()
    configure_logging(config.log_level)
    cache = TTLCache(ttl_sec=config.cache_ttl_sec)
    repository = PortfolioRepository(manager.portfolios_path(), cache=cache)
    fx = FxRateCache(
        provider=fx_provider or FrankfurterFxProvider(timeout=config.fx_timeout_sec),
        rates_path=manager.rates_path(),
        policy=DailyRefreshPolicy(refresh_hour=config.fx_refresh_hour),
        fallback_rates=config.fx_fallback_rates,
    )
    market = market or TencentMarketDataProvider(
        quote_timeout=config.quote_timeout_sec,
        kline_timeout=config.kline_timeout_sec,
        max_retries=config.kline_max_retries,
        retry_backoff_sec=config.kline_retry_backoff_sec,
    )
    logger.info(f"Ledger data directory: {manager.data_dir()}")
    return LedgerService(repository=repository, market=market, fx=fx, config=config)


service = build_service()
