from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

Market = Literal["sh", "sz", "hk", "us"]
TransactionType = Literal[
    "BUY",
    "SELL",
    "DEPOSIT",
    "WITHDRAW",
    "LEVERAGE_ADD",
    "LEVERAGE_REMOVE",
    "LEVERAGE_COST",
    "DIVIDEND",
]
StatsPeriod = Literal["total", "daily", "weekly", "monthly", "yearly"]
CashFlowWeightingName = Literal["flat_half", "day_count"]
SkipReason = Literal["UNRECOGNIZED_ASSET_CODE", "OVERSOLD_CLAMPED"]


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    trace_id: str | None = None


class Asset(BaseModel):
    code: str
    market: Market
    name: str = ""


class LeverageInfo(BaseModel):
    total_amount: float = 0.0
    used_amount: float = 0.0
    available_amount: float = 0.0
    cost_rate: float = 0.0


class Transaction(BaseModel):
    id: str
    date: str
    type: TransactionType
    asset_code: str | None = None
    quantity: float | None = None
    price: float | None = None
    amount: float = 0.0
    commission: float | None = None
    leverage_used: float | None = None
    leverage_repaid: float | None = None
    fx_rate: float | None = None
    note: str | None = None


class CreateTransactionRequest(BaseModel):
    date: str = Field(min_length=1)
    type: TransactionType
    asset_code: str | None = None
    quantity: float | None = None
    price: float | None = None
    amount: float | None = None
    commission: float | None = None
    leverage_used: float | None = None
    note: str | None = None
    expected_version: int | None = None


class Portfolio(BaseModel):
    id: str
    name: str
    cash: float
    initial_cash: float
    initial_leverage_amount: float = 0.0
    leverage: LeverageInfo = Field(default_factory=LeverageInfo)
    transactions: list[Transaction] = Field(default_factory=list)
    version: int = 0
    created_at: str = ""
    updated_at: str = ""


class LeverageCreditRequest(BaseModel):
    total_credit: float = Field(default=0.0, ge=0)
    interest_rate: float = Field(default=0.0, ge=0, le=1)


class CreatePortfolioRequest(BaseModel):
    name: str = Field(min_length=1, max_length=80)
    cash: float = Field(ge=0)
    leverage_info: LeverageCreditRequest | None = None


class PortfolioSummary(BaseModel):
    id: str
    name: str
    cash: float
    initial_cash: float
    leverage: LeverageInfo
    transaction_count: int
    version: int
    updated_at: str


class PortfolioListResponse(BaseModel):
    items: list[PortfolioSummary] = Field(default_factory=list)


class DeletePortfolioResponse(BaseModel):
    success: bool
    id: str


class Position(BaseModel):
    asset: Asset
    quantity: float
    cost_price: float
    total_cost: float
    current_price: float | None = None
    market_value: float | None = None
    daily_change: float | None = None
    daily_change_percent: float | None = None
    total_pnl: float | None = None
    total_pnl_percent: float | None = None


class SkippedTransaction(BaseModel):
    transaction_id: str
    asset_code: str | None = None
    reason: SkipReason


class PositionsResponse(BaseModel):
    portfolio_id: str
    positions: list[Position] = Field(default_factory=list)
    skipped: list[SkippedTransaction] = Field(default_factory=list)


class PortfolioDetail(BaseModel):
    portfolio: Portfolio
    positions: list[Position] = Field(default_factory=list)
    skipped: list[SkippedTransaction] = Field(default_factory=list)
    total_cost_value: float
    total_assets: float
    net_assets: float


class Quote(BaseModel):
    code: str
    name: str = ""
    current_price: float
    change_amount: float = 0.0
    change_percent: float = 0.0
    prev_close_price: float | None = None
    open_price: float | None = None
    high_price: float | None = None
    low_price: float | None = None
    volume: float | None = None
    turnover: float | None = None
    pe_ratio: float | None = None
    market_cap: float | None = None
    timestamp: str = ""
    week_change_percent: float | None = None
    month_change_percent: float | None = None
    year_change_percent: float | None = None


class QuotesResponse(BaseModel):
    items: list[Quote] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)


class KlinePoint(BaseModel):
    date: str
    open: float
    close: float
    high: float
    low: float
    volume: float = 0.0


class KlineResponse(BaseModel):
    code: str
    items: list[KlinePoint] = Field(default_factory=list)


class PeriodStats(BaseModel):
    period: StatsPeriod
    start_date: str | None = None
    end_date: str | None = None
    start_value: float | None = None
    end_value: float | None = None
    cash_flow: float | None = None
    period_return_percent: float | None = None
    period_pnl: float | None = None


class PortfolioStats(BaseModel):
    portfolio_id: str
    total_market_value: float
    total_assets: float
    net_assets: float
    net_deposited_cash: float
    total_commission: float
    leverage_cost: float
    total_dividend_income: float
    daily_pnl: float
    total_pnl: float
    period: StatsPeriod
    period_return_percent: float | None = None
    period_pnl: float | None = None
    weekly_stats: PeriodStats
    monthly_stats: PeriodStats
    yearly_stats: PeriodStats
    positions: list[Position] = Field(default_factory=list)
    skipped: list[SkippedTransaction] = Field(default_factory=list)
    missing_quotes: list[str] = Field(default_factory=list)
    timestamp: str


class ReversalResult(BaseModel):
    portfolio: Portfolio
    removed: Transaction
    warnings: list[str] = Field(default_factory=list)


class LeverageSnapshot(BaseModel):
    total_amount: float
    used_amount: float
    available_amount: float


class LedgerState(BaseModel):
    cash: float
    leverage: LeverageSnapshot


class ReconcileStep(BaseModel):
    transaction_id: str
    type: TransactionType
    before: LedgerState
    after: LedgerState
    expected: LedgerState


class ReconcileSkip(BaseModel):
    transaction_id: str
    type: TransactionType
    reason: str


class ReconciliationReport(BaseModel):
    portfolio_id: str
    initial_cash: float
    stored_cash: float
    recalculated_cash: float
    diff: float
    stored_leverage: LeverageSnapshot
    recalculated_leverage: LeverageSnapshot
    leverage_diff: float
    leverage_invariant_ok: bool
    transaction_count: int
    replayed_count: int
    complete: bool
    steps: list[ReconcileStep] = Field(default_factory=list)
    skipped: list[ReconcileSkip] = Field(default_factory=list)


class CorrectionResult(BaseModel):
    portfolio_id: str
    corrected: bool
    previous_cash: float
    corrected_cash: float
    diff: float
    leverage_diff: float


class CorrectAllResponse(BaseModel):
    results: list[CorrectionResult] = Field(default_factory=list)
    corrected_count: int


class ExchangeRate(BaseModel):
    pair: str
    rate: float
    timestamp: str | None = None
    source: Literal["cache", "fallback"]


class ExchangeRatesResponse(BaseModel):
    rates: list[ExchangeRate] = Field(default_factory=list)
    last_refreshed_at: str | None = None


class AppConfig(BaseModel):
    data_dir: str = ""
    log_level: str = "INFO"
    cache_ttl_sec: int = Field(default=300, ge=0)
    fx_refresh_hour: int = Field(default=1, ge=0, le=23)
    fx_fallback_rates: dict[str, float] = Field(default_factory=lambda: {"HKD-CNY": 0.9, "USD-CNY": 7.2})
    quote_timeout_sec: float = Field(default=10.0, gt=0)
    kline_timeout_sec: float = Field(default=15.0, gt=0)
    fx_timeout_sec: float = Field(default=10.0, gt=0)
    kline_max_retries: int = Field(default=3, ge=1, le=10)
    kline_retry_backoff_sec: float = Field(default=2.0, ge=0)
    history_lookback_days: int = Field(default=14, ge=0, le=60)
    cash_flow_weighting: CashFlowWeightingName = "flat_half"
    enable_fx_scheduler: bool = True
    cors_origins: list[str] = Field(
        default_factory=lambda: [
            "http://127.0.0.1:5173",
            "http://localhost:5173",
        ]
    )
