from __future__ import annotations

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import LedgerError
from .models import (
    ApiErrorPayload,
    CorrectAllResponse,
    CorrectionResult,
    CreatePortfolioRequest,
    CreateTransactionRequest,
    DeletePortfolioResponse,
    ExchangeRatesResponse,
    KlineResponse,
    Portfolio,
    PortfolioDetail,
    PortfolioListResponse,
    PortfolioStats,
    PositionsResponse,
    QuotesResponse,
    ReconciliationReport,
    ReversalResult,
    StatsPeriod,
    Transaction,
)
from .service import service


@asynccontextmanager
async def lifespan(_: FastAPI):
    service.start_background_jobs()
    try:
        yield
    finally:
        service.stop_background_jobs()


app = FastAPI(title="Portfolio ledger API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=service.config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    payload = ApiErrorPayload(code=code, message=message, trace_id=str(time.time_ns()))
    return JSONResponse(status_code=status_code, content=payload.model_dump(exclude_none=True))


@app.exception_handler(RequestValidationError)
def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
    detail = exc.errors()[0].get("msg") if exc.errors() else "请求参数不合法"
    return error_response(422, "VALIDATION_ERROR", str(detail))


@app.exception_handler(LedgerError)
def handle_ledger_error(_: Request, exc: LedgerError) -> JSONResponse:
    return error_response(exc.status_code, exc.code, exc.message)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/portfolio", response_model=PortfolioListResponse)
def list_portfolios() -> PortfolioListResponse:
    return service.list_portfolios()


@app.post("/api/portfolio", response_model=Portfolio, status_code=201)
def create_portfolio(payload: CreatePortfolioRequest) -> Portfolio:
    return service.create_portfolio(payload)


@app.get("/api/portfolio/exchange-rates", response_model=ExchangeRatesResponse)
def get_exchange_rates() -> ExchangeRatesResponse:
    return service.get_exchange_rates()


@app.post("/api/portfolio/correct-history", response_model=CorrectAllResponse)
def correct_history() -> CorrectAllResponse:
    return service.correct_all()


@app.get("/api/portfolio/{portfolio_id}", response_model=PortfolioDetail)
def get_portfolio(portfolio_id: str = Path(min_length=1)) -> PortfolioDetail:
    return service.get_portfolio_detail(portfolio_id)


@app.delete("/api/portfolio/{portfolio_id}", response_model=DeletePortfolioResponse)
def delete_portfolio(portfolio_id: str) -> DeletePortfolioResponse:
    return service.delete_portfolio(portfolio_id)


@app.get("/api/portfolio/{portfolio_id}/transactions", response_model=list[Transaction])
def list_transactions(portfolio_id: str) -> list[Transaction]:
    return service.list_transactions(portfolio_id)


@app.post("/api/portfolio/{portfolio_id}/transactions", response_model=Transaction, status_code=201)
def add_transaction(portfolio_id: str, payload: CreateTransactionRequest) -> Transaction:
    return service.apply_transaction(portfolio_id, payload)


@app.delete("/api/portfolio/{portfolio_id}/transactions/{transaction_id}", response_model=ReversalResult)
def delete_transaction(portfolio_id: str, transaction_id: str) -> ReversalResult:
    return service.reverse_transaction(portfolio_id, transaction_id)


@app.get("/api/portfolio/{portfolio_id}/positions", response_model=PositionsResponse)
def get_positions(portfolio_id: str) -> PositionsResponse:
    return service.get_positions(portfolio_id)


@app.get("/api/portfolio/{portfolio_id}/stats", response_model=PortfolioStats)
def get_stats(portfolio_id: str, period: StatsPeriod = Query(default="total")) -> PortfolioStats:
    return service.get_stats(portfolio_id, period)


@app.get("/api/portfolio/{portfolio_id}/cash-recalc", response_model=ReconciliationReport)
def recalculate_cash(portfolio_id: str) -> ReconciliationReport:
    return service.reconcile(portfolio_id)


@app.post("/api/portfolio/{portfolio_id}/cash-recalc/apply", response_model=CorrectionResult)
def apply_cash_correction(portfolio_id: str) -> CorrectionResult:
    return service.correct_cash(portfolio_id)


@app.get("/api/market/quote", response_model=QuotesResponse)
def get_quotes(codes: str = Query(min_length=1, description="逗号分隔的代码, 例如 sh600519,hk00700")) -> QuotesResponse:
    return service.get_quotes(codes.split(","))


@app.get("/api/market/kline", response_model=KlineResponse)
def get_kline(
    code: str = Query(min_length=3),
    start_date: str = Query(description="YYYY-MM-DD"),
    end_date: str = Query(description="YYYY-MM-DD"),
) -> KlineResponse:
    return service.get_kline(code, start_date, end_date)
