from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable
from uuid import uuid4

from ..errors import (
    InsufficientFunds,
    InsufficientLeverage,
    LedgerInvariantError,
    LedgerValidationError,
    NotFound,
)
from ..markets import market_from_code, normalize_asset_code
from ..models import (
    CreateTransactionRequest,
    LedgerState,
    LeverageSnapshot,
    Portfolio,
    ReversalResult,
    Transaction,
)
from ..utils.time_utils import parse_timestamp

logger = logging.getLogger(__name__)

EPSILON = 1e-6
TRADE_TYPES = {"BUY", "SELL"}


@dataclass(slots=True)
class LedgerBalances:
    """Mutable cash/leverage state the transition rules operate on."""

    cash: float
    total: float
    used: float
    available: float

    @classmethod
    def from_portfolio(cls, portfolio: Portfolio) -> "LedgerBalances":
        lev = portfolio.leverage
        return cls(
            cash=float(portfolio.cash),
            total=float(lev.total_amount),
            used=float(lev.used_amount),
            available=float(lev.available_amount),
        )

    @classmethod
    def opening(cls, portfolio: Portfolio) -> "LedgerBalances":
        credit = float(portfolio.initial_leverage_amount)
        return cls(cash=float(portfolio.initial_cash), total=credit, used=0.0, available=credit)

    def copy(self) -> "LedgerBalances":
        return LedgerBalances(self.cash, self.total, self.used, self.available)

    def write_to(self, portfolio: Portfolio) -> None:
        portfolio.cash = self.cash
        portfolio.leverage.total_amount = self.total
        portfolio.leverage.used_amount = self.used
        portfolio.leverage.available_amount = self.available

    def to_state(self) -> LedgerState:
        return LedgerState(
            cash=round(self.cash, 4),
            leverage=LeverageSnapshot(
                total_amount=round(self.total, 4),
                used_amount=round(self.used, 4),
                available_amount=round(self.available, 4),
            ),
        )

    def draw(self, amount: float) -> None:
        self.used += amount
        self.available -= amount

    def repay(self, amount: float) -> None:
        self.used -= amount
        self.available += amount


def invariant_violations(balances: LedgerBalances) -> list[str]:
    problems: list[str] = []
    tolerance = max(EPSILON, abs(balances.total) * 1e-9)
    if abs(balances.used + balances.available - balances.total) > tolerance:
        problems.append(
            f"used({balances.used:.6f}) + available({balances.available:.6f}) != total({balances.total:.6f})"
        )
    for name in ("total", "used", "available"):
        if getattr(balances, name) < -EPSILON:
            problems.append(f"leverage {name} is negative: {getattr(balances, name):.6f}")
    return problems


def check_invariant(balances: LedgerBalances) -> None:
    problems = invariant_violations(balances)
    if problems:
        raise LedgerInvariantError("融资额度校验失败: " + "; ".join(problems))


def validate_request(request: CreateTransactionRequest) -> None:
    if parse_timestamp(request.date) is None:
        raise LedgerValidationError("date 必须是 ISO-8601 格式")
    code = normalize_asset_code(request.asset_code) if request.asset_code else ""
    if code and market_from_code(code) is None:
        raise LedgerValidationError(f"无法识别的资产代码: {request.asset_code}")
    if request.type in TRADE_TYPES:
        if not code:
            raise LedgerValidationError(f"{request.type} 交易需要 asset_code")
        if request.quantity is None or request.quantity <= 0:
            raise LedgerValidationError("quantity 必须大于 0")
        if request.price is None or request.price <= 0:
            raise LedgerValidationError("price 必须大于 0")
    elif request.amount is None or request.amount <= 0:
        raise LedgerValidationError("amount 必须大于 0")
    if request.commission is not None and request.commission < 0:
        raise LedgerValidationError("commission 不能为负数")
    if request.leverage_used is not None and request.leverage_used < 0:
        raise LedgerValidationError("leverage_used 不能为负数")
    if request.type == "BUY" and request.leverage_used is not None:
        if request.leverage_used > request.quantity * request.price + EPSILON:
            raise LedgerValidationError("leverage_used 不能超过交易本金")
    if request.type == "SELL" and request.commission is not None:
        if request.commission > request.quantity * request.price + EPSILON:
            raise LedgerValidationError("卖出手续费不能超过成交金额")


def build_transaction(
    request: CreateTransactionRequest,
    rate_to_cny: Callable[[str | None], float],
    tx_id: str | None = None,
) -> Transaction:
    """Validate a request and normalize its money fields to CNY.

    For BUY/SELL the price, commission and requested leverage are quoted in the
    asset's trading currency and converted with the current rate, which is
    stored on the transaction. Other types are taken as CNY.
    """
    validate_request(request)
    tx = Transaction(
        id=tx_id or uuid4().hex,
        date=request.date.strip(),
        type=request.type,
        note=request.note,
    )
    if request.asset_code:
        tx.asset_code = normalize_asset_code(request.asset_code)

    if request.type not in TRADE_TYPES:
        tx.amount = float(request.amount or 0.0)
        return tx

    rate = float(rate_to_cny(tx.asset_code))
    gross = float(request.quantity) * float(request.price) * rate
    commission = float(request.commission or 0.0) * rate
    tx.quantity = float(request.quantity)
    tx.price = float(request.price)
    tx.commission = commission
    if abs(rate - 1.0) > EPSILON:
        tx.fx_rate = rate
    if request.type == "BUY":
        tx.amount = gross + commission
        if request.leverage_used is not None and request.leverage_used > EPSILON:
            tx.leverage_used = float(request.leverage_used) * rate
    else:
        tx.amount = gross
    return tx


def _pay_commission(balances: LedgerBalances, commission: float) -> float:
    if commission <= EPSILON:
        return 0.0
    if balances.cash + EPSILON >= commission:
        balances.cash -= commission
        return 0.0
    shortfall = commission - balances.cash
    if balances.available + EPSILON < shortfall:
        raise InsufficientLeverage(
            f"现金与融资额度不足以支付手续费, 缺口 {shortfall:.2f}, 可用融资 {balances.available:.2f}"
        )
    balances.cash = 0.0
    balances.draw(shortfall)
    return shortfall


def _pay_principal(balances: LedgerBalances, principal: float, requested_leverage: float | None) -> float:
    if requested_leverage is not None and requested_leverage > EPSILON:
        if requested_leverage > balances.available + EPSILON:
            raise InsufficientLeverage(
                f"融资额度不足, 需要 {requested_leverage:.2f}, 可用 {balances.available:.2f}"
            )
        need_cash = principal - requested_leverage
        if need_cash < -EPSILON:
            raise LedgerValidationError("leverage_used 不能超过交易本金")
        if need_cash > balances.cash + EPSILON:
            raise InsufficientFunds(f"现金余额不足, 需要 {need_cash:.2f}, 可用 {balances.cash:.2f}")
        balances.draw(requested_leverage)
        balances.cash -= max(0.0, need_cash)
        return requested_leverage

    if balances.cash + EPSILON >= principal:
        balances.cash -= principal
        return 0.0
    shortfall = principal - balances.cash
    if balances.available + EPSILON < shortfall:
        raise InsufficientFunds(
            f"现金与融资额度不足, 交易本金 {principal:.2f}, 现金 {balances.cash:.2f}, 可用融资 {balances.available:.2f}"
        )
    balances.cash = 0.0
    balances.draw(shortfall)
    return shortfall


def _apply_sell(balances: LedgerBalances, tx: Transaction) -> float:
    net = tx.amount - float(tx.commission or 0.0)
    repaid = max(0.0, min(net, balances.used)) if balances.used > EPSILON else 0.0
    balances.repay(repaid)
    balances.cash += net - repaid
    return repaid


def _apply_simple(balances: LedgerBalances, tx: Transaction) -> None:
    amount = tx.amount
    if tx.type in {"DEPOSIT", "DIVIDEND"}:
        balances.cash += amount
    elif tx.type in {"WITHDRAW", "LEVERAGE_COST"}:
        if balances.cash + EPSILON < amount:
            raise InsufficientFunds(f"现金余额不足, 需要 {amount:.2f}, 可用 {balances.cash:.2f}")
        balances.cash -= amount
    elif tx.type == "LEVERAGE_ADD":
        balances.total += amount
        balances.available += amount
    elif tx.type == "LEVERAGE_REMOVE":
        if balances.available + EPSILON < amount:
            raise InsufficientLeverage(f"可用融资额度不足, 需要 {amount:.2f}, 可用 {balances.available:.2f}")
        balances.total -= amount
        balances.available -= amount
    else:
        raise LedgerValidationError(f"不支持的交易类型: {tx.type}")


def apply_new(balances: LedgerBalances, draft: Transaction) -> Transaction:
    """Apply a freshly built transaction and return the record to store.

    ``balances`` is mutated in place; callers pass a copy and only keep it
    when this returns. BUY records the leverage actually drawn (commission
    shortfall included), SELL records the leverage it repaid.
    """
    record = draft.model_copy(deep=True)
    if draft.type == "BUY":
        commission = float(draft.commission or 0.0)
        drawn = _pay_commission(balances, commission)
        drawn += _pay_principal(balances, draft.amount - commission, draft.leverage_used)
        record.leverage_used = drawn if drawn > EPSILON else None
    elif draft.type == "SELL":
        repaid = _apply_sell(balances, draft)
        record.leverage_repaid = repaid if repaid > EPSILON else None
    else:
        _apply_simple(balances, draft)
    check_invariant(balances)
    return record


def replay(balances: LedgerBalances, tx: Transaction) -> None:
    """Re-apply a stored transaction during reconstruction.

    A BUY with a recorded leverage draw is replayed with exactly that split;
    older records without one go through the cash-first funding rules.
    """
    if tx.type == "BUY":
        drawn = float(tx.leverage_used or 0.0)
        if drawn > EPSILON:
            if drawn > balances.available + EPSILON:
                raise InsufficientLeverage(f"融资额度不足, 需要 {drawn:.2f}, 可用 {balances.available:.2f}")
            need_cash = tx.amount - drawn
            if need_cash > balances.cash + EPSILON:
                raise InsufficientFunds(f"现金余额不足, 需要 {need_cash:.2f}, 可用 {balances.cash:.2f}")
            balances.draw(drawn)
            balances.cash -= need_cash
        else:
            commission = float(tx.commission or 0.0)
            _pay_commission(balances, commission)
            _pay_principal(balances, tx.amount - commission, None)
    elif tx.type == "SELL":
        _apply_sell(balances, tx)
    else:
        _apply_simple(balances, tx)
    check_invariant(balances)


def reverse(balances: LedgerBalances, tx: Transaction) -> list[str]:
    """Undo a stored transaction's effect. Returns data-consistency warnings."""
    warnings: list[str] = []
    amount = tx.amount
    if tx.type == "BUY":
        credit = min(float(tx.leverage_used or 0.0), max(0.0, balances.used))
        balances.repay(credit)
        balances.cash += amount - credit
    elif tx.type == "SELL":
        net = amount - float(tx.commission or 0.0)
        repaid = float(tx.leverage_repaid or 0.0)
        if repaid > EPSILON:
            if balances.available + EPSILON < repaid:
                raise InsufficientLeverage(
                    f"撤销卖出需要重新借入 {repaid:.2f}, 可用融资 {balances.available:.2f}"
                )
            balances.draw(repaid)
        debit = net - repaid
        if balances.cash + EPSILON >= debit:
            balances.cash -= debit
        else:
            shortfall = debit - balances.cash
            if balances.available + EPSILON < shortfall:
                raise InsufficientFunds(
                    f"撤销卖出所需现金不足, 需要 {debit:.2f}, 现金 {balances.cash:.2f}, 可用融资 {balances.available:.2f}"
                )
            balances.cash = 0.0
            balances.draw(shortfall)
    elif tx.type == "DEPOSIT":
        if balances.cash + EPSILON < amount:
            raise InsufficientFunds(f"撤销入金所需现金不足, 需要 {amount:.2f}, 可用 {balances.cash:.2f}")
        balances.cash -= amount
    elif tx.type in {"WITHDRAW", "LEVERAGE_COST"}:
        balances.cash += amount
    elif tx.type == "LEVERAGE_ADD":
        if balances.available + EPSILON < amount:
            raise InsufficientLeverage(f"撤销融资额度需要可用额度 {amount:.2f}, 当前 {balances.available:.2f}")
        balances.total -= amount
        balances.available -= amount
    elif tx.type == "LEVERAGE_REMOVE":
        balances.total += amount
        balances.available += amount
    elif tx.type == "DIVIDEND":
        balances.cash -= amount
        if balances.cash < -EPSILON:
            message = f"撤销分红 {tx.id} 后现金为负: {balances.cash:.2f}"
            logger.warning(message)
            warnings.append(message)
    check_invariant(balances)
    return warnings


class LedgerEngine:
    """Applies and reverses transactions against a portfolio.

    Every operation works on a deep copy of the portfolio; the input is never
    touched, so a failed precondition leaves no partial state behind.
    """

    def __init__(
        self,
        rate_to_cny: Callable[[str | None], float],
        new_id: Callable[[], str] | None = None,
    ) -> None:
        self._rate_to_cny = rate_to_cny
        self._new_id = new_id or (lambda: uuid4().hex)

    def apply(self, portfolio: Portfolio, request: CreateTransactionRequest) -> tuple[Portfolio, Transaction]:
        draft = build_transaction(request, self._rate_to_cny, self._new_id())
        updated = portfolio.model_copy(deep=True)
        balances = LedgerBalances.from_portfolio(updated)
        record = apply_new(balances, draft)
        balances.write_to(updated)
        updated.transactions.append(record)
        logger.info(f"Applied {record.type} {record.id} to portfolio {portfolio.id}, cash={balances.cash:.2f}")
        return updated, record

    def reverse(self, portfolio: Portfolio, transaction_id: str) -> ReversalResult:
        index = next((i for i, tx in enumerate(portfolio.transactions) if tx.id == transaction_id), None)
        if index is None:
            raise NotFound("TRANSACTION_NOT_FOUND", f"交易记录不存在: {transaction_id}")
        updated = portfolio.model_copy(deep=True)
        removed = updated.transactions.pop(index)
        balances = LedgerBalances.from_portfolio(updated)
        warnings = reverse(balances, removed)
        balances.write_to(updated)
        logger.info(f"Reversed {removed.type} {removed.id} on portfolio {portfolio.id}, cash={balances.cash:.2f}")
        return ReversalResult(portfolio=updated, removed=removed, warnings=warnings)
