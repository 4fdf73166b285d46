from __future__ import annotations

import logging

from .ledger_engine import EPSILON, LedgerBalances, invariant_violations, replay
from ..errors import LedgerError
from ..models import Portfolio, ReconcileSkip, ReconcileStep, ReconciliationReport

logger = logging.getLogger(__name__)


def reconcile(portfolio: Portfolio) -> ReconciliationReport:
    """Replay the whole log from the opening balances and diff against storage.

    Read-only and total: a transaction whose preconditions fail during replay
    is skipped and listed, never aborting the run.
    """
    balances = LedgerBalances.opening(portfolio)
    steps: list[ReconcileStep] = []
    skipped: list[ReconcileSkip] = []

    for tx in portfolio.transactions:
        before = balances.copy()
        try:
            replay(balances, tx)
        except LedgerError as e:
            balances = before
            logger.warning(f"Reconcile skipped {tx.type} {tx.id} in portfolio {portfolio.id}: {e.message}")
            skipped.append(ReconcileSkip(transaction_id=tx.id, type=tx.type, reason=e.message))
            continue
        after = balances.to_state()
        steps.append(
            ReconcileStep(
                transaction_id=tx.id,
                type=tx.type,
                before=before.to_state(),
                after=after,
                expected=after,
            )
        )

    stored = LedgerBalances.from_portfolio(portfolio)
    diff = stored.cash - balances.cash
    leverage_diff = stored.used - balances.used
    report = ReconciliationReport(
        portfolio_id=portfolio.id,
        initial_cash=portfolio.initial_cash,
        stored_cash=stored.cash,
        recalculated_cash=round(balances.cash, 4),
        diff=round(diff, 4),
        stored_leverage=stored.to_state().leverage,
        recalculated_leverage=balances.to_state().leverage,
        leverage_diff=round(leverage_diff, 4),
        leverage_invariant_ok=not invariant_violations(stored),
        transaction_count=len(portfolio.transactions),
        replayed_count=len(steps),
        complete=not skipped,
        steps=steps,
        skipped=skipped,
    )
    if abs(diff) > EPSILON:
        logger.warning(f"Cash drift on portfolio {portfolio.id}: stored {stored.cash:.2f}, recalculated {balances.cash:.2f}")
    return report


def needs_correction(report: ReconciliationReport) -> bool:
    return abs(report.diff) > EPSILON or abs(report.leverage_diff) > EPSILON


def apply_correction(portfolio: Portfolio, report: ReconciliationReport) -> Portfolio:
    """Copy of ``portfolio`` with cash and leverage usage set to the replayed values."""
    corrected = portfolio.model_copy(deep=True)
    corrected.cash = report.recalculated_cash
    lev = report.recalculated_leverage
    corrected.leverage.total_amount = lev.total_amount
    corrected.leverage.used_amount = lev.used_amount
    corrected.leverage.available_amount = lev.available_amount
    return corrected
