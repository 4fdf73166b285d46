from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from ..markets import market_from_code, normalize_asset_code
from ..models import Asset, Position, SkippedTransaction, Transaction
from ..utils.time_utils import parse_timestamp

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Holding:
    code: str
    quantity: float = 0.0
    total_cost: float = 0.0


@dataclass(slots=True)
class PositionBuildResult:
    positions: list[Position] = field(default_factory=list)
    skipped: list[SkippedTransaction] = field(default_factory=list)


def build_positions(transactions: Iterable[Transaction], cutoff: datetime | None = None) -> PositionBuildResult:
    """Fold BUY/SELL transactions, in log order, into weighted-cost holdings.

    Cost excludes commission. A sell that exceeds the held quantity clamps the
    quantity at zero and is reported in ``skipped`` with OVERSOLD_CLAMPED.
    When ``cutoff`` is given, transactions dated after it are ignored.
    """
    holdings: dict[str, _Holding] = {}
    skipped: list[SkippedTransaction] = []

    for tx in transactions:
        if tx.type not in {"BUY", "SELL"}:
            continue
        if cutoff is not None:
            tx_time = parse_timestamp(tx.date)
            if tx_time is None or tx_time > cutoff:
                continue
        code = normalize_asset_code(tx.asset_code)
        if market_from_code(code) is None:
            logger.warning(f"Skipping transaction {tx.id}: unrecognized asset code {tx.asset_code!r}")
            skipped.append(
                SkippedTransaction(transaction_id=tx.id, asset_code=tx.asset_code, reason="UNRECOGNIZED_ASSET_CODE")
            )
            continue

        quantity = float(tx.quantity or 0.0)
        price = float(tx.price or 0.0)
        holding = holdings.setdefault(code, _Holding(code=code))
        if tx.type == "BUY":
            holding.quantity += quantity
            holding.total_cost += quantity * price
        else:
            holding.quantity -= quantity
            holding.total_cost -= quantity * price
            if holding.quantity < 0:
                logger.warning(f"Overselling {code} in transaction {tx.id}, clamping quantity to 0")
                holding.quantity = 0.0
                skipped.append(SkippedTransaction(transaction_id=tx.id, asset_code=code, reason="OVERSOLD_CLAMPED"))

    positions: list[Position] = []
    for holding in holdings.values():
        if holding.quantity <= 0:
            continue
        positions.append(
            Position(
                asset=Asset(code=holding.code, market=market_from_code(holding.code)),
                quantity=holding.quantity,
                cost_price=holding.total_cost / holding.quantity,
                total_cost=holding.total_cost,
            )
        )
    return PositionBuildResult(positions=positions, skipped=skipped)
