"""Pooled (weighted-average) views over a symbol's open lots."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import pandas as pd

from .lots import OpenLot, TradeInput, reconstruct_open_lots
from .symbols import to_base_symbol
from .ticks import round_money


@dataclass
class PooledPositionSummary:
    symbol: str
    total_remaining_amount: float
    total_entry_value: float
    average_entry_price: float
    lot_count: int
    oldest_entry_date: pd.Timestamp
    newest_entry_date: pd.Timestamp


@dataclass
class CoinPoolView:
    """Snapshot of one symbol's pool at the last seen price."""

    symbol: str
    total_qty: float
    avg_entry: float
    last_price: float
    pool_pnl_pct: float
    current_value: float
    total_cost_basis: float

    @property
    def is_empty(self) -> bool:
        return self.total_qty <= 0


def calculate_pooled_summary(open_lots: Iterable[OpenLot]) -> Dict[str, PooledPositionSummary]:
    summaries: Dict[str, PooledPositionSummary] = {}
    for lot in open_lots:
        summary = summaries.get(lot.symbol)
        if summary is None:
            summaries[lot.symbol] = PooledPositionSummary(
                symbol=lot.symbol,
                total_remaining_amount=lot.remaining_amount,
                total_entry_value=lot.remaining_amount * lot.entry_price,
                average_entry_price=lot.entry_price,
                lot_count=1,
                oldest_entry_date=lot.entry_date,
                newest_entry_date=lot.entry_date,
            )
            continue
        summary.total_remaining_amount += lot.remaining_amount
        summary.total_entry_value += lot.remaining_amount * lot.entry_price
        summary.lot_count += 1
        summary.oldest_entry_date = min(summary.oldest_entry_date, lot.entry_date)
        summary.newest_entry_date = max(summary.newest_entry_date, lot.entry_date)

    for summary in summaries.values():
        if summary.total_remaining_amount > 0:
            summary.average_entry_price = summary.total_entry_value / summary.total_remaining_amount
        else:
            summary.average_entry_price = 0.0
    return summaries


def calculate_pooled_unrealized_pnl(open_lots: Iterable[OpenLot], current_price: float) -> Dict[str, float]:
    """Pooled unrealized P&L in cents over ``open_lots`` at ``current_price``."""

    total_entry = 0.0
    total_current = 0.0
    for lot in open_lots:
        total_entry += lot.remaining_amount * lot.entry_price
        total_current += lot.remaining_amount * current_price
    pnl = total_current - total_entry
    pct = (pnl / total_entry) * 100 if total_entry > 0 else 0.0
    return {
        "unrealized_pnl": round_money(pnl),
        "unrealized_pnl_pct": round_money(pct),
        "total_entry_value": round_money(total_entry),
        "total_current_value": round_money(total_current),
    }


def pool_view_from_lots(open_lots: Iterable[OpenLot], symbol: str, last_price: float) -> CoinPoolView:
    base = to_base_symbol(symbol)
    total_qty = 0.0
    cost_basis = 0.0
    for lot in open_lots:
        if lot.symbol != base:
            continue
        total_qty += lot.remaining_amount
        cost_basis += lot.remaining_amount * lot.entry_price
    if total_qty <= 0 or cost_basis <= 0:
        return CoinPoolView(base, 0.0, 0.0, last_price, 0.0, 0.0, 0.0)
    current_value = total_qty * last_price
    return CoinPoolView(
        symbol=base,
        total_qty=total_qty,
        avg_entry=cost_basis / total_qty,
        last_price=last_price,
        pool_pnl_pct=(current_value - cost_basis) / cost_basis * 100,
        current_value=current_value,
        total_cost_basis=cost_basis,
    )


def build_coin_pool_view(
    trades: Iterable[TradeInput],
    symbol: str,
    last_price: float,
    open_lots: Optional[Iterable[OpenLot]] = None,
) -> CoinPoolView:
    """Pool view for ``symbol`` built from the ledger's open lots."""

    if open_lots is None:
        open_lots = reconstruct_open_lots(trades, symbol)
    return pool_view_from_lots(open_lots, symbol, last_price)


__all__ = [
    "CoinPoolView",
    "PooledPositionSummary",
    "build_coin_pool_view",
    "calculate_pooled_summary",
    "calculate_pooled_unrealized_pnl",
    "pool_view_from_lots",
]
