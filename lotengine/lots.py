"""Rebuild open and closed lots from the trade ledger.

A lot is the unsold remainder of one BUY. SELLs tagged with
``original_trade_id`` draw from that lot directly; untagged SELLs are matched
against the oldest lots first (FIFO). Nothing here is persisted: every call
re-derives the lots from the full ledger of a (user, strategy, symbol) scope.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional, Union

import pandas as pd

from .activity import ActivityLogger, log_activity
from .ledger import Trade, coerce_trades, fifo_key, to_timestamp, utc_now
from .symbols import to_base_symbol
from .ticks import round_money

LOT_EPSILON = 1e-8

OVERSELL = "OVERSELL"
LOT_OVERSOLD = "LOT_OVERSOLD"
UNKNOWN_LOT = "UNKNOWN_LOT"

TradeInput = Union[Trade, Mapping[str, object]]


@dataclass
class OpenLot:
    lot_id: str
    symbol: str
    entry_price: float
    entry_date: pd.Timestamp
    original_amount: float
    sold_amount: float
    remaining_amount: float
    entry_value: float
    unrealized_pnl: Optional[float] = None
    unrealized_pnl_pct: Optional[float] = None
    age_ms: Optional[float] = None

    @property
    def remaining_value(self) -> float:
        return self.remaining_amount * self.entry_price


@dataclass(frozen=True)
class ClosedLot:
    """Realized slice of a lot consumed by one SELL."""

    lot_id: str
    symbol: str
    entry_price: float
    exit_price: float
    entry_date: pd.Timestamp
    exit_date: pd.Timestamp
    amount: float
    realized_pnl: float
    realized_pnl_pct: float
    sell_trade_id: str


@dataclass(frozen=True)
class LedgerDiscrepancy:
    """SELL quantity that could not be attributed to any open lot."""

    kind: str
    symbol: str
    sell_trade_id: str
    unattributed_amount: float
    lot_id: Optional[str] = None

    def to_event(self) -> Dict[str, object]:
        return {
            "event": "LEDGER_DISCREPANCY",
            "kind": self.kind,
            "symbol": self.symbol,
            "sell_trade_id": self.sell_trade_id,
            "lot_id": self.lot_id,
            "unattributed_amount": self.unattributed_amount,
        }


@dataclass
class LotReconstruction:
    open_lots: List[OpenLot] = field(default_factory=list)
    closed_lots: List[ClosedLot] = field(default_factory=list)
    discrepancies: List[LedgerDiscrepancy] = field(default_factory=list)

    @property
    def is_reconciled(self) -> bool:
        return not self.discrepancies

    def remaining_by_symbol(self) -> Dict[str, float]:
        totals: Dict[str, float] = {}
        for lot in self.open_lots:
            totals[lot.symbol] = totals.get(lot.symbol, 0.0) + lot.remaining_amount
        return totals


def calculate_lot_pnl(sell_amount: float, entry_price: float, exit_price: float) -> Dict[str, float]:
    entry_value = sell_amount * entry_price
    realized = sell_amount * exit_price - entry_value
    pct = (realized / entry_value) * 100 if entry_value > 0 else 0.0
    return {"realized_pnl": round_money(realized), "realized_pnl_pct": round_money(pct)}


def _close(buy: Trade, sell: Trade, amount: float) -> ClosedLot:
    pnl = calculate_lot_pnl(amount, buy.price, sell.price)
    return ClosedLot(
        lot_id=buy.id,
        symbol=buy.base_symbol,
        entry_price=buy.price,
        exit_price=sell.price,
        entry_date=buy.executed_at,
        exit_date=sell.executed_at,
        amount=amount,
        realized_pnl=pnl["realized_pnl"],
        realized_pnl_pct=pnl["realized_pnl_pct"],
        sell_trade_id=sell.id,
    )


def reconstruct_lots(
    trades: Iterable[TradeInput],
    symbol_filter: Optional[str] = None,
    *,
    activity_logger: Optional[ActivityLogger] = None,
) -> LotReconstruction:
    """Derive open lots, closed lots and unattributed SELLs in one pass."""

    wanted = to_base_symbol(symbol_filter) if symbol_filter else None
    scoped = [t for t in coerce_trades(trades) if wanted is None or t.base_symbol == wanted]

    buys_by_symbol: Dict[str, List[Trade]] = {}
    buys_by_id: Dict[str, Trade] = {}
    tagged: List[Trade] = []
    untagged: List[Trade] = []
    for trade in sorted(scoped, key=fifo_key):
        if trade.is_buy:
            buys_by_symbol.setdefault(trade.base_symbol, []).append(trade)
            buys_by_id[trade.id] = trade
        elif trade.original_trade_id:
            tagged.append(trade)
        else:
            untagged.append(trade)

    sold: Dict[str, float] = {lot_id: 0.0 for lot_id in buys_by_id}
    result = LotReconstruction()

    for sell in tagged:
        buy = buys_by_id.get(sell.original_trade_id or "")
        if buy is None or buy.base_symbol != sell.base_symbol:
            result.discrepancies.append(
                LedgerDiscrepancy(UNKNOWN_LOT, sell.base_symbol, sell.id, sell.amount, sell.original_trade_id)
            )
            continue
        available = max(buy.amount - sold[buy.id], 0.0)
        take = min(sell.amount, available)
        if take > LOT_EPSILON:
            sold[buy.id] += take
            result.closed_lots.append(_close(buy, sell, take))
        excess = sell.amount - take
        if excess > LOT_EPSILON:
            result.discrepancies.append(LedgerDiscrepancy(LOT_OVERSOLD, sell.base_symbol, sell.id, excess, buy.id))

    for sell in untagged:
        remaining = sell.amount
        for buy in buys_by_symbol.get(sell.base_symbol, []):
            if remaining <= LOT_EPSILON:
                break
            available = buy.amount - sold[buy.id]
            if available <= LOT_EPSILON:
                continue
            take = min(remaining, available)
            sold[buy.id] += take
            remaining -= take
            result.closed_lots.append(_close(buy, sell, take))
        if remaining > LOT_EPSILON:
            result.discrepancies.append(LedgerDiscrepancy(OVERSELL, sell.base_symbol, sell.id, remaining))

    for buys in buys_by_symbol.values():
        for buy in buys:
            sold_amount = min(sold[buy.id], buy.amount)
            remaining = buy.amount - sold_amount
            if remaining > LOT_EPSILON:
                result.open_lots.append(
                    OpenLot(
                        lot_id=buy.id,
                        symbol=buy.base_symbol,
                        entry_price=buy.price,
                        entry_date=buy.executed_at,
                        original_amount=buy.amount,
                        sold_amount=sold_amount,
                        remaining_amount=remaining,
                        entry_value=buy.total_value,
                    )
                )

    result.open_lots.sort(key=lambda lot: (lot.entry_date, lot.lot_id))
    result.closed_lots.sort(key=lambda c: (c.exit_date, c.sell_trade_id, c.entry_date, c.lot_id))

    for discrepancy in result.discrepancies:
        logging.warning(
            "Ledger discrepancy %s for %s: SELL %s leaves %.8f unattributed",
            discrepancy.kind,
            discrepancy.symbol,
            discrepancy.sell_trade_id,
            discrepancy.unattributed_amount,
        )
        log_activity(activity_logger, discrepancy.to_event())
    return result


def reconstruct_open_lots(
    trades: Iterable[TradeInput],
    symbol_filter: Optional[str] = None,
    *,
    activity_logger: Optional[ActivityLogger] = None,
) -> List[OpenLot]:
    """Open lots in FIFO order (oldest entry first)."""

    return reconstruct_lots(trades, symbol_filter, activity_logger=activity_logger).open_lots


def reconstruct_closed_lots(
    trades: Iterable[TradeInput],
    symbol_filter: Optional[str] = None,
    *,
    activity_logger: Optional[ActivityLogger] = None,
) -> List[ClosedLot]:
    return reconstruct_lots(trades, symbol_filter, activity_logger=activity_logger).closed_lots


def calculate_net_position_from_trades(trades: Iterable[TradeInput], symbol: str) -> float:
    """Sum of BUY amounts minus SELL amounts for ``symbol``."""

    base = to_base_symbol(symbol)
    net = 0.0
    for trade in coerce_trades(trades):
        if trade.base_symbol != base:
            continue
        net += trade.amount if trade.is_buy else -trade.amount
    return net


def check_net_position(
    trades: Iterable[TradeInput],
    symbol: str,
    open_lots: Optional[List[OpenLot]] = None,
) -> float:
    """Return ledger net position minus the open lot total (0 when reconciled)."""

    trades = coerce_trades(trades)
    base = to_base_symbol(symbol)
    if open_lots is None:
        open_lots = reconstruct_open_lots(trades, base)
    lot_total = sum(lot.remaining_amount for lot in open_lots if lot.symbol == base)
    drift = calculate_net_position_from_trades(trades, base) - lot_total
    if abs(drift) > LOT_EPSILON:
        logging.warning("Net position drift for %s: ledger-lots=%.8f", base, drift)
    return drift


def enrich_lots_with_unrealized_pnl(
    open_lots: Iterable[OpenLot],
    current_price: float,
    now: Optional[object] = None,
) -> List[OpenLot]:
    """Copy lots with per-lot unrealized P&L and age attached."""

    now_ts = to_timestamp(now) if now is not None else utc_now()
    enriched: List[OpenLot] = []
    for lot in open_lots:
        entry_value = lot.remaining_amount * lot.entry_price
        pnl = lot.remaining_amount * current_price - entry_value
        pct = (pnl / entry_value) * 100 if entry_value > 0 else 0.0
        enriched.append(
            replace(
                lot,
                unrealized_pnl=round_money(pnl),
                unrealized_pnl_pct=round_money(pct),
                age_ms=(now_ts - lot.entry_date).total_seconds() * 1000.0,
            )
        )
    return enriched


__all__ = [
    "ClosedLot",
    "LOT_EPSILON",
    "LOT_OVERSOLD",
    "LedgerDiscrepancy",
    "LotReconstruction",
    "OVERSELL",
    "OpenLot",
    "UNKNOWN_LOT",
    "calculate_lot_pnl",
    "calculate_net_position_from_trades",
    "check_net_position",
    "enrich_lots_with_unrealized_pnl",
    "reconstruct_closed_lots",
    "reconstruct_lots",
    "reconstruct_open_lots",
]
