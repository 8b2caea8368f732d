"""Turn exit decisions into per-lot SELL instructions."""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional

from .errors import ValidationError
from .lots import LOT_EPSILON, OpenLot
from .symbols import to_base_symbol

TP_SELECTIVE = "TP_SELECTIVE"
SL_FULL_FLUSH = "SL_FULL_FLUSH"
AUTO_CLOSE_ALL = "AUTO_CLOSE_ALL"
MANUAL_LOT = "MANUAL_LOT"
MANUAL_SYMBOL = "MANUAL_SYMBOL"
TRAIL_SELECTIVE = "TRAIL_SELECTIVE"
CLOSE_MODES = (TP_SELECTIVE, SL_FULL_FLUSH, AUTO_CLOSE_ALL, MANUAL_LOT, MANUAL_SYMBOL, TRAIL_SELECTIVE)


@dataclass(frozen=True)
class SellOrder:
    lot_id: str
    symbol: str
    amount: float
    entry_price: float
    entry_value: float

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def _order(lot: OpenLot, amount: float) -> SellOrder:
    return SellOrder(
        lot_id=lot.lot_id,
        symbol=lot.symbol,
        amount=amount,
        entry_price=lot.entry_price,
        entry_value=amount * lot.entry_price,
    )


def _fifo(lots: Iterable[OpenLot]) -> List[OpenLot]:
    return sorted(lots, key=lambda lot: (lot.entry_date, lot.lot_id))


def _consume(lots: Iterable[OpenLot], amount_to_sell: float) -> List[SellOrder]:
    orders: List[SellOrder] = []
    remaining = amount_to_sell
    for lot in lots:
        if remaining <= LOT_EPSILON:
            break
        take = min(remaining, lot.remaining_amount)
        if take > LOT_EPSILON:
            orders.append(_order(lot, take))
            remaining -= take
    return orders


def build_sell_orders_for_lots(
    open_lots: Iterable[OpenLot],
    amount_to_sell: float,
    current_price: Optional[float] = None,
) -> List[SellOrder]:
    """Spread ``amount_to_sell`` over lots in the given (FIFO) order.

    Sells at most what the lots hold; asking for more than the open quantity
    silently sells everything available. ``current_price`` is informational.
    """

    return _consume(open_lots, amount_to_sell)


def build_selective_tp_sell_orders(
    enriched_lots: Iterable[OpenLot],
    tp_threshold_pct: float,
    min_hold_ms: float,
    max_amount: Optional[float] = None,
) -> List[SellOrder]:
    """Close only lots that are both profitable enough and held long enough.

    Lots must carry ``unrealized_pnl_pct`` and ``age_ms``
    (see ``enrich_lots_with_unrealized_pnl``).
    """

    lots = list(enriched_lots)
    qualifying = _fifo(
        lot
        for lot in lots
        if (lot.unrealized_pnl_pct or 0.0) >= tp_threshold_pct and (lot.age_ms or 0.0) >= min_hold_ms
    )
    logging.info(
        "Selective TP: %d of %d lots qualify (threshold=%.4f%%, min_hold=%.0fms)",
        len(qualifying),
        len(lots),
        tp_threshold_pct,
        min_hold_ms,
    )
    return _consume(qualifying, math.inf if max_amount is None else max_amount)


def build_full_flush_sell_orders(open_lots: Iterable[OpenLot]) -> List[SellOrder]:
    """One order per lot for its full remaining amount, oldest first."""

    return [_order(lot, lot.remaining_amount) for lot in _fifo(open_lots) if lot.remaining_amount > LOT_EPSILON]


def build_manual_symbol_sell_orders(open_lots: Iterable[OpenLot], symbol: str) -> List[SellOrder]:
    """Close every open lot of one symbol at once."""

    base = to_base_symbol(symbol)
    return build_full_flush_sell_orders(lot for lot in open_lots if lot.symbol == base)


def build_manual_lot_sell_order(
    open_lots: Iterable[OpenLot],
    lot_id: str,
    amount: Optional[float] = None,
) -> SellOrder:
    for lot in open_lots:
        if lot.lot_id != lot_id:
            continue
        take = lot.remaining_amount if amount is None else min(amount, lot.remaining_amount)
        if take <= LOT_EPSILON:
            raise ValidationError(f"Nothing to sell from lot {lot_id}")
        return _order(lot, take)
    raise ValidationError(f"Lot {lot_id} is not open")


__all__ = [
    "AUTO_CLOSE_ALL",
    "CLOSE_MODES",
    "MANUAL_LOT",
    "MANUAL_SYMBOL",
    "SL_FULL_FLUSH",
    "SellOrder",
    "TP_SELECTIVE",
    "TRAIL_SELECTIVE",
    "build_full_flush_sell_orders",
    "build_manual_lot_sell_order",
    "build_manual_symbol_sell_orders",
    "build_selective_tp_sell_orders",
    "build_sell_orders_for_lots",
]
