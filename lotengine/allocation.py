"""Pro-rata attribution of one aggregate fill back to its contributing trades."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .ledger import Trade
from .lots import LOT_EPSILON, OpenLot
from .orders import SellOrder
from .ticks import tick_precision

Contributor = Union[Trade, OpenLot, Mapping[str, object]]


@dataclass(frozen=True)
class AllocationRecord:
    trade_id: str
    allocated_qty: float
    remaining_qty: float


def _contributor(item: Contributor, idx: int) -> Tuple[str, float]:
    if isinstance(item, OpenLot):
        return item.lot_id, float(item.remaining_amount)
    if isinstance(item, Trade):
        return item.id, float(item.amount)
    return str(item.get("id", idx)), float(item["amount"])  # type: ignore[arg-type]


def allocate_fill_pro_rata(
    fill_qty: float,
    open_trades: Sequence[Contributor],
    qty_tick: Optional[float],
) -> List[AllocationRecord]:
    """Split ``fill_qty`` across ``open_trades`` by size (largest remainder).

    Each share is floored to the quantity tick; the ticks lost to flooring go
    back one at a time to the largest fractional remainders, never past a
    trade's own amount. Records keep the input order.
    """

    if fill_qty <= 0 or not open_trades:
        return []
    ids, sizes = zip(*(_contributor(item, idx) for idx, item in enumerate(open_trades)))
    amounts = np.asarray(sizes, dtype=float)
    total = float(amounts.sum())
    if total <= 0:
        return []
    fill = min(float(fill_qty), total)
    raw = fill * amounts / total

    if not qty_tick or qty_tick <= 0:
        allocated = raw
    else:
        precision = tick_precision(qty_tick)
        raw_ticks = raw / qty_tick
        capacity = np.floor(amounts / qty_tick + 1e-9)
        ticks = np.minimum(np.floor(raw_ticks + 1e-9), capacity)
        remainders = raw_ticks - ticks
        target = min(int(math.floor(fill / qty_tick + 0.5)), int(capacity.sum()))
        shortfall = target - int(ticks.sum())
        order = np.argsort(-remainders, kind="stable")
        while shortfall > 0:
            progressed = False
            for i in order:
                if shortfall <= 0:
                    break
                if ticks[i] < capacity[i]:
                    ticks[i] += 1
                    shortfall -= 1
                    progressed = True
            if not progressed:
                break
        allocated = np.round(ticks * qty_tick, precision)

    return [
        AllocationRecord(trade_id=trade_id, allocated_qty=float(qty), remaining_qty=float(size - qty))
        for trade_id, size, qty in zip(ids, amounts, allocated)
    ]


def sell_orders_from_allocations(
    open_lots: Iterable[OpenLot],
    allocations: Iterable[AllocationRecord],
) -> List[SellOrder]:
    lots = {lot.lot_id: lot for lot in open_lots}
    orders: List[SellOrder] = []
    for record in allocations:
        lot = lots.get(record.trade_id)
        if lot is None or record.allocated_qty <= LOT_EPSILON:
            continue
        amount = min(record.allocated_qty, lot.remaining_amount)
        orders.append(
            SellOrder(
                lot_id=lot.lot_id,
                symbol=lot.symbol,
                amount=amount,
                entry_price=lot.entry_price,
                entry_value=amount * lot.entry_price,
            )
        )
    return orders


__all__ = ["AllocationRecord", "allocate_fill_pro_rata", "sell_orders_from_allocations"]
