import sys
from pathlib import Path

import pandas as pd
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lotengine.errors import ValidationError
from lotengine.lots import enrich_lots_with_unrealized_pnl, reconstruct_open_lots
from lotengine.orders import (
    build_full_flush_sell_orders,
    build_manual_lot_sell_order,
    build_manual_symbol_sell_orders,
    build_selective_tp_sell_orders,
    build_sell_orders_for_lots,
)


def _lots():
    trades = [
        {"id": "b1", "trade_type": "BUY", "symbol": "XRP", "amount": 100, "price": 1.00, "executed_at": "2024-01-01T00:00:00Z"},
        {"id": "b2", "trade_type": "BUY", "symbol": "XRP", "amount": 50, "price": 1.20, "executed_at": "2024-01-01T01:00:00Z"},
        {"id": "b3", "trade_type": "BUY", "symbol": "XRP", "amount": 80, "price": 0.90, "executed_at": "2024-01-01T02:00:00Z"},
    ]
    return reconstruct_open_lots(trades)


def test_fifo_orders_conserve_quantity():
    orders = build_sell_orders_for_lots(_lots(), 130)

    assert [(o.lot_id, o.amount) for o in orders] == [("b1", 100), ("b2", 30)]
    assert sum(o.amount for o in orders) == pytest.approx(130)
    assert orders[1].entry_value == pytest.approx(36.0)


def test_fifo_orders_stop_at_available_quantity():
    orders = build_sell_orders_for_lots(_lots(), 1000, current_price=1.1)

    assert sum(o.amount for o in orders) == pytest.approx(230)
    assert all(o.amount > 0 for o in orders)


def test_selective_tp_only_closes_qualifying_lots():
    now = pd.Timestamp("2024-01-01T03:00:00Z")
    lots = enrich_lots_with_unrealized_pnl(_lots(), 1.05, now=now)

    orders = build_selective_tp_sell_orders(lots, tp_threshold_pct=3.0, min_hold_ms=0)

    assert [o.lot_id for o in orders] == ["b1", "b3"]

    held_long = build_selective_tp_sell_orders(lots, tp_threshold_pct=3.0, min_hold_ms=2.5 * 3_600_000)
    assert [o.lot_id for o in held_long] == ["b1"]

    capped = build_selective_tp_sell_orders(lots, tp_threshold_pct=3.0, min_hold_ms=0, max_amount=120)
    assert [(o.lot_id, o.amount) for o in capped] == [("b1", 100), ("b3", 20)]


def test_full_flush_closes_every_lot_oldest_first():
    lots = list(reversed(_lots()))

    orders = build_full_flush_sell_orders(lots)

    assert [(o.lot_id, o.amount) for o in orders] == [("b1", 100), ("b2", 50), ("b3", 80)]


def test_manual_lot_order():
    lots = _lots()

    assert build_manual_lot_sell_order(lots, "b2").amount == pytest.approx(50)
    assert build_manual_lot_sell_order(lots, "b2", amount=500).amount == pytest.approx(50)
    assert build_manual_lot_sell_order(lots, "b3", amount=10).amount == pytest.approx(10)
    with pytest.raises(ValidationError):
        build_manual_lot_sell_order(lots, "nope")


def test_manual_symbol_orders_close_only_that_symbol():
    lots = _lots() + reconstruct_open_lots(
        [{"id": "e1", "trade_type": "BUY", "symbol": "ETH", "amount": 1, "price": 2000, "executed_at": "2024-01-01T00:30:00Z"}]
    )

    orders = build_manual_symbol_sell_orders(lots, "xrp-eur")

    assert [o.lot_id for o in orders] == ["b1", "b2", "b3"]
