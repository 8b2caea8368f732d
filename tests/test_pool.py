import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lotengine.lots import reconstruct_open_lots
from lotengine.pool import build_coin_pool_view, calculate_pooled_summary, calculate_pooled_unrealized_pnl


def _buy(trade_id, amount, price, minute, symbol="XRP"):
    return {
        "id": trade_id,
        "trade_type": "BUY",
        "cryptocurrency": symbol,
        "amount": amount,
        "price": price,
        "executed_at": f"2024-01-01T00:{minute:02d}:00Z",
    }


XRP_TRADES = [_buy("b1", 400, 0.5, 0), _buy("b2", 600, 0.5, 1)]


def test_coin_pool_view_for_two_buys():
    pool = build_coin_pool_view(XRP_TRADES, "XRP-EUR", 0.5035)

    assert pool.symbol == "XRP"
    assert pool.total_qty == pytest.approx(1000)
    assert pool.avg_entry == pytest.approx(0.5)
    assert pool.pool_pnl_pct == pytest.approx(0.7)
    assert pool.current_value == pytest.approx(503.5)
    assert pool.total_cost_basis == pytest.approx(500)


def test_coin_pool_view_shrinks_after_sells():
    trades = XRP_TRADES + [
        {
            "id": "s1",
            "trade_type": "SELL",
            "cryptocurrency": "XRP",
            "amount": 400,
            "price": 0.51,
            "executed_at": "2024-01-01T00:05:00Z",
        }
    ]

    pool = build_coin_pool_view(trades, "XRP", 0.5)

    assert pool.total_qty == pytest.approx(600)
    assert pool.pool_pnl_pct == pytest.approx(0.0)


def test_empty_pool_view():
    pool = build_coin_pool_view([], "XRP", 0.5)

    assert pool.is_empty
    assert pool.pool_pnl_pct == 0.0


def test_pooled_summary_weights_by_remaining_amount():
    lots = reconstruct_open_lots(
        [_buy("b1", 100, 1.0, 0), _buy("b2", 300, 2.0, 1), _buy("e1", 1, 3000, 2, symbol="ETH")]
    )

    summaries = calculate_pooled_summary(lots)

    xrp = summaries["XRP"]
    assert xrp.lot_count == 2
    assert xrp.total_remaining_amount == pytest.approx(400)
    assert xrp.total_entry_value == pytest.approx(700)
    assert xrp.average_entry_price == pytest.approx(1.75)
    assert xrp.oldest_entry_date < xrp.newest_entry_date
    assert summaries["ETH"].lot_count == 1


def test_pooled_unrealized_pnl_rounds_to_cents():
    lots = reconstruct_open_lots([_buy("b1", 3, 1.0, 0), _buy("b2", 3, 1.01, 1)])

    pnl = calculate_pooled_unrealized_pnl(lots, 1.0117)

    assert pnl == {
        "unrealized_pnl": 0.04,
        "unrealized_pnl_pct": 0.67,
        "total_entry_value": 6.03,
        "total_current_value": 6.07,
    }
