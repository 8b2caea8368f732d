import sys
from pathlib import Path

import pandas as pd

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lotengine.lots import reconstruct_lots
from lotengine.report import closed_lots_frame, open_lots_frame, realized_by_symbol, render_lot_report, render_table, save_outputs

TRADES = [
    {"id": "b1", "trade_type": "BUY", "symbol": "XRP", "amount": 100, "price": 1.0, "executed_at": "2024-01-01T00:00:00Z"},
    {"id": "b2", "trade_type": "BUY", "symbol": "XRP", "amount": 100, "price": 2.0, "executed_at": "2024-01-01T01:00:00Z"},
    {"id": "s1", "trade_type": "SELL", "symbol": "XRP", "amount": 150, "price": 3.0, "executed_at": "2024-01-01T02:00:00Z"},
    {"id": "s2", "trade_type": "SELL", "symbol": "XRP", "amount": 30, "price": 3.0, "executed_at": "2024-01-01T03:00:00Z"},
    {"id": "s3", "trade_type": "SELL", "symbol": "ETH", "amount": 1, "price": 2000.0, "executed_at": "2024-01-01T04:00:00Z"},
]


def test_render_table_aligns_columns():
    table = render_table(["A", "Long"], [["xyz", "1"]])

    assert table.splitlines() == ["A   | Long", "--- | ----", "xyz | 1   "]
    assert render_table(["A"], []) == "(no data)"


def test_frames_and_realized_totals():
    recon = reconstruct_lots(TRADES)

    open_df = open_lots_frame(recon.open_lots)
    closed_df = closed_lots_frame(recon.closed_lots)

    assert list(open_df["lot_id"]) == ["b2"]
    assert open_df.loc[0, "remaining_amount"] == 20
    assert list(closed_df["lot_id"]) == ["b1", "b2", "b2"]
    assert realized_by_symbol(recon.closed_lots) == {"XRP": 280.0}
    assert open_lots_frame([]).empty


def test_report_lists_discrepancies():
    recon = reconstruct_lots(TRADES)

    report = render_lot_report(recon, {"XRP": 2.5})

    assert "Open lots" in report
    assert "Pooled positions" in report
    assert "XRP: 280.00" in report
    assert "Ledger discrepancies" in report
    assert "OVERSELL" in report
    assert "10.00 (25.00%)" in report


def test_save_outputs_writes_csv(tmp_path: Path):
    recon = reconstruct_lots(TRADES)

    save_outputs(str(tmp_path), recon)

    assert len(pd.read_csv(tmp_path / "lots_closed.csv")) == 3
    assert pd.read_csv(tmp_path / "lots_discrepancies.csv")["kind"].tolist() == ["OVERSELL"]
    assert (tmp_path / "lots_open.csv").exists()
