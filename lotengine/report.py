"""Text and CSV reports over reconstructed lots."""
from __future__ import annotations

import os
from dataclasses import asdict
from typing import Dict, Iterable, List, Optional, Sequence

import pandas as pd

from .lots import ClosedLot, LedgerDiscrepancy, LotReconstruction, OpenLot
from .pool import PooledPositionSummary, calculate_pooled_summary, calculate_pooled_unrealized_pnl

OPEN_LOT_COLUMNS = [
    "lot_id",
    "symbol",
    "entry_date",
    "entry_price",
    "original_amount",
    "sold_amount",
    "remaining_amount",
    "entry_value",
]
CLOSED_LOT_COLUMNS = [
    "lot_id",
    "symbol",
    "sell_trade_id",
    "entry_date",
    "exit_date",
    "amount",
    "entry_price",
    "exit_price",
    "realized_pnl",
    "realized_pnl_pct",
]


def open_lots_frame(open_lots: Iterable[OpenLot]) -> pd.DataFrame:
    rows = [asdict(lot) for lot in open_lots]
    if not rows:
        return pd.DataFrame(columns=OPEN_LOT_COLUMNS)
    return pd.DataFrame(rows)


def closed_lots_frame(closed_lots: Iterable[ClosedLot]) -> pd.DataFrame:
    rows = [asdict(lot) for lot in closed_lots]
    if not rows:
        return pd.DataFrame(columns=CLOSED_LOT_COLUMNS)
    return pd.DataFrame(rows)[CLOSED_LOT_COLUMNS]


def realized_by_symbol(closed_lots: Iterable[ClosedLot]) -> Dict[str, float]:
    frame = closed_lots_frame(closed_lots)
    if frame.empty:
        return {}
    totals = frame.groupby("symbol")["realized_pnl"].sum()
    return {str(symbol): round(float(value), 2) for symbol, value in totals.items()}


def render_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    if not rows:
        return "(no data)"
    table_rows = [list(headers)] + [list(r) for r in rows]
    widths = [max(len(str(col)) for col in column) for column in zip(*table_rows)]

    def fmt_line(values: Sequence[str]) -> str:
        return " | ".join(str(val).ljust(width) for val, width in zip(values, widths))

    lines = [fmt_line(headers), fmt_line(["-" * w for w in widths])]
    lines.extend(fmt_line(r) for r in table_rows[1:])
    return "\n".join(lines)


def _date(ts: pd.Timestamp) -> str:
    return ts.strftime("%Y-%m-%d %H:%M:%S")


def render_open_lots(open_lots: Sequence[OpenLot]) -> str:
    rows = [
        [
            lot.lot_id,
            lot.symbol,
            _date(lot.entry_date),
            f"{lot.entry_price:,.6f}",
            f"{lot.original_amount:,.8f}",
            f"{lot.remaining_amount:,.8f}",
        ]
        for lot in open_lots
    ]
    return render_table(["Lot", "Symbol", "Entry date", "Entry", "Original", "Remaining"], rows)


def render_closed_lots(closed_lots: Sequence[ClosedLot]) -> str:
    rows = [
        [
            c.lot_id,
            c.sell_trade_id,
            c.symbol,
            f"{c.amount:,.8f}",
            f"{c.entry_price:,.6f}",
            f"{c.exit_price:,.6f}",
            f"{c.realized_pnl:,.2f}",
            f"{c.realized_pnl_pct:,.2f}%",
        ]
        for c in closed_lots
    ]
    return render_table(["Lot", "Sell", "Symbol", "Amount", "Entry", "Exit", "Realized", "Pct"], rows)


def render_pooled(summaries: Dict[str, PooledPositionSummary], open_lots: Sequence[OpenLot], prices: Dict[str, float]) -> str:
    rows: List[List[str]] = []
    for symbol, summary in sorted(summaries.items()):
        price = prices.get(symbol)
        pnl = "-"
        if price:
            pooled = calculate_pooled_unrealized_pnl([lot for lot in open_lots if lot.symbol == symbol], price)
            pnl = f"{pooled['unrealized_pnl']:,.2f} ({pooled['unrealized_pnl_pct']:,.2f}%)"
        rows.append(
            [
                symbol,
                str(summary.lot_count),
                f"{summary.total_remaining_amount:,.8f}",
                f"{summary.average_entry_price:,.6f}",
                f"{summary.total_entry_value:,.2f}",
                f"{price:,.6f}" if price else "-",
                pnl,
            ]
        )
    return render_table(["Symbol", "Lots", "Qty", "Avg entry", "Cost", "Price", "Unrealized"], rows)


def render_discrepancies(discrepancies: Sequence[LedgerDiscrepancy]) -> str:
    rows = [
        [d.kind, d.symbol, d.sell_trade_id, d.lot_id or "-", f"{d.unattributed_amount:,.8f}"]
        for d in discrepancies
    ]
    return render_table(["Kind", "Symbol", "Sell", "Lot", "Unattributed"], rows)


def render_lot_report(recon: LotReconstruction, prices: Optional[Dict[str, float]] = None) -> str:
    prices = prices or {}
    realized = realized_by_symbol(recon.closed_lots)
    sections = [
        "Open lots",
        render_open_lots(recon.open_lots),
        "",
        "Pooled positions",
        render_pooled(calculate_pooled_summary(recon.open_lots), recon.open_lots, prices),
        "",
        "Closed lots",
        render_closed_lots(recon.closed_lots),
        "",
        "Realized total: " + (", ".join(f"{k}: {v:,.2f}" for k, v in sorted(realized.items())) or "0.00"),
    ]
    if recon.discrepancies:
        sections.extend(["", "Ledger discrepancies", render_discrepancies(recon.discrepancies)])
    return "\n".join(sections)


def save_outputs(out_dir: str, recon: LotReconstruction, prefix: str = "lots") -> None:
    os.makedirs(out_dir, exist_ok=True)
    open_lots_frame(recon.open_lots).to_csv(os.path.join(out_dir, f"{prefix}_open.csv"), index=False)
    closed_lots_frame(recon.closed_lots).to_csv(os.path.join(out_dir, f"{prefix}_closed.csv"), index=False)
    pd.DataFrame([asdict(d) for d in recon.discrepancies]).to_csv(
        os.path.join(out_dir, f"{prefix}_discrepancies.csv"), index=False
    )


__all__ = [
    "closed_lots_frame",
    "open_lots_frame",
    "realized_by_symbol",
    "render_lot_report",
    "render_table",
    "save_outputs",
]
