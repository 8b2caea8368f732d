"""CLI helper to summarise open lots, realised P&L and ledger discrepancies."""

from __future__ import annotations

import argparse

from lotengine.ledger import load_trades_csv
from lotengine.lots import reconstruct_lots
from lotengine.report import render_lot_report, save_outputs
from lotengine.symbols import to_base_symbol


def _parse_prices(values):
    prices = {}
    for item in values or []:
        symbol, _, price = item.partition("=")
        if not price:
            raise SystemExit(f"--price expects SYMBOL=PRICE, got {item!r}")
        prices[to_base_symbol(symbol)] = float(price)
    return prices


def main() -> None:
    parser = argparse.ArgumentParser(description="Rebuild lots from a ledger export")
    parser.add_argument("trades", help="Ledger CSV export")
    parser.add_argument("--symbol", default=None, help="Restrict to one symbol")
    parser.add_argument("--price", action="append", help="Current price as SYMBOL=PRICE (repeatable)")
    parser.add_argument("--out-dir", default=None, help="Also write CSV tables to this directory")
    args = parser.parse_args()

    recon = reconstruct_lots(load_trades_csv(args.trades), args.symbol)
    print(render_lot_report(recon, _parse_prices(args.price)))
    if args.out_dir:
        save_outputs(args.out_dir, recon)


if __name__ == "__main__":
    main()
