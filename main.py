"""Run one exit cycle for a strategy over a ledger export and print the SELL orders."""

from __future__ import annotations

import argparse
import json
import logging

from lotengine.config import MODE_FIFO, MODE_POOL, load_settings
from lotengine.ledger import load_trades_csv
from lotengine.locks import SymbolLocks
from lotengine.manager import PoolExitManager, plan_lot_exits
from lotengine.pool_store import PoolStateStore


def run(cfg_path, trades_path, strategy_id, symbol, price, user_id=None, mode=None):
    settings = load_settings(cfg_path)
    strategy = settings.strategy(strategy_id, symbol)
    user = user_id or strategy.user_id
    trades = [
        t
        for t in load_trades_csv(trades_path)
        if (not t.user_id or t.user_id == user) and (not t.strategy_id or t.strategy_id == strategy.strategy_id)
    ]
    activity = []

    if (mode or strategy.accounting_mode) == MODE_POOL:
        manager = PoolExitManager(
            PoolStateStore(settings.pool_state_dir),
            SymbolLocks(settings.lock_timeout_seconds),
            activity_logger=activity.append,
        )
        result = manager.process_pool(user, strategy.strategy_id, symbol, trades, price, strategy.pool)
        output = {
            "mode": MODE_POOL,
            "symbol": result.symbol,
            "action": result.action,
            "reason": result.reason,
            "saved": result.saved,
            "unsold_qty": result.unsold_qty,
            "orders": [o.to_dict() for o in result.orders],
            "state": result.state.to_dict() if result.state else None,
        }
    else:
        plan = plan_lot_exits(trades, price, strategy.lot, symbol, activity_logger=activity.append)
        output = {
            "mode": MODE_FIFO,
            "symbol": plan.symbol,
            "close_mode": plan.close_mode,
            "orders": [o.to_dict() for o in plan.orders],
            "decisions": [d.to_event() for d in plan.decisions],
        }
    output["activity"] = activity
    print(json.dumps(output, ensure_ascii=False, indent=2, default=str))
    return output


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    ap = argparse.ArgumentParser(description="Evaluate pool or per-lot exits for one symbol")
    ap.add_argument("--config", default="config.yaml")
    ap.add_argument("--trades", required=True, help="Ledger CSV export")
    ap.add_argument("--strategy", required=True)
    ap.add_argument("--symbol", required=True)
    ap.add_argument("--price", type=float, required=True, help="Current market price")
    ap.add_argument("--user", default=None, help="Override the strategy's user_id")
    ap.add_argument("--mode", choices=["pool", "fifo"], default=None, help="Override accounting_mode")
    args = ap.parse_args()
    run(args.config, args.trades, args.strategy, args.symbol, args.price, args.user, args.mode)
