"""Exit cycles: pooled secure/runner management and per-lot exits.

``PoolExitManager.process_pool`` runs one guarded cycle for a (user,
strategy, symbol): take the per-symbol lock, read the pool state, evaluate
the pool policies, write the state back and only then hand out the SELL
orders. ``plan_lot_exits`` is the stateless per-lot counterpart.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .activity import ActivityLogger, log_activity
from .allocation import AllocationRecord, allocate_fill_pro_rata, sell_orders_from_allocations
from .errors import LockTimeout
from .exits import (
    AUTO_CLOSE_TIME,
    STOP_LOSS,
    TAKE_PROFIT,
    TRAILING_STOP,
    ExitDecision,
    LotExitConfig,
    PoolConfig,
    PoolState,
    evaluate_lot_exit,
    initialize_pool_state,
    next_trailing_stop,
    pool_key,
    should_arm_runner,
    should_trigger_pool_stop_loss,
    should_trigger_secure,
    should_trigger_trailing_stop,
)
from .ledger import to_timestamp, utc_now
from .locks import SymbolLocks
from .lots import LOT_EPSILON, LedgerDiscrepancy, OpenLot, TradeInput, enrich_lots_with_unrealized_pnl, reconstruct_lots
from .orders import (
    AUTO_CLOSE_ALL,
    SL_FULL_FLUSH,
    TP_SELECTIVE,
    TRAIL_SELECTIVE,
    SellOrder,
    build_full_flush_sell_orders,
    build_selective_tp_sell_orders,
)
from .pool import CoinPoolView, pool_view_from_lots
from .pool_store import PoolStateStore
from .symbols import to_base_symbol
from .ticks import meets_min_notional, round_to_tick

ACTION_NONE = "NONE"
ACTION_SKIPPED = "SKIPPED"
ACTION_POOL_STOP_LOSS = "POOL_STOP_LOSS"
ACTION_SECURE_EXIT = "SECURE_EXIT"
ACTION_RUNNER_ARMED = "RUNNER_ARMED"
ACTION_TRAIL_UPDATED = "TRAIL_UPDATED"
ACTION_RUNNER_EXIT = "RUNNER_EXIT"


@dataclass
class PoolCycleResult:
    symbol: str
    action: str = ACTION_NONE
    orders: List[SellOrder] = field(default_factory=list)
    allocations: List[AllocationRecord] = field(default_factory=list)
    state: Optional[PoolState] = None
    saved: bool = True
    reason: str = ""
    pool: Optional[CoinPoolView] = None
    discrepancies: List[LedgerDiscrepancy] = field(default_factory=list)
    unsold_qty: float = 0.0


def _pool_exit(lots: List[OpenLot], qty: float, cfg: PoolConfig) -> Tuple[List[AllocationRecord], List[SellOrder], float]:
    """Allocate ``qty`` over the lots; returns allocations, orders and the quantity actually ordered.

    Each lot can only give whole ticks of its own remainder, so the ordered
    quantity may fall short of ``qty`` when remainders sit off the tick grid.
    """

    allocations = allocate_fill_pro_rata(qty, lots, cfg.qty_tick)
    orders = sell_orders_from_allocations(lots, allocations)
    return allocations, orders, round_to_tick(sum(o.amount for o in orders), cfg.qty_tick)


def _state_fingerprint(state: PoolState) -> Dict[str, Any]:
    payload = state.to_dict()
    payload.pop("updated_at", None)
    return payload


class PoolExitManager:
    """Secure-then-runner exit management over pooled lots."""

    def __init__(
        self,
        store: PoolStateStore,
        locks: Optional[SymbolLocks] = None,
        *,
        lock_timeout: Optional[float] = None,
        activity_logger: Optional[ActivityLogger] = None,
    ):
        self.store = store
        self.locks = locks or SymbolLocks()
        self.lock_timeout = lock_timeout
        self.activity_logger = activity_logger

    def process_pool(
        self,
        user_id: str,
        strategy_id: str,
        symbol: str,
        trades: Iterable[TradeInput],
        current_price: Optional[float],
        config: PoolConfig,
    ) -> PoolCycleResult:
        base = to_base_symbol(symbol)
        if not config.pool_enabled:
            return PoolCycleResult(base, ACTION_SKIPPED, reason="POOL_DISABLED")
        if not current_price or current_price <= 0:
            logging.info("No market price for %s, skipping pool cycle", base)
            return PoolCycleResult(base, ACTION_SKIPPED, reason="NO_PRICE")

        key = pool_key(user_id, strategy_id, base)
        try:
            with self.locks.hold(key, self.lock_timeout):
                return self._process_locked(user_id, strategy_id, base, list(trades), current_price, config)
        except LockTimeout as exc:
            return PoolCycleResult(base, ACTION_SKIPPED, reason=str(exc))

    def _process_locked(
        self,
        user_id: str,
        strategy_id: str,
        symbol: str,
        trades: List[TradeInput],
        price: float,
        cfg: PoolConfig,
    ) -> PoolCycleResult:
        recon = reconstruct_lots(trades, symbol, activity_logger=self.activity_logger)
        lots = recon.open_lots
        pool = pool_view_from_lots(lots, symbol, price)
        result = PoolCycleResult(symbol, pool=pool, discrepancies=recon.discrepancies)
        if pool.is_empty:
            result.reason = "NO_POSITION"
            return result

        loaded = self.store.load_pool_state(user_id, strategy_id, symbol)
        if loaded is None:
            loaded = initialize_pool_state(user_id, strategy_id, symbol, cfg)
            logging.info("Initialized new pool state for %s", symbol)
        state = copy.deepcopy(loaded)
        before = _state_fingerprint(loaded)

        logging.info(
            "Pool %s: qty=%.8f avg=%.6f price=%.6f pnl=%.2f%% secure=%.8f/%.8f armed=%s",
            symbol,
            pool.total_qty,
            pool.avg_entry,
            price,
            pool.pool_pnl_pct,
            state.secure_filled_qty,
            state.secure_target_qty or pool.total_qty * cfg.secure_pct,
            state.is_armed,
        )

        if should_trigger_pool_stop_loss(pool, cfg):
            self._exit_all(result, lots, pool, cfg, state, ACTION_POOL_STOP_LOSS)
        else:
            self._secure_exit(result, lots, pool, cfg, state)
            self._runner(result, lots, pool, cfg, state)

        result.state = state
        if _state_fingerprint(state) != before:
            result.saved = self.store.upsert_pool_state(state)
            if not result.saved:
                logging.error("Pool state for %s not saved; dropping %d sell orders", symbol, len(result.orders))
                result.orders = []
                result.allocations = []
                result.reason = "STATE_SAVE_FAILED"
                return result

        if result.action != ACTION_NONE:
            log_activity(
                self.activity_logger,
                {
                    "event": f"POOL_{result.action}",
                    "symbol": symbol,
                    "user_id": user_id,
                    "strategy_id": strategy_id,
                    "price": price,
                    "pool_pnl_pct": pool.pool_pnl_pct,
                    "qty": sum(o.amount for o in result.orders),
                    "unsold_qty": result.unsold_qty,
                    "orders": [o.to_dict() for o in result.orders],
                    "stop": state.last_trailing_stop_price,
                },
            )
        return result

    def _exit_all(
        self,
        result: PoolCycleResult,
        lots: List[OpenLot],
        pool: CoinPoolView,
        cfg: PoolConfig,
        state: PoolState,
        action: str,
    ) -> bool:
        qty = round_to_tick(pool.total_qty, cfg.qty_tick)
        if qty <= 0 or not meets_min_notional(qty, pool.last_price, cfg.min_order_notional):
            logging.info("%s exit for %s below minimum notional, skipping", action, pool.symbol)
            return False
        allocations, orders, filled = _pool_exit(lots, qty, cfg)
        if filled <= LOT_EPSILON or not meets_min_notional(filled, pool.last_price, cfg.min_order_notional):
            logging.info("%s exit for %s allocates %.8f, below minimum notional, skipping", action, pool.symbol, filled)
            return False
        result.allocations, result.orders = allocations, orders
        result.action = action
        result.unsold_qty = max(pool.total_qty - filled, 0.0)

        if result.unsold_qty > LOT_EPSILON:
            # Sub-tick remainders per lot; no later cycle can order them.
            logging.warning("%s exit for %s leaves %.8f unsellable dust", action, pool.symbol, result.unsold_qty)
        state.reset()
        return True

    def _secure_exit(
        self,
        result: PoolCycleResult,
        lots: List[OpenLot],
        pool: CoinPoolView,
        cfg: PoolConfig,
        state: PoolState,
    ) -> None:
        if not should_trigger_secure(pool, cfg, state.secure_filled_qty, state.secure_target_qty or None):
            return
        if not state.secure_target_qty:
            state.secure_target_qty = pool.total_qty * cfg.secure_pct
        remaining = max(0.0, state.secure_target_qty - state.secure_filled_qty)
        qty = round_to_tick(min(remaining, pool.total_qty), cfg.qty_tick)
        if qty <= 0 or not meets_min_notional(qty, pool.last_price, cfg.min_order_notional):
            logging.info("Secure order for %s below minimum notional, skipping", pool.symbol)
            return
        allocations, orders, filled = _pool_exit(lots, qty, cfg)
        if filled <= LOT_EPSILON or not meets_min_notional(filled, pool.last_price, cfg.min_order_notional):
            logging.info("Secure order for %s allocates %.8f, below minimum notional, skipping", pool.symbol, filled)
            return
        result.allocations, result.orders = allocations, orders
        result.action = ACTION_SECURE_EXIT
        result.unsold_qty = max(qty - filled, 0.0)
        state.secure_filled_qty += filled
        logging.info(
            "Secure portion for %s: %.8f/%.8f", pool.symbol, state.secure_filled_qty, state.secure_target_qty
        )

    def _runner(
        self,
        result: PoolCycleResult,
        lots: List[OpenLot],
        pool: CoinPoolView,
        cfg: PoolConfig,
        state: PoolState,
    ) -> None:
        price = pool.last_price
        sold_now = sum(o.amount for o in result.orders)

        if should_arm_runner(pool, cfg, state.is_armed):
            state.is_armed = True
            state.high_water_price = price
            state.last_trailing_stop_price = next_trailing_stop(price, cfg, cfg.price_tick)
            state.runner_remaining_qty = max(pool.total_qty - sold_now, 0.0)
            if result.action == ACTION_NONE:
                result.action = ACTION_RUNNER_ARMED
            logging.info(
                "Runner armed for %s at %.6f, stop %.6f", pool.symbol, price, state.last_trailing_stop_price
            )
            return

        if not state.is_armed or state.high_water_price is None or state.last_trailing_stop_price is None:
            return

        state.runner_remaining_qty = max(pool.total_qty - sold_now, 0.0)
        if price > state.high_water_price:
            state.high_water_price = price
            new_stop = next_trailing_stop(price, cfg, cfg.price_tick)
            if new_stop > state.last_trailing_stop_price:
                state.last_trailing_stop_price = new_stop
                if result.action == ACTION_NONE:
                    result.action = ACTION_TRAIL_UPDATED
                logging.info("Trailing stop for %s raised to %.6f (high %.6f)", pool.symbol, new_stop, price)

        # One exit per cycle: a secure sell already spoke for these lots.
        if result.orders:
            return
        if should_trigger_trailing_stop(price, state.last_trailing_stop_price):
            if self._exit_all(result, lots, pool, cfg, state, ACTION_RUNNER_EXIT):
                logging.info("Runner exit placed for %s", pool.symbol)


@dataclass
class LotExitPlan:
    symbol: str
    close_mode: Optional[str] = None
    orders: List[SellOrder] = field(default_factory=list)
    decisions: List[ExitDecision] = field(default_factory=list)
    discrepancies: List[LedgerDiscrepancy] = field(default_factory=list)


def plan_lot_exits(
    trades: Iterable[TradeInput],
    current_price: float,
    cfg: LotExitConfig,
    symbol: str,
    now: Any = None,
    *,
    high_water_prices: Optional[Mapping[str, float]] = None,
    activity_logger: Optional[ActivityLogger] = None,
) -> LotExitPlan:
    """Per-lot exit pass for one symbol.

    Auto-close and stop-loss flush every open lot, take-profit closes only
    the qualifying lots, trailing stops close the lots whose stop was
    crossed. The highest-priority trigger among all lots decides the mode.
    """

    base = to_base_symbol(symbol)
    recon = reconstruct_lots(trades, base, activity_logger=activity_logger)
    plan = LotExitPlan(base, discrepancies=recon.discrepancies)
    # One clock reading for lot ages and every exit decision.
    now_ts = to_timestamp(now) if now is not None else utc_now()
    lots = enrich_lots_with_unrealized_pnl(recon.open_lots, current_price, now_ts)
    if not lots:
        return plan

    highs = high_water_prices or {}
    for lot in lots:
        decision = evaluate_lot_exit(lot, current_price, cfg, now_ts, high_water_price=highs.get(lot.lot_id))
        if decision is not None:
            plan.decisions.append(decision)
    triggers = {d.trigger for d in plan.decisions}

    if AUTO_CLOSE_TIME in triggers:
        plan.close_mode = AUTO_CLOSE_ALL
        plan.orders = build_full_flush_sell_orders(lots)
    elif STOP_LOSS in triggers:
        plan.close_mode = SL_FULL_FLUSH
        plan.orders = build_full_flush_sell_orders(lots)
    elif TAKE_PROFIT in triggers and cfg.take_profit is not None:
        plan.close_mode = TP_SELECTIVE
        plan.orders = build_selective_tp_sell_orders(
            lots, cfg.effective_take_profit_pct or 0.0, cfg.take_profit.min_hold_ms
        )
    elif TRAILING_STOP in triggers:
        hit = {d.lot_id for d in plan.decisions if d.trigger == TRAILING_STOP}
        plan.close_mode = TRAIL_SELECTIVE
        plan.orders = build_full_flush_sell_orders(lot for lot in lots if lot.lot_id in hit)

    for decision in plan.decisions:
        log_activity(activity_logger, decision.to_event())
    if plan.orders:
        logging.info(
            "%s for %s: %d orders, %.8f units",
            plan.close_mode,
            base,
            len(plan.orders),
            sum(o.amount for o in plan.orders),
        )
    return plan


__all__ = [
    "ACTION_NONE",
    "ACTION_POOL_STOP_LOSS",
    "ACTION_RUNNER_ARMED",
    "ACTION_RUNNER_EXIT",
    "ACTION_SECURE_EXIT",
    "ACTION_SKIPPED",
    "ACTION_TRAIL_UPDATED",
    "LotExitPlan",
    "PoolCycleResult",
    "PoolExitManager",
    "plan_lot_exits",
]
