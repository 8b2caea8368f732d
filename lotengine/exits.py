"""Exit policy predicates for pools and individual lots.

All functions are pure: they look at a snapshot (pool view or lot), the
configuration and the current price/time, and answer whether an exit
condition holds. State changes and order building live elsewhere.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Dict, Mapping, Optional, Union

from .ledger import to_timestamp, utc_now
from .lots import LOT_EPSILON, OpenLot
from .pool import CoinPoolView
from .symbols import to_base_symbol
from .ticks import round_to_tick

AUTO_CLOSE_TIME = "AUTO_CLOSE_TIME"
STOP_LOSS = "STOP_LOSS"
TAKE_PROFIT = "TAKE_PROFIT"
TRAILING_STOP = "TRAILING_STOP"

# Highest priority first.
TRIGGER_PRIORITY = (AUTO_CLOSE_TIME, STOP_LOSS, TAKE_PROFIT, TRAILING_STOP)

DEFAULT_EPSILON_PNL_BUFFER_PCT = 0.03
DEFAULT_TRAILING_MIN_PROFIT_PCT = 0.5
PCT_TOLERANCE = 1e-9


def _opt_float(raw: Mapping[str, Any], *keys: str) -> Optional[float]:
    for key in keys:
        value = raw.get(key)
        if value is None or value == "":
            continue
        return float(value)
    return None


@dataclass
class PoolConfig:
    pool_enabled: bool = False
    secure_pct: float = 0.4
    secure_tp_pct: float = 0.7
    secure_sl_pct: Optional[float] = None
    runner_arm_pct: float = 0.5
    runner_trail_pct: float = 1.0
    qty_tick: float = 0.0001
    price_tick: float = 0.01
    min_order_notional: float = 10.0

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "PoolConfig":
        return cls(
            pool_enabled=bool(raw.get("pool_enabled", False)),
            secure_pct=float(raw.get("secure_pct", 0.4)),
            secure_tp_pct=float(raw.get("secure_tp_pct", 0.7)),
            secure_sl_pct=_opt_float(raw, "secure_sl_pct"),
            runner_arm_pct=float(raw.get("runner_arm_pct", 0.5)),
            runner_trail_pct=float(raw.get("runner_trail_pct", 1.0)),
            qty_tick=float(raw.get("qty_tick", 0.0001)),
            price_tick=float(raw.get("price_tick", 0.01)),
            min_order_notional=float(raw.get("min_order_notional", 10.0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PoolState:
    """Persisted progress of pool exit management for one (user, strategy, symbol)."""

    user_id: str
    strategy_id: str
    symbol: str
    secure_target_qty: float = 0.0
    secure_filled_qty: float = 0.0
    runner_remaining_qty: float = 0.0
    is_armed: bool = False
    high_water_price: Optional[float] = None
    last_trailing_stop_price: Optional[float] = None
    config_snapshot: PoolConfig = field(default_factory=PoolConfig)
    updated_at: Optional[str] = None

    @property
    def key(self) -> str:
        return pool_key(self.user_id, self.strategy_id, self.symbol)

    def reset(self) -> None:
        self.secure_target_qty = 0.0
        self.secure_filled_qty = 0.0
        self.runner_remaining_qty = 0.0
        self.is_armed = False
        self.high_water_price = None
        self.last_trailing_stop_price = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["config_snapshot"] = self.config_snapshot.to_dict()
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "PoolState":
        snapshot = raw.get("config_snapshot")
        return cls(
            user_id=str(raw["user_id"]),
            strategy_id=str(raw["strategy_id"]),
            symbol=to_base_symbol(str(raw["symbol"])),
            secure_target_qty=float(raw.get("secure_target_qty") or 0.0),
            secure_filled_qty=float(raw.get("secure_filled_qty") or 0.0),
            runner_remaining_qty=float(raw.get("runner_remaining_qty") or 0.0),
            is_armed=bool(raw.get("is_armed", False)),
            high_water_price=_opt_float(raw, "high_water_price"),
            last_trailing_stop_price=_opt_float(raw, "last_trailing_stop_price"),
            config_snapshot=PoolConfig.from_dict(snapshot) if isinstance(snapshot, Mapping) else PoolConfig(),
            updated_at=raw.get("updated_at"),
        )


def pool_key(user_id: str, strategy_id: str, symbol: str) -> str:
    return f"{user_id}:{strategy_id}:{to_base_symbol(symbol)}"


def initialize_pool_state(user_id: str, strategy_id: str, symbol: str, config: PoolConfig) -> PoolState:
    return PoolState(
        user_id=user_id,
        strategy_id=strategy_id,
        symbol=to_base_symbol(symbol),
        config_snapshot=PoolConfig(**config.to_dict()),
    )


# --- Pool level -----------------------------------------------------------

def compute_secure_target_qty(total_qty: float, secure_pct: float, secure_filled_qty: float) -> float:
    """Quantity still to be sold before the secure bucket is full."""

    return max(0.0, total_qty * secure_pct - secure_filled_qty)


def should_trigger_secure(
    pool: CoinPoolView,
    cfg: PoolConfig,
    secure_filled_qty: float,
    secure_target_qty: Optional[float] = None,
) -> bool:
    """True when the pool hit the secure take-profit and the bucket has room.

    ``secure_target_qty`` pins the bucket size chosen at the first trigger;
    without it the bucket is ``total_qty * secure_pct`` of the current pool.
    """

    if not cfg.pool_enabled or pool.total_qty <= 0:
        return False
    hit_take_profit = pool.pool_pnl_pct + PCT_TOLERANCE >= cfg.secure_tp_pct
    target = secure_target_qty if secure_target_qty else pool.total_qty * cfg.secure_pct
    return hit_take_profit and secure_filled_qty < target - LOT_EPSILON


def should_arm_runner(pool: CoinPoolView, cfg: PoolConfig, is_armed: bool) -> bool:
    if is_armed or not cfg.pool_enabled or pool.total_qty <= 0:
        return False
    return pool.pool_pnl_pct + PCT_TOLERANCE >= cfg.runner_arm_pct


def should_trigger_pool_stop_loss(pool: CoinPoolView, cfg: PoolConfig) -> bool:
    """Pool floor from ``secure_sl_pct``; disabled when it is not configured."""

    if not cfg.pool_enabled or pool.total_qty <= 0 or not cfg.secure_sl_pct:
        return False
    return pool.pool_pnl_pct <= -abs(cfg.secure_sl_pct) + PCT_TOLERANCE


def trailing_stop_price(high_water_price: float, trail_pct: float, price_tick: Optional[float]) -> float:
    return round_to_tick(high_water_price * (1 - trail_pct / 100.0), price_tick)


def next_trailing_stop(high_water_price: float, cfg: PoolConfig, price_tick: Optional[float] = None) -> float:
    """Trailing stop under ``high_water_price``, floored to the price tick."""

    tick = price_tick if price_tick is not None else cfg.price_tick
    return trailing_stop_price(high_water_price, cfg.runner_trail_pct, tick)


def should_trigger_trailing_stop(current_price: float, stop_price: Optional[float]) -> bool:
    return stop_price is not None and current_price <= stop_price


# --- Lot level ------------------------------------------------------------

@dataclass(frozen=True)
class AutoClosePolicy:
    hours: float
    kind: ClassVar[str] = AUTO_CLOSE_TIME


@dataclass(frozen=True)
class StopLossPolicy:
    pct: float
    kind: ClassVar[str] = STOP_LOSS


@dataclass(frozen=True)
class TakeProfitPolicy:
    pct: float
    min_hold_ms: float = 0.0
    kind: ClassVar[str] = TAKE_PROFIT


@dataclass(frozen=True)
class TrailingStopPolicy:
    trail_pct: float
    min_profit_pct: float = DEFAULT_TRAILING_MIN_PROFIT_PCT
    price_tick: Optional[float] = None
    kind: ClassVar[str] = TRAILING_STOP


ExitPolicy = Union[AutoClosePolicy, StopLossPolicy, TakeProfitPolicy, TrailingStopPolicy]


def _positive(raw: Mapping[str, Any], *keys: str) -> Optional[float]:
    value = _opt_float(raw, *keys)
    if value is None or value <= 0:
        return None
    return value


@dataclass
class LotExitConfig:
    """Per-lot exit thresholds; a ``None`` policy is disabled."""

    auto_close: Optional[AutoClosePolicy] = None
    stop_loss: Optional[StopLossPolicy] = None
    take_profit: Optional[TakeProfitPolicy] = None
    trailing_stop: Optional[TrailingStopPolicy] = None
    epsilon_pnl_buffer_pct: float = DEFAULT_EPSILON_PNL_BUFFER_PCT

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "LotExitConfig":
        hours = _positive(raw, "auto_close_after_hours", "autoCloseAfterHours")
        sl = _positive(raw, "stop_loss_pct", "stopLossPercentage")
        tp = _positive(raw, "take_profit_pct", "takeProfitPercentage")
        trail = _positive(raw, "trailing_stop_pct", "trailingStopLossPercentage")
        min_hold = _opt_float(raw, "min_hold_ms", "minHoldPeriodMs") or 0.0
        trail_min = _opt_float(raw, "trailing_min_profit_pct", "trailingStopMinProfitThreshold")
        eps = _opt_float(raw, "epsilon_pnl_buffer_pct", "epsilonPnLBufferPct")
        return cls(
            auto_close=AutoClosePolicy(hours) if hours else None,
            stop_loss=StopLossPolicy(sl) if sl else None,
            take_profit=TakeProfitPolicy(tp, min_hold) if tp else None,
            trailing_stop=TrailingStopPolicy(
                trail,
                DEFAULT_TRAILING_MIN_PROFIT_PCT if trail_min is None else trail_min,
                _positive(raw, "price_tick"),
            )
            if trail
            else None,
            epsilon_pnl_buffer_pct=DEFAULT_EPSILON_PNL_BUFFER_PCT if eps is None else eps,
        )

    @property
    def effective_stop_loss_pct(self) -> Optional[float]:
        if self.stop_loss is None:
            return None
        return abs(self.stop_loss.pct) + self.epsilon_pnl_buffer_pct

    @property
    def effective_take_profit_pct(self) -> Optional[float]:
        if self.take_profit is None:
            return None
        return abs(self.take_profit.pct) + self.epsilon_pnl_buffer_pct


@dataclass(frozen=True)
class ExitDecision:
    trigger: str
    policy: ExitPolicy
    reason: str
    pnl_pct: float
    symbol: str = ""
    lot_id: Optional[str] = None

    def to_event(self) -> Dict[str, object]:
        return {
            "event": "EXIT_DECISION",
            "trigger": self.trigger,
            "symbol": self.symbol,
            "lot_id": self.lot_id,
            "pnl_pct": self.pnl_pct,
            "reason": self.reason,
        }


def pnl_pct(entry_price: float, current_price: float) -> float:
    if entry_price <= 0:
        return 0.0
    return (current_price - entry_price) / entry_price * 100.0


def evaluate_exit(
    entry_price: float,
    entry_date: Any,
    current_price: float,
    cfg: LotExitConfig,
    now: Any = None,
    *,
    high_water_price: Optional[float] = None,
    symbol: str = "",
    lot_id: Optional[str] = None,
) -> Optional[ExitDecision]:
    """First exit condition that holds, in ``TRIGGER_PRIORITY`` order."""

    now_ts = to_timestamp(now) if now is not None else utc_now()
    age_ms = (now_ts - to_timestamp(entry_date)).total_seconds() * 1000.0
    pct = pnl_pct(entry_price, current_price)

    def decide(trigger: str, policy: ExitPolicy, reason: str) -> ExitDecision:
        return ExitDecision(trigger, policy, reason, pct, symbol, lot_id)

    if cfg.auto_close is not None:
        held_hours = age_ms / 3_600_000.0
        if held_hours >= cfg.auto_close.hours:
            return decide(
                AUTO_CLOSE_TIME,
                cfg.auto_close,
                f"held {held_hours:.2f}h >= {cfg.auto_close.hours}h",
            )

    sl = cfg.effective_stop_loss_pct
    if cfg.stop_loss is not None and sl is not None and pct <= -sl + PCT_TOLERANCE:
        return decide(STOP_LOSS, cfg.stop_loss, f"P&L {pct:.2f}% <= -{sl:.2f}% (SL + buffer)")

    tp = cfg.effective_take_profit_pct
    if (
        cfg.take_profit is not None
        and tp is not None
        and pct + PCT_TOLERANCE >= tp
        and age_ms >= cfg.take_profit.min_hold_ms
    ):
        return decide(TAKE_PROFIT, cfg.take_profit, f"P&L {pct:.2f}% >= {tp:.2f}% (TP + buffer)")

    trail = cfg.trailing_stop
    if trail is not None and high_water_price is not None:
        peak_pct = pnl_pct(entry_price, high_water_price)
        if peak_pct + PCT_TOLERANCE >= trail.min_profit_pct:
            stop = trailing_stop_price(high_water_price, trail.trail_pct, trail.price_tick)
            if should_trigger_trailing_stop(current_price, stop):
                return decide(
                    TRAILING_STOP,
                    trail,
                    f"price {current_price} <= trailing stop {stop} (high {high_water_price})",
                )
    return None


def evaluate_lot_exit(
    lot: OpenLot,
    current_price: float,
    cfg: LotExitConfig,
    now: Any = None,
    *,
    high_water_price: Optional[float] = None,
) -> Optional[ExitDecision]:
    return evaluate_exit(
        lot.entry_price,
        lot.entry_date,
        current_price,
        cfg,
        now,
        high_water_price=high_water_price,
        symbol=lot.symbol,
        lot_id=lot.lot_id,
    )


__all__ = [
    "AUTO_CLOSE_TIME",
    "AutoClosePolicy",
    "ExitDecision",
    "ExitPolicy",
    "LotExitConfig",
    "PoolConfig",
    "PoolState",
    "STOP_LOSS",
    "StopLossPolicy",
    "TAKE_PROFIT",
    "TRAILING_STOP",
    "TRIGGER_PRIORITY",
    "TakeProfitPolicy",
    "TrailingStopPolicy",
    "compute_secure_target_qty",
    "evaluate_exit",
    "evaluate_lot_exit",
    "initialize_pool_state",
    "next_trailing_stop",
    "pnl_pct",
    "pool_key",
    "should_arm_runner",
    "should_trigger_pool_stop_loss",
    "should_trigger_secure",
    "should_trigger_trailing_stop",
    "trailing_stop_price",
]
