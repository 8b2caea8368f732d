import sys
from pathlib import Path

import pandas as pd
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lotengine.exits import (
    AUTO_CLOSE_TIME,
    STOP_LOSS,
    TAKE_PROFIT,
    TRAILING_STOP,
    LotExitConfig,
    PoolConfig,
    PoolState,
    compute_secure_target_qty,
    evaluate_exit,
    initialize_pool_state,
    next_trailing_stop,
    should_arm_runner,
    should_trigger_pool_stop_loss,
    should_trigger_secure,
    should_trigger_trailing_stop,
)
from lotengine.pool import CoinPoolView

ENTRY = pd.Timestamp("2024-01-01T00:00:00Z")


def _pool(pnl_pct, total_qty=1000.0):
    price = 0.5 * (1 + pnl_pct / 100)
    return CoinPoolView("XRP", total_qty, 0.5, price, pnl_pct, total_qty * price, total_qty * 0.5)


def _cfg(**overrides):
    values = dict(pool_enabled=True, secure_pct=0.4, secure_tp_pct=0.7, runner_arm_pct=0.5, runner_trail_pct=1.0)
    values.update(overrides)
    return PoolConfig(**values)


def test_secure_triggers_at_take_profit():
    assert should_trigger_secure(_pool(0.7), _cfg(), secure_filled_qty=0)


def test_secure_is_idempotent_once_filled():
    assert not should_trigger_secure(_pool(0.7), _cfg(), secure_filled_qty=400)
    assert not should_trigger_secure(_pool(0.9), _cfg(), secure_filled_qty=400, secure_target_qty=400)
    assert should_trigger_secure(_pool(0.9), _cfg(), secure_filled_qty=200, secure_target_qty=400)


def test_secure_waits_for_threshold_and_enabled_flag():
    assert not should_trigger_secure(_pool(0.69), _cfg(), 0)
    assert not should_trigger_secure(_pool(0.9), _cfg(pool_enabled=False), 0)
    assert not should_trigger_secure(_pool(0.9, total_qty=0), _cfg(), 0)


def test_compute_secure_target_qty():
    assert compute_secure_target_qty(1000, 0.4, 0) == pytest.approx(400)
    assert compute_secure_target_qty(1000, 0.4, 150) == pytest.approx(250)
    assert compute_secure_target_qty(1000, 0.4, 500) == 0.0


def test_runner_arms_once():
    assert should_arm_runner(_pool(0.5), _cfg(), is_armed=False)
    assert not should_arm_runner(_pool(0.5), _cfg(), is_armed=True)
    assert not should_arm_runner(_pool(0.3), _cfg(), is_armed=False)


def test_pool_stop_loss_only_when_configured():
    assert not should_trigger_pool_stop_loss(_pool(-5.0), _cfg())
    assert should_trigger_pool_stop_loss(_pool(-1.0), _cfg(secure_sl_pct=1.0))
    assert not should_trigger_pool_stop_loss(_pool(-0.5), _cfg(secure_sl_pct=1.0))


def test_next_trailing_stop_floors_to_tick():
    assert next_trailing_stop(0.520, _cfg(), 0.01) == 0.51
    assert next_trailing_stop(0.5035, _cfg(), 0.01) == 0.49


def test_trailing_stop_is_monotonic_in_high_water():
    highs = [0.50, 0.505, 0.51, 0.52, 0.533, 0.6]
    stops = [next_trailing_stop(h, _cfg(), 0.01) for h in highs]
    assert stops == sorted(stops)


def test_trailing_trigger():
    assert should_trigger_trailing_stop(0.51, 0.51)
    assert not should_trigger_trailing_stop(0.511, 0.51)
    assert not should_trigger_trailing_stop(0.1, None)


def test_pool_state_round_trip():
    state = initialize_pool_state("u1", "s1", "xrp-eur", _cfg())
    state.secure_target_qty = 400
    state.is_armed = True
    state.high_water_price = 0.52

    again = PoolState.from_dict(state.to_dict())

    assert again == state
    assert again.key == "u1:s1:XRP"
    again.reset()
    assert again.secure_filled_qty == 0 and not again.is_armed and again.high_water_price is None


def test_lot_exit_config_from_camel_case():
    cfg = LotExitConfig.from_dict(
        {
            "takeProfitPercentage": 1.5,
            "stopLossPercentage": 0.8,
            "autoCloseAfterHours": 0,
            "trailingStopLossPercentage": 1.0,
            "minHoldPeriodMs": 60000,
        }
    )

    assert cfg.auto_close is None
    assert cfg.take_profit.pct == 1.5 and cfg.take_profit.min_hold_ms == 60000
    assert cfg.trailing_stop.min_profit_pct == 0.5
    assert cfg.effective_take_profit_pct == pytest.approx(1.53)
    assert cfg.effective_stop_loss_pct == pytest.approx(0.83)


def test_take_profit_needs_epsilon_buffer():
    cfg = LotExitConfig.from_dict({"take_profit_pct": 1.0})
    now = ENTRY + pd.Timedelta(minutes=1)

    assert evaluate_exit(100.0, ENTRY, 101.0, cfg, now) is None
    decision = evaluate_exit(100.0, ENTRY, 101.03, cfg, now)
    assert decision.trigger == TAKE_PROFIT


def test_take_profit_respects_min_hold():
    cfg = LotExitConfig.from_dict({"take_profit_pct": 1.0, "min_hold_ms": 600_000})

    assert evaluate_exit(100.0, ENTRY, 105.0, cfg, ENTRY + pd.Timedelta(minutes=5)) is None
    assert evaluate_exit(100.0, ENTRY, 105.0, cfg, ENTRY + pd.Timedelta(minutes=10)).trigger == TAKE_PROFIT


def test_stop_loss_beats_take_profit_and_auto_close_beats_all():
    cfg = LotExitConfig.from_dict({"stop_loss_pct": 1.0, "take_profit_pct": 1.0, "auto_close_after_hours": 24})
    early = ENTRY + pd.Timedelta(hours=1)
    late = ENTRY + pd.Timedelta(hours=25)

    assert evaluate_exit(100.0, ENTRY, 98.0, cfg, early).trigger == STOP_LOSS
    assert evaluate_exit(100.0, ENTRY, 98.0, cfg, late).trigger == AUTO_CLOSE_TIME
    assert evaluate_exit(100.0, ENTRY, 100.5, cfg, early) is None


def test_auto_close_absent_means_never():
    cfg = LotExitConfig.from_dict({"take_profit_pct": 5.0})

    assert evaluate_exit(100.0, ENTRY, 100.0, cfg, ENTRY + pd.Timedelta(days=365)) is None


def test_trailing_stop_requires_min_profit_at_peak():
    cfg = LotExitConfig.from_dict({"trailing_stop_pct": 1.0, "price_tick": 0.01})
    now = ENTRY + pd.Timedelta(hours=1)

    decision = evaluate_exit(0.5, ENTRY, 0.51, cfg, now, high_water_price=0.52, lot_id="b1")
    assert decision.trigger == TRAILING_STOP
    assert decision.lot_id == "b1"
    assert evaluate_exit(0.5, ENTRY, 0.5, cfg, now, high_water_price=0.501) is None
    assert evaluate_exit(0.5, ENTRY, 0.515, cfg, now, high_water_price=0.52) is None
