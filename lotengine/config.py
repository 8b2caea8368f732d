"""Strategy exit configuration loaded from YAML.

Layout::

    general:
      pool_state_dir: pool_state
      lock_timeout_seconds: 30
    strategies:
      - id: scalper
        user_id: alice
        accounting_mode: pool      # or "fifo"
        pool_exit: {pool_enabled: true, secure_pct: 0.4, ...}
        lot_exit: {take_profit_pct: 1.5, stop_loss_pct: 0.8, ...}
        symbols:
          XRP:
            pool_exit: {qty_tick: 0.1}

Per-symbol blocks are deep-merged over the strategy defaults. Bounds are
checked here, at load time; the exit predicates trust what they receive.
"""
from __future__ import annotations

import copy
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from .errors import ConfigError
from .exits import LotExitConfig, PoolConfig
from .locks import DEFAULT_LOCK_TIMEOUT
from .pool_store import DEFAULT_POOL_STATE_DIR
from .symbols import to_base_symbol

MODE_POOL = "pool"
MODE_FIFO = "fifo"
ACCOUNTING_MODES = (MODE_POOL, MODE_FIFO)

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    """Read YAML, expanding ``${ENV}`` references first."""

    with open(path, "r", encoding="utf-8") as fh:
        txt = fh.read()
    txt = _ENV_PATTERN.sub(lambda m: os.getenv(m.group(1), ""), txt)
    try:
        data = yaml.safe_load(txt) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping at the top level")
    return data


def deep_merge(base: Dict[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in patch.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            base[key] = deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
    return base


def validate_pool_config(cfg: PoolConfig) -> PoolConfig:
    if not 0.0 <= cfg.secure_pct <= 1.0:
        raise ConfigError(f"secure_pct must be within [0, 1], got {cfg.secure_pct}")
    if cfg.runner_trail_pct <= 0:
        raise ConfigError(f"runner_trail_pct must be positive, got {cfg.runner_trail_pct}")
    if cfg.runner_trail_pct >= 100:
        raise ConfigError(f"runner_trail_pct must be below 100, got {cfg.runner_trail_pct}")
    if cfg.qty_tick <= 0 or cfg.price_tick <= 0:
        raise ConfigError("qty_tick and price_tick must be positive")
    if cfg.min_order_notional < 0:
        raise ConfigError("min_order_notional cannot be negative")
    if cfg.secure_sl_pct is not None and cfg.secure_sl_pct < 0:
        raise ConfigError("secure_sl_pct cannot be negative")
    return cfg


def validate_lot_exit_config(cfg: LotExitConfig) -> LotExitConfig:
    if cfg.epsilon_pnl_buffer_pct < 0:
        raise ConfigError("epsilon_pnl_buffer_pct cannot be negative")
    if cfg.take_profit is not None and cfg.take_profit.min_hold_ms < 0:
        raise ConfigError("min_hold_ms cannot be negative")
    if cfg.trailing_stop is not None and cfg.trailing_stop.trail_pct >= 100:
        raise ConfigError("trailing_stop_pct must be below 100")
    return cfg


@dataclass
class StrategyExitSettings:
    strategy_id: str
    user_id: str
    symbol: Optional[str]
    accounting_mode: str
    pool: PoolConfig
    lot: LotExitConfig


@dataclass
class EngineSettings:
    pool_state_dir: Path = DEFAULT_POOL_STATE_DIR
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT
    strategies: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "EngineSettings":
        general = raw.get("general") or {}
        strategies = raw.get("strategies") or []
        if not isinstance(strategies, list):
            raise ConfigError("strategies must be a list")
        return cls(
            pool_state_dir=Path(general.get("pool_state_dir") or DEFAULT_POOL_STATE_DIR),
            lock_timeout_seconds=float(general.get("lock_timeout_seconds", DEFAULT_LOCK_TIMEOUT)),
            strategies=[dict(s) for s in strategies],
        )

    def strategy(self, strategy_id: str, symbol: Optional[str] = None) -> StrategyExitSettings:
        for raw in self.strategies:
            if str(raw.get("id")) == str(strategy_id):
                return resolve_strategy(raw, symbol)
        raise ConfigError(f"Unknown strategy {strategy_id}")


def resolve_strategy(raw: Mapping[str, Any], symbol: Optional[str] = None) -> StrategyExitSettings:
    """Merge symbol overrides over the strategy block and validate the result."""

    merged: Dict[str, Any] = {
        "pool_exit": copy.deepcopy(raw.get("pool_exit") or {}),
        "lot_exit": copy.deepcopy(raw.get("lot_exit") or {}),
    }
    base = to_base_symbol(symbol) if symbol else None
    if base:
        overrides = {to_base_symbol(k): v for k, v in (raw.get("symbols") or {}).items()}
        deep_merge(merged, overrides.get(base) or {})

    mode = str(raw.get("accounting_mode", MODE_POOL)).lower()
    if mode not in ACCOUNTING_MODES:
        raise ConfigError(f"accounting_mode must be one of {ACCOUNTING_MODES}, got {mode!r}")
    try:
        pool_cfg = PoolConfig.from_dict(merged["pool_exit"])
        lot_cfg = LotExitConfig.from_dict(merged["lot_exit"])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid exit config for strategy {raw.get('id')}: {exc}") from exc
    return StrategyExitSettings(
        strategy_id=str(raw.get("id") or ""),
        user_id=str(raw.get("user_id") or ""),
        symbol=base,
        accounting_mode=mode,
        pool=validate_pool_config(pool_cfg),
        lot=validate_lot_exit_config(lot_cfg),
    )


def load_settings(path: Union[str, Path]) -> EngineSettings:
    return EngineSettings.from_dict(load_config(path))


__all__ = [
    "ACCOUNTING_MODES",
    "EngineSettings",
    "MODE_FIFO",
    "MODE_POOL",
    "StrategyExitSettings",
    "deep_merge",
    "load_config",
    "load_settings",
    "resolve_strategy",
    "validate_lot_exit_config",
    "validate_pool_config",
]
