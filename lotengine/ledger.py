"""Append-only trade ledger records."""
from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import pandas as pd

from .errors import ValidationError
from .symbols import to_base_symbol

BUY = "BUY"
SELL = "SELL"
TRADE_TYPES = (BUY, SELL)

REQUIRED_CSV_COLUMNS = ("id", "trade_type", "amount", "price", "executed_at")


def to_timestamp(value: Any) -> pd.Timestamp:
    """Parse ``value`` into a timezone-aware UTC timestamp."""

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if isinstance(value, float) and math.isnan(value):
            raise ValidationError("Missing timestamp")
        ts = pd.Timestamp(int(value), unit="ms")
    else:
        try:
            ts = pd.Timestamp(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid timestamp {value!r}") from exc
    if pd.isna(ts):
        raise ValidationError("Missing timestamp")
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")


def utc_now() -> pd.Timestamp:
    return pd.Timestamp.now(tz="UTC")


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and not (isinstance(value, float) and math.isnan(value)):
            return value
    return None


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _to_float(value: Any, field: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Trade field {field} is not numeric: {value!r}") from exc


@dataclass(frozen=True)
class Trade:
    """One immutable row of the trade ledger."""

    id: str
    trade_type: str
    symbol: str
    amount: float
    price: float
    executed_at: pd.Timestamp
    total_value: float = 0.0
    user_id: str = ""
    strategy_id: str = ""
    original_trade_id: Optional[str] = None

    @property
    def is_buy(self) -> bool:
        return self.trade_type == BUY

    @property
    def is_sell(self) -> bool:
        return self.trade_type == SELL

    @property
    def base_symbol(self) -> str:
        return to_base_symbol(self.symbol)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], *, validate: bool = True) -> "Trade":
        """Build a trade from a storage row or a camelCase payload."""

        trade_type = str(_first(raw, "trade_type", "tradeType") or "").strip().upper()
        amount = _to_float(_first(raw, "amount"), "amount")
        price = _to_float(_first(raw, "price"), "price")
        total_value = _first(raw, "total_value", "totalValue")
        trade = cls(
            id=_optional_str(_first(raw, "id")) or "",
            trade_type=trade_type,
            symbol=str(_first(raw, "cryptocurrency", "symbol") or "").strip().upper(),
            amount=amount,
            price=price,
            executed_at=to_timestamp(_first(raw, "executed_at", "executedAt")),
            total_value=_to_float(total_value, "total_value") if total_value is not None else amount * price,
            user_id=_optional_str(_first(raw, "user_id", "userId")) or "",
            strategy_id=_optional_str(_first(raw, "strategy_id", "strategyId")) or "",
            original_trade_id=_optional_str(_first(raw, "original_trade_id", "originalTradeId")),
        )
        if validate:
            validate_trade(trade)
        return trade

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "strategy_id": self.strategy_id,
            "trade_type": self.trade_type,
            "cryptocurrency": self.symbol,
            "amount": self.amount,
            "price": self.price,
            "total_value": self.total_value,
            "executed_at": self.executed_at.isoformat(),
            "original_trade_id": self.original_trade_id,
        }


def validate_trade(trade: Trade) -> None:
    if not trade.id:
        raise ValidationError("Trade is missing an id")
    if trade.trade_type not in TRADE_TYPES:
        raise ValidationError(f"Trade {trade.id} has unknown type {trade.trade_type!r}")
    if not trade.symbol:
        raise ValidationError(f"Trade {trade.id} has no symbol")
    if not math.isfinite(trade.amount) or trade.amount <= 0:
        raise ValidationError(f"Trade {trade.id} amount must be positive, got {trade.amount}")
    if not math.isfinite(trade.price) or trade.price <= 0:
        raise ValidationError(f"Trade {trade.id} price must be positive, got {trade.price}")
    if trade.is_buy and trade.original_trade_id:
        raise ValidationError(f"BUY {trade.id} cannot reference another lot")


def fifo_key(trade: Trade) -> Tuple[pd.Timestamp, str]:
    """Sort key for FIFO processing; ties on time fall back to the id."""

    return trade.executed_at, trade.id


def coerce_trades(trades: Iterable[Union[Trade, Mapping[str, Any]]]) -> List[Trade]:
    return [t if isinstance(t, Trade) else Trade.from_dict(t) for t in trades]


def load_trades_csv(path: Union[str, Path]) -> List[Trade]:
    """Read a ledger export (one trade per row) into ``Trade`` records."""

    df = pd.read_csv(path, dtype={"id": str, "original_trade_id": str})
    missing = [c for c in REQUIRED_CSV_COLUMNS if c not in df.columns]
    if "cryptocurrency" not in df.columns and "symbol" not in df.columns:
        missing.append("cryptocurrency")
    if missing:
        raise ValidationError(f"Ledger CSV is missing columns: {', '.join(missing)}")
    df["executed_at"] = pd.to_datetime(df["executed_at"], errors="coerce", utc=True)
    if df["executed_at"].isna().any():
        raise ValidationError("Invalid timestamps in ledger CSV")
    df = df.sort_values(["executed_at", "id"]).reset_index(drop=True)
    records = df.astype(object).where(df.notna(), None).to_dict("records")
    return [Trade.from_dict(row) for row in records]


__all__ = [
    "BUY",
    "SELL",
    "TRADE_TYPES",
    "Trade",
    "coerce_trades",
    "fifo_key",
    "load_trades_csv",
    "to_timestamp",
    "utc_now",
    "validate_trade",
]
