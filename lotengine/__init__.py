"""Lot-based position and exit accounting for spot trading strategies."""

__all__ = [
    "activity",
    "allocation",
    "config",
    "errors",
    "exits",
    "ledger",
    "locks",
    "lots",
    "manager",
    "orders",
    "pool",
    "pool_store",
    "report",
    "symbols",
    "ticks",
]
