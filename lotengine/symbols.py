"""Mapping between exchange pair notation and base symbols."""
from __future__ import annotations

DEFAULT_QUOTE = "EUR"


def to_base_symbol(symbol: str) -> str:
    """Return the base asset of a pair (``"BTC-EUR"`` -> ``"BTC"``)."""

    value = str(symbol or "").strip().upper()
    if "-" in value:
        return value.split("-", 1)[0]
    return value


def to_pair_symbol(symbol: str, quote: str = DEFAULT_QUOTE) -> str:
    base = to_base_symbol(symbol)
    return f"{base}-{quote.upper()}"


def same_symbol(a: str, b: str) -> bool:
    return to_base_symbol(a) == to_base_symbol(b)


__all__ = ["DEFAULT_QUOTE", "same_symbol", "to_base_symbol", "to_pair_symbol"]
