"""Quantize prices and quantities to exchange tick sizes."""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Tuple

# Absorbs float noise such as 0.51 / 0.01 == 50.99999999999999.
_FLOOR_TOLERANCE = 1e-9
_CENT = Decimal("0.01")


def tick_precision(tick: float) -> int:
    """Number of decimals needed to express ``tick`` exactly."""

    exponent = Decimal(str(tick)).normalize().as_tuple().exponent
    return max(-int(exponent), 0)


def round_to_tick(value: float, tick: Optional[float]) -> float:
    """Floor ``value`` onto the tick grid.

    Truncation rather than nearest rounding, so a quantity never grows past
    what is available and a stop price never moves up past the market.
    """

    value = float(value)
    if not tick or tick <= 0:
        return value
    steps = math.floor(value / tick + _FLOOR_TOLERANCE)
    return round(steps * tick, tick_precision(tick))


def round_money(value: float) -> float:
    """Round to cents, half away from zero."""

    return float(Decimal(repr(float(value))).quantize(_CENT, rounding=ROUND_HALF_UP))


def meets_min_notional(amount: float, price: float, min_notional: Optional[float]) -> bool:
    if not min_notional or min_notional <= 0:
        return True
    return amount * price >= min_notional


def normalize_quantity(
    quantity: float,
    *,
    qty_tick: Optional[float] = None,
    min_qty: float = 0.0,
    price: Optional[float] = None,
    min_notional: Optional[float] = None,
) -> Tuple[float, str]:
    """Floor a raw quantity to the tick and check exchange minimums.

    Returns the adjusted quantity and a reason string. ``0.0`` is returned
    when the quantity cannot be sent so the caller skips the order.
    """

    qty = max(float(quantity), 0.0)
    if qty <= 0:
        return 0.0, "NON_POSITIVE"

    qty = round_to_tick(qty, qty_tick)
    if qty <= 0:
        return 0.0, "BELOW_TICK"

    if min_qty > 0 and qty < min_qty:
        return 0.0, "BELOW_MIN_QTY"

    if price and not meets_min_notional(qty, price, min_notional):
        return 0.0, "BELOW_MIN_NOTIONAL"

    return float(qty), "OK"


__all__ = [
    "meets_min_notional",
    "normalize_quantity",
    "round_money",
    "round_to_tick",
    "tick_precision",
]
