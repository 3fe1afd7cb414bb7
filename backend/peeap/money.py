from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

CENT = Decimal("0.01")


def to_money(value: Any) -> float:
    """
    Round to cents, half-up.

    Goes through `str()` so 20.255 rounds from its decimal spelling rather
    than its binary neighbour (20.254999...).
    """
    try:
        d = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"not a number: {value!r}") from e
    if not d.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return float(d.quantize(CENT, rounding=ROUND_HALF_UP))
