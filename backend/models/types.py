"""Shared SQLAlchemy column types used across ORM models."""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import Numeric, TypeDecorator

_CENT = Decimal("0.01")


def round_usd(value: float) -> float:
    """Round a USD amount to cents (half-up) for presentation."""
    if value is None or not math.isfinite(value):
        return value
    return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


class UsdAmount(TypeDecorator):
    """Persist USD/percent figures as 2-decimal NUMERIC.

    Services keep full float precision; rounding to cents happens only when
    a value crosses the DB boundary. Non-finite values are stored as NULL.
    """

    impl = Numeric(24, 2, asdecimal=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        if isinstance(value, Decimal):
            if not value.is_finite():
                return None
            return value.quantize(_CENT, rounding=ROUND_HALF_UP)
        try:
            number = float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid numeric value for UsdAmount: {value!r}") from exc
        if not math.isfinite(number):
            return None
        try:
            return Decimal(str(number)).quantize(_CENT, rounding=ROUND_HALF_UP)
        except InvalidOperation as exc:
            raise ValueError(f"Invalid numeric value for UsdAmount: {value!r}") from exc

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return float(value)
