"""Shared SQLAlchemy column types used across ORM models."""

from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import Numeric, TypeDecorator


class PreciseFloat(TypeDecorator):
    """Persist prices and quantities through Decimal-backed NUMERIC storage.

    Services keep working with Python ``float`` while the database never
    sees binary float artifacts (``5.1`` stays ``5.1``), which matters when
    audit rows are matched on source quantity and price tolerances.
    """

    impl = Numeric(24, 10, asdecimal=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        if isinstance(value, Decimal):
            return value
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError(f"Non-finite numeric value for PreciseFloat: {value!r}")
        try:
            return Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid numeric value for PreciseFloat: {value!r}") from exc

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return float(value)
