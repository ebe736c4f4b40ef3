"""Canonical vocabulary for broker events.

ProjectX, Tradovate and Bybit each spell sides, statuses and order types
differently ("BUY"/"long"/"Buy", "FILLED"/"CLOSED"/"" ...).  Adapters map
their payloads through these helpers so the rest of the pipeline only ever
sees ``Side``, ``ExecutionStatus`` and ``OrderType`` members.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def label(self) -> str:
        return "BUY" if self is Side.BUY else "SELL"


class OrderType(str, Enum):
    MARKET = "Market"
    LIMIT = "Limit"
    STOP = "Stop"
    STOP_LIMIT = "StopLimit"
    TRAILING_STOP = "TrailingStop"

    @property
    def uses_stop_price(self) -> bool:
        return self in (OrderType.STOP, OrderType.STOP_LIMIT, OrderType.TRAILING_STOP)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


_BUY_WORDS = {"BUY", "LONG", "B", "BID"}
_SELL_WORDS = {"SELL", "SHORT", "S", "ASK"}

# An execution list with no status field at all only ever contains fills.
_FILLED_WORDS = {"FILLED", "CLOSED", "COMPLETED", "EXECUTED", "FILL", "TRADE", ""}
_CANCELLED_WORDS = {"CANCELLED", "CANCELED", "CANCEL", "DEACTIVATED"}
_REJECTED_WORDS = {"REJECTED", "REJECT"}
_EXPIRED_WORDS = {"EXPIRED"}
_OPEN_WORDS = {"OPEN", "NEW", "WORKING", "ACTIVE", "SUBMITTED", "PARTIALLYFILLED", "UNTRIGGERED"}
_PENDING_WORDS = {"PENDING", "PENDINGNEW", "CREATED"}

_ORDER_TYPE_WORDS = {
    "MARKET": OrderType.MARKET,
    "MKT": OrderType.MARKET,
    "LIMIT": OrderType.LIMIT,
    "LMT": OrderType.LIMIT,
    "STOP": OrderType.STOP,
    "STOPMARKET": OrderType.STOP,
    "STP": OrderType.STOP,
    "STOPLIMIT": OrderType.STOP_LIMIT,
    "TRAILINGSTOP": OrderType.TRAILING_STOP,
}


def _squash(value: Any) -> str:
    return str(value or "").strip().upper().replace("_", "").replace(" ", "").replace("-", "")


def normalize_side(value: Any) -> Side:
    """Map any broker side spelling to ``Side``.

    Raises ValueError for an unrecognized side so a copy is never mirrored
    in a guessed direction.
    """
    if isinstance(value, Side):
        return value
    word = _squash(value)
    if word in _BUY_WORDS:
        return Side.BUY
    if word in _SELL_WORDS:
        return Side.SELL
    raise ValueError(f"Unrecognized order side: {value!r}")


def normalize_status(value: Any) -> ExecutionStatus:
    """Upper-case and classify a broker status; empty/missing means filled."""
    if isinstance(value, ExecutionStatus):
        return value
    word = _squash(value)
    if word in _FILLED_WORDS:
        return ExecutionStatus.FILLED
    if word in _CANCELLED_WORDS:
        return ExecutionStatus.CANCELLED
    if word in _REJECTED_WORDS:
        return ExecutionStatus.REJECTED
    if word in _EXPIRED_WORDS:
        return ExecutionStatus.EXPIRED
    if word in _OPEN_WORDS:
        return ExecutionStatus.OPEN
    if word in _PENDING_WORDS:
        return ExecutionStatus.PENDING
    return ExecutionStatus.UNKNOWN


def normalize_order_type(value: Any) -> OrderType:
    """Map a broker order type spelling to ``OrderType`` (missing -> Market)."""
    if isinstance(value, OrderType):
        return value
    word = _squash(value)
    if not word:
        return OrderType.MARKET
    try:
        return _ORDER_TYPE_WORDS[word]
    except KeyError:
        raise ValueError(f"Unrecognized order type: {value!r}") from None


def parse_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
