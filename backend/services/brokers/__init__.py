"""Broker gateway adapters behind one async contract."""

from services.brokers.base import (
    BrokerAuthError,
    BrokerError,
    BrokerGateway,
    BrokerRequestError,
    OrderRequest,
    OrderResult,
    SourceExecutionEvent,
    TokenGrant,
)
from services.brokers.normalize import ExecutionStatus, OrderType, Side

__all__ = [
    "BrokerAuthError",
    "BrokerError",
    "BrokerGateway",
    "BrokerRequestError",
    "OrderRequest",
    "OrderResult",
    "SourceExecutionEvent",
    "TokenGrant",
    "ExecutionStatus",
    "OrderType",
    "Side",
]
