from .database import (
    Base,
    BrokerType,
    AuthMethod,
    CopyTradeStatus,
    User,
    UserSession,
    TradingAccount,
    BrokerConnection,
    CopyTradeConfig,
    CopyTradeLog,
    JournalTrade,
)

__all__ = [
    "Base",
    "BrokerType",
    "AuthMethod",
    "CopyTradeStatus",
    "User",
    "UserSession",
    "TradingAccount",
    "BrokerConnection",
    "CopyTradeConfig",
    "CopyTradeLog",
    "JournalTrade",
]
