"""Central registry for SQLAlchemy models.

Alembic's baseline revision and ``init_database`` call
``register_all_models`` so every table is attached to ``Base.metadata``
before ``create_all``/autogenerate runs.
"""


def register_all_models() -> list[str]:
    """Import all modules that declare Base subclasses; return table names."""
    from models.database import (  # noqa: F401
        Base,
        BrokerConnection,
        CopyTradeConfig,
        CopyTradeLog,
        JournalTrade,
        TradingAccount,
        User,
        UserSession,
    )

    _ = (
        BrokerConnection,
        CopyTradeConfig,
        CopyTradeLog,
        JournalTrade,
        TradingAccount,
        User,
        UserSession,
    )
    return sorted(Base.metadata.tables.keys())
