from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    DateTime,
    Text,
    JSON,
    ForeignKey,
    Index,
    UniqueConstraint,
    CheckConstraint,
    event,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from contextlib import contextmanager
from pathlib import Path
import enum
import logging
import os

from config import settings
from models.types import PreciseFloat as Float
from utils.utcnow import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


class BrokerType(str, enum.Enum):
    PROJECTX = "projectx"
    TRADOVATE = "tradovate"
    BYBIT = "bybit"


class AuthMethod(str, enum.Enum):
    API_KEY = "api_key"
    OAUTH = "oauth"


class CopyTradeStatus(str, enum.Enum):
    """Lifecycle of one mirrored order in the audit log."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    CANCELLED = "cancelled"
    ERROR = "error"


# Rows in these states still represent a live (or in-flight) mirrored order.
ACTIVE_COPY_STATUSES = (CopyTradeStatus.PENDING.value, CopyTradeStatus.SUBMITTED.value)


# ==================== USERS ====================


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime, default=utcnow)


class UserSession(Base):
    """Bearer session issued by the auth provider; only the token digest is kept."""

    __tablename__ = "user_sessions"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    token_hash = Column(String, nullable=False, unique=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


# ==================== ACCOUNTS & BROKERS ====================


class TradingAccount(Base):
    """A user's trading account; source and/or destination of copy configs."""

    __tablename__ = "trading_accounts"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    risk_per_r = Column(Float, nullable=True, default=100.0)  # currency risk of 1R
    created_at = Column(DateTime, default=utcnow)


class BrokerConnection(Base):
    """Binds a trading account to a broker integration and its credentials.

    Secrets (api_key, api_secret, access_token, refresh_token) are stored
    through utils.secrets.encrypt_secret.
    """

    __tablename__ = "broker_connections"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    trading_account_id = Column(String, ForeignKey("trading_accounts.id"), nullable=False, unique=True)
    broker_type = Column(String, nullable=False)  # BrokerType value
    broker_account_name = Column(String, nullable=False)  # account id at the broker
    auth_method = Column(String, nullable=False, default=AuthMethod.API_KEY.value)

    # API-key auth (ProjectX loginKey, Bybit key/secret)
    api_key = Column(Text, nullable=True)
    api_username = Column(String, nullable=True)
    api_secret = Column(Text, nullable=True)

    # OAuth auth (ProjectX, Tradovate)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    api_service_type = Column(String, nullable=True)  # topstepx | alphaticks
    api_base_url = Column(String, nullable=True)
    enabled = Column(Boolean, default=True)

    last_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("idx_broker_conn_user_enabled", "user_id", "enabled"),)


# ==================== COPY TRADING ====================


class CopyTradeConfig(Base):
    """Directed copy edge: source trading account -> destination trading account."""

    __tablename__ = "copy_trade_configs"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    source_account_id = Column(String, ForeignKey("trading_accounts.id"), nullable=False)
    destination_account_id = Column(String, ForeignKey("trading_accounts.id"), nullable=False)
    multiplier = Column(Float, nullable=False, default=1.0)
    enabled = Column(Boolean, default=True)

    # Symbol filters (empty/None = no filter)
    symbols = Column(JSON, nullable=True)
    exclude_symbols = Column(JSON, nullable=True)

    # Realized risk-multiple bounds; only applied on the post-close journal copy path
    min_rr = Column(Float, nullable=True)
    max_rr = Column(Float, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("multiplier > 0", name="ck_copy_config_multiplier_positive"),
        CheckConstraint(
            "source_account_id <> destination_account_id",
            name="ck_copy_config_not_self",
        ),
        UniqueConstraint("source_account_id", "destination_account_id", name="uq_copy_config_edge"),
        Index("idx_copy_config_source_enabled", "source_account_id", "enabled"),
    )


class CopyTradeLog(Base):
    """Audit record of one fan-out attempt for one (source event, config) pair.

    ``dedup_key`` identifies the source event: ``order:<source order id>``
    when the broker gave one, otherwise a symbol/side/quantity/time-bucket
    fingerprint.  The unique constraint turns a racing second insert for the
    same pair into an IntegrityError instead of a second broker order.
    """

    __tablename__ = "copy_trade_logs"

    id = Column(String, primary_key=True)
    copy_trade_config_id = Column(String, ForeignKey("copy_trade_configs.id"), nullable=False)
    user_id = Column(String, nullable=True, index=True)
    dedup_key = Column(String, nullable=False)

    # Source side
    source_account_id = Column(String, nullable=False)
    source_symbol = Column(String, nullable=False)
    source_side = Column(String, nullable=False)  # buy | sell
    source_quantity = Column(Float, nullable=False)
    source_order_id = Column(String, nullable=True)
    source_execution_id = Column(String, nullable=True)

    # Destination side
    destination_account_id = Column(String, nullable=False)
    destination_broker_connection_id = Column(String, nullable=True)
    destination_symbol = Column(String, nullable=False)
    destination_side = Column(String, nullable=False)
    destination_quantity = Column(Float, nullable=False)
    multiplier = Column(Float, nullable=False)

    # Order shape as submitted
    order_type = Column(String, nullable=False, default="Market")
    order_price = Column(Float, nullable=True)
    order_stop_price = Column(Float, nullable=True)

    # Outcome
    order_status = Column(String, nullable=False, default=CopyTradeStatus.PENDING.value)
    order_id = Column(String, nullable=True)  # destination broker order id
    filled_quantity = Column(Float, nullable=True)
    filled_price = Column(Float, nullable=True)
    filled_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("copy_trade_config_id", "dedup_key", name="uq_copy_log_config_dedup"),
        Index("idx_copy_log_source_order", "source_account_id", "source_order_id"),
        Index(
            "idx_copy_log_source_fill",
            "source_account_id",
            "source_symbol",
            "source_side",
            "created_at",
        ),
        Index("idx_copy_log_status", "order_status"),
    )


# ==================== JOURNAL ====================


class JournalTrade(Base):
    """User-facing trade journal row.

    Broker sync writes ``broker_trade_id = "<broker>_<executionId>"``; the
    copy pipeline reads it as a second "already materialized" signal.
    """

    __tablename__ = "journal_trades"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    trading_account_id = Column(String, ForeignKey("trading_accounts.id"), nullable=False)
    broker_trade_id = Column(String, nullable=True)
    sync_source = Column(String, nullable=True)  # projectx | tradovate | bybit | copy_trade | manual

    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)  # buy | sell
    size = Column(Float, nullable=False)
    entry_price = Column(Float, nullable=True)
    exit_price = Column(Float, nullable=True)
    fees = Column(Float, nullable=True)
    pnl = Column(Float, nullable=True)
    pnl_percentage = Column(Float, nullable=True)
    rr = Column(Float, nullable=True)
    status = Column(String, nullable=False, default="closed")  # open | closed
    entry_time = Column(DateTime, nullable=True)
    exit_time = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("trading_account_id", "broker_trade_id", name="uq_journal_account_broker_trade"),
        Index("idx_journal_broker_trade", "broker_trade_id"),
    )


# ==================== DATABASE SETUP ====================

# SQLite-specific: improve concurrency (WAL + busy_timeout applied in _set_sqlite_pragma)
_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for concurrent poll/push writers (WAL, busy timeout)."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)


def _run_alembic_upgrade(connection) -> None:
    from alembic import command
    from alembic.config import Config

    backend_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(backend_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(backend_root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", str(connection.engine.url))
    alembic_cfg.attributes["connection"] = connection
    command.upgrade(alembic_cfg, "head")


@contextmanager
def _sqlite_migration_lock():
    """Serialize Alembic upgrades between the API process and the poll worker."""
    if "sqlite" not in settings.DATABASE_URL or os.name != "posix":
        yield
        return

    import fcntl

    lock_path = Path(__file__).resolve().parents[1] / ".alembic.sqlite.lock"
    try:
        lock_file = lock_path.open("a", encoding="utf-8")
    except OSError:
        logger.warning("Cannot open migration lock file, proceeding without lock")
        yield
        return

    try:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
    finally:
        lock_file.close()


async def init_database():
    """Initialize database and apply Alembic migrations."""
    from models.model_registry import register_all_models

    register_all_models()
    with _sqlite_migration_lock():
        async with async_engine.begin() as conn:
            await conn.run_sync(_run_alembic_upgrade)
