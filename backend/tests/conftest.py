"""Shared fixtures for copy-trade pipeline tests."""

import sys
from contextlib import asynccontextmanager
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import uuid
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from models.database import (
    Base,
    BrokerConnection,
    CopyTradeConfig,
    JournalTrade,
    TradingAccount,
    User,
    UserSession,
)
from services.brokers.base import OrderResult, SourceExecutionEvent
from services.brokers.normalize import ExecutionStatus, OrderType, Side
from utils.secrets import hash_token
from utils.utcnow import utcnow

# Every module that opens its own sessions through AsyncSessionLocal
SESSION_MODULES = (
    "services.copy_trader",
    "services.copy_trade_poller",
    "services.order_mutations",
    "services.journal_copy",
    "services.realtime_copy",
    "services.brokers.factory",
    "api.auth",
    "api.routes_copy_trade",
)

# Every module that opens broker gateways through open_gateway
GATEWAY_MODULES = (
    "services.copy_trader",
    "services.copy_trade_poller",
    "services.order_mutations",
)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class CopyTradeDb:
    """Temporary SQLite database wired into every service module."""

    def __init__(self, tmp_path: Path, monkeypatch):
        self._path = tmp_path / "copy_trade_test.db"
        self._monkeypatch = monkeypatch
        self.engine = None
        self.session_factory = None

    async def __aenter__(self) -> "CopyTradeDb":
        self.engine = create_async_engine(f"sqlite+aiosqlite:///{self._path}")
        self.session_factory = sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        for module in SESSION_MODULES:
            self._monkeypatch.setattr(f"{module}.AsyncSessionLocal", self.session_factory)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.engine.dispose()
        return False

    async def add(self, *rows):
        async with self.session_factory() as session:
            for row in rows:
                session.add(row)
            await session.commit()

    async def get(self, model, key):
        async with self.session_factory() as session:
            return await session.get(model, key)

    async def all(self, model):
        from sqlalchemy import select

        async with self.session_factory() as session:
            return list((await session.execute(select(model))).scalars().all())

    async def seed_account(
        self,
        user_id: str,
        account_id: str,
        *,
        broker: str = "projectx",
        broker_account_name: str = "1001",
        connection_id: Optional[str] = None,
        connection_enabled: bool = True,
        with_connection: bool = True,
        risk_per_r: float = 100.0,
    ) -> Optional[BrokerConnection]:
        async with self.session_factory() as session:
            if await session.get(User, user_id) is None:
                session.add(User(id=user_id, email=f"{user_id}@example.com"))
            session.add(TradingAccount(id=account_id, user_id=user_id, name=account_id, risk_per_r=risk_per_r))
            connection = None
            if with_connection:
                connection = BrokerConnection(
                    id=connection_id or f"conn-{account_id}",
                    user_id=user_id,
                    trading_account_id=account_id,
                    broker_type=broker,
                    broker_account_name=broker_account_name,
                    auth_method="api_key",
                    api_key="key",
                    api_username="trader",
                    api_secret="secret" if broker == "bybit" else None,
                    enabled=connection_enabled,
                )
                session.add(connection)
            await session.commit()
            return connection

    async def add_config(
        self,
        user_id: str,
        source_account_id: str,
        destination_account_id: str,
        *,
        multiplier: float = 1.0,
        enabled: bool = True,
        symbols=None,
        exclude_symbols=None,
        min_rr=None,
        max_rr=None,
        config_id: Optional[str] = None,
    ) -> CopyTradeConfig:
        config = CopyTradeConfig(
            id=config_id or str(uuid.uuid4()),
            user_id=user_id,
            source_account_id=source_account_id,
            destination_account_id=destination_account_id,
            multiplier=multiplier,
            enabled=enabled,
            symbols=symbols or [],
            exclude_symbols=exclude_symbols or [],
            min_rr=min_rr,
            max_rr=max_rr,
        )
        await self.add(config)
        return config

    async def add_session_token(self, user_id: str, token: str, *, expires_at=None) -> None:
        await self.add(
            UserSession(id=str(uuid.uuid4()), user_id=user_id, token_hash=hash_token(token), expires_at=expires_at)
        )

    async def add_journal_trade(self, **fields) -> JournalTrade:
        trade = JournalTrade(id=fields.pop("id", str(uuid.uuid4())), **fields)
        await self.add(trade)
        return trade


@pytest.fixture
def copy_db(tmp_path, monkeypatch):
    """``async with copy_db as db:`` yields a seeded-on-demand test database."""
    return CopyTradeDb(tmp_path, monkeypatch)


# ---------------------------------------------------------------------------
# Brokers
# ---------------------------------------------------------------------------


class FakeGateway:
    """In-memory stand-in for one broker account; records every call."""

    def __init__(self, account_name: str):
        self.account_name = account_name
        self.executions: list[SourceExecutionEvent] = []
        self.placed: list = []
        self.cancelled: list = []
        self.modified: list = []
        self.place_error: Optional[str] = None
        self.list_error: Optional[Exception] = None
        self.cancel_error: Optional[str] = None
        self._next_id = 7000

    async def list_recent_executions(self, account_id, since, until):
        if self.list_error is not None:
            raise self.list_error
        return list(self.executions)

    async def place_order(self, account_id, order):
        self.placed.append((account_id, order))
        if self.place_error:
            return OrderResult.failed(self.place_error)
        self._next_id += 1
        return OrderResult(success=True, order_id=str(self._next_id))

    async def cancel_order(self, account_id, order_id, *, symbol=None):
        self.cancelled.append((account_id, order_id, symbol))
        if self.cancel_error:
            return OrderResult.failed(self.cancel_error)
        return OrderResult(success=True, order_id=order_id)

    async def modify_order(self, account_id, order_id, **kwargs):
        self.modified.append((account_id, order_id, kwargs))
        return OrderResult(success=True, order_id=order_id)

    async def get_session_token(self):
        return f"jwt-{self.account_name}"

    async def close(self):
        return None


class FakeBrokers:
    def __init__(self):
        self.gateways: dict[str, FakeGateway] = {}

    def __getitem__(self, account_name: str) -> FakeGateway:
        if account_name not in self.gateways:
            self.gateways[account_name] = FakeGateway(account_name)
        return self.gateways[account_name]

    @property
    def total_placed(self) -> int:
        return sum(len(gw.placed) for gw in self.gateways.values())

    def open_gateway(self):
        brokers = self

        @asynccontextmanager
        async def _open(connection):
            yield brokers[connection.broker_account_name]

        return _open


@pytest.fixture
def fake_brokers(monkeypatch):
    brokers = FakeBrokers()
    for module in GATEWAY_MODULES:
        monkeypatch.setattr(f"{module}.open_gateway", brokers.open_gateway())
    return brokers


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


def make_event(**overrides) -> SourceExecutionEvent:
    fields = {
        "broker": "projectx",
        "symbol": "CON.F.US.MNQ.Z25",
        "side": Side.BUY,
        "quantity": 1.0,
        "order_type": OrderType.MARKET,
        "price": None,
        "stop_price": None,
        "order_id": "5001",
        "execution_id": "9001",
        "status": ExecutionStatus.FILLED,
        "pnl": None,
        "occurred_at": utcnow(),
    }
    fields.update(overrides)
    return SourceExecutionEvent(**fields)


@pytest.fixture
def event_factory():
    return make_event
