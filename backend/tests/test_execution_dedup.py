import sys
import uuid
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import make_event
from models.database import CopyTradeLog, CopyTradeStatus
from services.brokers.normalize import Side
from services.copy_trade_log import build_dedup_key
from services.execution_dedup import ExecutionDeduplicator
from utils.utcnow import utcnow


def _log(config_id: str, event, *, status=CopyTradeStatus.SUBMITTED.value, created_at=None, **fields) -> CopyTradeLog:
    values = dict(
        id=str(uuid.uuid4()),
        copy_trade_config_id=config_id,
        dedup_key=build_dedup_key(event),
        source_account_id="src",
        source_symbol=event.symbol,
        source_side=event.side.value,
        source_quantity=event.quantity,
        source_order_id=event.order_id,
        destination_account_id="dst",
        destination_symbol=event.symbol,
        destination_side=event.side.value,
        destination_quantity=event.quantity,
        multiplier=1.0,
        order_status=status,
        created_at=created_at or utcnow(),
    )
    values.update(fields)
    return CopyTradeLog(**values)


async def _seed(db):
    await db.seed_account("user-1", "src")
    await db.seed_account("user-1", "dst", broker_account_name="2002")
    return await db.add_config("user-1", "src", "dst", config_id="cfg-1")


@pytest.mark.asyncio
async def test_unseen_execution_is_new(copy_db):
    async with copy_db as db:
        await _seed(db)
        dedup = ExecutionDeduplicator(window_seconds=30)
        async with db.session_factory() as session:
            assert await dedup.check(session, "src", make_event()) == (True, "new")


@pytest.mark.asyncio
async def test_recent_matching_log_blocks_copy(copy_db):
    async with copy_db as db:
        await _seed(db)
        # Same symbol/side/qty, different order id: audit-log match inside the window
        await db.add(_log("cfg-1", make_event(order_id="4000")))
        dedup = ExecutionDeduplicator(window_seconds=30)
        async with db.session_factory() as session:
            is_new, reason = await dedup.check(session, "src", make_event(order_id="5001"))
        assert is_new is False
        assert reason == "already_copied"


@pytest.mark.asyncio
async def test_log_outside_window_or_other_side_does_not_block(copy_db):
    async with copy_db as db:
        await _seed(db)
        await db.add(
            _log("cfg-1", make_event(order_id="4000"), created_at=utcnow() - timedelta(seconds=120)),
            _log("cfg-1", make_event(order_id="4001", side=Side.SELL)),
        )
        dedup = ExecutionDeduplicator(window_seconds=30)
        async with db.session_factory() as session:
            assert await dedup.is_new(session, "src", make_event(order_id="5001"))


@pytest.mark.asyncio
async def test_error_rows_do_not_block_a_retry(copy_db):
    async with copy_db as db:
        await _seed(db)
        await db.add(_log("cfg-1", make_event(), status=CopyTradeStatus.ERROR.value))
        dedup = ExecutionDeduplicator(window_seconds=30)
        async with db.session_factory() as session:
            assert await dedup.is_new(session, "src", make_event())


@pytest.mark.asyncio
async def test_same_source_order_blocks_even_after_window(copy_db):
    async with copy_db as db:
        await _seed(db)
        await db.add(
            _log(
                "cfg-1",
                make_event(quantity=3.0),
                status=CopyTradeStatus.CANCELLED.value,
                created_at=utcnow() - timedelta(hours=1),
            )
        )
        dedup = ExecutionDeduplicator(window_seconds=30)
        async with db.session_factory() as session:
            is_new, reason = await dedup.check(session, "src", make_event(quantity=1.0))
        assert (is_new, reason) == (False, "already_copied")


@pytest.mark.asyncio
async def test_journaled_execution_is_not_copied(copy_db):
    async with copy_db as db:
        await _seed(db)
        await db.add_journal_trade(
            user_id="user-1",
            trading_account_id="src",
            broker_trade_id="projectx_9001",
            sync_source="projectx",
            symbol="CON.F.US.MNQ.Z25",
            side="buy",
            size=1.0,
            status="open",
        )
        dedup = ExecutionDeduplicator(window_seconds=30)
        async with db.session_factory() as session:
            is_new, reason = await dedup.check(session, "src", make_event(order_id=None))
        assert (is_new, reason) == (False, "already_journaled")


@pytest.mark.asyncio
async def test_lookup_failure_treats_execution_as_handled():
    class _BrokenSession:
        async def execute(self, *_args, **_kwargs):
            raise OperationalError("SELECT ...", {}, Exception("database is locked"))

    dedup = ExecutionDeduplicator(window_seconds=30)
    assert await dedup.check(_BrokenSession(), "src", make_event()) == (False, "lookup_failed")


def test_dedup_key_prefers_order_id_then_fingerprint():
    assert build_dedup_key(make_event(order_id="5001")) == "order:5001"
    key = build_dedup_key(make_event(order_id=None, quantity=2.0))
    assert key.startswith("fill:CON.F.US.MNQ.Z25|buy|2|")
