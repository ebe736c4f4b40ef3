import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import make_event
from models.database import CopyTradeLog
from services.brokers.base import BrokerRequestError
from services.copy_trade_poller import CopyTradePoller
from services.execution_dedup import ExecutionDeduplicator
from services.order_mutations import OrderMutationHandler


def _poller() -> CopyTradePoller:
    return CopyTradePoller(dedup=ExecutionDeduplicator(window_seconds=30))


async def _seed(db):
    await db.seed_account("user-1", "src", broker_account_name="1001")
    await db.seed_account("user-1", "dst", broker_account_name="2002")
    await db.add_config("user-1", "src", "dst")


@pytest.mark.asyncio
async def test_no_configs_reports_message(copy_db, fake_brokers):
    async with copy_db as db:
        await db.seed_account("user-1", "src")
        result = await _poller().check_and_execute("user-1")

    assert result["checked"] == 0
    assert result["executed"] == 0
    assert result["message"] == "No active copy trade configurations"
    assert result["timestamp"].endswith("Z")


@pytest.mark.asyncio
async def test_only_opening_fills_are_copied(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db)
        fake_brokers["1001"].executions = [
            make_event(order_id="5001", execution_id="9001", pnl=None),
            make_event(order_id="5002", execution_id="9002", pnl=48.5, quantity=2.0),
        ]

        result = await _poller().check_and_execute("user-1")

        assert result["checked"] == 1
        assert result["executed"] == 1
        assert "errors" not in result
        placed = fake_brokers["2002"].placed
        assert len(placed) == 1
        assert placed[0][1].quantity == 1


@pytest.mark.asyncio
async def test_repeated_polls_place_one_order(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db)
        fake_brokers["1001"].executions = [make_event()]
        poller = _poller()

        first = await poller.check_and_execute("user-1")
        second = await poller.check_and_execute("user-1")

        assert first["executed"] == 1
        assert second["executed"] == 0
        assert second["checked"] == 1
        assert len(fake_brokers["2002"].placed) == 1
        assert len(await db.all(CopyTradeLog)) == 1


@pytest.mark.asyncio
async def test_source_poll_failure_is_reported_not_raised(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db)
        fake_brokers["1001"].list_error = BrokerRequestError("projectx /api/Trade/search failed (500)", 500)

        result = await _poller().check_and_execute("user-1")

    assert result["checked"] == 0
    assert result["executed"] == 0
    assert result["errors"] == ["Error checking 1001: projectx /api/Trade/search failed (500)"]


@pytest.mark.asyncio
async def test_destination_error_is_surfaced_in_cycle_result(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db)
        fake_brokers["1001"].executions = [make_event()]
        fake_brokers["2002"].place_error = "Market closed"

        result = await _poller().check_and_execute("user-1")

    assert result["executed"] == 0
    assert result["errors"] == ["2002: Market closed"]


@pytest.mark.asyncio
async def test_worker_cycle_sums_results_per_user(copy_db, fake_brokers, monkeypatch):
    from workers import copy_trade_worker

    async with copy_db as db:
        await _seed(db)
        await db.seed_account("user-2", "src-2", broker_account_name="3003")
        await db.seed_account("user-2", "dst-2", broker_account_name="4004")
        await db.add_config("user-2", "src-2", "dst-2")
        fake_brokers["1001"].executions = [make_event()]
        fake_brokers["3003"].list_error = BrokerRequestError("unreachable")
        monkeypatch.setattr(copy_trade_worker, "AsyncSessionLocal", db.session_factory)

        totals = await copy_trade_worker.run_cycle(_poller())

    assert totals == {"users": 2, "checked": 1, "executed": 1, "errors": 1}


@pytest.mark.asyncio
async def test_poll_after_pushed_event_does_not_copy_again(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db)
        pushed = await OrderMutationHandler().handle_event("user-1", "src", make_event(), "new")
        assert pushed["executed"] == 1

        fake_brokers["1001"].executions = [make_event()]
        polled = await _poller().check_and_execute("user-1")

        assert polled["checked"] == 1
        assert polled["executed"] == 0
        assert len(fake_brokers["2002"].placed) == 1
        assert len(await db.all(CopyTradeLog)) == 1


@pytest.mark.asyncio
async def test_destination_fills_are_recorded_on_the_copy(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db)
        fake_brokers["1001"].executions = [make_event(quantity=2.0)]
        poller = _poller()
        await poller.check_and_execute("user-1")
        [log] = await db.all(CopyTradeLog)
        assert log.filled_quantity is None

        fake_brokers["2002"].executions = [
            make_event(order_id="7001", execution_id="8001", quantity=1.0, price=100.0),
            make_event(order_id="7001", execution_id="8002", quantity=1.0, price=102.0),
            make_event(order_id="7999", execution_id="8003", quantity=5.0, price=90.0),
        ]
        result = await poller.check_and_execute("user-1")

        assert "errors" not in result
        [log] = await db.all(CopyTradeLog)
        assert log.order_status == "submitted"
        assert log.filled_quantity == 2.0
        assert log.filled_price == pytest.approx(101.0)
        assert log.filled_at is not None


@pytest.mark.asyncio
async def test_destination_fill_lookup_failure_does_not_fail_the_cycle(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db)
        fake_brokers["1001"].executions = [make_event()]
        fake_brokers["2002"].list_error = BrokerRequestError("unreachable")

        result = await _poller().check_and_execute("user-1")

        assert result["executed"] == 1
        assert "errors" not in result
        [log] = await db.all(CopyTradeLog)
        assert log.filled_quantity is None
