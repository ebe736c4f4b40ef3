import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import make_event
from models.database import CopyTradeLog, CopyTradeStatus
from services.brokers.normalize import OrderType
from services.copy_trade_poller import CopyTradePoller
from services.execution_dedup import ExecutionDeduplicator
from services.order_mutations import OrderMutationHandler, normalize_action


def _limit_order(order_id: int = 5001, price: float = 100.0, size: int = 1, status: int = 1) -> dict:
    return {
        "id": order_id,
        "accountId": 1001,
        "contractId": "CON.F.US.MNQ.Z25",
        "type": 1,
        "side": 0,
        "size": size,
        "limitPrice": price,
        "status": status,
    }


async def _seed(db, multiplier: float = 1.0):
    await db.seed_account("user-1", "src", broker_account_name="1001", connection_id="conn-src")
    await db.seed_account("user-1", "dst", broker_account_name="2002")
    await db.add_config("user-1", "src", "dst", multiplier=multiplier)


def test_normalize_action_accepts_american_spelling():
    assert normalize_action("Canceled") == "cancelled"
    assert normalize_action(None) == "new"
    with pytest.raises(ValueError):
        normalize_action("replace")


@pytest.mark.asyncio
async def test_new_modify_cancel_lifecycle(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db, multiplier=2.0)
        handler = OrderMutationHandler()

        created = await handler.process_order_update("user-1", "conn-src", "src", _limit_order(), "new")
        assert created["executed"] == 1
        _, placed = fake_brokers["2002"].placed[0]
        assert placed.order_type is OrderType.LIMIT
        assert placed.price == 100.0
        assert placed.quantity == 2

        moved = await handler.process_order_update("user-1", "conn-src", "src", _limit_order(price=105.0), "modified")
        assert moved["modified"] == 1
        account, order_id, changes = fake_brokers["2002"].modified[0]
        assert (account, order_id) == ("2002", "7001")
        assert changes["limit_price"] == 105.0
        assert changes["quantity"] == 2
        assert changes["order_type"] is OrderType.LIMIT
        [log] = await db.all(CopyTradeLog)
        assert log.order_price == 105.0

        gone = await handler.process_order_update("user-1", "conn-src", "src", _limit_order(price=105.0), "cancelled")
        assert gone["cancelled"] == 1
        assert fake_brokers["2002"].cancelled == [("2002", "7001", "CON.F.US.MNQ.Z25")]
        [log] = await db.all(CopyTradeLog)
        assert log.order_status == CopyTradeStatus.CANCELLED.value

        # The source order is gone; a late modify has nothing to act on
        late = await handler.process_order_update("user-1", "conn-src", "src", _limit_order(price=110.0), "modified")
        assert late["modified"] == 0
        assert len(fake_brokers["2002"].modified) == 1


@pytest.mark.asyncio
async def test_price_change_within_tolerance_is_ignored(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db)
        handler = OrderMutationHandler()
        await handler.process_order_update("user-1", "conn-src", "src", _limit_order(), "new")

        result = await handler.process_order_update(
            "user-1", "conn-src", "src", _limit_order(price=100.005), "modified"
        )

        assert result["modified"] == 0
        assert fake_brokers["2002"].modified == []


@pytest.mark.asyncio
async def test_size_change_resizes_mirrored_order(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db, multiplier=2.0)
        handler = OrderMutationHandler()
        await handler.process_order_update("user-1", "conn-src", "src", _limit_order(size=1), "new")

        result = await handler.process_order_update("user-1", "conn-src", "src", _limit_order(size=3), "modified")

        assert result["modified"] == 1
        _, _, changes = fake_brokers["2002"].modified[0]
        assert changes["quantity"] == 6
        assert changes["limit_price"] == 100.0
        [log] = await db.all(CopyTradeLog)
        assert log.destination_quantity == 6
        assert log.source_quantity == 3


@pytest.mark.asyncio
async def test_cancel_targets_only_matching_source_order(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db)
        handler = OrderMutationHandler()
        await handler.process_order_update("user-1", "conn-src", "src", _limit_order(order_id=5001), "new")
        await handler.process_order_update("user-1", "conn-src", "src", _limit_order(order_id=5002, price=99.0, size=2), "new")

        result = await handler.cancel("src", "5001")

        assert result["cancelled"] == 1
        assert [order_id for _, order_id, _ in fake_brokers["2002"].cancelled] == ["7001"]
        statuses = {log.source_order_id: log.order_status for log in await db.all(CopyTradeLog)}
        assert statuses == {"5001": "cancelled", "5002": "submitted"}


@pytest.mark.asyncio
async def test_cancel_without_mirrors_is_a_noop(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db)
        result = await OrderMutationHandler().cancel("src", "404")

    assert result["cancelled"] == 0
    assert "No active mirrored orders" in result["message"]
    assert fake_brokers.total_placed == 0


@pytest.mark.asyncio
async def test_failed_destination_cancel_keeps_row_active(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db)
        handler = OrderMutationHandler()
        await handler.process_order_update("user-1", "conn-src", "src", _limit_order(), "new")
        fake_brokers["2002"].cancel_error = "Order already filled"

        result = await handler.cancel("src", "5001")

        assert result["cancelled"] == 0
        assert result["errors"] == ["2002: Order already filled"]
        [log] = await db.all(CopyTradeLog)
        assert log.order_status == CopyTradeStatus.SUBMITTED.value


@pytest.mark.asyncio
async def test_rejected_source_order_is_not_copied(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db)
        result = await OrderMutationHandler().process_order_update(
            "user-1", "conn-src", "src", _limit_order(status=5), "new"
        )

    assert result["executed"] == 0
    assert fake_brokers.total_placed == 0


@pytest.mark.asyncio
async def test_copy_if_new_never_reprices_existing_copy(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db)
        handler = OrderMutationHandler()
        await handler.copy_if_new("user-1", "src", make_event(order_id="5001", execution_id="9001"))

        # A second fill of the same order arrives through the trade stream
        again = await handler.copy_if_new("user-1", "src", make_event(order_id="5001", execution_id="9002"))

        assert again["executed"] == 0
        assert len(fake_brokers["2002"].placed) == 1
        assert fake_brokers["2002"].modified == []


@pytest.mark.asyncio
async def test_process_order_update_rejects_foreign_connection_and_bad_payload(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db)
        handler = OrderMutationHandler()

        with pytest.raises(LookupError):
            await handler.process_order_update("user-2", "conn-src", "src", _limit_order(), "new")
        with pytest.raises(LookupError):
            await handler.process_order_update("user-1", "conn-src", "dst", _limit_order(), "new")
        with pytest.raises(ValueError):
            await handler.process_order_update("user-1", "conn-src", "src", {"id": 1, "contractId": "MNQ", "side": 0}, "new")
        with pytest.raises(ValueError):
            await handler.process_order_update("user-1", "conn-src", "src", _limit_order(), "replace")


@pytest.mark.asyncio
async def test_cancel_with_only_an_order_id(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db)
        handler = OrderMutationHandler()
        await handler.process_order_update("user-1", "conn-src", "src", _limit_order(), "new")

        result = await handler.process_order_update("user-1", "conn-src", "src", {"id": 5001}, "cancelled")

        assert result["cancelled"] == 1
        assert fake_brokers["2002"].cancelled == [("2002", "7001", "CON.F.US.MNQ.Z25")]
        [log] = await db.all(CopyTradeLog)
        assert log.order_status == CopyTradeStatus.CANCELLED.value

        with pytest.raises(ValueError):
            await handler.process_order_update("user-1", "conn-src", "src", {"status": 3}, "canceled")


@pytest.mark.asyncio
async def test_pushed_update_after_poll_does_not_copy_again(copy_db, fake_brokers):
    async with copy_db as db:
        await _seed(db)
        fake_brokers["1001"].executions = [make_event()]
        polled = await CopyTradePoller(dedup=ExecutionDeduplicator(window_seconds=30)).check_and_execute("user-1")
        assert polled["executed"] == 1

        pushed = await OrderMutationHandler().handle_event("user-1", "src", make_event(), "new")

        assert pushed.get("executed", 0) == 0
        assert len(fake_brokers["2002"].placed) == 1
        assert fake_brokers["2002"].modified == []
        assert len(await db.all(CopyTradeLog)) == 1
