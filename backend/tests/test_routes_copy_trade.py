import sys
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from fastapi import HTTPException

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from api import routes_copy_trade
from api.auth import get_current_user
from api.routes_copy_trade import (
    CreateCopyConfigRequest,
    ProcessOrderUpdateRequest,
    UpdateCopyConfigRequest,
    create_copy_config,
    delete_copy_config,
    list_copy_logs,
    process_order_update,
    update_copy_config,
)
from services.copy_trader import ConfigValidationError
from utils.utcnow import utcnow


@pytest.mark.asyncio
async def test_process_order_update_requires_ids_and_order():
    with pytest.raises(HTTPException) as missing_ids:
        await process_order_update(ProcessOrderUpdateRequest(order={"id": 1}), user_id="user-1")
    assert missing_ids.value.status_code == 400

    with pytest.raises(HTTPException) as missing_order:
        await process_order_update(
            ProcessOrderUpdateRequest(connectionId="conn-src", tradingAccountId="src"), user_id="user-1"
        )
    assert missing_order.value.status_code == 400


@pytest.mark.asyncio
async def test_process_order_update_maps_handler_errors(monkeypatch):
    handler = AsyncMock(side_effect=LookupError("Broker connection conn-x not found"))
    monkeypatch.setattr(routes_copy_trade.order_mutations, "process_order_update", handler)
    request = ProcessOrderUpdateRequest(connectionId="conn-x", tradingAccountId="src", order={"id": 1})

    with pytest.raises(HTTPException) as not_found:
        await process_order_update(request, user_id="user-1")
    assert not_found.value.status_code == 404

    handler.side_effect = ValueError("Unknown order action: replace")
    with pytest.raises(HTTPException) as bad_request:
        await process_order_update(request, user_id="user-1")
    assert bad_request.value.status_code == 400
    assert "replace" in bad_request.value.detail


@pytest.mark.asyncio
async def test_process_order_update_passes_action_through(monkeypatch):
    handler = AsyncMock(return_value={"cancelled": 1, "errors": []})
    monkeypatch.setattr(routes_copy_trade.order_mutations, "process_order_update", handler)
    request = ProcessOrderUpdateRequest(
        connectionId="conn-src", tradingAccountId="src", order={"id": 5001}, action="cancelled"
    )

    result = await process_order_update(request, user_id="user-1")

    assert result == {"cancelled": 1, "errors": []}
    handler.assert_awaited_once_with("user-1", "conn-src", "src", {"id": 5001}, "cancelled")


@pytest.mark.asyncio
async def test_create_config_validation_error_is_400(monkeypatch):
    monkeypatch.setattr(
        routes_copy_trade.copy_trader,
        "create_config",
        AsyncMock(side_effect=ConfigValidationError("Source and destination must be different accounts")),
    )

    with pytest.raises(HTTPException) as exc:
        await create_copy_config(
            CreateCopyConfigRequest(source_account_id="a", destination_account_id="a"), user_id="user-1"
        )

    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_config_crud_round_trip(copy_db):
    async with copy_db as db:
        await db.seed_account("user-1", "src")
        await db.seed_account("user-1", "dst", broker_account_name="2002")

        created = await create_copy_config(
            CreateCopyConfigRequest(source_account_id="src", destination_account_id="dst", symbols=["mnq"]),
            user_id="user-1",
        )
        assert created["symbols"] == ["MNQ"]

        empty = await update_copy_config(created["id"], UpdateCopyConfigRequest(), user_id="user-1")
        assert empty["message"] == "No fields to update"

        updated = await update_copy_config(created["id"], UpdateCopyConfigRequest(multiplier=3.0), user_id="user-1")
        assert updated["multiplier"] == 3.0

        with pytest.raises(HTTPException) as foreign:
            await update_copy_config(created["id"], UpdateCopyConfigRequest(enabled=False), user_id="user-2")
        assert foreign.value.status_code == 404

        deleted = await delete_copy_config(created["id"], user_id="user-1")
        assert deleted["result"] == "deleted"

        assert await list_copy_logs(config_id=None, status=None, limit=100, user_id="user-1") == []


@pytest.mark.asyncio
async def test_get_current_user_resolves_bearer_tokens(copy_db):
    async with copy_db as db:
        await db.seed_account("user-1", "src", with_connection=False)
        await db.add_session_token("user-1", "good-token")
        await db.add_session_token("user-1", "old-token", expires_at=utcnow() - timedelta(minutes=1))

        assert await get_current_user("Bearer good-token") == "user-1"

        for header in (None, "Basic good-token", "Bearer ", "Bearer unknown", "Bearer old-token"):
            with pytest.raises(HTTPException) as exc:
                await get_current_user(header)
            assert exc.value.status_code == 401
