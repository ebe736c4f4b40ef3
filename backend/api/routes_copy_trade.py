from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from api.auth import get_current_user
from models.database import AsyncSessionLocal
from services import copy_trade_log as audit
from services.copy_trade_poller import copy_trade_poller
from services.copy_trader import ConfigValidationError, config_to_dict, copy_trader
from services.journal_copy import copy_journal_trade
from services.order_mutations import order_mutations
from services.realtime_copy import hub_connection_details
from utils.logger import api_logger as logger

copy_trade_router = APIRouter()


class ProcessOrderUpdateRequest(BaseModel):
    # Optional so a missing field is answered with 400 rather than 422
    connectionId: Optional[str] = None
    tradingAccountId: Optional[str] = None
    order: Optional[dict[str, Any]] = None
    action: Optional[str] = Field(default="new", description="new | modified | cancelled")


class CreateCopyConfigRequest(BaseModel):
    source_account_id: str
    destination_account_id: str
    multiplier: float = Field(default=1.0, gt=0.0, le=1000.0)
    enabled: bool = True
    symbols: list[str] = Field(default=[], description="Only copy these symbols (empty = all)")
    exclude_symbols: list[str] = Field(default=[], description="Never copy these symbols")
    min_rr: Optional[float] = None
    max_rr: Optional[float] = None


class UpdateCopyConfigRequest(BaseModel):
    multiplier: Optional[float] = Field(default=None, gt=0.0, le=1000.0)
    enabled: Optional[bool] = None
    symbols: Optional[list[str]] = None
    exclude_symbols: Optional[list[str]] = None
    min_rr: Optional[float] = None
    max_rr: Optional[float] = None


# ==================== EXECUTION ====================


@copy_trade_router.post("/check-and-execute")
async def check_and_execute(user_id: str = Depends(get_current_user)):
    """Scan the caller's source connections once and copy new opening fills."""
    return await copy_trade_poller.check_and_execute(user_id)


@copy_trade_router.post("/process-order-update")
async def process_order_update(
    request: ProcessOrderUpdateRequest,
    user_id: str = Depends(get_current_user),
):
    """Apply a relayed source order update (new / modified / cancelled)."""
    if not request.connectionId or not request.tradingAccountId:
        raise HTTPException(status_code=400, detail="connectionId and tradingAccountId are required")
    if not request.order:
        raise HTTPException(status_code=400, detail="order payload is required")
    try:
        return await order_mutations.process_order_update(
            user_id,
            request.connectionId,
            request.tradingAccountId,
            request.order,
            request.action,
        )
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@copy_trade_router.get("/signalr-connection")
async def get_signalr_connection(user_id: str = Depends(get_current_user)):
    """Hub URL and token per ProjectX source connection for client-side push."""
    return await hub_connection_details(user_id)


# ==================== COPY CONFIGURATIONS ====================


@copy_trade_router.post("/configs")
async def create_copy_config(
    request: CreateCopyConfigRequest,
    user_id: str = Depends(get_current_user),
):
    try:
        config = await copy_trader.create_config(user_id=user_id, **request.model_dump())
    except ConfigValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {**config_to_dict(config), "message": "Copy trade configuration created"}


@copy_trade_router.get("/configs")
async def list_copy_configs(
    source_account_id: Optional[str] = Query(default=None),
    user_id: str = Depends(get_current_user),
):
    configs = await copy_trader.get_configs(user_id, source_account_id)
    return [config_to_dict(cfg) for cfg in configs]


@copy_trade_router.put("/configs/{config_id}")
async def update_copy_config(
    config_id: str,
    request: UpdateCopyConfigRequest,
    user_id: str = Depends(get_current_user),
):
    update_fields = request.model_dump(exclude_none=True)
    if not update_fields:
        return {"message": "No fields to update", "config_id": config_id}
    try:
        config = await copy_trader.update_config(user_id, config_id, **update_fields)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConfigValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {**config_to_dict(config), "message": "Configuration updated"}


@copy_trade_router.delete("/configs/{config_id}")
async def delete_copy_config(config_id: str, user_id: str = Depends(get_current_user)):
    try:
        outcome = await copy_trader.remove_config(user_id, config_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    message = "Configuration deleted" if outcome == "deleted" else "Configuration has copy history; disabled instead"
    return {"message": message, "config_id": config_id, "result": outcome}


# ==================== AUDIT LOG / JOURNAL ====================


@copy_trade_router.get("/logs")
async def list_copy_logs(
    config_id: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    user_id: str = Depends(get_current_user),
):
    async with AsyncSessionLocal() as session:
        logs = await audit.list_logs(session, user_id, config_id=config_id, status=status, limit=limit)
    return [audit.log_to_dict(entry) for entry in logs]


@copy_trade_router.post("/journal/{trade_id}/copy")
async def copy_journal(trade_id: str, user_id: str = Depends(get_current_user)):
    try:
        result = await copy_journal_trade(user_id, trade_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    logger.info("Journal copy requested", trade_id=trade_id, copied=result["copied"])
    return result
