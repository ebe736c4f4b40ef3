"""Audit log for copy-trade fan-out attempts.

Every (source event, copy config) pair gets exactly one ``CopyTradeLog`` row,
written as ``pending`` and committed *before* the destination broker is
called.  The row then moves to ``submitted`` (with the destination order id)
or ``error``; order mutation handlers later move it to ``cancelled`` or
reprice it, and the poller attaches what the destination reports as filled.
Rows are never deleted.
"""

from __future__ import annotations

import uuid
from typing import Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import (
    ACTIVE_COPY_STATUSES,
    BrokerConnection,
    CopyTradeConfig,
    CopyTradeLog,
    CopyTradeStatus,
)
from services.brokers.base import SourceExecutionEvent
from utils.logger import copy_trade_logger as logger
from utils.utcnow import floor_to_window, utcnow


def build_dedup_key(event: SourceExecutionEvent) -> str:
    """Storage-level identity of a source event.

    The broker order id is shared by the push channel (order updates) and
    the poller (fills of that order), so either path observing the event
    first claims it.  Without an order id the key falls back to a
    symbol/side/quantity fingerprint within one dedup window.
    """
    if event.order_id:
        return f"order:{event.order_id}"
    observed = event.occurred_at or utcnow()
    bucket = floor_to_window(observed, settings.COPY_TRADE_DEDUP_WINDOW_SECONDS)
    return f"fill:{event.symbol}|{event.side.value}|{event.quantity:g}|{bucket.isoformat()}"


async def open_pending_entry(
    session: AsyncSession,
    *,
    config: CopyTradeConfig,
    destination: BrokerConnection,
    event: SourceExecutionEvent,
    source_account_id: str,
    destination_quantity: int,
    user_id: Optional[str] = None,
) -> Optional[CopyTradeLog]:
    """Insert and commit the ``pending`` row; None if another cycle owns the event.

    A previous attempt for the same key that ended in ``error`` is re-claimed
    (error -> pending) with a conditional update so the retry still goes
    through exactly one writer.
    """
    dedup_key = build_dedup_key(event)
    entry = CopyTradeLog(
        id=str(uuid.uuid4()),
        copy_trade_config_id=config.id,
        user_id=user_id,
        dedup_key=dedup_key,
        source_account_id=source_account_id,
        source_symbol=event.symbol,
        source_side=event.side.value,
        source_quantity=event.quantity,
        source_order_id=event.order_id,
        source_execution_id=event.execution_id,
        destination_account_id=config.destination_account_id,
        destination_broker_connection_id=destination.id,
        destination_symbol=event.symbol,
        destination_side=event.side.value,
        destination_quantity=destination_quantity,
        multiplier=config.multiplier,
        order_type=event.order_type.value,
        order_price=event.price,
        order_stop_price=event.stop_price,
        order_status=CopyTradeStatus.PENDING.value,
    )
    session.add(entry)
    try:
        await session.commit()
        return entry
    except IntegrityError:
        await session.rollback()

    reclaimed = await session.execute(
        update(CopyTradeLog)
        .where(
            CopyTradeLog.copy_trade_config_id == config.id,
            CopyTradeLog.dedup_key == dedup_key,
            CopyTradeLog.order_status == CopyTradeStatus.ERROR.value,
        )
        .values(
            order_status=CopyTradeStatus.PENDING.value,
            error_message=None,
            destination_quantity=destination_quantity,
            updated_at=utcnow(),
        )
    )
    await session.commit()
    if reclaimed.rowcount != 1:
        logger.debug("Copy already claimed by another cycle", config_id=config.id, dedup_key=dedup_key)
        return None

    row = await session.execute(
        select(CopyTradeLog).where(
            CopyTradeLog.copy_trade_config_id == config.id,
            CopyTradeLog.dedup_key == dedup_key,
        )
    )
    retried = row.scalar_one()
    logger.info("Retrying previously failed copy", log_id=retried.id, config_id=config.id)
    return retried


async def mark_submitted(session: AsyncSession, entry: CopyTradeLog, order_id: Optional[str]) -> None:
    entry.order_status = CopyTradeStatus.SUBMITTED.value
    entry.order_id = order_id
    entry.error_message = None
    entry.updated_at = utcnow()
    await session.commit()


async def mark_error(session: AsyncSession, entry: CopyTradeLog, message: str) -> None:
    entry.order_status = CopyTradeStatus.ERROR.value
    entry.error_message = (message or "Unknown error")[:2000]
    entry.updated_at = utcnow()
    await session.commit()


async def mark_cancelled(session: AsyncSession, entries: Sequence[CopyTradeLog]) -> None:
    now = utcnow()
    for entry in entries:
        entry.order_status = CopyTradeStatus.CANCELLED.value
        entry.updated_at = now
    await session.commit()


async def record_reprice(
    session: AsyncSession,
    entry: CopyTradeLog,
    *,
    price: Optional[float],
    stop_price: Optional[float],
    destination_quantity: Optional[int] = None,
    source_quantity: Optional[float] = None,
) -> None:
    entry.order_price = price
    entry.order_stop_price = stop_price
    if destination_quantity is not None:
        entry.destination_quantity = destination_quantity
    if source_quantity is not None:
        entry.source_quantity = source_quantity
    entry.updated_at = utcnow()
    await session.commit()


async def find_by_source_order(
    session: AsyncSession,
    source_account_id: str,
    source_order_id: str,
    *,
    statuses: Optional[Sequence[str]] = None,
) -> list[CopyTradeLog]:
    """Rows mirroring one source order, newest first."""
    query = select(CopyTradeLog).where(
        CopyTradeLog.source_account_id == source_account_id,
        CopyTradeLog.source_order_id == str(source_order_id),
    )
    if statuses is not None:
        query = query.where(CopyTradeLog.order_status.in_(list(statuses)))
    query = query.order_by(CopyTradeLog.created_at.desc())
    return list((await session.execute(query)).scalars().all())


async def find_active_by_source_order(
    session: AsyncSession, source_account_id: str, source_order_id: str
) -> list[CopyTradeLog]:
    return await find_by_source_order(
        session, source_account_id, source_order_id, statuses=ACTIVE_COPY_STATUSES
    )


async def find_unfilled_submitted(session: AsyncSession, user_id: str, since) -> list[CopyTradeLog]:
    """Submitted copies created since ``since`` with no destination fill recorded yet."""
    query = select(CopyTradeLog).where(
        CopyTradeLog.user_id == user_id,
        CopyTradeLog.order_status == CopyTradeStatus.SUBMITTED.value,
        CopyTradeLog.order_id.is_not(None),
        CopyTradeLog.filled_at.is_(None),
        CopyTradeLog.created_at >= since,
    )
    return list((await session.execute(query)).scalars().all())


async def record_fill(
    session: AsyncSession,
    log_id: str,
    *,
    quantity: float,
    price: Optional[float],
    filled_at,
) -> None:
    """Store what the destination broker reports as filled for one copy."""
    await session.execute(
        update(CopyTradeLog)
        .where(CopyTradeLog.id == log_id)
        .values(
            filled_quantity=quantity,
            filled_price=price,
            filled_at=filled_at or utcnow(),
            updated_at=utcnow(),
        )
    )
    await session.commit()


async def list_logs(
    session: AsyncSession,
    user_id: str,
    *,
    config_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
) -> list[CopyTradeLog]:
    query = select(CopyTradeLog).where(CopyTradeLog.user_id == user_id)
    if config_id:
        query = query.where(CopyTradeLog.copy_trade_config_id == config_id)
    if status:
        query = query.where(CopyTradeLog.order_status == status)
    query = query.order_by(CopyTradeLog.created_at.desc()).limit(max(1, min(limit, 500)))
    return list((await session.execute(query)).scalars().all())


def log_to_dict(entry: CopyTradeLog) -> dict:
    return {
        "id": entry.id,
        "copy_trade_config_id": entry.copy_trade_config_id,
        "source_account_id": entry.source_account_id,
        "source_symbol": entry.source_symbol,
        "source_side": entry.source_side,
        "source_quantity": entry.source_quantity,
        "source_order_id": entry.source_order_id,
        "destination_account_id": entry.destination_account_id,
        "destination_broker_connection_id": entry.destination_broker_connection_id,
        "destination_symbol": entry.destination_symbol,
        "destination_side": entry.destination_side,
        "destination_quantity": entry.destination_quantity,
        "multiplier": entry.multiplier,
        "order_type": entry.order_type,
        "order_price": entry.order_price,
        "order_stop_price": entry.order_stop_price,
        "order_status": entry.order_status,
        "order_id": entry.order_id,
        "filled_quantity": entry.filled_quantity,
        "filled_price": entry.filled_price,
        "filled_at": entry.filled_at.isoformat() if entry.filled_at else None,
        "error_message": entry.error_message,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
        "updated_at": entry.updated_at.isoformat() if entry.updated_at else None,
    }
