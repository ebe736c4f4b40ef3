"""Decide whether an observed source execution still needs copying.

Two independent checks; either one marks the event as handled:

* audit-log check: a pending/submitted copy for the same source account,
  symbol, side and quantity inside the dedup window (or for the same source
  order id) already exists;
* journal check: broker sync already recorded ``<broker>_<executionId>`` as
  a journal trade.

A failed lookup counts as "handled": skipping a copy is recoverable, a
duplicate live order is not.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import ACTIVE_COPY_STATUSES, CopyTradeLog, CopyTradeStatus, JournalTrade
from services.brokers.base import SourceExecutionEvent
from utils.logger import copy_trade_logger as logger
from utils.utcnow import utcnow


class ExecutionDeduplicator:
    def __init__(self, window_seconds: Optional[int] = None):
        self._window_seconds = window_seconds

    @property
    def window_seconds(self) -> int:
        return self._window_seconds or settings.COPY_TRADE_DEDUP_WINDOW_SECONDS

    async def _logged_recently(
        self, session: AsyncSession, source_account_id: str, event: SourceExecutionEvent
    ) -> bool:
        cutoff = utcnow() - timedelta(seconds=self.window_seconds)
        query = (
            select(CopyTradeLog.id)
            .where(
                CopyTradeLog.source_account_id == source_account_id,
                CopyTradeLog.source_symbol == event.symbol,
                CopyTradeLog.source_side == event.side.value,
                CopyTradeLog.source_quantity == event.quantity,
                CopyTradeLog.created_at >= cutoff,
                CopyTradeLog.order_status.in_(list(ACTIVE_COPY_STATUSES)),
            )
            .limit(1)
        )
        if (await session.execute(query)).first() is not None:
            return True

        if event.order_id:
            by_order = (
                select(CopyTradeLog.id)
                .where(
                    CopyTradeLog.source_account_id == source_account_id,
                    CopyTradeLog.source_order_id == str(event.order_id),
                    CopyTradeLog.order_status != CopyTradeStatus.ERROR.value,
                )
                .limit(1)
            )
            if (await session.execute(by_order)).first() is not None:
                return True
        return False

    async def _journaled(self, session: AsyncSession, event: SourceExecutionEvent) -> bool:
        journal_id = event.journal_trade_id
        if not journal_id:
            return False
        query = select(JournalTrade.id).where(JournalTrade.broker_trade_id == journal_id).limit(1)
        return (await session.execute(query)).first() is not None

    async def check(
        self, session: AsyncSession, source_account_id: str, event: SourceExecutionEvent
    ) -> tuple[bool, str]:
        """Return ``(is_new, reason)``."""
        try:
            if await self._logged_recently(session, source_account_id, event):
                return False, "already_copied"
            if await self._journaled(session, event):
                return False, "already_journaled"
        except SQLAlchemyError as exc:
            logger.warning(
                "Dedup lookup failed; treating execution as handled",
                source_account_id=source_account_id,
                symbol=event.symbol,
                error=str(exc),
            )
            return False, "lookup_failed"
        return True, "new"

    async def is_new(
        self, session: AsyncSession, source_account_id: str, event: SourceExecutionEvent
    ) -> bool:
        is_new, _ = await self.check(session, source_account_id, event)
        return is_new


execution_dedup = ExecutionDeduplicator()
