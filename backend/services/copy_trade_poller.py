"""REST polling path: catch opening fills the push channel missed.

``check_and_execute`` is meant to be driven on a short external cadence
(an HTTP client or ``workers/copy_trade_worker.py``).  It looks back one
dedup window, keeps only position-opening fills, and hands every execution
the deduplicator has not seen yet to the fan-out engine.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from sqlalchemy import select

from models.database import AsyncSessionLocal, BrokerConnection, CopyTradeConfig
from services import copy_trade_log as audit
from services.brokers.factory import open_gateway
from services.copy_trader import CopyTradeService, copy_trader
from services.execution_dedup import ExecutionDeduplicator, execution_dedup
from utils.logger import copy_trade_logger as logger
from utils.logger import exception_text
from utils.utcnow import to_iso_z, utcnow


@dataclass
class ConnectionScan:
    checked: int = 0
    executed: int = 0
    errors: list[str] = field(default_factory=list)


class CopyTradePoller:
    def __init__(
        self,
        engine: Optional[CopyTradeService] = None,
        dedup: Optional[ExecutionDeduplicator] = None,
    ):
        self._engine = engine or copy_trader
        self._dedup = dedup or execution_dedup

    async def _source_connections(self, user_id: str) -> tuple[int, list[BrokerConnection]]:
        async with AsyncSessionLocal() as session:
            rows = await session.execute(
                select(CopyTradeConfig.source_account_id)
                .where(CopyTradeConfig.user_id == user_id, CopyTradeConfig.enabled.is_(True))
                .distinct()
            )
            source_ids = [row[0] for row in rows.all()]
            if not source_ids:
                return 0, []
            result = await session.execute(
                select(BrokerConnection).where(
                    BrokerConnection.trading_account_id.in_(source_ids),
                    BrokerConnection.enabled.is_(True),
                )
            )
            return len(source_ids), list(result.scalars().all())

    async def _scan_connection(self, connection: BrokerConnection, user_id: str) -> ConnectionScan:
        scan = ConnectionScan()
        until = utcnow()
        since = until - timedelta(seconds=self._dedup.window_seconds)
        try:
            async with open_gateway(connection) as gateway:
                executions = await gateway.list_recent_executions(
                    connection.broker_account_name, since, until
                )
        except Exception as exc:
            logger.warning(
                "Source connection poll failed",
                connection_id=connection.id,
                broker=connection.broker_type,
                error=exception_text(exc),
            )
            scan.errors.append(f"Error checking {connection.broker_account_name}: {exception_text(exc)}")
            return scan

        opening = [event for event in executions if event.is_opening()]
        scan.checked = len(opening)
        for event in opening:
            try:
                async with AsyncSessionLocal() as session:
                    is_new, reason = await self._dedup.check(session, connection.trading_account_id, event)
                if not is_new:
                    logger.debug(
                        "Execution already handled",
                        source_account_id=connection.trading_account_id,
                        execution_id=event.execution_id,
                        reason=reason,
                    )
                    continue
                outcome = await self._engine.process_execution(
                    connection.trading_account_id, event, user_id
                )
                scan.executed += outcome.copied
                scan.errors.extend(outcome.errors)
            except Exception as exc:
                logger.error(
                    "Copying polled execution failed",
                    connection_id=connection.id,
                    execution_id=event.execution_id,
                    error=exception_text(exc),
                )
                scan.errors.append(f"Error copying {event.symbol} from {connection.broker_account_name}: {exception_text(exc)}")
        return scan

    async def _record_destination_fills(self, user_id: str) -> int:
        """Attach destination fill details to copies submitted within the last window."""
        until = utcnow()
        since = until - timedelta(seconds=self._dedup.window_seconds)
        async with AsyncSessionLocal() as session:
            entries = await audit.find_unfilled_submitted(session, user_id, since)
            if not entries:
                return 0
            connection_ids = {entry.destination_broker_connection_id for entry in entries}
            result = await session.execute(
                select(BrokerConnection).where(
                    BrokerConnection.id.in_(connection_ids),
                    BrokerConnection.enabled.is_(True),
                )
            )
            connections = list(result.scalars().all())

        recorded = 0
        for connection in connections:
            try:
                async with open_gateway(connection) as gateway:
                    fills = await gateway.list_recent_executions(connection.broker_account_name, since, until)
            except Exception as exc:
                logger.warning(
                    "Destination fill lookup failed",
                    connection_id=connection.id,
                    error=exception_text(exc),
                )
                continue

            by_order: dict[str, list] = {}
            for fill in fills:
                if fill.order_id:
                    by_order.setdefault(str(fill.order_id), []).append(fill)

            async with AsyncSessionLocal() as session:
                for entry in entries:
                    if entry.destination_broker_connection_id != connection.id:
                        continue
                    matched = by_order.get(str(entry.order_id))
                    if not matched:
                        continue
                    quantity = sum(fill.quantity for fill in matched)
                    priced = [fill for fill in matched if fill.price is not None]
                    price = (
                        sum(fill.price * fill.quantity for fill in priced) / sum(fill.quantity for fill in priced)
                        if priced
                        else None
                    )
                    times = [fill.occurred_at for fill in matched if fill.occurred_at is not None]
                    await audit.record_fill(
                        session,
                        entry.id,
                        quantity=quantity,
                        price=price,
                        filled_at=max(times) if times else None,
                    )
                    recorded += 1
        return recorded

    async def check_and_execute(self, user_id: str) -> dict:
        """One poll cycle for ``user_id``; never raises."""
        timestamp = to_iso_z(utcnow())
        try:
            source_count, connections = await self._source_connections(user_id)
        except Exception as exc:
            logger.error("Loading copy trade sources failed", user_id=user_id, error=exception_text(exc))
            return {"checked": 0, "executed": 0, "errors": [exception_text(exc)], "timestamp": timestamp}

        if source_count == 0:
            return {
                "checked": 0,
                "executed": 0,
                "message": "No active copy trade configurations",
                "timestamp": timestamp,
            }

        # Connections are independent; one slow broker must not hold up the rest
        scans = await asyncio.gather(
            *(self._scan_connection(conn, user_id) for conn in connections)
        )
        checked = sum(s.checked for s in scans)
        executed = sum(s.executed for s in scans)
        errors = [err for s in scans for err in s.errors]

        try:
            filled = await self._record_destination_fills(user_id)
        except Exception as exc:
            filled = 0
            logger.warning("Recording destination fills failed", user_id=user_id, error=exception_text(exc))
        if filled:
            logger.info("Recorded destination fills", user_id=user_id, filled=filled)

        response: dict = {"checked": checked, "executed": executed, "timestamp": timestamp}
        if errors:
            response["errors"] = errors
        if executed:
            logger.info("Copy trade poll cycle", user_id=user_id, checked=checked, executed=executed, errors=len(errors))
        return response


copy_trade_poller = CopyTradePoller()
