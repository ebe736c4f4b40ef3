"""Propagate source order updates (new / modified / cancelled) to mirrored orders.

Entry point for both the process-order-update endpoint and the real-time
hub monitor.  Cancels and reprices target only the audit rows whose
``source_order_id`` matches the update; an update with nothing to act on
is a no-op, not an error.
"""

from typing import Optional

from sqlalchemy import select

from config import settings
from models.database import AsyncSessionLocal, BrokerConnection, CopyTradeLog, CopyTradeStatus
from services import copy_trade_log as audit
from services.brokers.base import BrokerError, OrderResult, SourceExecutionEvent
from services.brokers.factory import open_gateway
from services.brokers.normalize import ExecutionStatus, OrderType
from services.brokers.projectx import event_from_order_payload
from services.copy_trader import CopyTradeService, copy_trader, scale_quantity
from services.execution_dedup import ExecutionDeduplicator, execution_dedup
from utils.logger import copy_trade_logger as logger
from utils.logger import exception_text

ORDER_ACTIONS = ("new", "modified", "cancelled")

_DEAD_ON_ARRIVAL = (ExecutionStatus.REJECTED, ExecutionStatus.EXPIRED)


def normalize_action(action: Optional[str]) -> str:
    value = (action or "new").strip().lower()
    if value == "canceled":
        return "cancelled"
    if value not in ORDER_ACTIONS:
        raise ValueError(f"Unknown order action: {action!r}")
    return value


def _differs(new: Optional[float], old: Optional[float], tolerance: float) -> bool:
    if new is None:
        return False
    if old is None:
        return True
    return abs(float(new) - float(old)) > tolerance


class OrderMutationHandler:
    def __init__(
        self,
        engine: Optional[CopyTradeService] = None,
        dedup: Optional[ExecutionDeduplicator] = None,
    ):
        self._engine = engine or copy_trader
        self._dedup = dedup or execution_dedup

    async def _destinations(self, session, logs: list[CopyTradeLog]) -> dict[str, BrokerConnection]:
        ids = {log.destination_broker_connection_id for log in logs if log.destination_broker_connection_id}
        if not ids:
            return {}
        rows = await session.execute(select(BrokerConnection).where(BrokerConnection.id.in_(ids)))
        return {conn.id: conn for conn in rows.scalars().all()}

    @staticmethod
    async def _with_gateway(connection: BrokerConnection, call) -> OrderResult:
        try:
            async with open_gateway(connection) as gateway:
                return await call(gateway)
        except BrokerError as exc:
            return OrderResult.failed(str(exc))

    # ==================== CANCEL ====================

    async def cancel(self, source_account_id: str, source_order_id: Optional[str]) -> dict:
        """Cancel every still-active destination order mirroring ``source_order_id``."""
        if not source_order_id:
            return {"cancelled": 0, "message": "Order update carries no order id"}

        errors: list[str] = []
        cancelled: list[CopyTradeLog] = []
        async with AsyncSessionLocal() as session:
            logs = await audit.find_active_by_source_order(session, source_account_id, source_order_id)
            if not logs:
                return {"cancelled": 0, "message": "No active mirrored orders for this source order"}
            connections = await self._destinations(session, logs)

            for log in logs:
                if not log.order_id:
                    errors.append(f"Copy {log.id} has no destination order id yet")
                    continue
                connection = connections.get(log.destination_broker_connection_id)
                if connection is None:
                    errors.append(f"Copy {log.id}: destination connection no longer exists")
                    continue
                result = await self._with_gateway(
                    connection,
                    lambda gw, log=log, conn=connection: gw.cancel_order(
                        conn.broker_account_name, log.order_id, symbol=log.destination_symbol
                    ),
                )
                if result.success:
                    cancelled.append(log)
                else:
                    errors.append(f"{connection.broker_account_name}: {result.error}")
                    logger.warning(
                        "Cancelling mirrored order failed",
                        log_id=log.id,
                        order_id=log.order_id,
                        error=result.error,
                    )

            if cancelled:
                await audit.mark_cancelled(session, cancelled)

        logger.info(
            "Propagated source cancel",
            source_account_id=source_account_id,
            source_order_id=source_order_id,
            cancelled=len(cancelled),
            errors=len(errors),
        )
        response: dict = {
            "cancelled": len(cancelled),
            "message": f"Cancelled {len(cancelled)} mirrored order(s)",
        }
        if errors:
            response["errors"] = errors
        return response

    # ==================== MODIFY ====================

    async def modify(self, source_account_id: str, event: SourceExecutionEvent) -> dict:
        """Reprice/resize still-active mirrored orders when the source order moved."""
        if not event.order_id:
            return {"modified": 0, "message": "Order update carries no order id"}

        tolerance = settings.COPY_TRADE_PRICE_TOLERANCE
        errors: list[str] = []
        modified = 0
        async with AsyncSessionLocal() as session:
            logs = await audit.find_active_by_source_order(session, source_account_id, event.order_id)
            if not logs:
                return {"modified": 0, "message": "Order is no longer open; nothing to modify"}
            connections = await self._destinations(session, logs)

            for log in logs:
                try:
                    order_type = OrderType(log.order_type)
                except ValueError:
                    order_type = OrderType.MARKET
                new_limit = event.price if order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT) else None
                new_stop = event.stop_price if order_type.uses_stop_price else None
                new_quantity = scale_quantity(event.quantity, log.multiplier)

                limit_changed = _differs(new_limit, log.order_price, tolerance)
                stop_changed = _differs(new_stop, log.order_stop_price, tolerance)
                quantity_changed = new_quantity > 0 and new_quantity != int(log.destination_quantity)
                if not (limit_changed or stop_changed or quantity_changed):
                    continue

                if not log.order_id:
                    errors.append(f"Copy {log.id} has no destination order id yet")
                    continue
                connection = connections.get(log.destination_broker_connection_id)
                if connection is None:
                    errors.append(f"Copy {log.id}: destination connection no longer exists")
                    continue

                target_limit = new_limit if limit_changed else log.order_price
                target_stop = new_stop if stop_changed else log.order_stop_price
                target_quantity = new_quantity if quantity_changed else int(log.destination_quantity)
                result = await self._with_gateway(
                    connection,
                    lambda gw, log=log, conn=connection: gw.modify_order(
                        conn.broker_account_name,
                        log.order_id,
                        limit_price=target_limit,
                        stop_price=target_stop,
                        quantity=target_quantity,
                        symbol=log.destination_symbol,
                        order_type=order_type,
                    ),
                )
                if not result.success:
                    errors.append(f"{connection.broker_account_name}: {result.error}")
                    logger.warning("Modifying mirrored order failed", log_id=log.id, error=result.error)
                    continue

                await audit.record_reprice(
                    session,
                    log,
                    price=target_limit,
                    stop_price=target_stop,
                    destination_quantity=target_quantity,
                    source_quantity=event.quantity if quantity_changed else None,
                )
                modified += 1
                logger.info(
                    "Modified mirrored order",
                    log_id=log.id,
                    order_id=log.order_id,
                    limit_price=target_limit,
                    stop_price=target_stop,
                    quantity=target_quantity,
                )

        response: dict = {
            "modified": modified,
            "message": f"Modified {modified} mirrored order(s)" if modified else "No mirrored order needed changes",
        }
        if errors:
            response["errors"] = errors
        return response

    # ==================== DISPATCH ====================

    async def handle_event(
        self,
        user_id: Optional[str],
        source_account_id: str,
        event: SourceExecutionEvent,
        action: str = "new",
    ) -> dict:
        """Route one normalized order update to fan-out, modify or cancel."""
        action = normalize_action(action)
        if action == "cancelled" or event.status == ExecutionStatus.CANCELLED:
            return await self.cancel(source_account_id, event.order_id)

        if event.order_id:
            async with AsyncSessionLocal() as session:
                previous = await audit.find_by_source_order(session, source_account_id, event.order_id)
            # A copy that only ever failed is retried through fan-out
            if any(log.order_status != CopyTradeStatus.ERROR.value for log in previous):
                return await self.modify(source_account_id, event)

        if action == "modified" and not event.order_id:
            return {"modified": 0, "message": "Order update carries no order id"}
        if event.status in _DEAD_ON_ARRIVAL:
            return {"executed": 0, "errors": [], "message": f"Source order {event.status.value}; not copied"}

        return await self.copy_if_new(user_id, source_account_id, event)

    async def copy_if_new(
        self, user_id: Optional[str], source_account_id: str, event: SourceExecutionEvent
    ) -> dict:
        """Fan out an event the deduplicator has not seen; never reprices."""
        async with AsyncSessionLocal() as session:
            is_new, reason = await self._dedup.check(session, source_account_id, event)
        if not is_new:
            return {"executed": 0, "errors": [], "message": f"Already handled ({reason})"}

        outcome = await self._engine.process_execution(source_account_id, event, user_id)
        return {"executed": outcome.copied, "errors": outcome.errors}

    async def process_order_update(
        self,
        user_id: str,
        connection_id: str,
        trading_account_id: str,
        order: dict,
        action: Optional[str] = "new",
    ) -> dict:
        """Apply an order update relayed by a client for one of the user's source connections.

        Raises LookupError when the connection is not the user's, ValueError
        when the payload or action cannot be understood.  Everything past
        parsing degrades into the returned ``errors`` list.
        """
        async with AsyncSessionLocal() as session:
            connection = await session.get(BrokerConnection, connection_id)
        if (
            connection is None
            or connection.user_id != user_id
            or connection.trading_account_id != trading_account_id
        ):
            raise LookupError("Broker connection not found")

        action = normalize_action(action)
        order = order or {}
        if action == "cancelled":
            # A cancel only needs the source order id; clients often relay just that
            order_id = order.get("id") or order.get("orderId") or order.get("order_id")
            if order_id is None:
                raise ValueError("Cancel update carries no order id")
            order_id = str(order_id)
            operation = self.cancel(trading_account_id, order_id)
        else:
            event = event_from_order_payload(order, connection.broker_type)
            order_id = event.order_id
            operation = self.handle_event(user_id, trading_account_id, event, action)

        try:
            return await operation
        except Exception as exc:
            logger.error(
                "Order update processing failed",
                connection_id=connection_id,
                order_id=order_id,
                action=action,
                error=exception_text(exc),
            )
            key = "cancelled" if action == "cancelled" else "modified" if action == "modified" else "executed"
            return {key: 0, "errors": [exception_text(exc)]}


order_mutations = OrderMutationHandler()
