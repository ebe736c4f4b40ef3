"""
Real-time copy monitor: one ProjectX hub connection per source account.

Keeps the set of open hub connections in step with the enabled copy
configs.  Order pushes are routed through the order mutation handler
(new -> fan-out, price change -> modify, cancelled -> cancel); trade pushes
for opening fills go through the deduplicator, so a fill the order stream
already mirrored is skipped.  The REST poller stays the safety net for
anything the hub misses.
"""

import asyncio
from typing import Optional

from sqlalchemy import select

from config import projectx_hub_url, settings
from models.database import AsyncSessionLocal, BrokerConnection, BrokerType, CopyTradeConfig
from services.brokers.base import BrokerError
from services.brokers.factory import build_gateway
from services.brokers.normalize import ExecutionStatus
from services.brokers.projectx import event_from_order_payload, event_from_trade_payload, parse_account_id
from services.order_mutations import OrderMutationHandler, order_mutations
from services.projectx_hub import ProjectXHubConnection
from utils.logger import copy_trade_logger as logger
from utils.logger import exception_text


async def hub_connection_details(user_id: str) -> dict:
    """Hub URL and session token for each of the user's ProjectX source connections.

    Lets a client-side push channel subscribe directly.  Connections that
    cannot be used are reported in ``errors`` rather than failing the call.
    """
    async with AsyncSessionLocal() as session:
        source_ids = select(CopyTradeConfig.source_account_id).where(
            CopyTradeConfig.user_id == user_id,
            CopyTradeConfig.enabled.is_(True),
        )
        result = await session.execute(
            select(BrokerConnection).where(
                BrokerConnection.trading_account_id.in_(source_ids),
                BrokerConnection.enabled.is_(True),
                BrokerConnection.broker_type == BrokerType.PROJECTX.value,
            )
        )
        connections = list(result.scalars().all())

    details: list[dict] = []
    errors: list[str] = []
    for connection in connections:
        try:
            account_id = parse_account_id(connection.broker_account_name)
        except ValueError as exc:
            errors.append(f"{connection.broker_account_name}: {exc}")
            continue
        try:
            gateway = await build_gateway(connection)
            try:
                token = await gateway.get_session_token()
            finally:
                await gateway.close()
        except BrokerError as exc:
            errors.append(f"{connection.broker_account_name}: {exc}")
            continue
        details.append(
            {
                "connectionId": connection.id,
                "accountId": account_id,
                "tradingAccountId": connection.trading_account_id,
                "jwtToken": token,
                "hubUrl": projectx_hub_url(connection.api_service_type),
                "serviceType": (connection.api_service_type or "topstepx").lower(),
            }
        )
    return {"connections": details, "errors": errors}


class RealtimeCopyMonitor:
    """Owns the hub connections for every ProjectX source account."""

    def __init__(
        self,
        handler: Optional[OrderMutationHandler] = None,
        hub_factory=None,
        refresh_interval: Optional[float] = None,
    ):
        self._handler = handler or order_mutations
        self._hub_factory = hub_factory or ProjectXHubConnection
        self._refresh_interval = refresh_interval or settings.COPY_TRADE_HUB_REFRESH_SECONDS
        self._refresh_task: Optional[asyncio.Task] = None
        self._hubs: dict[str, ProjectXHubConnection] = {}
        self._owners: dict[str, tuple[str, str]] = {}  # connection id -> (user id, trading account id)
        self._lock = asyncio.Lock()
        self._running = False
        self._stats = {
            "order_events": 0,
            "trade_events": 0,
            "position_events": 0,
            "handler_errors": 0,
            "skipped_connections": 0,
            "refresh_errors": 0,
        }

    # ==================== SOURCES ====================

    async def _source_connections(self) -> list[BrokerConnection]:
        async with AsyncSessionLocal() as session:
            source_ids = select(CopyTradeConfig.source_account_id).where(CopyTradeConfig.enabled.is_(True))
            result = await session.execute(
                select(BrokerConnection).where(
                    BrokerConnection.trading_account_id.in_(source_ids),
                    BrokerConnection.enabled.is_(True),
                    BrokerConnection.broker_type == BrokerType.PROJECTX.value,
                )
            )
            return list(result.scalars().all())

    def _token_provider(self, connection_id: str):
        async def provide() -> str:
            # Re-read the row on every (re)connect so a refreshed or revoked
            # credential takes effect without restarting the hub
            async with AsyncSessionLocal() as session:
                connection = await session.get(BrokerConnection, connection_id)
            if connection is None or connection.enabled is False:
                raise LookupError(f"Broker connection {connection_id} is gone or disabled")
            gateway = await build_gateway(connection)
            try:
                return await gateway.get_session_token()
            finally:
                await gateway.close()

        return provide

    # ==================== EVENT HANDLERS ====================

    def _order_handler(self, connection_id: str, broker: str):
        async def handle(payload: dict) -> None:
            self._stats["order_events"] += 1
            user_id, source_account_id = self._owners[connection_id]
            try:
                event = event_from_order_payload(payload, broker)
            except ValueError as exc:
                logger.debug("Ignoring unparseable order push", connection_id=connection_id, error=str(exc))
                return
            action = "cancelled" if event.status == ExecutionStatus.CANCELLED else "new"
            try:
                result = await self._handler.handle_event(user_id, source_account_id, event, action)
            except Exception as exc:
                self._stats["handler_errors"] += 1
                logger.error(
                    "Realtime order handling failed",
                    connection_id=connection_id,
                    order_id=event.order_id,
                    error=exception_text(exc),
                )
                return
            if result.get("errors"):
                logger.warning("Realtime order handled with errors", order_id=event.order_id, result=result)

        return handle

    def _trade_handler(self, connection_id: str, broker: str):
        async def handle(payload: dict) -> None:
            self._stats["trade_events"] += 1
            if payload.get("voided"):
                return
            user_id, source_account_id = self._owners[connection_id]
            try:
                event = event_from_trade_payload(payload, broker=broker)
            except ValueError as exc:
                logger.debug("Ignoring unparseable trade push", connection_id=connection_id, error=str(exc))
                return
            if not event.is_opening():
                return
            try:
                await self._handler.copy_if_new(user_id, source_account_id, event)
            except Exception as exc:
                self._stats["handler_errors"] += 1
                logger.error(
                    "Realtime trade handling failed",
                    connection_id=connection_id,
                    execution_id=event.execution_id,
                    error=exception_text(exc),
                )

        return handle

    def _position_handler(self, connection_id: str):
        def handle(payload: dict) -> None:
            self._stats["position_events"] += 1
            logger.debug(
                "Source position update",
                connection_id=connection_id,
                contract=payload.get("contractId"),
                size=payload.get("size"),
            )

        return handle

    # ==================== LIFECYCLE ====================

    async def _open_hub(self, connection: BrokerConnection) -> None:
        try:
            hub = self._hub_factory(
                connection.broker_account_name,
                self._token_provider(connection.id),
                service_type=connection.api_service_type,
            )
        except ValueError as exc:
            self._stats["skipped_connections"] += 1
            logger.warning(
                "Skipping realtime copy for connection",
                connection_id=connection.id,
                error=str(exc),
            )
            return
        self._owners[connection.id] = (connection.user_id, connection.trading_account_id)
        hub.on_order(self._order_handler(connection.id, connection.broker_type))
        hub.on_trade(self._trade_handler(connection.id, connection.broker_type))
        hub.on_position(self._position_handler(connection.id))
        self._hubs[connection.id] = hub
        await hub.start()

    async def refresh(self) -> dict:
        """Open hubs for new source connections and close the stale ones."""
        async with self._lock:
            connections = {conn.id: conn for conn in await self._source_connections()}
            opened = 0
            for connection_id, connection in connections.items():
                if connection_id not in self._hubs:
                    await self._open_hub(connection)
                    opened += int(connection_id in self._hubs)
            stale = [cid for cid in self._hubs if cid not in connections]
            for connection_id in stale:
                hub = self._hubs.pop(connection_id)
                self._owners.pop(connection_id, None)
                await hub.stop()
            if opened or stale:
                logger.info("Realtime copy hubs refreshed", opened=opened, closed=len(stale), active=len(self._hubs))
            return {"opened": opened, "closed": len(stale), "active": len(self._hubs)}

    async def _refresh_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._refresh_interval)
            try:
                await self.refresh()
            except Exception as exc:
                self._stats["refresh_errors"] += 1
                logger.error("Realtime hub refresh failed", error=exception_text(exc))

    async def start(self) -> None:
        if self._running:
            logger.warning("Realtime copy monitor already running")
            return
        self._running = True
        await self.refresh()
        # Configs created or disabled later are picked up on the next pass
        self._refresh_task = asyncio.create_task(self._refresh_loop(), name="realtime-copy-refresh")
        logger.info("Started realtime copy monitor", hubs=len(self._hubs), refresh_interval=self._refresh_interval)

    async def stop(self) -> None:
        self._running = False
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
        self._refresh_task = None
        async with self._lock:
            hubs = list(self._hubs.values())
            self._hubs.clear()
            self._owners.clear()
        await asyncio.gather(*(hub.stop() for hub in hubs), return_exceptions=True)
        logger.info("Stopped realtime copy monitor", stats=dict(self._stats))

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "hubs": {
                connection_id: {"state": hub.state.value, "account_id": hub.account_id, **hub.stats.to_dict()}
                for connection_id, hub in self._hubs.items()
            },
            "stats": dict(self._stats),
        }


realtime_copy_monitor = RealtimeCopyMonitor()
