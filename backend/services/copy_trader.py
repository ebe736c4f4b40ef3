import uuid
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from sqlalchemy import func, select

from models.database import (
    AsyncSessionLocal,
    BrokerConnection,
    CopyTradeConfig,
    CopyTradeLog,
    TradingAccount,
)
from services import copy_trade_log as audit
from services.brokers.base import BrokerError, OrderRequest, OrderResult, SourceExecutionEvent
from services.brokers.factory import open_gateway
from utils.logger import copy_trade_logger as logger
from utils.logger import exception_text
from utils.utcnow import utcnow


class ConfigValidationError(ValueError):
    """A copy-trade config change was rejected; the message is user-facing."""


def scale_quantity(quantity: float, multiplier: float) -> int:
    """Destination contracts for a source quantity, rounded half away from zero."""
    scaled = Decimal(str(quantity)) * Decimal(str(multiplier))
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _normalize_symbols(values: Optional[Iterable[str]]) -> list[str]:
    if not values:
        return []
    return sorted({str(v).strip().upper() for v in values if str(v).strip()})


def symbol_allowed(config: CopyTradeConfig, symbol: str) -> bool:
    """Deny list wins; a non-empty allow list must contain the symbol."""
    key = (symbol or "").strip().upper()
    if key in _normalize_symbols(config.exclude_symbols):
        return False
    allowed = _normalize_symbols(config.symbols)
    return not allowed or key in allowed


def would_create_cycle(edges: dict[str, set[str]], source: str, destination: str) -> bool:
    """True when adding ``source -> destination`` closes a loop in ``edges``."""
    if source == destination:
        return True
    stack = [destination]
    seen: set[str] = set()
    while stack:
        node = stack.pop()
        if node == source:
            return True
        if node in seen:
            continue
        seen.add(node)
        stack.extend(edges.get(node, ()))
    return False


@dataclass
class FanOutResult:
    copied: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def merge(self, other: "FanOutResult") -> None:
        self.copied += other.copied
        self.skipped += other.skipped
        self.errors.extend(other.errors)

    def to_dict(self) -> dict:
        return {"copied": self.copied, "errors": list(self.errors)}


def config_to_dict(config: CopyTradeConfig) -> dict:
    return {
        "id": config.id,
        "user_id": config.user_id,
        "source_account_id": config.source_account_id,
        "destination_account_id": config.destination_account_id,
        "multiplier": config.multiplier,
        "enabled": bool(config.enabled),
        "symbols": list(config.symbols or []),
        "exclude_symbols": list(config.exclude_symbols or []),
        "min_rr": config.min_rr,
        "max_rr": config.max_rr,
        "created_at": config.created_at.isoformat() if config.created_at else None,
        "updated_at": config.updated_at.isoformat() if config.updated_at else None,
    }


class CopyTradeService:
    """Mirrors source-account executions onto every configured destination.

    For each enabled config whose source is the event's account:
    symbol filters, quantity scaling, a committed ``pending`` audit row, the
    destination order, then ``submitted`` or ``error``.  A failure for one
    destination never blocks the others.
    """

    # ==================== CONFIG MANAGEMENT ====================

    async def _owned_account(self, session, user_id: str, account_id: str) -> TradingAccount:
        account = await session.get(TradingAccount, account_id)
        if not account or account.user_id != user_id:
            raise ConfigValidationError(f"Trading account not found: {account_id}")
        return account

    @staticmethod
    def _validate_numbers(multiplier: Optional[float], min_rr: Optional[float], max_rr: Optional[float]) -> None:
        if multiplier is not None and not multiplier > 0:
            raise ConfigValidationError("Multiplier must be greater than 0")
        if min_rr is not None and max_rr is not None and min_rr > max_rr:
            raise ConfigValidationError("min_rr cannot exceed max_rr")

    async def _edges(
        self, session, user_id: str, exclude_id: Optional[str] = None
    ) -> dict[str, set[str]]:
        """Enabled copy edges of the user's account graph."""
        query = select(CopyTradeConfig.source_account_id, CopyTradeConfig.destination_account_id).where(
            CopyTradeConfig.user_id == user_id,
            CopyTradeConfig.enabled.is_(True),
        )
        if exclude_id:
            query = query.where(CopyTradeConfig.id != exclude_id)
        rows = await session.execute(query)
        edges: dict[str, set[str]] = {}
        for source, destination in rows.all():
            edges.setdefault(source, set()).add(destination)
        return edges

    async def create_config(
        self,
        user_id: str,
        source_account_id: str,
        destination_account_id: str,
        multiplier: float = 1.0,
        enabled: bool = True,
        symbols: Optional[list[str]] = None,
        exclude_symbols: Optional[list[str]] = None,
        min_rr: Optional[float] = None,
        max_rr: Optional[float] = None,
    ) -> CopyTradeConfig:
        """Add a source -> destination edge after validating the account graph."""
        if source_account_id == destination_account_id:
            raise ConfigValidationError("Source and destination accounts must differ")
        self._validate_numbers(multiplier, min_rr, max_rr)

        async with AsyncSessionLocal() as session:
            await self._owned_account(session, user_id, source_account_id)
            await self._owned_account(session, user_id, destination_account_id)

            existing = await session.scalar(
                select(CopyTradeConfig.id).where(
                    CopyTradeConfig.source_account_id == source_account_id,
                    CopyTradeConfig.destination_account_id == destination_account_id,
                )
            )
            if existing:
                raise ConfigValidationError("A copy config for these accounts already exists")
            edges = await self._edges(session, user_id)
            if enabled and would_create_cycle(edges, source_account_id, destination_account_id):
                raise ConfigValidationError(
                    "This config would create a copy loop between accounts"
                )

            config = CopyTradeConfig(
                id=str(uuid.uuid4()),
                user_id=user_id,
                source_account_id=source_account_id,
                destination_account_id=destination_account_id,
                multiplier=multiplier,
                enabled=enabled,
                symbols=_normalize_symbols(symbols),
                exclude_symbols=_normalize_symbols(exclude_symbols),
                min_rr=min_rr,
                max_rr=max_rr,
            )
            session.add(config)
            await session.commit()
            await session.refresh(config)

            logger.info(
                "Added copy trade config",
                config_id=config.id,
                source_account_id=source_account_id,
                destination_account_id=destination_account_id,
                multiplier=multiplier,
            )
            return config

    async def get_configs(self, user_id: str, source_account_id: Optional[str] = None) -> list[CopyTradeConfig]:
        async with AsyncSessionLocal() as session:
            query = select(CopyTradeConfig).where(CopyTradeConfig.user_id == user_id)
            if source_account_id:
                query = query.where(CopyTradeConfig.source_account_id == source_account_id)
            result = await session.execute(query.order_by(CopyTradeConfig.created_at))
            return list(result.scalars().all())

    async def update_config(self, user_id: str, config_id: str, **kwargs) -> CopyTradeConfig:
        """Update mutable fields; the account pair of a config never changes."""
        allowed_fields = {"multiplier", "enabled", "symbols", "exclude_symbols", "min_rr", "max_rr"}
        async with AsyncSessionLocal() as session:
            config = await session.get(CopyTradeConfig, config_id)
            if not config or config.user_id != user_id:
                raise LookupError(f"Config not found: {config_id}")

            changes = {k: v for k, v in kwargs.items() if k in allowed_fields and v is not None}
            self._validate_numbers(
                changes.get("multiplier"),
                changes.get("min_rr", config.min_rr),
                changes.get("max_rr", config.max_rr),
            )
            if changes.get("enabled") and not config.enabled:
                edges = await self._edges(session, user_id, exclude_id=config.id)
                if would_create_cycle(edges, config.source_account_id, config.destination_account_id):
                    raise ConfigValidationError("Enabling this config would create a copy loop between accounts")
            for key, value in changes.items():
                if key in ("symbols", "exclude_symbols"):
                    value = _normalize_symbols(value)
                setattr(config, key, value)
            config.updated_at = utcnow()

            await session.commit()
            await session.refresh(config)
            logger.info("Updated copy trade config", config_id=config_id, fields=sorted(changes))
            return config

    async def remove_config(self, user_id: str, config_id: str) -> str:
        """Delete a config, or disable it when audit rows still reference it.

        Returns ``"deleted"`` or ``"disabled"``.
        """
        async with AsyncSessionLocal() as session:
            config = await session.get(CopyTradeConfig, config_id)
            if not config or config.user_id != user_id:
                raise LookupError(f"Config not found: {config_id}")

            referenced = await session.scalar(
                select(func.count(CopyTradeLog.id)).where(CopyTradeLog.copy_trade_config_id == config_id)
            )
            if referenced:
                config.enabled = False
                config.updated_at = utcnow()
                await session.commit()
                logger.info("Disabled copy trade config with history", config_id=config_id, logs=referenced)
                return "disabled"

            await session.delete(config)
            await session.commit()
            logger.info("Removed copy trade config", config_id=config_id)
            return "deleted"

    # ==================== FAN-OUT ====================

    async def _load_targets(
        self, session, source_account_id: str, user_id: Optional[str]
    ) -> tuple[list[CopyTradeConfig], dict[str, BrokerConnection]]:
        query = select(CopyTradeConfig).where(
            CopyTradeConfig.source_account_id == source_account_id,
            CopyTradeConfig.enabled.is_(True),
        )
        if user_id:
            query = query.where(CopyTradeConfig.user_id == user_id)
        configs = list((await session.execute(query)).scalars().all())
        if not configs:
            return [], {}

        destination_ids = {c.destination_account_id for c in configs}
        rows = await session.execute(
            select(BrokerConnection).where(
                BrokerConnection.trading_account_id.in_(destination_ids),
                BrokerConnection.enabled.is_(True),
            )
        )
        connections = {conn.trading_account_id: conn for conn in rows.scalars().all()}
        return configs, connections

    async def _place(self, destination: BrokerConnection, order: OrderRequest) -> OrderResult:
        try:
            async with open_gateway(destination) as gateway:
                return await gateway.place_order(destination.broker_account_name, order)
        except BrokerError as exc:
            return OrderResult.failed(str(exc))
        except Exception as exc:
            # The pending row must still reach a final state
            logger.error(
                "Unexpected error placing copy order",
                destination=destination.broker_account_name,
                error=exception_text(exc),
            )
            return OrderResult.failed(exception_text(exc))

    async def _copy_to_destination(
        self,
        config: CopyTradeConfig,
        destination: Optional[BrokerConnection],
        source_account_id: str,
        event: SourceExecutionEvent,
        user_id: Optional[str],
    ) -> FanOutResult:
        result = FanOutResult()
        log = logger.with_context(config_id=config.id, destination_account_id=config.destination_account_id)
        if not symbol_allowed(config, event.symbol):
            log.debug("Symbol filtered out", symbol=event.symbol)
            result.skipped += 1
            return result

        quantity = scale_quantity(event.quantity, config.multiplier)
        if quantity <= 0:
            result.errors.append(
                f"Config {config.id}: quantity {event.quantity} x {config.multiplier} rounds to {quantity}"
            )
            return result

        if destination is None:
            result.errors.append(
                f"Config {config.id}: no enabled broker connection for account {config.destination_account_id}"
            )
            return result

        # Each destination writes through its own session: a duplicate-key
        # rollback must not expire the configs still being iterated
        async with AsyncSessionLocal() as session:
            entry = await audit.open_pending_entry(
                session,
                config=config,
                destination=destination,
                event=event,
                source_account_id=source_account_id,
                destination_quantity=quantity,
                user_id=user_id or config.user_id,
            )
            if entry is None:
                result.skipped += 1
                return result

            order = OrderRequest(
                symbol=entry.destination_symbol,
                side=event.side,
                quantity=quantity,
                order_type=event.order_type,
                price=event.price,
                stop_price=event.stop_price,
                tag=f"copy_{entry.id}",
            )
            placed = await self._place(destination, order)

            if placed.success:
                await audit.mark_submitted(session, entry, placed.order_id)
                result.copied += 1
                log.info(
                    "Copied execution",
                    log_id=entry.id,
                    destination=destination.broker_account_name,
                    symbol=event.symbol,
                    side=event.side.value,
                    quantity=quantity,
                    order_type=event.order_type.value,
                    order_id=placed.order_id,
                )
            else:
                await audit.mark_error(session, entry, placed.error)
                result.errors.append(
                    f"{destination.broker_account_name}: {placed.error or 'order rejected'}"
                )
                log.warning(
                    "Copy order failed",
                    log_id=entry.id,
                    destination=destination.broker_account_name,
                    error=placed.error,
                )
        return result

    async def process_execution(
        self,
        source_account_id: str,
        event: SourceExecutionEvent,
        user_id: Optional[str] = None,
    ) -> FanOutResult:
        """Fan one source execution out to all enabled destinations of its account."""
        total = FanOutResult()
        async with AsyncSessionLocal() as session:
            configs, connections = await self._load_targets(session, source_account_id, user_id)

        for config in configs:
            try:
                outcome = await self._copy_to_destination(
                    config,
                    connections.get(config.destination_account_id),
                    source_account_id,
                    event,
                    user_id,
                )
            except Exception as exc:
                logger.error(
                    "Copy to destination crashed",
                    config_id=config.id,
                    error=exception_text(exc),
                )
                outcome = FanOutResult(errors=[f"Config {config.id}: {exception_text(exc)}"])
            total.merge(outcome)
        return total


copy_trader = CopyTradeService()
