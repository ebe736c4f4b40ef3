"""Mirror a closed source journal trade into destination journals.

Runs after a trade closes (broker sync path), when realized PnL and RR are
known, which is why the RR bounds of a copy config only apply here and never
to live order fan-out.
"""

import uuid
from typing import Optional

from sqlalchemy import select

from models.database import AsyncSessionLocal, CopyTradeConfig, JournalTrade, TradingAccount
from services.copy_trader import symbol_allowed
from utils.logger import copy_trade_logger as logger

COPY_SYNC_SOURCE = "copy_trade"
DEFAULT_RISK_PER_R = 100.0


def rr_allowed(config: CopyTradeConfig, rr: Optional[float]) -> bool:
    """A trade with unknown RR fails any bound that is set."""
    if config.min_rr is not None and (rr is None or rr < config.min_rr):
        return False
    if config.max_rr is not None and (rr is None or rr > config.max_rr):
        return False
    return True


def copied_trade_id(source_trade_id: str, config_id: str) -> str:
    return f"copy_{source_trade_id}_{config_id}"


def _scaled(value: Optional[float], multiplier: float) -> Optional[float]:
    return None if value is None else float(value) * float(multiplier)


async def copy_journal_trade(user_id: str, trade_id: str) -> dict:
    """Copy one closed journal trade to every eligible destination account.

    Raises LookupError if the trade is not the user's.  Returns
    ``{copied, skipped, errors}``; an already-copied destination counts as
    skipped so the call is idempotent.
    """
    copied = 0
    skipped = 0
    errors: list[str] = []
    async with AsyncSessionLocal() as session:
        trade = await session.get(JournalTrade, trade_id)
        if trade is None or trade.user_id != user_id:
            raise LookupError(f"Journal trade not found: {trade_id}")
        if (trade.status or "closed") != "closed":
            return {"copied": 0, "skipped": 0, "errors": ["Only closed trades can be copied"]}

        result = await session.execute(
            select(CopyTradeConfig).where(
                CopyTradeConfig.source_account_id == trade.trading_account_id,
                CopyTradeConfig.enabled.is_(True),
                CopyTradeConfig.user_id == user_id,
            )
        )
        configs = list(result.scalars().all())
        if not configs:
            return {"copied": 0, "skipped": 0, "errors": []}

        destination_ids = {c.destination_account_id for c in configs}
        accounts = {
            a.id: a
            for a in (
                await session.execute(select(TradingAccount).where(TradingAccount.id.in_(destination_ids)))
            ).scalars().all()
        }
        existing = set(
            (
                await session.execute(
                    select(JournalTrade.broker_trade_id).where(
                        JournalTrade.broker_trade_id.in_([copied_trade_id(trade.id, c.id) for c in configs])
                    )
                )
            ).scalars().all()
        )

        for config in configs:
            broker_trade_id = copied_trade_id(trade.id, config.id)
            if broker_trade_id in existing:
                skipped += 1
                continue
            if not rr_allowed(config, trade.rr) or not symbol_allowed(config, trade.symbol):
                skipped += 1
                continue
            account = accounts.get(config.destination_account_id)
            if account is None:
                errors.append(f"Destination account {config.destination_account_id} not found")
                continue

            size = _scaled(trade.size, config.multiplier)
            pnl = _scaled(trade.pnl, config.multiplier)
            fees = _scaled(trade.fees, config.multiplier)
            risk_per_r = account.risk_per_r or DEFAULT_RISK_PER_R
            pnl_percentage = None
            if pnl is not None and trade.entry_price and size:
                pnl_percentage = pnl / (float(trade.entry_price) * size) * 100

            session.add(
                JournalTrade(
                    id=str(uuid.uuid4()),
                    user_id=account.user_id,
                    trading_account_id=account.id,
                    broker_trade_id=broker_trade_id,
                    sync_source=COPY_SYNC_SOURCE,
                    symbol=trade.symbol,
                    side=trade.side,
                    size=size,
                    entry_price=trade.entry_price,
                    exit_price=trade.exit_price,
                    fees=fees,
                    pnl=pnl,
                    pnl_percentage=pnl_percentage,
                    rr=pnl / risk_per_r if pnl is not None else None,
                    status="closed",
                    entry_time=trade.entry_time,
                    exit_time=trade.exit_time,
                    notes=f"[Copied] {trade.notes}" if trade.notes else "[Copied]",
                )
            )
            copied += 1

        await session.commit()

    logger.info("Copied journal trade", trade_id=trade_id, copied=copied, skipped=skipped, errors=len(errors))
    return {"copied": copied, "skipped": skipped, "errors": errors}
