"""Copy-trade poll worker: server-owned cadence for check-and-execute.

Runs one poll cycle per user with enabled copy configs every
``COPY_TRADE_POLL_INTERVAL_SECONDS``.  Started from the API lifespan when
``COPY_TRADE_WORKER_ENABLED`` is set, or standalone with
``python workers/copy_trade_worker.py`` (which also runs the real-time hub
monitor when ``COPY_TRADE_REALTIME_ENABLED`` is set).
"""

from __future__ import annotations

import asyncio
import os
import sys
from typing import Optional

from sqlalchemy import select

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from config import settings
from models.database import AsyncSessionLocal, CopyTradeConfig, init_database
from services.copy_trade_poller import CopyTradePoller, copy_trade_poller
from utils.logger import exception_text, get_logger, setup_logging
from utils.utcnow import utcnow

logger = get_logger("copy_trade_worker")


async def _active_user_ids() -> list[str]:
    async with AsyncSessionLocal() as session:
        rows = await session.execute(
            select(CopyTradeConfig.user_id).where(CopyTradeConfig.enabled.is_(True)).distinct()
        )
        return [row[0] for row in rows.all()]


async def run_cycle(poller: Optional[CopyTradePoller] = None) -> dict:
    """One pass over every user with enabled configs; returns summed counters."""
    poller = poller or copy_trade_poller
    totals = {"users": 0, "checked": 0, "executed": 0, "errors": 0}
    for user_id in await _active_user_ids():
        result = await poller.check_and_execute(user_id)
        totals["users"] += 1
        totals["checked"] += int(result.get("checked", 0))
        totals["executed"] += int(result.get("executed", 0))
        totals["errors"] += len(result.get("errors") or [])
        for error in result.get("errors") or []:
            logger.warning("Copy trade poll error", user_id=user_id, error=error)
    return totals


async def run_loop(
    stop_event: Optional[asyncio.Event] = None,
    interval: Optional[float] = None,
) -> None:
    """Poll until ``stop_event`` is set."""
    stop_event = stop_event or asyncio.Event()
    interval = interval or settings.COPY_TRADE_POLL_INTERVAL_SECONDS
    logger.info("Copy trade worker started", interval_seconds=interval)

    while not stop_event.is_set():
        cycle_started = utcnow()
        try:
            totals = await run_cycle()
            if totals["executed"] or totals["errors"]:
                logger.info("Copy trade cycle complete", started_at=cycle_started.isoformat(), **totals)
        except Exception as exc:
            logger.error("Copy trade cycle failed", error=exception_text(exc))
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    logger.info("Copy trade worker stopped")


async def main() -> None:
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
    await init_database()
    logger.info("Database initialized")

    monitor = None
    if settings.COPY_TRADE_REALTIME_ENABLED:
        from services.realtime_copy import realtime_copy_monitor

        monitor = realtime_copy_monitor
        await monitor.start()
    try:
        await run_loop()
    except asyncio.CancelledError:
        logger.info("Copy trade worker shutting down")
    finally:
        if monitor is not None:
            await monitor.stop()


if __name__ == "__main__":
    asyncio.run(main())
