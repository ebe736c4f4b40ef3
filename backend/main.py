import asyncio
import traceback
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from config import settings
from api.routes_copy_trade import copy_trade_router
from models.database import AsyncSessionLocal, init_database
from utils.logger import get_logger, setup_logging
from utils.utcnow import utcnow

# Setup logging
setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting copy trade service...")

    stop_event = asyncio.Event()
    worker_task: Optional[asyncio.Task] = None
    monitor = None
    try:
        await init_database()
        logger.info("Database initialized")

        if settings.COPY_TRADE_REALTIME_ENABLED:
            from services.realtime_copy import realtime_copy_monitor

            monitor = realtime_copy_monitor
            await monitor.start()

        if settings.COPY_TRADE_WORKER_ENABLED:
            from workers.copy_trade_worker import run_loop

            worker_task = asyncio.create_task(
                run_loop(stop_event=stop_event), name="copy-trade-worker"
            )
            logger.info("Copy trade worker running in-process")

        app.state.realtime_monitor = monitor
        logger.info("All services started successfully")

        yield

    except Exception as e:
        logger.critical("Startup failed", error=str(e), traceback=traceback.format_exc())
        raise

    finally:
        logger.info("Shutting down...")
        stop_event.set()
        if worker_task is not None:
            try:
                await asyncio.wait_for(worker_task, timeout=10)
            except asyncio.TimeoutError:
                worker_task.cancel()
        if monitor is not None:
            await monitor.stop()
        logger.info("Shutdown complete")


app = FastAPI(
    title="Copy Trade Service",
    description="Mirrors broker executions from source accounts to destination accounts",
    version="1.0.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "error": str(exc)})


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# API routes
app.include_router(copy_trade_router, prefix="/api/copy-trade", tags=["Copy Trade"])


# Health checks
@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok"}


@app.get("/health/live")
async def liveness_check():
    """Liveness check - is the service running?"""
    return {"status": "alive", "timestamp": utcnow().isoformat()}


@app.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check - database reachable, realtime hubs reported."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        database_ok = True
    except Exception as e:
        logger.warning("Readiness database check failed", error=str(e))
        database_ok = False

    monitor = getattr(request.app.state, "realtime_monitor", None)
    return {
        "status": "ready" if database_ok else "not_ready",
        "checks": {"database": database_ok},
        "realtime": monitor.get_status() if monitor is not None else {"running": False},
        "timestamp": utcnow().isoformat(),
    }


if __name__ == "__main__":
    import os

    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        # Single worker: the poll worker and hub monitor hold in-process state
        timeout_keep_alive=30,
    )
