"""FastAPI application factory"""

import asyncio
import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from coordinator.core.config import Settings, get_settings
from coordinator.core.database import get_database_manager, init_database_manager
from coordinator.core.logging import setup_logging
from coordinator.routers import queue_router
from coordinator.services.coordinator import QueueCoordinator, QueuePolicy
from coordinator.services.notifications import FanoutEmitter, LoggingEmitter, PgNotifyEmitter
from coordinator.services.store import build_postgres_backends
from shared.database import DatabaseManager

logger = logging.getLogger(__name__)

_start_time: float = 0.0
_db_retry_task: asyncio.Task | None = None


async def _start_coordinator(app: FastAPI, db_manager: DatabaseManager, settings: Settings) -> None:
    """Build the coordinator on a connected pool and restore its timers."""
    store, oracle = build_postgres_backends(
        db_manager.pool,
        default_max_queue_length=settings.default_max_queue_length,
        default_average_session_minutes=settings.default_average_session_minutes,
    )
    await store.ensure_schema()

    emitter = FanoutEmitter(LoggingEmitter(), PgNotifyEmitter(db_manager.pool, settings.notify_channel))
    coordinator = QueueCoordinator(store, oracle, emitter, policy=QueuePolicy.from_settings(settings))
    await coordinator.start(settings.sweep_interval_seconds)
    app.state.coordinator = coordinator


async def _db_retry_loop(app: FastAPI, db_manager: DatabaseManager, settings: Settings) -> None:
    """Background loop to retry DB connection after startup failure."""
    delay = 5
    max_delay = 60
    while True:
        await asyncio.sleep(delay)
        try:
            await db_manager.connect()
            await _start_coordinator(app, db_manager, settings)
            logger.info("Database connected (background retry)")
            return
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.warning(
                f"DB background retry failed: {type(e).__name__}: {e}, next retry in {min(delay * 2, max_delay)}s"
            )
            delay = min(delay * 2, max_delay)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle startup and shutdown"""
    global _start_time, _db_retry_task
    _start_time = time.time()

    settings = get_settings()
    logger.info("Starting queue coordinator")
    logger.info(f"Environment: {settings.environment}")

    app.state.coordinator = None
    db_manager = init_database_manager(settings.database_url, ssl=settings.database_ssl)

    # Requests get 503 until the coordinator is up
    try:
        await asyncio.wait_for(db_manager.connect(), timeout=30)
        await _start_coordinator(app, db_manager, settings)
        logger.info("Database connected")
    except Exception as e:
        logger.error(f"Coordinator startup failed: {type(e).__name__}: {e}, retrying in background")
        _db_retry_task = asyncio.create_task(_db_retry_loop(app, db_manager, settings))

    yield

    logger.info("Shutting down queue coordinator")
    if _db_retry_task:
        _db_retry_task.cancel()
    coordinator: QueueCoordinator | None = app.state.coordinator
    if coordinator is not None:
        await coordinator.stop()
    await db_manager.disconnect()


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    settings = get_settings()

    setup_logging(settings)

    app = FastAPI(
        title="Charging Queue Coordinator",
        description="Queueing, reservations and charging sessions for shared stations",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    app.include_router(queue_router.router)

    @app.get("/api/health")
    async def health():
        """Liveness plus DB and timer status"""
        db_manager = get_database_manager()
        coordinator: QueueCoordinator | None = getattr(app.state, "coordinator", None)
        return {
            "status": "healthy" if coordinator is not None else "starting",
            "uptime_seconds": int(time.time() - _start_time),
            "db_connected": await db_manager.check_health(),
            "armed_reservations": coordinator.timers.armed_count if coordinator else 0,
        }

    logger.info("FastAPI application configured")

    return app
