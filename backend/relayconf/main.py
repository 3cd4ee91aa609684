"""
Main FastAPI application for relayconf.
"""
import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy import text

from relayconf.api import config as config_api
from relayconf.config import Settings, ensure_runtime_dirs, get_master_secret, settings
from relayconf.constants import RETENTION_CLEANUP_INTERVAL_SECONDS
from relayconf.database import checkpoint_wal, close_db, create_engine, create_session_factory, init_db
from relayconf.exceptions import ConfigEngineError
from relayconf.middleware.correlation import CorrelationIdMiddleware
from relayconf.services import ConfigManager, RetentionService
from relayconf.utils.errors import engine_error_handler
from relayconf.utils.logger import setup_logger


def validate_secrets(config: Settings) -> str:
    """
    Load the vault master secret, refusing to start without one.

    Unlike generated session keys, the master secret cannot be replaced on
    the fly: existing vault records would become unreadable.
    """
    try:
        secret = get_master_secret(config)
    except ValueError as e:
        logger.critical(f"Cannot start: {e}")
        raise
    logger.info("Vault master secret loaded")
    return secret


async def retention_cleanup_loop(app: FastAPI):
    """Background task that runs retention cleanup hourly."""
    while True:
        try:
            await asyncio.sleep(RETENTION_CLEANUP_INTERVAL_SECONDS)

            retention_service: RetentionService = app.state.retention_service
            async with app.state.session_factory() as db:
                await retention_service.cleanup_old_data(db)
            await checkpoint_wal(app.state.engine)
        except asyncio.CancelledError:
            logger.debug("Retention cleanup task cancelled")
            raise  # Re-raise to properly signal cancellation
        except Exception as e:
            logger.error(f"Error in retention cleanup task: {e}")
            # Continue loop to retry on next interval


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager."""
    setup_logger(settings)
    logger.info(f"Starting {settings.app_name} {settings.app_version}...")

    master_secret = validate_secrets(settings)
    ensure_runtime_dirs(settings)

    engine = create_engine(settings.database_url, echo=settings.debug)
    await init_db(engine)
    logger.info("Database initialized")

    session_factory = create_session_factory(engine)
    config_manager = ConfigManager(settings, session_factory, master_secret)

    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.config_manager = config_manager
    app.state.retention_service = RetentionService(settings.engine, config_manager.files)

    if await config_manager.controller.is_running():
        logger.info("Postfix is running")
    else:
        logger.warning("Postfix status check failed - applies will fail verification until it is running")

    retention_task = asyncio.create_task(retention_cleanup_loop(app), name="retention_cleanup")
    logger.info(f"Managing {settings.postfix.main_cf_path}")

    yield

    logger.info(f"Shutting down {settings.app_name}...")
    retention_task.cancel()
    try:
        await retention_task
    except asyncio.CancelledError:
        pass
    await close_db(engine)
    logger.info("Shutdown complete")


def create_app(use_lifespan: bool = True) -> FastAPI:
    """
    Build the application.

    Without the lifespan the caller must populate app.state.config_manager
    itself (used by the test suite).
    """
    app = FastAPI(
        title="relayconf",
        description="Staged, validated and reversible Postfix configuration",
        version=settings.app_version,
        lifespan=lifespan if use_lifespan else None,
    )

    # Correlation ID middleware (first, to capture all requests)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_exception_handler(ConfigEngineError, engine_error_handler)
    app.include_router(config_api.router)

    @app.get("/api/status/live")
    async def liveness_check():
        """Liveness check: the process is up, regardless of dependencies."""
        return {"status": "alive"}

    @app.get("/api/status/ready")
    async def readiness_check(request: Request):
        """Readiness check: database reachable and engine constructed."""
        checks = {"database": False, "config_manager": False}

        manager = getattr(request.app.state, "config_manager", None)
        if manager is not None:
            checks["config_manager"] = True
            try:
                async with manager.session_factory() as db:
                    await db.execute(text("SELECT 1"))
                checks["database"] = True
            except Exception as e:
                logger.warning(f"Readiness check - database failed: {e}")

        if all(checks.values()):
            return {"status": "ready", "checks": checks}
        return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
