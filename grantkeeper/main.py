"""GrantKeeper - Main Application."""
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import asyncio
import logging
import sys

from grantkeeper.api.admin import router as admin_router
from grantkeeper.api.sessions import router as sessions_router
from grantkeeper.routers import health
from grantkeeper.dependencies import get_services
from grantkeeper.jobs.expiration import expiration_worker
from grantkeeper.jobs.telemetry import telemetry_worker
from grantkeeper.logging_hardening import setup_logging_redaction
from grantkeeper.settings import settings

logger = logging.getLogger(__name__)

# Initialize logging redaction filters early
setup_logging_redaction()


def run_migrations(database_url: str) -> None:
    from alembic.config import Config
    from alembic import command
    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(alembic_cfg, "head")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    if settings.run_migrations and not settings.dev_mode:
        logger.info("Running DB Migrations...")
        try:
            await asyncio.to_thread(run_migrations, settings.database_url)
            logger.info("Migrations complete.")
        except Exception as e:
            logger.critical(f"Migration Failed: {e}")
            sys.exit(1)

    services = get_services()

    if settings.admin_requester_id:
        await services.orchestrator.ensure_admin_account(settings.admin_requester_id)

    shutdown_event = asyncio.Event()
    expiration_task = asyncio.create_task(expiration_worker(services.reconciler, shutdown_event))
    telemetry_task = asyncio.create_task(telemetry_worker(services.telemetry, shutdown_event))

    yield
    # Shutdown
    shutdown_event.set()
    logger.info("Initiating graceful shutdown...")
    await services.conversations.shutdown()

    try:
        await asyncio.wait_for(
            asyncio.gather(expiration_task, telemetry_task, return_exceptions=True),
            timeout=5.0,
        )
    except asyncio.TimeoutError:
        logger.warning("Background tasks shutdown timed out.")

    logger.info("Shutdown complete.")


app = FastAPI(
    title="GrantKeeper",
    description="Time-bounded VPN account lifecycle and provisioning",
    version="0.1.0",
    lifespan=lifespan
)


@app.exception_handler(HTTPException)
async def error_body_exception_handler(request: Request, exc: HTTPException):
    # Domain errors already carry a top-level 'error' key
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=exc.headers)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)


# Mount routers
app.include_router(sessions_router.router, prefix="/v1", tags=["Sessions"])
app.include_router(admin_router.router, prefix="/admin/v1", tags=["Admin"])
app.include_router(health.router, tags=["Health"])
