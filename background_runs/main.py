"""FastAPI application entry point."""

import logging
import os
import threading

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from background_runs.config import settings
from background_runs.routes import runs

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Background Runs",
    description="Durable background run lifecycle: transitions, dispatch with backoff, stale-run recovery",
    version="0.1.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(runs.router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are client errors, reported as 400."""
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


# Scheduler thread management
scheduler_thread = None
scheduler_stop_event = threading.Event()


def run_scheduler_loop():
    """Run the scheduler loop in a background thread."""
    from background_runs.worker import scheduler_loop

    logger.info("Starting embedded scheduler thread")
    scheduler_loop(scheduler_stop_event)


def run_migrations():
    """Create the schema with Alembic unless the tables already exist."""
    from sqlalchemy import inspect

    from background_runs.database import engine

    if inspect(engine).has_table("background_runs"):
        logger.info("Database tables already exist, skipping migrations")
        return

    logger.info("Running database migrations...")
    from alembic import command
    from alembic.config import Config

    alembic_cfg = Config(os.path.join(os.path.dirname(os.path.dirname(__file__)), "alembic.ini"))
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations completed successfully")


@app.on_event("startup")
async def startup_event():
    """Migrate the database and optionally start the embedded scheduler."""
    global scheduler_thread
    logger.info("Starting application...")

    try:
        run_migrations()
    except Exception as e:
        logger.error(f"Startup database check/migration error: {e}")
        logger.info("Continuing startup - assuming database is ready")

    if settings.EMBEDDED_SCHEDULER:
        scheduler_thread = threading.Thread(target=run_scheduler_loop, daemon=True)
        scheduler_thread.start()
        logger.info("Embedded scheduler thread started")
    else:
        logger.info("Embedded scheduler disabled; trigger /background-runs/worker or run background_runs.worker")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the embedded scheduler and drain telemetry."""
    global scheduler_thread
    logger.info("Shutting down application...")

    scheduler_stop_event.set()

    if scheduler_thread and scheduler_thread.is_alive():
        scheduler_thread.join(timeout=10)
        logger.info("Embedded scheduler thread stopped")

    from background_runs.dependencies import get_telemetry

    get_telemetry().close()


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "name": "Background Runs",
        "version": "0.1.0",
        "status": "running",
    }
