"""
Campus API - Main Application Entry Point

This module initializes and configures the FastAPI application including:
- Logging
- Database connection
- Background job scheduler (admissions automation)
- CORS middleware
- API routing
- Health check endpoints
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from campus.api import api_router
from campus.core.config import settings
from campus.core.database import async_session_maker, close_db, init_db
from campus.core.logging_config import configure_logging
from campus.core.scheduler import (
    clear_registry,
    list_registered_jobs,
    pause_job,
    resume_job,
    start_scheduler,
    stop_scheduler,
    trigger_job_manually,
)
from campus.modules.admissions.jobs import register_admissions_jobs

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events including:
    - Logging setup
    - Database connection
    - Background job scheduler
    """
    # Startup
    configure_logging()
    logger.info(f"Starting Campus API in {settings.python_env} mode...")

    # Initialize Database
    try:
        await init_db()
        logger.info("[OK] Database connected")
    except Exception as e:
        logger.error(f"[FAIL] Database connection failed: {e}")
        if settings.is_production:
            raise

    # Initialize Background Job Scheduler
    try:
        register_admissions_jobs()
        await start_scheduler()
        logger.info("[OK] Background scheduler started")
    except Exception as e:
        logger.error(f"[FAIL] Background scheduler failed to start: {e}")
        if settings.is_production:
            raise

    yield  # Application runs here

    # Shutdown
    logger.info("Shutting down Campus API...")

    # Stop the scheduler first (wait for running jobs)
    await stop_scheduler()
    clear_registry()
    logger.info("[OK] Background scheduler stopped")

    await close_db()
    logger.info("[OK] Cleanup complete")


app = FastAPI(
    title="Campus API",
    description="Campus admissions pipeline and automation API",
    version="0.1.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    lifespan=lifespan,
)

app.include_router(api_router, prefix="/api/v1")

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint - API welcome message."""
    return {
        "message": "Welcome to Campus API",
        "status": "running",
        "environment": settings.python_env,
    }


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint for container orchestration."""
    return {"status": "healthy"}


@app.get("/ready", tags=["Health"])
async def readiness_check() -> dict[str, str]:
    """Readiness check endpoint."""
    return {"status": "ready"}


@app.get("/debug/db", tags=["Debug"])
async def debug_db():
    """Test database connection."""
    try:
        async with async_session_maker() as session:
            result = await session.execute(text("SELECT 1"))
            return {"database": "connected", "result": result.scalar()}
    except Exception as e:
        return {"database": "error", "message": str(e)}


# ============================================
# Background Job Debug Endpoints
# ============================================
# These endpoints allow manual triggering of background jobs for testing
# and debugging purposes. In production, jobs run automatically on schedule.


@app.get("/debug/jobs", tags=["Debug"])
async def list_jobs():
    """List all registered background jobs and their status."""
    return {"jobs": list_registered_jobs()}


@app.post("/debug/jobs/{job_id}/trigger", tags=["Debug"])
async def trigger_job(job_id: str):
    """
    Manually trigger a background job for testing.

    This runs the job immediately, bypassing the normal schedule. Running
    the admissions tick by hand is safe: sessions already claimed by a
    scheduled run are skipped.

    Args:
        job_id: The ID of the job to trigger. Available jobs:
            - admissions_automation_tick

    Raises:
        HTTPException 400: If job_id is not found.
    """
    try:
        return await trigger_job_manually(job_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@app.post("/debug/jobs/{job_id}/pause", tags=["Debug"])
async def pause_job_endpoint(job_id: str):
    """Pause a scheduled background job. Use /debug/jobs/{job_id}/resume to restart it."""
    success = pause_job(job_id)
    return {"job_id": job_id, "paused": success}


@app.post("/debug/jobs/{job_id}/resume", tags=["Debug"])
async def resume_job_endpoint(job_id: str):
    """Resume a paused background job."""
    success = resume_job(job_id)
    return {"job_id": job_id, "resumed": success}
