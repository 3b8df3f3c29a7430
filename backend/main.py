"""
Cover-video HLS Backend - Main Application

This is the entry point for the FastAPI application.
Most logic lives in:
- core/: Configuration, validation and exception types
- services/: Download, transcode, cache, admission and prefetch pipeline
- api/routes/: REST API endpoints
"""
import os
import time
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import (
    LOG_LEVEL,
    LOG_HLS_VERBOSE,
    HOUSEKEEPING_INTERVAL_SECONDS,
    INFLIGHT_STALE_SECONDS,
    CACHE_STARTUP_SWEEP_DELAY_SECONDS,
)
from services.cache import segment_cache, cache_cleanup_task, temp_cleanup_task
from services.database import clear_expired_playlists, init_database
from services.fetcher import fetcher
from services.inflight import in_flight
from services.music_api import music_api
from services.prefetcher import prefetcher
from api.routes.hls import router as hls_router

# Configure logging
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
if LOG_HLS_VERBOSE:
    logging.getLogger("services").setLevel(logging.DEBUG)
logger = logging.getLogger(__name__)

# Allowed origins for CORS (set via environment variable, comma-separated)
ALLOWED_ORIGINS = os.environ.get("ALLOWED_ORIGINS", "").split(",") if os.environ.get("ALLOWED_ORIGINS") else ["*"]


# ============================================================================
# Background Tasks
# ============================================================================

async def housekeeping_task():
    """Background task pruning in-memory bookkeeping and expired playlist rows."""
    while True:
        await asyncio.sleep(HOUSEKEEPING_INTERVAL_SECONDS)
        try:
            in_flight.purge_stale(INFLIGHT_STALE_SECONDS)
            prefetcher.cleanup()
            segment_cache.trim_memory()
            await clear_expired_playlists()
        except Exception as e:
            logger.error(f"Error in housekeeping task: {e}")


# ============================================================================
# Application Lifecycle
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - start/stop background tasks."""
    # Initialize database and run migrations
    init_database()

    segment_cache.schedule_sweep("startup", delay=CACHE_STARTUP_SWEEP_DELAY_SECONDS)

    tasks = [
        asyncio.create_task(cache_cleanup_task()),
        asyncio.create_task(temp_cleanup_task()),
        asyncio.create_task(housekeeping_task()),
    ]
    logger.info("Started background tasks: cache cleanup, temp cleanup, housekeeping")
    yield

    # Cancel and await all background tasks
    for task in tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"Error during task shutdown: {e}")

    await segment_cache.cancel_scheduled()
    await prefetcher.cancel_all()
    await in_flight.cancel_all()
    logger.info("All background tasks shut down cleanly")

    # Clean up HTTP clients
    await fetcher.aclose()
    await music_api.aclose()
    logger.info("Closed HTTP clients")


# ============================================================================
# App Initialization
# ============================================================================

app = FastAPI(title="Cover HLS Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True if ALLOWED_ORIGINS != ["*"] else False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(hls_router)


# ============================================================================
# Core Endpoints
# ============================================================================

@app.get("/")
def read_root():
    """Health check endpoint."""
    return {"status": "ok", "service": "Cover HLS Backend"}


@app.get("/health")
def health():
    """Liveness probe."""
    return {"status": "ok", "timestamp": int(time.time() * 1000)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
