"""
Shift Dispatch Engine - FastAPI Application
Main entry point for the API server.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from app.api import (
    assignments_router,
    bidding_router,
    drivers_router,
    admin_router,
    dispatch_events_router,
)


settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown events."""
    logger.info(f"Starting {settings.app_title} v{settings.app_version}")

    # Initialize database tables (important for SQLite)
    from app.database import init_db
    await init_db()
    logger.info("Database tables initialized")

    yield
    logger.info("Shutting down...")


app = FastAPI(
    title=settings.app_title,
    version=settings.app_version,
    description="""
    ## Shift Dispatch Engine API

    Keeps every route-day staffed by exactly one accountable driver.

    ### Features
    - **Assignment lifecycle**: confirm, cancel, arrive, start and complete shifts
    - **Bid windows**: competitive, instant and emergency replacement windows
    - **Automated enforcement**: auto-drop, no-show detection, bid window closing
    - **Driver health**: daily score, hard-stops, weekly streaks and stars

    ### Main Endpoints
    - `POST /api/v1/assignments/{id}/confirm` - Confirm a scheduled shift
    - `POST /api/v1/bids` - Bid on or claim a vacancy
    - `GET /api/v1/bid-windows` - Open bid windows
    - `POST /api/v1/admin/assignments/{id}/emergency-reopen` - Emergency reopen
    - `GET /api/v1/dispatch-events/stream` - SSE stream for dispatch events
    """,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(assignments_router, prefix=settings.api_prefix)
app.include_router(bidding_router, prefix=settings.api_prefix)
app.include_router(drivers_router, prefix=settings.api_prefix)
app.include_router(admin_router, prefix=settings.api_prefix)
app.include_router(dispatch_events_router, prefix=settings.api_prefix)


@app.get("/", tags=["Health"])
async def root():
    """Root endpoint - health check."""
    return {
        "status": "healthy",
        "service": settings.app_title,
        "version": settings.app_version,
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timezone": settings.operating_timezone,
    }
