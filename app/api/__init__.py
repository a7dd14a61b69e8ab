"""API routers package initialization."""

from app.api.assignments import router as assignments_router
from app.api.bidding import router as bidding_router
from app.api.drivers import router as drivers_router
from app.api.admin import router as admin_router
from app.api.dispatch_events import router as dispatch_events_router

__all__ = [
    "assignments_router",
    "bidding_router",
    "drivers_router",
    "admin_router",
    "dispatch_events_router",
]
