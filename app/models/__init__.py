"""Models package initialization - imports all models for easy access."""

from app.models.driver import Driver, DriverPreference, DriverMetrics, RouteCompletion
from app.models.route import Route
from app.models.assignment import (
    Assignment,
    AssignmentStatus,
    AssignedBy,
    CancelType,
    CreationTrigger,
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
)
from app.models.bidding import (
    BidWindow,
    BidWindowMode,
    BidWindowStatus,
    BidWindowTrigger,
    Bid,
    BidStatus,
)
from app.models.health import DriverHealthState, DriverHealthSnapshot
from app.models.notification import Notification, NotificationKind
from app.models.audit_log import AuditLog

__all__ = [
    # Drivers and routes
    "Driver",
    "DriverPreference",
    "DriverMetrics",
    "RouteCompletion",
    "Route",
    # Assignment lifecycle
    "Assignment",
    "AssignmentStatus",
    "AssignedBy",
    "CancelType",
    "CreationTrigger",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    # Bidding
    "BidWindow",
    "BidWindowMode",
    "BidWindowStatus",
    "BidWindowTrigger",
    "Bid",
    "BidStatus",
    # Health
    "DriverHealthState",
    "DriverHealthSnapshot",
    # Outbox / audit
    "Notification",
    "NotificationKind",
    "AuditLog",
]
