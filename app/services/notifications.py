"""
Notification outbox and delivery.

Mutations write Notification rows inside their transaction. After the
transaction commits, deliver_pending_notifications hands each undelivered
row to a NotificationSender. Delivery failures are logged and recorded on
the row; they never fail the mutation that produced them.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence
from uuid import UUID, uuid4

import httpx
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from app.core.events import publish_dispatch_events
from app.database import utcnow
from app.models import Notification, NotificationKind

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    """External notification collaborator."""

    async def send(self, recipient_id: UUID, event_type: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotificationSender:
    """Default sender: writes each notification to the log."""

    async def send(self, recipient_id: UUID, event_type: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Notify {recipient_id}: {event_type} {payload}")


class WebhookNotificationSender:
    """Posts notifications as JSON to a configured webhook."""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    async def send(self, recipient_id: UUID, event_type: str, payload: Dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.url,
                json={
                    "recipient_id": str(recipient_id),
                    "event_type": event_type,
                    "payload": payload,
                },
            )
            response.raise_for_status()


def get_notification_sender() -> NotificationSender:
    """Sender chosen from settings (webhook when configured, else logging)."""
    settings = get_settings()
    if settings.notification_webhook_url:
        return WebhookNotificationSender(
            settings.notification_webhook_url,
            timeout=settings.notification_timeout_seconds,
        )
    return LoggingNotificationSender()


_OUTBOX_KEY = "dispatch_outbox"


def enqueue_notification(
    db: AsyncSession,
    recipient_id: UUID,
    kind: NotificationKind,
    payload: Optional[Dict[str, Any]] = None,
    assignment_id: Optional[UUID] = None,
    bid_window_id: Optional[UUID] = None,
    subject_date: Optional[date] = None,
) -> Notification:
    """Add an outbox row to the current transaction."""
    notification = Notification(
        id=uuid4(),
        recipient_id=recipient_id,
        kind=kind,
        assignment_id=assignment_id,
        bid_window_id=bid_window_id,
        subject_date=subject_date,
        payload=_jsonable(payload or {}),
    )
    db.add(notification)
    db.info.setdefault(_OUTBOX_KEY, []).append(notification.id)
    return notification


def take_outbox_ids(db: AsyncSession) -> List[UUID]:
    """Pop the ids of outbox rows written by the session's last transaction."""
    return db.info.pop(_OUTBOX_KEY, [])


def discard_outbox_ids(db: AsyncSession) -> None:
    db.info.pop(_OUTBOX_KEY, None)


def enqueue_many(
    db: AsyncSession,
    recipient_ids: Iterable[UUID],
    kind: NotificationKind,
    payload: Optional[Dict[str, Any]] = None,
    **fields: Any,
) -> int:
    count = 0
    for recipient_id in recipient_ids:
        enqueue_notification(db, recipient_id, kind, payload, **fields)
        count += 1
    return count


async def notification_exists(
    db: AsyncSession,
    kind: NotificationKind,
    assignment_id: Optional[UUID] = None,
    recipient_id: Optional[UUID] = None,
    subject_date: Optional[date] = None,
    created_since: Optional[datetime] = None,
) -> bool:
    """Dedupe check against previously enqueued notifications."""
    conditions = [Notification.kind == kind]
    if assignment_id is not None:
        conditions.append(Notification.assignment_id == assignment_id)
    if recipient_id is not None:
        conditions.append(Notification.recipient_id == recipient_id)
    if subject_date is not None:
        conditions.append(Notification.subject_date == subject_date)
    if created_since is not None:
        conditions.append(Notification.created_at >= created_since)
    result = await db.execute(select(Notification.id).where(and_(*conditions)).limit(1))
    return result.first() is not None


async def deliver_pending_notifications(
    db: AsyncSession,
    sender: NotificationSender,
    ids: Optional[Sequence[UUID]] = None,
    limit: int = 500,
) -> Dict[str, int]:
    """
    Send undelivered outbox rows. Call only after the producing transaction commits.

    Rows are claimed with FOR UPDATE SKIP LOCKED, so a concurrent pass skips
    whatever this one is sending instead of sending it twice.

    Args:
        db: Database session
        sender: Notification collaborator
        ids: Restrict the pass to these rows (default: every undelivered row)
        limit: Maximum rows to deliver in one pass

    Returns:
        Dict with sent and failed counts
    """
    counts = {"sent": 0, "failed": 0}
    if ids is not None and not ids:
        return counts
    try:
        query = select(Notification).where(Notification.dispatched_at.is_(None))
        if ids is not None:
            query = query.where(Notification.id.in_(list(ids)))
        result = await db.execute(
            query.order_by(Notification.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        pending = result.scalars().all()

        for notification in pending:
            try:
                await sender.send(
                    notification.recipient_id,
                    notification.kind.value,
                    notification.payload,
                )
                notification.dispatched_at = utcnow()
                notification.last_error = None
                counts["sent"] += 1
            except Exception as e:
                logger.warning(f"Notification {notification.id} ({notification.kind.value}) failed: {e}")
                notification.last_error = str(e)[:500]
                counts["failed"] += 1

        await db.commit()
    except Exception as e:
        logger.warning(f"Notification delivery pass failed: {e}")
        await db.rollback()
    return counts


async def dispatch_after_commit(db: AsyncSession, sender: NotificationSender) -> None:
    """Publish queued dispatch events, then deliver the rows the committed transaction wrote."""
    try:
        await publish_dispatch_events(db)
    except Exception as e:
        logger.warning(f"Dispatch event publish failed: {e}")
    await deliver_pending_notifications(db, sender, ids=take_outbox_ids(db))


async def deliver_in_new_session(
    session_factory: async_sessionmaker,
    sender: NotificationSender,
    ids: List[UUID],
) -> Dict[str, int]:
    """Deliver outbox rows from a fresh session, e.g. as a request background task."""
    async with session_factory() as db:
        return await deliver_pending_notifications(db, sender, ids=ids)


def _jsonable(payload: Dict[str, Any]) -> Dict[str, Any]:
    converted = {}
    for key, value in payload.items():
        if isinstance(value, (UUID, date, datetime)):
            converted[key] = str(value) if isinstance(value, UUID) else value.isoformat()
        elif isinstance(value, timedelta):
            converted[key] = value.total_seconds()
        else:
            converted[key] = value
    return converted
