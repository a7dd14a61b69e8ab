"""
Shared router dependencies and transaction helpers.
"""

import logging
from datetime import datetime

from fastapi import BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.events import discard_dispatch_events, publish_dispatch_events
from app.core.timekeeping import utc_now
from app.database import get_session_factory
from app.services.notifications import (
    NotificationSender,
    deliver_in_new_session,
    discard_outbox_ids,
    get_notification_sender,
    take_outbox_ids,
)

logger = logging.getLogger(__name__)


def get_now() -> datetime:
    """Request clock; overridden in tests."""
    return utc_now()


class PostCommit:
    """Side effects a request hands off once its transaction has committed."""

    def __init__(
        self,
        background_tasks: BackgroundTasks,
        sender: NotificationSender = Depends(get_notification_sender),
        session_factory: async_sessionmaker = Depends(get_session_factory),
    ):
        self.background_tasks = background_tasks
        self.sender = sender
        self.session_factory = session_factory


async def commit_and_dispatch(db: AsyncSession, post_commit: PostCommit, *instances) -> None:
    """
    Commit the request transaction, publish its events and schedule delivery
    of the notifications it wrote. Delivery runs after the response is sent.
    """
    await db.commit()
    try:
        await publish_dispatch_events(db)
    except Exception as e:
        logger.warning(f"Dispatch event publish failed: {e}")
    ids = take_outbox_ids(db)
    if ids:
        post_commit.background_tasks.add_task(
            deliver_in_new_session, post_commit.session_factory, post_commit.sender, ids
        )
    for instance in instances:
        await db.refresh(instance)


async def abort(db: AsyncSession) -> None:
    await db.rollback()
    discard_dispatch_events(db)
    discard_outbox_ids(db)
