"""
Base class for scheduled dispatch evaluators.

Each evaluator is stateless between invocations: it selects its candidate
set (already-processed rows are excluded by the query itself), processes
every item in its own transaction and reports per-item failures in its
metrics instead of aborting the run.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.events import discard_dispatch_events
from app.core.policy import DispatchPolicy
from app.core.timekeeping import utc_now
from app.services.notifications import (
    LoggingNotificationSender,
    NotificationSender,
    discard_outbox_ids,
    dispatch_after_commit,
)


class DispatchPipeline:
    """
    Template for one evaluator pass.
    Subclasses implement _process and count outcomes in self.metrics.
    """

    name = "dispatch_pipeline"

    def __init__(
        self,
        db: AsyncSession,
        policy: DispatchPolicy,
        sender: Optional[NotificationSender] = None,
        now: Optional[datetime] = None,
    ):
        self.db = db
        self.policy = policy
        self.sender = sender or LoggingNotificationSender()
        self.now = now or utc_now()
        self.logger = logging.getLogger(f"app.pipelines.{self.name}")
        self.metrics: Dict[str, Any] = {
            "candidates": 0,
            "processed": 0,
            "skipped": 0,
            "errors": [],
        }

    async def run(self) -> Dict[str, Any]:
        """Run one pass and return its metrics."""
        self.logger.info(f"Starting {self.name} at {self.now.isoformat()}")
        started = utc_now()

        await self._process()

        self.metrics["duration_seconds"] = (utc_now() - started).total_seconds()
        self.metrics["completed_at"] = utc_now().isoformat()
        self.logger.info(f"{self.name} completed: {self.metrics}")
        return self.metrics

    async def _process(self) -> None:
        raise NotImplementedError

    async def _commit_item(self) -> None:
        """Commit the current item, then publish its events and deliver its notifications."""
        await self.db.commit()
        await dispatch_after_commit(self.db, self.sender)

    async def _discard_item(self) -> None:
        """Roll back an item that needs no change."""
        await self.db.rollback()
        discard_dispatch_events(self.db)
        discard_outbox_ids(self.db)

    async def _rollback_item(self, item_id: Any, error: Exception) -> None:
        await self.db.rollback()
        discard_dispatch_events(self.db)
        discard_outbox_ids(self.db)
        self.logger.warning(f"{self.name}: item {item_id} rolled back: {error}")
        self.metrics["errors"].append(f"{item_id}: {error}")
