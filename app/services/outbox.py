"""
Outbox sweep: retries notifications that were not delivered after their
producing transaction committed (sender down, process stopped mid-delivery).
"""

from app.services.notifications import deliver_pending_notifications
from app.services.pipeline import DispatchPipeline


class NotificationDeliveryPipeline(DispatchPipeline):
    """Delivers every undelivered outbox row, oldest first."""

    name = "deliver_notifications"
    batch_size = 500

    async def _process(self) -> None:
        counts = await deliver_pending_notifications(self.db, self.sender, limit=self.batch_size)
        self.metrics["candidates"] = counts["sent"] + counts["failed"]
        self.metrics["processed"] = counts["sent"]
        self.metrics["failed"] = counts["failed"]
