"""
Tests for the notification outbox and post-commit event publishing.
"""

from datetime import date, timedelta
from uuid import uuid4

from sqlalchemy import select

from app.core.events import dispatch_event_bus, queue_dispatch_event
from app.core.timekeeping import confirmation_deadline_at
from app.models import AssignmentStatus, Notification, NotificationKind
from app.services.confirmations import AutoDropPipeline
from app.services.lifecycle import confirm_assignment
from app.services.notifications import (
    LoggingNotificationSender,
    deliver_in_new_session,
    deliver_pending_notifications,
    discard_outbox_ids,
    dispatch_after_commit,
    enqueue_notification,
    get_notification_sender,
    take_outbox_ids,
)
from app.services.outbox import NotificationDeliveryPipeline
from app.api.deps import abort
from tests.fixtures.factories import FailingSender, RecordingSender, make_assignment, reload


class TestOutbox:
    """Rows are written in the mutation and delivered after commit."""

    async def test_delivers_pending_rows(self, db_session, driver, sender):
        assignment_id = uuid4()
        enqueue_notification(
            db_session, driver.id, NotificationKind.ASSIGNED,
            {"assignment_id": assignment_id, "date": date(2026, 6, 15)},
            assignment_id=assignment_id,
        )
        await db_session.commit()

        counts = await deliver_pending_notifications(db_session, sender)

        assert counts == {"sent": 1, "failed": 0}
        recipient, kind, payload = sender.sent[0]
        assert recipient == driver.id
        assert kind == "assigned"
        assert payload == {"assignment_id": str(assignment_id), "date": "2026-06-15"}

        row = (await db_session.execute(select(Notification))).scalar_one()
        assert row.dispatched_at is not None

    async def test_failed_delivery_is_kept_for_retry(self, db_session, driver):
        enqueue_notification(db_session, driver.id, NotificationKind.HARD_STOP, {"reason": "no_show"})
        await db_session.commit()

        counts = await deliver_pending_notifications(db_session, FailingSender())
        assert counts == {"sent": 0, "failed": 1}

        row = (await db_session.execute(select(Notification))).scalar_one()
        assert row.dispatched_at is None
        assert "unavailable" in row.last_error

        retry = RecordingSender()
        await deliver_pending_notifications(db_session, retry)
        await reload(db_session, row)
        assert retry.kinds() == ["hard_stop"]
        assert row.dispatched_at is not None
        assert row.last_error is None

    async def test_sender_failure_does_not_undo_mutation(self, db_session, policy, route, driver, shift_date):
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)
        now = confirmation_deadline_at(shift_date, policy) + timedelta(minutes=1)

        metrics = await AutoDropPipeline(db_session, policy, sender=FailingSender(), now=now).run()

        assert metrics["dropped"] == 1
        await reload(db_session, assignment)
        assert assignment.status == AssignmentStatus.AUTO_DROPPED

    async def test_commit_delivers_only_its_own_rows(self, db_session, policy, driver, other_driver, sender):
        enqueue_notification(db_session, driver.id, NotificationKind.HARD_STOP, {"reason": "no_show"})
        await db_session.commit()
        discard_outbox_ids(db_session)

        enqueue_notification(db_session, other_driver.id, NotificationKind.ASSIGNED, {})
        await db_session.commit()
        await dispatch_after_commit(db_session, sender)

        assert sender.sent == [(other_driver.id, "assigned", {})]

        sweep = RecordingSender()
        metrics = await NotificationDeliveryPipeline(db_session, policy, sender=sweep).run()
        assert sweep.kinds() == ["hard_stop"]
        assert metrics["processed"] == 1
        assert metrics["failed"] == 0

    async def test_delivered_rows_are_not_sent_again(self, db_session, session_factory, driver, sender):
        enqueue_notification(db_session, driver.id, NotificationKind.CORRECTIVE_WARNING, {})
        await db_session.commit()

        first = await deliver_in_new_session(session_factory, sender, take_outbox_ids(db_session))
        second = await deliver_pending_notifications(db_session, sender)

        assert first == {"sent": 1, "failed": 0}
        assert second == {"sent": 0, "failed": 0}
        assert sender.kinds() == ["corrective_warning"]

    async def test_rolled_back_rows_are_forgotten(self, db_session, driver, sender):
        enqueue_notification(db_session, driver.id, NotificationKind.NO_SHOW, {})
        await abort(db_session)

        assert take_outbox_ids(db_session) == []
        await dispatch_after_commit(db_session, sender)
        assert sender.sent == []

    def test_default_sender_logs(self):
        assert isinstance(get_notification_sender(), LoggingNotificationSender)


class TestDispatchEvents:
    """Dispatch events reach subscribers only after the transaction commits."""

    async def test_published_after_commit(self, db_session, policy, route, driver, shift_date, at, sender):
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)

        await confirm_assignment(db_session, policy, assignment.id, driver.id, at(shift_date - timedelta(days=3), 9))
        assert dispatch_event_bus.get_recent_events() == []

        await db_session.commit()
        await dispatch_after_commit(db_session, sender)

        events = dispatch_event_bus.get_recent_events(assignment_id=str(assignment.id))
        assert [e["type"] for e in events] == ["assignment_updated"]
        assert events[0]["payload"]["status"] == "confirmed"

    async def test_discarded_on_rollback(self, db_session, sender):
        assignment_id = uuid4()
        queue_dispatch_event(db_session, "assignment_updated", assignment_id, {"status": "confirmed"})

        await abort(db_session)
        await dispatch_after_commit(db_session, sender)

        assert dispatch_event_bus.get_recent_events() == []
