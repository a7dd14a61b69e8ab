"""
Dispatch Event Bus for real-time SSE synchronization.

Provides a pub/sub mechanism for dispatch events (assignment transitions,
bid window open/close) consumed by manager dashboards over SSE. Services
queue events on the session; they are published only after the
transaction commits.
"""

from typing import AsyncIterator, Dict, Any, List, Optional
import asyncio
import time

from sqlalchemy.ext.asyncio import AsyncSession


class DispatchEventBus:
    """
    Simple in-process pub/sub for dispatch events.

    Multiple listeners (SSE connections) can subscribe and receive
    events published after dispatch mutations commit.
    """

    def __init__(self, max_recent: int = 100) -> None:
        self._subscribers: List[asyncio.Queue] = []
        self._lock = asyncio.Lock()
        self._recent_events: List[Dict[str, Any]] = []
        self._max_recent = max_recent

    async def subscribe(self) -> AsyncIterator[Dict[str, Any]]:
        """
        Async generator yielding events. Callers iterate and send as SSE.

        Yields:
            Dispatch event dictionaries
        """
        queue: asyncio.Queue = asyncio.Queue()

        async with self._lock:
            self._subscribers.append(queue)
            # Catch up late joiners
            for event in self._recent_events[-20:]:
                await queue.put(event)

        try:
            while True:
                event = await queue.get()
                yield event
        finally:
            async with self._lock:
                if queue in self._subscribers:
                    self._subscribers.remove(queue)

    async def publish(self, event: Dict[str, Any]) -> None:
        """
        Publish an event to all subscribers.

        Args:
            event: Dispatch event dictionary
        """
        async with self._lock:
            self._recent_events.append(event)
            if len(self._recent_events) > self._max_recent:
                self._recent_events = self._recent_events[-self._max_recent:]

            for queue in self._subscribers:
                queue.put_nowait(event)

    def get_recent_events(
        self,
        assignment_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """
        Get recent events, optionally filtered by assignment.

        Args:
            assignment_id: Filter by specific assignment (optional)
            limit: Maximum events to return

        Returns:
            List of recent events
        """
        events = self._recent_events
        if assignment_id:
            events = [
                e for e in events
                if e.get("assignment_id") == assignment_id
            ]
        return events[-limit:]

    def clear(self) -> None:
        self._recent_events = []


# Global singleton
dispatch_event_bus = DispatchEventBus()

_PENDING_KEY = "pending_dispatch_events"


def make_dispatch_event(
    event_type: str,
    assignment_id: Optional[Any] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Create a standardized dispatch event dictionary.

    Args:
        event_type: "assignment_updated", "bid_window_opened" or "bid_window_closed"
        assignment_id: Assignment the event concerns
        payload: Optional additional data for the event

    Returns:
        Formatted event dictionary
    """
    return {
        "type": event_type,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "assignment_id": str(assignment_id) if assignment_id else None,
        "payload": payload or {},
    }


def queue_dispatch_event(
    db: AsyncSession,
    event_type: str,
    assignment_id: Optional[Any] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    """Hold an event on the session until its transaction commits."""
    db.info.setdefault(_PENDING_KEY, []).append(
        make_dispatch_event(event_type, assignment_id, payload)
    )


def discard_dispatch_events(db: AsyncSession) -> None:
    """Drop events queued by a transaction that rolled back."""
    db.info.pop(_PENDING_KEY, None)


async def publish_dispatch_events(db: AsyncSession) -> int:
    """Publish events queued on the session. Call only after commit."""
    events = db.info.pop(_PENDING_KEY, [])
    for event in events:
        await dispatch_event_bus.publish(event)
    return len(events)
