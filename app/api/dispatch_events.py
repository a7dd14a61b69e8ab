"""
Dispatch Events SSE Endpoint.

Streams committed assignment transitions and bid window changes to
manager dashboards.
"""

from fastapi import APIRouter, Query
from fastapi.responses import StreamingResponse
from typing import Optional
import json

from app.core.events import dispatch_event_bus


router = APIRouter(tags=["dispatch-events"])


@router.get("/dispatch-events/stream")
async def dispatch_events_stream(
    assignment_id: Optional[str] = Query(None, description="Filter by assignment ID")
):
    """
    Server-Sent Events endpoint for dispatch events.

    Args:
        assignment_id: Optional assignment ID to filter events

    Returns:
        SSE stream of dispatch events
    """

    async def event_generator():
        init_event = {
            "type": "connected",
            "message": "SSE connection established",
            "filter_assignment_id": assignment_id,
        }
        yield f"data: {json.dumps(init_event)}\n\n"

        async for event in dispatch_event_bus.subscribe():
            if assignment_id and event.get("assignment_id") != assignment_id:
                continue
            yield f"data: {json.dumps(event, default=str)}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@router.get("/dispatch-events/recent")
async def get_recent_events(
    assignment_id: Optional[str] = Query(None, description="Filter by assignment ID"),
    limit: int = Query(50, ge=1, le=200, description="Maximum events to return"),
):
    """Recent dispatch events (non-streaming), for initial dashboard load."""
    events = dispatch_event_bus.get_recent_events(
        assignment_id=assignment_id,
        limit=limit,
    )
    return {"events": events, "count": len(events)}
