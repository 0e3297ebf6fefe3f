"""
Realtime SSE endpoint.

Streams committed order and agent events to tracking frontends. Clients pick
topics with repeated ``topic`` query parameters, e.g.
``/api/realtime/stream?topic=order:<id>&topic=agent:<id>``.
"""

from typing import AsyncIterator, Dict, List, Optional
import asyncio
import json
import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from app.api.deps import get_event_bus
from app.config import Settings, get_settings
from app.core.errors import ValidationError
from app.core.events import EventBus, Subscription, parse_topic


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/realtime", tags=["Realtime"])


def format_frame(event: Dict) -> str:
    """SSE frame: ``event: <type>`` then ``data: <json>``."""
    return f"event: {event['type']}\ndata: {json.dumps(event)}\n\n"


async def stream_events(
    bus: EventBus,
    topics: List[str],
    heartbeat: Optional[float] = None,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for events published on ``topics``.

    The first frame is a ``connected`` event. Subscriptions are opened before
    it is yielded, so everything published afterwards is delivered. A comment
    line is sent every ``heartbeat`` seconds of silence. The stream ends when
    the bus closes.
    """
    subscriptions = [bus.subscribe(topic) for topic in topics]
    pending: Dict[asyncio.Future, Subscription] = {}
    try:
        yield format_frame({
            "type": "connected",
            "message": "SSE connection established",
            "topics": topics,
        })

        for subscription in subscriptions:
            pending[asyncio.ensure_future(subscription.get())] = subscription

        while pending:
            done, _ = await asyncio.wait(
                pending, timeout=heartbeat, return_when=asyncio.FIRST_COMPLETED
            )
            if not done:
                yield ": keep-alive\n\n"
                continue
            for task in done:
                subscription = pending.pop(task)
                event = task.result()
                if event is None:
                    continue
                yield format_frame(event)
                pending[asyncio.ensure_future(subscription.get())] = subscription
    finally:
        for task in pending:
            task.cancel()
        for subscription in subscriptions:
            if subscription.dropped:
                logger.info(
                    f"Subscription {subscription.id} on {subscription.topic} "
                    f"dropped {subscription.dropped} event(s)"
                )
            subscription.close()


@router.get(
    "/stream",
    summary="Event stream",
    description="Server-Sent Events for the requested order:<id> and agent:<id> topics.",
)
async def realtime_stream(
    topic: List[str] = Query(..., description="Topic to follow (repeatable)"),
    bus: EventBus = Depends(get_event_bus),
    settings: Settings = Depends(get_settings),
):
    try:
        topics = sorted({parse_topic(t) for t in topic})
    except ValueError:
        raise ValidationError(
            "Invalid topic",
            fields={"topic": "must be order:<uuid> or agent:<uuid>"},
        )

    return StreamingResponse(
        stream_events(bus, topics, settings.sse_heartbeat_seconds),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
