"""Async generator backing the workflow SSE endpoint."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncGenerator, Optional

from workflow_feed.models.events import WorkflowEvent

from .events import HEARTBEAT_FRAME, format_close_frame, format_event_frame
from .manager import SubscriptionManager
from .watcher import LogWatcher

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


async def workflow_event_stream(
    manager: SubscriptionManager,
    watcher: LogWatcher,
    workflow_id: str,
    heartbeat_interval: float = 30.0,
    last_event_id: Optional[int] = None,
) -> AsyncGenerator[str, None]:
    """Yield SSE frames for one client until it disconnects or the workflow closes.

    The first frame is a heartbeat comment so the response is flushed and the
    client sees the stream open. Buffered events above ``last_event_id`` are
    replayed before live ones. Heartbeats go out on a fixed cadence whether or
    not events are flowing.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[Optional[WorkflowEvent]] = asyncio.Queue()

    def on_event(event: WorkflowEvent) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, event)

    def on_close() -> None:
        loop.call_soon_threadsafe(queue.put_nowait, None)

    unsubscribe = manager.subscribe(workflow_id, on_event, on_close=on_close)
    watcher.watch(workflow_id)
    logger.info(f"SSE stream opened for workflow {workflow_id} (last_event_id={last_event_id})")

    last_written = last_event_id or 0
    try:
        yield HEARTBEAT_FRAME

        for event in manager.buffered(workflow_id, after=last_written):
            yield format_event_frame(event)
            last_written = event.sequence_number

        next_heartbeat = loop.time() + heartbeat_interval
        while True:
            timeout = max(0.0, next_heartbeat - loop.time())
            try:
                event = await asyncio.wait_for(queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                yield HEARTBEAT_FRAME
                # Measured from resumption so a stalled reader gets one heartbeat, not a burst.
                next_heartbeat = loop.time() + heartbeat_interval
                continue

            if event is None:
                yield format_close_frame(workflow_id, "workflow_finished")
                return
            # Replay and live delivery can overlap right after subscribing.
            if event.sequence_number <= last_written:
                continue
            yield format_event_frame(event)
            last_written = event.sequence_number
    finally:
        unsubscribe()
        if manager.subscriber_count(workflow_id) == 0:
            manager.evict(workflow_id)
        logger.info(f"SSE stream closed for workflow {workflow_id} (last_written={last_written})")
