"""SubscriptionManager: per-workflow listener registry and event fan-out."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

from workflow_feed.models.events import WorkflowEvent

logger = logging.getLogger(__name__)

Listener = Callable[[WorkflowEvent], None]
CloseCallback = Callable[[], None]


@dataclass(eq=False)
class _Subscription:
    listener: Listener
    on_close: Optional[CloseCallback] = None


@dataclass
class _WorkflowChannel:
    subscriptions: list[_Subscription] = field(default_factory=list)
    buffer: deque[WorkflowEvent] = field(default_factory=deque)
    last_sequence: int = 0


class SubscriptionManager:
    """Fans out workflow events to every listener watching that workflow.

    Each workflow_id has:
    - An ordered list of listeners (registration order is delivery order)
    - A bounded buffer of published events for replay on reconnect

    A workflow's channel exists only while it has listeners. Once the last
    listener leaves, ``evict`` drops the buffer. All mutation happens under a
    single lock; listeners run outside it on a snapshot.
    """

    def __init__(self, buffer_size: int = 1000) -> None:
        self._buffer_size = buffer_size
        self._channels: dict[str, _WorkflowChannel] = {}
        self._lock = threading.Lock()
        self._shut_down = False

    def subscribe(
        self,
        workflow_id: str,
        listener: Listener,
        on_close: Optional[CloseCallback] = None,
    ) -> Callable[[], None]:
        """Register a listener and return the function that removes it.

        Never raises. Unknown workflows are fine; the listener simply receives
        nothing until events are published for that id.
        """
        subscription = _Subscription(listener=listener, on_close=on_close)
        with self._lock:
            if self._shut_down:
                logger.warning("subscribe(%s) after shutdown ignored", workflow_id)
                return lambda: None
            channel = self._channels.get(workflow_id)
            if channel is None:
                channel = _WorkflowChannel(buffer=deque(maxlen=self._buffer_size))
                self._channels[workflow_id] = channel
            channel.subscriptions.append(subscription)

        def unsubscribe() -> None:
            with self._lock:
                current = self._channels.get(workflow_id)
                if current is not None and subscription in current.subscriptions:
                    current.subscriptions.remove(subscription)

        return unsubscribe

    def publish(self, workflow_id: str, event: WorkflowEvent) -> int:
        """Deliver an event to every current listener and return how many got it.

        Events at or below the channel's high-water mark were already
        published and are dropped. A listener that raises is logged and
        skipped; the remaining listeners still receive the event.
        """
        with self._lock:
            channel = self._channels.get(workflow_id)
            if channel is None or not channel.subscriptions:
                return 0
            if event.sequence_number <= channel.last_sequence:
                return 0
            channel.buffer.append(event)
            channel.last_sequence = event.sequence_number
            snapshot = list(channel.subscriptions)

        delivered = 0
        for subscription in snapshot:
            try:
                subscription.listener(event)
                delivered += 1
            except Exception:
                logger.warning(
                    "Listener failed for workflow %s (seq %d)",
                    workflow_id,
                    event.sequence_number,
                    exc_info=True,
                )
        return delivered

    def subscriber_count(self, workflow_id: str) -> int:
        with self._lock:
            channel = self._channels.get(workflow_id)
            return len(channel.subscriptions) if channel else 0

    def last_sequence(self, workflow_id: str) -> int:
        """Highest sequence number published for the workflow, 0 if none."""
        with self._lock:
            channel = self._channels.get(workflow_id)
            return channel.last_sequence if channel else 0

    def buffered(self, workflow_id: str, after: int = 0) -> list[WorkflowEvent]:
        """Buffered events with sequence_number > after, oldest first."""
        with self._lock:
            channel = self._channels.get(workflow_id)
            if channel is None:
                return []
            return [e for e in channel.buffer if e.sequence_number > after]

    def evict(self, workflow_id: str) -> bool:
        """Release a workflow's buffer once nobody is listening.

        Returns False, and keeps the channel, if listeners are still registered.
        """
        with self._lock:
            channel = self._channels.get(workflow_id)
            if channel is None:
                return False
            if channel.subscriptions:
                return False
            del self._channels[workflow_id]
        logger.debug("Evicted workflow %s", workflow_id)
        return True

    def close_workflow(self, workflow_id: str) -> None:
        """Tell every listener the workflow is finished and drop its channel."""
        with self._lock:
            channel = self._channels.pop(workflow_id, None)
        if channel is None:
            return
        self._notify_closed(workflow_id, channel.subscriptions)

    def active_workflows(self) -> list[str]:
        with self._lock:
            return list(self._channels)

    def shutdown(self) -> None:
        """Close every channel and refuse new subscriptions."""
        with self._lock:
            self._shut_down = True
            channels = self._channels
            self._channels = {}
        for workflow_id, channel in channels.items():
            self._notify_closed(workflow_id, channel.subscriptions)
        logger.info("SubscriptionManager shut down (%d workflows closed)", len(channels))

    def _notify_closed(self, workflow_id: str, subscriptions: list[_Subscription]) -> None:
        for subscription in subscriptions:
            if subscription.on_close is None:
                continue
            try:
                subscription.on_close()
            except Exception:
                logger.warning("Close callback failed for workflow %s", workflow_id, exc_info=True)
