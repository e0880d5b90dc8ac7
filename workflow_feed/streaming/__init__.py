"""Server-side fan-out and SSE streaming for workflow progress."""

from .events import HEARTBEAT_FRAME, SSEMessage, SSEParser, format_event_frame
from .manager import SubscriptionManager
from .watcher import LogWatcher

__all__ = [
    "HEARTBEAT_FRAME",
    "LogWatcher",
    "SSEMessage",
    "SSEParser",
    "SubscriptionManager",
    "format_event_frame",
]
