"""SSE wire framing for workflow events, both directions."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

from workflow_feed.models.events import WorkflowEvent

HEARTBEAT_FRAME = ": heartbeat\n\n"
CLOSE_EVENT = "close"


def format_event_frame(event: WorkflowEvent) -> str:
    """Serialize to SSE wire format.

    Format:
        id: <sequenceNumber>
        event: <eventType>
        data: <json>

        (terminated by double newline)
    """
    data_json = json.dumps(event.to_dict(), default=str)
    return f"id: {event.sequence_number}\nevent: {event.event_type.value}\ndata: {data_json}\n\n"


def format_close_frame(workflow_id: str, reason: str) -> str:
    data_json = json.dumps({"workflowId": workflow_id, "reason": reason})
    return f"event: {CLOSE_EVENT}\ndata: {data_json}\n\n"


@dataclass
class SSEMessage:
    event: str = "message"
    data: str = ""
    id: Optional[str] = None

    def json(self) -> Any:
        return json.loads(self.data)


class SSEParser:
    """Incremental parser for a text/event-stream body, fed one line at a time.

    Comment lines (``: ...``) are consumed silently; a blank line dispatches
    the accumulated fields as one message.
    """

    def __init__(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self._event: Optional[str] = None
        self._data: list[str] = []
        self._id: Optional[str] = None

    def feed_line(self, line: str) -> Optional[SSEMessage]:
        line = line.rstrip("\r\n")
        if line == "":
            if not self._data and self._event is None:
                self._reset()
                return None
            message = SSEMessage(
                event=self._event or "message",
                data="\n".join(self._data),
                id=self._id,
            )
            self._reset()
            return message

        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._id = value
        # "retry" and unknown fields are ignored
        return None
