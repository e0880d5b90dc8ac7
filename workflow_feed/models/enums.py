from __future__ import annotations

from enum import Enum


class WorkflowStatus(str, Enum):
    PENDING = "PENDING"
    ENQUEUED = "ENQUEUED"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"
    RETRIES_EXCEEDED = "RETRIES_EXCEEDED"


class WorkflowEventType(str, Enum):
    STEP_STARTED = "step:started"
    STEP_COMPLETED = "step:completed"
    STEP_FAILED = "step:failed"
    WORKFLOW_ERROR = "workflow:error"


class ConnectionMode(str, Enum):
    CONNECTING = "connecting"
    SSE = "sse"
    POLLING = "polling"
    DISCONNECTED = "disconnected"


_ACTIVE_STATUSES = {WorkflowStatus.PENDING.value, WorkflowStatus.ENQUEUED.value}


def is_terminal(status: str | WorkflowStatus) -> bool:
    """True once no further step events are expected.

    Only PENDING and ENQUEUED count as running; any other value, including
    statuses this module does not know about, is treated as terminal.
    """
    value = status.value if isinstance(status, WorkflowStatus) else str(status)
    return value not in _ACTIVE_STATUSES
