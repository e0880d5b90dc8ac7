from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from workflow_feed.models.events import RawLogEntry, WorkflowStatusRecord


class EventLogProvider(ABC):
    """Read-only view of the durable execution engine's event log."""

    @abstractmethod
    async def get_status(self, workflow_id: str) -> Optional[WorkflowStatusRecord]:
        """Return the workflow's status record, or None if the workflow is unknown."""
        ...

    @abstractmethod
    async def get_events(self, workflow_id: str) -> list[RawLogEntry]:
        """Return every log row for the workflow in insertion order."""
        ...
