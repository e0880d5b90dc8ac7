"""In-memory event log, standing in for the execution engine's tables."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from workflow_feed.errors import WorkflowNotFoundError
from workflow_feed.models.enums import WorkflowStatus
from workflow_feed.models.events import RawLogEntry, WorkflowStatusRecord

from .base import EventLogProvider

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class InMemoryEventLog(EventLogProvider):
    """Append-only log plus status table held in process memory.

    Exposes the engine-side write API (create/append/set_status) used by the
    simulator and the tests.
    """

    def __init__(self) -> None:
        self._statuses: dict[str, WorkflowStatusRecord] = {}
        self._entries: dict[str, list[RawLogEntry]] = {}

    def create_workflow(
        self,
        workflow_id: str,
        name: Optional[str] = None,
        status: WorkflowStatus = WorkflowStatus.PENDING,
    ) -> WorkflowStatusRecord:
        record = WorkflowStatusRecord(
            workflow_id=workflow_id,
            status=status.value,
            updated_at=_now(),
            name=name,
        )
        self._statuses[workflow_id] = record
        self._entries.setdefault(workflow_id, [])
        return record

    def append_event(
        self,
        workflow_id: str,
        key: str,
        value: Any,
        created_at: Optional[datetime] = None,
    ) -> RawLogEntry:
        if workflow_id not in self._statuses:
            raise WorkflowNotFoundError(workflow_id)
        entry = RawLogEntry(
            workflow_id=workflow_id,
            key=key,
            value=value,
            created_at=created_at or _now(),
        )
        self._entries[workflow_id].append(entry)
        logger.debug("Appended %s to workflow %s", key, workflow_id)
        return entry

    def set_status(
        self,
        workflow_id: str,
        status: WorkflowStatus | str,
        error: Optional[str] = None,
    ) -> WorkflowStatusRecord:
        current = self._statuses.get(workflow_id)
        if current is None:
            raise WorkflowNotFoundError(workflow_id)
        value = status.value if isinstance(status, WorkflowStatus) else status
        record = WorkflowStatusRecord(
            workflow_id=workflow_id,
            status=value,
            updated_at=_now(),
            name=current.name,
            error=error,
        )
        self._statuses[workflow_id] = record
        return record

    async def get_status(self, workflow_id: str) -> Optional[WorkflowStatusRecord]:
        return self._statuses.get(workflow_id)

    async def get_events(self, workflow_id: str) -> list[RawLogEntry]:
        return list(self._entries.get(workflow_id, []))
