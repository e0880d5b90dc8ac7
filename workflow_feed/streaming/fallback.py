"""Stateless polling fallback: recompute the event sequence on every request."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from workflow_feed.engine.transformer import transform_log
from workflow_feed.errors import EventLogUnavailableError, WorkflowNotFoundError
from workflow_feed.models.enums import is_terminal
from workflow_feed.providers.base import EventLogProvider

logger = logging.getLogger(__name__)


class PollResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    events: list[dict[str, Any]]
    last_sequence: int = Field(alias="lastSequence")
    has_more: bool = Field(alias="hasMore")
    timestamp: str


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


async def poll_events(
    event_log: EventLogProvider,
    workflow_id: str,
    last_sequence: int = 0,
) -> PollResponse:
    """Return events with sequence_number > last_sequence.

    ``has_more`` is true while the workflow is running, and also on any call
    that returned events, so a workflow that turned terminal with late log
    rows is polled once more before the client stops.

    Raises:
        WorkflowNotFoundError: the workflow is unknown.
        EventLogUnavailableError: the log could not be read.
    """
    try:
        status = await event_log.get_status(workflow_id)
    except Exception as e:
        logger.warning(f"Status lookup failed for workflow {workflow_id}: {e}")
        raise EventLogUnavailableError(str(e)) from e
    if status is None:
        raise WorkflowNotFoundError(workflow_id)

    try:
        entries = await event_log.get_events(workflow_id)
    except Exception as e:
        logger.warning(f"Event log read failed for workflow {workflow_id}: {e}")
        raise EventLogUnavailableError(str(e)) from e

    events = [e for e in transform_log(entries) if e.sequence_number > last_sequence]
    new_last = events[-1].sequence_number if events else last_sequence
    has_more = not is_terminal(status.status) or bool(events)

    logger.debug(
        f"Poll workflow={workflow_id} since={last_sequence} -> "
        f"{len(events)} events, has_more={has_more}"
    )
    return PollResponse(
        events=[e.to_dict() for e in events],
        last_sequence=new_last,
        has_more=has_more,
        timestamp=_utc_now(),
    )
