"""Turn raw event-log rows into ordered, sequence-numbered workflow events.

The log is keyed by convention: ``step:{stepName}:{started|completed|failed}``
for step markers and ``workflow:{status}`` for workflow-level markers.
``parse_event_key`` is the only place that knows this convention.

Sequence numbers are assigned over *matched* entries only, 1-based, in log
insertion order. Ignored keys therefore never leave gaps, and re-running the
transform over the same log prefix always yields the same numbering. The
polling endpoint and the streaming watcher both rely on that to agree on
which event is which.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, Optional

from workflow_feed.models.enums import WorkflowEventType
from workflow_feed.models.events import (
    CostBreakdown,
    EventPayload,
    RawLogEntry,
    StepRecord,
    StepSummary,
    WorkflowEvent,
)

STEP_KEY_PATTERN = re.compile(r"^step:([^:]+):(started|completed|failed)$")

_STATUS_TO_TYPE = {
    "started": WorkflowEventType.STEP_STARTED,
    "completed": WorkflowEventType.STEP_COMPLETED,
    "failed": WorkflowEventType.STEP_FAILED,
}


def parse_event_key(key: str) -> Optional[tuple[str, WorkflowEventType]]:
    """Split a step key into (step_name, event_type).

    Returns None for anything that is not a recognised step marker, including
    ``workflow:*`` keys and step statuses this version does not know.
    """
    match = STEP_KEY_PATTERN.match(key)
    if match is None:
        return None
    step_name, status = match.groups()
    return step_name, _STATUS_TO_TYPE[status]


def _as_mapping(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, (str, bytes)):
        try:
            decoded = json.loads(value)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def _build_payload(value: dict[str, Any]) -> EventPayload:
    breakdown = value.get("costBreakdown")
    return EventPayload(
        input=value.get("input"),
        output=value.get("output"),
        tokens_used=value.get("tokensUsed"),
        cost_usd=value.get("costUsd"),
        cost_breakdown=CostBreakdown.from_dict(breakdown) if isinstance(breakdown, dict) else None,
        error=value.get("error"),
    )


def transform_log(entries: Iterable[RawLogEntry]) -> list[WorkflowEvent]:
    """Map log rows, in storage order, to workflow events."""
    events: list[WorkflowEvent] = []
    for entry in entries:
        parsed = parse_event_key(entry.key)
        if parsed is None:
            continue
        step_name, event_type = parsed
        value = _as_mapping(entry.value)
        duration = value.get("durationMs")
        events.append(
            WorkflowEvent(
                sequence_number=len(events) + 1,
                workflow_id=entry.workflow_id,
                step_name=step_name,
                event_type=event_type,
                timestamp=entry.created_at.isoformat(),
                payload=_build_payload(value),
                duration_ms=int(duration) if isinstance(duration, (int, float)) else None,
            )
        )
    return events


def group_steps(events: Iterable[WorkflowEvent]) -> dict[str, StepRecord]:
    """Group events by step name, in order of first appearance."""
    steps: dict[str, StepRecord] = {}
    for event in events:
        if event.event_type == WorkflowEventType.WORKFLOW_ERROR:
            continue
        record = steps.setdefault(event.step_name, StepRecord(step_name=event.step_name))
        payload = event.payload

        if event.event_type == WorkflowEventType.STEP_STARTED:
            record.started = {"timestamp": event.timestamp, "input": payload.input}
        elif event.event_type == WorkflowEventType.STEP_COMPLETED:
            record.completed = {
                "timestamp": event.timestamp,
                "output": payload.output,
                "cost": {
                    "tokensUsed": payload.tokens_used,
                    "costUsd": payload.cost_usd,
                    "costBreakdown": payload.cost_breakdown.to_dict() if payload.cost_breakdown else None,
                },
                "durationMs": event.duration_ms,
            }
            # A retried step may fail first and complete later; keep the latest outcome.
            record.failed = None
        elif event.event_type == WorkflowEventType.STEP_FAILED:
            record.failed = {
                "timestamp": event.timestamp,
                "error": payload.error,
                "durationMs": event.duration_ms,
            }
            record.completed = None
    return steps


def summarize_steps(workflow_id: str, records: dict[str, StepRecord]) -> list[StepSummary]:
    """Flatten grouped records into one summary row per step."""
    summaries = []
    for index, record in enumerate(records.values()):
        finished = record.completed or record.failed or {}
        summaries.append(
            StepSummary(
                function_id=f"{workflow_id}-{index}",
                name=record.step_name,
                status=record.status,
                output=(record.completed or {}).get("output"),
                error=(record.failed or {}).get("error"),
                started_at=(record.started or {}).get("timestamp"),
                completed_at=finished.get("timestamp"),
                duration_ms=finished.get("durationMs"),
            )
        )
    return summaries
