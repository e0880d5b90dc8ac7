"""Workflow event data model and its JSON wire representation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .enums import WorkflowEventType


@dataclass(frozen=True)
class RawLogEntry:
    """One row of the execution engine's append-only event log."""

    workflow_id: str
    key: str
    value: Any
    created_at: datetime


@dataclass(frozen=True)
class WorkflowStatusRecord:
    workflow_id: str
    status: str
    updated_at: datetime
    name: Optional[str] = None
    error: Optional[str] = None


# snake_case attribute -> camelCase wire key
_COST_FIELDS = {
    "input_cost": "inputCost",
    "output_cost": "outputCost",
    "cached_cost": "cachedCost",
    "thinking_cost": "thinkingCost",
    "reasoning_cost": "reasoningCost",
}


@dataclass
class CostBreakdown:
    input_cost: Optional[float] = None
    output_cost: Optional[float] = None
    cached_cost: Optional[float] = None
    thinking_cost: Optional[float] = None
    reasoning_cost: Optional[float] = None

    def to_dict(self) -> dict[str, float]:
        return {
            wire: getattr(self, attr)
            for attr, wire in _COST_FIELDS.items()
            if getattr(self, attr) is not None
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CostBreakdown:
        return cls(**{attr: data.get(wire) for attr, wire in _COST_FIELDS.items()})


@dataclass
class EventPayload:
    """Step data carried by an event. Which fields are set depends on the type."""

    input: Any = None
    output: Any = None
    tokens_used: Optional[int] = None
    cost_usd: Optional[float] = None
    cost_breakdown: Optional[CostBreakdown] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.input is not None:
            data["input"] = self.input
        if self.output is not None:
            data["output"] = self.output
        if self.tokens_used is not None:
            data["tokensUsed"] = self.tokens_used
        if self.cost_usd is not None:
            data["costUsd"] = self.cost_usd
        if self.cost_breakdown is not None:
            data["costBreakdown"] = self.cost_breakdown.to_dict()
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventPayload:
        breakdown = data.get("costBreakdown")
        return cls(
            input=data.get("input"),
            output=data.get("output"),
            tokens_used=data.get("tokensUsed"),
            cost_usd=data.get("costUsd"),
            cost_breakdown=CostBreakdown.from_dict(breakdown) if isinstance(breakdown, dict) else None,
            error=data.get("error"),
        )


@dataclass
class WorkflowEvent:
    """The unit delivered to consumers, ordered by sequence_number."""

    sequence_number: int
    workflow_id: str
    step_name: str
    event_type: WorkflowEventType
    timestamp: str
    payload: EventPayload = field(default_factory=EventPayload)
    duration_ms: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sequenceNumber": self.sequence_number,
            "workflowId": self.workflow_id,
            "stepName": self.step_name,
            "eventType": self.event_type.value,
            "timestamp": self.timestamp,
        }
        if self.duration_ms is not None:
            data["durationMs"] = self.duration_ms
        data["payload"] = self.payload.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowEvent:
        """Parse the wire form. Raises KeyError/ValueError on malformed input."""
        return cls(
            sequence_number=int(data["sequenceNumber"]),
            workflow_id=data["workflowId"],
            step_name=data["stepName"],
            event_type=WorkflowEventType(data["eventType"]),
            timestamp=data["timestamp"],
            payload=EventPayload.from_dict(data.get("payload") or {}),
            duration_ms=data.get("durationMs"),
        )


@dataclass
class StepRecord:
    """All observed markers for one step.

    A step appears only once at least one marker has been seen; absence means
    not yet started. At most one of completed/failed is set.
    """

    step_name: str
    started: Optional[dict[str, Any]] = None
    completed: Optional[dict[str, Any]] = None
    failed: Optional[dict[str, Any]] = None

    @property
    def status(self) -> str:
        if self.failed is not None:
            return "ERROR"
        if self.completed is not None:
            return "SUCCESS"
        return "RUNNING"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"stepName": self.step_name}
        for marker in ("started", "completed", "failed"):
            value = getattr(self, marker)
            if value is not None:
                data[marker] = value
        return data


@dataclass
class StepSummary:
    function_id: str
    name: str
    status: str
    output: Any = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "functionId": self.function_id,
            "name": self.name,
            "status": self.status,
            "output": self.output,
            "error": self.error,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "duration": self.duration_ms,
        }
