"""Demo workflow runner that writes step markers into an in-memory log.

This is not an execution engine. It produces log rows in the shape the real
engine writes so the streaming and polling paths can be exercised end to end.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional, Sequence

from workflow_feed.models.enums import WorkflowStatus

from .memory_provider import InMemoryEventLog

logger = logging.getLogger(__name__)

DEFAULT_STEPS = ("intake", "plan", "implement", "review")


async def run_simulated_workflow(
    event_log: InMemoryEventLog,
    workflow_id: str,
    steps: Sequence[str] = DEFAULT_STEPS,
    step_delay: float = 1.0,
    fail_at: Optional[str] = None,
) -> str:
    """Run each step in turn and return the final workflow status."""
    for index, step in enumerate(steps):
        started = time.monotonic()
        event_log.append_event(workflow_id, f"step:{step}:started", {"input": {"index": index}})
        await asyncio.sleep(step_delay)
        duration_ms = int((time.monotonic() - started) * 1000)

        if step == fail_at:
            event_log.append_event(
                workflow_id,
                f"step:{step}:failed",
                {"error": f"Step {step} failed", "durationMs": duration_ms},
            )
            event_log.append_event(workflow_id, "workflow:error", {"error": f"Step {step} failed"})
            event_log.set_status(workflow_id, WorkflowStatus.ERROR, error=f"Step {step} failed")
            logger.info(f"Simulated workflow {workflow_id} failed at {step}")
            return WorkflowStatus.ERROR.value

        tokens = 100 * (index + 1)
        event_log.append_event(
            workflow_id,
            f"step:{step}:completed",
            {
                "output": f"{step} done",
                "durationMs": duration_ms,
                "tokensUsed": tokens,
                "costUsd": round(tokens * 0.00001, 6),
                "costBreakdown": {"inputCost": round(tokens * 0.000004, 6), "outputCost": round(tokens * 0.000006, 6)},
            },
        )

    event_log.append_event(workflow_id, "workflow:success", {})
    event_log.set_status(workflow_id, WorkflowStatus.SUCCESS)
    logger.info(f"Simulated workflow {workflow_id} completed")
    return WorkflowStatus.SUCCESS.value
