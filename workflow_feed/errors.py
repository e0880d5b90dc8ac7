"""Domain errors shared by the server endpoints and the client connection."""

from __future__ import annotations


class WorkflowFeedError(Exception):
    """Base class for all workflow-feed errors."""


class WorkflowNotFoundError(WorkflowFeedError):
    """The workflow identifier is unknown to the event log."""

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class EventLogUnavailableError(WorkflowFeedError):
    """The event log could not be read. Callers may retry."""


class ConnectionExhaustedError(WorkflowFeedError):
    """The client gave up after too many consecutive polling failures."""

    def __init__(self, workflow_id: str, attempts: int):
        super().__init__(
            f"Gave up on workflow {workflow_id} after {attempts} failed polls"
        )
        self.workflow_id = workflow_id
        self.attempts = attempts
