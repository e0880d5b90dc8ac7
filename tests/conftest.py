"""Shared test fixtures for the workflow-feed test suite."""

from datetime import datetime, timedelta, timezone

import pytest

from workflow_feed.config.settings import ConnectionSettings, Settings
from workflow_feed.models.enums import WorkflowEventType
from workflow_feed.models.events import EventPayload, RawLogEntry, WorkflowEvent
from workflow_feed.providers.memory_provider import InMemoryEventLog

BASE_TIME = datetime(2026, 1, 29, 12, 0, 0, tzinfo=timezone.utc)


def make_entry(key, value=None, workflow_id="wf-1", offset=0):
    """Helper to create a RawLogEntry with minimal boilerplate."""
    return RawLogEntry(
        workflow_id=workflow_id,
        key=key,
        value=value if value is not None else {},
        created_at=BASE_TIME + timedelta(seconds=offset),
    )


def make_event(seq, step="parse", event_type=WorkflowEventType.STEP_STARTED, workflow_id="wf-1"):
    """Helper to create a WorkflowEvent with a given sequence number."""
    return WorkflowEvent(
        sequence_number=seq,
        workflow_id=workflow_id,
        step_name=step,
        event_type=event_type,
        timestamp=(BASE_TIME + timedelta(seconds=seq)).isoformat(),
        payload=EventPayload(),
    )


@pytest.fixture
def event_log() -> InMemoryEventLog:
    """In-memory log holding one running workflow, wf-1, with no rows yet."""
    log = InMemoryEventLog()
    log.create_workflow("wf-1", name="DocumentToStories")
    return log


@pytest.fixture
def fast_settings() -> Settings:
    return Settings(heartbeat_interval=0.2, watch_interval=0.02, _env_file=None)


@pytest.fixture
def fast_client_settings() -> ConnectionSettings:
    """Client timings scaled down so state-machine tests finish quickly."""
    return ConnectionSettings(
        base_url="http://test",
        connect_timeout=0.1,
        silence_timeout=0.3,
        poll_interval=0.02,
        backoff_delays=[0.005, 0.01, 0.02],
        max_reconnect_attempts=10,
        _env_file=None,
    )
