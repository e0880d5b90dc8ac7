"""FastAPI application: SSE streaming, polling fallback and step views."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from workflow_feed.config.settings import Settings
from workflow_feed.engine.transformer import group_steps, summarize_steps, transform_log
from workflow_feed.errors import EventLogUnavailableError, WorkflowNotFoundError
from workflow_feed.models.events import WorkflowStatusRecord
from workflow_feed.providers import EventLogProvider, InMemoryEventLog
from workflow_feed.providers.simulator import DEFAULT_STEPS, run_simulated_workflow
from workflow_feed.streaming import LogWatcher, SubscriptionManager
from workflow_feed.streaming.endpoint import SSE_HEADERS, workflow_event_stream
from workflow_feed.streaming.fallback import PollResponse, poll_events

logger = logging.getLogger(__name__)


class StartWorkflowRequest(BaseModel):
    name: Optional[str] = None
    steps: list[str] = list(DEFAULT_STEPS)
    step_delay: float = 1.0
    fail_at: Optional[str] = None


class StartWorkflowResponse(BaseModel):
    workflowId: str
    status: str


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_event_log(request: Request) -> EventLogProvider:
    return request.app.state.event_log


def get_subscription_manager(request: Request) -> SubscriptionManager:
    return request.app.state.subscription_manager


def get_log_watcher(request: Request) -> LogWatcher:
    return request.app.state.log_watcher


async def _require_status(event_log: EventLogProvider, workflow_id: str) -> WorkflowStatusRecord:
    try:
        status = await event_log.get_status(workflow_id)
    except Exception as e:
        raise EventLogUnavailableError(str(e)) from e
    if status is None:
        raise WorkflowNotFoundError(workflow_id)
    return status


def _parse_last_event_id(request: Request) -> Optional[int]:
    raw = request.headers.get("Last-Event-ID")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def create_app(
    settings: Optional[Settings] = None,
    event_log: Optional[EventLogProvider] = None,
) -> FastAPI:
    """Build the application with explicitly constructed services."""
    settings = settings or Settings()
    event_log = event_log or InMemoryEventLog()
    manager = SubscriptionManager(buffer_size=settings.buffer_size)
    watcher = LogWatcher(event_log, manager, interval=settings.watch_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("workflow-feed starting")
        yield
        await watcher.shutdown()
        manager.shutdown()
        logger.info("workflow-feed stopped")

    app = FastAPI(title="Workflow Feed API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.event_log = event_log
    app.state.subscription_manager = manager
    app.state.log_watcher = watcher

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WorkflowNotFoundError)
    async def workflow_not_found(request: Request, exc: WorkflowNotFoundError):
        return JSONResponse(
            status_code=404,
            content={"error": "Workflow not found", "workflowId": exc.workflow_id},
        )

    @app.exception_handler(EventLogUnavailableError)
    async def event_log_unavailable(request: Request, exc: EventLogUnavailableError):
        logger.error(f"Event log unavailable on {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"error": "Failed to fetch workflow events"})

    @app.post("/api/workflows", response_model=StartWorkflowResponse)
    async def start_workflow(
        body: StartWorkflowRequest,
        background_tasks: BackgroundTasks,
        event_log: EventLogProvider = Depends(get_event_log),
    ):
        """Start a simulated workflow against the in-memory event log."""
        if not isinstance(event_log, InMemoryEventLog):
            raise HTTPException(status_code=501, detail="Workflow simulation needs the in-memory event log")
        workflow_id = str(uuid4())
        record = event_log.create_workflow(workflow_id, name=body.name)
        background_tasks.add_task(
            run_simulated_workflow,
            event_log,
            workflow_id,
            body.steps,
            body.step_delay,
            body.fail_at,
        )
        return StartWorkflowResponse(workflowId=workflow_id, status=record.status)

    @app.get("/api/workflows/{workflow_id}/subscribe")
    async def subscribe_workflow(
        workflow_id: str,
        request: Request,
        event_log: EventLogProvider = Depends(get_event_log),
        manager: SubscriptionManager = Depends(get_subscription_manager),
        watcher: LogWatcher = Depends(get_log_watcher),
        settings: Settings = Depends(get_settings),
    ):
        """SSE endpoint: streams step events for one workflow."""
        await _require_status(event_log, workflow_id)
        generator = workflow_event_stream(
            manager,
            watcher,
            workflow_id,
            heartbeat_interval=settings.heartbeat_interval,
            last_event_id=_parse_last_event_id(request),
        )
        return StreamingResponse(generator, media_type="text/event-stream", headers=SSE_HEADERS)

    @app.get("/api/workflows/{workflow_id}/events/fallback", response_model=PollResponse)
    async def poll_workflow_events(
        workflow_id: str,
        last_sequence: int = Query(0, alias="lastSequence", ge=0),
        event_log: EventLogProvider = Depends(get_event_log),
    ):
        """Polling fallback: events newer than lastSequence."""
        try:
            return await poll_events(event_log, workflow_id, last_sequence)
        except EventLogUnavailableError as e:
            logger.error(f"Polling fallback failed for workflow {workflow_id}: {e}")
            return JSONResponse(
                status_code=503,
                content={
                    "error": "Failed to fetch workflow events",
                    "events": [],
                    "lastSequence": last_sequence,
                    "hasMore": False,
                    "timestamp": datetime.now(tz=timezone.utc).isoformat(),
                },
            )

    @app.get("/api/workflows/{workflow_id}/events")
    async def get_workflow_events(
        workflow_id: str,
        event_log: EventLogProvider = Depends(get_event_log),
    ):
        """All events for a workflow, grouped by step."""
        status = await _require_status(event_log, workflow_id)
        try:
            events = transform_log(await event_log.get_events(workflow_id))
        except Exception as e:
            raise EventLogUnavailableError(str(e)) from e
        steps = group_steps(events)
        return {
            "workflowId": workflow_id,
            "status": status.status,
            "steps": [record.to_dict() for record in steps.values()],
            "rawEvents": [event.to_dict() for event in events],
            "updatedAt": status.updated_at.isoformat(),
        }

    @app.get("/api/workflows/{workflow_id}/steps")
    async def get_workflow_steps(
        workflow_id: str,
        event_log: EventLogProvider = Depends(get_event_log),
    ):
        """One summary row per observed step."""
        await _require_status(event_log, workflow_id)
        try:
            events = transform_log(await event_log.get_events(workflow_id))
        except Exception as e:
            raise EventLogUnavailableError(str(e)) from e
        summaries = summarize_steps(workflow_id, group_steps(events))
        return {"success": True, "data": [summary.to_dict() for summary in summaries]}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok"}

    return app


_settings = Settings()
logging.basicConfig(level=_settings.log_level)

app = create_app(_settings)
