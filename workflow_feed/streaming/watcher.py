"""LogWatcher: one shared log watch per workflow, feeding the SubscriptionManager."""

from __future__ import annotations

import asyncio
import logging

from workflow_feed.engine.transformer import transform_log
from workflow_feed.models.enums import is_terminal
from workflow_feed.providers.base import EventLogProvider

from .manager import SubscriptionManager

logger = logging.getLogger(__name__)


class LogWatcher:
    """Re-reads the event log of every watched workflow and publishes new events.

    However many clients stream the same workflow, there is one watch task
    for it. The task publishes events above the manager's high-water mark,
    closes the workflow once it reaches a terminal status, and exits as soon
    as nobody is subscribed.
    """

    def __init__(
        self,
        event_log: EventLogProvider,
        manager: SubscriptionManager,
        interval: float = 0.5,
    ) -> None:
        self._event_log = event_log
        self._manager = manager
        self._interval = interval
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def watch(self, workflow_id: str) -> asyncio.Task[None]:
        """Start watching a workflow unless a watch is already running."""
        task = self._tasks.get(workflow_id)
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(
                self._watch(workflow_id), name=f"watch:{workflow_id}"
            )
            self._tasks[workflow_id] = task
            logger.debug("Started watch for workflow %s", workflow_id)
        return task

    def is_watching(self, workflow_id: str) -> bool:
        task = self._tasks.get(workflow_id)
        return task is not None and not task.done()

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _watch(self, workflow_id: str) -> None:
        try:
            while True:
                # Check and exit without awaiting in between, so a concurrent
                # watch() either sees this task finished or still running.
                if self._manager.subscriber_count(workflow_id) == 0:
                    return

                try:
                    status = await self._event_log.get_status(workflow_id)
                    entries = await self._event_log.get_events(workflow_id)
                except Exception as e:
                    logger.warning(f"Log read failed for workflow {workflow_id}: {e}")
                    await asyncio.sleep(self._interval)
                    continue

                last = self._manager.last_sequence(workflow_id)
                for event in transform_log(entries):
                    if event.sequence_number > last:
                        self._manager.publish(workflow_id, event)

                if status is None or is_terminal(status.status):
                    reason = status.status if status else "not_found"
                    logger.info(f"Workflow {workflow_id} finished ({reason}), closing streams")
                    self._manager.close_workflow(workflow_id)
                    return

                await asyncio.sleep(self._interval)
        finally:
            if self._tasks.get(workflow_id) is asyncio.current_task():
                del self._tasks[workflow_id]
