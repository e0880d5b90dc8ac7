"""WorkflowConnection: SSE first, polling fallback, at-most-once event feed.

State transitions:
- connecting -> sse          (stream response confirmed within connect_timeout)
- connecting -> polling      (timeout, transport error, or non-200 response)
- sse -> polling             (transport error, stream end, close frame, or silence)
- polling -> disconnected    (hasMore=false, or retries exhausted)
- any -> disconnected        (workflow not found, or close())

Every event from either transport goes through ``_accept``: it is forwarded
only if its sequence number is above ``last_sequence``, so a transport switch
never delivers the same event twice.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

import httpx

from workflow_feed.config.settings import ConnectionSettings
from workflow_feed.errors import ConnectionExhaustedError, WorkflowNotFoundError
from workflow_feed.models.enums import ConnectionMode, WorkflowEventType
from workflow_feed.models.events import WorkflowEvent
from workflow_feed.streaming.events import CLOSE_EVENT, SSEMessage, SSEParser

logger = logging.getLogger(__name__)

_EVENT_TYPES = {t.value for t in WorkflowEventType}


class WorkflowConnection:
    """Client-side connection to one workflow's event feed."""

    def __init__(
        self,
        workflow_id: str,
        settings: Optional[ConnectionSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
        on_event: Optional[Callable[[WorkflowEvent], None]] = None,
        on_mode_change: Optional[Callable[[ConnectionMode], None]] = None,
    ) -> None:
        self.workflow_id = workflow_id
        self._settings = settings or ConnectionSettings()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self._settings.base_url,
            timeout=httpx.Timeout(10.0, read=None),
        )
        self._on_event = on_event
        self._on_mode_change = on_mode_change

        self.events: list[WorkflowEvent] = []
        self.mode = ConnectionMode.CONNECTING
        self.last_sequence = 0
        self.reconnect_attempt = 0
        self.error: Optional[Exception] = None

        self._closed = False
        self._sse_task: Optional[asyncio.Task[None]] = None
        self._poll_task: Optional[asyncio.Task[None]] = None
        self._connect_timer: Optional[asyncio.TimerHandle] = None
        self._silence_timer: Optional[asyncio.TimerHandle] = None
        self._cancelled: list[asyncio.Task[None]] = []
        self._disconnected = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self.mode in (ConnectionMode.SSE, ConnectionMode.POLLING)

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Begin delivery: streaming if enabled, polling otherwise."""
        if self._settings.sse_enabled:
            self.start_sse()
        else:
            self.start_polling()

    def start_sse(self) -> None:
        """Open a streaming attempt. Also usable to upgrade back from polling."""
        if self._closed:
            return
        self._stop_transports()
        self._set_mode(ConnectionMode.CONNECTING)
        loop = asyncio.get_running_loop()
        self._connect_timer = loop.call_later(self._settings.connect_timeout, self._on_connect_timeout)
        self._sse_task = loop.create_task(self._run_sse(), name=f"sse:{self.workflow_id}")

    def start_polling(self) -> None:
        if self._closed:
            return
        self._stop_transports()
        self._set_mode(ConnectionMode.POLLING)
        self.reconnect_attempt = 0
        self._poll_task = asyncio.get_running_loop().create_task(
            self._poll_loop(), name=f"poll:{self.workflow_id}"
        )

    def close(self) -> None:
        """Tear everything down. No callbacks fire after this returns."""
        if self._closed:
            return
        self._closed = True
        self._stop_transports()
        self.mode = ConnectionMode.DISCONNECTED
        self._disconnected.set()
        logger.info("Connection to workflow %s closed", self.workflow_id)

    async def aclose(self) -> None:
        self.close()
        pending, self._cancelled = self._cancelled, []
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()

    async def wait_closed(self) -> None:
        """Wait until the connection reaches ``disconnected``."""
        await self._disconnected.wait()

    async def __aenter__(self) -> WorkflowConnection:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _run_sse(self) -> None:
        url = f"/api/workflows/{self.workflow_id}/subscribe"
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        if self.last_sequence:
            headers["Last-Event-ID"] = str(self.last_sequence)

        try:
            async with self._client.stream("GET", url, headers=headers) as response:
                if response.status_code == 404:
                    self._fail(WorkflowNotFoundError(self.workflow_id))
                    return
                if response.status_code != 200:
                    self._switch_to_polling(f"stream returned HTTP {response.status_code}")
                    return

                self._on_sse_open()
                parser = SSEParser()
                async for line in response.aiter_lines():
                    # Any line counts as liveness, heartbeat comments included.
                    self._arm_silence_timer()
                    message = parser.feed_line(line)
                    if message is not None:
                        self._handle_sse_message(message)
                    if self._closed or self.mode is not ConnectionMode.SSE:
                        return

            self._switch_to_polling("stream ended")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[SSE] Connection error for workflow {self.workflow_id}: {e!r}")
            self._switch_to_polling("stream error")

    def _on_sse_open(self) -> None:
        self._cancel_timer("_connect_timer")
        self.reconnect_attempt = 0
        self._set_mode(ConnectionMode.SSE)
        self._arm_silence_timer()

    def _handle_sse_message(self, message: SSEMessage) -> None:
        if message.event == CLOSE_EVENT:
            # Let polling confirm the final status and pick up any stragglers.
            self._switch_to_polling("server closed stream")
            return
        if message.event not in _EVENT_TYPES and message.event != "message":
            logger.debug("Ignoring SSE event %r", message.event)
            return
        try:
            event = WorkflowEvent.from_dict(message.json())
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"[SSE] Failed to parse event: {e}")
            return
        self._accept(event)

    def _on_connect_timeout(self) -> None:
        self._connect_timer = None
        if self.mode is ConnectionMode.CONNECTING:
            logger.info(
                "[SSE] No confirmation after %.1fs, switching to polling",
                self._settings.connect_timeout,
            )
            self._switch_to_polling("connect timeout")

    def _arm_silence_timer(self) -> None:
        self._cancel_timer("_silence_timer")
        self._silence_timer = asyncio.get_running_loop().call_later(
            self._settings.silence_timeout, self._on_silence_timeout
        )

    def _on_silence_timeout(self) -> None:
        self._silence_timer = None
        if self.mode is ConnectionMode.SSE:
            logger.info(
                "[SSE] Nothing received for %.1fs, switching to polling",
                self._settings.silence_timeout,
            )
            self._switch_to_polling("silence timeout")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._closed:
            started = loop.time()
            delay = await self._poll_once()
            if delay is None:
                return
            # Delays run from the start of each poll, so request time is not added on top.
            await asyncio.sleep(max(0.0, delay - (loop.time() - started)))

    async def _poll_once(self) -> Optional[float]:
        """Run one poll. Returns the delay before the next one, or None to stop."""
        url = f"/api/workflows/{self.workflow_id}/events/fallback"
        try:
            response = await self._client.get(
                url,
                params={"lastSequence": self.last_sequence},
                timeout=httpx.Timeout(self._settings.poll_timeout),
            )
        except httpx.HTTPError as e:
            return self._on_poll_failure(f"request failed: {e!r}")

        if response.status_code == 404:
            self._fail(WorkflowNotFoundError(self.workflow_id))
            return None
        if response.status_code != 200:
            return self._on_poll_failure(f"HTTP {response.status_code}")

        try:
            data = response.json()
            events = [WorkflowEvent.from_dict(item) for item in data.get("events", [])]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            return self._on_poll_failure(f"malformed response: {e}")

        self.reconnect_attempt = 0
        for event in events:
            self._accept(event)
        if self._closed:
            return None

        if data.get("hasMore") is False:
            logger.info("[Polling] Workflow %s complete, stopping polling", self.workflow_id)
            self._stop_transports()
            self._set_mode(ConnectionMode.DISCONNECTED)
            return None
        return self._settings.poll_interval

    def _on_poll_failure(self, reason: str) -> Optional[float]:
        self.reconnect_attempt += 1
        max_attempts = self._settings.max_reconnect_attempts
        if self.reconnect_attempt >= max_attempts:
            logger.error(
                "[Polling] %s; max reconnect attempts exceeded for workflow %s, disconnecting",
                reason,
                self.workflow_id,
            )
            self._fail(ConnectionExhaustedError(self.workflow_id, self.reconnect_attempt))
            return None

        delays = self._settings.backoff_delays
        delay = delays[min(self.reconnect_attempt - 1, len(delays) - 1)]
        logger.warning(
            f"[Polling] {reason}; retrying in {delay}s "
            f"(attempt {self.reconnect_attempt}/{max_attempts})"
        )
        return delay

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    def _accept(self, event: WorkflowEvent) -> bool:
        """Forward an event once, in order. Returns True if it was forwarded."""
        if self._closed or event.sequence_number <= self.last_sequence:
            return False
        self.last_sequence = event.sequence_number
        self.events.append(event)
        if self._on_event is not None:
            try:
                self._on_event(event)
            except Exception:
                logger.exception("on_event callback failed for seq %d", event.sequence_number)
        return True

    def _switch_to_polling(self, reason: str) -> None:
        if self._closed or self.mode in (ConnectionMode.POLLING, ConnectionMode.DISCONNECTED):
            return
        logger.info(f"[Connection] Falling back to polling for {self.workflow_id}: {reason}")
        self.start_polling()

    def _fail(self, error: Exception) -> None:
        self.error = error
        logger.error(f"[Connection] {error}")
        self._stop_transports()
        self._set_mode(ConnectionMode.DISCONNECTED)

    def _set_mode(self, mode: ConnectionMode) -> None:
        if self.mode is mode:
            return
        logger.info(f"[Connection] Mode change: {self.mode.value} -> {mode.value}")
        self.mode = mode
        if mode is ConnectionMode.DISCONNECTED:
            self._disconnected.set()
        if self._on_mode_change is not None and not self._closed:
            try:
                self._on_mode_change(mode)
            except Exception:
                logger.exception("on_mode_change callback failed")

    def _cancel_timer(self, attr: str) -> None:
        timer = getattr(self, attr)
        if timer is not None:
            timer.cancel()
            setattr(self, attr, None)

    def _stop_transports(self) -> None:
        self._cancel_timer("_connect_timer")
        self._cancel_timer("_silence_timer")
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        self._cancelled = [t for t in self._cancelled if not t.done()]
        for attr in ("_sse_task", "_poll_task"):
            task = getattr(self, attr)
            setattr(self, attr, None)
            if task is not None and task is not current and not task.done():
                task.cancel()
                self._cancelled.append(task)
