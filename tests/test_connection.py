"""Tests for the client WorkflowConnection state machine -- all HTTP mocked."""

import asyncio
import random

import httpx
import pytest

from workflow_feed.config.settings import ConnectionSettings
from workflow_feed.client.connection import WorkflowConnection
from workflow_feed.errors import ConnectionExhaustedError, WorkflowNotFoundError
from workflow_feed.models.enums import ConnectionMode
from workflow_feed.streaming.events import HEARTBEAT_FRAME, format_close_frame, format_event_frame
from tests.conftest import make_event


def _poll_body(events, has_more=True):
    return {
        "events": [e.to_dict() for e in events],
        "lastSequence": events[-1].sequence_number if events else 0,
        "hasMore": has_more,
        "timestamp": "2026-01-29T12:00:00+00:00",
    }


class FakeServer:
    """Routes subscribe/fallback requests to per-test behaviours."""

    def __init__(self, sse=None, poll=None):
        self.sse = sse
        self.poll = poll
        self.sse_requests = []
        self.poll_requests = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/subscribe"):
            self.sse_requests.append(request)
            if self.sse is None:
                return httpx.Response(500)
            return await self.sse(request)
        if request.url.path.endswith("/events/fallback"):
            self.poll_requests.append(request)
            if self.poll is None:
                return httpx.Response(200, json=_poll_body([]))
            return await self.poll(request)
        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), base_url="http://test")


def _stream(*frames, then_wait=True, interval=None):
    """SSE response whose body yields frames, then stays open (or repeats heartbeats)."""

    async def body():
        for frame in frames:
            yield frame.encode()
        if interval is not None:
            while True:
                await asyncio.sleep(interval)
                yield HEARTBEAT_FRAME.encode()
        if then_wait:
            await asyncio.Event().wait()

    async def respond(request):
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())

    return respond


def _connection(server, settings, **kwargs):
    modes = []
    conn = WorkflowConnection(
        "wf-1",
        settings=settings,
        client=server.client(),
        on_mode_change=modes.append,
        **kwargs,
    )
    return conn, modes


async def _eventually(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestStreaming:
    @pytest.mark.asyncio
    async def test_confirmed_stream_enters_sse_and_delivers(self, fast_client_settings):
        server = FakeServer(sse=_stream(HEARTBEAT_FRAME, format_event_frame(make_event(1)), format_event_frame(make_event(2))))
        conn, modes = _connection(server, fast_client_settings)

        conn.start()
        await _eventually(lambda: len(conn.events) == 2)

        assert conn.mode is ConnectionMode.SSE
        assert conn.is_connected is True
        assert conn.last_sequence == 2
        assert modes == [ConnectionMode.SSE]
        assert server.poll_requests == []
        await conn.aclose()

    @pytest.mark.asyncio
    async def test_connect_timeout_falls_back_to_polling(self, fast_client_settings):
        """No confirmation within connect_timeout: polling, never sse."""

        async def never_confirms(request):
            await asyncio.sleep(30)
            return httpx.Response(200)

        async def poll(request):
            return httpx.Response(200, json=_poll_body([make_event(1)]))

        server = FakeServer(sse=never_confirms, poll=poll)
        conn, modes = _connection(server, fast_client_settings)

        conn.start()
        assert conn.mode is ConnectionMode.CONNECTING
        await asyncio.sleep(fast_client_settings.connect_timeout + 0.05)

        assert conn.mode is ConnectionMode.POLLING
        assert ConnectionMode.SSE not in modes
        await _eventually(lambda: len(conn.events) == 1)
        await conn.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_falls_back_to_polling(self, fast_client_settings):
        async def broken(request):
            raise httpx.ConnectError("connection refused")

        server = FakeServer(sse=broken)
        conn, modes = _connection(server, fast_client_settings)

        conn.start()
        await _eventually(lambda: conn.mode is ConnectionMode.POLLING)
        assert modes == [ConnectionMode.POLLING]
        await conn.aclose()

    @pytest.mark.asyncio
    async def test_non_200_stream_falls_back_to_polling(self, fast_client_settings):
        async def unavailable(request):
            return httpx.Response(503)

        server = FakeServer(sse=unavailable)
        conn, _ = _connection(server, fast_client_settings)

        conn.start()
        await _eventually(lambda: conn.mode is ConnectionMode.POLLING)
        await conn.aclose()

    @pytest.mark.asyncio
    async def test_silence_timeout_falls_back_and_keeps_watermark(self, fast_client_settings):
        """After 60s-equivalent of silence, polling resumes above the sse watermark."""
        server = FakeServer(sse=_stream(HEARTBEAT_FRAME, format_event_frame(make_event(1)), format_event_frame(make_event(2))))

        async def replaying_poll(request):
            # Misbehaving server that ignores lastSequence and resends everything.
            return httpx.Response(200, json=_poll_body([make_event(1), make_event(2), make_event(3)]))

        server.poll = replaying_poll
        conn, modes = _connection(server, fast_client_settings)

        conn.start()
        await _eventually(lambda: conn.mode is ConnectionMode.SSE and conn.last_sequence == 2)
        await _eventually(lambda: conn.mode is ConnectionMode.POLLING, timeout=fast_client_settings.silence_timeout + 1)
        await _eventually(lambda: len(conn.events) == 3)

        assert [e.sequence_number for e in conn.events] == [1, 2, 3]
        assert server.poll_requests[0].url.params["lastSequence"] == "2"
        assert modes[:2] == [ConnectionMode.SSE, ConnectionMode.POLLING]
        await conn.aclose()

    @pytest.mark.asyncio
    async def test_heartbeats_keep_stream_alive(self, fast_client_settings):
        server = FakeServer(sse=_stream(HEARTBEAT_FRAME, interval=fast_client_settings.silence_timeout / 3))
        conn, _ = _connection(server, fast_client_settings)

        conn.start()
        await _eventually(lambda: conn.mode is ConnectionMode.SSE)
        await asyncio.sleep(fast_client_settings.silence_timeout * 2)

        assert conn.mode is ConnectionMode.SSE
        assert server.poll_requests == []
        await conn.aclose()

    @pytest.mark.asyncio
    async def test_close_frame_hands_over_to_polling_then_finishes(self, fast_client_settings):
        server = FakeServer(
            sse=_stream(HEARTBEAT_FRAME, format_event_frame(make_event(1)), format_close_frame("wf-1", "workflow_finished"))
        )

        async def final_poll(request):
            return httpx.Response(200, json=_poll_body([make_event(2)], has_more=False))

        server.poll = final_poll
        conn, modes = _connection(server, fast_client_settings)

        conn.start()
        await asyncio.wait_for(conn.wait_closed(), timeout=2.0)

        assert modes == [ConnectionMode.SSE, ConnectionMode.POLLING, ConnectionMode.DISCONNECTED]
        assert [e.sequence_number for e in conn.events] == [1, 2]
        assert conn.error is None
        await conn.aclose()

    @pytest.mark.asyncio
    async def test_unknown_workflow_on_stream_is_terminal(self, fast_client_settings):
        async def not_found(request):
            return httpx.Response(404, json={"error": "Workflow not found"})

        server = FakeServer(sse=not_found)
        conn, modes = _connection(server, fast_client_settings)

        conn.start()
        await asyncio.wait_for(conn.wait_closed(), timeout=1.0)

        assert conn.mode is ConnectionMode.DISCONNECTED
        assert isinstance(conn.error, WorkflowNotFoundError)
        assert modes == [ConnectionMode.DISCONNECTED]
        assert server.poll_requests == []
        await conn.aclose()

    @pytest.mark.asyncio
    async def test_reconnect_sends_last_event_id(self, fast_client_settings):
        server = FakeServer(sse=_stream(HEARTBEAT_FRAME))
        conn, _ = _connection(server, fast_client_settings)
        conn._accept(make_event(4))

        conn.start()
        await _eventually(lambda: conn.mode is ConnectionMode.SSE)
        assert server.sse_requests[0].headers["Last-Event-ID"] == "4"
        await conn.aclose()

    @pytest.mark.asyncio
    async def test_start_sse_upgrades_from_polling(self, fast_client_settings):
        server = FakeServer()
        conn, modes = _connection(server, fast_client_settings)

        conn.start()
        await _eventually(lambda: conn.mode is ConnectionMode.POLLING)

        server.sse = _stream(HEARTBEAT_FRAME)
        conn.start_sse()
        await _eventually(lambda: conn.mode is ConnectionMode.SSE)
        requests_in_sse = len(server.poll_requests)
        await asyncio.sleep(fast_client_settings.poll_interval * 5)

        assert len(server.poll_requests) == requests_in_sse
        assert modes == [ConnectionMode.POLLING, ConnectionMode.CONNECTING, ConnectionMode.SSE]
        await conn.aclose()


class TestPolling:
    @pytest.mark.asyncio
    async def test_sse_disabled_goes_straight_to_polling(self, fast_client_settings):
        settings = fast_client_settings.model_copy(update={"sse_enabled": False})
        server = FakeServer(sse=_stream(HEARTBEAT_FRAME))
        conn, modes = _connection(server, settings)

        conn.start()
        await _eventually(lambda: len(server.poll_requests) >= 1)

        assert server.sse_requests == []
        assert modes == [ConnectionMode.POLLING]
        await conn.aclose()

    @pytest.mark.asyncio
    async def test_polls_with_advancing_watermark(self, fast_client_settings):
        batches = [[make_event(1), make_event(2)], [make_event(3)], []]

        async def poll(request):
            batch = batches.pop(0) if batches else []
            return httpx.Response(200, json=_poll_body(batch))

        server = FakeServer(poll=poll)
        settings = fast_client_settings.model_copy(update={"sse_enabled": False})
        conn, _ = _connection(server, settings)

        conn.start()
        await _eventually(lambda: len(server.poll_requests) >= 3)

        sent = [r.url.params["lastSequence"] for r in server.poll_requests[:3]]
        assert sent == ["0", "2", "3"]
        assert [e.sequence_number for e in conn.events] == [1, 2, 3]
        await conn.aclose()

    @pytest.mark.asyncio
    async def test_has_more_false_disconnects_cleanly(self, fast_client_settings):
        async def finished(request):
            return httpx.Response(200, json=_poll_body([make_event(1)], has_more=False))

        server = FakeServer(poll=finished)
        settings = fast_client_settings.model_copy(update={"sse_enabled": False})
        conn, _ = _connection(server, settings)

        conn.start()
        await asyncio.wait_for(conn.wait_closed(), timeout=1.0)
        await asyncio.sleep(settings.poll_interval * 3)

        assert conn.mode is ConnectionMode.DISCONNECTED
        assert conn.error is None
        assert conn.is_connected is False
        assert len(server.poll_requests) == 1

    @pytest.mark.asyncio
    async def test_ten_consecutive_failures_disconnect(self, fast_client_settings):
        """After 10 failed polls the machine stops and sends nothing more."""

        async def failing(request):
            return httpx.Response(500)

        server = FakeServer(poll=failing)
        settings = fast_client_settings.model_copy(update={"sse_enabled": False})
        conn, modes = _connection(server, settings)

        conn.start()
        await asyncio.wait_for(conn.wait_closed(), timeout=2.0)
        await asyncio.sleep(0.1)

        assert conn.mode is ConnectionMode.DISCONNECTED
        assert isinstance(conn.error, ConnectionExhaustedError)
        assert len(server.poll_requests) == 10
        assert modes == [ConnectionMode.POLLING, ConnectionMode.DISCONNECTED]

    @pytest.mark.asyncio
    async def test_success_resets_failure_counter(self, fast_client_settings):
        outcomes = [500, 500, 500, 200]

        async def flaky(request):
            status = outcomes.pop(0) if outcomes else 200
            if status != 200:
                return httpx.Response(status)
            return httpx.Response(200, json=_poll_body([]))

        server = FakeServer(poll=flaky)
        settings = fast_client_settings.model_copy(update={"sse_enabled": False})
        conn, _ = _connection(server, settings)

        conn.start()
        await _eventually(lambda: len(server.poll_requests) >= 5)

        assert conn.reconnect_attempt == 0
        assert conn.mode is ConnectionMode.POLLING
        assert conn.error is None
        await conn.aclose()

    @pytest.mark.asyncio
    async def test_malformed_response_counts_as_failure(self, fast_client_settings):
        async def garbage(request):
            return httpx.Response(200, content=b"<html>proxy error</html>")

        server = FakeServer(poll=garbage)
        settings = fast_client_settings.model_copy(update={"sse_enabled": False})
        conn, _ = _connection(server, settings)

        conn.start()
        await _eventually(lambda: conn.reconnect_attempt >= 1)
        await conn.aclose()

    @pytest.mark.asyncio
    async def test_unknown_workflow_while_polling_is_terminal(self, fast_client_settings):
        async def not_found(request):
            return httpx.Response(404, json={"error": "Workflow not found"})

        server = FakeServer(poll=not_found)
        settings = fast_client_settings.model_copy(update={"sse_enabled": False})
        conn, _ = _connection(server, settings)

        conn.start()
        await asyncio.wait_for(conn.wait_closed(), timeout=1.0)
        assert isinstance(conn.error, WorkflowNotFoundError)
        assert len(server.poll_requests) == 1

    @pytest.mark.asyncio
    async def test_unanswered_polls_count_as_failures(self, fast_client_settings):
        """A server that accepts the connection but never replies still exhausts the retries."""

        async def hold_open(reader, writer):
            await reader.read()
            writer.close()

        server = await asyncio.start_server(hold_open, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        settings = fast_client_settings.model_copy(
            update={
                "base_url": f"http://127.0.0.1:{port}",
                "sse_enabled": False,
                "poll_timeout": 0.1,
                "max_reconnect_attempts": 2,
            }
        )
        conn = WorkflowConnection("wf-1", settings=settings)

        try:
            conn.start()
            await asyncio.wait_for(conn.wait_closed(), timeout=3.0)

            assert isinstance(conn.error, ConnectionExhaustedError)
            assert conn.reconnect_attempt == 2
        finally:
            await conn.aclose()
            server.close()

    @pytest.mark.asyncio
    async def test_poll_cadence_includes_request_time(self, fast_client_settings):
        """Polls start every poll_interval even when each request takes a while."""
        loop = asyncio.get_running_loop()
        arrivals = []

        async def slow(request):
            arrivals.append(loop.time())
            await asyncio.sleep(0.15)
            return httpx.Response(200, json=_poll_body([]))

        server = FakeServer(poll=slow)
        settings = fast_client_settings.model_copy(update={"sse_enabled": False, "poll_interval": 0.2})
        conn, _ = _connection(server, settings)

        conn.start()
        await _eventually(lambda: len(arrivals) >= 4)
        await conn.aclose()

        gaps = [b - a for a, b in zip(arrivals, arrivals[1:4])]
        assert all(gap < 0.3 for gap in gaps)

    def test_backoff_table_is_capped(self):
        conn = WorkflowConnection("wf-1", settings=ConnectionSettings(_env_file=None))
        delays = [conn._on_poll_failure("boom") for _ in range(9)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0, 30.0]
        assert conn._on_poll_failure("boom") is None
        assert conn.mode is ConnectionMode.DISCONNECTED


class TestDeduplication:
    def test_duplicates_and_stale_events_are_dropped(self):
        conn = WorkflowConnection("wf-1", settings=ConnectionSettings(_env_file=None))
        for seq in (1, 2, 2, 1, 3, 5, 4, 5, 6):
            conn._accept(make_event(seq))
        assert [e.sequence_number for e in conn.events] == [1, 2, 3, 5, 6]
        assert conn.last_sequence == 6

    @pytest.mark.parametrize("seed", range(20))
    def test_random_transport_interleavings_stay_strictly_increasing(self, seed):
        """Whatever mix of stream and poll deliveries arrives, the feed never repeats."""
        rng = random.Random(seed)
        conn = WorkflowConnection("wf-1", settings=ConnectionSettings(_env_file=None))
        total = 40
        sse_cursor = poll_cursor = 0

        for _ in range(200):
            if rng.random() < 0.5:
                # stream delivers the next few events, sometimes replaying after a reconnect
                if rng.random() < 0.2:
                    sse_cursor = max(0, sse_cursor - rng.randint(1, 5))
                for _ in range(rng.randint(1, 3)):
                    if sse_cursor < total:
                        sse_cursor += 1
                        conn._accept(make_event(sse_cursor))
            else:
                # polling returns everything above a possibly stale watermark
                watermark = max(0, conn.last_sequence - rng.randint(0, 4))
                poll_cursor = min(total, watermark + rng.randint(0, 6))
                for seq in range(watermark + 1, poll_cursor + 1):
                    conn._accept(make_event(seq))

        forwarded = [e.sequence_number for e in conn.events]
        assert forwarded == sorted(set(forwarded))
        assert all(b > a for a, b in zip(forwarded, forwarded[1:]))

    def test_event_callback_failure_does_not_stop_feed(self):
        def explode(event):
            raise RuntimeError("render failed")

        conn = WorkflowConnection("wf-1", settings=ConnectionSettings(_env_file=None), on_event=explode)
        assert conn._accept(make_event(1)) is True
        assert conn._accept(make_event(2)) is True
        assert conn.last_sequence == 2


class TestClose:
    @pytest.mark.asyncio
    async def test_close_stops_everything_without_callbacks(self, fast_client_settings):
        received = []
        server = FakeServer(sse=_stream(HEARTBEAT_FRAME, format_event_frame(make_event(1))))
        conn, modes = _connection(server, fast_client_settings, on_event=received.append)

        conn.start()
        await _eventually(lambda: len(received) == 1)
        modes_before = list(modes)

        conn.close()
        await asyncio.sleep(fast_client_settings.silence_timeout + 0.1)

        assert conn.mode is ConnectionMode.DISCONNECTED
        assert modes == modes_before
        assert server.poll_requests == []
        assert conn._accept(make_event(2)) is False
        assert len(received) == 1
        await conn.aclose()

    @pytest.mark.asyncio
    async def test_close_during_connect_cancels_timeout(self, fast_client_settings):
        async def never_confirms(request):
            await asyncio.sleep(30)
            return httpx.Response(200)

        server = FakeServer(sse=never_confirms)
        conn, modes = _connection(server, fast_client_settings)

        conn.start()
        conn.close()
        await asyncio.sleep(fast_client_settings.connect_timeout + 0.05)

        assert server.poll_requests == []
        assert modes == []
        await conn.aclose()

    @pytest.mark.asyncio
    async def test_async_context_manager(self, fast_client_settings):
        server = FakeServer(sse=_stream(HEARTBEAT_FRAME))
        async with WorkflowConnection("wf-1", settings=fast_client_settings, client=server.client()) as conn:
            await _eventually(lambda: conn.mode is ConnectionMode.SSE)
        assert conn.closed is True
