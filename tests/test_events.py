"""Unit tests for the realtime event channel."""

import asyncio
import json

import pytest

from app.core.events import CALL_STARTED, Backoff, ConnectionState, EventChannel
from app.models.schemas import CallEvent


class FakeSocket:
    """Accepts sends; fails the first liveness ping."""

    def __init__(self):
        self.sent = []

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def ping(self):
        raise OSError("pong never came")


class FakeConnection:
    def __init__(self, socket):
        self.socket = socket

    async def __aenter__(self):
        return self.socket

    async def __aexit__(self, *exc):
        return False


class ScriptedConnector:
    """connect() stand-in: plays a script of failures (None) and sockets."""

    def __init__(self, script):
        self.script = list(script)
        self.attempts = 0

    def __call__(self, url, **kwargs):
        self.attempts += 1
        outcome = self.script.pop(0) if self.script else None
        if outcome is None:
            raise OSError("connection refused")
        return FakeConnection(outcome)


class TestBackoff:
    """Tests for reconnect delays."""

    def test_delays_double_until_attempts_run_out(self):
        """Test that delays strictly increase from the base."""
        backoff = Backoff(base=1.0, cap=30.0, max_attempts=5)
        delays = [backoff.next_delay() for _ in range(6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, None]

    def test_delay_is_capped(self):
        """Test that the delay never exceeds the cap."""
        backoff = Backoff(base=10.0, cap=30.0, max_attempts=0)
        assert [backoff.next_delay() for _ in range(4)] == [10.0, 20.0, 30.0, 30.0]

    def test_reset_returns_to_base(self):
        """Test that reset starts the sequence over."""
        backoff = Backoff(base=0.5, cap=30.0, max_attempts=5)
        backoff.next_delay()
        backoff.next_delay()
        backoff.reset()
        assert backoff.next_delay() == 0.5


class TestPublish:
    """Tests for local publishing."""

    def test_recent_window_is_bounded(self):
        """Test that only the newest events are kept."""
        channel = EventChannel(buffer_size=3)
        for i in range(5):
            channel.publish(CallEvent(type=CALL_STARTED, call_id=f"CA{i}"))

        assert [e["call_id"] for e in channel.recent_events()] == ["CA2", "CA3", "CA4"]
        assert [e["call_id"] for e in channel.recent_events(limit=1)] == ["CA4"]

    def test_publish_never_raises(self):
        """Test that a malformed event is logged and dropped."""
        channel = EventChannel()
        channel.publish(None)
        assert channel.recent_events() == []

    @pytest.mark.asyncio
    async def test_subscriber_gets_backlog_then_live(self):
        """Test that a new subscriber sees the recent window, then new events."""
        channel = EventChannel(buffer_size=10)
        channel.publish(CallEvent(type=CALL_STARTED, call_id="old"))
        queue = channel.subscribe()
        channel.publish(CallEvent(type=CALL_STARTED, call_id="new"))

        assert (await queue.get())["call_id"] == "old"
        assert (await queue.get())["call_id"] == "new"

        channel.unsubscribe(queue)
        channel.publish(CallEvent(type=CALL_STARTED, call_id="after"))
        assert queue.empty()


class TestReconnect:
    """Tests for the outbound connection loop."""

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        """Test that consecutive failures back off and then stop."""
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        connector = ScriptedConnector([])
        channel = EventChannel(
            url="ws://hub.invalid/events",
            backoff=Backoff(base=1.0, cap=30.0, max_attempts=3),
            connect=connector,
            sleep=fake_sleep,
        )
        await asyncio.wait_for(channel.run(), timeout=2)

        assert delays == [1.0, 2.0, 4.0]
        assert connector.attempts == 4
        assert channel.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_successful_connect_resets_backoff(self):
        """Test that a connection delivers queued events and resets the delay."""
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        socket = FakeSocket()
        connector = ScriptedConnector([None, None, socket])
        channel = EventChannel(
            url="ws://hub.invalid/events",
            heartbeat_interval=0.01,
            backoff=Backoff(base=1.0, cap=30.0, max_attempts=3),
            connect=connector,
            sleep=fake_sleep,
        )
        channel.publish(CallEvent(type=CALL_STARTED, call_id="CA1"))

        await asyncio.wait_for(channel.run(), timeout=2)

        assert [e["call_id"] for e in socket.sent] == ["CA1"]
        assert delays == [1.0, 2.0, 1.0, 2.0, 4.0]
        assert channel.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_start_without_url_is_noop(self):
        """Test that no task is started when no hub URL is configured."""
        channel = EventChannel()
        assert channel.start() is None
        await channel.stop()
        assert channel.state is ConnectionState.DISCONNECTED
