# app/core/events.py
"""
Realtime event channel.

`publish()` is fire-and-forget: it records the event in a bounded window of
recent events (replayed to late subscribers), hands it to local subscribers
(the /ws/events endpoint) and, when EVENTS_URL is set, queues it for the
outbound WebSocket connection to the monitoring hub.

The outbound connection runs in its own task:

    disconnected -> connecting -> connected
          ^                           |
          +---- backoff delay <-------+  (unexpected close / failed probe)

Reconnect delays start at `base` and double per consecutive failure up to
`cap`; after `max_attempts` consecutive failures the channel stays
disconnected. A successful connect resets the delay. While connected, a ping
is sent every `heartbeat_interval` seconds of idleness.
"""
import asyncio
import enum
import json
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Union

import websockets
from websockets.exceptions import WebSocketException

from app.models.schemas import CallEvent

logger = logging.getLogger("ivr-flow-engine.core.events")

CALL_STARTED = "call.started"
NODE_ENTERED = "node.entered"
CALL_TERMINATED = "call.terminated"
CALL_STATUS = "call.status"


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Backoff:
    """Exponential reconnect delay: base, 2*base, 4*base, ... capped; None once attempts run out."""

    def __init__(self, base: float = 1.0, cap: float = 30.0, max_attempts: int = 5):
        self.base = base
        self.cap = cap
        self.max_attempts = max_attempts
        self.attempts = 0

    def next_delay(self) -> Optional[float]:
        if self.max_attempts and self.attempts >= self.max_attempts:
            return None
        delay = min(self.cap, self.base * (2 ** self.attempts))
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0


class EventChannel:
    def __init__(
        self,
        url: Optional[str] = None,
        buffer_size: int = 100,
        heartbeat_interval: float = 30.0,
        ping_timeout: float = 10.0,
        open_timeout: float = 10.0,
        backoff: Optional[Backoff] = None,
        connect: Optional[Callable[..., Any]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.url = url
        self.buffer_size = buffer_size
        self.heartbeat_interval = heartbeat_interval
        self.ping_timeout = ping_timeout
        self.open_timeout = open_timeout
        self.backoff = backoff or Backoff()
        self.state = ConnectionState.DISCONNECTED
        self.recent: Deque[Dict[str, Any]] = deque(maxlen=buffer_size)
        self._outbox: Deque[Dict[str, Any]] = deque(maxlen=buffer_size)
        self._subscribers: Set[asyncio.Queue] = set()
        self._wakeup = asyncio.Event()
        self._connect = connect or websockets.connect
        self._sleep = sleep or asyncio.sleep
        self._closing = False
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings) -> "EventChannel":
        return cls(
            url=settings.EVENTS_URL,
            buffer_size=settings.EVENTS_BUFFER_SIZE,
            heartbeat_interval=settings.EVENTS_HEARTBEAT_INTERVAL,
            ping_timeout=settings.EVENTS_PING_TIMEOUT,
            backoff=Backoff(
                base=settings.EVENTS_RECONNECT_BASE,
                cap=settings.EVENTS_RECONNECT_MAX_DELAY,
                max_attempts=settings.EVENTS_MAX_RECONNECT_ATTEMPTS,
            ),
        )

    # -- publishing -----------------------------------------------------

    def publish(self, event: Union[CallEvent, Dict[str, Any]]) -> None:
        """Never raises and never blocks the caller."""
        try:
            payload = event.model_dump(mode="json") if isinstance(event, CallEvent) else dict(event)
            self.recent.append(payload)
            for queue in list(self._subscribers):
                try:
                    queue.put_nowait(payload)
                except asyncio.QueueFull:
                    logger.debug("Subscriber queue full; dropping %s", payload.get("type"))
            if self.url:
                self._outbox.append(payload)
                self._wakeup.set()
        except Exception:
            logger.exception("Failed to publish event %r", event)

    def recent_events(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        events = list(self.recent)
        return events[-limit:] if limit else events

    def subscribe(self, maxsize: Optional[int] = None) -> asyncio.Queue:
        """New subscriber queue, pre-filled with the recent-event window."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or self.buffer_size * 2)
        for payload in self.recent:
            queue.put_nowait(payload)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    # -- outbound connection --------------------------------------------

    def start(self) -> Optional[asyncio.Task]:
        if not self.url or self._task is not None:
            return self._task
        self._closing = False
        self._task = asyncio.create_task(self.run(), name="event-channel")
        return self._task

    async def stop(self) -> None:
        self._closing = True
        self._wakeup.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.state = ConnectionState.DISCONNECTED

    async def run(self) -> None:
        while not self._closing:
            self.state = ConnectionState.CONNECTING
            try:
                async with self._connect(self.url, open_timeout=self.open_timeout, ping_interval=None) as ws:
                    self.state = ConnectionState.CONNECTED
                    self.backoff.reset()
                    logger.info("Event channel connected to %s", self.url)
                    await self._pump(ws)
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                logger.warning("Event channel connection to %s lost: %s", self.url, exc)
            finally:
                self.state = ConnectionState.DISCONNECTED
            if self._closing:
                break
            delay = self.backoff.next_delay()
            if delay is None:
                logger.error("Event channel giving up after %d reconnect attempts", self.backoff.attempts)
                break
            logger.info("Event channel reconnecting in %.1fs (attempt %d)", delay, self.backoff.attempts)
            await self._sleep(delay)

    async def _pump(self, ws) -> None:
        while not self._closing:
            if not self._outbox:
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.heartbeat_interval)
                except asyncio.TimeoutError:
                    await self._probe(ws)
                continue
            payload = self._outbox.popleft()
            try:
                await ws.send(json.dumps(payload, default=str))
            except (OSError, WebSocketException):
                # keep it for the next connection
                self._outbox.appendleft(payload)
                raise

    async def _probe(self, ws) -> None:
        pong_waiter = await ws.ping()
        await asyncio.wait_for(pong_waiter, timeout=self.ping_timeout)
