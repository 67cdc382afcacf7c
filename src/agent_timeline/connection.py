"""Live connection to the agent server's event stream.

The manager runs one asyncio task per ``connect()``. Each attempt probes the
server, opens the server-sent-event stream and pushes every event through
normalizer -> coalescer -> entry consumer. Any failure, or the stream simply
ending, puts the manager into ``waiting`` and schedules another attempt with
exponential backoff. Only ``disconnect()`` stops retrying.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import httpx

from agent_timeline.coalescer import Coalescer
from agent_timeline.models import TimelineEntry
from agent_timeline.normalizer import EventNormalizer
from agent_timeline.sse import iter_sse_data

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://localhost:4096"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"  # never connected, or the user disconnected
    WAITING = "waiting"  # server unreachable or stream dropped, retry scheduled
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"  # unexpected failure, retry scheduled


@dataclass
class ConnectionConfig:
    initial_retry: float = 1.0
    max_retry: float = 15.0
    backoff_factor: float = 1.5
    probe_timeout: float = 3.0
    yield_interval: float = 0.008
    coalesce_window: float = 0.1
    health_path: str = "/health"
    event_path: str = "/global/event"


class ServerUnreachable(ConnectionError):
    pass


class Backoff:
    """Retry delays growing by ``factor`` from ``initial`` up to ``maximum`` seconds."""

    def __init__(self, initial: float, factor: float, maximum: float) -> None:
        self.initial = initial
        self.factor = factor
        self.maximum = maximum
        self._delay = initial

    def next_delay(self) -> float:
        delay = self._delay
        self._delay = min(self.maximum, self._delay * self.factor)
        return delay

    def reset(self) -> None:
        self._delay = self.initial


EntryHandler = Callable[[TimelineEntry], None]
StateHandler = Callable[[ConnectionState, str], None]
RawEventHandler = Callable[[Any, str], None]


class ConnectionManager:
    def __init__(
        self,
        server_url: str,
        on_entry: EntryHandler,
        *,
        on_state_change: StateHandler | None = None,
        on_raw_event: RawEventHandler | None = None,
        normalizer: EventNormalizer | None = None,
        config: ConnectionConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.config = config or ConnectionConfig()
        self.normalizer = normalizer or EventNormalizer()
        self.coalescer = Coalescer(on_entry, window=self.config.coalesce_window)
        self.state = ConnectionState.DISCONNECTED
        self.detail = ""
        self.retry_count = 0
        self._on_entry = on_entry
        self._on_state_change = on_state_change
        self._on_raw_event = on_raw_event
        self._transport = transport
        self._backoff = Backoff(self.config.initial_retry, self.config.backoff_factor, self.config.max_retry)
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def connect(self) -> None:
        """Start connecting; must be called from inside a running event loop."""
        if self.running:
            return
        self.retry_count = 0
        self._backoff.reset()
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"connection:{self.server_url}")
        self._set_state(ConnectionState.CONNECTING)

    async def disconnect(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.coalescer.flush_all()
        self._set_state(ConnectionState.DISCONNECTED)

    def _set_state(self, state: ConnectionState, detail: str = "") -> None:
        if (state, detail) == (self.state, self.detail):
            return
        self.state = state
        self.detail = detail
        if self._on_state_change is not None:
            self._on_state_change(state, detail)

    async def _run(self) -> None:
        timeout = httpx.Timeout(self.config.probe_timeout)
        async with httpx.AsyncClient(base_url=self.server_url, timeout=timeout, transport=self._transport) as client:
            while True:
                self._set_state(ConnectionState.CONNECTING)
                try:
                    await self._probe(client)
                    await self._consume(client)
                except (httpx.HTTPError, OSError) as exc:
                    self.coalescer.flush_all()
                    delay = self._backoff.next_delay()
                    self.retry_count += 1
                    detail = f"Retry #{self.retry_count} in {delay:.1f}s"
                    logger.warning("%s: %s", detail, exc)
                    self._set_state(ConnectionState.WAITING, detail)
                except Exception as exc:
                    self.coalescer.flush_all()
                    delay = self._backoff.next_delay()
                    self.retry_count += 1
                    detail = f"{type(exc).__name__}: {exc}. Retry #{self.retry_count} in {delay:.1f}s"
                    logger.exception("event stream failed")
                    self._set_state(ConnectionState.ERROR, detail)
                else:
                    self.coalescer.flush_all()
                    self._backoff.reset()
                    delay = self._backoff.next_delay()
                    self.retry_count += 1
                    detail = f"Server disconnected. Retry #{self.retry_count} in {delay:.1f}s"
                    logger.info(detail)
                    self._set_state(ConnectionState.WAITING, detail)
                await asyncio.sleep(delay)

    async def _probe(self, client: httpx.AsyncClient) -> None:
        # Any HTTP response means the server is up; /health may not exist.
        try:
            await client.get(self.config.health_path, timeout=self.config.probe_timeout)
        except httpx.HTTPError:
            try:
                await client.get("/", timeout=self.config.probe_timeout)
            except httpx.HTTPError as exc:
                raise ServerUnreachable(f"Server not reachable: {self.server_url}") from exc

    async def _consume(self, client: httpx.AsyncClient) -> None:
        stream_timeout = httpx.Timeout(self.config.probe_timeout, read=None)
        headers = {"Accept": "text/event-stream"}
        async with client.stream("GET", self.config.event_path, headers=headers, timeout=stream_timeout) as response:
            response.raise_for_status()
            self.normalizer.reset()
            self._backoff.reset()
            self.retry_count = 0
            self._set_state(ConnectionState.CONNECTED)

            loop = asyncio.get_running_loop()
            yielded = loop.time()
            async for data in iter_sse_data(response.aiter_lines()):
                self._dispatch(data)
                if loop.time() - yielded > self.config.yield_interval:
                    await asyncio.sleep(0)
                    yielded = loop.time()

    def _dispatch(self, data: str) -> None:
        try:
            envelope = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("skipping malformed event frame: %.80s", data)
            return
        if not isinstance(envelope, dict):
            return
        if "payload" in envelope:
            payload = envelope["payload"]
            directory = envelope.get("directory") or "global"
        else:
            payload = envelope
            directory = "global"

        if self._on_raw_event is not None:
            try:
                self._on_raw_event(payload, directory)
            except Exception:
                logger.exception("raw event observer failed")

        entry = self.normalizer.normalize(payload, directory)
        if entry is None:
            return
        result = self.coalescer.process(entry)
        if result is not None:
            self._on_entry(result)
