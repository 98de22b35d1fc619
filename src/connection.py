"""Outbound connection state machine with automatic reconnect.

The manager owns exactly one stream to the ingestion endpoint at a time and
keeps the filter's frame queue drained into it. All transitions are driven by
events on an internal queue, processed one at a time by ``run()``:

    DISCONNECTED -> CONNECTING -> CONNECTED -> (LOST) -> CONNECTING -> ...
    CONNECTING/CONNECTED -> FATAL   (secure channel not authorized)
    any non-terminal state -> CLOSED (close() called)
"""

import asyncio
import logging
import random
import socket
import ssl
from dataclasses import dataclass
from enum import Enum

from src.errors import InsecureConnectionError
from src.metrics import ForwarderMetrics
from src.models import Endpoint
from src.tls_context import create_client_context

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FATAL = "fatal"
    CLOSED = "closed"


TERMINAL_STATES = (ConnectionState.FATAL, ConnectionState.CLOSED)


class EventType(Enum):
    CONNECT = "connect"
    CONNECTED = "connected"
    FAILED = "failed"
    LOST = "lost"
    UNAUTHORIZED = "unauthorized"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class ReconnectPolicy:
    """Bounded exponential backoff with jitter between failed attempts.

    The first attempt after a healthy connection drops is immediate.
    ``base_delay=0`` retries immediately forever.
    """

    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter: float = 0.3

    def delay(self, failures: int) -> float:
        if failures <= 0 or self.base_delay <= 0:
            return 0.0
        exponent = min(failures - 1, 32)
        delay = min(self.base_delay * (2 ** exponent), self.max_delay)
        return delay + random.uniform(0, delay * self.jitter)


async def open_stream(endpoint: Endpoint, ssl_context: ssl.SSLContext | None):
    """Open a plain or TLS stream to ``endpoint``."""
    if endpoint.secure:
        return await asyncio.open_connection(
            endpoint.host, endpoint.port, ssl=ssl_context, server_hostname=endpoint.host
        )
    return await asyncio.open_connection(endpoint.host, endpoint.port)


class ConnectionManager:
    """Keeps ``frames`` flowing into a single, self-healing connection."""

    def __init__(
        self,
        endpoint: Endpoint,
        frames: asyncio.Queue,
        *,
        ssl_context: ssl.SSLContext | None = None,
        policy: ReconnectPolicy | None = None,
        flush_timeout: float = 5.0,
        check_dns: bool = True,
        metrics: ForwarderMetrics | None = None,
        log: logging.Logger | None = None,
        opener=open_stream,
    ):
        self._endpoint = endpoint
        self._frames = frames
        if endpoint.secure and ssl_context is None:
            ssl_context = create_client_context()
        self._ssl_context = ssl_context
        self._policy = policy or ReconnectPolicy()
        self._flush_timeout = flush_timeout
        self._check_dns = check_dns
        self._metrics = metrics
        self._log = log or logger
        self._opener = opener

        self._events: asyncio.Queue = asyncio.Queue()
        self.state = ConnectionState.DISCONNECTED
        self.history: list[ConnectionState] = [ConnectionState.DISCONNECTED]
        self._failures = 0
        self._close_requested = False
        self._error: Exception | None = None

        self._connect_task: asyncio.Task | None = None
        self._drain_task: asyncio.Task | None = None
        self._watch_task: asyncio.Task | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def close(self):
        """Request shutdown. Safe to call more than once and before ``run``."""
        if self._close_requested:
            return
        self._close_requested = True
        self._post(EventType.SHUTDOWN)

    async def run(self):
        """Process events until CLOSED; raise InsecureConnectionError on FATAL."""
        if self.state is not ConnectionState.DISCONNECTED:
            raise RuntimeError("ConnectionManager.run() can only be called once")

        self._post(EventType.CONNECT)
        try:
            while self.state not in TERMINAL_STATES:
                event, payload = await self._events.get()
                await self._handle(event, payload)
        finally:
            if self.state not in TERMINAL_STATES:
                # Cancelled from outside: release everything without flushing.
                await self._cancel_tasks(self._connect_task, self._drain_task, self._watch_task)
                await self._release_writer(graceful=False)
                self._set_state(ConnectionState.CLOSED)

        if self.state is ConnectionState.FATAL:
            raise self._error

    # -- event handling ---------------------------------------------------

    def _post(self, event: EventType, payload=None):
        self._events.put_nowait((event, payload))

    def _set_state(self, state: ConnectionState):
        self._log.debug("Connection state %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    async def _handle(self, event: EventType, payload):
        if event is EventType.CONNECT:
            if self._close_requested:
                return
            self._set_state(ConnectionState.CONNECTING)
            delay = self._policy.delay(self._failures)
            self._connect_task = asyncio.create_task(self._open(delay))

        elif event is EventType.CONNECTED:
            self._connect_task = None
            self._attach(*payload)

        elif event is EventType.FAILED:
            self._connect_task = None
            self._failures += 1
            self._log.warning(
                "Failed to connect to %s (attempt %d): %s",
                self._endpoint, self._failures, payload,
            )
            self._post(EventType.CONNECT)

        elif event is EventType.LOST:
            writer, reason = payload
            if writer is not self._writer:
                return  # drain and watch can both report the same connection
            self._log.warning("Connection to %s lost (%s), reconnecting", self._endpoint, reason)
            await self._detach()
            if self._metrics:
                self._metrics.record_reconnect()
            self._post(EventType.CONNECT)

        elif event is EventType.UNAUTHORIZED:
            self._connect_task = None
            self._log.critical("Secure connection to %s is not authorized: %s", self._endpoint, payload)
            self._error = InsecureConnectionError(
                f"Secure connection to {self._endpoint} is not authorized: {payload}"
            )
            await self._detach()
            self._set_state(ConnectionState.FATAL)

        elif event is EventType.SHUTDOWN:
            await self._shutdown()

    # -- connecting -------------------------------------------------------

    async def _open(self, delay: float):
        if delay:
            self._log.info("Reconnecting to %s in %.1fs", self._endpoint, delay)
            await asyncio.sleep(delay)
        if self._check_dns:
            await self._log_resolution()

        mode = "secure" if self._endpoint.secure else "plain-text"
        self._log.info("Establishing %s connection to %s", mode, self._endpoint)
        try:
            reader, writer = await self._opener(self._endpoint, self._ssl_context)
        except ssl.SSLCertVerificationError as e:
            self._post(EventType.UNAUTHORIZED, e)
            return
        except Exception as e:
            self._post(EventType.FAILED, e)
            return

        if self._endpoint.secure and not writer.get_extra_info("peercert"):
            writer.transport.abort()
            self._post(EventType.UNAUTHORIZED, "peer presented no certificate")
            return
        self._post(EventType.CONNECTED, (reader, writer))

    async def _log_resolution(self):
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(
                self._endpoint.host, self._endpoint.port, type=socket.SOCK_STREAM
            )
        except Exception as e:
            self._log.error("Failed to resolve DNS for %s: %s", self._endpoint.host, e)
            return
        family, _, _, _, sockaddr = infos[0]
        self._log.debug(
            "Resolved %s to %s (family %s)", self._endpoint.host, sockaddr[0], family.name
        )

    # -- connected --------------------------------------------------------

    def _attach(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._writer = writer
        self._failures = 0
        self._set_state(ConnectionState.CONNECTED)
        if self._metrics:
            self._metrics.record_connection()
        self._log.info("Connected to %s", self._endpoint)
        self._drain_task = asyncio.create_task(self._drain(writer))
        self._watch_task = asyncio.create_task(self._watch(reader, writer))

    async def _drain(self, writer: asyncio.StreamWriter):
        """Move frames from the queue into the writer, honoring flow control."""
        while True:
            frame = await self._frames.get()
            try:
                writer.write(frame)
                await writer.drain()
            except (ConnectionError, OSError) as e:
                self._post(EventType.LOST, (writer, e))
                return
            if self._metrics:
                self._metrics.record_frame(len(frame))

    async def _watch(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Read until the remote end closes; the endpoint never answers."""
        try:
            while await reader.read(4096):
                pass
            reason = "remote closed the connection"
        except (ConnectionError, OSError) as e:
            reason = e
        self._post(EventType.LOST, (writer, reason))

    async def _detach(self):
        """Stop draining into the current connection and drop it."""
        await self._cancel_tasks(self._drain_task, self._watch_task)
        self._drain_task = self._watch_task = None
        await self._release_writer(graceful=False)

    # -- shutdown ---------------------------------------------------------

    async def _shutdown(self):
        self._log.info("Closing connection to %s", self._endpoint)
        await self._cancel_tasks(self._watch_task, self._connect_task)
        self._watch_task = self._connect_task = None
        self._discard_pending_events()

        await self._cancel_tasks(self._drain_task)
        self._drain_task = None
        if self._writer is not None:
            await self._flush(self._writer)
        await self._release_writer(graceful=True)
        self._set_state(ConnectionState.CLOSED)

    def _discard_pending_events(self):
        while not self._events.empty():
            event, payload = self._events.get_nowait()
            if event is EventType.CONNECTED:
                _, writer = payload
                writer.transport.abort()

    async def _flush(self, writer: asyncio.StreamWriter):
        """Write frames already queued before the sources finished."""
        pending = 0
        try:
            while not self._frames.empty():
                frame = self._frames.get_nowait()
                writer.write(frame)
                pending += 1
                if self._metrics:
                    self._metrics.record_frame(len(frame))
            await asyncio.wait_for(writer.drain(), self._flush_timeout)
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            self._log.warning("Could not flush %d frames on shutdown: %s", pending, e)

    async def _release_writer(self, graceful: bool):
        writer, self._writer = self._writer, None
        if writer is None:
            return
        if not graceful:
            writer.transport.abort()
            return
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), self._flush_timeout)
        except (asyncio.TimeoutError, ConnectionError, OSError):
            writer.transport.abort()

    @staticmethod
    async def _cancel_tasks(*tasks):
        tasks = [t for t in tasks if t is not None and t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
