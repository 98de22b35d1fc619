"""Tests for connection module."""

import asyncio
import ssl

import pytest
import pytest_asyncio

from src.connection import ConnectionManager, ConnectionState, ReconnectPolicy
from src.errors import InsecureConnectionError
from src.metrics import ForwarderMetrics
from src.models import Endpoint

PLAIN = Endpoint("127.0.0.1", 9, secure=False)
SECURE = Endpoint("logs.example.com", 443, secure=True)
IMMEDIATE = ReconnectPolicy(base_delay=0)


class FakeTransport:
    def __init__(self):
        self.aborted = False

    def abort(self):
        self.aborted = True


class FakeWriter:
    def __init__(self, peercert=None):
        self.transport = FakeTransport()
        self.data = bytearray()
        self.closed = False
        self._peercert = peercert

    def get_extra_info(self, name, default=None):
        return self._peercert if name == "peercert" else default

    def write(self, data):
        self.data += data

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


class ScriptedOpener:
    """Returns (or raises) the scripted outcomes in order; then fails forever."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, endpoint, ssl_context):
        self.calls += 1
        if not self.outcomes:
            raise ConnectionRefusedError("no more scripted connections")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _stream(peercert=None):
    return asyncio.StreamReader(), FakeWriter(peercert)


async def _wait_for(predicate, message="condition not met"):
    for _ in range(50):
        if predicate():
            return
        await asyncio.sleep(0.05)
    raise AssertionError(message)


def _manager(opener, endpoint=PLAIN, frames=None, **kwargs):
    kwargs.setdefault("policy", IMMEDIATE)
    return ConnectionManager(
        endpoint, frames or asyncio.Queue(), check_dns=False, opener=opener, **kwargs
    )


class TestReconnectPolicy:
    def test_first_attempt_immediate(self):
        assert ReconnectPolicy().delay(0) == 0.0

    def test_zero_base_is_immediate(self):
        assert ReconnectPolicy(base_delay=0).delay(5) == 0.0

    def test_exponential_growth(self):
        policy = ReconnectPolicy(base_delay=1.0, max_delay=100.0, jitter=0.0)
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        policy = ReconnectPolicy(base_delay=1.0, max_delay=5.0, jitter=0.0)
        assert policy.delay(50) == 5.0

    def test_jitter_bounds(self):
        policy = ReconnectPolicy(base_delay=1.0, max_delay=10.0, jitter=0.3)
        for _ in range(20):
            assert 1.0 <= policy.delay(1) <= 1.3


class TestConnect:
    @pytest.mark.asyncio
    async def test_connects_and_drains_frames(self):
        reader, writer = _stream()
        frames = asyncio.Queue()
        metrics = ForwarderMetrics()
        cm = _manager(ScriptedOpener((reader, writer)), frames=frames, metrics=metrics)
        task = asyncio.create_task(cm.run())

        await frames.put(b"T {}\n")
        await frames.put(b"T {\"a\":1}\n")
        await _wait_for(lambda: len(writer.data) == 15)
        assert cm.connected
        assert metrics.frames_forwarded == 2
        assert metrics.connections == 1

        cm.close()
        await asyncio.wait_for(task, timeout=2.0)
        assert cm.state is ConnectionState.CLOSED
        assert writer.closed

    @pytest.mark.asyncio
    async def test_retries_failed_connects(self):
        reader, writer = _stream()
        opener = ScriptedOpener(ConnectionRefusedError(), OSError("unreachable"), (reader, writer))
        cm = _manager(opener)
        task = asyncio.create_task(cm.run())

        await _wait_for(lambda: cm.connected)
        assert opener.calls == 3
        assert cm.history == [
            ConnectionState.DISCONNECTED,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ]

        cm.close()
        await asyncio.wait_for(task, timeout=2.0)

    @pytest.mark.asyncio
    async def test_lost_connection_reconnects(self):
        reader1, writer1 = _stream()
        reader2, writer2 = _stream()
        frames = asyncio.Queue()
        metrics = ForwarderMetrics()
        cm = _manager(ScriptedOpener((reader1, writer1), (reader2, writer2)), frames=frames, metrics=metrics)
        task = asyncio.create_task(cm.run())

        await _wait_for(lambda: cm.connected)
        reader1.feed_eof()
        await _wait_for(lambda: cm.history.count(ConnectionState.CONNECTED) == 2)
        assert writer1.transport.aborted
        assert metrics.reconnects == 1

        await frames.put(b"T {}\n")
        await _wait_for(lambda: writer2.data == b"T {}\n")
        assert writer1.data == b""

        cm.close()
        await asyncio.wait_for(task, timeout=2.0)


    @pytest.mark.asyncio
    async def test_unexpected_opener_errors_are_retried(self):
        reader, writer = _stream()
        opener = ScriptedOpener(
            UnicodeError("label empty or too long"), ValueError("bad address"), (reader, writer)
        )
        cm = _manager(opener)
        task = asyncio.create_task(cm.run())

        await _wait_for(lambda: cm.connected)
        assert opener.calls == 3
        assert cm.history.count(ConnectionState.CONNECTING) == 3

        cm.close()
        await asyncio.wait_for(task, timeout=2.0)

    @pytest.mark.asyncio
    async def test_unresolvable_host_does_not_stall_connect(self):
        reader, writer = _stream()
        opener = ScriptedOpener((reader, writer))
        cm = ConnectionManager(
            Endpoint("eu..example.invalid", 9, secure=False),
            asyncio.Queue(),
            policy=IMMEDIATE,
            check_dns=True,
            opener=opener,
        )
        task = asyncio.create_task(cm.run())

        await _wait_for(lambda: cm.connected)
        assert opener.calls == 1

        cm.close()
        await asyncio.wait_for(task, timeout=2.0)


class TestFatal:
    @pytest.mark.asyncio
    async def test_certificate_failure_is_fatal(self):
        opener = ScriptedOpener(ssl.SSLCertVerificationError("certificate verify failed"))
        cm = _manager(opener, endpoint=SECURE)
        with pytest.raises(InsecureConnectionError):
            await asyncio.wait_for(cm.run(), timeout=2.0)
        assert cm.state is ConnectionState.FATAL
        assert ConnectionState.CONNECTED not in cm.history
        assert opener.calls == 1

    @pytest.mark.asyncio
    async def test_missing_peer_certificate_is_fatal(self):
        reader, writer = _stream(peercert=None)
        cm = _manager(ScriptedOpener((reader, writer)), endpoint=SECURE)
        with pytest.raises(InsecureConnectionError):
            await asyncio.wait_for(cm.run(), timeout=2.0)
        assert writer.transport.aborted
        assert writer.data == b""

    @pytest.mark.asyncio
    async def test_authorized_secure_connection(self):
        reader, writer = _stream(peercert={"subject": ((("commonName", "logs.example.com"),),)})
        cm = _manager(ScriptedOpener((reader, writer)), endpoint=SECURE)
        task = asyncio.create_task(cm.run())
        await _wait_for(lambda: cm.connected)
        cm.close()
        await asyncio.wait_for(task, timeout=2.0)
        assert cm.state is ConnectionState.CLOSED


class TestClose:
    @pytest.mark.asyncio
    async def test_close_before_run(self):
        opener = ScriptedOpener()
        cm = _manager(opener)
        cm.close()
        await asyncio.wait_for(cm.run(), timeout=2.0)
        assert cm.history == [ConnectionState.DISCONNECTED, ConnectionState.CLOSED]
        assert opener.calls == 0

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        reader, writer = _stream()
        cm = _manager(ScriptedOpener((reader, writer)))
        task = asyncio.create_task(cm.run())
        await _wait_for(lambda: cm.connected)
        cm.close()
        cm.close()
        await asyncio.wait_for(task, timeout=2.0)
        assert cm.history.count(ConnectionState.CLOSED) == 1

    @pytest.mark.asyncio
    async def test_close_cancels_backoff(self):
        opener = ScriptedOpener()
        cm = _manager(opener, policy=ReconnectPolicy(base_delay=30.0, max_delay=60.0))
        task = asyncio.create_task(cm.run())
        await _wait_for(lambda: opener.calls == 1)
        await asyncio.sleep(0.05)

        cm.close()
        await asyncio.wait_for(task, timeout=2.0)
        assert cm.state is ConnectionState.CLOSED
        assert opener.calls == 1

    @pytest.mark.asyncio
    async def test_queued_frames_flushed_on_close(self):
        reader, writer = _stream()
        frames = asyncio.Queue()
        cm = _manager(ScriptedOpener((reader, writer)), frames=frames)
        task = asyncio.create_task(cm.run())
        await _wait_for(lambda: cm.connected)

        for i in range(5):
            frames.put_nowait(f"T {i}\n".encode())
        cm.close()
        await asyncio.wait_for(task, timeout=2.0)
        assert writer.data == b"T 0\nT 1\nT 2\nT 3\nT 4\n"
        assert frames.empty()

    @pytest.mark.asyncio
    async def test_no_reconnect_after_close(self):
        reader, writer = _stream()
        opener = ScriptedOpener((reader, writer))
        cm = _manager(opener)
        task = asyncio.create_task(cm.run())
        await _wait_for(lambda: cm.connected)

        cm.close()
        reader.feed_eof()
        await asyncio.wait_for(task, timeout=2.0)
        await asyncio.sleep(0.05)
        assert opener.calls == 1
        assert cm.state is ConnectionState.CLOSED


class Collector:
    def __init__(self):
        self.lines = []
        self.writers = []
        self.port = None

    async def handle(self, reader, writer):
        self.writers.append(writer)
        while True:
            line = await reader.readline()
            if not line:
                break
            self.lines.append(line)
        writer.close()


@pytest_asyncio.fixture
async def collector():
    """Plain TCP server on an ephemeral port that records every line."""
    col = Collector()
    server = await asyncio.start_server(col.handle, "127.0.0.1", 0)
    col.port = server.sockets[0].getsockname()[1]
    yield col
    for writer in col.writers:
        writer.close()
    server.close()
    await server.wait_closed()


class TestRealServer:
    @pytest.mark.asyncio
    async def test_reconnects_after_server_drops(self, collector):
        frames = asyncio.Queue()
        cm = ConnectionManager(
            Endpoint("127.0.0.1", collector.port, secure=False),
            frames,
            policy=IMMEDIATE,
            check_dns=False,
        )
        task = asyncio.create_task(cm.run())

        await frames.put(b"TOK first\n")
        await _wait_for(lambda: collector.lines == [b"TOK first\n"])

        collector.writers[0].close()
        await _wait_for(lambda: cm.history.count(ConnectionState.CONNECTED) == 2)

        await frames.put(b"TOK second\n")
        await _wait_for(lambda: len(collector.lines) == 2)
        assert collector.lines[1] == b"TOK second\n"
        assert len(collector.writers) == 2

        cm.close()
        await asyncio.wait_for(task, timeout=2.0)
        assert cm.history == [
            ConnectionState.DISCONNECTED,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.CLOSED,
        ]

    @pytest.mark.asyncio
    async def test_keeps_retrying_unreachable_endpoint(self):
        probe = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = probe.sockets[0].getsockname()[1]
        probe.close()
        await probe.wait_closed()

        cm = ConnectionManager(
            Endpoint("127.0.0.1", port, secure=False),
            asyncio.Queue(),
            policy=ReconnectPolicy(base_delay=0.01, max_delay=0.05),
            check_dns=False,
        )
        task = asyncio.create_task(cm.run())
        await _wait_for(lambda: cm.history.count(ConnectionState.CONNECTING) >= 2)
        assert not cm.connected

        cm.close()
        await asyncio.wait_for(task, timeout=2.0)
        assert cm.state is ConnectionState.CLOSED
