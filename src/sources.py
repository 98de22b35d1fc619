"""Producer streams and the set of sources feeding the filter."""

import asyncio
import concurrent.futures
import logging
import threading
from typing import AsyncIterator, Callable, Mapping, Protocol

from src.errors import ConfigError, UnroutableRecordError
from src.lifecycle import LifecycleCoordinator
from src.models import Record, RecordKind
from src.routing import RoutingConfig

logger = logging.getLogger(__name__)

_WAKE = object()

# Creation order; also the order streams are reported in.
STREAM_ORDER = (RecordKind.LOG, RecordKind.STATS, RecordKind.EVENT)


class Source(Protocol):
    """Anything the pipeline can read records from."""

    name: str

    def __aiter__(self) -> AsyncIterator[Record]: ...

    def close(self): ...


class QueueSource:
    """A source backed by a bounded asyncio queue.

    Records are fed from the event loop with ``put`` or from a worker thread
    with ``put_threadsafe``. A full queue blocks the caller, which is how
    back-pressure from the connection reaches the producers.
    """

    def __init__(self, name: str, maxsize: int = 1000):
        self.name = name
        self._maxsize = maxsize
        self._queue: asyncio.Queue | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stopped = threading.Event()
        self._finished = False

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def _bind(self):
        if self._queue is None:
            self._loop = asyncio.get_running_loop()
            self._queue = asyncio.Queue(maxsize=self._maxsize)

    async def put(self, record: Record):
        self._bind()
        await self._queue.put(record)

    def put_threadsafe(self, record: Record, poll: float = 0.5) -> bool:
        """Blocking put for worker threads. Returns False once stopped.

        The put is submitted once and never resubmitted, so a record is
        enqueued at most once however long the queue stays full.
        """
        if self._stopped.is_set():
            return False
        try:
            future = asyncio.run_coroutine_threadsafe(self._queue.put(record), self._loop)
        except RuntimeError:
            return False
        while True:
            try:
                future.result(timeout=poll)
                return True
            except concurrent.futures.TimeoutError:
                if self._stopped.is_set():
                    future.cancel()
                    return False
            except (concurrent.futures.CancelledError, RuntimeError):
                return False

    def finish(self):
        """End the stream once the records already queued are consumed."""
        self._finished = True
        if self._loop is None or self._loop.is_closed():
            return
        try:
            in_loop = asyncio.get_running_loop() is self._loop
        except RuntimeError:
            in_loop = False
        if in_loop:
            self._wake()
        else:
            self._loop.call_soon_threadsafe(self._wake)

    def close(self):
        """Stop the producer and end the stream."""
        self._stopped.set()
        self.finish()

    def _wake(self):
        try:
            self._queue.put_nowait(_WAKE)
        except asyncio.QueueFull:
            pass  # the reader is not blocked; it sees the flag once drained

    def start(self):
        """Called once the stream is first iterated; hook for producers."""

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        self._bind()
        self.start()
        while not (self._finished and self._queue.empty()):
            item = await self._queue.get()
            if item is _WAKE:
                continue
            yield item


class ThreadedSource(QueueSource):
    """Runs a blocking ``produce(emit)`` in a daemon thread.

    The stream ends when ``produce`` returns or raises.
    """

    def __init__(self, name: str, maxsize: int = 1000):
        super().__init__(name, maxsize)
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread is None:
            self._thread = threading.Thread(
                target=self._run, name=f"{self.name}-producer", daemon=True
            )
            self._thread.start()

    def _run(self):
        try:
            self.produce(self.put_threadsafe)
        except Exception:
            logger.exception("%s producer failed", self.name)
        finally:
            self.finish()

    def produce(self, emit: Callable[[Record], bool]):
        raise NotImplementedError

    def close(self):
        super().close()
        self.interrupt()

    def interrupt(self):
        """Unblock ``produce``; override when it waits on external I/O."""


SourceFactory = Callable[[], Source]


class SourceSet:
    """The 0-3 producer streams feeding the filter."""

    def __init__(self, sources: Mapping[RecordKind, Source], log: logging.Logger | None = None):
        self._sources = dict(sources)
        self._log = log or logger
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def build(
        cls,
        routing: RoutingConfig,
        enabled: Mapping[RecordKind, bool],
        factories: Mapping[RecordKind, SourceFactory],
        log: logging.Logger | None = None,
    ) -> "SourceSet":
        """Create each stream whose flag is on and whose token is set."""
        log = log or logger
        sources: dict[RecordKind, Source] = {}
        for kind in STREAM_ORDER:
            if not enabled.get(kind, True):
                log.debug("%s stream disabled", kind.value)
                continue
            if not routing.token_for(kind):
                log.debug("%s stream has no token, not creating it", kind.value)
                continue
            factory = factories.get(kind)
            if factory is None:
                log.debug("No producer available for %s", kind.value)
                continue
            log.debug("Creating %s stream", kind.value)
            sources[kind] = factory()

        if not sources:
            raise ConfigError("no forwarding targets enabled")
        return cls(sources, log)

    @property
    def names(self) -> list[str]:
        return [kind.value for kind in self._sources]

    @property
    def tasks(self) -> list[asyncio.Task]:
        return list(self._tasks)

    def __len__(self) -> int:
        return len(self._sources)

    def start(self, record_filter, lifecycle: LifecycleCoordinator) -> list[asyncio.Task]:
        """Pipe every source into ``record_filter``, one pump task each."""
        self._tasks = [
            asyncio.create_task(
                self._pump(kind, source, record_filter, lifecycle), name=f"pump-{kind.value}"
            )
            for kind, source in self._sources.items()
        ]
        return self.tasks

    async def _pump(self, kind: RecordKind, source: Source, record_filter, lifecycle):
        try:
            async for record in source:
                await record_filter.process(record)
            self._log.debug("%s stream ended", kind.value)
        except UnroutableRecordError:
            raise
        except Exception:
            self._log.exception("%s stream failed", kind.value)
        finally:
            lifecycle.stream_closed(kind.value)

    def close(self):
        for source in self._sources.values():
            source.close()
