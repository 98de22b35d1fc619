"""Docker-backed producers: container logs, resource stats and lifecycle events.

Each producer is a ThreadedSource; the Docker SDK is blocking, so every
container being followed gets its own worker thread and records are handed
to the event loop through ``put_threadsafe``.
"""

import json
import logging
import re
import threading
import time
from typing import Callable, Iterable, Iterator

from docker.errors import APIError, NotFound

from src.models import Record, RecordKind
from src.sources import SourceFactory, ThreadedSource

logger = logging.getLogger(__name__)

Emit = Callable[[Record], bool]


class ContainerMatcher:
    """Name/image include and exclude filters."""

    def __init__(
        self,
        match_by_name: str | None = None,
        match_by_image: str | None = None,
        skip_by_name: str | None = None,
        skip_by_image: str | None = None,
    ):
        self._match_name = re.compile(match_by_name) if match_by_name else None
        self._match_image = re.compile(match_by_image) if match_by_image else None
        self._skip_name = re.compile(skip_by_name) if skip_by_name else None
        self._skip_image = re.compile(skip_by_image) if skip_by_image else None

    @classmethod
    def from_config(cls, config) -> "ContainerMatcher":
        return cls(
            match_by_name=config.match_by_name,
            match_by_image=config.match_by_image,
            skip_by_name=config.skip_by_name,
            skip_by_image=config.skip_by_image,
        )

    def matches(self, name: str, image: str) -> bool:
        if self._match_name and not self._match_name.search(name):
            return False
        if self._match_image and not self._match_image.search(image):
            return False
        if self._skip_name and self._skip_name.search(name):
            return False
        if self._skip_image and self._skip_image.search(image):
            return False
        return True


def describe(container) -> dict:
    """Metadata attached to every record of a container."""
    image = (container.attrs.get("Config") or {}).get("Image") or ""
    return {"id": container.id[:12], "image": image, "name": container.name}


def split_lines(chunks: Iterable[bytes]) -> Iterator[str]:
    """Re-assemble raw log chunks into decoded, non-empty lines."""
    buffer = b""
    for chunk in chunks:
        buffer += chunk
        *lines, buffer = buffer.split(b"\n")
        for line in lines:
            text = line.decode("utf-8", errors="replace").rstrip("\r")
            if text:
                yield text
    if buffer:
        text = buffer.decode("utf-8", errors="replace").rstrip("\r")
        if text:
            yield text


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def average_samples(samples: list):
    """Average numeric leaves across samples; other leaves keep the latest value."""
    latest = samples[-1]
    if isinstance(latest, dict):
        return {
            key: average_samples([s[key] for s in samples if isinstance(s, dict) and key in s])
            for key in latest
        }
    if all(_is_number(s) for s in samples):
        return sum(samples) / len(samples)
    return latest


class DockerSource(ThreadedSource):
    """ThreadedSource that closes its Docker streams when interrupted."""

    def __init__(self, name: str, client, matcher: ContainerMatcher | None = None, maxsize: int = 1000):
        super().__init__(name, maxsize)
        self._client = client
        self._matcher = matcher or ContainerMatcher()
        self._lock = threading.Lock()
        self._streams: list = []

    def _track(self, stream):
        with self._lock:
            self._streams.append(stream)
            stopped = self.stopped
        if stopped:
            self._close_stream(stream)
        return stream

    def interrupt(self):
        with self._lock:
            streams, self._streams = self._streams, []
        for stream in streams:
            self._close_stream(stream)

    @staticmethod
    def _close_stream(stream):
        close = getattr(stream, "close", None)
        if close is None:
            return
        try:
            close()
        except (APIError, OSError) as e:
            logger.debug("Error closing docker stream: %s", e)


class ContainerFollower(DockerSource):
    """Runs ``follow`` for every matching container, running now or started later.

    ``produce`` returns once the daemon's event stream ends and every worker
    has finished.
    """

    def __init__(self, name: str, client, matcher: ContainerMatcher | None = None, maxsize: int = 1000):
        super().__init__(name, client, matcher, maxsize)
        self._workers: dict[str, threading.Thread] = {}

    def produce(self, emit: Emit):
        try:
            for container in self._client.containers.list():
                self._attach(container, emit, since=None)

            events = self._track(
                self._client.events(decode=True, filters={"type": "container", "event": "start"})
            )
            for event in events:
                if self.stopped:
                    break
                try:
                    container = self._client.containers.get(event["id"])
                except NotFound:
                    continue
                self._attach(container, emit, since=event.get("time"))
        except Exception:
            if not self.stopped:
                raise
            logger.debug("%s event stream closed", self.name)
        finally:
            self._join_workers()

    def follow(self, container, info: dict, emit: Emit, since: int | None):
        raise NotImplementedError

    def _attach(self, container, emit: Emit, since: int | None):
        info = describe(container)
        if not self._matcher.matches(info["name"], info["image"]):
            logger.debug("Skipping container %s (%s)", info["name"], info["image"])
            return
        with self._lock:
            if self.stopped or container.id in self._workers:
                return
            worker = threading.Thread(
                target=self._work,
                args=(container, info, emit, since),
                name=f"{self.name}-{info['name']}",
                daemon=True,
            )
            self._workers[container.id] = worker
        logger.debug("Following %s for container %s", self.name, info["name"])
        worker.start()

    def _work(self, container, info: dict, emit: Emit, since: int | None):
        try:
            self.follow(container, info, emit, since)
        except Exception as e:
            if self.stopped:
                logger.debug("%s worker for %s stopped: %s", self.name, info["name"], e)
            else:
                logger.warning("%s stream for %s ended: %s", self.name, info["name"], e)
        finally:
            with self._lock:
                self._workers.pop(container.id, None)

    def _join_workers(self):
        while True:
            with self._lock:
                workers = list(self._workers.values())
            if not workers:
                return
            for worker in workers:
                worker.join()


class DockerLogSource(ContainerFollower):
    """One log record per line written by a matching container."""

    def __init__(self, client, matcher=None, json_lines: bool = False, maxsize: int = 1000):
        super().__init__(RecordKind.LOG.value, client, matcher, maxsize)
        self._json_lines = json_lines

    def follow(self, container, info, emit, since):
        stream = self._track(
            container.logs(
                stdout=True,
                stderr=True,
                stream=True,
                follow=True,
                since=since if since is not None else int(time.time()),
            )
        )
        for line in split_lines(stream):
            if not emit(Record.log_line(self.parse_line(line), **info)):
                return

    def parse_line(self, line: str):
        if not self._json_lines:
            return line
        try:
            return json.loads(line)
        except ValueError:
            return line


class DockerStatsSource(ContainerFollower):
    """Resource usage per container, averaged over ``interval`` samples."""

    def __init__(self, client, matcher=None, interval: int = 30, maxsize: int = 1000):
        super().__init__(RecordKind.STATS.value, client, matcher, maxsize)
        self._interval = max(1, interval)

    def follow(self, container, info, emit, since):
        samples = []
        while not self.stopped:
            container.reload()
            if container.status != "running":
                return
            samples.append(container.stats(stream=False))
            if len(samples) >= self._interval:
                if not emit(Record.stats_sample(average_samples(samples), **info)):
                    return
                samples = []


class DockerEventsSource(DockerSource):
    """Container lifecycle events reported by the daemon."""

    def __init__(self, client, matcher=None, maxsize: int = 1000):
        super().__init__(RecordKind.EVENT.value, client, matcher, maxsize)

    def produce(self, emit: Emit):
        events = self._track(self._client.events(decode=True, filters={"type": "container"}))
        try:
            for event in events:
                record = self.to_record(event)
                if record is not None and not emit(record):
                    return
        except Exception:
            if not self.stopped:
                raise
            logger.debug("events stream closed")

    def to_record(self, event: dict) -> Record | None:
        attributes = (event.get("Actor") or {}).get("Attributes") or {}
        name = attributes.get("name", "")
        image = event.get("from") or attributes.get("image", "")
        if not self._matcher.matches(name, image):
            return None
        return Record.docker_event(
            event.get("status") or event.get("Action", ""),
            id=(event.get("id") or "")[:12],
            image=image,
            name=name,
            time=event.get("time"),
        )


def build_factories(client, config) -> dict[RecordKind, SourceFactory]:
    """Source factories for each kind, bound to one Docker client."""
    matcher = ContainerMatcher.from_config(config)
    maxsize = config.queue_size
    return {
        RecordKind.LOG: lambda: DockerLogSource(client, matcher, json_lines=config.json, maxsize=maxsize),
        RecordKind.STATS: lambda: DockerStatsSource(
            client, matcher, interval=config.stats_interval, maxsize=maxsize
        ),
        RecordKind.EVENT: lambda: DockerEventsSource(client, matcher, maxsize=maxsize),
    }
