"""Tracks open source streams and closes the connection when none remain."""

import logging
from typing import Iterable

logger = logging.getLogger(__name__)


class LifecycleCoordinator:
    """Single source of truth for whether the pipeline should stay alive.

    Streams are never restarted, so the count only goes down; a stream that
    reports closing twice is counted once.
    """

    def __init__(self, streams: Iterable[str], connection, log: logging.Logger | None = None):
        self._open = list(dict.fromkeys(streams))
        self._created = len(self._open)
        self._connection = connection
        self._log = log or logger

    @property
    def open_count(self) -> int:
        return len(self._open)

    @property
    def created_count(self) -> int:
        return self._created

    def stream_closed(self, name: str):
        if name not in self._open:
            self._log.debug("Ignoring repeated close of stream %s", name)
            return
        self._open.remove(name)
        self._log.info("Closing %s stream. %d streams remain opened.", name, self.open_count)
        if not self._open:
            self._connection.close()
