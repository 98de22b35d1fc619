"""Counters for the forwarding pipeline."""

import time


class ForwarderMetrics:
    """Tracks forwarding statistics. Only touched from the event loop."""

    def __init__(self):
        self.frames_forwarded = 0
        self.bytes_written = 0
        self.records_dropped = 0
        self.connections = 0
        self.reconnects = 0
        self._start_time = time.monotonic()

    def record_frame(self, size: int):
        self.frames_forwarded += 1
        self.bytes_written += size

    def record_dropped(self):
        self.records_dropped += 1

    def record_connection(self):
        self.connections += 1

    def record_reconnect(self):
        self.reconnects += 1

    def snapshot(self) -> dict:
        elapsed = time.monotonic() - self._start_time
        return {
            "frames_forwarded": self.frames_forwarded,
            "bytes_written": self.bytes_written,
            "records_dropped": self.records_dropped,
            "connections": self.connections,
            "reconnects": self.reconnects,
            "elapsed_seconds": round(elapsed, 1),
        }
