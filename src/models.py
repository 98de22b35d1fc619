"""Record variants and the resolved ingestion endpoint."""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from src.errors import ConfigError


class RecordKind(Enum):
    LOG = "logs"
    EVENT = "events"
    STATS = "stats"


# Priority order matters: a record carrying both "line" and "type" is a log.
DISCRIMINANTS = (
    ("line", RecordKind.LOG),
    ("type", RecordKind.EVENT),
    ("stats", RecordKind.STATS),
)


def classify(fields: Mapping[str, Any]) -> RecordKind | None:
    """Return the kind of a raw record, or None if it has no discriminant."""
    for key, kind in DISCRIMINANTS:
        if key in fields:
            return kind
    return None


@dataclass(frozen=True)
class Record:
    """One event flowing through the pipeline.

    ``fields`` is a read-only copy of what the producer handed over, so
    enrichment always works on a new dict.
    """

    kind: RecordKind | None
    fields: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    @classmethod
    def log_line(cls, line, **meta) -> "Record":
        return cls(RecordKind.LOG, {"line": line, **meta})

    @classmethod
    def docker_event(cls, type_: str, **meta) -> "Record":
        return cls(RecordKind.EVENT, {"type": type_, **meta})

    @classmethod
    def stats_sample(cls, stats: Mapping[str, Any], **meta) -> "Record":
        return cls(RecordKind.STATS, {"stats": stats, **meta})

    @classmethod
    def from_fields(cls, fields: Mapping[str, Any]) -> "Record":
        return cls(classify(fields), fields)


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int
    secure: bool = True

    @classmethod
    def resolve(cls, region: str, server: str, port=None, secure: bool = True) -> "Endpoint":
        """Build the endpoint; host is region + server, port defaults on ``secure``."""
        if port is None or port == "":
            resolved = 443 if secure else 80
        else:
            try:
                resolved = int(port)
            except (TypeError, ValueError):
                raise ConfigError("Port must be a number") from None
        if resolved <= 0:
            raise ConfigError(f"Port must be a positive integer, got {resolved}")
        host = f"{region}{server}"
        try:
            host.encode("idna")
        except UnicodeError:
            raise ConfigError(f"Invalid host name: {host!r}") from None
        return cls(host=host, port=resolved, secure=secure)

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"
