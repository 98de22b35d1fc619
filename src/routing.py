"""Token routing, static metadata enrichment and wire framing."""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping

from src.models import RecordKind


class UnroutablePolicy(Enum):
    DROP = "drop"
    RAISE = "raise"


@dataclass(frozen=True)
class RoutingConfig:
    """Token per record kind. Empty strings count as missing."""

    logs: str | None = None
    events: str | None = None
    stats: str | None = None

    @classmethod
    def with_fallback(
        cls,
        logs: str | None = None,
        events: str | None = None,
        stats: str | None = None,
        token: str | None = None,
    ) -> "RoutingConfig":
        """Fill every kind without a dedicated token from ``token``."""
        return cls(
            logs=logs or token,
            events=events or token,
            stats=stats or token,
        )

    def token_for(self, kind: RecordKind | None) -> str | None:
        if kind is None:
            return None
        return getattr(self, kind.value) or None

    def enabled_kinds(self) -> list[RecordKind]:
        return [kind for kind in RecordKind if self.token_for(kind)]


def parse_static_metadata(pairs: Iterable[str]) -> dict[str, str]:
    """Turn ``["name=value", ...]`` into an ordered dict; later pairs win."""
    metadata: dict[str, str] = {}
    for pair in pairs:
        key, _, value = pair.partition("=")
        metadata[key] = value
    return metadata


def enrich(fields: Mapping[str, Any], metadata: Mapping[str, str]) -> dict:
    """Return a new dict of ``fields`` overlaid with ``metadata``."""
    enriched = dict(fields)
    enriched.update(metadata)
    return enriched


def encode_frame(token: str, payload: Mapping[str, Any]) -> bytes:
    """Serialize one frame: ``TOKEN SPACE JSON NEWLINE``.

    ensure_ascii escapes every control character, so the payload can never
    contain the newline that terminates the frame.
    """
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=True, default=str)
    return f"{token} {body}\n".encode("utf-8")
