"""Per-record enrichment, token routing and framing."""

import asyncio
import logging
from typing import Any, Mapping

from src.errors import UnroutableRecordError
from src.metrics import ForwarderMetrics
from src.models import Record
from src.routing import RoutingConfig, UnroutablePolicy, encode_frame, enrich

logger = logging.getLogger(__name__)


class EnrichmentFilter:
    """Turns records into framed bytes on a bounded output queue.

    The queue is the flow-control point between the sources and the
    connection: ``process`` does not return until the frame is accepted.
    """

    def __init__(
        self,
        routing: RoutingConfig,
        metadata: Mapping[str, str],
        output: asyncio.Queue,
        policy: UnroutablePolicy = UnroutablePolicy.DROP,
        metrics: ForwarderMetrics | None = None,
        log: logging.Logger | None = None,
    ):
        self._routing = routing
        self._metadata = dict(metadata)
        self._output = output
        self._policy = policy
        self._metrics = metrics
        self._log = log or logger

    @property
    def output(self) -> asyncio.Queue:
        return self._output

    def transform(self, record: Record | Mapping[str, Any]) -> bytes | None:
        """Return the frame for ``record``, or None if it must be dropped."""
        if not isinstance(record, Record):
            record = Record.from_fields(record)

        enriched = enrich(record.fields, self._metadata)
        self._log.debug("Enriched record: %s", enriched)

        if record.kind is None:
            return self._unroutable(enriched, "no line, type or stats field")

        token = self._routing.token_for(record.kind)
        if not token:
            return self._unroutable(enriched, f"no token for {record.kind.value}")

        return encode_frame(token, enriched)

    async def process(self, record: Record | Mapping[str, Any]):
        frame = self.transform(record)
        if frame is not None:
            await self._output.put(frame)

    def _unroutable(self, enriched: dict, reason: str) -> None:
        if self._policy is UnroutablePolicy.RAISE:
            raise UnroutableRecordError(f"Unable to route record ({reason}): {enriched}")
        if self._metrics:
            self._metrics.record_dropped()
        self._log.debug("Skipping record, %s", reason)
        return None
