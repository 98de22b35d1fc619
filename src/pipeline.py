"""Wires sources, filter, connection and lifecycle into one pipeline."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Mapping

from src.config import ForwarderConfig
from src.connection import ConnectionManager, ReconnectPolicy
from src.errors import ConfigError, UnroutableRecordError
from src.filter import EnrichmentFilter
from src.lifecycle import LifecycleCoordinator
from src.metrics import ForwarderMetrics
from src.models import RecordKind
from src.sources import SourceFactory, SourceSet
from src.tls_context import create_client_context


@dataclass
class ForwarderContext:
    """Everything a component needs that is not its own state.

    Built once at startup and handed to each component explicitly.
    """

    config: ForwarderConfig
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("forwarder"))
    metrics: ForwarderMetrics = field(default_factory=ForwarderMetrics)

    def child_logger(self, name: str) -> logging.Logger:
        return self.logger.getChild(name)


class Pipeline:
    """Source Set -> Enrichment Filter -> Connection Manager."""

    def __init__(
        self,
        context: ForwarderContext,
        factories: Mapping[RecordKind, SourceFactory],
        *,
        opener=None,
        ssl_context=None,
        check_dns: bool = True,
    ):
        config = context.config
        self._context = context
        self._log = context.logger

        # Raises ConfigError before anything touches the network.
        self.sources = SourceSet.build(
            config.routing, config.enabled_streams, factories, log=context.child_logger("sources")
        )

        self.frames: asyncio.Queue = asyncio.Queue(maxsize=config.queue_size)
        self.filter = EnrichmentFilter(
            config.routing,
            config.static_metadata,
            self.frames,
            policy=config.unroutable_policy,
            metrics=context.metrics,
            log=context.child_logger("filter"),
        )

        endpoint = config.endpoint
        if endpoint.secure and ssl_context is None:
            try:
                ssl_context = create_client_context(config.ca_file)
            except OSError as e:
                raise ConfigError(f"Cannot load CA file {config.ca_file!r}: {e}") from e
        connection_kwargs = {"opener": opener} if opener is not None else {}
        self.connection = ConnectionManager(
            endpoint,
            self.frames,
            ssl_context=ssl_context,
            policy=ReconnectPolicy(config.reconnect_delay, config.reconnect_max_delay),
            check_dns=check_dns,
            metrics=context.metrics,
            log=context.child_logger("connection"),
            **connection_kwargs,
        )
        self.lifecycle = LifecycleCoordinator(
            self.sources.names, self.connection, log=context.child_logger("lifecycle")
        )
        self._failure: BaseException | None = None

    @property
    def metrics(self) -> ForwarderMetrics:
        return self._context.metrics

    async def run(self):
        """Forward until every source has closed.

        Raises InsecureConnectionError if the secure channel is not
        authorized, or UnroutableRecordError under the raise policy.
        """
        self._log.info(
            "Forwarding %s to %s", ", ".join(self.sources.names), self.connection.endpoint
        )
        for task in self.sources.start(self.filter, self.lifecycle):
            task.add_done_callback(self._on_pump_done)

        try:
            await self.connection.run()
        finally:
            self.sources.close()
            pumps = [t for t in self.sources.tasks if not t.done()]
            for task in pumps:
                task.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            self._log.info("Forwarder stopped: %s", self.metrics.snapshot())

        if self._failure is not None:
            raise self._failure

    def stop(self):
        """Close every source; the connection follows once they have ended."""
        self._log.info("Stopping all sources")
        self.sources.close()

    def _on_pump_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, UnroutableRecordError) and self._failure is None:
            self._log.error("%s", exc)
            self._failure = exc
            self.sources.close()
            self.connection.close()
