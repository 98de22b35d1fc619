"""Container log forwarder: entry point."""

import asyncio
import logging
import signal
import sys

import docker
import docker.errors

from src.config import deprecation_notices, load_config
from src.docker_sources import build_factories
from src.errors import ConfigError, InsecureConnectionError, UnroutableRecordError
from src.pipeline import ForwarderContext, Pipeline

try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass


async def run(pipeline: Pipeline) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, pipeline.stop)
    await pipeline.run()


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    try:
        config = load_config(argv)
    except ConfigError as e:
        print(f"[FORWARDER] Configuration error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=config.logging_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    context = ForwarderContext(config)
    for notice in deprecation_notices(argv):
        context.logger.warning(notice)

    try:
        client = docker.from_env()
    except docker.errors.DockerException as e:
        print(f"[FORWARDER] Cannot reach the Docker daemon: {e}", file=sys.stderr)
        return 1
    try:
        pipeline = Pipeline(context, build_factories(client, config))
    except ConfigError as e:
        print(f"[FORWARDER] Configuration error: {e}", file=sys.stderr)
        return 2

    print(f"[FORWARDER] Forwarding to {config.endpoint}...")
    try:
        asyncio.run(run(pipeline))
    except (InsecureConnectionError, UnroutableRecordError) as e:
        print(f"[FORWARDER] Error: {e}", file=sys.stderr)
        return 1
    finally:
        client.close()

    print("[FORWARDER] All streams closed, exiting")
    return 0


if __name__ == "__main__":
    sys.exit(main())
