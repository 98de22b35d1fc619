"""Configuration: frozen dataclass loaded from YAML, env vars and CLI args."""

import argparse
import os
import re
import socket
import sys
from dataclasses import dataclass

import yaml

from src.errors import ConfigError
from src.models import Endpoint, RecordKind
from src.routing import RoutingConfig, UnroutablePolicy, parse_static_metadata

DEFAULT_SERVER = ".data.logs.insight.rapid7.com"

UUID_REGEX = re.compile(r"^[0-9a-f]{8}-([0-9a-f]{4}-){3}[0-9a-f]{12}$")

LOG_LEVEL_ALIASES = {
    "debug": "DEBUG",
    "info": "INFO",
    "warn": "WARNING",
    "warning": "WARNING",
    "error": "ERROR",
    "critical": "CRITICAL",
}


@dataclass(frozen=True)
class ForwarderConfig:
    region: str = ""
    server: str = DEFAULT_SERVER
    port: int | None = None
    secure: bool = True
    logs: bool = True
    stats: bool = True
    docker_events: bool = True
    logs_token: str | None = None
    stats_token: str | None = None
    events_token: str | None = None
    token: str | None = None
    add: tuple[tuple[str, str], ...] = ()
    stats_interval: int = 30
    json: bool = False
    match_by_name: str | None = None
    match_by_image: str | None = None
    skip_by_name: str | None = None
    skip_by_image: str | None = None
    log_level: str = "info"
    ca_file: str = ""
    unroutable: str = "drop"
    reconnect_delay: float = 0.5
    reconnect_max_delay: float = 30.0
    queue_size: int = 1000

    @property
    def routing(self) -> RoutingConfig:
        return RoutingConfig.with_fallback(
            logs=self.logs_token,
            events=self.events_token,
            stats=self.stats_token,
            token=self.token,
        )

    @property
    def enabled_streams(self) -> dict[RecordKind, bool]:
        return {
            RecordKind.LOG: self.logs,
            RecordKind.STATS: self.stats,
            RecordKind.EVENT: self.docker_events,
        }

    @property
    def static_metadata(self) -> dict[str, str]:
        return dict(self.add)

    @property
    def unroutable_policy(self) -> UnroutablePolicy:
        return UnroutablePolicy(self.unroutable)

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint.resolve(self.region, self.server, self.port, self.secure)

    @property
    def logging_level(self) -> str:
        return LOG_LEVEL_ALIASES[self.log_level.lower()]


def load_yaml(path: str) -> dict:
    """Load option defaults from a YAML mapping keyed by option name."""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return {key.replace("-", "_"): value for key, value in data.items()}


def build_parser(defaults: dict | None = None) -> argparse.ArgumentParser:
    defaults = defaults or {}
    env = os.environ

    parser = argparse.ArgumentParser(
        prog="forwarder",
        description="Forward container logs, stats and events to a remote ingestion endpoint",
    )
    parser.add_argument("-c", "--config", default=env.get("FORWARDER_CONFIG"),
                        help="YAML file with option defaults")
    parser.add_argument("-r", "--region", required="region" not in defaults,
                        help="The region to forward your logs to")
    parser.add_argument("-a", "--add", action="append", default=None, metavar="NAME=VALUE",
                        help="Add KVPs to the data being published")
    parser.add_argument("-i", "--statsinterval", dest="stats_interval", default=30,
                        help="Downsample stats sent to the ingestion endpoint")
    parser.add_argument("-j", "--json", action="store_true", default=False,
                        help="Stream logs in JSON format")
    parser.add_argument("-e", "--eventstoken", dest="events_token",
                        default=env.get("INSIGHT_EVENTSTOKEN"),
                        help="Specify log token for forwarding events")
    parser.add_argument("-l", "--logstoken", dest="logs_token",
                        default=env.get("INSIGHT_LOGSTOKEN"),
                        help="Specify log token for logs")
    parser.add_argument("-k", "--statstoken", dest="stats_token",
                        default=env.get("INSIGHT_STATSTOKEN"),
                        help="Specify log token for forwarding statistics")
    parser.add_argument("-t", "--token", default=env.get("INSIGHT_TOKEN"),
                        help="Specify token to use")
    parser.add_argument("-v", "--log-level", default=env.get("INSIGHT_LOG_LEVEL", "info"),
                        help="Define application log level")
    parser.add_argument("--debug", action="store_true", default=False,
                        help="DEPRECATED: use --log-level debug")
    parser.add_argument("--matchByName", dest="match_by_name", metavar="REGEX",
                        help="Forward logs for containers whose name matches REGEX")
    parser.add_argument("--matchByImage", dest="match_by_image", metavar="REGEX",
                        help="Forward logs for containers whose image matches REGEX")
    parser.add_argument("--skipByName", dest="skip_by_name", metavar="REGEX",
                        help="Do not forward logs for containers whose name matches REGEX")
    parser.add_argument("--skipByImage", dest="skip_by_image", metavar="REGEX",
                        help="Do not forward logs for containers whose image matches REGEX")
    parser.add_argument("--no-docker-events", "--no-dockerEvents", dest="docker_events",
                        action="store_false", help="Do not stream Docker events")
    parser.add_argument("--no-logs", dest="logs", action="store_false",
                        help="Do not stream logs")
    parser.add_argument("--no-stats", dest="stats", action="store_false",
                        help="Do not stream statistics")
    parser.add_argument("--no-secure", dest="secure", action="store_false",
                        help="Send logs un-encrypted; no TLS/SSL")
    parser.add_argument("--port", default=None,
                        help="Port to forward logs to. Default depends on whether secure is set")
    parser.add_argument("--server", default=DEFAULT_SERVER,
                        help="Server to forward logs to")
    parser.add_argument("--ca-file", default=env.get("FORWARDER_CA_FILE", ""),
                        help="CA bundle used to verify the server (default: system trust store)")
    parser.add_argument("--unroutable", choices=[p.value for p in UnroutablePolicy],
                        default=env.get("FORWARDER_UNROUTABLE", "drop"),
                        help="What to do with records that cannot be routed")
    parser.add_argument("--reconnect-delay",
                        default=env.get("FORWARDER_RECONNECT_DELAY", "0.5"),
                        help="Base backoff delay between failed connects (0 = immediate)")
    parser.add_argument("--reconnect-max-delay",
                        default=env.get("FORWARDER_RECONNECT_MAX_DELAY", "30"),
                        help="Upper bound for the reconnect backoff")
    parser.add_argument("--queue-size",
                        default=env.get("FORWARDER_QUEUE_SIZE", "1000"),
                        help="Frames buffered before producers are paused")

    parser.set_defaults(**defaults)
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI args on top of env vars and an optional YAML file."""
    if argv is None:
        argv = sys.argv[1:]

    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("-c", "--config", default=os.environ.get("FORWARDER_CONFIG"))
    known, _ = pre.parse_known_args(argv)
    defaults = load_yaml(known.config) if known.config else {}

    return build_parser(defaults).parse_args(argv)


def _valid_token(token: str | None) -> bool:
    return bool(token) and UUID_REGEX.match(token) is not None


def _parse_number(value, option: str, cast, allow_zero: bool = False):
    """Convert a CLI, env or YAML value; raises ConfigError unless it is positive."""
    try:
        number = cast(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{option} must be a number, got {value!r}") from None
    if number < 0 or (number == 0 and not allow_zero):
        raise ConfigError(f"{option} must be positive, got {value!r}")
    return number


def load_config(argv: list[str] | None = None) -> ForwarderConfig:
    """Build and validate ForwarderConfig; raises ConfigError when unusable."""
    args = parse_args(argv)

    if args.debug:
        args.log_level = "debug"
    if args.log_level.lower() not in LOG_LEVEL_ALIASES:
        raise ConfigError(f"Unknown log level: {args.log_level}")

    if not (args.logs or args.stats or args.docker_events):
        raise ConfigError("You need to enable either logs, stats or events.")

    routing = RoutingConfig.with_fallback(
        logs=args.logs_token, events=args.events_token, stats=args.stats_token, token=args.token
    )
    if args.logs and not _valid_token(routing.logs):
        raise ConfigError("Logs enabled but log token not supplied or not valid UUID!")
    elif args.stats and not _valid_token(routing.stats):
        raise ConfigError("Stats enabled but stats token not supplied or not valid UUID!")
    elif args.docker_events and not _valid_token(routing.events):
        raise ConfigError("Events enabled but events token not supplied or not valid UUID!")

    endpoint = Endpoint.resolve(args.region, args.server, args.port, args.secure)

    stats_interval = _parse_number(args.stats_interval, "--statsinterval", int)
    reconnect_delay = _parse_number(args.reconnect_delay, "--reconnect-delay", float, allow_zero=True)
    reconnect_max_delay = _parse_number(args.reconnect_max_delay, "--reconnect-max-delay", float)
    queue_size = _parse_number(args.queue_size, "--queue-size", int)

    add = args.add if args.add is not None else [f"host={socket.gethostname()}"]
    if isinstance(add, str):
        add = [add]
    metadata = parse_static_metadata(add)

    return ForwarderConfig(
        region=args.region,
        server=args.server,
        port=endpoint.port,
        secure=args.secure,
        logs=args.logs,
        stats=args.stats,
        docker_events=args.docker_events,
        logs_token=args.logs_token,
        stats_token=args.stats_token,
        events_token=args.events_token,
        token=args.token,
        add=tuple(metadata.items()),
        stats_interval=stats_interval,
        json=args.json,
        match_by_name=args.match_by_name,
        match_by_image=args.match_by_image,
        skip_by_name=args.skip_by_name,
        skip_by_image=args.skip_by_image,
        log_level=args.log_level,
        ca_file=args.ca_file,
        unroutable=args.unroutable,
        reconnect_delay=reconnect_delay,
        reconnect_max_delay=reconnect_max_delay,
        queue_size=queue_size,
    )


def deprecation_notices(argv: list[str]) -> list[str]:
    """Warnings for deprecated flags present in ``argv``."""
    notices = []
    if "--no-dockerEvents" in argv:
        notices.append(
            "'--no-dockerEvents' flag has been renamed to '--no-docker-events' "
            "and may be removed in a next release. Please update your usage."
        )
    if "--debug" in argv:
        notices.append(
            "'--debug' flag has been deprecated in favour of '--log-level debug' "
            "and may be removed in a next release. Please update your usage."
        )
    return notices
