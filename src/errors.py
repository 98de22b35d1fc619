"""Exception hierarchy for the forwarder."""


class ForwarderError(Exception):
    """Base class for forwarder errors."""


class ConfigError(ForwarderError):
    """Startup configuration is unusable; raised before any connection attempt."""


class UnroutableRecordError(ForwarderError):
    """A record had no resolvable kind or no token (raise policy only)."""


class InsecureConnectionError(ForwarderError):
    """The secure channel failed authorization. Never recovered from."""
