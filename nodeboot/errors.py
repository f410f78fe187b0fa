"""Error taxonomy for the bootstrap pipeline.

Every fatal stage failure is a ``BootstrapError``; the pipeline turns it into
exit status 1. Unmount failures are not errors at all (they are logged).
"""


class BootstrapError(RuntimeError):
    """Base error for all fatal bootstrap failures."""

    exit_code = 1


class ConfigError(BootstrapError):
    """Config file missing, unreadable, or holding an invalid value."""


class ResolutionError(BootstrapError):
    """A required path cannot be made absolute."""


class KVUnavailableError(BootstrapError):
    """The key-value backend did not report healthy in time."""


class ReconcileError(BootstrapError):
    """A stale mount directory could not be cleared."""


class BuildError(BootstrapError):
    """The build tool failed, timed out, or could not be started."""


class LaunchError(BootstrapError):
    """The mount directory could not be created or the node failed to start."""
