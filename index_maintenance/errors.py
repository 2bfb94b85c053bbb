"""Error taxonomy for index maintenance runs.

Only ConfigurationError (and TargetNotFoundError) abort a run. The rest are
recorded per target or per entry and surface in the summary and the logs.
"""


class IndexMaintenanceError(Exception):
    """Base class for all index maintenance errors."""


class ConfigurationError(IndexMaintenanceError):
    """Invalid configuration; raised before any processing starts."""


class TargetNotFoundError(ConfigurationError):
    """A SPECIFIC scope named a database that does not exist or is not accessible."""

    def __init__(self, name: str):
        super().__init__(f"Database '{name}' not found or not accessible")
        self.name = name


class TargetUnavailableError(IndexMaintenanceError):
    """One target could not be scanned."""

    def __init__(self, target: str, reason: str):
        super().__init__(f"{target}: {reason}")
        self.target = target
        self.reason = reason


class MutationError(IndexMaintenanceError):
    """A remediation command failed for one structure."""


class StatsRefreshError(IndexMaintenanceError):
    """A statistics refresh failed. Never counted as a run error."""


class ReportDeliveryError(IndexMaintenanceError):
    """The final report could not be delivered."""
