"""Interfaces to the external collaborators of a maintenance run."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .models import (
    ActionResult, DatabaseScope, MaintenanceCommand, ObjectKind, RawStructureMetrics, Target
)


class TargetDiscovery(ABC):
    """Enumerates the databases a run should scan."""

    @abstractmethod
    async def list_targets(self, scope: DatabaseScope,
                           specific_name: Optional[str] = None) -> List[Target]:
        """Return candidate targets. An empty list for SPECIFIC means not found."""


class MetricsProvider(ABC):
    """Reports physical fragmentation and size per structure."""

    @abstractmethod
    async def fetch(self, target: Target, object_kind: ObjectKind) -> List[RawStructureMetrics]:
        """Return structures owned by objects of the given kind. Raises on failure."""


class MutationExecutor(ABC):
    """Applies remediation commands."""

    @abstractmethod
    async def apply(self, target: Target, command: MaintenanceCommand) -> ActionResult:
        """Apply one command; failure reasons must be readable in a report.

        When cancelled, stop the running statement and return only once it has
        ended (see backends.statements.run_statement).
        """


class StatsRefresher(ABC):
    """Refreshes optimizer statistics for a maintained object. Best effort.

    Cancellation is handled as for MutationExecutor.
    """

    @abstractmethod
    async def refresh(self, target: Target, container: str, object_name: str) -> ActionResult:
        ...


class ReportChannel(ABC):
    """Delivers the final report."""

    name = "channel"

    @abstractmethod
    async def send(self, subject: str, body: str, payload: Dict[str, Any]) -> ActionResult:
        ...
