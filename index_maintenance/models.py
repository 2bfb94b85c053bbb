"""
Index Maintenance Models
Core data types shared by the collector, engine and report aggregator.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RecommendedAction(Enum):
    NONE = "NONE"
    REORGANIZE = "REORGANIZE"
    REBUILD = "REBUILD"


class ExecutionStatus(Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class ObjectKind(Enum):
    TABLE = "TABLE"
    VIEW = "VIEW"


class DatabaseScope(Enum):
    """Which databases a run scans."""
    CURRENT = "CURRENT"
    ALL_ELIGIBLE = "ALL_ELIGIBLE"
    SPECIFIC = "SPECIFIC"


class RunOutcome(Enum):
    ERRORS_ENCOUNTERED = "errors encountered"
    MAINTENANCE_COMPLETED = "maintenance completed"
    NO_ACTION_REQUIRED = "no action required"


@dataclass(frozen=True)
class Policy:
    """Thresholds and switches for one run. Loaded once, never mutated."""
    reorganize_threshold: float = 10.0
    rebuild_threshold: float = 30.0
    min_size_units: int = 1000
    execute_actions: bool = True
    include_secondary_objects: bool = True


@dataclass(frozen=True)
class Target:
    name: str
    identifier: str


@dataclass
class RawStructureMetrics:
    """One structure as reported by a metrics provider."""
    container: str
    object_name: str
    object_kind: ObjectKind
    structure_name: str
    structure_kind: str
    fragmentation_percent: float
    size_units: int
    is_disabled: bool = False


@dataclass(frozen=True)
class MaintenanceCommand:
    """Structured remediation command; backends render it to their own dialect."""
    target: str
    verb: RecommendedAction
    container: str
    object_name: str
    structure_name: str
    fill_factor: Optional[int] = None
    online: bool = False

    def describe(self) -> str:
        text = f"{self.verb.value} {self.structure_name} ON {self.container}.{self.object_name}"
        if self.fill_factor is not None:
            text += f" (FILLFACTOR={self.fill_factor}, ONLINE={'ON' if self.online else 'OFF'})"
        return text


@dataclass(frozen=True)
class ActionResult:
    """Outcome of a single external call."""
    ok: bool
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "ActionResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: str) -> "ActionResult":
        return cls(ok=False, reason=reason or "unknown error")


@dataclass
class StructureRecord:
    target: str
    container: str
    object_name: str
    object_kind: ObjectKind
    structure_name: str
    structure_kind: str
    fragmentation_percent: float
    size_units: int
    action: RecommendedAction
    command: Optional[MaintenanceCommand]
    status: ExecutionStatus = ExecutionStatus.PENDING
    failure_reason: Optional[str] = None

    def __post_init__(self):
        if (self.command is None) != (self.action is RecommendedAction.NONE):
            raise ValueError(
                f"Command must be present exactly when an action is recommended "
                f"({self.target}.{self.container}.{self.object_name} [{self.structure_name}])"
            )

    @property
    def is_actionable(self) -> bool:
        return self.action is not RecommendedAction.NONE

    @property
    def qualified_name(self) -> str:
        return f"{self.target}.{self.container}.{self.object_name} [{self.structure_name}]"

    def mark_success(self):
        self._transition(ExecutionStatus.SUCCESS)

    def mark_failed(self, reason: str):
        self._transition(ExecutionStatus.FAILED)
        self.failure_reason = reason

    def _transition(self, status: ExecutionStatus):
        if self.status is not ExecutionStatus.PENDING:
            raise RuntimeError(
                f"{self.qualified_name} already finished with status {self.status.value}"
            )
        self.status = status


@dataclass(frozen=True)
class TargetError:
    target: str
    reason: str


@dataclass
class ExecutionStats:
    """Counters accumulated by one execution pass."""
    executed: bool = False
    rebuilds_performed: int = 0
    reorganizes_performed: int = 0
    errors: int = 0
    stats_refreshed: int = 0
    stats_refresh_failures: int = 0
    cancelled: bool = False


@dataclass(frozen=True)
class TargetSummary:
    name: str
    structures_analyzed: int
    rebuilds_needed: int
    reorganizes_needed: int
    rebuilt: int
    reorganized: int
    failed: int
    collection_error: Optional[str] = None


@dataclass(frozen=True)
class RunSummary:
    started_at: datetime
    finished_at: datetime
    scope: DatabaseScope
    execution_mode: str
    targets_processed: int
    structures_analyzed: int
    rebuilds_performed: int
    reorganizes_performed: int
    errors: int
    outcome: RunOutcome
    targets: List[TargetSummary] = field(default_factory=list)
    target_errors: List[TargetError] = field(default_factory=list)
    stats_refresh_failures: int = 0
    cancelled: bool = False
    actionable_count: int = 0
    detail_lines: List[str] = field(default_factory=list)
    detail_truncated: bool = False
    host_resources: Dict[str, Any] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return self.errors > 0 or bool(self.target_errors)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['scope'] = self.scope.value
        data['outcome'] = self.outcome.value
        data['started_at'] = self.started_at.isoformat()
        data['finished_at'] = self.finished_at.isoformat()
        data['degraded'] = self.degraded
        return data
