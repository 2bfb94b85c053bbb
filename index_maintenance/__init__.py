"""Index fragmentation analysis and maintenance."""

from .classifier import classify
from .collector import MetricsCollector
from .config import MaintenanceConfig, load_config, parse_config
from .engine import ExecutionEngine
from .models import (
    ActionResult, DatabaseScope, ExecutionStatus, MaintenanceCommand, ObjectKind, Policy,
    RawStructureMetrics, RecommendedAction, RunOutcome, RunSummary, StructureRecord, Target
)
from .orchestrator import IndexMaintenanceRunner, build_runner
from .plan import MaintenancePlan
from .report import ReportAggregator

__version__ = "0.1.0"
