"""
Report Aggregator
Turns the final plan state into a RunSummary and renders the report text.
"""

from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .models import (
    DatabaseScope, ExecutionStats, ExecutionStatus, Policy, RecommendedAction, RunOutcome,
    RunSummary, StructureRecord, TargetSummary
)
from .plan import MaintenancePlan

DETAIL_BUDGET_CHARS = 3000
LINE_BREAK = "\r\n"

_STATUS_ORDER = {ExecutionStatus.FAILED: 0, ExecutionStatus.SUCCESS: 1, ExecutionStatus.PENDING: 2}


def detail_line(record: StructureRecord) -> str:
    status = record.status.value
    if record.status is ExecutionStatus.FAILED:
        status = f"ERROR: {record.failure_reason}"
    return (f"{record.qualified_name} - {record.action.value} "
            f"({record.fragmentation_percent:.2f}%) - {status}")


def build_detail_lines(records: List[StructureRecord],
                       budget: int = DETAIL_BUDGET_CHARS) -> Tuple[List[str], bool]:
    """Sorted detail lines for actionable records, cut once the text would exceed the budget."""
    ordered = sorted(
        (r for r in records if r.is_actionable),
        key=lambda r: (r.target, _STATUS_ORDER[r.status], -r.fragmentation_percent)
    )
    lines: List[str] = []
    used = 0
    for record in ordered:
        line = detail_line(record)
        cost = len(line) + len(LINE_BREAK)
        if used + cost > budget:
            return lines, True
        lines.append(line)
        used += cost
    return lines, False


def determine_outcome(errors: int, performed: int, target_errors: int = 0) -> RunOutcome:
    if errors > 0 or target_errors > 0:
        return RunOutcome.ERRORS_ENCOUNTERED
    if performed > 0:
        return RunOutcome.MAINTENANCE_COMPLETED
    return RunOutcome.NO_ACTION_REQUIRED


class ReportAggregator:
    """Computes run counters from the final plan. Reads only, never mutates."""

    def __init__(self, detail_budget: int = DETAIL_BUDGET_CHARS):
        self.detail_budget = detail_budget

    def aggregate(self, plan: MaintenancePlan, policy: Policy, scope: DatabaseScope,
                  started_at: datetime, finished_at: Optional[datetime] = None,
                  execution: Optional[ExecutionStats] = None) -> RunSummary:
        execution = execution or ExecutionStats()
        records = plan.records

        needed = plan.counts_by_target()
        done: Dict[str, Dict[str, int]] = {name: dict(rebuilt=0, reorganized=0, failed=0) for name in needed}
        rebuilt = reorganized = failed = 0

        for record in records:
            if not record.is_actionable:
                continue
            counts = done[record.target]
            if record.status is ExecutionStatus.SUCCESS:
                if record.action is RecommendedAction.REBUILD:
                    rebuilt += 1
                    counts['rebuilt'] += 1
                else:
                    reorganized += 1
                    counts['reorganized'] += 1
            elif record.status is ExecutionStatus.FAILED:
                failed += 1
                counts['failed'] += 1

        collection_errors = {e.target: e.reason for e in plan.target_errors}
        targets = [
            TargetSummary(
                name=name,
                structures_analyzed=c['analyzed'],
                rebuilds_needed=c['rebuild'],
                reorganizes_needed=c['reorganize'],
                rebuilt=done[name]['rebuilt'],
                reorganized=done[name]['reorganized'],
                failed=done[name]['failed'],
                collection_error=collection_errors.get(name)
            )
            for name, c in needed.items()
        ]

        lines, truncated = build_detail_lines(records, self.detail_budget)

        return RunSummary(
            started_at=started_at,
            finished_at=finished_at or datetime.now(),
            scope=scope,
            execution_mode='EXECUTE' if policy.execute_actions else 'ANALYSIS ONLY',
            targets_processed=len(plan.targets),
            structures_analyzed=len(records),
            rebuilds_performed=rebuilt,
            reorganizes_performed=reorganized,
            errors=failed,
            outcome=determine_outcome(failed, rebuilt + reorganized, len(plan.target_errors)),
            targets=targets,
            target_errors=plan.target_errors,
            stats_refresh_failures=execution.stats_refresh_failures,
            cancelled=execution.cancelled,
            actionable_count=len(plan.actionable()),
            detail_lines=lines,
            detail_truncated=truncated
        )


def render_subject(summary: RunSummary, prefix: str = '') -> str:
    subject = f"Index Maintenance Report - {summary.outcome.value.upper()}"
    return f"{prefix} {subject}" if prefix else subject


def render_body(summary: RunSummary, policy: Policy, specific_database: str = '') -> str:
    """Plain text report body."""
    out: List[str] = []
    add = out.append

    scope_text = summary.scope.value
    if summary.scope is DatabaseScope.SPECIFIC:
        scope_text += f" ({specific_database})"

    add(f"Index Maintenance Report - {summary.finished_at.strftime('%Y-%m-%d %H:%M:%S')}")
    add("=" * 53)
    add("")
    add("Configuration:")
    add(f"Database Scope: {scope_text}")
    add(f"Databases processed: {summary.targets_processed}")
    add(f"Execution mode: {summary.execution_mode}")
    add(f"Reorganize from: {policy.reorganize_threshold}% fragmentation")
    add(f"Rebuild from: {policy.rebuild_threshold}% fragmentation")
    add(f"Minimum page count: {policy.min_size_units}")
    add("")

    for target in summary.targets:
        add(f"Database: {target.name}")
        add("-" * 40)
        if target.collection_error:
            add(f"ERROR: could not be scanned: {target.collection_error}")
        else:
            add(f"Indexes analyzed: {target.structures_analyzed}")
            add(f"Rebuilds needed: {target.rebuilds_needed}")
            add(f"Reorganizations needed: {target.reorganizes_needed}")
        add("")

    if summary.actionable_count == 0:
        add("No maintenance required!")
    else:
        add("Maintenance Execution:")
        add("=" * 21)
        if summary.execution_mode != 'EXECUTE':
            add("ANALYSIS MODE - Commands not executed")
        elif summary.cancelled:
            add("Run cancelled - remaining commands not executed")
    add("")

    add("Final Summary:")
    add("=" * 13)
    add(f"Databases processed: {summary.targets_processed}")
    add(f"Total indexes analyzed: {summary.structures_analyzed}")
    add(f"Indexes rebuilt: {summary.rebuilds_performed}")
    add(f"Indexes reorganized: {summary.reorganizes_performed}")
    add(f"Errors encountered: {summary.errors}")
    if summary.target_errors:
        add(f"Databases not scanned: {len(summary.target_errors)}")
    if summary.stats_refresh_failures:
        add(f"Statistics updates failed: {summary.stats_refresh_failures}")
    add("")

    if summary.detail_lines:
        add("Detailed Results:")
        add("=" * 17)
        out.extend(summary.detail_lines)
        if summary.detail_truncated:
            add("(further entries omitted)")

    return LINE_BREAK.join(out) + LINE_BREAK
