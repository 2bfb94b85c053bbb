"""
Maintenance Plan
Ordered, run-owned collection of classified structures across all targets.
"""

from typing import Dict, List

from .models import ObjectKind, RecommendedAction, StructureRecord, Target, TargetError

_KIND_ORDER = {ObjectKind.TABLE: 1, ObjectKind.VIEW: 2}
_ACTION_ORDER = {RecommendedAction.REBUILD: 1, RecommendedAction.REORGANIZE: 2}


def execution_sort_key(record: StructureRecord):
    """Target ascending, tables before views, rebuilds first, worst fragmentation first."""
    return (
        record.target,
        _KIND_ORDER[record.object_kind],
        _ACTION_ORDER.get(record.action, 3),
        -record.fragmentation_percent
    )


class MaintenancePlan:
    """All structures found in one run, in collection order."""

    def __init__(self):
        self._records: List[StructureRecord] = []
        self._targets: List[Target] = []
        self._target_errors: List[TargetError] = []

    def extend(self, target: Target, records: List[StructureRecord]):
        """Add one target's collected structures."""
        self._targets.append(target)
        self._records.extend(records)

    def record_target_error(self, target: Target, reason: str):
        self._targets.append(target)
        self._target_errors.append(TargetError(target=target.name, reason=reason))

    @property
    def records(self) -> List[StructureRecord]:
        return list(self._records)

    @property
    def targets(self) -> List[Target]:
        return list(self._targets)

    @property
    def target_errors(self) -> List[TargetError]:
        return list(self._target_errors)

    def actionable(self) -> List[StructureRecord]:
        return [r for r in self._records if r.is_actionable]

    def execution_order(self) -> List[StructureRecord]:
        return sorted(self.actionable(), key=execution_sort_key)

    def for_target(self, name: str) -> List[StructureRecord]:
        return [r for r in self._records if r.target == name]

    def counts_by_target(self) -> Dict[str, Dict[str, int]]:
        counts: Dict[str, Dict[str, int]] = {}
        for target in self._targets:
            counts.setdefault(target.name, {'analyzed': 0, 'rebuild': 0, 'reorganize': 0})
        for record in self._records:
            bucket = counts.setdefault(record.target, {'analyzed': 0, 'rebuild': 0, 'reorganize': 0})
            bucket['analyzed'] += 1
            if record.action is RecommendedAction.REBUILD:
                bucket['rebuild'] += 1
            elif record.action is RecommendedAction.REORGANIZE:
                bucket['reorganize'] += 1
        return counts

    def __len__(self) -> int:
        return len(self._records)
