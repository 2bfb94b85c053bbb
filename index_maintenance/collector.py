"""
Metrics Collector
Queries the metrics provider per target and turns the results into classified
structure records.
"""

import asyncio
import logging
from typing import List, Optional, Tuple

from .classifier import classify
from .errors import TargetUnavailableError
from .models import (
    ObjectKind, Policy, RawStructureMetrics, RecommendedAction, StructureRecord, Target
)
from .plan import MaintenancePlan
from .providers import MetricsProvider

logger = logging.getLogger('index_maintenance.collector')


class MetricsCollector:
    """Builds the maintenance plan from provider metrics."""

    def __init__(self, provider: MetricsProvider, policy: Policy,
                 concurrency: int = 1, timeout_seconds: Optional[float] = None):
        self.provider = provider
        self.policy = policy
        self.concurrency = max(1, concurrency)
        self.timeout_seconds = timeout_seconds

    def _object_kinds(self) -> List[ObjectKind]:
        if self.policy.include_secondary_objects:
            return [ObjectKind.TABLE, ObjectKind.VIEW]
        return [ObjectKind.TABLE]

    async def _fetch(self, target: Target, kind: ObjectKind) -> List[RawStructureMetrics]:
        try:
            return await asyncio.wait_for(self.provider.fetch(target, kind), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            raise TargetUnavailableError(
                target.name, f"{kind.value.lower()} metrics timed out after {self.timeout_seconds}s"
            )
        except TargetUnavailableError:
            raise
        except Exception as e:
            raise TargetUnavailableError(target.name, str(e) or type(e).__name__) from e

    def _build_record(self, target: Target, raw: RawStructureMetrics) -> StructureRecord:
        action, command = classify(
            raw.fragmentation_percent,
            raw.size_units,
            self.policy,
            target=target.name,
            container=raw.container,
            object_name=raw.object_name,
            structure_name=raw.structure_name
        )
        return StructureRecord(
            target=target.name,
            container=raw.container,
            object_name=raw.object_name,
            object_kind=raw.object_kind,
            structure_name=raw.structure_name,
            structure_kind=raw.structure_kind,
            fragmentation_percent=float(raw.fragmentation_percent),
            size_units=int(raw.size_units),
            action=action,
            command=command
        )

    async def collect_target(self, target: Target) -> List[StructureRecord]:
        """Collect one target. Raises TargetUnavailableError when any provider call fails."""
        records: List[StructureRecord] = []
        for kind in self._object_kinds():
            for raw in await self._fetch(target, kind):
                # Disabled and empty structures carry no actionable signal
                if raw.is_disabled or raw.size_units <= 0:
                    continue
                # Providers are asked per kind; keep the record honest if one ignores the filter
                if raw.object_kind is not kind:
                    continue
                records.append(self._build_record(target, raw))
        return records

    async def collect(self, targets: List[Target]) -> MaintenancePlan:
        """Collect all targets into a new plan.

        Targets may be fetched concurrently; each one fills its own buffer and the
        buffers are merged in target-list order once all fetches are done.
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def collect_with_semaphore(target: Target) -> Tuple[Target, Optional[List[StructureRecord]], Optional[str]]:
            async with semaphore:
                logger.info(f"Collecting index statistics for database: {target.name}")
                try:
                    return target, await self.collect_target(target), None
                except TargetUnavailableError as e:
                    logger.error(f"Database {target.name} could not be scanned: {e.reason}")
                    return target, None, e.reason

        results = await asyncio.gather(*(collect_with_semaphore(t) for t in targets))

        plan = MaintenancePlan()
        for target, records, error in results:
            if error is not None:
                plan.record_target_error(target, error)
                continue
            plan.extend(target, records)

            rebuilds = sum(1 for r in records if r.action is RecommendedAction.REBUILD)
            reorganizes = sum(1 for r in records if r.action is RecommendedAction.REORGANIZE)
            logger.info(
                f"{target.name}: indexes analyzed: {len(records)}, "
                f"rebuilds needed: {rebuilds}, reorganizations needed: {reorganizes}"
            )

        logger.info(f"Collected {len(plan)} structures from {len(targets)} databases "
                    f"({len(plan.target_errors)} unavailable)")
        return plan
