"""
Execution Engine
Applies the plan's remediation commands one at a time in a fixed order, isolating
each failure, then refreshes statistics for every object that was maintained.
"""

import asyncio
import logging
from typing import Awaitable, Dict, List, Optional, Tuple

from .models import (
    ActionResult, ExecutionStats, ExecutionStatus, Policy, RecommendedAction, StructureRecord, Target
)
from .plan import MaintenancePlan
from .providers import MutationExecutor, StatsRefresher

logger = logging.getLogger('index_maintenance.engine')


class ExecutionEngine:
    """Serial executor for a maintenance plan."""

    def __init__(self, executor: MutationExecutor, refresher: StatsRefresher, policy: Policy,
                 mutation_timeout_seconds: Optional[float] = None,
                 stats_timeout_seconds: Optional[float] = None,
                 cancel_event: Optional[asyncio.Event] = None):
        self.executor = executor
        self.refresher = refresher
        self.policy = policy
        self.mutation_timeout_seconds = mutation_timeout_seconds
        self.stats_timeout_seconds = stats_timeout_seconds
        self.cancel_event = cancel_event or asyncio.Event()

    def cancel(self):
        """Stop before the next entry is started. The entry in flight finishes."""
        self.cancel_event.set()

    async def _settle(self, call: Awaitable[ActionResult], timeout: Optional[float],
                      label: str) -> ActionResult:
        """Await one adapter call, returning only once its statement has ended.

        On timeout the call is cancelled and awaited again: adapters stop their
        statement on cancellation, so the next entry never overlaps this one.
        """
        task = asyncio.ensure_future(call)
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if not done:
                task.cancel()
                await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.wait({task})
            raise

        if task.cancelled():
            return ActionResult.failure(f"timed out after {timeout}s")
        error = task.exception()
        if error is not None:
            return ActionResult.failure(str(error) or type(error).__name__)
        result = task.result()
        if not isinstance(result, ActionResult):
            return ActionResult.failure(f"{label} returned unexpected result {result!r}")
        if not done:
            logger.warning(f"{label} finished after the {timeout}s timeout; keeping its result")
        return result

    async def _apply(self, target: Target, record: StructureRecord) -> ActionResult:
        return await self._settle(self.executor.apply(target, record.command),
                                  self.mutation_timeout_seconds, "executor")

    async def _refresh(self, target: Target, container: str, object_name: str) -> ActionResult:
        return await self._settle(self.refresher.refresh(target, container, object_name),
                                  self.stats_timeout_seconds, "statistics refresh")

    async def execute(self, plan: MaintenancePlan) -> ExecutionStats:
        stats = ExecutionStats()
        entries = plan.execution_order()

        if not entries:
            logger.info("No maintenance required!")
            return stats

        if not self.policy.execute_actions:
            logger.info(f"Analysis mode - {len(entries)} commands not executed")
            return stats

        targets: Dict[str, Target] = {t.name: t for t in plan.targets}
        stats.executed = True
        total = len(entries)
        logger.info(f"Executing maintenance commands. Total commands: {total}")

        for counter, record in enumerate(entries, start=1):
            if self.cancel_event.is_set():
                stats.cancelled = True
                logger.warning(f"Cancellation requested, {total - counter + 1} commands left pending")
                break

            logger.info(f"Executing {counter}/{total} on {record.target}: {record.command.describe()}")
            result = await self._apply(targets[record.target], record)

            if result.ok:
                record.mark_success()
                if record.action is RecommendedAction.REBUILD:
                    stats.rebuilds_performed += 1
                else:
                    stats.reorganizes_performed += 1
                logger.info("-- Success")
            else:
                record.mark_failed(result.reason)
                stats.errors += 1
                logger.error(f"-- Error on {record.qualified_name}: {result.reason}")

        await self._refresh_statistics(entries, targets, stats)

        logger.info(
            f"Execution finished: {stats.rebuilds_performed} rebuilt, "
            f"{stats.reorganizes_performed} reorganized, {stats.errors} errors"
        )
        return stats

    async def _refresh_statistics(self, entries: List[StructureRecord],
                                  targets: Dict[str, Target], stats: ExecutionStats):
        """One refresh per maintained object, however many of its indexes were touched."""
        objects: List[Tuple[str, str, str]] = []
        for record in entries:
            if record.status is not ExecutionStatus.SUCCESS:
                continue
            key = (record.target, record.container, record.object_name)
            if key not in objects:
                objects.append(key)

        if not objects:
            return

        logger.info(f"Updating statistics for {len(objects)} objects...")
        for target_name, container, object_name in objects:
            result = await self._refresh(targets[target_name], container, object_name)
            if result.ok:
                stats.stats_refreshed += 1
            else:
                stats.stats_refresh_failures += 1
                logger.warning(
                    f"-- Warning: Statistics update failed for {target_name}.{container}.{object_name}: "
                    f"{result.reason}"
                )
