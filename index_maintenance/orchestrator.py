#!/usr/bin/env python3
"""
Index Maintenance Orchestrator
Analyzes index fragmentation across one or more databases, rebuilds or reorganizes
what needs it, refreshes statistics and reports the outcome.

Usage:
    index-maintenance --config maintenance.yaml
    index-maintenance --config maintenance.yaml --mode analyze
    index-maintenance --scope SPECIFIC --database sales --no-report
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import psutil

from .backends import sqlite as sqlite_backend
from .backends import sqlserver as sqlserver_backend
from .collector import MetricsCollector
from .config import MaintenanceConfig, load_config
from .engine import ExecutionEngine
from .errors import ConfigurationError, IndexMaintenanceError, TargetNotFoundError
from .models import DatabaseScope, RunSummary, Target
from .notifications import build_channels, deliver_report
from .providers import MetricsProvider, MutationExecutor, ReportChannel, StatsRefresher, TargetDiscovery
from .report import ReportAggregator, render_body, render_subject

logger = logging.getLogger('index_maintenance.orchestrator')

EXIT_OK = 0
EXIT_DEGRADED = 1
EXIT_FATAL = 2
EXIT_INTERRUPTED = 130


@dataclass(frozen=True)
class RunResult:
    summary: RunSummary
    exit_code: int
    report_delivery: Dict[str, Optional[str]]


def collect_host_resources(data_path: Optional[str] = None) -> Dict[str, Any]:
    """Best-effort snapshot of host resources for the report."""
    try:
        memory_usage = psutil.virtual_memory()
        resources = {
            'cpu_percent': psutil.cpu_percent(interval=None),
            'memory_percent': memory_usage.percent
        }
        if data_path:
            disk_usage = psutil.disk_usage(data_path)
            resources['disk_percent'] = disk_usage.percent
            resources['available_disk_gb'] = round(disk_usage.free / 1024 / 1024 / 1024, 2)
        return resources
    except Exception as e:
        logger.debug(f"Host resource snapshot unavailable: {e}")
        return {}


class IndexMaintenanceRunner:
    """Runs discovery, collection, execution, aggregation and reporting in order."""

    def __init__(self, config: MaintenanceConfig, discovery: TargetDiscovery,
                 provider: MetricsProvider, executor: MutationExecutor,
                 refresher: StatsRefresher, channels: Optional[List[ReportChannel]] = None,
                 data_path: Optional[str] = None):
        self.config = config
        self.discovery = discovery
        self.provider = provider
        self.executor = executor
        self.refresher = refresher
        self.channels = channels if channels is not None else []
        self.data_path = data_path
        self._cancel_event: Optional[asyncio.Event] = None
        self._cancel_requested = False

    def request_cancel(self):
        """Stop before the next maintenance command starts."""
        self._cancel_requested = True
        if self._cancel_event is not None:
            self._cancel_event.set()
        logger.warning("Cancellation requested; finishing the current command")

    async def discover_targets(self) -> List[Target]:
        scope = self.config.scope
        specific = self.config.specific_database if scope is DatabaseScope.SPECIFIC else None
        try:
            targets = await self.discovery.list_targets(scope, specific)
        except IndexMaintenanceError:
            raise
        except Exception as e:
            raise IndexMaintenanceError(f"Database discovery failed: {e}") from e

        if scope is DatabaseScope.SPECIFIC and not targets:
            raise TargetNotFoundError(specific)
        # Processed in name order
        return sorted(targets, key=lambda t: t.name)

    def _log_configuration(self, target_count: int):
        policy = self.config.policy
        scope_text = self.config.scope.value
        if self.config.scope is DatabaseScope.SPECIFIC:
            scope_text += f" ({self.config.specific_database})"
        logger.info("ADVANCED INDEX MAINTENANCE ANALYSIS")
        logger.info(f"Database Scope: {scope_text}")
        logger.info(f"Databases to process: {target_count}")
        logger.info(f"Reorganize from: {policy.reorganize_threshold}% fragmentation")
        logger.info(f"Rebuild from: {policy.rebuild_threshold}% fragmentation")
        logger.info(f"Minimum page count: {policy.min_size_units}")
        logger.info(f"Include indexed views: {'YES' if policy.include_secondary_objects else 'NO'}")
        logger.info(f"Execute commands: {'YES' if policy.execute_actions else 'NO (analysis only)'}")
        logger.info(f"Send report: {'YES' if self.config.report.enabled else 'NO'}")

    def _log_summary(self, summary: RunSummary):
        logger.info("FINAL SUMMARY")
        logger.info(f"Databases processed: {summary.targets_processed}")
        logger.info(f"Total indexes analyzed: {summary.structures_analyzed}")
        logger.info(f"Indexes rebuilt: {summary.rebuilds_performed}")
        logger.info(f"Indexes reorganized: {summary.reorganizes_performed}")
        logger.info(f"Errors encountered: {summary.errors}")
        for error in summary.target_errors:
            logger.warning(f"Database not scanned: {error.target} ({error.reason})")
        logger.info(f"Outcome: {summary.outcome.value.upper()}")

    @staticmethod
    def exit_code_for(summary: RunSummary) -> int:
        if summary.cancelled:
            return EXIT_INTERRUPTED
        if summary.degraded:
            return EXIT_DEGRADED
        return EXIT_OK

    async def run(self) -> RunResult:
        started_at = datetime.now()
        self._cancel_event = asyncio.Event()
        if self._cancel_requested:
            self._cancel_event.set()

        targets = await self.discover_targets()
        self._log_configuration(len(targets))

        execution_settings = self.config.execution
        collector = MetricsCollector(
            self.provider,
            self.config.policy,
            concurrency=execution_settings.collection_concurrency,
            timeout_seconds=execution_settings.metrics_timeout_seconds
        )
        plan = await collector.collect(targets)

        engine = ExecutionEngine(
            self.executor,
            self.refresher,
            self.config.policy,
            mutation_timeout_seconds=execution_settings.mutation_timeout_seconds,
            stats_timeout_seconds=execution_settings.stats_timeout_seconds,
            cancel_event=self._cancel_event
        )
        execution = await engine.execute(plan)

        summary = ReportAggregator().aggregate(
            plan,
            self.config.policy,
            self.config.scope,
            started_at=started_at,
            execution=execution
        )
        summary = replace(summary, host_resources=collect_host_resources(self.data_path))
        self._log_summary(summary)

        delivery: Dict[str, Optional[str]] = {}
        if self.config.report.enabled:
            if self.channels:
                subject = render_subject(summary, self.config.report.subject_prefix)
                body = render_body(summary, self.config.policy, self.config.specific_database)
                delivery = await deliver_report(self.channels, subject, body, summary.to_dict())
            else:
                logger.warning("Report enabled but no email recipients or webhook configured")

        if not self.config.policy.execute_actions:
            logger.info("NOTE: To execute maintenance commands, run with --mode execute")

        return RunResult(summary=summary, exit_code=self.exit_code_for(summary), report_delivery=delivery)


def build_runner(config: MaintenanceConfig,
                 connect: Optional[Callable[[Optional[str]], Any]] = None,
                 channels: Optional[List[ReportChannel]] = None) -> IndexMaintenanceRunner:
    """Wire the configured backend and report channels into a runner."""
    if channels is None:
        channels = build_channels(config.report)

    if config.backend == 'sqlite':
        options = config.backend_options
        database_path = options.get('database_path', './data/app.db')
        database_dir = options.get('database_dir') or os.path.dirname(os.path.abspath(database_path))
        return IndexMaintenanceRunner(
            config,
            discovery=sqlite_backend.SqliteTargetDiscovery(database_path, database_dir),
            provider=sqlite_backend.SqliteMetricsProvider(),
            executor=sqlite_backend.SqliteMutationExecutor(),
            refresher=sqlite_backend.SqliteStatsRefresher(),
            channels=channels,
            data_path=database_dir
        )

    if connect is None:
        raise ConfigurationError(
            "The sqlserver backend needs a DB-API connection factory; "
            "call build_runner(config, connect=...) from your own entry point"
        )
    return IndexMaintenanceRunner(
        config,
        discovery=sqlserver_backend.SqlServerTargetDiscovery(connect),
        provider=sqlserver_backend.SqlServerMetricsProvider(connect),
        executor=sqlserver_backend.SqlServerMutationExecutor(connect),
        refresher=sqlserver_backend.SqlServerStatsRefresher(connect),
        channels=channels
    )


def setup_logging(level: str = 'INFO', log_file: Optional[str] = None):
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Index fragmentation analysis and maintenance')
    parser.add_argument('--config', default='./config/maintenance.yaml', help='Configuration file path')
    parser.add_argument('--mode', choices=['analyze', 'execute'],
                        help='analyze = report only, execute = run maintenance commands')
    parser.add_argument('--scope', choices=[s.value for s in DatabaseScope], help='Database scope')
    parser.add_argument('--database', help='Database name for SPECIFIC scope')
    parser.add_argument('--no-report', action='store_true', help='Do not send the report')
    parser.add_argument('--output', choices=['json', 'text'], default='json', help='Summary output format')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        config = load_config(args.config).with_overrides(
            execute_actions=None if args.mode is None else args.mode == 'execute',
            scope=DatabaseScope(args.scope) if args.scope else None,
            specific_database=args.database,
            send_report=False if args.no_report else None
        )
    except ConfigurationError as e:
        setup_logging()
        logger.error(f"Configuration error: {e}")
        return EXIT_FATAL

    setup_logging(config.log_level, config.log_file)

    try:
        runner = build_runner(config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_FATAL

    async def run_operation() -> RunResult:
        loop = asyncio.get_running_loop()

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, stopping after the current command")
            loop.call_soon_threadsafe(runner.request_cancel)

        previous = {sig: signal.signal(sig, signal_handler) for sig in (signal.SIGINT, signal.SIGTERM)}
        try:
            return await runner.run()
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    try:
        result = asyncio.run(run_operation())
    except ConfigurationError as e:
        logger.error(f"ERROR: {e}")
        return EXIT_FATAL
    except Exception as e:
        logger.error(f"Index maintenance failed: {e}")
        return EXIT_DEGRADED

    if args.output == 'text':
        print(render_body(result.summary, config.policy, config.specific_database))
    else:
        print(json.dumps(result.summary.to_dict(), indent=2, default=str))
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
