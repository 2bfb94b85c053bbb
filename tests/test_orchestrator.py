# python -m pytest tests/test_orchestrator.py -v

"""End-to-end tests for the maintenance runner with fake collaborators."""

import asyncio

import pytest

from index_maintenance import orchestrator
from index_maintenance.config import get_default_config, parse_config
from index_maintenance.errors import ConfigurationError, TargetNotFoundError
from index_maintenance.models import ExecutionStatus, ObjectKind, RunOutcome, Target
from index_maintenance.orchestrator import (
    EXIT_DEGRADED, EXIT_FATAL, EXIT_INTERRUPTED, EXIT_OK, IndexMaintenanceRunner, build_runner
)

from tests.fakes import (
    FakeDiscovery, FakeMetricsProvider, RecordingChannel, RecordingExecutor, RecordingRefresher, raw
)

TARGETS = [Target('Sales', '5'), Target('Inventory', '6')]


def _config(**overrides):
    raw_config = get_default_config()
    for section, values in overrides.items():
        raw_config[section].update(values)
    return parse_config(raw_config)


def _metrics():
    return {
        'Sales': [
            raw('Orders', 'IX_Orders_Date', 45.0),
            raw('Orders', 'IX_Orders_Customer', 18.0),
            raw('vRevenue', 'IX_vRevenue', 70.0, kind=ObjectKind.VIEW),
        ],
        'Inventory': [
            raw('Items', 'PK_Items', 2.0),
            raw('Items', 'IX_Items_Sku', 33.0),
        ],
    }


def _runner(config, executor=None, provider=None, channels=None, targets=TARGETS):
    return IndexMaintenanceRunner(
        config,
        discovery=FakeDiscovery(targets),
        provider=provider or FakeMetricsProvider(_metrics()),
        executor=executor or RecordingExecutor(),
        refresher=RecordingRefresher(),
        channels=channels if channels is not None else [RecordingChannel()]
    )


class TestRunner:

    def test_full_run(self):
        channel = RecordingChannel()
        executor = RecordingExecutor()
        result = asyncio.run(_runner(_config(), executor=executor, channels=[channel]).run())
        summary = result.summary

        assert result.exit_code == EXIT_OK
        assert summary.targets_processed == 2
        assert summary.structures_analyzed == 5
        assert summary.rebuilds_performed == 3
        assert summary.reorganizes_performed == 1
        assert summary.outcome is RunOutcome.MAINTENANCE_COMPLETED
        # Targets are processed in name order
        assert [t for t, _ in executor.applied] == ['Inventory', 'Sales', 'Sales', 'Sales']

        subject, body, payload = channel.sent[0]
        assert subject == '[SQL Server] Index Maintenance Report - MAINTENANCE COMPLETED'
        assert 'Indexes rebuilt: 3' in body
        assert payload['rebuilds_performed'] == 3

    def test_mutation_errors_degrade_exit_code(self):
        executor = RecordingExecutor(fail_structures={'IX_Orders_Customer'})
        result = asyncio.run(_runner(_config(), executor=executor).run())

        assert result.exit_code == EXIT_DEGRADED
        assert result.summary.errors == 1
        assert result.summary.rebuilds_performed == 3
        assert result.summary.outcome is RunOutcome.ERRORS_ENCOUNTERED

    def test_unavailable_target_degrades_but_continues(self):
        provider = FakeMetricsProvider(_metrics(), failing={'Inventory'})
        result = asyncio.run(_runner(_config(), provider=provider).run())

        assert result.exit_code == EXIT_DEGRADED
        assert result.summary.errors == 0
        assert result.summary.rebuilds_performed == 2
        assert [e.target for e in result.summary.target_errors] == ['Inventory']

    def test_analysis_only(self):
        executor = RecordingExecutor()
        config = _config(policy={'execute_actions': False})
        result = asyncio.run(_runner(config, executor=executor).run())

        assert executor.applied == []
        assert result.exit_code == EXIT_OK
        assert result.summary.execution_mode == 'ANALYSIS ONLY'
        assert result.summary.actionable_count == 4

    def test_specific_target_not_found_is_fatal(self):
        executor = RecordingExecutor()
        config = _config(scope={'mode': 'SPECIFIC', 'database': 'Payroll'})
        with pytest.raises(TargetNotFoundError, match='Payroll'):
            asyncio.run(_runner(config, executor=executor).run())
        assert executor.applied == []

    def test_specific_target(self):
        config = _config(scope={'mode': 'SPECIFIC', 'database': 'Inventory'})
        result = asyncio.run(_runner(config).run())
        assert [t.name for t in result.summary.targets] == ['Inventory']

    def test_report_failure_does_not_change_outcome(self):
        channels = [RecordingChannel(fail=True), RecordingChannel(raises=True)]
        result = asyncio.run(_runner(_config(), channels=channels).run())

        assert result.exit_code == EXIT_OK
        assert result.report_delivery == {'recording': 'mail relay unreachable'}
        assert all(len(c.sent) == 1 for c in channels)

    def test_report_disabled(self):
        channel = RecordingChannel()
        asyncio.run(_runner(_config(report={'enabled': False}), channels=[channel]).run())
        assert channel.sent == []

    def test_cancel_before_run_leaves_everything_pending(self):
        executor = RecordingExecutor()
        runner = _runner(_config(), executor=executor)
        runner.request_cancel()
        result = asyncio.run(runner.run())

        assert executor.applied == []
        assert result.summary.cancelled is True
        assert result.exit_code == EXIT_INTERRUPTED

    def test_sqlserver_backend_requires_connection_factory(self):
        with pytest.raises(ConfigurationError):
            build_runner(_config(backend={'type': 'sqlserver'}))


class TestMain:

    def test_invalid_config_exits_fatal(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text("policy:\n  reorganize_threshold: 50\n  rebuild_threshold: 20\n")
        assert orchestrator.main(['--config', str(path)]) == EXIT_FATAL

    def test_missing_specific_database_exits_fatal(self, tmp_path):
        path = tmp_path / 'maintenance.yaml'
        path.write_text(
            "backend:\n"
            "  sqlite:\n"
            f"    database_path: {tmp_path / 'app.db'}\n"
            f"    database_dir: {tmp_path}\n"
        )
        code = orchestrator.main(['--config', str(path), '--scope', 'SPECIFIC',
                                  '--database', 'nothing_here', '--no-report'])
        assert code == EXIT_FATAL
