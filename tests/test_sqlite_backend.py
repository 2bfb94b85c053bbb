# python -m pytest tests/test_sqlite_backend.py -v

"""Tests for the SQLite backend against temporary database files."""

import asyncio
import random
import sqlite3
import time
from contextlib import closing

import pytest

from index_maintenance.backends.sqlite import (
    SqliteMetricsProvider, SqliteMutationExecutor, SqliteStatsRefresher, SqliteTargetDiscovery,
    leaf_fragmentation, render_command
)
from index_maintenance.backends.statements import StatementControl, run_statement
from index_maintenance.errors import MutationError, TargetUnavailableError
from index_maintenance.models import (
    DatabaseScope, MaintenanceCommand, ObjectKind, RecommendedAction, Target
)


def _has_dbstat() -> bool:
    with closing(sqlite3.connect(':memory:')) as conn:
        try:
            conn.execute("SELECT * FROM dbstat LIMIT 1")
            return True
        except sqlite3.Error:
            return False


requires_dbstat = pytest.mark.skipif(not _has_dbstat(), reason="SQLite built without dbstat")


def _create_database(path, rows=3000):
    keys = list(range(rows))
    random.Random(7).shuffle(keys)
    with closing(sqlite3.connect(str(path))) as conn:
        conn.execute("PRAGMA page_size = 512")
        conn.execute("CREATE TABLE books (id INTEGER PRIMARY KEY, isbn TEXT UNIQUE, title TEXT)")
        conn.execute("CREATE INDEX idx_books_title ON books (title)")
        conn.executemany(
            "INSERT INTO books (isbn, title) VALUES (?, ?)",
            [(f"isbn-{k:08d}", f"title {k:08d} " + "x" * 40) for k in keys]
        )
        conn.commit()


class TestLeafFragmentation:

    def test_contiguous_pages(self):
        assert leaf_fragmentation([10, 11, 12, 13]) == 0.0

    def test_out_of_order_pages(self):
        assert leaf_fragmentation([1, 3, 2, 4]) == 75.0

    def test_single_page(self):
        assert leaf_fragmentation([5]) == 0.0
        assert leaf_fragmentation([]) == 0.0


class TestDiscovery:

    def test_current(self, tmp_path):
        discovery = SqliteTargetDiscovery(str(tmp_path / 'app.db'))
        targets = asyncio.run(discovery.list_targets(DatabaseScope.CURRENT))
        assert targets == [Target('app', str(tmp_path / 'app.db'))]

    def test_all_eligible(self, tmp_path):
        for name in ('b.db', 'a.db', 'notes.txt'):
            (tmp_path / name).write_bytes(b'')
        discovery = SqliteTargetDiscovery(str(tmp_path / 'a.db'), str(tmp_path))
        targets = asyncio.run(discovery.list_targets(DatabaseScope.ALL_ELIGIBLE))
        assert [t.name for t in targets] == ['a', 'b']

    def test_specific(self, tmp_path):
        (tmp_path / 'sales.db').write_bytes(b'')
        discovery = SqliteTargetDiscovery(str(tmp_path / 'app.db'), str(tmp_path))
        assert [t.name for t in asyncio.run(discovery.list_targets(DatabaseScope.SPECIFIC, 'sales'))] == ['sales']
        assert asyncio.run(discovery.list_targets(DatabaseScope.SPECIFIC, 'payroll')) == []

    def test_specific_rejects_paths(self, tmp_path):
        inner = tmp_path / 'data'
        inner.mkdir()
        (tmp_path / 'other.db').write_bytes(b'')
        discovery = SqliteTargetDiscovery(str(inner / 'app.db'), str(inner))

        for name in ('../other', '../other.db', '..', str(tmp_path / 'other')):
            assert asyncio.run(discovery.list_targets(DatabaseScope.SPECIFIC, name)) == []


class TestCommands:

    def test_both_actions_reindex(self):
        for verb in (RecommendedAction.REBUILD, RecommendedAction.REORGANIZE):
            command = MaintenanceCommand('app', verb, 'main', 'books', 'idx "odd" name')
            assert render_command(command) == 'REINDEX "main"."idx ""odd"" name"'


class TestProviders:

    def test_missing_database_is_unavailable(self, tmp_path):
        target = Target('ghost', str(tmp_path / 'ghost.db'))
        with pytest.raises(TargetUnavailableError):
            asyncio.run(SqliteMetricsProvider().fetch(target, ObjectKind.TABLE))

    def test_no_indexed_views(self, tmp_path):
        path = tmp_path / 'app.db'
        _create_database(path, rows=10)
        target = Target('app', str(path))
        assert asyncio.run(SqliteMetricsProvider().fetch(target, ObjectKind.VIEW)) == []

    @requires_dbstat
    def test_index_metrics(self, tmp_path):
        path = tmp_path / 'app.db'
        _create_database(path)
        target = Target('app', str(path))
        metrics = asyncio.run(SqliteMetricsProvider().fetch(target, ObjectKind.TABLE))

        by_name = {m.structure_name: m for m in metrics}
        assert 'idx_books_title' in by_name
        assert by_name['idx_books_title'].structure_kind == 'INDEX'
        assert by_name['idx_books_title'].object_name == 'books'
        assert by_name['idx_books_title'].container == 'main'
        assert by_name['idx_books_title'].size_units > 1
        assert 0.0 <= by_name['idx_books_title'].fragmentation_percent <= 100.0
        assert any(m.structure_kind == 'AUTOINDEX' for m in metrics)

    @requires_dbstat
    def test_reindex_and_analyze(self, tmp_path):
        path = tmp_path / 'app.db'
        _create_database(path)
        target = Target('app', str(path))
        command = MaintenanceCommand('app', RecommendedAction.REBUILD, 'main', 'books', 'idx_books_title',
                                     fill_factor=90)

        assert asyncio.run(SqliteMutationExecutor().apply(target, command)).ok
        assert asyncio.run(SqliteStatsRefresher().refresh(target, 'main', 'books')).ok

        after = asyncio.run(SqliteMetricsProvider().fetch(target, ObjectKind.TABLE))
        assert 'idx_books_title' in {m.structure_name for m in after}
        with closing(sqlite3.connect(str(path))) as conn:
            assert conn.execute("SELECT count(*) FROM sqlite_stat1 WHERE tbl = 'books'").fetchone()[0] > 0

    def test_failed_reindex_reports_reason(self, tmp_path):
        path = tmp_path / 'app.db'
        _create_database(path, rows=10)
        target = Target('app', str(path))
        command = MaintenanceCommand('app', RecommendedAction.REORGANIZE, 'main', 'books', 'idx_missing')

        result = asyncio.run(SqliteMutationExecutor().apply(target, command))
        assert not result.ok
        assert result.reason

    def test_failed_analyze_reports_reason(self, tmp_path):
        target = Target('ghost', str(tmp_path / 'ghost.db'))
        result = asyncio.run(SqliteStatsRefresher().refresh(target, 'main', 'books'))
        assert not result.ok


# Enough virtual machine work to run for a long time unless interrupted
LONG_QUERY = """
    WITH RECURSIVE counter(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM counter WHERE x < 2000000000)
    SELECT count(*) FROM counter
"""


class TestInterruption:

    def test_stop_request_aborts_statement(self, tmp_path):
        path = tmp_path / 'app.db'
        _create_database(path, rows=10)
        control = StatementControl()
        control.request_stop()

        with pytest.raises(MutationError, match='interrupted'):
            SqliteMutationExecutor()._execute(control, Target('app', str(path)), LONG_QUERY)

    def test_timeout_interrupts_running_statement(self, tmp_path):
        path = tmp_path / 'app.db'
        _create_database(path, rows=10)
        executor = SqliteMutationExecutor()

        async def scenario():
            started = time.monotonic()
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(
                    run_statement(executor._execute, Target('app', str(path)), LONG_QUERY),
                    timeout=0.1
                )
            return time.monotonic() - started

        assert asyncio.run(scenario()) < 10
