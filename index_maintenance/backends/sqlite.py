"""
SQLite backend
Index statistics, REINDEX and ANALYZE for SQLite database files.

Fragmentation is measured from the dbstat virtual table: the share of an index's
leaf pages whose page number does not directly follow the previous leaf page in
b-tree order. Size is the index's total page count.
"""

import asyncio
import logging
import os
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import MutationError, StatsRefreshError, TargetUnavailableError
from ..models import (
    ActionResult, DatabaseScope, MaintenanceCommand, ObjectKind, RawStructureMetrics, Target
)
from ..providers import MetricsProvider, MutationExecutor, StatsRefresher, TargetDiscovery
from .statements import StatementControl, run_statement

logger = logging.getLogger('index_maintenance.backends.sqlite')

MAIN_SCHEMA = "main"

# Virtual machine steps between stop checks
PROGRESS_STEPS = 1000


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def get_database_connection(db_path: str, read_only: bool = False,
                            timeout: float = 30.0) -> sqlite3.Connection:
    """Open an existing database file; never creates one."""
    uri = f"file:{Path(db_path).as_posix()}?mode={'ro' if read_only else 'rw'}"
    conn = sqlite3.connect(uri, uri=True, timeout=timeout)
    conn.row_factory = sqlite3.Row
    return conn


def abort_on_stop(conn: sqlite3.Connection, control: StatementControl):
    """Make the running statement fail with "interrupted" once a stop is requested."""
    conn.set_progress_handler(lambda: 1 if control.stop_requested.is_set() else 0, PROGRESS_STEPS)


def leaf_fragmentation(leaf_pages: List[int]) -> float:
    """Percentage of leaf pages that are not physically next to their logical predecessor."""
    if len(leaf_pages) < 2:
        return 0.0
    out_of_order = sum(
        1 for previous, current in zip(leaf_pages, leaf_pages[1:])
        if current != previous + 1
    )
    return out_of_order / len(leaf_pages) * 100


class SqliteTargetDiscovery(TargetDiscovery):

    def __init__(self, database_path: str, database_dir: Optional[str] = None):
        self.database_path = Path(database_path)
        self.database_dir = Path(database_dir) if database_dir else self.database_path.parent

    @staticmethod
    def _target(path: Path) -> Target:
        return Target(name=path.stem, identifier=str(path))

    @staticmethod
    def _eligible(path: Path) -> bool:
        # Online and writable; read-only files are skipped like read-only databases
        return path.is_file() and os.access(path, os.W_OK)

    def _list_sync(self, scope: DatabaseScope, specific_name: Optional[str]) -> List[Target]:
        if scope is DatabaseScope.CURRENT:
            return [self._target(self.database_path)]

        if scope is DatabaseScope.ALL_ELIGIBLE:
            if not self.database_dir.is_dir():
                logger.warning(f"Database directory {self.database_dir} does not exist")
                return []
            return [self._target(p) for p in sorted(self.database_dir.glob('*.db')) if self._eligible(p)]

        # A database name, never a path out of database_dir
        if specific_name in ('.', '..') or any(sep in specific_name for sep in ('/', '\\', os.sep)):
            logger.warning(f"Rejected database name {specific_name!r}: path separators are not allowed")
            return []
        candidates = [self.database_dir / specific_name, self.database_dir / f"{specific_name}.db"]
        if specific_name in (self.database_path.stem, self.database_path.name):
            candidates.insert(0, self.database_path)
        for candidate in candidates:
            if self._eligible(candidate):
                return [self._target(candidate)]
        return []

    async def list_targets(self, scope: DatabaseScope,
                           specific_name: Optional[str] = None) -> List[Target]:
        return await asyncio.to_thread(self._list_sync, scope, specific_name)


class SqliteMetricsProvider(MetricsProvider):

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    def _fetch_sync(self, control: StatementControl, target: Target) -> List[RawStructureMetrics]:
        try:
            with closing(get_database_connection(target.identifier, read_only=True,
                                                 timeout=self.timeout)) as conn:
                abort_on_stop(conn, control)
                cursor = conn.cursor()
                cursor.execute("""
                    SELECT name, tbl_name, sql
                    FROM sqlite_master
                    WHERE type = 'index'
                    ORDER BY tbl_name, name
                """)
                indexes = cursor.fetchall()
                if not indexes:
                    return []

                cursor.execute("""
                    SELECT name, pageno, pagetype
                    FROM dbstat
                    WHERE name IN (SELECT name FROM sqlite_master WHERE type = 'index')
                    ORDER BY name, path
                """)
                pages: Dict[str, Dict[str, list]] = {}
                for row in cursor.fetchall():
                    entry = pages.setdefault(row['name'], {'all': [], 'leaf': []})
                    entry['all'].append(row['pageno'])
                    if row['pagetype'] == 'leaf':
                        entry['leaf'].append(row['pageno'])
        except sqlite3.Error as e:
            raise TargetUnavailableError(target.name, f"could not read index statistics: {e}") from e

        metrics = []
        for index in indexes:
            entry = pages.get(index['name'], {'all': [], 'leaf': []})
            metrics.append(RawStructureMetrics(
                container=MAIN_SCHEMA,
                object_name=index['tbl_name'],
                object_kind=ObjectKind.TABLE,
                structure_name=index['name'],
                structure_kind='AUTOINDEX' if index['sql'] is None else 'INDEX',
                fragmentation_percent=leaf_fragmentation(entry['leaf']),
                size_units=len(entry['all'])
            ))
        return metrics

    async def fetch(self, target: Target, object_kind: ObjectKind) -> List[RawStructureMetrics]:
        # SQLite has no indexed views
        if object_kind is ObjectKind.VIEW:
            return []
        return await run_statement(self._fetch_sync, target)


def render_command(command: MaintenanceCommand) -> str:
    """SQLite has no in-place reorganize, so both actions rebuild the index."""
    return f"REINDEX {quote_identifier(command.container)}.{quote_identifier(command.structure_name)}"


def _run_stoppable(control: StatementControl, db_path: str, statement: str, timeout: float):
    with closing(get_database_connection(db_path, timeout=timeout)) as conn:
        abort_on_stop(conn, control)
        conn.execute(statement)
        conn.commit()


class SqliteMutationExecutor(MutationExecutor):

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    def _execute(self, control: StatementControl, target: Target, statement: str):
        try:
            _run_stoppable(control, target.identifier, statement, self.timeout)
        except sqlite3.Error as e:
            raise MutationError(str(e)) from e

    async def apply(self, target: Target, command: MaintenanceCommand) -> ActionResult:
        statement = render_command(command)
        logger.debug(f"{target.name}: {statement}")
        try:
            await run_statement(self._execute, target, statement)
        except MutationError as e:
            return ActionResult.failure(str(e))
        return ActionResult.success()


class SqliteStatsRefresher(StatsRefresher):

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    def _analyze(self, control: StatementControl, target: Target, statement: str):
        try:
            _run_stoppable(control, target.identifier, statement, self.timeout)
        except sqlite3.Error as e:
            raise StatsRefreshError(str(e)) from e

    async def refresh(self, target: Target, container: str, object_name: str) -> ActionResult:
        statement = f"ANALYZE {quote_identifier(container)}.{quote_identifier(object_name)}"
        try:
            await run_statement(self._analyze, target, statement)
        except StatsRefreshError as e:
            return ActionResult.failure(str(e))
        return ActionResult.success()
