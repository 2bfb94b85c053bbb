"""
SQL Server backend
Fragmentation from sys.dm_db_index_physical_stats, ALTER INDEX for remediation and
UPDATE STATISTICS for the refresh pass.

The backend is driver agnostic: callers supply ``connect(database_name)`` returning a
DB-API 2.0 connection using the qmark parameter style. ``None`` means the login's
default database.
"""

import logging
from contextlib import closing
from typing import Any, Callable, List, Optional

from ..errors import MutationError, StatsRefreshError, TargetUnavailableError
from ..models import (
    ActionResult, DatabaseScope, MaintenanceCommand, ObjectKind, RawStructureMetrics,
    RecommendedAction, Target
)
from ..providers import MetricsProvider, MutationExecutor, StatsRefresher, TargetDiscovery
from .statements import StatementControl, run_statement

logger = logging.getLogger('index_maintenance.backends.sqlserver')

ConnectionFactory = Callable[[Optional[str]], Any]

ELIGIBLE_DATABASES_SQL = """
    SELECT name, database_id
    FROM sys.databases
    WHERE database_id > 4
        AND state = 0
        AND is_read_only = 0
    ORDER BY name
"""

SPECIFIC_DATABASE_SQL = """
    SELECT name, database_id
    FROM sys.databases
    WHERE name = ?
        AND state = 0
        AND is_read_only = 0
"""

CURRENT_DATABASE_SQL = "SELECT DB_NAME(), DB_ID()"

_OWNER_CATALOG = {ObjectKind.TABLE: 'sys.tables', ObjectKind.VIEW: 'sys.views'}

INDEX_STATS_SQL = """
    SELECT
        s.name AS schema_name,
        o.name AS object_name,
        i.name AS index_name,
        i.type_desc AS index_type,
        ips.avg_fragmentation_in_percent AS fragmentation_percent,
        ips.page_count AS page_count,
        i.is_disabled AS is_disabled
    FROM sys.dm_db_index_physical_stats(DB_ID(), NULL, NULL, NULL, 'LIMITED') ips
    INNER JOIN sys.indexes i ON ips.object_id = i.object_id AND ips.index_id = i.index_id
    INNER JOIN {catalog} o ON i.object_id = o.object_id
    INNER JOIN sys.schemas s ON o.schema_id = s.schema_id
    WHERE i.name IS NOT NULL
        AND ips.alloc_unit_type_desc = 'IN_ROW_DATA'
    ORDER BY s.name, o.name, i.name
"""


def quote_name(name: str) -> str:
    """Bracket-quote an identifier, as QUOTENAME does."""
    return '[' + name.replace(']', ']]') + ']'


def render_command(command: MaintenanceCommand) -> str:
    on = f"{quote_name(command.container)}.{quote_name(command.object_name)}"
    head = f"ALTER INDEX {quote_name(command.structure_name)} ON {on}"
    if command.verb is RecommendedAction.REBUILD:
        options = [f"ONLINE = {'ON' if command.online else 'OFF'}"]
        if command.fill_factor is not None:
            options.append(f"FILLFACTOR = {command.fill_factor}")
        return f"{head} REBUILD WITH ({', '.join(options)});"
    return f"{head} REORGANIZE;"


def render_statistics_update(container: str, object_name: str) -> str:
    return f"UPDATE STATISTICS {quote_name(container)}.{quote_name(object_name)} WITH FULLSCAN;"


class _SqlServerBase:

    def __init__(self, connect: ConnectionFactory):
        self.connect = connect

    @staticmethod
    def _cursor(conn, control: StatementControl):
        cursor = conn.cursor()
        # DB-API has no standard cancel; drivers that offer one (pyodbc) stop the batch with it
        cancel = getattr(cursor, 'cancel', None)
        if callable(cancel):
            control.on_stop(cancel)
        return cursor

    def _query(self, control: StatementControl, database: Optional[str], sql: str,
               params: tuple = ()) -> List[tuple]:
        with closing(self.connect(database)) as conn:
            cursor = self._cursor(conn, control)
            if params:
                cursor.execute(sql, params)
            else:
                cursor.execute(sql)
            return list(cursor.fetchall())

    def _execute(self, control: StatementControl, database: str, sql: str):
        with closing(self.connect(database)) as conn:
            cursor = self._cursor(conn, control)
            cursor.execute(sql)
            conn.commit()


class SqlServerTargetDiscovery(_SqlServerBase, TargetDiscovery):

    def _list_sync(self, control: StatementControl, scope: DatabaseScope,
                   specific_name: Optional[str]) -> List[Target]:
        if scope is DatabaseScope.CURRENT:
            rows = self._query(control, None, CURRENT_DATABASE_SQL)
        elif scope is DatabaseScope.ALL_ELIGIBLE:
            rows = self._query(control, None, ELIGIBLE_DATABASES_SQL)
        else:
            rows = self._query(control, None, SPECIFIC_DATABASE_SQL, (specific_name,))
        return [Target(name=row[0], identifier=str(row[1])) for row in rows]

    async def list_targets(self, scope: DatabaseScope,
                           specific_name: Optional[str] = None) -> List[Target]:
        return await run_statement(self._list_sync, scope, specific_name)


class SqlServerMetricsProvider(_SqlServerBase, MetricsProvider):

    def _fetch_sync(self, control: StatementControl, target: Target,
                    object_kind: ObjectKind) -> List[RawStructureMetrics]:
        sql = INDEX_STATS_SQL.format(catalog=_OWNER_CATALOG[object_kind])
        try:
            rows = self._query(control, target.name, sql)
        except Exception as e:
            raise TargetUnavailableError(target.name, str(e)) from e
        return [
            RawStructureMetrics(
                container=row[0],
                object_name=row[1],
                object_kind=object_kind,
                structure_name=row[2],
                structure_kind=row[3],
                fragmentation_percent=float(row[4] or 0.0),
                size_units=int(row[5] or 0),
                is_disabled=bool(row[6])
            )
            for row in rows
        ]

    async def fetch(self, target: Target, object_kind: ObjectKind) -> List[RawStructureMetrics]:
        return await run_statement(self._fetch_sync, target, object_kind)


class SqlServerMutationExecutor(_SqlServerBase, MutationExecutor):

    def _apply_sync(self, control: StatementControl, target: Target, statement: str):
        try:
            self._execute(control, target.name, statement)
        except Exception as e:
            raise MutationError(str(e)) from e

    async def apply(self, target: Target, command: MaintenanceCommand) -> ActionResult:
        statement = render_command(command)
        logger.debug(f"{target.name}: {statement}")
        try:
            await run_statement(self._apply_sync, target, statement)
        except MutationError as e:
            return ActionResult.failure(str(e))
        return ActionResult.success()


class SqlServerStatsRefresher(_SqlServerBase, StatsRefresher):

    def _refresh_sync(self, control: StatementControl, target: Target, statement: str):
        try:
            self._execute(control, target.name, statement)
        except Exception as e:
            raise StatsRefreshError(str(e)) from e

    async def refresh(self, target: Target, container: str, object_name: str) -> ActionResult:
        try:
            await run_statement(self._refresh_sync, target, render_statistics_update(container, object_name))
        except StatsRefreshError as e:
            return ActionResult.failure(str(e))
        return ActionResult.success()
