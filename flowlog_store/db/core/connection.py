"""
Backend connection adapters.

DatabaseConnection is the narrow capability the rest of the package is
written against: query, execute, transaction control, close and a liveness
check. Statements use '?' placeholders on every backend.

Two implementations:
- SQLAlchemyConnection for sqlite, postgresql and clickhouse
- DuckDBConnection for the native duckdb driver
"""

import re
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import duckdb
from sqlalchemy import exc as sa_exc
from sqlalchemy import text
from sqlalchemy.engine import Connection

from ..config.logging_config import get_db_logger
from .dialects import Dialect, get_dialect
from .exceptions import BackendUnavailableError, DatabaseError, QueryError

Params = Optional[Union[Sequence[Any], Mapping[str, Any]]]


@dataclass
class QueryResult:
    """Rows returned by a SELECT-like statement."""
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    columns: List[str] = field(default_factory=list)


@dataclass
class ExecuteResult:
    """Outcome of a statement run for its side effects."""
    affected_rows: int = 0
    insert_id: Optional[int] = None


class DatabaseConnection(ABC):
    """A single backend connection owned by one caller at a time."""

    dialect: Dialect

    @abstractmethod
    def query(self, sql: str, params: Params = None) -> QueryResult:
        ...

    @abstractmethod
    def execute(self, sql: str, params: Params = None) -> ExecuteResult:
        ...

    @abstractmethod
    def begin_transaction(self) -> None:
        ...

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @property
    def in_transaction(self) -> bool:
        return False

    def execute_maintenance(self, sql: str) -> None:
        """Run a statement that must not be wrapped in a transaction (VACUUM etc.)."""
        self.execute(sql)

    @contextmanager
    def transaction(self) -> Iterator["DatabaseConnection"]:
        """Run the block in a transaction, rolling back if it raises."""
        self.begin_transaction()
        try:
            yield self
        except Exception:
            self.rollback()
            raise
        else:
            self.commit()


def to_named_params(sql: str, params: Params) -> Tuple[str, Dict[str, Any]]:
    """
    Rewrite '?' placeholders as :p0, :p1, ... for SQLAlchemy text().

    Question marks inside quoted literals or identifiers are left alone.

    Args:
        sql: Statement with qmark placeholders
        params: Positional parameters, or a mapping which is passed through

    Returns:
        Tuple of rewritten SQL and the bind dictionary
    """
    if params is None:
        return sql, {}
    if isinstance(params, Mapping):
        return sql, dict(params)

    values = list(params)
    out = []
    index = 0
    quote = None
    for char in sql:
        if quote:
            out.append(char)
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
            out.append(char)
        elif char == '?':
            out.append(f':p{index}')
            index += 1
        else:
            out.append(char)

    if index != len(values):
        raise QueryError(
            f"Statement expects {index} parameters, got {len(values)}", sql=sql
        )
    return ''.join(out), {f'p{i}': value for i, value in enumerate(values)}


class SQLAlchemyConnection(DatabaseConnection):
    """
    Adapter over a SQLAlchemy Core connection.

    Outside an explicit transaction every statement is committed on its own.
    """

    def __init__(self, connection: Connection, db_type: str):
        self._conn = connection
        self.dialect = get_dialect(db_type)
        self._transaction = None
        self._closed = False
        self.logger = get_db_logger('connection', db_type, connection.engine.url.database)

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    def _run(self, sql: str, params: Params):
        if self._closed:
            raise BackendUnavailableError("Connection is closed")
        statement, binds = to_named_params(sql, params)
        start = time.time()
        try:
            result = self._conn.execute(text(statement), binds)
        except sa_exc.DBAPIError as e:
            if self._transaction is None and not self._conn.invalidated:
                self._conn.rollback()
            if e.connection_invalidated or self._conn.invalidated:
                raise BackendUnavailableError(f"Connection lost: {e.orig}") from e
            raise QueryError(f"Query failed: {e.orig}", sql=sql) from e
        except sa_exc.SQLAlchemyError as e:
            if self._transaction is None and not self._conn.invalidated:
                self._conn.rollback()
            raise QueryError(f"Query failed: {e}", sql=sql) from e
        self.logger.query(sql, params, time.time() - start)
        return result

    def query(self, sql: str, params: Params = None) -> QueryResult:
        result = self._run(sql, params)
        rows: List[Dict[str, Any]] = []
        columns: List[str] = []
        if result.returns_rows:
            columns = list(result.keys())
            rows = [dict(row._mapping) for row in result]
        if self._transaction is None:
            self._conn.commit()
        return QueryResult(rows=rows, row_count=len(rows), columns=columns)

    def execute(self, sql: str, params: Params = None) -> ExecuteResult:
        result = self._run(sql, params)
        affected = max(result.rowcount or 0, 0)
        insert_id = result.lastrowid if self.dialect.name == 'sqlite' else None
        if result.returns_rows:
            result.close()
        if self._transaction is None:
            self._conn.commit()
        return ExecuteResult(affected_rows=affected, insert_id=insert_id)

    def execute_maintenance(self, sql: str) -> None:
        if self._transaction is not None:
            raise QueryError("Maintenance statements cannot run inside a transaction", sql=sql)
        if self._conn.in_transaction():
            self._conn.commit()
        raw = self._conn.connection.dbapi_connection
        previous = getattr(raw, 'autocommit', None)
        if previous is False:
            raw.autocommit = True
        cursor = raw.cursor()
        try:
            cursor.execute(sql)
        except Exception as e:
            raise QueryError(f"Maintenance statement failed: {e}", sql=sql) from e
        finally:
            cursor.close()
            if previous is False:
                raw.autocommit = previous

    def begin_transaction(self) -> None:
        if self._transaction is not None:
            raise QueryError("A transaction is already in progress")
        if self._conn.in_transaction():
            self._conn.commit()
        self._transaction = self._conn.begin()

    def commit(self) -> None:
        if self._transaction is None:
            return
        transaction, self._transaction = self._transaction, None
        try:
            transaction.commit()
        except sa_exc.SQLAlchemyError as e:
            raise QueryError(f"Commit failed: {e}") from e

    def rollback(self) -> None:
        if self._transaction is None:
            return
        transaction, self._transaction = self._transaction, None
        try:
            transaction.rollback()
        except sa_exc.SQLAlchemyError as e:
            raise QueryError(f"Rollback failed: {e}") from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._transaction = None
        self._conn.close()

    def is_connected(self) -> bool:
        return not (self._closed or self._conn.closed or self._conn.invalidated)


class DuckDBConnection(DatabaseConnection):
    """
    Adapter over a native DuckDB connection.

    Pools hand out cursors of one database handle, so every connection sees
    the same (possibly in-memory) database.
    """

    def __init__(self, connection: "duckdb.DuckDBPyConnection", db_name: Optional[str] = None):
        self._conn = connection
        self.dialect = get_dialect('duckdb')
        self._in_transaction = False
        self._closed = False
        self._broken = False
        self.logger = get_db_logger('connection', 'duckdb', db_name)

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    def _run(self, sql: str, params: Params):
        if self._closed:
            raise BackendUnavailableError("Connection is closed")
        start = time.time()
        try:
            if params is None:
                self._conn.execute(sql)
            else:
                self._conn.execute(sql, params if isinstance(params, Mapping) else list(params))
        except duckdb.ConnectionException as e:
            self._broken = True
            raise BackendUnavailableError(f"Connection lost: {e}") from e
        except duckdb.Error as e:
            raise QueryError(f"Query failed: {e}", sql=sql) from e
        self.logger.query(sql, params, time.time() - start)

    def _fetch(self) -> Tuple[List[str], List[tuple]]:
        description = self._conn.description
        if not description:
            return [], []
        columns = [column[0] for column in description]
        return columns, self._conn.fetchall()

    def query(self, sql: str, params: Params = None) -> QueryResult:
        self._run(sql, params)
        columns, values = self._fetch()
        rows = [dict(zip(columns, row)) for row in values]
        return QueryResult(rows=rows, row_count=len(rows), columns=columns)

    def execute(self, sql: str, params: Params = None) -> ExecuteResult:
        self._run(sql, params)
        columns, values = self._fetch()
        affected = 0
        if columns == ['Count'] and values:
            affected = int(values[0][0] or 0)
        return ExecuteResult(affected_rows=affected)

    def begin_transaction(self) -> None:
        if self._in_transaction:
            raise QueryError("A transaction is already in progress")
        self._run('BEGIN TRANSACTION', None)
        self._in_transaction = True

    def commit(self) -> None:
        if not self._in_transaction:
            return
        self._in_transaction = False
        self._run('COMMIT', None)

    def rollback(self) -> None:
        if not self._in_transaction:
            return
        self._in_transaction = False
        self._run('ROLLBACK', None)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._conn.close()
        except duckdb.Error as e:
            raise DatabaseError(f"Failed to close DuckDB connection: {e}") from e

    def is_connected(self) -> bool:
        return not (self._closed or self._broken)
