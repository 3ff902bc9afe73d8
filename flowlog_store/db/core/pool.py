"""
Connection pooling.

ConnectionPool hands out at most `max` connections at a time. Callers that
find the pool at capacity block on a condition variable until a connection
is released or the acquire timeout expires. Stale connections are dropped
instead of being handed out, and their slot is reopened on demand.

Backend pools only decide how a connection is opened:
- SQLAlchemyConnectionPool: sqlite, postgresql, clickhouse
- DuckDBPool: native duckdb, one database handle per pool
"""

import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from typing import Any, Deque, Dict, Iterator, List, Optional, Set, Tuple

import duckdb
from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.pool import NullPool

from ..config.db_config import DatabaseConfig, DatabaseType
from ..config.logging_config import get_db_logger
from .connection import DatabaseConnection, DuckDBConnection, SQLAlchemyConnection
from .exceptions import (
    BackendUnavailableError, ConfigurationError, DatabaseError,
    PoolClosedError, PoolExhaustionError,
)


class ConnectionPool(ABC):
    """Thread-safe bounded pool of DatabaseConnection objects."""

    def __init__(self, config: DatabaseConfig, max_size: Optional[int] = None,
                 min_size: Optional[int] = None, acquire_timeout: Optional[float] = None,
                 idle_timeout: Optional[float] = None):
        """
        Initialize the pool.

        Args:
            config: Backend configuration; sizing falls back to its pool settings
            max_size: Maximum number of open connections
            min_size: Connections opened up front and never evicted for idleness
            acquire_timeout: Seconds acquire() may block before failing
            idle_timeout: Seconds an idle connection may stay open
        """
        self.config = config
        self.max_size = max_size if max_size is not None else config.max_pool_size
        self.min_size = min(min_size if min_size is not None else config.min_pool_size, self.max_size)
        self.acquire_timeout = acquire_timeout if acquire_timeout is not None else config.acquire_timeout
        self.idle_timeout = idle_timeout if idle_timeout is not None else config.idle_timeout

        if self.max_size < 1:
            raise ConfigurationError(["Pool max connections must be >= 1"])

        self.logger = get_db_logger('pool', config.type, config.database or config.filename or config.host)

        self._lock = threading.Lock()
        self._available = threading.Condition(self._lock)
        self._idle: Deque[Tuple[DatabaseConnection, float]] = deque()
        self._in_use: Set[DatabaseConnection] = set()
        self._all: Set[DatabaseConnection] = set()
        self._opening = 0
        self._pending = 0
        self._destroyed = False

        self.stats = {
            'created': 0,
            'acquired': 0,
            'released': 0,
            'discarded': 0,
            'failed': 0,
            'timeouts': 0,
            'waits': 0,
            'total_wait_time': 0.0,
        }

        self._initialize_pool()

    @abstractmethod
    def _create_connection(self) -> DatabaseConnection:
        """Open a new backend connection."""
        pass

    def _dispose(self) -> None:
        """Release backend resources once every connection is closed."""

    def _initialize_pool(self) -> None:
        for _ in range(self.min_size):
            connection = self._open()
            with self._lock:
                self._all.add(connection)
                self._idle.append((connection, time.monotonic()))
        if self.min_size:
            self.logger.info(f"Initialized pool with {self.min_size} connections (max {self.max_size})")

    def _open(self) -> DatabaseConnection:
        try:
            connection = self._create_connection()
        except DatabaseError:
            with self._lock:
                self.stats['failed'] += 1
            raise
        except Exception as e:
            with self._lock:
                self.stats['failed'] += 1
            self.logger.connection_event('error', str(e))
            raise BackendUnavailableError(f"Failed to open {self.config.type} connection: {e}") from e
        with self._lock:
            self.stats['created'] += 1
        self.logger.connection_event('created', f"total={len(self._all) + 1}")
        return connection

    def _close_quietly(self, connections: List[DatabaseConnection]) -> None:
        for connection in connections:
            try:
                connection.close()
            except Exception as e:
                self.logger.warning(f"Error closing connection: {e}")

    def _evict_idle(self, evicted: List[DatabaseConnection]) -> None:
        if not self.idle_timeout:
            return
        now = time.monotonic()
        while (self._idle and len(self._all) > self.min_size
               and now - self._idle[0][1] > self.idle_timeout):
            connection, _ = self._idle.popleft()
            self._all.discard(connection)
            evicted.append(connection)

    def _take_idle(self, stale: List[DatabaseConnection]) -> Optional[DatabaseConnection]:
        while self._idle:
            connection, _ = self._idle.pop()
            if connection.is_connected():
                return connection
            self._all.discard(connection)
            self.stats['discarded'] += 1
            stale.append(connection)
        return None

    def acquire(self, timeout: Optional[float] = None) -> DatabaseConnection:
        """
        Get a connection from the pool.

        Idle connections are reused first; a new one is opened while the pool
        is below capacity; otherwise the caller waits for a release.

        Args:
            timeout: Seconds to wait, defaults to the pool's acquire timeout

        Returns:
            Connection exclusively owned by the caller until release()

        Raises:
            PoolExhaustionError: No connection freed up within the timeout
            PoolClosedError: The pool was destroyed
            BackendUnavailableError: Opening a new connection failed
        """
        timeout = self.acquire_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        to_close: List[DatabaseConnection] = []
        connection = None
        wait_started = None

        try:
            with self._available:
                try:
                    while True:
                        if self._destroyed:
                            raise PoolClosedError()

                        self._evict_idle(to_close)
                        connection = self._take_idle(to_close)
                        if connection is not None:
                            self._in_use.add(connection)
                            self.stats['acquired'] += 1
                            break

                        if len(self._all) + self._opening < self.max_size:
                            self._opening += 1
                            break

                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            self.stats['timeouts'] += 1
                            raise PoolExhaustionError(
                                f"Timed out after {timeout:.3f}s waiting for a connection "
                                f"({len(self._in_use)}/{self.max_size} in use)"
                            )

                        if wait_started is None:
                            wait_started = time.monotonic()
                            self.stats['waits'] += 1
                        self._pending += 1
                        try:
                            self._available.wait(remaining)
                        finally:
                            self._pending -= 1
                finally:
                    # stats are only touched under the lock
                    if wait_started is not None:
                        self.stats['total_wait_time'] += time.monotonic() - wait_started
        finally:
            self._close_quietly(to_close)

        if connection is None:
            connection = self._open_reserved()

        self.logger.connection_event('acquired', f"in_use={len(self._in_use)}")
        return connection

    def _open_reserved(self) -> DatabaseConnection:
        try:
            connection = self._open()
        except Exception:
            with self._available:
                self._opening -= 1
                self._available.notify()
            raise

        with self._available:
            self._opening -= 1
            destroyed = self._destroyed
            if not destroyed:
                self._all.add(connection)
                self._in_use.add(connection)
                self.stats['acquired'] += 1

        if destroyed:
            self._close_quietly([connection])
            raise PoolClosedError()
        return connection

    def release(self, connection: DatabaseConnection) -> None:
        """
        Return a connection to the pool.

        Releasing a connection the pool does not consider in use (double
        release, or a connection from elsewhere) is logged and ignored.
        """
        with self._lock:
            owned = connection in self._in_use
        if not owned:
            self.logger.warning("Ignoring release of a connection that is not in use")
            return

        if connection.in_transaction:
            self.logger.warning("Connection released inside a transaction; rolling back")
            try:
                connection.rollback()
            except DatabaseError as e:
                self.logger.warning(f"Rollback on release failed: {e}")

        to_close = None
        with self._available:
            if connection not in self._in_use:
                self.logger.warning("Ignoring release of a connection that is not in use")
                return

            self._in_use.discard(connection)
            self.stats['released'] += 1

            if self._destroyed:
                to_close = connection
            elif not connection.is_connected():
                self._all.discard(connection)
                self.stats['discarded'] += 1
                to_close = connection
                self.logger.connection_event('discarded', 'backend reports not connected')
            else:
                self._idle.append((connection, time.monotonic()))

            self._available.notify()

        if to_close is not None:
            self._close_quietly([to_close])
        else:
            self.logger.connection_event('released', f"in_use={len(self._in_use)}")

    @contextmanager
    def connection(self, timeout: Optional[float] = None) -> Iterator[DatabaseConnection]:
        """Acquire a connection for the duration of the block."""
        connection = self.acquire(timeout)
        try:
            yield connection
        finally:
            self.release(connection)

    def destroy(self) -> None:
        """Close every connection. Waiting callers fail with PoolClosedError."""
        with self._available:
            if self._destroyed:
                return
            self._destroyed = True
            connections = list(self._all)
            self._all.clear()
            self._idle.clear()
            self._in_use.clear()
            self._available.notify_all()

        self._close_quietly(connections)
        self._dispose()
        self.logger.info(f"Pool destroyed, closed {len(connections)} connections")

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of pool occupancy and counters."""
        with self._lock:
            return {
                'total': len(self._all),
                'in_use': len(self._in_use),
                'idle': len(self._idle),
                'pending': self._pending,
                'max': self.max_size,
                'stats': dict(self.stats),
            }

    def health_check(self) -> bool:
        """Run a trivial query on a pooled connection."""
        with self.connection() as connection:
            return connection.query('SELECT 1 AS ok').row_count == 1

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.destroy()


def build_sqlalchemy_url(config: DatabaseConfig) -> URL:
    """SQLAlchemy URL for a sqlite, postgresql or clickhouse config."""
    db_type = config.type

    if db_type == DatabaseType.SQLITE.value:
        path = config.database_path
        if path == ':memory:':
            # Named shared-cache memory database so pooled connections share it
            return make_url(
                f"sqlite:///file:flowlog_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
            )
        return URL.create('sqlite', database=path)

    if db_type == DatabaseType.POSTGRESQL.value:
        if config.connection_string:
            url = make_url(config.connection_string)
            if url.drivername in ('postgres', 'postgresql'):
                url = url.set(drivername='postgresql+psycopg2')
            return url
        return URL.create(
            'postgresql+psycopg2', username=config.username, password=config.password,
            host=config.host, port=config.port, database=config.database,
        )

    if db_type == DatabaseType.CLICKHOUSE.value:
        query = {}
        if config.clickhouse:
            if config.clickhouse.session_id:
                query['session_id'] = config.clickhouse.session_id
            if config.clickhouse.session_timeout:
                query['session_timeout'] = str(config.clickhouse.session_timeout)
        if config.connection_string:
            connection_string = config.connection_string
            if connection_string.startswith('https://'):
                connection_string = 'clickhouse+http://' + connection_string[len('https://'):]
                query['protocol'] = 'https'
            elif connection_string.startswith('http://'):
                connection_string = 'clickhouse+http://' + connection_string[len('http://'):]
            url = make_url(connection_string)
            return url.update_query_dict(query) if query else url
        return URL.create(
            'clickhouse+http', username=config.username or 'default', password=config.password,
            host=config.host, port=config.port or 8123, database=config.database, query=query,
        )

    raise ConfigurationError([f"Unsupported database type: {db_type}"])


def _enable_sqlite_transactions(engine: Engine) -> None:
    # pysqlite does not emit BEGIN before DDL; take over transaction control
    # so migrations are rolled back as a whole.
    @event.listens_for(engine, 'connect')
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _on_begin(connection):
        connection.exec_driver_sql('BEGIN')


class SQLAlchemyConnectionPool(ConnectionPool):
    """Pool over a SQLAlchemy engine; the engine itself does no pooling."""

    def __init__(self, config: DatabaseConfig, **kwargs):
        self.engine = self._create_engine(config)
        memory = config.type == DatabaseType.SQLITE.value and config.database_path == ':memory:'
        if memory:
            # Shared-cache connections fail with SQLITE_LOCKED instead of
            # waiting, so callers queue for a single connection. Keeping it
            # open keeps the database alive.
            kwargs['max_size'] = 1
            kwargs['min_size'] = 1
        super().__init__(config, **kwargs)
        if memory and config.max_pool_size > 1:
            self.logger.info(
                f"In-memory SQLite uses one connection (max_connections {config.max_pool_size} ignored)"
            )

    @staticmethod
    def _create_engine(config: DatabaseConfig) -> Engine:
        url = build_sqlalchemy_url(config)
        connect_args: Dict[str, Any] = {}

        if config.type == DatabaseType.SQLITE.value:
            connect_args['check_same_thread'] = False
            connect_args['timeout'] = config.acquire_timeout
        elif config.type == DatabaseType.POSTGRESQL.value and config.ssl:
            if isinstance(config.ssl, dict):
                connect_args.update(config.ssl)
            else:
                connect_args['sslmode'] = 'require'

        engine = create_engine(url, poolclass=NullPool, connect_args=connect_args, echo=False)
        if config.type == DatabaseType.SQLITE.value:
            _enable_sqlite_transactions(engine)
        return engine

    def _create_connection(self) -> DatabaseConnection:
        return SQLAlchemyConnection(self.engine.connect(), self.config.type)

    def _dispose(self) -> None:
        self.engine.dispose()


class SQLitePool(SQLAlchemyConnectionPool):
    pass


class PostgreSQLPool(SQLAlchemyConnectionPool):
    pass


class ClickHousePool(SQLAlchemyConnectionPool):
    pass


class DuckDBPool(ConnectionPool):
    """Pool of cursors over one native DuckDB database handle."""

    def __init__(self, config: DatabaseConfig, **kwargs):
        try:
            self._database = duckdb.connect(config.database_path, config=dict(config.duckdb or {}))
        except duckdb.Error as e:
            raise BackendUnavailableError(f"Failed to open DuckDB database: {e}") from e
        super().__init__(config, **kwargs)

    def _create_connection(self) -> DatabaseConnection:
        return DuckDBConnection(self._database.cursor(), self.config.database_path)

    def _dispose(self) -> None:
        self._database.close()
