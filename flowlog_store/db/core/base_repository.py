"""
Base repository implementation for database operations.

Repositories borrow a connection from a ConnectionPool for each operation
and hand it back when the operation finishes, so no connection is held
between calls. Subclasses provide the table, the model class and the
row/model conversions.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Generic, Iterator, Type, TypeVar

from ..config.logging_config import DatabaseLoggerAdapter
from .connection import DatabaseConnection
from .dialects import Dialect, get_dialect
from .exceptions import DataStoreClosedError
from .pool import ConnectionPool

T = TypeVar('T')


class BaseRepository(ABC, Generic[T]):
    """
    Abstract base repository over a connection pool.

    Tracks per-operation timings and refuses work once closed.
    """

    def __init__(self, pool: ConnectionPool):
        """
        Initialize repository with a connection pool.

        Args:
            pool: Pool the repository borrows connections from
        """
        self.pool = pool
        self.dialect: Dialect = get_dialect(pool.config.type)
        self.logger = DatabaseLoggerAdapter(
            logging.getLogger(f'flowlog.{self.__class__.__name__.lower()}'),
            {'db_type': pool.config.type, 'db_name': pool.config.database or pool.config.filename}
        )
        self._closed = False
        self._stats_lock = threading.Lock()
        self.operation_stats = {
            'queries_executed': 0,
            'total_query_time': 0.0,
        }

    @property
    @abstractmethod
    def table_name(self) -> str:
        """Return the primary table name for this repository."""

    @property
    @abstractmethod
    def model_class(self) -> Type[T]:
        """Return the model class for this repository."""

    @abstractmethod
    def _row_to_model(self, row: Dict[str, Any]) -> T:
        """Convert a result row to a model instance."""

    @abstractmethod
    def _model_to_dict(self, model: T) -> Dict[str, Any]:
        """Convert a model instance to column values for writing."""

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise DataStoreClosedError(f"{self.__class__.__name__} is closed")

    @contextmanager
    def _connection(self) -> Iterator[DatabaseConnection]:
        """Borrow a pooled connection for one operation."""
        self._ensure_open()
        with self.pool.connection() as connection:
            yield connection

    @contextmanager
    def _timed(self, operation: str) -> Iterator[None]:
        start_time = time.time()
        try:
            yield
        finally:
            self._track_operation(operation, time.time() - start_time)

    def _track_operation(self, operation: str, duration: float) -> None:
        with self._stats_lock:
            self.operation_stats['queries_executed'] += 1
            self.operation_stats['total_query_time'] += duration
        self.logger.performance(f'{operation}_duration', duration, 's')

    def get_performance_stats(self) -> Dict[str, Any]:
        """Get performance statistics for this repository."""
        with self._stats_lock:
            stats = self.operation_stats.copy()

        if stats['queries_executed'] > 0:
            stats['avg_query_time'] = stats['total_query_time'] / stats['queries_executed']
        else:
            stats['avg_query_time'] = 0.0

        stats['table_name'] = self.table_name
        stats['repository_class'] = self.__class__.__name__
        return stats

    def close(self) -> None:
        """Stop accepting operations. Connections already went back to the pool."""
        if not self._closed:
            self._closed = True
            self.logger.info(f"{self.__class__.__name__} closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
