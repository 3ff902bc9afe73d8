"""
Connection factory.

Registry of connection pools keyed by configuration identity: two equivalent
configs share one pool instead of opening duplicate backends. Create one
ConnectionFactory per application and pass it where pooling is needed;
get_instance() returns a process-wide default for callers that want one.
"""

import logging
import threading
from typing import Any, Dict, List, Mapping, Optional, Type, Union

from ..config.db_config import DatabaseConfig, DatabaseConfigValidator, DatabaseType
from .exceptions import ConfigurationError
from .pool import ClickHousePool, ConnectionPool, DuckDBPool, PostgreSQLPool, SQLitePool

logger = logging.getLogger('flowlog.factory')

DEFAULT_POOL_CLASSES: Dict[str, Type[ConnectionPool]] = {
    DatabaseType.SQLITE.value: SQLitePool,
    DatabaseType.POSTGRESQL.value: PostgreSQLPool,
    DatabaseType.CLICKHOUSE.value: ClickHousePool,
    DatabaseType.DUCKDB.value: DuckDBPool,
}

ConfigLike = Union[DatabaseConfig, Mapping[str, Any]]


class ConnectionFactory:
    """Creates and owns one ConnectionPool per distinct configuration."""

    _instance: Optional["ConnectionFactory"] = None
    _instance_lock = threading.Lock()

    def __init__(self, pool_classes: Optional[Mapping[str, Type[ConnectionPool]]] = None):
        """
        Args:
            pool_classes: Pool implementation per backend type, defaults to
                the built-in SQLAlchemy and DuckDB pools
        """
        self.pool_classes: Dict[str, Type[ConnectionPool]] = dict(pool_classes or DEFAULT_POOL_CLASSES)
        self._pools: Dict[str, ConnectionPool] = {}
        self._lock = threading.Lock()

    @classmethod
    def get_instance(cls) -> "ConnectionFactory":
        """Process-wide default factory."""
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the process-wide factory."""
        with cls._instance_lock:
            instance, cls._instance = cls._instance, None
        if instance is not None:
            instance.close_all_pools()

    @staticmethod
    def _coerce(config: ConfigLike) -> DatabaseConfig:
        if isinstance(config, DatabaseConfig):
            return config
        errors = DatabaseConfigValidator.validate(config)
        if errors:
            raise ConfigurationError(errors)
        return DatabaseConfig.model_validate(config)

    def validate_config(self, config: ConfigLike) -> List[str]:
        return DatabaseConfigValidator.validate(config)

    def create_pool(self, config: ConfigLike) -> ConnectionPool:
        """
        Return the pool for a config, creating it on first use.

        Args:
            config: DatabaseConfig or mapping of its fields

        Returns:
            Shared ConnectionPool for this configuration

        Raises:
            ConfigurationError: If the config does not validate
        """
        config = self._coerce(config)
        errors = DatabaseConfigValidator.validate(config)
        if errors:
            raise ConfigurationError(errors)

        key = config.canonical_key()
        with self._lock:
            pool = self._pools.get(key)
            if pool is not None and not pool.destroyed:
                return pool

            pool_class = self.pool_classes.get(config.type)
            if pool_class is None:
                raise ConfigurationError([f"Unsupported database type: {config.type}"])

            pool = pool_class(config)
            self._pools[key] = pool
            logger.info(f"Created {config.type} connection pool (max {pool.max_size})")
            return pool

    def get_pool(self, config: ConfigLike) -> Optional[ConnectionPool]:
        config = self._coerce(config)
        with self._lock:
            return self._pools.get(config.canonical_key())

    def get_supported_types(self) -> List[str]:
        return DatabaseType.values()

    def close_pool(self, config: ConfigLike) -> bool:
        """Destroy the pool for a config. Returns False if there was none."""
        config = self._coerce(config)
        with self._lock:
            pool = self._pools.pop(config.canonical_key(), None)
        if pool is None:
            return False
        pool.destroy()
        return True

    def close_all_pools(self) -> None:
        """Destroy every pool and clear the registry."""
        with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()
        closed = 0
        for pool in pools:
            try:
                pool.destroy()
            except Exception as e:
                logger.error(f"Failed to close {pool.config.type} connection pool: {e}")
            else:
                closed += 1
        if pools:
            logger.info(f"Closed {closed}/{len(pools)} connection pools")

    @property
    def pool_count(self) -> int:
        with self._lock:
            return len(self._pools)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_all_pools()
