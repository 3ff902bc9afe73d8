"""
Database layer for flow-log storage.

Key components:
- Configuration model with validation and per-backend defaults
- Connection pool and factory over SQLite, PostgreSQL, DuckDB and ClickHouse
- Migration system for schema management
- DataStore repository for log entries
- Centralized logging configuration
"""

from .core.exceptions import (
    DatabaseError, ConfigurationError, DatabaseConnectionError, PoolExhaustionError,
    PoolClosedError, BackendUnavailableError, QueryError, MigrationError,
    RollbackPreconditionError, StorageWriteError, DataStoreClosedError,
)
from .core import ConnectionPool, ConnectionFactory, DatabaseConnection, BaseRepository
from .config import (
    DatabaseConfig, DatabaseConfigBuilder, DatabaseConfigValidator, DatabaseType,
    create_default_config, setup_db_logging, DatabaseLoggerAdapter,
)

from . import models
from .models import *

from . import repositories
from .repositories import *

from .migrations import Migration, MigrationRunner, SchemaManager

__version__ = "1.0.0"
__all__ = [
    # Errors
    "DatabaseError",
    "ConfigurationError",
    "DatabaseConnectionError",
    "PoolExhaustionError",
    "PoolClosedError",
    "BackendUnavailableError",
    "QueryError",
    "MigrationError",
    "RollbackPreconditionError",
    "StorageWriteError",
    "DataStoreClosedError",

    # Core components
    "ConnectionPool",
    "ConnectionFactory",
    "DatabaseConnection",
    "BaseRepository",

    # Configuration
    "DatabaseConfig",
    "DatabaseConfigBuilder",
    "DatabaseConfigValidator",
    "DatabaseType",
    "create_default_config",
    "setup_db_logging",
    "DatabaseLoggerAdapter",

    # Migration system
    "Migration",
    "MigrationRunner",
    "SchemaManager",
] + models.__all__ + repositories.__all__
