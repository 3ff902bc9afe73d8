"""
Core database components.

This module contains the fundamental building blocks for database operations:
- Error taxonomy
- Backend connection adapters and SQL dialects
- Connection pooling and the pool factory
- Base repository implementation
"""

# exceptions first: the config package imports it while core is initializing
from .exceptions import DatabaseError
from .connection import DatabaseConnection, DuckDBConnection, SQLAlchemyConnection
from .dialects import Dialect, get_dialect
from .pool import ConnectionPool, DuckDBPool, SQLAlchemyConnectionPool
from .factory import ConnectionFactory
from .base_repository import BaseRepository

__all__ = [
    "DatabaseError",
    "DatabaseConnection",
    "DuckDBConnection",
    "SQLAlchemyConnection",
    "Dialect",
    "get_dialect",
    "ConnectionPool",
    "DuckDBPool",
    "SQLAlchemyConnectionPool",
    "ConnectionFactory",
    "BaseRepository",
]
