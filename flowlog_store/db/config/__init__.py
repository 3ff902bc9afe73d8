"""
Database configuration management.

This module handles database-specific configuration:
- Connection settings per backend, validation and defaults
- Logging configuration integration
"""

from .db_config import (
    DatabaseConfig, DatabaseConfigBuilder, DatabaseConfigValidator, DatabaseType,
    PoolSettings, DATABASE_DEFAULTS, create_default_config, get_default_config,
)
from .logging_config import setup_db_logging, get_db_logger, DatabaseLoggerAdapter

__all__ = [
    'DatabaseConfig',
    'DatabaseConfigBuilder',
    'DatabaseConfigValidator',
    'DatabaseType',
    'PoolSettings',
    'DATABASE_DEFAULTS',
    'create_default_config',
    'get_default_config',
    'setup_db_logging',
    'get_db_logger',
    'DatabaseLoggerAdapter',
]
