"""
Database logging configuration.

Sets up the 'flowlog' logger hierarchy used by the pool, migrations and
DataStore. The level comes from the settings file (logging.level), handlers
and formatting are decided here.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from ...security import SensitiveDataFilter

ROOT_LOGGER = 'flowlog'


class SafeFormatter(logging.Formatter):
    """Formatter that fills in defaults for the optional database fields."""

    _DEFAULTS = {
        'database_context': 'db',
        'query': '',
        'params': '',
        'duration': '',
        'separator': '',
    }

    def format(self, record):
        for name, default in self._DEFAULTS.items():
            if not hasattr(record, name):
                setattr(record, name, default)
        return super().format(record)


def setup_db_logging(settings: Optional[Dict[str, Any]] = None) -> logging.Logger:
    """
    Configure the database logger from application settings.

    Args:
        settings: Settings dictionary; reads logging.level and logging.log_dir

    Returns:
        The configured 'flowlog' logger
    """
    logging_config = (settings or {}).get('logging', {}) or {}
    log_level = str(logging_config.get('level', 'INFO')).upper()
    log_dir = logging_config.get('log_dir')

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    sensitive_filter = SensitiveDataFilter()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(SafeFormatter(
        '%(asctime)s - [%(database_context)s] - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    ))
    console_handler.setLevel(logging.INFO if log_level == 'DEBUG' else logger.level)
    console_handler.addFilter(sensitive_filter)
    logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        if log_level == 'DEBUG':
            file_handler = logging.FileHandler(log_path / 'db_debug.log')
            file_handler.setFormatter(SafeFormatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d\n'
                'Message: %(message)s'
                '%(query)s%(params)s%(duration)s%(separator)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
        else:
            file_handler = logging.FileHandler(log_path / 'db.log')
            file_handler.setFormatter(SafeFormatter(
                '%(asctime)s.%(msecs)03d - [%(database_context)s] - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
        file_handler.setLevel(logger.level)
        file_handler.addFilter(sensitive_filter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def get_logger(component: str) -> logging.Logger:
    """Return the logger for a database component, e.g. 'pool'."""
    return logging.getLogger(f'{ROOT_LOGGER}.{component}')


def log_query(logger: logging.Logger, query: str, params: Any = None,
              duration: Optional[float] = None, level: str = 'DEBUG') -> None:
    """
    Log a statement with detail matching the logger's level.

    Args:
        logger: Database logger instance
        query: SQL text
        params: Bound parameters
        duration: Execution time in seconds
        level: Log level name
    """
    log_level = getattr(logging, level.upper())

    if logger.isEnabledFor(logging.DEBUG):
        extra = {
            'query': f'\nQuery: {query}',
            'params': f'\nParams: {params}' if params else '',
            'duration': f'\nDuration: {duration:.3f}s' if duration else '',
            'separator': '\n' + '-' * 80
        }
        logger.log(log_level, "Database operation executed", extra=extra)
    elif logger.isEnabledFor(logging.INFO) and level.upper() in ('INFO', 'WARNING', 'ERROR'):
        if duration:
            logger.log(log_level, f"Query executed in {duration:.3f}s")
        else:
            logger.log(log_level, "Database operation completed")


def log_transaction(logger: logging.Logger, operation: str, success: bool,
                    duration: Optional[float] = None, error: Optional[str] = None) -> None:
    """Log the outcome of a transaction."""
    if success:
        message = f"Transaction '{operation}' completed successfully"
        if duration:
            message += f" in {duration:.3f}s"
        logger.info(message)
    else:
        message = f"Transaction '{operation}' failed"
        if error:
            message += f": {error}"
        logger.error(message)


def log_connection_event(logger: logging.Logger, event: str, details: Optional[str] = None) -> None:
    """
    Log connection pool events.

    Args:
        logger: Database logger instance
        event: Event type ('acquired', 'released', 'created', 'closed', 'discarded', 'error')
        details: Additional event details
    """
    if event == 'error':
        logger.error(f"Connection error: {details}")
    elif event == 'discarded':
        logger.warning(f"Connection discarded: {details}")
    elif logger.isEnabledFor(logging.DEBUG):
        message = f"Connection {event}"
        if details:
            message += f": {details}"
        logger.debug(message)


def log_performance_metric(logger: logging.Logger, metric_name: str,
                           value: float, unit: str = '') -> None:
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"Performance metric - {metric_name}: {value}{unit}")


class DatabaseLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter tagging records with the backend they concern.

    The 'database_context' field shows up in the console and file formats,
    e.g. 'sqlite:logs.db' or 'postgresql:flowlogs'.
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg, kwargs):
        db_type = self.extra.get('db_type', 'db')
        db_name = self.extra.get('db_name')
        if db_name:
            context = f"{db_type}:{Path(str(db_name)).stem or db_name}"
        else:
            context = db_type

        if 'extra' not in kwargs:
            kwargs['extra'] = {}
        kwargs['extra']['database_context'] = context

        return msg, kwargs

    def query(self, query: str, params: Any = None, duration: Optional[float] = None) -> None:
        log_query(self, query, params, duration)

    def transaction(self, operation: str, success: bool, duration: Optional[float] = None,
                    error: Optional[str] = None) -> None:
        log_transaction(self, operation, success, duration, error)

    def connection_event(self, event: str, details: Optional[str] = None) -> None:
        log_connection_event(self, event, details)

    def performance(self, metric_name: str, value: float, unit: str = '') -> None:
        log_performance_metric(self, metric_name, value, unit)


def get_db_logger(component: str, db_type: Optional[str] = None,
                  db_name: Optional[str] = None) -> DatabaseLoggerAdapter:
    """Logger adapter for a component bound to one backend."""
    return DatabaseLoggerAdapter(get_logger(component), {'db_type': db_type or 'db', 'db_name': db_name})
