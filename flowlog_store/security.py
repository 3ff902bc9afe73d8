"""Security utilities for flowlog-store.

This module provides:
- Identifier validation for dynamically built SQL (index and sort columns)
- Log sanitization for credentials embedded in connection strings
"""

import logging
import re
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class SecurityError(Exception):
    """Base exception for security-related errors."""
    pass


class QueryInjectionError(SecurityError):
    """Raised when potential query injection is detected."""
    pass


class SecureQueryBuilder:
    """Validates identifiers that cannot be passed as bound parameters."""

    ALLOWED_TABLES = {
        'log_entries', 'schema_migrations', 'download_batches',
        'log_entries_hourly_summary', 'log_entries_url_summary',
        'client_session_summary', 'error_pattern_summary',
    }

    _IDENTIFIER = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')

    @classmethod
    def validate_table_name(cls, table_name: str) -> str:
        """Validate table name against whitelist.

        Raises:
            QueryInjectionError: If table name is not allowed
        """
        if table_name not in cls.ALLOWED_TABLES:
            raise QueryInjectionError(f"Table '{table_name}' is not in allowed list")
        return table_name

    @classmethod
    def validate_column_name(cls, column_name: str,
                             allowed: Optional[Iterable[str]] = None) -> str:
        """Validate column name for safety.

        Args:
            column_name: Column name to validate
            allowed: Optional whitelist the name must belong to

        Returns:
            Validated column name

        Raises:
            QueryInjectionError: If column name contains dangerous characters
                or is not whitelisted
        """
        if not isinstance(column_name, str) or not cls._IDENTIFIER.match(column_name):
            raise QueryInjectionError(
                f"Column name '{column_name}' contains invalid characters"
            )
        if allowed is not None and column_name not in set(allowed):
            raise QueryInjectionError(f"Column '{column_name}' is not in allowed list")
        return column_name

    @classmethod
    def escape_identifier(cls, identifier: str) -> str:
        """Quote an identifier with ANSI double quotes."""
        return '"' + identifier.replace('"', '""') + '"'


class InputValidator:
    """Sanitizes values before they reach the logs."""

    @staticmethod
    def sanitize_log_message(message: str) -> str:
        """Remove credentials from log messages.

        Args:
            message: Log message to sanitize

        Returns:
            Sanitized message
        """
        # user:password@host in URLs
        message = re.sub(r'(://[^:/\s@]+):[^@\s]+@', r'\1:***REDACTED***@', message)

        message = re.sub(
            r'(password|passwd|token|secret)\s*[=:]\s*[^\s,;&]+',
            r'\1=***REDACTED***',
            message,
            flags=re.IGNORECASE
        )
        return message


class SensitiveDataFilter(logging.Filter):
    """Logging filter that removes sensitive data."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = InputValidator.sanitize_log_message(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    key: InputValidator.sanitize_log_message(value) if isinstance(value, str) else value
                    for key, value in record.args.items()
                }
            else:
                record.args = tuple(
                    InputValidator.sanitize_log_message(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )
        return True
