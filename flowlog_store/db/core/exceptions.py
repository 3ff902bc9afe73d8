"""
Database error taxonomy.

Every failure surfaced by the persistence core derives from DatabaseError so
callers can catch the whole family at once, or single out the retryable ones
(PoolExhaustionError, BackendUnavailableError) when deciding on backoff.
"""

from typing import Iterable, List, Optional


class DatabaseError(Exception):
    """Base exception for database layer errors."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ConfigurationError(DatabaseError):
    """Invalid or incomplete database configuration."""

    def __init__(self, errors: Iterable[str]):
        self.errors: List[str] = list(errors)
        super().__init__(
            "Invalid database configuration: " + "; ".join(self.errors),
            code="CONFIGURATION_ERROR",
        )


class DatabaseConnectionError(DatabaseError):
    """Base class for connection level failures."""

    def __init__(self, message: str, code: Optional[str] = "CONNECTION_ERROR"):
        super().__init__(message, code)


class PoolExhaustionError(DatabaseConnectionError):
    """No connection became available within the acquire timeout."""

    def __init__(self, message: str):
        super().__init__(message, code="POOL_EXHAUSTED")


class PoolClosedError(DatabaseConnectionError):
    """The pool has been destroyed."""

    def __init__(self, message: str = "Connection pool has been destroyed"):
        super().__init__(message, code="POOL_CLOSED")


class BackendUnavailableError(DatabaseConnectionError):
    """The backend could not be reached or reports the connection as gone."""

    def __init__(self, message: str):
        super().__init__(message, code="BACKEND_UNAVAILABLE")


class QueryError(DatabaseError):
    """A statement failed on the backend."""

    def __init__(self, message: str, sql: Optional[str] = None):
        super().__init__(message, code="QUERY_ERROR")
        self.sql = sql


class MigrationError(DatabaseError):
    """A migration's up or down step failed; its transaction was rolled back."""

    def __init__(self, message: str, migration_id: Optional[str] = None):
        super().__init__(message, code="MIGRATION_ERROR")
        self.migration_id = migration_id


class RollbackPreconditionError(MigrationError):
    """Rollback requested for an unknown or never-executed migration."""

    def __init__(self, message: str, migration_id: Optional[str] = None):
        super().__init__(message, migration_id)
        self.code = "ROLLBACK_PRECONDITION"


class StorageWriteError(DatabaseError):
    """A single record failed to persist."""

    def __init__(self, message: str, index: Optional[int] = None):
        super().__init__(message, code="STORAGE_WRITE_ERROR")
        self.index = index


class DataStoreClosedError(DatabaseError):
    """Operation attempted on a closed DataStore."""

    def __init__(self, message: str = "DataStore is closed"):
        super().__init__(message, code="DATASTORE_CLOSED")
