"""
Pydantic models for log entries, query filters and migration records.
"""

from .log_entry import (
    ParsedLogEntry, TimeRange, FilterCriteria, BatchInsertResult,
    StorageStats, PaginatedResult, LOG_ENTRY_COLUMNS,
)
from .migration import MigrationRecord, MigrationStatus
from .summary import HourlySummary, DownloadBatch

__all__ = [
    'ParsedLogEntry',
    'TimeRange',
    'FilterCriteria',
    'BatchInsertResult',
    'StorageStats',
    'PaginatedResult',
    'LOG_ENTRY_COLUMNS',
    'MigrationRecord',
    'MigrationStatus',
    'HourlySummary',
    'DownloadBatch',
]
