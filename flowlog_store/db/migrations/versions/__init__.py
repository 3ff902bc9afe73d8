"""
Application migrations, in application order.
"""

from .v001_create_log_entries_table import CreateLogEntriesTable
from .v002_add_performance_indexes import AddPerformanceIndexes
from .v003_create_aggregation_tables import CreateAggregationTables
from .v004_optimize_pagination import OptimizePagination
from .v005_create_download_batches_table import CreateDownloadBatchesTable
from .v006_add_connection_id_field import AddConnectionIdField


def all_migrations():
    """Fresh instances of every migration, ordered by id."""
    return [
        CreateLogEntriesTable(),
        AddPerformanceIndexes(),
        CreateAggregationTables(),
        OptimizePagination(),
        CreateDownloadBatchesTable(),
        AddConnectionIdField(),
    ]


__all__ = [
    'CreateLogEntriesTable',
    'AddPerformanceIndexes',
    'CreateAggregationTables',
    'OptimizePagination',
    'CreateDownloadBatchesTable',
    'AddConnectionIdField',
    'all_migrations',
]
