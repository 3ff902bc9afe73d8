"""
Tracking table for batches of log files downloaded from S3.
"""

from ..ddl import CURRENT_TIMESTAMP, Column, Index, create_indexes, create_table, drop_indexes, drop_table
from ..migration_runner import Migration

TABLE = 'download_batches'

COLUMNS = [
    Column('batch_id', 'text', primary_key=True),
    Column('batch_name', 'text', not_null=True),
    Column('download_date', 'datetime', default=CURRENT_TIMESTAMP),
    Column('file_count', 'integer', not_null=True, default='0'),
    Column('total_size_bytes', 'bigint', not_null=True, default='0'),
    Column('s3_file_paths', 'text', not_null=True),        # JSON array
    Column('local_file_paths', 'text', not_null=True),     # JSON array
    Column('status', 'text', not_null=True, default="'pending'"),  # pending, downloading, completed, error
    Column('error_message', 'text'),
    Column('download_started_at', 'datetime'),
    Column('download_completed_at', 'datetime'),
    Column('estimated_size_bytes', 'bigint', default='0'),
    Column('progress_percentage', 'integer', default='0'),
    Column('created_at', 'datetime', default=CURRENT_TIMESTAMP),
    Column('updated_at', 'datetime', default=CURRENT_TIMESTAMP),
]

INDEXES = [
    Index('idx_download_batches_status', ('status',)),
    Index('idx_download_batches_date', ('download_date',)),
    Index('idx_download_batches_created', ('created_at',)),
]


class CreateDownloadBatchesTable(Migration):
    id = '005'
    name = 'create_download_batches_table'

    def up(self, connection):
        create_table(connection, TABLE, COLUMNS, order_by=['batch_id'], serial_id=False)
        create_indexes(connection, TABLE, INDEXES)

    def down(self, connection):
        drop_indexes(connection, TABLE, INDEXES)
        drop_table(connection, TABLE)
