"""
Adds the ALB connection identifier to log_entries.
"""

from ..ddl import Index, create_indexes, drop_indexes
from ..migration_runner import Migration

TABLE = 'log_entries'

INDEXES = [
    Index('idx_log_entries_connection_id', ('connection_id',)),
    Index('idx_log_entries_timestamp_connection_id', ('timestamp', 'connection_id')),
]


class AddConnectionIdField(Migration):
    id = '006'
    name = 'add_connection_id_field'

    def up(self, connection):
        column = connection.dialect.column('connection_id', 'text', default="''")
        connection.dialect.alter_table(connection, TABLE, f'ADD COLUMN {column}')
        create_indexes(connection, TABLE, INDEXES)

    def down(self, connection):
        drop_indexes(connection, TABLE, INDEXES)
        connection.dialect.drop_column(connection, TABLE, 'connection_id')
