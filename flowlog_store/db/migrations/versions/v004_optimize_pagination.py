"""
Indexes backing keyset and offset pagination over log_entries.

The two partial indexes fall back to full indexes on backends without
partial index support.
"""

from ..ddl import Index, create_indexes, drop_indexes
from ..migration_runner import Migration

TABLE = 'log_entries'

INDEXES = [
    Index('idx_log_entries_pagination_timestamp', ('timestamp DESC', 'id')),
    Index('idx_log_entries_pagination_id', ('id',)),
    Index('idx_log_entries_pagination_status', ('elb_status_code', 'timestamp DESC', 'id')),
    Index('idx_log_entries_pagination_client', ('client_ip', 'timestamp DESC', 'id')),
    Index('idx_log_entries_pagination_url', ('request_url', 'timestamp DESC', 'id')),
    Index('idx_log_entries_pagination_timerange', ('timestamp', 'id')),
    Index('idx_log_entries_pagination_covering',
          ('timestamp DESC', 'client_ip', 'request_url', 'elb_status_code', 'id')),
    Index('idx_log_entries_pagination_domain', ('domain_name', 'timestamp DESC', 'id')),
    Index('idx_log_entries_pagination_useragent', ('user_agent', 'timestamp DESC', 'id'),
          where='user_agent IS NOT NULL'),
    Index('idx_log_entries_pagination_errors', ('timestamp DESC', 'id'),
          where='elb_status_code >= 400'),
]


class OptimizePagination(Migration):
    id = '004'
    name = 'optimize_pagination'

    def up(self, connection):
        create_indexes(connection, TABLE, INDEXES)
        analyze = connection.dialect.analyze(TABLE)
        if analyze:
            connection.execute(analyze)

    def down(self, connection):
        drop_indexes(connection, TABLE, INDEXES)
