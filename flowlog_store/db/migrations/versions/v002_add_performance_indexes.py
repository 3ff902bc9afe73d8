"""
Composite and covering indexes for session reconstruction, workflow
analysis and summary queries.
"""

from ..ddl import Index, create_indexes, drop_indexes
from ..migration_runner import Migration

TABLE = 'log_entries'

INDEXES = [
    # session reconstruction
    Index('idx_log_entries_client_timestamp', ('client_ip', 'timestamp')),
    Index('idx_log_entries_session_workflow', ('client_ip', 'timestamp', 'request_url')),
    Index('idx_log_entries_session_key', ('client_ip', 'user_agent', 'timestamp')),
    Index('idx_log_entries_trace_id', ('trace_id',)),
    # filtered time series
    Index('idx_log_entries_status_timestamp', ('elb_status_code', 'timestamp')),
    Index('idx_log_entries_domain_timestamp', ('domain_name', 'timestamp')),
    Index('idx_log_entries_verb_url', ('request_verb', 'request_url')),
    Index('idx_log_entries_created_at', ('created_at',)),
    # summaries
    Index('idx_log_entries_summary_stats',
          ('timestamp', 'elb_status_code', 'request_processing_time', 'target_processing_time')),
    Index('idx_log_entries_error_analysis', ('elb_status_code', 'target_status_code', 'error_reason')),
    Index('idx_log_entries_performance',
          ('request_processing_time', 'target_processing_time', 'response_processing_time')),
    Index('idx_log_entries_bytes', ('received_bytes', 'sent_bytes', 'timestamp')),
]


class AddPerformanceIndexes(Migration):
    id = '002'
    name = 'add_performance_indexes'

    def up(self, connection):
        create_indexes(connection, TABLE, INDEXES)

    def down(self, connection):
        drop_indexes(connection, TABLE, INDEXES)
