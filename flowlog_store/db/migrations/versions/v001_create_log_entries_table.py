"""
Initial schema: the log_entries table and its base indexes.
"""

from ..ddl import CURRENT_TIMESTAMP, Column, Index, create_indexes, create_table, drop_indexes, drop_table
from ..migration_runner import Migration

TABLE = 'log_entries'

COLUMNS = [
    Column('timestamp', 'datetime', not_null=True),
    Column('client_ip', 'text'),
    Column('target_ip', 'text'),
    Column('request_processing_time', 'real'),
    Column('target_processing_time', 'real'),
    Column('response_processing_time', 'real'),
    Column('elb_status_code', 'integer'),
    Column('target_status_code', 'integer'),
    Column('received_bytes', 'bigint'),
    Column('sent_bytes', 'bigint'),
    Column('request_verb', 'text'),
    Column('request_url', 'text'),
    Column('request_protocol', 'text'),
    Column('user_agent', 'text'),
    Column('ssl_cipher', 'text'),
    Column('ssl_protocol', 'text'),
    Column('target_group_arn', 'text'),
    Column('trace_id', 'text'),
    Column('domain_name', 'text'),
    Column('chosen_cert_arn', 'text'),
    Column('matched_rule_priority', 'integer'),
    Column('request_creation_time', 'datetime'),
    Column('actions_executed', 'text'),
    Column('redirect_url', 'text'),
    Column('error_reason', 'text'),
    Column('target_port_list', 'text'),
    Column('target_status_code_list', 'text'),
    Column('classification', 'text'),
    Column('classification_reason', 'text'),
    Column('created_at', 'datetime', default=CURRENT_TIMESTAMP),
]

INDEXES = [
    Index('idx_log_entries_timestamp', ('timestamp',)),
    Index('idx_log_entries_request_url', ('request_url',)),
    Index('idx_log_entries_elb_status_code', ('elb_status_code',)),
    Index('idx_log_entries_client_ip', ('client_ip',)),
    Index('idx_log_entries_domain_name', ('domain_name',)),
    Index('idx_log_entries_timestamp_status', ('timestamp', 'elb_status_code')),
    Index('idx_log_entries_timestamp_url', ('timestamp', 'request_url')),
    Index('idx_log_entries_target_status_code', ('target_status_code',)),
]


class CreateLogEntriesTable(Migration):
    id = '001'
    name = 'create_log_entries_table'

    def up(self, connection):
        create_table(connection, TABLE, COLUMNS, order_by=['timestamp'])
        create_indexes(connection, TABLE, INDEXES)

    def down(self, connection):
        drop_indexes(connection, TABLE, INDEXES)
        drop_table(connection, TABLE)
