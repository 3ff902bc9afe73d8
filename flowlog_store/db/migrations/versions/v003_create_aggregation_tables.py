"""
Summary tables for hourly traffic, URL patterns, client sessions and
error patterns.
"""

from ..ddl import CURRENT_TIMESTAMP, Column, Index, create_indexes, create_table, drop_table
from ..migration_runner import Migration

_TIMESTAMPS = [
    Column('created_at', 'datetime', default=CURRENT_TIMESTAMP),
    Column('updated_at', 'datetime', default=CURRENT_TIMESTAMP),
]

TABLES = [
    (
        'log_entries_hourly_summary',
        [
            Column('hour_timestamp', 'datetime', not_null=True),
            Column('domain_name', 'text', not_null=True),
            Column('request_count', 'integer', default='0'),
            Column('error_count', 'integer', default='0'),
            Column('avg_request_time', 'real', default='0'),
            Column('avg_target_time', 'real', default='0'),
            Column('avg_response_time', 'real', default='0'),
            Column('total_bytes_received', 'bigint', default='0'),
            Column('total_bytes_sent', 'bigint', default='0'),
            Column('unique_clients', 'integer', default='0'),
            Column('status_code_2xx', 'integer', default='0'),
            Column('status_code_3xx', 'integer', default='0'),
            Column('status_code_4xx', 'integer', default='0'),
            Column('status_code_5xx', 'integer', default='0'),
        ] + _TIMESTAMPS,
        ['hour_timestamp', 'domain_name'],
        [
            Index('idx_hourly_summary_time_domain', ('hour_timestamp', 'domain_name')),
            Index('idx_hourly_summary_timestamp', ('hour_timestamp',)),
        ],
    ),
    (
        'log_entries_url_summary',
        [
            Column('url_pattern', 'text', not_null=True),
            Column('domain_name', 'text', not_null=True),
            Column('request_verb', 'text', not_null=True),
            Column('request_count', 'integer', default='0'),
            Column('error_count', 'integer', default='0'),
            Column('avg_request_time', 'real', default='0'),
            Column('avg_target_time', 'real', default='0'),
            Column('min_request_time', 'real', default='0'),
            Column('max_request_time', 'real', default='0'),
            Column('total_bytes_received', 'bigint', default='0'),
            Column('total_bytes_sent', 'bigint', default='0'),
            Column('first_seen', 'datetime'),
            Column('last_seen', 'datetime'),
        ] + _TIMESTAMPS,
        ['url_pattern', 'domain_name', 'request_verb'],
        [
            Index('idx_url_summary_pattern_domain_verb', ('url_pattern', 'domain_name', 'request_verb'),
                  unique=True),
            Index('idx_url_summary_pattern', ('url_pattern',)),
        ],
    ),
    (
        'client_session_summary',
        [
            Column('client_ip', 'text', not_null=True),
            Column('user_agent_hash', 'text', not_null=True),
            Column('session_date', 'date', not_null=True),
            Column('session_count', 'integer', default='0'),
            Column('total_requests', 'integer', default='0'),
            Column('unique_urls', 'integer', default='0'),
            Column('session_duration_avg', 'real', default='0'),
            Column('session_duration_max', 'real', default='0'),
            Column('error_rate', 'real', default='0'),
        ] + _TIMESTAMPS,
        ['client_ip', 'user_agent_hash', 'session_date'],
        [
            Index('idx_session_summary_client_date', ('client_ip', 'user_agent_hash', 'session_date'),
                  unique=True),
            Index('idx_session_summary_date', ('session_date',)),
        ],
    ),
    (
        'error_pattern_summary',
        [
            Column('error_pattern', 'text', not_null=True),
            Column('elb_status_code', 'integer', not_null=True),
            Column('target_status_code', 'integer'),
            Column('error_reason', 'text'),
            Column('url_pattern', 'text'),
            Column('occurrence_count', 'integer', default='0'),
            Column('first_occurrence', 'datetime'),
            Column('last_occurrence', 'datetime'),
        ] + _TIMESTAMPS,
        ['error_pattern', 'elb_status_code'],
        [
            Index('idx_error_pattern_unique',
                  ('error_pattern', 'elb_status_code', 'target_status_code', 'url_pattern'), unique=True),
            Index('idx_error_pattern_status', ('elb_status_code', 'target_status_code')),
        ],
    ),
]


class CreateAggregationTables(Migration):
    id = '003'
    name = 'create_aggregation_tables'

    def up(self, connection):
        for table, columns, order_by, indexes in TABLES:
            create_table(connection, table, columns, order_by=order_by)
            create_indexes(connection, table, indexes)

    def down(self, connection):
        for table, _, _, _ in TABLES:
            drop_table(connection, table)
