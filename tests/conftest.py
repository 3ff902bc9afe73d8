"""
Shared fixtures: in-memory SQLite and DuckDB pools, migrated schemas and
sample log entries.
"""

from datetime import datetime, timedelta, timezone

import pytest

from flowlog_store.db.config.db_config import create_default_config
from flowlog_store.db.core.factory import ConnectionFactory
from flowlog_store.db.migrations.schema_manager import SchemaManager
from flowlog_store.db.models.log_entry import ParsedLogEntry
from flowlog_store.db.repositories.data_store import DataStore

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_entry(offset_seconds=0, status=200, client_ip='10.0.0.1', url='/api/users',
               user_agent='Mozilla/5.0 (X11; Linux x86_64)', **fields):
    """ParsedLogEntry at BASE_TIME + offset_seconds."""
    values = dict(
        timestamp=BASE_TIME + timedelta(seconds=offset_seconds),
        client_ip=client_ip,
        target_ip='172.16.0.10',
        request_processing_time=0.001,
        target_processing_time=0.015,
        response_processing_time=0.0,
        elb_status_code=status,
        target_status_code=status,
        received_bytes=512,
        sent_bytes=2048,
        request_verb='GET',
        request_url=url,
        request_protocol='HTTP/1.1',
        user_agent=user_agent,
        ssl_cipher='ECDHE-RSA-AES128-GCM-SHA256',
        ssl_protocol='TLSv1.2',
        target_group_arn='arn:aws:elasticloadbalancing:us-east-1:123456789012:targetgroup/web/abc',
        trace_id='Root=1-58337262-36d228ad5d99923122bbe354',
        domain_name='example.com',
        matched_rule_priority=1,
        actions_executed='forward',
        classification='',
        connection_id='conn-1',
    )
    values.update(fields)
    return ParsedLogEntry(**values)


@pytest.fixture
def factory():
    factory = ConnectionFactory()
    yield factory
    factory.close_all_pools()


@pytest.fixture
def sqlite_pool(factory):
    return factory.create_pool(create_default_config('sqlite', {'max_connections': 3}))


@pytest.fixture
def duckdb_pool(factory):
    return factory.create_pool(create_default_config('duckdb', {'max_connections': 3}))


@pytest.fixture(params=['sqlite', 'duckdb'])
def pool(request, factory):
    """Pool over an in-memory database of each embedded backend."""
    return factory.create_pool(create_default_config(request.param, {'max_connections': 3}))


@pytest.fixture
def migrated_pool(pool):
    with pool.connection() as connection:
        SchemaManager(connection).initialize_schema()
    return pool


@pytest.fixture
def store(migrated_pool):
    store = DataStore(migrated_pool)
    yield store
    store.close()
