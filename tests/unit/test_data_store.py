"""Unit tests for the DataStore against in-memory SQLite and DuckDB."""

from datetime import timedelta

import pandas as pd
import pytest

from flowlog_store.db.core.exceptions import DataStoreClosedError, QueryError
from flowlog_store.db.models.log_entry import FilterCriteria, TimeRange
from flowlog_store.db.models.summary import DownloadBatch, s3_key
from flowlog_store.db.repositories.data_store import DataStore, decode_cursor, encode_cursor
from flowlog_store.security import QueryInjectionError

from ..conftest import BASE_TIME, make_entry


@pytest.fixture
def sample_entries():
    """Ten entries one minute apart with a mix of statuses, clients and agents."""
    return [
        make_entry(0, status=200, client_ip='10.0.0.1', url='/api/users'),
        make_entry(60, status=404, client_ip='10.0.0.2', url='/missing'),
        make_entry(120, status=200, client_ip='10.0.0.1', url='/api/orders', user_agent='curl/8.0'),
        make_entry(180, status=500, client_ip='10.0.0.3', url='/api/orders'),
        make_entry(240, status=200, client_ip='10.0.0.2', url='/api/users', user_agent='python-requests/2.31'),
        make_entry(300, status=302, client_ip='10.0.0.1', url='/login'),
        make_entry(360, status=200, client_ip='10.0.0.4', url='/api/users', domain_name='api.example.com'),
        make_entry(420, status=503, client_ip='10.0.0.3', url='/api/orders'),
        make_entry(480, status=200, client_ip='10.0.0.1', url='/health', user_agent='ELB-HealthChecker/2.0'),
        make_entry(540, status=404, client_ip='10.0.0.2', url='/favicon.ico'),
    ]


@pytest.fixture
def loaded_store(store, sample_entries):
    result = store.store(sample_entries)
    assert result.inserted_count == 10
    return store


class TestStore:
    """Writing entries."""

    def test_store_and_read_back(self, store):
        entry = make_entry(0, status=201, request_creation_time=BASE_TIME - timedelta(seconds=1))
        result = store.store([entry])

        assert result.inserted_count == 1
        assert result.failed_count == 0
        assert result.batch_size == 1

        [stored] = store.query()
        assert stored.id is not None
        assert stored.timestamp == BASE_TIME
        assert stored.request_creation_time == BASE_TIME - timedelta(seconds=1)
        assert stored.elb_status_code == 201
        assert stored.user_agent == entry.user_agent
        assert stored.connection_id == 'conn-1'
        assert stored.created_at is not None

    def test_store_accepts_mappings(self, store):
        result = store.store([{'timestamp': BASE_TIME, 'elb_status_code': 200, 'client_ip': '1.2.3.4'}])
        assert result.inserted_count == 1
        assert store.query()[0].client_ip == '1.2.3.4'

    def test_malformed_record_counted_not_raised(self, store):
        entries = [
            make_entry(0),
            {'client_ip': '10.0.0.9'},
            {'timestamp': 'not a time'},
            make_entry(60),
        ]
        result = store.store(entries)

        assert result.inserted_count == 2
        assert result.failed_count == 2
        assert result.batch_size == 4
        assert len(result.errors) == 2
        assert result.errors[0].startswith('Entry 1:')
        assert store.count() == 2

    def test_empty_batch(self, store):
        result = store.store([])
        assert result.inserted_count == 0
        assert result.failed_count == 0

    def test_ids_increase(self, store):
        store.store([make_entry(0), make_entry(1), make_entry(2)])
        ids = [entry.id for entry in store.query()]
        assert ids == sorted(ids)
        assert len(set(ids)) == 3

    def test_store_batch_chunks(self, migrated_pool):
        store = DataStore(migrated_pool, batch_size=3)
        result = store.store_batch(make_entry(i) for i in range(10))

        assert result.inserted_count == 10
        assert result.batch_size == 10
        assert store.count() == 10


class TestQuery:
    """Filtering, ordering and limits."""

    def test_no_filter_returns_all_in_time_order(self, loaded_store):
        entries = loaded_store.query()
        assert len(entries) == 10
        assert [e.timestamp for e in entries] == sorted(e.timestamp for e in entries)

    def test_status_codes(self, loaded_store):
        entries = loaded_store.query(FilterCriteria(status_codes=[404, 500]))
        assert sorted(e.elb_status_code for e in entries) == [404, 404, 500]

    def test_client_ips(self, loaded_store):
        entries = loaded_store.query({'clientIps': ['10.0.0.3']})
        assert {e.client_ip for e in entries} == {'10.0.0.3'}
        assert len(entries) == 2

    def test_endpoints(self, loaded_store):
        assert len(loaded_store.query(FilterCriteria(endpoints=['/api/users']))) == 3

    def test_domain_names(self, loaded_store):
        entries = loaded_store.query(FilterCriteria(domain_names=['api.example.com']))
        assert [e.client_ip for e in entries] == ['10.0.0.4']

    def test_user_agent_patterns(self, loaded_store):
        entries = loaded_store.query(FilterCriteria(user_agent_patterns=['curl', 'python-requests']))
        assert sorted(e.user_agent for e in entries) == ['curl/8.0', 'python-requests/2.31']

    def test_time_range_inclusive(self, loaded_store):
        criteria = FilterCriteria(time_range=TimeRange(
            start=BASE_TIME + timedelta(seconds=60),
            end=BASE_TIME + timedelta(seconds=180),
        ))
        entries = loaded_store.query(criteria)
        assert [e.timestamp for e in entries] == [
            BASE_TIME + timedelta(seconds=60),
            BASE_TIME + timedelta(seconds=120),
            BASE_TIME + timedelta(seconds=180),
        ]

    def test_filters_combine(self, loaded_store):
        criteria = FilterCriteria(status_codes=[200], client_ips=['10.0.0.1'], endpoints=['/api/users'])
        entries = loaded_store.query(criteria)
        assert len(entries) == 1
        assert entries[0].timestamp == BASE_TIME

    def test_empty_lists_impose_no_constraint(self, loaded_store):
        assert len(loaded_store.query(FilterCriteria(status_codes=[], client_ips=[]))) == 10

    def test_limit_and_offset(self, loaded_store):
        entries = loaded_store.query(FilterCriteria(limit=3, offset=2))
        assert [e.timestamp for e in entries] == [
            BASE_TIME + timedelta(seconds=120),
            BASE_TIME + timedelta(seconds=180),
            BASE_TIME + timedelta(seconds=240),
        ]

    def test_descending(self, loaded_store):
        entries = loaded_store.query(FilterCriteria(sort_order='DESC', limit=2))
        assert [e.timestamp for e in entries] == [
            BASE_TIME + timedelta(seconds=540),
            BASE_TIME + timedelta(seconds=480),
        ]

    def test_sort_by_status(self, loaded_store):
        entries = loaded_store.query(FilterCriteria(sort_by='elb_status_code', sort_order='desc'))
        codes = [e.elb_status_code for e in entries]
        assert codes == sorted(codes, reverse=True)

    def test_unknown_sort_column_rejected(self):
        with pytest.raises(ValueError):
            FilterCriteria(sort_by='user_agent; DROP TABLE log_entries')

    def test_safety_cap(self, migrated_pool, sample_entries):
        store = DataStore(migrated_pool, max_query_rows=4)
        store.store(sample_entries)

        assert len(store.query()) == 4
        assert len(store.query(FilterCriteria(limit=100))) == 4
        assert len(store.query(FilterCriteria(limit=2))) == 2
        assert store.count() == 10

    def test_count(self, loaded_store):
        assert loaded_store.count() == 10
        assert loaded_store.count(FilterCriteria(status_codes=[200])) == 5
        assert loaded_store.count(FilterCriteria(status_codes=[200], limit=1)) == 5

    def test_query_dataframe(self, loaded_store):
        frame = loaded_store.query_dataframe(FilterCriteria(status_codes=[404]))
        assert isinstance(frame, pd.DataFrame)
        assert len(frame) == 2
        assert 'request_url' in frame.columns
        assert set(frame['request_url']) == {'/missing', '/favicon.ico'}


class TestPagination:
    """Offset and cursor pagination."""

    def test_pages(self, loaded_store):
        first = loaded_store.query_paginated(page=1, page_size=4)
        last = loaded_store.query_paginated(page=3, page_size=4)

        assert first.total_count == 10
        assert first.total_pages == 3
        assert len(first.data) == 4
        assert first.has_next and not first.has_previous
        assert len(last.data) == 2
        assert last.has_previous and not last.has_next

    def test_page_beyond_end(self, loaded_store):
        page = loaded_store.query_paginated(page=9, page_size=4)
        assert page.data == []
        assert not page.has_next

    def test_page_size_capped(self, loaded_store):
        assert loaded_store.query_paginated(page_size=5000).page_size == 1000

    def test_to_dict(self, loaded_store):
        payload = loaded_store.query_paginated(page=1, page_size=2).to_dict()
        assert payload['total_count'] == 10
        assert isinstance(payload['data'][0]['timestamp'], str)

    def test_cursor_walk(self, loaded_store):
        seen = []
        cursor = None
        pages = 0
        while True:
            page = loaded_store.query_cursor_paginated(cursor=cursor, page_size=3)
            seen.extend(page.data)
            pages += 1
            if not page.has_next:
                assert page.next_cursor is None
                break
            cursor = page.next_cursor

        assert pages == 4
        assert len(seen) == 10
        assert len({e.id for e in seen}) == 10
        assert [e.timestamp for e in seen] == sorted(e.timestamp for e in seen)

    def test_cursor_with_equal_timestamps(self, store):
        store.store([make_entry(0, client_ip=f'10.1.0.{i}') for i in range(5)])

        first = store.query_cursor_paginated(page_size=2)
        second = store.query_cursor_paginated(cursor=first.next_cursor, page_size=2)
        third = store.query_cursor_paginated(cursor=second.next_cursor, page_size=2)

        ids = [e.id for e in first.data + second.data + third.data]
        assert len(ids) == 5 and len(set(ids)) == 5
        assert not third.has_next

    def test_cursor_respects_filter(self, loaded_store):
        page = loaded_store.query_cursor_paginated(FilterCriteria(status_codes=[200]), page_size=10)
        assert len(page.data) == 5
        assert page.total_count == 5

    def test_cursor_format(self):
        cursor = encode_cursor(BASE_TIME, 42)
        assert decode_cursor(cursor) == (BASE_TIME, 42)
        with pytest.raises(QueryError):
            decode_cursor('garbage')

    def test_stream(self, loaded_store):
        streamed = list(loaded_store.query_stream(chunk_size=3))
        assert len(streamed) == 10
        assert [e.timestamp for e in streamed] == sorted(e.timestamp for e in streamed)

    def test_stream_limit(self, loaded_store):
        assert len(list(loaded_store.query_stream(FilterCriteria(limit=4), chunk_size=3))) == 4


class TestIndexes:
    """Ad hoc indexes on log_entries."""

    def test_create_and_drop(self, store):
        name = store.create_index('user_agent')
        assert name == 'idx_log_entries_user_agent'
        assert name in store.list_indexes()

        store.drop_index('user_agent')
        assert name not in store.list_indexes()

    def test_create_is_idempotent(self, store):
        store.create_index('user_agent')
        store.create_index('user_agent')
        assert store.list_indexes().count('idx_log_entries_user_agent') == 1

    def test_migration_indexes_listed(self, store):
        assert 'idx_log_entries_timestamp' in store.list_indexes()

    @pytest.mark.parametrize('column', ['no_such_column', 'user_agent; DROP TABLE log_entries', ''])
    def test_rejects_unknown_columns(self, store, column):
        with pytest.raises(QueryInjectionError):
            store.create_index(column)


class TestMaintenance:
    """Statistics and housekeeping."""

    def test_stats_empty(self, store):
        stats = store.get_stats()
        assert stats.total_entries == 0
        assert stats.oldest_entry is None
        assert stats.newest_entry is None
        assert stats.index_count > 0

    def test_stats(self, loaded_store):
        stats = loaded_store.get_stats()
        assert stats.total_entries == 10
        assert stats.oldest_entry == BASE_TIME
        assert stats.newest_entry == BASE_TIME + timedelta(seconds=540)
        assert stats.database_size >= 0

    def test_database_size(self, loaded_store):
        assert loaded_store.get_database_size() >= 0

    def test_delete_old_entries(self, loaded_store):
        deleted = loaded_store.delete_old_entries(BASE_TIME + timedelta(seconds=300))
        assert deleted == 5
        assert loaded_store.count() == 5
        assert loaded_store.get_stats().oldest_entry == BASE_TIME + timedelta(seconds=300)

    def test_delete_old_entries_by_age(self, loaded_store):
        # every sample entry lies in the past
        assert loaded_store.delete_old_entries(timedelta(days=1)) == 10
        assert loaded_store.count() == 0

    def test_clear_data(self, loaded_store):
        assert loaded_store.clear_data() == 10
        assert loaded_store.count() == 0

        loaded_store.store([make_entry(0)])
        assert loaded_store.count() == 1

    def test_optimize(self, loaded_store):
        loaded_store.optimize()
        assert loaded_store.count() == 10

    def test_performance_stats(self, loaded_store):
        loaded_store.count()
        stats = loaded_store.get_performance_stats()
        assert stats['queries_executed'] >= 2
        assert stats['table_name'] == 'log_entries'
        assert stats['repository_class'] == 'DataStore'


class TestHourlySummary:
    """Hourly roll-up of log_entries and queries over it."""

    def test_refresh_groups_by_hour_and_domain(self, loaded_store):
        loaded_store.store([make_entry(3600, status=500)])

        assert loaded_store.refresh_hourly_summary() == 3
        rows = loaded_store.query_aggregated()

        assert [(row.hour_timestamp, row.domain_name) for row in rows] == [
            (BASE_TIME + timedelta(hours=1), 'example.com'),
            (BASE_TIME, 'api.example.com'),
            (BASE_TIME, 'example.com'),
        ]
        latest, api, web = rows
        assert (latest.total_requests, latest.total_errors) == (1, 1)
        assert (api.total_requests, api.total_errors) == (1, 0)
        assert (web.total_requests, web.total_errors) == (9, 4)
        assert web.total_bytes_received == 9 * 512
        assert web.total_bytes_sent == 9 * 2048
        assert web.avg_request_time == pytest.approx(0.001)

    def test_refresh_rebuilds_latest_hour(self, loaded_store):
        loaded_store.refresh_hourly_summary()
        loaded_store.store([make_entry(600), make_entry(610, status=502)])

        assert loaded_store.refresh_hourly_summary() == 2
        rows = {row.domain_name: row for row in loaded_store.query_aggregated()}

        assert len(rows) == 2
        assert rows['example.com'].total_requests == 11
        assert rows['example.com'].total_errors == 5

    def test_refresh_since(self, loaded_store):
        loaded_store.refresh_hourly_summary()
        loaded_store.store([make_entry(7200)])

        assert loaded_store.refresh_hourly_summary(since=BASE_TIME + timedelta(hours=2, minutes=30)) == 1
        assert len(loaded_store.query_aggregated()) == 3

    def test_filters(self, loaded_store):
        loaded_store.store([make_entry(3600)])
        loaded_store.refresh_hourly_summary()

        by_domain = loaded_store.query_aggregated({'domainNames': ['api.example.com']})
        assert [row.total_requests for row in by_domain] == [1]

        later = FilterCriteria(time_range=TimeRange(
            start=BASE_TIME + timedelta(minutes=30), end=BASE_TIME + timedelta(hours=2)
        ))
        assert [row.hour_timestamp for row in loaded_store.query_aggregated(later)] == [
            BASE_TIME + timedelta(hours=1)
        ]

    def test_empty_table(self, store):
        assert store.refresh_hourly_summary() == 0
        assert store.query_aggregated() == []


class TestDownloadTracking:
    """Prefix lookups over recorded download batches."""

    PREFIX = 'AWSLogs/123456789012/elasticloadbalancing/us-east-1/2024/03/01/'

    @pytest.fixture
    def tracked_store(self, store):
        prefix = self.PREFIX
        store.record_download_batch(DownloadBatch(
            batch_id='b1', batch_name='morning', status='completed',
            s3_file_paths=[f's3://alb-logs/{prefix}a.log.gz', f'alb-logs/{prefix}b.log.gz'],
            download_completed_at=BASE_TIME,
        ))
        store.record_download_batch(DownloadBatch(
            batch_id='b2', batch_name='noon', status='completed',
            s3_file_paths=[f's3://alb-logs/{prefix}c.log.gz', 's3://alb-logs/AWSLogs/123456789012/other/x.gz'],
            download_completed_at=BASE_TIME + timedelta(hours=1),
        ))
        store.record_download_batch(DownloadBatch(
            batch_id='b3', batch_name='evening', status='processed',
            s3_file_paths=[f's3://alb-logs/{prefix}d.log.gz'],
            download_completed_at=BASE_TIME + timedelta(hours=2),
        ))
        store.record_download_batch(DownloadBatch(
            batch_id='b4', batch_name='queued', status='pending',
            s3_file_paths=[f's3://alb-logs/{prefix}e.log.gz'],
        ))
        return store

    def test_file_count_by_prefix(self, tracked_store):
        assert tracked_store.get_file_count_by_prefix(self.PREFIX) == 4
        assert tracked_store.get_file_count_by_prefix('AWSLogs/123456789012/other/') == 1
        assert tracked_store.get_file_count_by_prefix('AWSLogs/999/') == 0

    def test_last_download_time(self, tracked_store):
        assert tracked_store.get_last_download_time(self.PREFIX) == BASE_TIME + timedelta(hours=1)
        assert tracked_store.get_last_download_time('AWSLogs/123456789012/other/') == BASE_TIME + timedelta(hours=1)
        assert tracked_store.get_last_download_time('AWSLogs/999/') is None

    def test_unreadable_paths_are_skipped(self, tracked_store, migrated_pool):
        with migrated_pool.connection() as connection:
            connection.execute(
                "INSERT INTO download_batches (batch_id, batch_name, s3_file_paths, local_file_paths, status) "
                "VALUES (?, ?, ?, ?, ?)",
                ['b5', 'broken', 'not json', '[]', 'completed'],
            )
        assert tracked_store.get_file_count_by_prefix(self.PREFIX) == 4

    def test_s3_key(self):
        assert s3_key('s3://bucket/AWSLogs/a.gz') == 'AWSLogs/a.gz'
        assert s3_key('bucket/AWSLogs/a.gz') == 'AWSLogs/a.gz'
        assert s3_key('a.gz') == 'a.gz'


class TestClose:
    """Closed stores refuse work."""

    def test_operations_fail_after_close(self, store):
        store.close()
        assert store.closed
        with pytest.raises(DataStoreClosedError):
            store.query()
        with pytest.raises(DataStoreClosedError):
            store.store([make_entry(0)])
        with pytest.raises(DataStoreClosedError):
            store.count()

    def test_writes_fail_after_close_without_valid_rows(self, store):
        store.close()
        with pytest.raises(DataStoreClosedError):
            store.store([])
        with pytest.raises(DataStoreClosedError):
            store.store([{'timestamp': 'not-a-date'}])
        with pytest.raises(DataStoreClosedError):
            store.store_batch([])
        with pytest.raises(DataStoreClosedError):
            next(store.query_stream())

    def test_close_is_idempotent(self, store):
        store.close()
        store.close()
        assert store.closed

    def test_connections_returned_to_pool(self, migrated_pool):
        with DataStore(migrated_pool) as store:
            store.store([make_entry(0)])
            store.query()
        assert migrated_pool.get_stats()['in_use'] == 0

    def test_pool_survives_store_close(self, migrated_pool):
        DataStore(migrated_pool).close()
        assert DataStore(migrated_pool).count() == 0
