"""Unit tests for the schema manager and the application migrations."""

import pytest

from flowlog_store.db.core.connection import DatabaseConnection
from flowlog_store.db.core.exceptions import RollbackPreconditionError
from flowlog_store.db.migrations.migration_runner import MigrationRunner
from flowlog_store.db.migrations.schema_manager import REQUIRED_INDEXES, SchemaManager
from flowlog_store.db.migrations.versions import CreateLogEntriesTable, all_migrations
from flowlog_store.db.models.log_entry import LOG_ENTRY_COLUMNS
from flowlog_store.security import QueryInjectionError

from ..conftest import make_entry


class RecordingConnection(DatabaseConnection):
    """Delegates to a real connection and records executed statements."""

    def __init__(self, inner):
        self.inner = inner
        self.dialect = inner.dialect
        self.statements = []

    @property
    def in_transaction(self):
        return self.inner.in_transaction

    def query(self, sql, params=None):
        return self.inner.query(sql, params)

    def execute(self, sql, params=None):
        self.statements.append(sql)
        return self.inner.execute(sql, params)

    def begin_transaction(self):
        self.inner.begin_transaction()

    def commit(self):
        self.inner.commit()

    def rollback(self):
        self.inner.rollback()

    def close(self):
        self.inner.close()

    def is_connected(self):
        return self.inner.is_connected()


@pytest.fixture
def connection(pool):
    with pool.connection() as connection:
        yield connection


class TestInitialMigration:
    """Migration 001 on its own."""

    def test_creates_log_entries(self, connection):
        MigrationRunner(connection, [CreateLogEntriesTable()]).run_migrations()
        columns = {c['name']: c for c in SchemaManager(connection).get_table_info()}

        assert len(columns) == 31
        assert columns['id']['primary_key']
        assert columns['timestamp']['not_null']
        assert 'connection_id' not in columns

    def test_down_drops_indexes_before_table(self, connection):
        recording = RecordingConnection(connection)
        runner = MigrationRunner(recording, [CreateLogEntriesTable()])
        runner.run_migrations()
        recording.statements.clear()

        runner.rollback_migration('001')

        drops = [s for s in recording.statements if s.startswith('DROP')]
        first_table_drop = next(i for i, s in enumerate(drops) if s.startswith('DROP TABLE'))
        index_drops = [i for i, s in enumerate(drops) if s.startswith('DROP INDEX')]
        assert len(index_drops) == 8
        assert max(index_drops) < first_table_drop
        assert not connection.dialect.table_exists(connection, 'log_entries')


class TestSchemaManager:
    """Full schema lifecycle."""

    def test_initialize_schema(self, connection):
        manager = SchemaManager(connection)
        applied = manager.initialize_schema()

        assert [m.id for m in applied] == ['001', '002', '003', '004', '005', '006']
        assert manager.get_schema_version() == '006'
        assert manager.validate_schema()

    def test_initialize_twice(self, connection):
        manager = SchemaManager(connection)
        manager.initialize_schema()
        assert manager.initialize_schema() == []
        assert manager.get_schema_version() == '006'

    def test_final_columns_match_model(self, connection):
        manager = SchemaManager(connection)
        manager.initialize_schema()
        columns = [c['name'] for c in manager.get_table_info()]

        assert sorted(columns) == sorted(LOG_ENTRY_COLUMNS)

    def test_auxiliary_tables(self, connection):
        SchemaManager(connection).initialize_schema()
        dialect = connection.dialect

        for table in ('log_entries_hourly_summary', 'log_entries_url_summary',
                      'client_session_summary', 'error_pattern_summary', 'download_batches'):
            assert dialect.table_exists(connection, table), table

    def test_indexes_present(self, connection):
        manager = SchemaManager(connection)
        manager.initialize_schema()
        names = {index['name'] for index in manager.get_index_info()}

        assert set(REQUIRED_INDEXES) <= names
        assert 'idx_log_entries_connection_id' in names

    def test_validate_before_migrations(self, connection):
        assert SchemaManager(connection).validate_schema() is False

    def test_validate_detects_missing_index(self, connection):
        manager = SchemaManager(connection)
        manager.initialize_schema()
        connection.execute(connection.dialect.drop_index('idx_log_entries_client_ip', 'log_entries'))

        assert manager.validate_schema() is False

    def test_rollback_connection_id(self, connection):
        manager = SchemaManager(connection)
        manager.initialize_schema()
        manager.rollback_migration('006')

        columns = [c['name'] for c in manager.get_table_info()]
        assert 'connection_id' not in columns
        assert manager.get_schema_version() == '005'
        assert manager.validate_schema()

        manager.run_migrations()
        assert 'connection_id' in [c['name'] for c in manager.get_table_info()]

    def test_rollback_connection_id_keeps_rows(self, migrated_pool, store):
        store.store([make_entry(0), make_entry(60), make_entry(120)])

        with migrated_pool.connection() as connection:
            manager = SchemaManager(connection)
            manager.rollback_migration('006')
            rows = connection.query("SELECT id, client_ip FROM log_entries ORDER BY id").rows
            assert manager.validate_schema()
            assert 'idx_log_entries_timestamp' in {index['name'] for index in manager.get_index_info()}
            manager.run_migrations()

        assert [row['client_ip'] for row in rows] == ['10.0.0.1'] * 3
        result = store.store([make_entry(180)])
        assert result.inserted_count == 1
        assert len({entry.id for entry in store.query()}) == 4

    def test_rollback_everything(self, connection):
        manager = SchemaManager(connection)
        manager.initialize_schema()

        for migration in reversed(all_migrations()):
            manager.rollback_migration(migration.id)

        assert manager.get_schema_version() is None
        assert not connection.dialect.table_exists(connection, 'log_entries')
        assert not connection.dialect.table_exists(connection, 'download_batches')

    def test_rollback_preconditions(self, connection):
        manager = SchemaManager(connection)
        with pytest.raises(RollbackPreconditionError):
            manager.rollback_migration('001')
        with pytest.raises(RollbackPreconditionError):
            manager.rollback_migration('042')

    def test_status(self, connection):
        manager = SchemaManager(connection)
        manager.run_migrations(target_id='003')
        status = manager.get_migration_status()

        assert status['current_version'] == '003'
        assert status['applied_count'] == 3
        assert status['pending_count'] == 3

    def test_table_info_whitelist(self, connection):
        with pytest.raises(QueryInjectionError):
            SchemaManager(connection).get_table_info('sqlite_master; DROP TABLE log_entries')
