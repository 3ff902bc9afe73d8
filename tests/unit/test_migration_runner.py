"""Unit tests for the migration runner."""

import pytest

from flowlog_store.db.core.exceptions import MigrationError, RollbackPreconditionError
from flowlog_store.db.migrations.migration_runner import (
    Migration, MigrationRunner, calculate_checksum, migration_sort_key,
)


class CreateWidgets(Migration):
    id = '001'
    name = 'create_widgets'

    def up(self, connection):
        connection.execute("CREATE TABLE widgets (id INTEGER PRIMARY KEY, label TEXT)")

    def down(self, connection):
        connection.execute("DROP TABLE widgets")


class AddWidgetColor(Migration):
    id = '002'
    name = 'add_widget_color'

    def up(self, connection):
        connection.execute("ALTER TABLE widgets ADD COLUMN color TEXT")

    def down(self, connection):
        connection.execute("ALTER TABLE widgets DROP COLUMN color")


class CreateGadgets(Migration):
    id = '003'
    name = 'create_gadgets'

    def up(self, connection):
        connection.execute("CREATE TABLE gadgets (id INTEGER PRIMARY KEY)")

    def down(self, connection):
        connection.execute("DROP TABLE gadgets")


class BrokenMigration(Migration):
    """Creates a table and then fails."""

    id = '003'
    name = 'broken'

    def up(self, connection):
        connection.execute("CREATE TABLE half_done (id INTEGER)")
        connection.execute("INSERT INTO no_such_table VALUES (1)")

    def down(self, connection):
        connection.execute("DROP TABLE half_done")


class BrokenDown(Migration):
    id = '002'
    name = 'broken_down'

    def up(self, connection):
        connection.execute("CREATE TABLE sprockets (id INTEGER)")

    def down(self, connection):
        connection.execute("DROP TABLE sprockets")
        connection.execute("DROP TABLE no_such_table")


@pytest.fixture
def connection(sqlite_pool):
    with sqlite_pool.connection() as connection:
        yield connection


def tables(connection):
    rows = connection.query(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    ).rows
    return [row['name'] for row in rows]


class TestRegistration:
    """Adding migrations to a runner."""

    def test_duplicate_id_rejected(self, connection):
        runner = MigrationRunner(connection, [CreateWidgets()])
        with pytest.raises(MigrationError):
            runner.add_migration(CreateWidgets())

    def test_out_of_order_rejected(self, connection):
        runner = MigrationRunner(connection, [AddWidgetColor()])
        with pytest.raises(MigrationError):
            runner.add_migration(CreateWidgets())

    def test_get_migration(self, connection):
        runner = MigrationRunner(connection, [CreateWidgets(), AddWidgetColor()])
        assert runner.get_migration('002').name == 'add_widget_color'
        assert runner.get_migration('009') is None

    def test_sort_key_is_numeric(self):
        assert migration_sort_key('010') > migration_sort_key('9')
        assert sorted(['10', '002', '1'], key=migration_sort_key) == ['1', '002', '10']


class TestRunMigrations:
    """Forward application."""

    def test_fresh_database(self, connection):
        runner = MigrationRunner(connection, [CreateWidgets(), AddWidgetColor()])

        assert runner.get_executed_migrations() == []
        assert runner.get_current_version() is None
        assert [m.id for m in runner.get_pending_migrations()] == ['001', '002']

    def test_applies_in_order(self, connection):
        runner = MigrationRunner(connection, [CreateWidgets(), AddWidgetColor(), CreateGadgets()])
        applied = runner.run_migrations()

        assert [m.id for m in applied] == ['001', '002', '003']
        assert [r.id for r in runner.get_executed_migrations()] == ['001', '002', '003']
        assert runner.get_current_version() == '003'
        assert tables(connection) == ['gadgets', 'schema_migrations', 'widgets']

    def test_second_run_is_noop(self, connection):
        runner = MigrationRunner(connection, [CreateWidgets(), AddWidgetColor()])
        runner.run_migrations()

        assert runner.run_migrations() == []
        assert len(runner.get_executed_migrations()) == 2

    def test_new_runner_sees_recorded_state(self, connection):
        MigrationRunner(connection, [CreateWidgets()]).run_migrations()

        runner = MigrationRunner(connection, [CreateWidgets(), AddWidgetColor()])
        assert [m.id for m in runner.get_pending_migrations()] == ['002']
        assert [m.id for m in runner.run_migrations()] == ['002']

    def test_target_id(self, connection):
        runner = MigrationRunner(connection, [CreateWidgets(), AddWidgetColor(), CreateGadgets()])

        assert [m.id for m in runner.run_migrations(target_id='002')] == ['001', '002']
        assert runner.get_current_version() == '002'

    def test_records_checksum(self, connection):
        runner = MigrationRunner(connection, [CreateWidgets()])
        runner.run_migrations()

        record = runner.get_executed_migrations()[0]
        assert record.name == 'create_widgets'
        assert record.checksum == calculate_checksum(CreateWidgets())
        assert len(record.checksum) == 64
        assert record.executed_at.tzinfo is not None

    def test_failure_rolls_back_and_stops(self, connection):
        runner = MigrationRunner(connection, [CreateWidgets(), AddWidgetColor(), BrokenMigration()])

        with pytest.raises(MigrationError) as exc_info:
            runner.run_migrations()

        assert exc_info.value.migration_id == '003'
        assert [r.id for r in runner.get_executed_migrations()] == ['001', '002']
        assert 'half_done' not in tables(connection)
        assert not connection.in_transaction

    def test_custom_table_name(self, connection):
        runner = MigrationRunner(connection, [CreateWidgets()], table_name='widget_migrations')
        runner.run_migrations()
        assert 'widget_migrations' in tables(connection)


class TestRollback:
    """Reverting one migration."""

    def test_rollback(self, connection):
        runner = MigrationRunner(connection, [CreateWidgets(), CreateGadgets()])
        runner.run_migrations()

        rolled_back = runner.rollback_migration('003')

        assert rolled_back.id == '003'
        assert 'gadgets' not in tables(connection)
        assert [r.id for r in runner.get_executed_migrations()] == ['001']
        assert runner.get_current_version() == '001'

    def test_rollback_then_rerun(self, connection):
        runner = MigrationRunner(connection, [CreateWidgets(), CreateGadgets()])
        runner.run_migrations()
        runner.rollback_migration('003')

        assert [m.id for m in runner.run_migrations()] == ['003']
        assert 'gadgets' in tables(connection)

    def test_unknown_migration(self, connection):
        runner = MigrationRunner(connection, [CreateWidgets()])
        runner.run_migrations()

        with pytest.raises(RollbackPreconditionError, match="Migration 999 not found"):
            runner.rollback_migration('999')

    def test_not_executed(self, connection):
        runner = MigrationRunner(connection, [CreateWidgets(), CreateGadgets()])
        runner.run_migrations(target_id='001')

        with pytest.raises(RollbackPreconditionError, match="has not been executed"):
            runner.rollback_migration('003')
        assert 'gadgets' not in tables(connection)

    def test_failed_down_keeps_record(self, connection):
        runner = MigrationRunner(connection, [CreateWidgets(), BrokenDown()])
        runner.run_migrations()

        with pytest.raises(MigrationError) as exc_info:
            runner.rollback_migration('002')

        assert not isinstance(exc_info.value, RollbackPreconditionError)
        assert 'sprockets' in tables(connection)
        assert [r.id for r in runner.get_executed_migrations()] == ['001', '002']


class TestChecksums:
    """Checksum drift is reported, not enforced."""

    def test_no_drift(self, connection):
        runner = MigrationRunner(connection, [CreateWidgets()])
        runner.run_migrations()
        assert runner.verify_checksums() == []

    def test_drift_reported(self, connection):
        MigrationRunner(connection, [CreateWidgets()]).run_migrations()
        connection.execute("UPDATE schema_migrations SET checksum = 'stale' WHERE id = '001'")

        runner = MigrationRunner(connection, [CreateWidgets(), AddWidgetColor()])
        assert runner.verify_checksums() == ['001']

        # Drift does not block further migrations
        assert [m.id for m in runner.run_migrations()] == ['002']

        status = runner.get_migration_status()
        assert status['migrations'][0].checksum_matches is False
        assert status['migrations'][1].checksum_matches is True

    def test_checksum_depends_on_code(self):
        assert calculate_checksum(CreateWidgets()) != calculate_checksum(CreateGadgets())
        assert calculate_checksum(CreateWidgets()) == CreateWidgets().checksum


class TestStatus:
    def test_status_summary(self, connection):
        runner = MigrationRunner(connection, [CreateWidgets(), AddWidgetColor()])
        runner.run_migrations(target_id='001')
        status = runner.get_migration_status()

        assert status['current_version'] == '001'
        assert status['total_migrations'] == 2
        assert status['applied_count'] == 1
        assert status['pending_count'] == 1
        assert status['migrations'][0].applied
        assert not status['migrations'][1].applied
        assert status['migrations'][1].executed_at is None
