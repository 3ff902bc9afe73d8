"""
Database migration runner.

Applies an ordered list of Migration objects to one connection, recording
each in the schema_migrations table. Every migration, and every rollback,
runs in its own transaction together with its tracking-row change, so a
failure never leaves a half-applied migration behind.
"""

import hashlib
import inspect
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ...security import SecureQueryBuilder
from ..config.logging_config import get_db_logger
from ..core.connection import DatabaseConnection
from ..core.exceptions import DatabaseError, MigrationError, RollbackPreconditionError
from ..models.migration import MigrationRecord, MigrationStatus

DEFAULT_MIGRATIONS_TABLE = 'schema_migrations'


def migration_sort_key(migration_id: str) -> Tuple[int, Any]:
    """Numeric ids sort numerically, anything else after them lexically."""
    if migration_id.isdigit():
        return (0, int(migration_id))
    return (1, migration_id)


class Migration(ABC):
    """
    A single versioned schema change.

    Subclasses set `id` and `name` and implement `up` and `down` against
    the connection they are handed. Both steps run inside a transaction
    opened by the runner and must not commit on their own.
    """

    id: str = ''
    name: str = ''

    @abstractmethod
    def up(self, connection: DatabaseConnection) -> None:
        ...

    @abstractmethod
    def down(self, connection: DatabaseConnection) -> None:
        ...

    @property
    def checksum(self) -> str:
        return calculate_checksum(self)

    def __str__(self) -> str:
        return f"Migration {self.id}: {self.name}"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id='{self.id}', name='{self.name}')"


def _method_fingerprint(method) -> str:
    try:
        return inspect.getsource(method)
    except (OSError, TypeError):
        code = getattr(method, '__code__', None)
        if code is None:
            return repr(method)
        return code.co_code.hex() + repr(code.co_consts)


def calculate_checksum(migration: Migration) -> str:
    """sha256 over the source of the migration's up and down methods."""
    cls = type(migration)
    content = _method_fingerprint(cls.up) + _method_fingerprint(cls.down)
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


class MigrationRunner:
    """
    Database migration runner with version tracking.

    Migrations are applied strictly in registration order; a failed
    migration aborts the run and leaves earlier ones committed.
    """

    def __init__(self, connection: DatabaseConnection,
                 migrations: Iterable[Migration] = (),
                 table_name: str = DEFAULT_MIGRATIONS_TABLE):
        """
        Initialize migration runner.

        Args:
            connection: Connection used exclusively by this runner
            migrations: Migrations in ascending id order
            table_name: Name of the tracking table
        """
        self.connection = connection
        self.dialect = connection.dialect
        self.table_name = SecureQueryBuilder.validate_column_name(table_name)
        self.logger = get_db_logger('migrations', self.dialect.name)
        self._migrations: List[Migration] = []

        for migration in migrations:
            self.add_migration(migration)

    @property
    def migrations(self) -> Tuple[Migration, ...]:
        return tuple(self._migrations)

    def add_migration(self, migration: Migration) -> None:
        """
        Register a migration after the ones already registered.

        Raises:
            MigrationError: On a duplicate id or an id not above the last one
        """
        if not migration.id:
            raise MigrationError(f"Migration {migration!r} has no id")
        if any(m.id == migration.id for m in self._migrations):
            raise MigrationError(f"Duplicate migration id: {migration.id}", migration.id)
        if self._migrations and (
                migration_sort_key(migration.id) <= migration_sort_key(self._migrations[-1].id)):
            raise MigrationError(
                f"Migration {migration.id} registered after {self._migrations[-1].id}",
                migration.id
            )
        self._migrations.append(migration)

    def get_migration(self, migration_id: str) -> Optional[Migration]:
        for migration in self._migrations:
            if migration.id == migration_id:
                return migration
        return None

    def create_migrations_table(self) -> None:
        """Create the tracking table if it does not exist."""
        columns = [
            self.dialect.column('id', 'text', primary_key=True),
            self.dialect.column('name', 'text', not_null=True),
            self.dialect.column('executed_at', 'timestamp', not_null=True),
            self.dialect.column('checksum', 'text', not_null=True),
        ]
        self.connection.execute(self.dialect.create_table(self.table_name, columns, order_by=['id']))
        self.logger.debug("Migration tracking table initialized")

    def get_executed_migrations(self) -> List[MigrationRecord]:
        """
        Tracking rows ordered by execution time.

        Returns:
            List of MigrationRecord, empty if the tracking table is missing
        """
        if not self.dialect.table_exists(self.connection, self.table_name):
            return []

        rows = self.connection.query(
            f"SELECT id, name, executed_at, checksum FROM {self.table_name} "
            f"ORDER BY executed_at, id"
        ).rows

        return [
            MigrationRecord(
                id=str(row['id']),
                name=row['name'],
                executed_at=self.dialect.parse_timestamp(row['executed_at']),
                checksum=row['checksum'],
            )
            for row in rows
        ]

    def get_pending_migrations(self) -> List[Migration]:
        executed = {record.id for record in self.get_executed_migrations()}
        return [m for m in self._migrations if m.id not in executed]

    def get_current_version(self) -> Optional[str]:
        """Highest executed migration id, or None."""
        executed = self.get_executed_migrations()
        if not executed:
            return None
        return max((record.id for record in executed), key=migration_sort_key)

    def run_migrations(self, target_id: Optional[str] = None) -> List[Migration]:
        """
        Apply pending migrations in order.

        Args:
            target_id: Stop after this migration (default: apply all)

        Returns:
            Migrations applied by this call

        Raises:
            MigrationError: A migration failed; it was rolled back and the
                run aborted
        """
        self.create_migrations_table()
        pending = self.get_pending_migrations()

        if target_id is not None:
            limit = migration_sort_key(target_id)
            pending = [m for m in pending if migration_sort_key(m.id) <= limit]

        if not pending:
            self.logger.info("No pending migrations")
            return []

        self.logger.info(f"Running {len(pending)} migrations")
        applied = []
        for migration in pending:
            self._apply_migration(migration)
            applied.append(migration)

        self.logger.info(f"Applied {len(applied)} migrations, now at {applied[-1].id}")
        return applied

    def _apply_migration(self, migration: Migration) -> None:
        start = time.time()
        checksum = calculate_checksum(migration)
        executed_at = self.dialect.bind_timestamp(datetime.now(timezone.utc))

        self.logger.info(f"Applying {migration}")
        self.connection.begin_transaction()
        try:
            migration.up(self.connection)
            self.connection.execute(
                f"INSERT INTO {self.table_name} (id, name, executed_at, checksum) VALUES (?, ?, ?, ?)",
                [migration.id, migration.name, executed_at, checksum]
            )
            self.connection.commit()
        except Exception as e:
            self._rollback_quietly(migration)
            self.logger.transaction(f"apply {migration.id}", False, error=str(e))
            raise MigrationError(
                f"Migration {migration.id} ({migration.name}) failed: {e}", migration.id
            ) from e

        self.logger.transaction(f"apply {migration.id}", True, time.time() - start)

    def rollback_migration(self, migration_id: str) -> Migration:
        """
        Revert one executed migration.

        Args:
            migration_id: Id of a registered, executed migration

        Returns:
            The migration that was rolled back

        Raises:
            RollbackPreconditionError: Unknown id or never executed
            MigrationError: The down step failed; the migration stays recorded
        """
        migration = self.get_migration(migration_id)
        if migration is None:
            raise RollbackPreconditionError(f"Migration {migration_id} not found", migration_id)

        executed = {record.id for record in self.get_executed_migrations()}
        if migration_id not in executed:
            raise RollbackPreconditionError(
                f"Migration {migration_id} has not been executed", migration_id
            )

        start = time.time()
        self.logger.info(f"Rolling back {migration}")
        self.connection.begin_transaction()
        try:
            migration.down(self.connection)
            self.connection.execute(f"DELETE FROM {self.table_name} WHERE id = ?", [migration.id])
            self.connection.commit()
        except Exception as e:
            self._rollback_quietly(migration)
            self.logger.transaction(f"rollback {migration.id}", False, error=str(e))
            raise MigrationError(
                f"Rollback of migration {migration.id} ({migration.name}) failed: {e}", migration.id
            ) from e

        self.logger.transaction(f"rollback {migration.id}", True, time.time() - start)
        return migration

    def _rollback_quietly(self, migration: Migration) -> None:
        try:
            self.connection.rollback()
        except DatabaseError as e:
            self.logger.error(f"Transaction rollback for migration {migration.id} failed: {e}")

    def verify_checksums(self) -> List[str]:
        """
        Ids of executed migrations whose current checksum differs from the
        recorded one. Drift is reported, never enforced.
        """
        drifted = []
        for record in self.get_executed_migrations():
            migration = self.get_migration(record.id)
            if migration is not None and calculate_checksum(migration) != record.checksum:
                drifted.append(record.id)
        if drifted:
            self.logger.warning(f"Checksum drift detected for migrations: {', '.join(drifted)}")
        return drifted

    def get_migration_status(self) -> Dict[str, Any]:
        """
        Summary of registered and executed migrations.

        Returns:
            Dictionary with current version, counts and per-migration status
        """
        executed = {record.id: record for record in self.get_executed_migrations()}
        statuses = []
        for migration in self._migrations:
            record = executed.get(migration.id)
            statuses.append(MigrationStatus(
                id=migration.id,
                name=migration.name,
                applied=record is not None,
                executed_at=record.executed_at if record else None,
                checksum=record.checksum if record else None,
                checksum_matches=(record.checksum == calculate_checksum(migration)) if record else None,
            ))

        return {
            'current_version': max(executed, key=migration_sort_key) if executed else None,
            'total_migrations': len(self._migrations),
            'applied_count': sum(1 for s in statuses if s.applied),
            'pending_count': sum(1 for s in statuses if not s.applied),
            'migrations': statuses,
        }
