"""
Schema manager for the flow-log database.

Wraps a MigrationRunner preloaded with the application's migrations and
adds version and structure checks on top.
"""

from typing import Any, Dict, List, Optional

from ...security import SecureQueryBuilder
from ..config.logging_config import get_db_logger
from ..core.connection import DatabaseConnection
from .migration_runner import DEFAULT_MIGRATIONS_TABLE, Migration, MigrationRunner
from .versions import all_migrations

PRIMARY_TABLE = 'log_entries'

REQUIRED_INDEXES = (
    'idx_log_entries_timestamp',
    'idx_log_entries_request_url',
    'idx_log_entries_elb_status_code',
    'idx_log_entries_client_ip',
)


class SchemaManager:
    """Creates, upgrades and inspects the log_entries schema."""

    def __init__(self, connection: DatabaseConnection,
                 table_name: str = DEFAULT_MIGRATIONS_TABLE):
        self.connection = connection
        self.runner = MigrationRunner(connection, all_migrations(), table_name=table_name)
        self.logger = get_db_logger('schema', connection.dialect.name)

    def initialize_schema(self) -> List[Migration]:
        """Create the tracking table and apply every pending migration."""
        self.logger.info("Initializing database schema")
        self.runner.create_migrations_table()
        applied = self.runner.run_migrations()
        self.logger.info(f"Schema initialized at version {self.get_schema_version()}")
        return applied

    def run_migrations(self, target_id: Optional[str] = None) -> List[Migration]:
        return self.runner.run_migrations(target_id)

    def rollback_migration(self, migration_id: str) -> Migration:
        return self.runner.rollback_migration(migration_id)

    def get_schema_version(self) -> Optional[str]:
        """Highest executed migration id, None before any migration ran."""
        return self.runner.get_current_version()

    def get_migration_status(self) -> Dict[str, Any]:
        return self.runner.get_migration_status()

    def validate_schema(self) -> bool:
        """True when log_entries and its required indexes exist."""
        dialect = self.connection.dialect
        if not dialect.table_exists(self.connection, PRIMARY_TABLE):
            self.logger.warning(f"Table {PRIMARY_TABLE} does not exist")
            return False

        present = {index['name'] for index in dialect.list_indexes(self.connection, PRIMARY_TABLE)}
        missing = [name for name in REQUIRED_INDEXES if name not in present]
        if missing:
            self.logger.warning(f"Missing indexes: {', '.join(missing)}")
            return False

        return True

    def get_table_info(self, table: str = PRIMARY_TABLE) -> List[Dict[str, Any]]:
        """Column descriptions: name, type, not_null, default, primary_key."""
        SecureQueryBuilder.validate_table_name(table)
        return self.connection.dialect.table_columns(self.connection, table)

    def get_index_info(self, table: str = PRIMARY_TABLE) -> List[Dict[str, Any]]:
        """Index descriptions: name, definition."""
        SecureQueryBuilder.validate_table_name(table)
        return self.connection.dialect.list_indexes(self.connection, table)
