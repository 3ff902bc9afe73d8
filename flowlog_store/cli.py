"""
flowlog-store command line.

Schema and storage administration for a configured flow-log database:

    flowlog-store --config settings.yaml migrate
    flowlog-store status
    flowlog-store rollback 006
    flowlog-store create-index user_agent

Without --config the built-in settings are used, overridden by the
FLOWLOG_* environment variables.
"""

import argparse
import logging
import sys
from typing import List, Optional

import yaml
from jsonschema import ValidationError
from rich import box
from rich.console import Console
from rich.table import Table

from .config_manager import SettingsManager
from .db.config.logging_config import setup_db_logging
from .db.core.exceptions import DatabaseError
from .db.core.factory import ConnectionFactory
from .db.core.pool import ConnectionPool
from .db.migrations.schema_manager import SchemaManager
from .db.repositories.data_store import DataStore
from .security import SecurityError

logger = logging.getLogger('flowlog.cli')
console = Console()


def _format_bytes(size: int) -> str:
    value = float(size)
    for unit in ('B', 'KB', 'MB', 'GB'):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


class Commands:
    """Subcommand handlers sharing one settings manager and pool."""

    def __init__(self, settings: SettingsManager, factory: ConnectionFactory):
        self.settings = settings
        self.factory = factory
        self._pool: Optional[ConnectionPool] = None

    @property
    def pool(self) -> ConnectionPool:
        if self._pool is None:
            self._pool = self.factory.create_pool(self.settings.get_database_config())
        return self._pool

    def data_store(self) -> DataStore:
        return DataStore(
            self.pool,
            batch_size=self.settings.get('storage.batch_size', 1000),
            max_query_rows=self.settings.get('storage.max_query_rows', 50000),
        )

    def migrate(self, args) -> int:
        with self.pool.connection() as connection:
            manager = SchemaManager(connection)
            manager.runner.create_migrations_table()
            applied = manager.run_migrations(args.target)
            version = manager.get_schema_version()

        if not applied:
            console.print("[green]Schema is up to date[/green]")
        for migration in applied:
            console.print(f"[green]Applied[/green] {migration}")
        console.print(f"Schema version: [bold]{version or '-'}[/bold]")
        return 0

    def status(self, args) -> int:
        with self.pool.connection() as connection:
            status = SchemaManager(connection).get_migration_status()

        table = Table(title="Migrations", box=box.ROUNDED)
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Executed at")
        table.add_column("Checksum")

        for migration in status['migrations']:
            if not migration.applied:
                state, checksum = "[yellow]pending[/yellow]", ""
            else:
                state = "[green]applied[/green]"
                checksum = "ok" if migration.checksum_matches else "[red]changed[/red]"
            executed_at = migration.executed_at.strftime('%Y-%m-%d %H:%M:%S') if migration.executed_at else ""
            table.add_row(migration.id, migration.name, state, executed_at, checksum)

        console.print(table)
        console.print(
            f"Version {status['current_version'] or '-'}: "
            f"{status['applied_count']} applied, {status['pending_count']} pending"
        )
        return 0

    def rollback(self, args) -> int:
        with self.pool.connection() as connection:
            migration = SchemaManager(connection).rollback_migration(args.migration_id)
        console.print(f"[yellow]Rolled back[/yellow] {migration}")
        return 0

    def validate(self, args) -> int:
        with self.pool.connection() as connection:
            valid = SchemaManager(connection).validate_schema()
        if valid:
            console.print("[green]Schema is valid[/green]")
            return 0
        console.print("[red]Schema is incomplete, run 'flowlog-store migrate'[/red]")
        return 1

    def stats(self, args) -> int:
        with self.data_store() as store:
            stats = store.get_stats()

        table = Table(title="Log storage", box=box.ROUNDED, show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")
        table.add_row("Entries", f"{stats.total_entries:,}")
        table.add_row("Database size", _format_bytes(stats.database_size))
        table.add_row("Oldest entry", stats.oldest_entry.isoformat() if stats.oldest_entry else "-")
        table.add_row("Newest entry", stats.newest_entry.isoformat() if stats.newest_entry else "-")
        table.add_row("Indexes", str(stats.index_count))
        console.print(table)
        return 0

    def indexes(self, args) -> int:
        with self.pool.connection() as connection:
            indexes = SchemaManager(connection).get_index_info()

        table = Table(title="log_entries indexes", box=box.SIMPLE)
        table.add_column("Name", style="cyan")
        table.add_column("Definition", overflow="fold")
        for index in indexes:
            table.add_row(index['name'], index.get('definition') or "")
        console.print(table)
        return 0

    def create_index(self, args) -> int:
        with self.data_store() as store:
            name = store.create_index(args.column)
        console.print(f"[green]Created[/green] {name}")
        return 0

    def check_config(self, args) -> int:
        self.settings.validate()
        config = self.settings.get_database_config()

        table = Table(title="Database configuration", box=box.ROUNDED, show_header=False)
        table.add_column("Setting", style="cyan")
        table.add_column("Value")
        redacted = self.settings.get_config(redact_secrets=True)['database']
        for key, value in sorted(redacted.items()):
            table.add_row(key, str(value))
        table.add_row("pool size", f"{config.min_pool_size}..{config.max_pool_size}")
        console.print(table)
        console.print("[green]Configuration is valid[/green]")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='flowlog-store',
        description='Schema and storage administration for the flow-log database',
    )
    parser.add_argument('--config', '-c', help='Settings YAML file')
    parser.add_argument('--override', help='Settings file merged over --config')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Override logging.level')

    subparsers = parser.add_subparsers(dest='command', required=True)

    migrate = subparsers.add_parser('migrate', help='Apply pending migrations')
    migrate.add_argument('--target', help='Stop after this migration id')
    migrate.set_defaults(handler=Commands.migrate)

    subparsers.add_parser('status', help='Show migration status').set_defaults(handler=Commands.status)

    rollback = subparsers.add_parser('rollback', help='Roll back one executed migration')
    rollback.add_argument('migration_id', help='Migration id, e.g. 006')
    rollback.set_defaults(handler=Commands.rollback)

    subparsers.add_parser('validate', help='Check tables and required indexes').set_defaults(
        handler=Commands.validate)
    subparsers.add_parser('stats', help='Show storage statistics').set_defaults(handler=Commands.stats)
    subparsers.add_parser('indexes', help='List log_entries indexes').set_defaults(handler=Commands.indexes)

    create_index = subparsers.add_parser('create-index', help='Index a log_entries column')
    create_index.add_argument('column')
    create_index.set_defaults(handler=Commands.create_index)

    subparsers.add_parser('check-config', help='Validate settings').set_defaults(
        handler=Commands.check_config)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = SettingsManager(args.config)
        if args.override:
            settings.merge_override(args.override)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Cannot load settings:[/red] {e}")
        return 2

    logging_settings = settings.get_config(redact_secrets=False)
    if args.log_level:
        logging_settings.setdefault('logging', {})['level'] = args.log_level
    setup_db_logging(logging_settings)

    factory = ConnectionFactory()
    try:
        return args.handler(Commands(settings, factory), args)
    except ValidationError as e:
        console.print(f"[red]Invalid settings:[/red] {e.message}")
        return 2
    except (DatabaseError, SecurityError) as e:
        logger.debug("Command failed", exc_info=True)
        console.print(f"[red]Error:[/red] {e}")
        return 1
    finally:
        factory.close_all_pools()


if __name__ == '__main__':
    sys.exit(main())
