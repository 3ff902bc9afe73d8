"""
Database migration system.

Migrations are applied in id order, one transaction each, and recorded in
the schema_migrations table.
"""

from .migration_runner import Migration, MigrationRunner, calculate_checksum
from .schema_manager import SchemaManager
from .versions import all_migrations

__all__ = ['Migration', 'MigrationRunner', 'SchemaManager', 'calculate_checksum', 'all_migrations']
