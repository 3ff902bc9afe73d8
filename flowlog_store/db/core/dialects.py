"""
Backend SQL dialects.

Migrations and the DataStore describe tables and indexes in logical terms;
the dialect for the active backend renders them. This keeps backend specific
SQL (auto-increment keys, engine clauses, data-skipping indexes, catalog
queries) in one place.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import re

logger = logging.getLogger('flowlog.dialects')

_DIRECTION = re.compile(r'\s+(ASC|DESC)$', re.IGNORECASE)


def _strip_direction(column: str) -> str:
    return _DIRECTION.sub('', column.strip())


class Dialect:
    """Defaults follow ANSI SQL; subclasses override what differs."""

    name = 'generic'
    supports_transactions = True
    supports_partial_indexes = True
    supports_unique_constraints = True

    TYPE_MAP = {
        'text': 'TEXT',
        'integer': 'INTEGER',
        'bigint': 'BIGINT',
        'real': 'REAL',
        'timestamp': 'TIMESTAMP',
        'datetime': 'TIMESTAMP',
        'date': 'DATE',
    }

    current_timestamp = 'CURRENT_TIMESTAMP'

    # Column definitions

    def column_type(self, logical: str, nullable: bool = True) -> str:
        try:
            return self.TYPE_MAP[logical]
        except KeyError:
            raise ValueError(f"Unknown logical column type: {logical}")

    def column(self, name: str, logical: str, not_null: bool = False,
               primary_key: bool = False, default: Optional[str] = None) -> str:
        """Render one column definition."""
        parts = [name, self.column_type(logical, nullable=not (not_null or primary_key))]
        if primary_key:
            parts.append('PRIMARY KEY')
        elif not_null:
            parts.append('NOT NULL')
        if default is not None:
            parts.append(f'DEFAULT {default}')
        return ' '.join(parts)

    def serial_primary_key(self, table: str, name: str = 'id') -> Tuple[List[str], str]:
        """Auto-incrementing integer key: (statements to run first, column definition)."""
        return [], f'{name} INTEGER PRIMARY KEY'

    def create_table(self, table: str, columns: Sequence[str],
                     order_by: Sequence[str] = (),
                     unique: Sequence[Sequence[str]] = ()) -> str:
        body = list(columns)
        if self.supports_unique_constraints:
            body.extend(f"UNIQUE({', '.join(cols)})" for cols in unique)
        sql = f"CREATE TABLE IF NOT EXISTS {table} (\n  " + ',\n  '.join(body) + '\n)'
        return sql + self.table_options(order_by)

    def table_options(self, order_by: Sequence[str]) -> str:
        return ''

    def drop_table(self, table: str) -> List[str]:
        return [f'DROP TABLE IF EXISTS {table}']

    # Indexes

    def create_index(self, name: str, table: str, columns: Sequence[str],
                     unique: bool = False, where: Optional[str] = None) -> str:
        sql = (f"CREATE {'UNIQUE ' if unique else ''}INDEX IF NOT EXISTS {name} "
               f"ON {table}({', '.join(columns)})")
        if where and self.supports_partial_indexes:
            sql += f' WHERE {where}'
        return sql

    def drop_index(self, name: str, table: str) -> str:
        return f'DROP INDEX IF EXISTS {name}'

    # Maintenance

    def analyze(self, table: str) -> Optional[str]:
        return f'ANALYZE {table}'

    def vacuum(self, table: str) -> Optional[str]:
        return None

    def delete_all(self, table: str) -> str:
        return f'DELETE FROM {table}'

    def delete_where(self, table: str, condition: str) -> str:
        return f'DELETE FROM {table} WHERE {condition}'

    def reset_identity(self, table: str) -> List[str]:
        return []

    def alter_table(self, connection, table: str, clause: str) -> None:
        connection.execute(f'ALTER TABLE {table} {clause}')

    def drop_column(self, connection, table: str, column: str) -> None:
        self.alter_table(connection, table, f'DROP COLUMN {column}')

    # Values

    def bind_timestamp(self, value: Optional[datetime]) -> Any:
        """Convert an aware or naive (UTC) datetime to what the driver stores."""
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def parse_timestamp(self, value: Any) -> Optional[datetime]:
        """Convert a stored timestamp back to an aware UTC datetime."""
        if value is None or value == '':
            return None
        if isinstance(value, str):
            value = datetime.fromisoformat(value.replace('Z', '+00:00'))
        if not isinstance(value, datetime):
            raise TypeError(f"Unexpected timestamp value: {value!r}")
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    # Catalog

    def table_exists(self, connection, table: str) -> bool:
        result = connection.query(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_name = ?",
            [table]
        )
        return result.row_count > 0

    def list_indexes(self, connection, table: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def table_columns(self, connection, table: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def database_size(self, connection) -> int:
        return 0

    @staticmethod
    def _pragma_columns(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [
            {
                'name': row['name'],
                'type': row['type'],
                'not_null': bool(row['notnull']),
                'default': row['dflt_value'],
                'primary_key': bool(row['pk']),
            }
            for row in rows
        ]


class SQLiteDialect(Dialect):
    name = 'sqlite'

    TYPE_MAP = dict(Dialect.TYPE_MAP, datetime='DATETIME')

    def serial_primary_key(self, table, name='id'):
        return [], f'{name} INTEGER PRIMARY KEY AUTOINCREMENT'

    def vacuum(self, table):
        return 'VACUUM'

    def reset_identity(self, table):
        return [f"DELETE FROM sqlite_sequence WHERE name = '{table}'"]

    def bind_timestamp(self, value):
        value = super().bind_timestamp(value)
        if value is None:
            return None
        # Lexically ordered so range filters work on the stored text
        return value.strftime('%Y-%m-%d %H:%M:%S.%f')

    def table_exists(self, connection, table):
        result = connection.query(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", [table]
        )
        return result.row_count > 0

    def list_indexes(self, connection, table):
        return connection.query(
            "SELECT name, sql AS definition FROM sqlite_master "
            "WHERE type = 'index' AND tbl_name = ? AND name NOT LIKE 'sqlite_autoindex_%' "
            "ORDER BY name",
            [table]
        ).rows

    def table_columns(self, connection, table):
        return self._pragma_columns(connection.query(f'PRAGMA table_info({table})').rows)

    def database_size(self, connection):
        result = connection.query(
            'SELECT page_count * page_size AS size FROM pragma_page_count(), pragma_page_size()'
        )
        return int(result.rows[0]['size']) if result.rows else 0


class PostgreSQLDialect(Dialect):
    name = 'postgresql'

    TYPE_MAP = dict(Dialect.TYPE_MAP, real='DOUBLE PRECISION')

    def serial_primary_key(self, table, name='id'):
        return [], f'{name} BIGSERIAL PRIMARY KEY'

    def vacuum(self, table):
        return f'VACUUM ANALYZE {table}'

    def reset_identity(self, table):
        return [f'ALTER SEQUENCE IF EXISTS {table}_id_seq RESTART WITH 1']

    def list_indexes(self, connection, table):
        return connection.query(
            "SELECT indexname AS name, indexdef AS definition FROM pg_indexes "
            "WHERE schemaname = current_schema() AND tablename = ? "
            "AND indexname NOT LIKE '%\\_pkey' ORDER BY indexname",
            [table]
        ).rows

    def table_columns(self, connection, table):
        rows = connection.query(
            """
            SELECT c.column_name AS name,
                   c.data_type AS type,
                   c.is_nullable = 'NO' AS not_null,
                   c.column_default AS default_value,
                   EXISTS (
                       SELECT 1
                       FROM information_schema.table_constraints tc
                       JOIN information_schema.key_column_usage k
                         ON tc.constraint_name = k.constraint_name
                        AND tc.table_name = k.table_name
                       WHERE tc.table_name = c.table_name
                         AND tc.constraint_type = 'PRIMARY KEY'
                         AND k.column_name = c.column_name
                   ) AS primary_key
            FROM information_schema.columns c
            WHERE c.table_schema = current_schema() AND c.table_name = ?
            ORDER BY c.ordinal_position
            """,
            [table]
        ).rows
        return [
            {
                'name': row['name'],
                'type': row['type'],
                'not_null': bool(row['not_null']),
                'default': row['default_value'],
                'primary_key': bool(row['primary_key']),
            }
            for row in rows
        ]

    def database_size(self, connection):
        result = connection.query('SELECT pg_database_size(current_database()) AS size')
        return int(result.rows[0]['size']) if result.rows else 0


class DuckDBDialect(Dialect):
    name = 'duckdb'
    supports_partial_indexes = False

    TYPE_MAP = dict(Dialect.TYPE_MAP, real='DOUBLE')

    def serial_primary_key(self, table, name='id'):
        sequence = f'{table}_{name}_seq'
        return (
            [f'CREATE SEQUENCE IF NOT EXISTS {sequence} START 1'],
            f"{name} BIGINT PRIMARY KEY DEFAULT nextval('{sequence}')",
        )

    def drop_table(self, table):
        return [f'DROP TABLE IF EXISTS {table}', f'DROP SEQUENCE IF EXISTS {table}_id_seq']

    def create_index(self, name, table, columns, unique=False, where=None):
        columns = [_strip_direction(column) for column in columns]
        return super().create_index(name, table, columns, unique=unique, where=None)

    def analyze(self, table):
        return 'ANALYZE'

    def vacuum(self, table):
        return 'CHECKPOINT'

    def alter_table(self, connection, table, clause):
        # DuckDB refuses ALTER TABLE while indexes depend on the table, so the
        # indexes are dropped and recreated around the change.
        indexes = connection.query(
            'SELECT index_name, sql FROM duckdb_indexes() WHERE table_name = ?', [table]
        ).rows
        for index in indexes:
            connection.execute(f"DROP INDEX IF EXISTS {index['index_name']}")
        connection.execute(f'ALTER TABLE {table} {clause}')
        for index in indexes:
            if index['sql']:
                connection.execute(index['sql'])

    def drop_column(self, connection, table, column):
        # Indexes dropped earlier in the same transaction still block
        # DROP COLUMN, so the table is rebuilt without the column.
        mentions = re.compile(rf'\b{re.escape(column)}\b')
        indexes = [
            index['sql'] for index in connection.query(
                'SELECT index_name, sql FROM duckdb_indexes() WHERE table_name = ?', [table]
            ).rows
            if index['sql'] and not mentions.search(index['sql'])
        ]
        columns = [
            row for row in connection.query(
                'SELECT column_name, data_type, column_default, is_nullable FROM duckdb_columns() '
                'WHERE table_name = ? ORDER BY column_index', [table]
            ).rows
            if row['column_name'] != column
        ]
        primary = connection.query(
            "SELECT constraint_column_names FROM duckdb_constraints() "
            "WHERE table_name = ? AND constraint_type = 'PRIMARY KEY'", [table]
        ).rows
        primary_key = list(primary[0]['constraint_column_names']) if primary else []

        definitions = []
        for row in columns:
            definition = f"{row['column_name']} {row['data_type']}"
            if row['column_default'] is not None:
                definition += f" DEFAULT {row['column_default']}"
            if not row['is_nullable'] and row['column_name'] not in primary_key:
                definition += ' NOT NULL'
            definitions.append(definition)
        if primary_key:
            definitions.append(f"PRIMARY KEY ({', '.join(primary_key)})")

        names = ', '.join(row['column_name'] for row in columns)
        backup = f'{table}__rebuild'
        connection.execute(f'CREATE TABLE {backup} AS SELECT {names} FROM {table}')
        connection.execute(f'DROP TABLE {table}')
        connection.execute(f"CREATE TABLE {table} ({', '.join(definitions)})")
        connection.execute(f'INSERT INTO {table} ({names}) SELECT {names} FROM {backup}')
        connection.execute(f'DROP TABLE {backup}')
        for sql in indexes:
            connection.execute(sql)

    def list_indexes(self, connection, table):
        return connection.query(
            'SELECT index_name AS name, sql AS definition FROM duckdb_indexes() '
            'WHERE table_name = ? ORDER BY index_name',
            [table]
        ).rows

    def table_columns(self, connection, table):
        return self._pragma_columns(connection.query(f"PRAGMA table_info('{table}')").rows)

    def database_size(self, connection):
        result = connection.query(
            'SELECT COALESCE(SUM(block_size * total_blocks), 0) AS size FROM pragma_database_size()'
        )
        return int(result.rows[0]['size']) if result.rows else 0


class ClickHouseDialect(Dialect):
    """
    ClickHouse renders tables as MergeTree and indexes as minmax data-skipping
    indexes. There are no transactions, unique constraints or partial indexes.
    """

    name = 'clickhouse'
    supports_transactions = False
    supports_partial_indexes = False
    supports_unique_constraints = False

    TYPE_MAP = {
        'text': 'String',
        'integer': 'Int32',
        'bigint': 'Int64',
        'real': 'Float64',
        'timestamp': 'DateTime64(6)',
        'datetime': 'DateTime64(6)',
        'date': 'Date',
    }

    current_timestamp = 'now64(6)'

    INDEX_GRANULARITY = 4

    def column_type(self, logical, nullable=True):
        base = super().column_type(logical)
        return f'Nullable({base})' if nullable else base

    def column(self, name, logical, not_null=False, primary_key=False, default=None):
        parts = [name, self.column_type(logical, nullable=not (not_null or primary_key))]
        if default is not None:
            parts.append(f'DEFAULT {default}')
        return ' '.join(parts)

    def serial_primary_key(self, table, name='id'):
        return [], f'{name} UInt64 DEFAULT cityHash64(generateUUIDv4())'

    def table_options(self, order_by):
        order = f"({', '.join(order_by)})" if order_by else 'tuple()'
        return f' ENGINE = MergeTree ORDER BY {order}'

    def create_index(self, name, table, columns, unique=False, where=None):
        columns = [_strip_direction(column) for column in columns]
        expression = columns[0] if len(columns) == 1 else f"({', '.join(columns)})"
        return (f'ALTER TABLE {table} ADD INDEX IF NOT EXISTS {name} {expression} '
                f'TYPE minmax GRANULARITY {self.INDEX_GRANULARITY}')

    def drop_index(self, name, table):
        return f'ALTER TABLE {table} DROP INDEX IF EXISTS {name}'

    def analyze(self, table):
        return None

    def vacuum(self, table):
        return f'OPTIMIZE TABLE {table} FINAL'

    def delete_all(self, table):
        return f'TRUNCATE TABLE {table}'

    def delete_where(self, table, condition):
        return f'ALTER TABLE {table} DELETE WHERE {condition}'

    def table_exists(self, connection, table):
        result = connection.query(
            'SELECT name FROM system.tables WHERE database = currentDatabase() AND name = ?',
            [table]
        )
        return result.row_count > 0

    def list_indexes(self, connection, table):
        return connection.query(
            'SELECT name, expr AS definition FROM system.data_skipping_indices '
            'WHERE database = currentDatabase() AND table = ? ORDER BY name',
            [table]
        ).rows

    def table_columns(self, connection, table):
        rows = connection.query(
            'SELECT name, type, default_expression, is_in_primary_key FROM system.columns '
            'WHERE database = currentDatabase() AND table = ? ORDER BY position',
            [table]
        ).rows
        return [
            {
                'name': row['name'],
                'type': row['type'],
                'not_null': not str(row['type']).startswith('Nullable('),
                'default': row['default_expression'] or None,
                'primary_key': bool(row['is_in_primary_key']),
            }
            for row in rows
        ]

    def database_size(self, connection):
        result = connection.query(
            'SELECT sum(bytes_on_disk) AS size FROM system.parts '
            'WHERE database = currentDatabase() AND active'
        )
        return int(result.rows[0]['size'] or 0) if result.rows else 0


DIALECTS: Dict[str, Dialect] = {
    'sqlite': SQLiteDialect(),
    'postgresql': PostgreSQLDialect(),
    'clickhouse': ClickHouseDialect(),
    'duckdb': DuckDBDialect(),
}


def get_dialect(db_type: str) -> Dialect:
    """Dialect for a backend identifier."""
    try:
        return DIALECTS[db_type]
    except KeyError:
        raise ValueError(f"Unsupported database type: {db_type}")
