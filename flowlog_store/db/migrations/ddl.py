"""
Schema building helpers for migrations.

Tables and indexes are declared as plain tuples and rendered through the
connection's dialect, so one migration body serves every backend.
"""

from typing import NamedTuple, Optional, Sequence, Tuple

from ..core.connection import DatabaseConnection

CURRENT_TIMESTAMP = 'CURRENT_TIMESTAMP'


class Column(NamedTuple):
    name: str
    type: str
    not_null: bool = False
    default: Optional[str] = None
    primary_key: bool = False


class Index(NamedTuple):
    name: str
    columns: Tuple[str, ...]
    unique: bool = False
    where: Optional[str] = None


def create_table(connection: DatabaseConnection, table: str, columns: Sequence[Column],
                 order_by: Sequence[str] = (), serial_id: bool = True) -> None:
    """
    Create a table, optionally led by an auto-incrementing `id` key.

    Args:
        connection: Migration connection
        table: Table name
        columns: Column declarations after the id column
        order_by: Sort key for engines that need one (ClickHouse)
        serial_id: Prepend an auto-incrementing integer primary key
    """
    dialect = connection.dialect
    definitions = []

    if serial_id:
        statements, id_column = dialect.serial_primary_key(table)
        for statement in statements:
            connection.execute(statement)
        definitions.append(id_column)

    for column in columns:
        default = dialect.current_timestamp if column.default == CURRENT_TIMESTAMP else column.default
        definitions.append(dialect.column(
            column.name, column.type, not_null=column.not_null,
            primary_key=column.primary_key, default=default
        ))

    connection.execute(dialect.create_table(table, definitions, order_by=order_by))


def drop_table(connection: DatabaseConnection, table: str) -> None:
    for statement in connection.dialect.drop_table(table):
        connection.execute(statement)


def create_indexes(connection: DatabaseConnection, table: str, indexes: Sequence[Index]) -> None:
    dialect = connection.dialect
    for index in indexes:
        connection.execute(dialect.create_index(
            index.name, table, index.columns, unique=index.unique, where=index.where
        ))


def drop_indexes(connection: DatabaseConnection, table: str, indexes: Sequence[Index]) -> None:
    dialect = connection.dialect
    for index in indexes:
        connection.execute(dialect.drop_index(index.name, table))
