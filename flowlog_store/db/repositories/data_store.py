"""
Log entry storage.

DataStore writes parsed ALB log records to log_entries and answers filtered,
sorted and paginated queries over them. Filters are translated to SQL with
'?' placeholders; backend specifics (timestamp binding, index DDL, catalog
queries) go through the connection dialect.
"""

import json
import math
import time
from contextlib import nullcontext
from datetime import datetime, timedelta, timezone
from itertools import islice
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Type, Union

import pandas as pd

from ...security import SecureQueryBuilder
from ..core.base_repository import BaseRepository
from ..core.connection import DatabaseConnection
from ..core.exceptions import BackendUnavailableError, QueryError, StorageWriteError
from ..core.pool import ConnectionPool
from ..models.log_entry import (
    LOG_ENTRY_COLUMNS, LOG_ENTRY_INSERT_COLUMNS, TIMESTAMP_COLUMNS,
    BatchInsertResult, FilterCriteria, PaginatedResult, ParsedLogEntry, StorageStats,
)
from ..models.summary import DownloadBatch, HourlySummary, s3_key

HOURLY_SUMMARY_TABLE = 'log_entries_hourly_summary'
DOWNLOAD_BATCHES_TABLE = 'download_batches'

SUMMARY_SOURCE_COLUMNS = [
    'timestamp', 'domain_name', 'client_ip', 'elb_status_code',
    'request_processing_time', 'target_processing_time', 'response_processing_time',
    'received_bytes', 'sent_bytes',
]
HOURLY_SUMMARY_COLUMNS = [
    'hour_timestamp', 'domain_name', 'request_count', 'error_count',
    'avg_request_time', 'avg_target_time', 'avg_response_time',
    'total_bytes_received', 'total_bytes_sent', 'unique_clients',
    'status_code_2xx', 'status_code_3xx', 'status_code_4xx', 'status_code_5xx',
]

DEFAULT_BATCH_SIZE = 1000
MAX_QUERY_ROWS = 50000
DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000

EntryLike = Union[ParsedLogEntry, Mapping[str, Any]]
FilterLike = Optional[Union[FilterCriteria, Mapping[str, Any]]]
Cursor = Tuple[datetime, int]


def encode_cursor(timestamp: datetime, entry_id: int) -> str:
    return f"{timestamp.isoformat()}|{entry_id}"


def decode_cursor(cursor: str) -> Cursor:
    """Parse a '<iso timestamp>|<id>' cursor."""
    try:
        raw_timestamp, raw_id = cursor.rsplit('|', 1)
        timestamp = datetime.fromisoformat(raw_timestamp)
        entry_id = int(raw_id)
    except (AttributeError, ValueError) as e:
        raise QueryError(f"Invalid pagination cursor: {cursor!r}") from e
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp, entry_id


class DataStore(BaseRepository[ParsedLogEntry]):
    """
    Repository for log_entries.

    Each operation borrows one pooled connection. A batch is written in one
    transaction where the backend has them; if that fails the batch is
    retried record by record, so a bad record is counted in the result and
    the rest still land.
    """

    def __init__(self, pool: ConnectionPool, batch_size: int = DEFAULT_BATCH_SIZE,
                 max_query_rows: int = MAX_QUERY_ROWS):
        """
        Args:
            pool: Connection pool for the log database
            batch_size: Records per chunk in store_batch()
            max_query_rows: Safety cap on rows returned by one query
        """
        super().__init__(pool)
        self.batch_size = batch_size
        self.max_query_rows = max_query_rows
        self._insert_sql = (
            f"INSERT INTO {self.table_name} ({', '.join(LOG_ENTRY_INSERT_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in LOG_ENTRY_INSERT_COLUMNS)})"
        )

    @property
    def table_name(self) -> str:
        return 'log_entries'

    @property
    def model_class(self) -> Type[ParsedLogEntry]:
        return ParsedLogEntry

    def _row_to_model(self, row: Dict[str, Any]) -> ParsedLogEntry:
        data = {key: value for key, value in row.items() if key in ParsedLogEntry.model_fields}
        for column in TIMESTAMP_COLUMNS:
            if column in data:
                data[column] = self.dialect.parse_timestamp(data[column])
        return ParsedLogEntry.model_validate(data)

    def _model_to_dict(self, model: ParsedLogEntry) -> Dict[str, Any]:
        values = {column: getattr(model, column) for column in LOG_ENTRY_INSERT_COLUMNS}
        for column in TIMESTAMP_COLUMNS:
            if column in values:
                values[column] = self.dialect.bind_timestamp(values[column])
        return values

    # Writes

    def store(self, entries: Iterable[EntryLike]) -> BatchInsertResult:
        """
        Persist a batch of log entries.

        Args:
            entries: ParsedLogEntry instances or mappings of their fields

        Returns:
            BatchInsertResult with inserted and failed counts

        Raises:
            BackendUnavailableError: The connection itself became unusable
        """
        self._ensure_open()
        entries = list(entries)
        start_time = time.time()
        result = BatchInsertResult(batch_size=len(entries))

        rows: List[Tuple[int, List[Any]]] = []
        for index, entry in enumerate(entries):
            try:
                model = entry if isinstance(entry, ParsedLogEntry) else ParsedLogEntry.model_validate(entry)
                values = self._model_to_dict(model)
            except (ValueError, TypeError) as e:
                self._record_failure(result, index, e)
                continue
            rows.append((index, [values[column] for column in LOG_ENTRY_INSERT_COLUMNS]))

        if rows:
            with self._connection() as connection, self._timed('store'):
                if not (self.dialect.supports_transactions and self._insert_together(connection, rows, result)):
                    self._insert_each(connection, rows, result)

        result.processing_time_ms = (time.time() - start_time) * 1000
        self.logger.info(
            f"Stored {result.inserted_count}/{result.batch_size} log entries "
            f"({result.failed_count} failed) in {result.processing_time_ms:.1f}ms"
        )
        return result

    def _insert_together(self, connection: DatabaseConnection,
                         rows: List[Tuple[int, List[Any]]], result: BatchInsertResult) -> bool:
        """Insert all rows in one transaction; False if any row failed."""
        try:
            with connection.transaction():
                for _, values in rows:
                    connection.execute(self._insert_sql, values)
        except QueryError as e:
            if not connection.is_connected():
                raise BackendUnavailableError(f"Connection lost during insert: {e}") from e
            self.logger.debug(f"Batch insert failed, retrying per record: {e}")
            return False
        result.inserted_count += len(rows)
        return True

    def _insert_each(self, connection: DatabaseConnection,
                     rows: List[Tuple[int, List[Any]]], result: BatchInsertResult) -> None:
        for index, values in rows:
            try:
                connection.execute(self._insert_sql, values)
            except QueryError as e:
                if not connection.is_connected():
                    raise BackendUnavailableError(f"Connection lost during insert: {e}") from e
                self._record_failure(result, index, e)
            else:
                result.inserted_count += 1

    def _record_failure(self, result: BatchInsertResult, index: int, error: Exception) -> None:
        failure = StorageWriteError(f"Entry {index}: {error}", index=index)
        result.failed_count += 1
        result.errors.append(str(failure))
        self.logger.warning(f"Failed to store log entry: {failure}")

    def store_batch(self, entries: Iterable[EntryLike],
                    batch_size: Optional[int] = None) -> BatchInsertResult:
        """Store entries in chunks of batch_size, aggregating the results."""
        self._ensure_open()
        batch_size = batch_size or self.batch_size
        total = BatchInsertResult()
        iterator = iter(entries)
        while True:
            chunk = list(islice(iterator, batch_size))
            if not chunk:
                break
            total = total.merge(self.store(chunk))
        return total

    # Reads

    def _coerce_filter(self, criteria: FilterLike) -> FilterCriteria:
        if criteria is None:
            return FilterCriteria()
        if isinstance(criteria, FilterCriteria):
            return criteria
        return FilterCriteria.model_validate(criteria)

    def _build_where(self, criteria: FilterCriteria) -> Tuple[List[str], List[Any]]:
        conditions: List[str] = []
        params: List[Any] = []

        if criteria.time_range:
            conditions.append("timestamp >= ? AND timestamp <= ?")
            params.append(self.dialect.bind_timestamp(criteria.time_range.start))
            params.append(self.dialect.bind_timestamp(criteria.time_range.end))

        for column, values in (
            ('elb_status_code', criteria.status_codes),
            ('client_ip', criteria.client_ips),
            ('request_url', criteria.endpoints),
            ('domain_name', criteria.domain_names),
        ):
            if values:
                conditions.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)

        if criteria.user_agent_patterns:
            patterns = ' OR '.join('user_agent LIKE ?' for _ in criteria.user_agent_patterns)
            conditions.append(f"({patterns})")
            params.extend(f"%{pattern}%" for pattern in criteria.user_agent_patterns)

        return conditions, params

    @staticmethod
    def _where_sql(conditions: List[str]) -> str:
        return f" WHERE {' AND '.join(conditions)}" if conditions else ''

    def _row_limit(self, criteria: FilterCriteria) -> int:
        cap = min(criteria.max_rows or self.max_query_rows, self.max_query_rows)
        if criteria.limit is None:
            return cap
        return min(criteria.limit, cap)

    def query(self, criteria: FilterLike = None) -> List[ParsedLogEntry]:
        """
        Fetch entries matching a filter.

        Results are ordered by timestamp ascending (ties by id) unless the
        filter sets sort_by/sort_order. At most max_query_rows rows are
        returned even without a limit.

        Args:
            criteria: FilterCriteria or mapping of its fields

        Returns:
            List of ParsedLogEntry
        """
        criteria = self._coerce_filter(criteria)
        conditions, params = self._build_where(criteria)

        direction = criteria.sort_order.upper()
        order = f"{criteria.sort_by} {direction}"
        if criteria.sort_by != 'id':
            order += f", id {direction}"

        sql = (f"SELECT * FROM {self.table_name}{self._where_sql(conditions)} "
               f"ORDER BY {order} LIMIT ? OFFSET ?")
        params.extend([self._row_limit(criteria), criteria.offset or 0])

        with self._connection() as connection, self._timed('query'):
            rows = connection.query(sql, params).rows
        return [self._row_to_model(row) for row in rows]

    def count(self, criteria: FilterLike = None) -> int:
        """Number of entries matching a filter; limit and offset are ignored."""
        criteria = self._coerce_filter(criteria)
        conditions, params = self._build_where(criteria)
        sql = f"SELECT COUNT(*) AS total FROM {self.table_name}{self._where_sql(conditions)}"

        with self._connection() as connection, self._timed('count'):
            rows = connection.query(sql, params).rows
        return int(rows[0]['total']) if rows else 0

    def query_paginated(self, criteria: FilterLike = None, page: int = 1,
                        page_size: int = DEFAULT_PAGE_SIZE) -> PaginatedResult:
        """
        Offset pagination.

        Args:
            criteria: Filter; its own limit and offset are replaced
            page: 1-based page number
            page_size: Entries per page, capped at MAX_PAGE_SIZE
        """
        criteria = self._coerce_filter(criteria)
        page = max(1, page)
        page_size = min(max(1, page_size), MAX_PAGE_SIZE)

        total = self.count(criteria)
        data = self.query(criteria.model_copy(update={
            'limit': page_size,
            'offset': (page - 1) * page_size,
        }))
        total_pages = math.ceil(total / page_size) if total else 0

        return PaginatedResult(
            data=data,
            total_count=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1,
        )

    def _fetch_after(self, criteria: FilterCriteria, cursor: Optional[Cursor],
                     size: int) -> List[ParsedLogEntry]:
        conditions, params = self._build_where(criteria)
        direction = criteria.sort_order.upper()
        comparison = '>' if direction == 'ASC' else '<'

        if cursor is not None:
            timestamp, entry_id = cursor
            bound = self.dialect.bind_timestamp(timestamp)
            conditions.append(
                f"(timestamp {comparison} ? OR (timestamp = ? AND id {comparison} ?))"
            )
            params.extend([bound, bound, entry_id])

        sql = (f"SELECT * FROM {self.table_name}{self._where_sql(conditions)} "
               f"ORDER BY timestamp {direction}, id {direction} LIMIT ?")
        params.append(size)

        with self._connection() as connection, self._timed('query_keyset'):
            rows = connection.query(sql, params).rows
        return [self._row_to_model(row) for row in rows]

    def query_cursor_paginated(self, criteria: FilterLike = None, cursor: Optional[str] = None,
                               page_size: int = DEFAULT_PAGE_SIZE) -> PaginatedResult:
        """
        Keyset pagination on (timestamp, id).

        The filter's sort_order applies; sort_by is always timestamp here.

        Args:
            criteria: Filter
            cursor: next_cursor of the previous page, None for the first page
            page_size: Entries per page, capped at MAX_PAGE_SIZE
        """
        criteria = self._coerce_filter(criteria)
        page_size = min(max(1, page_size), MAX_PAGE_SIZE)
        position = decode_cursor(cursor) if cursor else None

        rows = self._fetch_after(criteria, position, page_size + 1)
        has_next = len(rows) > page_size
        data = rows[:page_size]
        next_cursor = encode_cursor(data[-1].timestamp, data[-1].id) if has_next and data else None
        total = self.count(criteria)

        return PaginatedResult(
            data=data,
            total_count=total,
            page=1,
            page_size=page_size,
            total_pages=math.ceil(total / page_size) if total else 0,
            has_next=has_next,
            has_previous=cursor is not None,
            next_cursor=next_cursor,
        )

    def query_stream(self, criteria: FilterLike = None,
                     chunk_size: int = DEFAULT_BATCH_SIZE) -> Iterator[ParsedLogEntry]:
        """
        Yield matching entries chunk by chunk in timestamp order.

        A connection is borrowed per chunk, never across a yield. The
        filter's limit bounds the total; the row cap does not apply.
        """
        self._ensure_open()
        criteria = self._coerce_filter(criteria)
        remaining = criteria.limit
        position: Optional[Cursor] = None

        while remaining is None or remaining > 0:
            size = chunk_size if remaining is None else min(chunk_size, remaining)
            rows = self._fetch_after(criteria, position, size)
            for entry in rows:
                yield entry
            if remaining is not None:
                remaining -= len(rows)
            if len(rows) < size:
                break
            position = (rows[-1].timestamp, rows[-1].id)

    def query_dataframe(self, criteria: FilterLike = None) -> pd.DataFrame:
        """Query results as a pandas DataFrame with one column per field."""
        entries = self.query(criteria)
        return pd.DataFrame([entry.model_dump() for entry in entries], columns=LOG_ENTRY_COLUMNS)

    # Indexes

    def _index_name(self, column: str) -> str:
        SecureQueryBuilder.validate_column_name(column, allowed=LOG_ENTRY_COLUMNS)
        return f"idx_{self.table_name}_{column}"

    def create_index(self, column: str) -> str:
        """
        Create a single-column index on log_entries.

        Args:
            column: A log_entries column

        Returns:
            Name of the index

        Raises:
            QueryInjectionError: If column is not a log_entries column
        """
        name = self._index_name(column)
        with self._connection() as connection, self._timed('create_index'):
            connection.execute(self.dialect.create_index(name, self.table_name, [column]))
        self.logger.info(f"Created index {name}")
        return name

    def drop_index(self, column: str) -> str:
        name = self._index_name(column)
        with self._connection() as connection, self._timed('drop_index'):
            connection.execute(self.dialect.drop_index(name, self.table_name))
        self.logger.info(f"Dropped index {name}")
        return name

    def list_indexes(self) -> List[str]:
        with self._connection() as connection:
            indexes = self.dialect.list_indexes(connection, self.table_name)
        return [index['name'] for index in indexes]

    # Maintenance and statistics

    def get_stats(self) -> StorageStats:
        with self._connection() as connection, self._timed('get_stats'):
            row = connection.query(
                f"SELECT COUNT(*) AS total, MIN(timestamp) AS oldest, MAX(timestamp) AS newest "
                f"FROM {self.table_name}"
            ).rows[0]
            size = self.dialect.database_size(connection)
            index_count = len(self.dialect.list_indexes(connection, self.table_name))

        total = int(row['total'] or 0)
        return StorageStats(
            total_entries=total,
            database_size=size,
            oldest_entry=self.dialect.parse_timestamp(row['oldest']) if total else None,
            newest_entry=self.dialect.parse_timestamp(row['newest']) if total else None,
            index_count=index_count,
        )

    def get_database_size(self) -> int:
        """Size of the database in bytes, 0 when the backend cannot tell."""
        with self._connection() as connection:
            return self.dialect.database_size(connection)

    def delete_old_entries(self, older_than: Union[datetime, timedelta]) -> int:
        """
        Delete entries with a timestamp before a cutoff.

        Args:
            older_than: Cutoff datetime, or an age relative to now

        Returns:
            Number of entries deleted
        """
        if isinstance(older_than, timedelta):
            older_than = datetime.now(timezone.utc) - older_than
        cutoff = self.dialect.bind_timestamp(older_than)

        with self._connection() as connection, self._timed('delete_old_entries'):
            rows = connection.query(
                f"SELECT COUNT(*) AS total FROM {self.table_name} WHERE timestamp < ?", [cutoff]
            ).rows
            deleted = int(rows[0]['total']) if rows else 0
            if deleted:
                connection.execute(f"DELETE FROM {self.table_name} WHERE timestamp < ?", [cutoff])

        self.logger.info(f"Deleted {deleted} log entries older than {older_than.isoformat()}")
        return deleted

    def clear_data(self) -> int:
        """Delete every entry and reset the id sequence where possible."""
        with self._connection() as connection, self._timed('clear_data'):
            rows = connection.query(f"SELECT COUNT(*) AS total FROM {self.table_name}").rows
            deleted = int(rows[0]['total']) if rows else 0
            connection.execute(self.dialect.delete_all(self.table_name))
            for statement in self.dialect.reset_identity(self.table_name):
                connection.execute(statement)

        self.logger.info(f"Cleared {deleted} log entries")
        return deleted

    def optimize(self) -> None:
        """Refresh planner statistics and compact storage."""
        with self._connection() as connection, self._timed('optimize'):
            analyze = self.dialect.analyze(self.table_name)
            if analyze:
                connection.execute(analyze)
            vacuum = self.dialect.vacuum(self.table_name)
            if vacuum:
                connection.execute_maintenance(vacuum)
        self.logger.info("Database optimized")

    # Hourly summary

    def refresh_hourly_summary(self, since: Optional[datetime] = None) -> int:
        """
        Recompute log_entries_hourly_summary from log_entries.

        Every hour from the one containing `since` onward is rebuilt. Without
        `since` the rebuild starts at the latest hour already summarized, or
        covers the whole table when the summary is empty.

        Returns:
            Number of (hour, domain) rows written
        """
        with self._connection() as connection, self._timed('refresh_hourly_summary'):
            if since is None:
                rows = connection.query(
                    f"SELECT MAX(hour_timestamp) AS last_hour FROM {HOURLY_SUMMARY_TABLE}"
                ).rows
                since = rows[0]['last_hour'] if rows else None
            start = self.dialect.parse_timestamp(since)
            if start is not None:
                start = start.replace(minute=0, second=0, microsecond=0)

            sql = f"SELECT {', '.join(SUMMARY_SOURCE_COLUMNS)} FROM {self.table_name}"
            params: List[Any] = []
            if start is not None:
                sql += " WHERE timestamp >= ?"
                params.append(self.dialect.bind_timestamp(start))
            summary = self._summarize_hours(connection.query(sql, params).rows)

            insert_sql = (
                f"INSERT INTO {HOURLY_SUMMARY_TABLE} ({', '.join(HOURLY_SUMMARY_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in HOURLY_SUMMARY_COLUMNS)})"
            )
            scope = connection.transaction() if self.dialect.supports_transactions else nullcontext()
            with scope:
                if start is None:
                    connection.execute(self.dialect.delete_all(HOURLY_SUMMARY_TABLE))
                else:
                    connection.execute(
                        self.dialect.delete_where(HOURLY_SUMMARY_TABLE, "hour_timestamp >= ?"),
                        [self.dialect.bind_timestamp(start)],
                    )
                for values in summary:
                    connection.execute(insert_sql, values)

        origin = start.isoformat() if start else 'the beginning'
        self.logger.info(f"Refreshed {len(summary)} hourly summary rows from {origin}")
        return len(summary)

    def _summarize_hours(self, rows: List[Dict[str, Any]]) -> List[List[Any]]:
        """Group raw entries by hour and domain into summary table rows."""
        if not rows:
            return []
        frame = pd.DataFrame(rows, columns=SUMMARY_SOURCE_COLUMNS)
        frame['hour'] = pd.to_datetime(
            [self.dialect.parse_timestamp(value) for value in frame['timestamp']], utc=True
        ).floor('h')
        frame['domain_name'] = frame['domain_name'].fillna('')
        status = pd.to_numeric(frame['elb_status_code'], errors='coerce')
        frame['is_error'] = status >= 400
        frame['is_2xx'] = status.between(200, 299)
        frame['is_3xx'] = status.between(300, 399)
        frame['is_4xx'] = status.between(400, 499)
        frame['is_5xx'] = status >= 500
        for column in ('request_processing_time', 'target_processing_time', 'response_processing_time',
                       'received_bytes', 'sent_bytes'):
            frame[column] = pd.to_numeric(frame[column], errors='coerce')

        grouped = frame.groupby(['hour', 'domain_name'], sort=True).agg(
            request_count=('timestamp', 'size'),
            error_count=('is_error', 'sum'),
            avg_request_time=('request_processing_time', 'mean'),
            avg_target_time=('target_processing_time', 'mean'),
            avg_response_time=('response_processing_time', 'mean'),
            total_bytes_received=('received_bytes', 'sum'),
            total_bytes_sent=('sent_bytes', 'sum'),
            unique_clients=('client_ip', 'nunique'),
            status_code_2xx=('is_2xx', 'sum'),
            status_code_3xx=('is_3xx', 'sum'),
            status_code_4xx=('is_4xx', 'sum'),
            status_code_5xx=('is_5xx', 'sum'),
        )

        def average(value):
            return None if pd.isna(value) else float(value)

        summary = []
        for (hour, domain), row in grouped.iterrows():
            summary.append([
                self.dialect.bind_timestamp(hour.to_pydatetime()),
                domain,
                int(row['request_count']),
                int(row['error_count']),
                average(row['avg_request_time']),
                average(row['avg_target_time']),
                average(row['avg_response_time']),
                int(row['total_bytes_received']),
                int(row['total_bytes_sent']),
                int(row['unique_clients']),
                int(row['status_code_2xx']),
                int(row['status_code_3xx']),
                int(row['status_code_4xx']),
                int(row['status_code_5xx']),
            ])
        return summary

    def query_aggregated(self, criteria: FilterLike = None) -> List[HourlySummary]:
        """
        Hourly traffic per domain from the summary table, newest hour first.

        Only the filter's time range and domain names apply. Run
        refresh_hourly_summary() first to pick up new entries.
        """
        criteria = self._coerce_filter(criteria)
        conditions: List[str] = []
        params: List[Any] = []
        if criteria.time_range:
            conditions.append("hour_timestamp >= ? AND hour_timestamp <= ?")
            params.append(self.dialect.bind_timestamp(criteria.time_range.start))
            params.append(self.dialect.bind_timestamp(criteria.time_range.end))
        if criteria.domain_names:
            conditions.append(f"domain_name IN ({', '.join('?' for _ in criteria.domain_names)})")
            params.extend(criteria.domain_names)

        sql = (
            "SELECT hour_timestamp, domain_name, "
            "SUM(request_count) AS total_requests, SUM(error_count) AS total_errors, "
            "AVG(avg_request_time) AS avg_request_time, "
            "SUM(total_bytes_received) AS total_bytes_received, "
            "SUM(total_bytes_sent) AS total_bytes_sent "
            f"FROM {HOURLY_SUMMARY_TABLE}{self._where_sql(conditions)} "
            "GROUP BY hour_timestamp, domain_name "
            "ORDER BY hour_timestamp DESC, domain_name ASC"
        )
        with self._connection() as connection, self._timed('query_aggregated'):
            rows = connection.query(sql, params).rows

        return [
            HourlySummary(
                hour_timestamp=self.dialect.parse_timestamp(row['hour_timestamp']),
                domain_name=row['domain_name'],
                total_requests=int(row['total_requests'] or 0),
                total_errors=int(row['total_errors'] or 0),
                avg_request_time=row['avg_request_time'],
                total_bytes_received=int(row['total_bytes_received'] or 0),
                total_bytes_sent=int(row['total_bytes_sent'] or 0),
            )
            for row in rows
        ]

    # Download tracking

    def record_download_batch(self, batch: DownloadBatch) -> None:
        """Insert a download batch with its S3 and local paths as JSON arrays."""
        values = {
            'batch_id': batch.batch_id,
            'batch_name': batch.batch_name,
            'file_count': batch.file_count,
            'total_size_bytes': batch.total_size_bytes,
            's3_file_paths': json.dumps(batch.s3_file_paths),
            'local_file_paths': json.dumps(batch.local_file_paths),
            'status': batch.status,
            'error_message': batch.error_message,
            'download_started_at': self.dialect.bind_timestamp(batch.download_started_at),
            'download_completed_at': self.dialect.bind_timestamp(batch.download_completed_at),
        }
        sql = (
            f"INSERT INTO {DOWNLOAD_BATCHES_TABLE} ({', '.join(values)}) "
            f"VALUES ({', '.join('?' for _ in values)})"
        )
        with self._connection() as connection, self._timed('record_download_batch'):
            connection.execute(sql, list(values.values()))
        self.logger.info(f"Recorded download batch {batch.batch_id} ({batch.file_count} files, {batch.status})")

    def _batch_paths(self, row: Dict[str, Any]) -> List[str]:
        try:
            paths = json.loads(row['s3_file_paths'])
        except (TypeError, ValueError) as e:
            self.logger.warning(f"Skipping download batch {row.get('batch_id')}: unreadable s3_file_paths ({e})")
            return []
        if not isinstance(paths, list):
            self.logger.warning(f"Skipping download batch {row.get('batch_id')}: s3_file_paths is not a list")
            return []
        return [path for path in paths if isinstance(path, str)]

    def get_file_count_by_prefix(self, prefix: str) -> int:
        """
        Count downloaded S3 objects whose key starts with prefix.

        Paths of completed and processed batches are matched on the object
        key, with any 's3://' scheme and bucket name removed.
        """
        with self._connection() as connection, self._timed('get_file_count_by_prefix'):
            rows = connection.query(
                f"SELECT batch_id, s3_file_paths FROM {DOWNLOAD_BATCHES_TABLE} "
                f"WHERE status IN ('completed', 'processed')"
            ).rows

        count = sum(
            1 for row in rows for path in self._batch_paths(row) if s3_key(path).startswith(prefix)
        )
        self.logger.debug(f"{count} downloaded files under prefix {prefix!r} in {len(rows)} batches")
        return count

    def get_last_download_time(self, prefix: str) -> Optional[datetime]:
        """Completion time of the newest completed batch holding a key under prefix."""
        with self._connection() as connection, self._timed('get_last_download_time'):
            rows = connection.query(
                f"SELECT batch_id, s3_file_paths, download_completed_at FROM {DOWNLOAD_BATCHES_TABLE} "
                f"WHERE status = 'completed' AND download_completed_at IS NOT NULL "
                f"ORDER BY download_completed_at DESC"
            ).rows

        for row in rows:
            if any(s3_key(path).startswith(prefix) for path in self._batch_paths(row)):
                return self.dialect.parse_timestamp(row['download_completed_at'])
        return None
