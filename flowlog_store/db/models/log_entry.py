"""
Log entry data models.

Pydantic models for ALB flow-log records as stored in log_entries, the
query filter accepted by the DataStore and the result envelopes it returns.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ParsedLogEntry(BaseModel):
    """
    One ALB access log record.

    Produced by the log parser; id and created_at are assigned on insert.
    Naive datetimes are taken to be UTC.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[int] = Field(None, description="Row id assigned by the store")
    timestamp: datetime = Field(..., description="Time the load balancer responded")
    client_ip: Optional[str] = Field(None, description="Client address")
    target_ip: Optional[str] = Field(None, description="Target address")
    request_processing_time: Optional[float] = Field(None, description="Seconds, -1 if unavailable")
    target_processing_time: Optional[float] = Field(None, description="Seconds, -1 if unavailable")
    response_processing_time: Optional[float] = Field(None, description="Seconds, -1 if unavailable")
    elb_status_code: Optional[int] = Field(None, ge=0, le=999)
    target_status_code: Optional[int] = Field(None, ge=0, le=999)
    received_bytes: Optional[int] = Field(None, ge=0)
    sent_bytes: Optional[int] = Field(None, ge=0)
    request_verb: Optional[str] = None
    request_url: Optional[str] = None
    request_protocol: Optional[str] = None
    user_agent: Optional[str] = None
    ssl_cipher: Optional[str] = None
    ssl_protocol: Optional[str] = None
    target_group_arn: Optional[str] = None
    trace_id: Optional[str] = None
    domain_name: Optional[str] = None
    chosen_cert_arn: Optional[str] = None
    matched_rule_priority: Optional[int] = None
    request_creation_time: Optional[datetime] = None
    actions_executed: Optional[str] = None
    redirect_url: Optional[str] = None
    error_reason: Optional[str] = None
    target_port_list: Optional[str] = None
    target_status_code_list: Optional[str] = None
    classification: Optional[str] = None
    classification_reason: Optional[str] = None
    connection_id: Optional[str] = Field(None, description="ALB connection identifier")
    created_at: Optional[datetime] = Field(None, description="Insert time assigned by the store")

    @field_validator('timestamp', 'request_creation_time', 'created_at')
    @classmethod
    def normalize_timezone(cls, v):
        return _as_utc(v)


# Columns written on insert, in table order
LOG_ENTRY_INSERT_COLUMNS: List[str] = [
    'timestamp', 'client_ip', 'target_ip',
    'request_processing_time', 'target_processing_time', 'response_processing_time',
    'elb_status_code', 'target_status_code', 'received_bytes', 'sent_bytes',
    'request_verb', 'request_url', 'request_protocol', 'user_agent',
    'ssl_cipher', 'ssl_protocol', 'target_group_arn', 'trace_id', 'domain_name',
    'chosen_cert_arn', 'matched_rule_priority', 'request_creation_time',
    'actions_executed', 'redirect_url', 'error_reason', 'target_port_list',
    'target_status_code_list', 'classification', 'classification_reason',
    'connection_id',
]

LOG_ENTRY_COLUMNS: List[str] = ['id'] + LOG_ENTRY_INSERT_COLUMNS + ['created_at']

TIMESTAMP_COLUMNS = frozenset({'timestamp', 'request_creation_time', 'created_at'})

SORTABLE_COLUMNS = frozenset({
    'id', 'timestamp', 'client_ip', 'elb_status_code', 'target_status_code',
    'request_url', 'domain_name', 'received_bytes', 'sent_bytes',
    'request_processing_time', 'target_processing_time', 'response_processing_time',
    'created_at',
})


class TimeRange(BaseModel):
    """Inclusive time window."""

    start: datetime
    end: datetime

    @field_validator('start', 'end')
    @classmethod
    def normalize_timezone(cls, v):
        return _as_utc(v)

    @model_validator(mode='after')
    def check_order(self):
        if self.start > self.end:
            raise ValueError('time range start must not be after end')
        return self


class FilterCriteria(BaseModel):
    """
    Conjunctive predicate over log entries.

    Each field that is set (and, for lists, non-empty) narrows the result;
    values inside one list are alternatives.
    """

    model_config = ConfigDict(populate_by_name=True)

    time_range: Optional[TimeRange] = Field(None, alias='timeRange')
    status_codes: Optional[List[int]] = Field(None, alias='statusCodes')
    client_ips: Optional[List[str]] = Field(None, alias='clientIps')
    endpoints: Optional[List[str]] = None
    user_agent_patterns: Optional[List[str]] = Field(None, alias='userAgentPatterns')
    domain_names: Optional[List[str]] = Field(None, alias='domainNames')
    limit: Optional[int] = Field(None, ge=0)
    offset: Optional[int] = Field(None, ge=0)
    max_rows: Optional[int] = Field(None, ge=1, alias='maxRows')
    sort_by: str = Field('timestamp', alias='sortBy')
    sort_order: Literal['asc', 'desc'] = Field('asc', alias='sortOrder')

    @field_validator('sort_order', mode='before')
    @classmethod
    def lowercase_order(cls, v):
        return v.lower() if isinstance(v, str) else v

    @field_validator('sort_by')
    @classmethod
    def check_sort_column(cls, v):
        if v not in SORTABLE_COLUMNS:
            raise ValueError(f"cannot sort by '{v}'")
        return v


class BatchInsertResult(BaseModel):
    """Outcome of storing a batch; failures are counted, not raised."""

    inserted_count: int = 0
    failed_count: int = 0
    errors: List[str] = Field(default_factory=list)
    batch_size: int = 0
    processing_time_ms: float = 0.0

    def merge(self, other: "BatchInsertResult") -> "BatchInsertResult":
        return BatchInsertResult(
            inserted_count=self.inserted_count + other.inserted_count,
            failed_count=self.failed_count + other.failed_count,
            errors=self.errors + other.errors,
            batch_size=self.batch_size + other.batch_size,
            processing_time_ms=self.processing_time_ms + other.processing_time_ms,
        )


class StorageStats(BaseModel):
    total_entries: int = 0
    database_size: int = 0
    oldest_entry: Optional[datetime] = None
    newest_entry: Optional[datetime] = None
    index_count: int = 0


class PaginatedResult(BaseModel):
    """One page of entries with navigation metadata."""

    data: List[ParsedLogEntry] = Field(default_factory=list)
    total_count: int = 0
    page: int = 1
    page_size: int = 0
    total_pages: int = 0
    has_next: bool = False
    has_previous: bool = False
    next_cursor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')
