"""
Summary and download-tracking models.

Rows of log_entries_hourly_summary as returned by aggregated queries, and
records of S3 download batches kept in download_batches.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .log_entry import _as_utc


class HourlySummary(BaseModel):
    """Traffic for one domain during one hour."""

    hour_timestamp: datetime
    domain_name: str
    total_requests: int = 0
    total_errors: int = 0
    avg_request_time: Optional[float] = None
    total_bytes_received: int = 0
    total_bytes_sent: int = 0

    @field_validator('hour_timestamp')
    @classmethod
    def normalize_timezone(cls, v):
        return _as_utc(v)


class DownloadBatch(BaseModel):
    """A set of log files fetched from S3 in one run."""

    batch_id: str
    batch_name: str
    s3_file_paths: List[str] = Field(default_factory=list)
    local_file_paths: List[str] = Field(default_factory=list)
    status: Literal['pending', 'downloading', 'completed', 'processed', 'error'] = 'pending'
    total_size_bytes: int = Field(0, ge=0)
    error_message: Optional[str] = None
    download_started_at: Optional[datetime] = None
    download_completed_at: Optional[datetime] = None

    @property
    def file_count(self) -> int:
        return len(self.s3_file_paths)

    @field_validator('download_started_at', 'download_completed_at')
    @classmethod
    def normalize_timezone(cls, v):
        return _as_utc(v)


def s3_key(path: str) -> str:
    """Object key of an 's3://bucket/key' or 'bucket/key' path."""
    if path.startswith('s3://'):
        path = path[len('s3://'):]
    return path.split('/', 1)[1] if '/' in path else path
