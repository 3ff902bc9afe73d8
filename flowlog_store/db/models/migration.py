"""
Migration tracking models.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class MigrationRecord(BaseModel):
    """Row of the schema_migrations tracking table."""

    id: str = Field(..., description="Migration id, e.g. '001'")
    name: str = Field(..., description="Human readable migration name")
    executed_at: datetime = Field(..., description="When the migration was committed")
    checksum: str = Field(..., description="sha256 of the migration's up/down source")


class MigrationStatus(BaseModel):
    """Registered migration joined with its execution record, if any."""

    id: str
    name: str
    applied: bool = False
    executed_at: Optional[datetime] = None
    checksum: Optional[str] = None
    checksum_matches: Optional[bool] = None
