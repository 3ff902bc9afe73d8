"""
ALB flow-log persistence.

Stores parsed load-balancer access log records in SQLite, PostgreSQL,
DuckDB or ClickHouse through one pooled, migration-managed data layer.

Components:
- db: configuration, connection pooling, migrations and the DataStore
- config_manager: settings file loading with environment overrides
- security: identifier whitelisting and log redaction
- cli: the flowlog-store command
"""

__version__ = "1.0.0"
