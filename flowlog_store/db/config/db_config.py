"""
Database configuration model.

Connection parameters for the four supported backends, their validation
rules and per-backend defaults. Configs are pydantic models frozen after
construction; use DatabaseConfigBuilder or create_default_config to make one.
"""

from copy import deepcopy
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..core.exceptions import ConfigurationError


class DatabaseType(str, Enum):
    """Supported backend identifiers, in canonical order."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    CLICKHOUSE = "clickhouse"
    DUCKDB = "duckdb"

    @classmethod
    def values(cls) -> List[str]:
        return [member.value for member in cls]


class PoolSettings(BaseModel):
    """Connection pool sizing and timeouts."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    min: Optional[int] = Field(None, description="Connections opened eagerly and kept when idle")
    max: Optional[int] = Field(None, description="Upper bound on open connections")
    acquire_timeout_millis: Optional[int] = Field(
        None, alias="acquireTimeoutMillis", description="How long acquire() may block"
    )
    idle_timeout_millis: Optional[int] = Field(
        None, alias="idleTimeoutMillis", description="Idle age after which a connection is closed"
    )


class ClickHouseSettings(BaseModel):
    """ClickHouse-specific session options."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="allow")

    format: Optional[str] = None
    session_id: Optional[str] = None
    session_timeout: Optional[int] = None


class DatabaseConfig(BaseModel):
    """
    Backend connection configuration.

    Exactly one addressing mode has to resolve per backend: a connection
    string, host plus database, or a database file. Validation is done by
    DatabaseConfigValidator rather than on construction, so an incomplete
    config can still be built and inspected.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: Optional[str] = Field(None, description="Backend identifier, see DatabaseType")
    connection_string: Optional[str] = Field(None, alias="connectionString")
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    max_connections: Optional[int] = Field(None, alias="maxConnections")
    ssl: Optional[Union[bool, Dict[str, Any]]] = None
    filename: Optional[str] = None
    clickhouse: Optional[ClickHouseSettings] = None
    duckdb: Optional[Dict[str, Any]] = Field(None, description="DuckDB SET options, e.g. threads")
    pool: Optional[PoolSettings] = None

    @field_validator('type', mode='before')
    @classmethod
    def unwrap_enum(cls, v):
        if isinstance(v, Enum):
            return v.value
        return v

    @property
    def database_type(self) -> Optional[DatabaseType]:
        try:
            return DatabaseType(self.type)
        except ValueError:
            return None

    @property
    def database_path(self) -> str:
        """File path for embedded backends."""
        return self.filename or self.database or ":memory:"

    @property
    def max_pool_size(self) -> int:
        if self.max_connections:
            return self.max_connections
        if self.pool and self.pool.max:
            return self.pool.max
        return 10

    @property
    def min_pool_size(self) -> int:
        return (self.pool.min if self.pool and self.pool.min else 0)

    @property
    def acquire_timeout(self) -> float:
        """Acquire timeout in seconds."""
        millis = self.pool.acquire_timeout_millis if self.pool else None
        return (millis if millis is not None else 30000) / 1000.0

    @property
    def idle_timeout(self) -> Optional[float]:
        """Idle timeout in seconds, None to keep idle connections forever."""
        millis = self.pool.idle_timeout_millis if self.pool else None
        return millis / 1000.0 if millis else None

    def canonical_key(self) -> str:
        """Stable serialization used to identify equivalent configs."""
        return self.model_dump_json(exclude_none=True)


# Backend specific defaults, merged under caller overrides
DATABASE_DEFAULTS: Dict[str, Dict[str, Any]] = {
    DatabaseType.SQLITE.value: {
        "max_connections": 10,
        "filename": ":memory:",
    },
    DatabaseType.POSTGRESQL.value: {
        "port": 5432,
        "max_connections": 20,
        "pool": {
            "min": 0,
            "max": 20,
            "acquire_timeout_millis": 30000,
            "idle_timeout_millis": 30000,
        },
    },
    DatabaseType.CLICKHOUSE.value: {
        "port": 8123,
        "max_connections": 10,
        "username": "default",
        "clickhouse": {"format": "JSONEachRow"},
    },
    DatabaseType.DUCKDB.value: {
        "max_connections": 5,
        "filename": ":memory:",
    },
}

_FIELD_ALIASES = {
    "connectionString": "connection_string",
    "maxConnections": "max_connections",
    "acquireTimeoutMillis": "acquire_timeout_millis",
    "idleTimeoutMillis": "idle_timeout_millis",
}


def _normalize_keys(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Map camelCase keys onto field names, recursing into nested mappings."""
    result = {}
    for key, value in data.items():
        if isinstance(value, Mapping):
            value = _normalize_keys(value)
        result[_FIELD_ALIASES.get(key, key)] = value
    return result


def _as_dict(config: Union[DatabaseConfig, Mapping[str, Any], None]) -> Dict[str, Any]:
    if config is None:
        return {}
    if isinstance(config, BaseModel):
        return config.model_dump(exclude_none=True)
    if isinstance(config, Mapping):
        return _normalize_keys(config)
    return {}


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _valid_port(port: Any) -> bool:
    return _is_int(port) and 1 <= port <= 65535


class DatabaseConfigValidator:
    """Checks configs and reports every problem as a human readable string."""

    _NAMES = {
        DatabaseType.SQLITE.value: "SQLite",
        DatabaseType.POSTGRESQL.value: "PostgreSQL",
        DatabaseType.CLICKHOUSE.value: "ClickHouse",
        DatabaseType.DUCKDB.value: "DuckDB",
    }

    @classmethod
    def validate(cls, config: Union[DatabaseConfig, Mapping[str, Any], None]) -> List[str]:
        """
        Validate a configuration.

        Args:
            config: DatabaseConfig instance or plain mapping (camelCase keys accepted)

        Returns:
            List of error messages, empty when the config is usable
        """
        data = _as_dict(config)
        db_type = data.get("type")
        if isinstance(db_type, Enum):
            db_type = db_type.value

        if not db_type:
            return ["Database type is required"]

        if not isinstance(db_type, str):
            return [f"Unsupported database type: {db_type!r}"]

        errors: List[str] = []
        name = cls._NAMES.get(db_type)

        if db_type in (DatabaseType.SQLITE.value, DatabaseType.DUCKDB.value):
            if not data.get("database") and not data.get("filename"):
                errors.append(f"{name} requires either database or filename")
        elif db_type in (DatabaseType.POSTGRESQL.value, DatabaseType.CLICKHOUSE.value):
            has_address = data.get("host") and data.get("database")
            if not data.get("connection_string") and not has_address:
                errors.append(f"{name} requires either connectionString or host/database")
            if data.get("port") is not None and not _valid_port(data["port"]):
                errors.append(f"{name} port must be between 1 and 65535")
        else:
            errors.append(f"Unsupported database type: {db_type}")

        max_connections = data.get("max_connections")
        if max_connections is not None and (not _is_int(max_connections) or max_connections <= 0):
            errors.append("maxConnections must be greater than 0")

        pool = data.get("pool")
        if isinstance(pool, Mapping):
            pool_min = pool.get("min")
            pool_max = pool.get("max")
            if pool_min is not None and (not _is_int(pool_min) or pool_min < 0):
                errors.append("Pool min connections must be >= 0")
            if pool_max is not None and (not _is_int(pool_max) or pool_max < 1):
                errors.append("Pool max connections must be >= 1")
            if _is_int(pool_min) and _is_int(pool_max) and pool_min > pool_max:
                errors.append("Pool min connections cannot be greater than max connections")

        return errors

    @classmethod
    def is_valid(cls, config: Union[DatabaseConfig, Mapping[str, Any], None]) -> bool:
        return not cls.validate(config)


class DatabaseConfigBuilder:
    """Fluent builder producing an immutable DatabaseConfig."""

    def __init__(self):
        self._values: Dict[str, Any] = {}

    @classmethod
    def create(cls) -> "DatabaseConfigBuilder":
        return cls()

    def type(self, db_type: Union[str, DatabaseType]) -> "DatabaseConfigBuilder":
        self._values["type"] = db_type.value if isinstance(db_type, DatabaseType) else db_type
        return self

    def connection_string(self, value: str) -> "DatabaseConfigBuilder":
        self._values["connection_string"] = value
        return self

    def host(self, value: str) -> "DatabaseConfigBuilder":
        self._values["host"] = value
        return self

    def port(self, value: int) -> "DatabaseConfigBuilder":
        self._values["port"] = value
        return self

    def database(self, value: str) -> "DatabaseConfigBuilder":
        self._values["database"] = value
        return self

    def credentials(self, username: str, password: Optional[str] = None) -> "DatabaseConfigBuilder":
        self._values["username"] = username
        self._values["password"] = password
        return self

    def max_connections(self, value: int) -> "DatabaseConfigBuilder":
        self._values["max_connections"] = value
        return self

    def ssl(self, value: Union[bool, Dict[str, Any]] = True) -> "DatabaseConfigBuilder":
        self._values["ssl"] = value
        return self

    def filename(self, value: str) -> "DatabaseConfigBuilder":
        self._values["filename"] = value
        return self

    def pool(self, min: Optional[int] = None, max: Optional[int] = None,
             acquire_timeout_millis: Optional[int] = None,
             idle_timeout_millis: Optional[int] = None) -> "DatabaseConfigBuilder":
        self._values["pool"] = {
            "min": min,
            "max": max,
            "acquire_timeout_millis": acquire_timeout_millis,
            "idle_timeout_millis": idle_timeout_millis,
        }
        return self

    def clickhouse(self, **settings: Any) -> "DatabaseConfigBuilder":
        self._values["clickhouse"] = settings
        return self

    def duckdb_settings(self, **settings: Any) -> "DatabaseConfigBuilder":
        self._values["duckdb"] = settings
        return self

    def build(self) -> DatabaseConfig:
        """
        Build the config.

        Raises:
            ConfigurationError: If no type was set
        """
        if not self._values.get("type"):
            raise ConfigurationError(["Database type is required"])
        return DatabaseConfig(**deepcopy(self._values))


def create_default_config(db_type: Union[str, DatabaseType],
                          overrides: Optional[Mapping[str, Any]] = None) -> DatabaseConfig:
    """
    Create a config from backend defaults with caller overrides applied.

    Overrides win key by key at the top level. An explicit database for an
    embedded backend replaces the default in-memory filename.

    Args:
        db_type: Backend identifier
        overrides: Values that take precedence over the defaults

    Returns:
        DatabaseConfig for the backend
    """
    db_type = db_type.value if isinstance(db_type, DatabaseType) else db_type
    values = deepcopy(DATABASE_DEFAULTS.get(db_type, {}))
    overrides = _normalize_keys(overrides or {})

    if overrides.get("database") and "filename" not in overrides:
        values.pop("filename", None)

    values.update(deepcopy(overrides))
    values["type"] = db_type
    return DatabaseConfig(**values)


def get_default_config(db_type: Union[str, DatabaseType]) -> Dict[str, Any]:
    """Return a copy of the raw defaults for a backend."""
    db_type = db_type.value if isinstance(db_type, DatabaseType) else db_type
    if db_type not in DATABASE_DEFAULTS:
        raise ConfigurationError([f"Unsupported database type: {db_type}"])
    return deepcopy(DATABASE_DEFAULTS[db_type])
