# src/sluice_core/config.py

import json
import logging
import os
import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from cryptography.fernet import Fernet, InvalidToken
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import ConnectionError

logger = logging.getLogger(__name__)

TARGET_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")
TARGET_TYPE_RE = re.compile(
    r"^(Nullable\()?"
    r"(U?Int(8|16|32|64)|Float(32|64)|String|Date|DateTime|Decimal\(\d+,\s*\d+\))"
    r"\)?$"
)


class ConnectionType(str, Enum):
    POSTGRES = "postgres"
    MSSQL = "mssql"
    MYSQL = "mysql"


class SyncStrategy(str, Enum):
    FULL_REFRESH = "full_refresh"
    TIMESTAMP = "timestamp"
    ID = "id"
    DATE_DELETE_INSERT = "date_delete_insert"
    DATE_PARTITION = "date_partition"


class PartitionType(str, Enum):
    MONTHLY = "monthly"
    DAILY = "daily"


class LoadMode(str, Enum):
    APPEND = "append"
    UPSERT = "upsert"


class DatasetStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SYNCING = "syncing"
    ERROR = "error"


class Connection(BaseModel):
    """Source descriptor. Read-only to the engine."""

    id: int
    name: str = ""
    type: ConnectionType
    host: str = "localhost"
    port: Optional[int] = None
    database: str
    username: Optional[str] = None
    encrypted_password: Optional[str] = None
    password: Optional[str] = None  # Plaintext, local/test use only
    options: Dict[str, Any] = Field(default_factory=dict)
    status: str = "active"

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v):
        aliases = {"postgresql": "postgres", "sqlserver": "mssql", "mariadb": "mysql"}
        if isinstance(v, str):
            v = v.lower()
            return aliases.get(v, v)
        return v

    def credentials(self, encryption_key: Optional[str] = None) -> Dict[str, Any]:
        """
        Decrypt credentials for the lifetime of one source connection.

        The result must not be stored; callers pass it straight to the driver.
        """
        password = self.password
        if self.encrypted_password:
            if not encryption_key:
                raise ConnectionError(
                    f"Connection '{self.name or self.id}' has encrypted credentials but no key is configured",
                    suggestions=["Set SLUICE_ENCRYPTION_KEY to the Fernet key used by the admin service."],
                )
            try:
                password = Fernet(encryption_key.encode()).decrypt(self.encrypted_password.encode()).decode()
            except (InvalidToken, ValueError) as e:
                raise ConnectionError(
                    f"Could not decrypt credentials for connection '{self.name or self.id}'",
                    suggestions=["Check that SLUICE_ENCRYPTION_KEY matches the key the credentials were saved with."],
                ) from e
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.username,
            "password": password,
        }


class ColumnMappingEntry(BaseModel):
    source: str
    target: str
    type: str = "String"

    @field_validator("target")
    @classmethod
    def validate_target(cls, v):
        if not TARGET_NAME_RE.match(v):
            raise ValueError(f"target column '{v}' must match [A-Za-z0-9_]")
        return v

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        if not TARGET_TYPE_RE.match(v):
            raise ValueError(f"unsupported target type '{v}'")
        return v


class ColumnMapping(BaseModel):
    """Versioned source->target column mapping, validated at dataset save time."""

    kind: Literal["column_mapping"] = "column_mapping"
    version: int = 1
    columns: List[ColumnMappingEntry]

    @model_validator(mode="before")
    @classmethod
    def upgrade_legacy(cls, data):
        """Accept the older shapes: a JSON string or a bare list of entries."""
        if isinstance(data, str):
            data = json.loads(data)
        if isinstance(data, list):
            data = {"version": 1, "columns": data}
        return data

    @model_validator(mode="after")
    def validate_unique_targets(self):
        if not self.columns:
            raise ValueError("column mapping must contain at least one column")
        targets = [c.target for c in self.columns]
        duplicates = {t for t in targets if targets.count(t) > 1}
        if duplicates:
            raise ValueError(f"duplicate target columns: {sorted(duplicates)}")
        return self

    @property
    def source_columns(self) -> List[str]:
        return [c.source for c in self.columns]

    @property
    def target_columns(self) -> List[str]:
        return [c.target for c in self.columns]

    def type_of(self, target: str) -> str:
        for c in self.columns:
            if c.target == target:
                return c.type
        return "String"


class Dataset(BaseModel):
    """One sync unit bound to a Connection."""

    id: int
    connection_id: int
    name: str = ""
    source_table: Optional[str] = None
    source_query: Optional[str] = None
    target_table: str
    sync_strategy: SyncStrategy = SyncStrategy.FULL_REFRESH

    reference_column: Optional[str] = None

    # date_partition
    partition_column: Optional[str] = None
    partition_type: PartitionType = PartitionType.MONTHLY
    refresh_window_days: int = Field(default=7, ge=1)
    detect_modified: bool = False
    modified_column: Optional[str] = None
    weekly_full_refresh: bool = False
    last_full_refresh_at: Optional[datetime] = None

    # date_delete_insert
    delete_window_days: int = Field(default=7, ge=1)

    row_limit: Optional[int] = Field(default=None, ge=1)
    unique_column: Optional[str] = None
    load_mode: LoadMode = LoadMode.APPEND
    column_mapping: Optional[ColumnMapping] = None
    custom_where: Optional[str] = None
    schedule: Optional[str] = None

    status: DatasetStatus = DatasetStatus.PENDING
    status_message: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_sync_value: Optional[str] = None
    total_rows: int = 0

    @model_validator(mode="after")
    def validate_source(self):
        if bool(self.source_table) == bool(self.source_query):
            raise ValueError("exactly one of source_table or source_query is required")
        return self

    @property
    def label(self) -> str:
        return self.name or f"dataset-{self.id}"


class Settings(BaseModel):
    """Worker settings. Loaded from YAML and overridden by SLUICE_* environment variables."""

    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    encryption_key: Optional[str] = None

    clickhouse_host: str = "localhost"
    clickhouse_port: int = 8123
    clickhouse_user: str = "default"
    clickhouse_password: str = ""
    clickhouse_database: str = "default"

    read_batch_size: int = Field(default=20000, ge=1)
    insert_batch_size: int = Field(default=10000, ge=1)
    report_interval: int = Field(default=50000, ge=1)
    max_memory_mb: int = 2048

    lock_ttl: int = 7200
    cancel_ttl: int = 3600
    heartbeat_interval: float = 10
    heartbeat_ttl: int = 60
    poll_interval: float = 5
    scheduler_interval: float = 60
    stuck_threshold: int = 600

    @model_validator(mode="after")
    def validate_batch_sizes(self):
        """A read page must always yield at least one full insert batch."""
        if self.read_batch_size < self.insert_batch_size:
            raise ValueError(
                f"read_batch_size ({self.read_batch_size}) must be >= insert_batch_size ({self.insert_batch_size})"
            )
        return self


ENV_PREFIX = "SLUICE_"


def load_settings(filepath: Optional[str] = None) -> Settings:
    """Load settings from an optional YAML file, then apply SLUICE_* env overrides."""
    import yaml

    load_dotenv()
    data: Dict[str, Any] = {}
    if filepath:
        with open(filepath, "r") as f:
            data = yaml.safe_load(f) or {}

    for name in Settings.model_fields:
        env_value = os.getenv(f"{ENV_PREFIX}{name.upper()}")
        if env_value is not None:
            data[name] = env_value

    return Settings(**data)
