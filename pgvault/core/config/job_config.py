"""Resolved run configuration for backup, restore and retention jobs.

The records are built by the caller (the CLI, from environment variables)
and validated before any external call is made.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pgvault.core.errors import ConfigurationError

DEFAULT_PORT = 5432
DEFAULT_PATH_TEMPLATE = "{cluster}/{database}"
DEFAULT_FILENAME_TEMPLATE = "{timestamp}.sql.gz"
STORAGE_TYPES = ("s3", "gcs", "azure")


class ConflictPolicy(str, Enum):
    FAIL = "fail"
    DROP = "drop"
    OVERWRITE = "overwrite"


def _require(**fields: object) -> None:
    missing = [name for name, value in fields.items() if value in (None, "")]
    if missing:
        raise ConfigurationError(f"{', '.join(missing)} required")


@dataclass
class S3Config:
    bucket: str
    region: str = ""
    endpoint: Optional[str] = None
    # Empty keys fall back to the default AWS credential chain (IRSA / pod identity).
    access_key: Optional[str] = None
    secret_key: Optional[str] = None

    def validate(self) -> None:
        _require(s3_bucket=self.bucket)
        if bool(self.access_key) != bool(self.secret_key):
            raise ConfigurationError("s3 access_key and secret_key must be set together")


@dataclass
class GCSConfig:
    bucket: str
    project: Optional[str] = None
    credentials_file: Optional[str] = None

    def validate(self) -> None:
        _require(gcs_bucket=self.bucket)


@dataclass
class AzureConfig:
    container: str
    storage_account: Optional[str] = None
    connection_string: Optional[str] = None
    account_key: Optional[str] = None

    def validate(self) -> None:
        _require(azure_container=self.container)
        if not self.connection_string and not self.storage_account:
            raise ConfigurationError(
                "azure_connection_string or azure_storage_account required"
            )


@dataclass
class StorageConfig:
    storage_type: str
    s3: Optional[S3Config] = None
    gcs: Optional[GCSConfig] = None
    azure: Optional[AzureConfig] = None

    def validate(self) -> None:
        storage_type = (self.storage_type or "").lower()
        if storage_type not in STORAGE_TYPES:
            raise ConfigurationError(
                f"Unsupported storage type: '{self.storage_type}'. Use 's3', 'gcs' or 'azure'."
            )
        backend = getattr(self, storage_type)
        if backend is None:
            raise ConfigurationError(f"{storage_type} storage settings required")
        backend.validate()


@dataclass
class RetentionPolicy:
    keep_last: Optional[int] = None
    keep_daily: Optional[int] = None
    keep_weekly: Optional[int] = None
    keep_monthly: Optional[int] = None

    @property
    def has_active_rules(self) -> bool:
        return any(
            count is not None and count > 0
            for count in (self.keep_last, self.keep_daily, self.keep_weekly, self.keep_monthly)
        )


@dataclass
class BackupConfig:
    host: str
    database: str
    user: str
    password: str
    storage: StorageConfig
    cluster_name: str
    database_name: str
    run_id: str
    port: int = DEFAULT_PORT
    path_template: str = DEFAULT_PATH_TEMPLATE
    filename_template: str = DEFAULT_FILENAME_TEMPLATE
    backup_name: str = ""
    namespace: str = ""
    sslmode: Optional[str] = None
    compression_level: int = 9
    timeout: Optional[float] = None

    def validate(self) -> None:
        _require(
            host=self.host,
            database=self.database,
            user=self.user,
            password=self.password,
            cluster_name=self.cluster_name,
            database_name=self.database_name,
            run_id=self.run_id,
        )
        if not 0 <= self.compression_level <= 9:
            raise ConfigurationError("compression_level must be between 0 and 9")
        self.storage.validate()


@dataclass
class RestoreConfig:
    host: str
    database: str
    user: str
    password: str
    source_path: str
    storage: StorageConfig
    on_conflict: ConflictPolicy = ConflictPolicy.FAIL
    port: int = DEFAULT_PORT
    sslmode: str = "prefer"
    maintenance_database: str = "postgres"
    timeout: Optional[float] = None

    def validate(self) -> None:
        _require(
            host=self.host,
            database=self.database,
            user=self.user,
            password=self.password,
            source_path=self.source_path,
        )
        try:
            self.on_conflict = ConflictPolicy(self.on_conflict)
        except ValueError:
            raise ConfigurationError(
                f"Unsupported on_conflict: '{self.on_conflict}'. Use 'fail', 'drop' or 'overwrite'."
            )
        self.storage.validate()


@dataclass
class RetentionJobConfig:
    storage: StorageConfig
    prefix: str
    policy: RetentionPolicy = field(default_factory=RetentionPolicy)

    def validate(self) -> None:
        self.storage.validate()
