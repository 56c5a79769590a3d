from datetime import datetime, timezone

import pytest

from pgvault.core.config.job_config import (
    BackupConfig,
    ConflictPolicy,
    RestoreConfig,
    S3Config,
    StorageConfig,
)
from pgvault.core.storage.memory_storage_client import InMemoryStorageClient

FIXED_NOW = datetime(2026, 1, 20, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def memory_storage() -> InMemoryStorageClient:
    return InMemoryStorageClient()


@pytest.fixture
def storage_config() -> StorageConfig:
    return StorageConfig(storage_type="s3", s3=S3Config(bucket="backups", region="eu-west-1"))


@pytest.fixture
def backup_config(storage_config) -> BackupConfig:
    return BackupConfig(
        host="db.internal",
        database="app",
        user="backup",
        password="s3cret",
        storage=storage_config,
        cluster_name="prod",
        database_name="app",
        run_id="run-42",
        backup_name="nightly",
        namespace="databases",
    )


@pytest.fixture
def restore_config(storage_config) -> RestoreConfig:
    return RestoreConfig(
        host="db.internal",
        database="app",
        user="admin",
        password="s3cret",
        source_path="prod/app/20260120-120000.sql.gz",
        storage=storage_config,
        on_conflict=ConflictPolicy.FAIL,
    )
