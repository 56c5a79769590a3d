import gzip
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pgvault.core.config.job_config import BackupConfig
from pgvault.core.errors import PgVaultError
from pgvault.core.helpers.path_template import TemplateFields, render_destination
from pgvault.core.helpers.pg_tools import Deadline, connection_args, run_pg_tool
from pgvault.core.interfaces.backup_utility_interface import BackupResult, DatabaseBackupManager
from pgvault.core.interfaces.storage_client_interface import ObjectTags, StorageClient
from pgvault.core.storage.storage_dispatch import create_storage_client

logger = logging.getLogger(__name__)

CREATED_BY = "pgvault"


def format_bytes(size: int) -> str:
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {'KMGTPE'[exp]}iB"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PostgresDatabaseBackupManager(DatabaseBackupManager):

    class BackupError(PgVaultError):
        pass

    def __init__(
        self,
        config: BackupConfig,
        storage_client: Optional[StorageClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config
        self.storage_client = storage_client
        self.clock = clock or utc_now
        self.deadline = Deadline(config.timeout)

    def dump(self) -> bytes:
        cfg = self.config
        command = [
            "pg_dump",
            *connection_args(cfg.host, cfg.port, cfg.user, cfg.database),
            "--format=plain",
            "--no-owner",
            "--no-acl",
        ]
        logger.info(f"[{cfg.database_name}] Starting dump of {cfg.database}@{cfg.host}:{cfg.port}")
        return run_pg_tool(command, cfg.password, sslmode=cfg.sslmode, timeout=self.deadline.remaining())

    def compress(self, data: bytes) -> bytes:
        try:
            return gzip.compress(data, compresslevel=self.config.compression_level)
        except (OSError, ValueError) as e:
            raise self.BackupError(f"Compression failed: {e}")

    def build_tags(self, timestamp: str) -> ObjectTags:
        return ObjectTags(
            database=self.config.database_name,
            cluster=self.config.cluster_name,
            backup_name=self.config.backup_name,
            namespace=self.config.namespace,
            timestamp=timestamp,
            created_by=CREATED_BY,
        )

    def upload(self, key: str, payload: bytes, tags: ObjectTags) -> None:
        self.storage_client.upload_with_tags(key, payload, tags)

    def perform_backup_pipeline(self) -> BackupResult:
        started = time.monotonic()
        cfg = self.config
        cfg.validate()
        self.deadline = Deadline(cfg.timeout)
        if self.storage_client is None:
            self.storage_client = create_storage_client(cfg.storage)

        now = self.clock()
        fields = TemplateFields.from_moment(now, cfg.cluster_name, cfg.database_name, cfg.run_id)
        key = render_destination(cfg.path_template, cfg.filename_template, fields)

        dump_data = self.dump()
        compressed = self.compress(dump_data)
        ratio = (1 - len(compressed) / len(dump_data)) * 100 if dump_data else 0
        logger.info(
            f"[{cfg.database_name}] Dump complete: {format_bytes(len(dump_data))} -> "
            f"{format_bytes(len(compressed))} ({ratio:.1f}% compression)"
        )

        self.deadline.remaining()
        self.upload(key, compressed, self.build_tags(fields.timestamp))

        result = BackupResult(
            path=key,
            size=len(compressed),
            uncompressed_size=len(dump_data),
            duration=timedelta(seconds=time.monotonic() - started),
        )
        logger.info(
            f"[{cfg.database_name}] Backup stored at {key} "
            f"in {result.duration.total_seconds():.1f}s"
        )
        return result
