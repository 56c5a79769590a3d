import gzip
import logging
from typing import BinaryIO, Optional

from pgvault.core.config.job_config import ConflictPolicy, RestoreConfig
from pgvault.core.errors import ConflictPolicyError, PgToolError, PgVaultError
from pgvault.core.helpers.pg_tools import (
    Deadline,
    connection_args,
    quote_identifier,
    quote_literal,
    run_pg_tool,
    stream_into_pg_tool,
)
from pgvault.core.interfaces.backup_utility_interface import DatabaseRestoreManager
from pgvault.core.interfaces.storage_client_interface import StorageClient
from pgvault.core.storage.storage_dispatch import create_storage_client

logger = logging.getLogger(__name__)

GZIP_SUFFIX = ".gz"

COUNT_TABLES_SQL = (
    "SELECT COUNT(*) FROM information_schema.tables WHERE table_schema = 'public'"
)


class PostgresDatabaseRestoreManager(DatabaseRestoreManager):
    """Replays a plain-format dump into the target database.

    The conflict policy decides what happens to existing data first:
    ``fail`` refuses a non-empty database, ``drop`` recreates it and
    ``overwrite`` restores on top of whatever is there.
    """

    class RestoreError(PgVaultError):
        pass

    def __init__(self, config: RestoreConfig, storage_client: Optional[StorageClient] = None) -> None:
        self.config = config
        self.storage_client = storage_client
        self.deadline = Deadline(config.timeout)

    def _psql(self, database: str, sql: str, tuples_only: bool = False) -> bytes:
        cfg = self.config
        command = ["psql", *connection_args(cfg.host, cfg.port, cfg.user, database), "--no-psqlrc"]
        if tuples_only:
            command += ["--tuples-only", "--no-align"]
        command += ["--command", sql]
        return run_pg_tool(command, cfg.password, sslmode=cfg.sslmode, timeout=self.deadline.remaining())

    def download(self) -> BinaryIO:
        logger.info(
            f"[{self.config.database}] Downloading {self.config.source_path} "
            f"from {self.config.storage.storage_type}"
        )
        return self.storage_client.download(self.config.source_path)

    def count_tables(self) -> int:
        output = self._psql(self.config.database, COUNT_TABLES_SQL, tuples_only=True)
        text = output.decode(errors="replace").strip()
        try:
            return int(text)
        except ValueError:
            raise self.RestoreError(f"unexpected table count output: {text!r}")

    def _fail_if_not_empty(self) -> None:
        tables = self.count_tables()
        if tables:
            raise ConflictPolicyError(
                f"database {self.config.database} is not empty ({tables} tables) and onConflict=fail"
            )

    def _terminate_connections(self) -> None:
        cfg = self.config
        sql = (
            "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
            f"WHERE datname = {quote_literal(cfg.database)} AND pid <> pg_backend_pid()"
        )
        try:
            self._psql(cfg.maintenance_database, sql)
        except PgToolError as e:
            logger.warning(f"[{cfg.database}] Failed to terminate connections: {e}")

    def _drop_and_recreate(self) -> None:
        cfg = self.config
        logger.info(f"[{cfg.database}] Dropping and recreating database")
        self._terminate_connections()

        name = quote_identifier(cfg.database)
        try:
            self._psql(cfg.maintenance_database, f"DROP DATABASE IF EXISTS {name}")
        except PgToolError as e:
            raise self.RestoreError(f"failed to drop database {cfg.database}: {e}")
        try:
            self._psql(cfg.maintenance_database, f"CREATE DATABASE {name}")
        except PgToolError as e:
            raise self.RestoreError(f"failed to create database {cfg.database}: {e}")
        logger.info(f"[{cfg.database}] Database recreated")

    def resolve_conflict(self) -> None:
        policy = ConflictPolicy(self.config.on_conflict)
        if policy is ConflictPolicy.FAIL:
            self._fail_if_not_empty()
        elif policy is ConflictPolicy.DROP:
            self._drop_and_recreate()
        else:
            logger.info(f"[{self.config.database}] onConflict=overwrite, restoring over existing data")

    def restore(self, stream: BinaryIO) -> None:
        cfg = self.config
        source: BinaryIO = stream
        # Name-based: a .gz key is always treated as gzip, anything else as plain SQL.
        if cfg.source_path.endswith(GZIP_SUFFIX):
            source = gzip.GzipFile(fileobj=stream, mode="rb")

        command = ["psql", *connection_args(cfg.host, cfg.port, cfg.user, cfg.database), "--no-psqlrc"]
        logger.info(f"[{cfg.database}] Restoring with psql")
        try:
            stream_into_pg_tool(
                command, source, cfg.password, sslmode=cfg.sslmode, timeout=self.deadline.remaining()
            )
        except (OSError, EOFError) as e:
            raise self.RestoreError(f"failed to read backup {cfg.source_path}: {e}")
        finally:
            if source is not stream:
                source.close()

    def perform_restore_pipeline(self) -> None:
        cfg = self.config
        cfg.validate()
        self.deadline = Deadline(cfg.timeout)
        if self.storage_client is None:
            self.storage_client = create_storage_client(cfg.storage)

        logger.info(
            f"[{cfg.database}] Starting restore from {cfg.source_path} "
            f"(onConflict={ConflictPolicy(cfg.on_conflict).value})"
        )
        # Fetch before touching the database so a missing artifact never costs a drop.
        stream = self.download()
        try:
            self.deadline.remaining()
            self.resolve_conflict()
            self.restore(stream)
        finally:
            stream.close()
        logger.info(f"[{cfg.database}] Restore completed successfully")
