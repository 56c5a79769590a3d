import gzip
from unittest.mock import patch

import pytest

from pgvault.core.errors import (
    ConfigurationError,
    OperationCancelled,
    PgToolError,
    StorageError,
    TemplateError,
)
from pgvault.core.helpers.pg_tools import Deadline
from pgvault.core.interfaces.storage_client_interface import ObjectTags
from pgvault.core.services.postgres_backup_utility import (
    PostgresDatabaseBackupManager,
    format_bytes,
)
from pgvault.core.services.retention_manager import parse_timestamp_from_key

DUMP = b"CREATE TABLE users (id integer);\n" * 100


@pytest.fixture
def manager(backup_config, memory_storage, now):
    return PostgresDatabaseBackupManager(backup_config, storage_client=memory_storage, clock=lambda: now)


@pytest.fixture
def pg_dump():
    with patch(
        "pgvault.core.services.postgres_backup_utility.run_pg_tool", return_value=DUMP
    ) as mock_run:
        yield mock_run


class TestFormatBytes:
    @pytest.mark.parametrize(
        "size, expected",
        [(0, "0 B"), (1023, "1023 B"), (1536, "1.5 KiB"), (1572864, "1.5 MiB"), (3 * 1024 ** 3, "3.0 GiB")],
    )
    def test_binary_units(self, size, expected):
        assert format_bytes(size) == expected


class TestDump:
    def test_pg_dump_arguments(self, manager, pg_dump):
        manager.dump()
        command = pg_dump.call_args.args[0]
        assert command[0] == "pg_dump"
        assert command[command.index("--dbname") + 1] == "app"
        assert command[command.index("--host") + 1] == "db.internal"
        assert {"--format=plain", "--no-owner", "--no-acl"} <= set(command)
        assert "s3cret" not in command
        assert pg_dump.call_args.args[1] == "s3cret"


class TestPerformBackupPipeline:
    def test_uploads_compressed_dump(self, manager, memory_storage, pg_dump):
        result = manager.perform_backup_pipeline()
        assert result.path == "prod/app/20260120-120000.sql.gz"
        assert gzip.decompress(memory_storage.get_object(result.path)) == DUMP
        assert result.uncompressed_size == len(DUMP)
        assert result.size == len(memory_storage.get_object(result.path))
        assert result.compression_ratio < 1
        assert result.duration.total_seconds() >= 0

    def test_object_is_tagged(self, manager, memory_storage, pg_dump):
        result = manager.perform_backup_pipeline()
        assert memory_storage.get_tags(result.path) == ObjectTags(
            database="app",
            cluster="prod",
            backup_name="nightly",
            namespace="databases",
            timestamp="20260120-120000",
            created_by="pgvault",
        )

    def test_key_timestamp_round_trips(self, manager, pg_dump, now):
        result = manager.perform_backup_pipeline()
        assert parse_timestamp_from_key(result.path) == now

    def test_tagging_denied_still_uploads(self, manager, memory_storage, pg_dump, caplog):
        memory_storage.tagging_error = Exception("AccessDenied: s3:PutObjectTagging")
        result = manager.perform_backup_pipeline()
        assert memory_storage.exists(result.path)
        assert memory_storage.get_tags(result.path) is None
        assert "tagging disabled" in caplog.text

    def test_upload_failure_raises(self, manager, memory_storage, pg_dump):
        memory_storage.upload_error = Exception("connection reset")
        with pytest.raises(StorageError):
            manager.perform_backup_pipeline()

    def test_dump_failure_uploads_nothing(self, manager, memory_storage):
        with patch(
            "pgvault.core.services.postgres_backup_utility.run_pg_tool",
            side_effect=PgToolError("pg_dump", 1, "FATAL: password authentication failed"),
        ):
            with pytest.raises(PgToolError, match="password authentication failed"):
                manager.perform_backup_pipeline()
        assert memory_storage.count() == 0

    def test_slow_dump_spends_the_upload_budget(self, backup_config, memory_storage, now):
        backup_config.timeout = 30
        clock = {"now": 0.0}

        def slow_dump(*args, **kwargs):
            clock["now"] += 31
            return DUMP

        manager = PostgresDatabaseBackupManager(backup_config, memory_storage, clock=lambda: now)
        with patch(
            "pgvault.core.services.postgres_backup_utility.Deadline",
            lambda timeout: Deadline(timeout, clock=lambda: clock["now"]),
        ), patch(
            "pgvault.core.services.postgres_backup_utility.run_pg_tool", side_effect=slow_dump
        ) as mock_run:
            with pytest.raises(OperationCancelled, match="30s deadline"):
                manager.perform_backup_pipeline()
        assert mock_run.call_args.kwargs["timeout"] == 30.0
        assert memory_storage.count() == 0

    def test_bad_template_fails_before_dump(self, backup_config, memory_storage, pg_dump, now):
        backup_config.path_template = "{cluster}/{namespace}"
        manager = PostgresDatabaseBackupManager(backup_config, memory_storage, clock=lambda: now)
        with pytest.raises(TemplateError):
            manager.perform_backup_pipeline()
        pg_dump.assert_not_called()

    def test_missing_password_rejected(self, backup_config, memory_storage, pg_dump):
        backup_config.password = ""
        manager = PostgresDatabaseBackupManager(backup_config, memory_storage)
        with pytest.raises(ConfigurationError, match="password"):
            manager.perform_backup_pipeline()
        pg_dump.assert_not_called()

    def test_custom_templates(self, backup_config, memory_storage, pg_dump, now):
        backup_config.path_template = "{cluster}/{year}/{month}"
        backup_config.filename_template = "{database}-{run_id}-{timestamp}.sql.gz"
        manager = PostgresDatabaseBackupManager(backup_config, memory_storage, clock=lambda: now)
        result = manager.perform_backup_pipeline()
        assert result.path == "prod/2026/01/app-run-42-20260120-120000.sql.gz"


class TestCompress:
    def test_honours_compression_level(self, backup_config, memory_storage):
        backup_config.compression_level = 0
        manager = PostgresDatabaseBackupManager(backup_config, memory_storage)
        assert len(manager.compress(DUMP)) > len(DUMP)
