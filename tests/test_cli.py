import json
from datetime import timedelta
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from pgvault.cli.app import cli
from pgvault.core.errors import OperationCancelled, PgToolError
from pgvault.core.interfaces.backup_utility_interface import BackupResult

DB_ENV = {
    "DB_HOST": "db.internal",
    "DB_NAME": "app",
    "DB_USER": "backup",
    "DB_PASSWORD": "s3cret",
    "STORAGE_TYPE": "s3",
    "S3_BUCKET": "backups",
}

BACKUP_ENV = dict(DB_ENV, CLUSTER_NAME="prod", DATABASE_NAME="app", RUN_ID="run-42")


@pytest.fixture
def runner():
    return CliRunner()


class TestHelp:
    def test_no_subcommand_shows_help(self, runner):
        result = runner.invoke(cli, [])
        assert result.exit_code == 0
        assert "backup" in result.output
        assert "restore" in result.output
        assert "retention" in result.output

    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "pgvault" in result.output.lower()

    def test_backup_help(self, runner):
        result = runner.invoke(cli, ["backup", "--help"])
        assert result.exit_code == 0
        assert "--path-template" in result.output
        assert "--result-file" in result.output


class TestBackupCommand:
    def test_builds_config_from_environment(self, runner, tmp_path):
        result_file = tmp_path / "result.json"
        backup_result = BackupResult(
            path="prod/app/20260120-120000.sql.gz",
            size=1024,
            uncompressed_size=4096,
            duration=timedelta(seconds=2.5),
        )
        with patch("pgvault.cli.app.PostgresDatabaseBackupManager") as mock_cls:
            mock_cls.return_value.perform_backup_pipeline.return_value = backup_result
            result = runner.invoke(cli, ["backup", "--result-file", str(result_file)], env=BACKUP_ENV)

        assert result.exit_code == 0, result.output
        config = mock_cls.call_args.args[0]
        assert config.host == "db.internal"
        assert config.cluster_name == "prod"
        assert config.storage.s3.bucket == "backups"
        assert "Backup complete" in result.output
        assert json.loads(result_file.read_text()) == {
            "path": "prod/app/20260120-120000.sql.gz",
            "size": 1024,
            "uncompressed_size": 4096,
            "duration_seconds": 2.5,
        }

    def test_database_name_defaults_to_database(self, runner):
        env = dict(BACKUP_ENV)
        env.pop("DATABASE_NAME")
        with patch("pgvault.cli.app.PostgresDatabaseBackupManager") as mock_cls:
            mock_cls.return_value.perform_backup_pipeline.return_value = BackupResult("k", 1, 1, timedelta())
            runner.invoke(cli, ["backup"], env=env)
        assert mock_cls.call_args.args[0].database_name == "app"

    def test_failure_exits_one(self, runner):
        with patch("pgvault.cli.app.PostgresDatabaseBackupManager") as mock_cls:
            mock_cls.return_value.perform_backup_pipeline.side_effect = PgToolError(
                "pg_dump", 1, "connection refused"
            )
            result = runner.invoke(cli, ["backup"], env=BACKUP_ENV)
        assert result.exit_code == 1
        assert "connection refused" in result.output

    def test_cancellation_exits_130(self, runner):
        with patch("pgvault.cli.app.PostgresDatabaseBackupManager") as mock_cls:
            mock_cls.return_value.perform_backup_pipeline.side_effect = OperationCancelled("received SIGTERM")
            result = runner.invoke(cli, ["backup"], env=BACKUP_ENV)
        assert result.exit_code == 130
        assert "Cancelled" in result.output

    def test_unsupported_storage_type_is_usage_error(self, runner):
        result = runner.invoke(cli, ["backup"], env=dict(BACKUP_ENV, STORAGE_TYPE="ftp"))
        assert result.exit_code == 2


class TestRestoreCommand:
    def test_passes_conflict_policy(self, runner):
        env = dict(DB_ENV, SOURCE_PATH="prod/app/20260120-120000.sql.gz", ON_CONFLICT="drop")
        with patch("pgvault.cli.app.PostgresDatabaseRestoreManager") as mock_cls:
            result = runner.invoke(cli, ["restore"], env=env)
        assert result.exit_code == 0, result.output
        config = mock_cls.call_args.args[0]
        assert config.on_conflict.value == "drop"
        assert config.sslmode == "prefer"
        mock_cls.return_value.perform_restore_pipeline.assert_called_once()

    def test_invalid_policy(self, runner):
        env = dict(DB_ENV, SOURCE_PATH="k", ON_CONFLICT="merge")
        result = runner.invoke(cli, ["restore"], env=env)
        assert result.exit_code == 2


class TestRetentionCommand:
    @pytest.fixture
    def storage(self, memory_storage):
        for day in range(15, 21):
            memory_storage.add_object(f"prod/app/202601{day}-020000.sql.gz", b"x")
        with patch("pgvault.cli.app.create_storage_client", return_value=memory_storage):
            yield memory_storage

    def test_prefix_rendered_from_names(self, runner, storage):
        env = {"STORAGE_TYPE": "s3", "S3_BUCKET": "b", "CLUSTER_NAME": "prod", "DATABASE_NAME": "app", "KEEP_LAST": "2"}
        result = runner.invoke(cli, ["retention"], env=env)
        assert result.exit_code == 0, result.output
        assert storage.count() == 2
        assert "Deleted 4 backup(s)" in result.output

    def test_dry_run_keeps_everything(self, runner, storage):
        result = runner.invoke(
            cli, ["retention", "--storage-type", "s3", "--s3-bucket", "b", "--prefix", "prod/app/",
                  "--keep-last", "1", "--dry-run"],
        )
        assert result.exit_code == 0, result.output
        assert storage.count() == 6
        assert "Would delete 5 backup(s)" in result.output

    def test_prefix_or_names_required(self, runner, storage):
        result = runner.invoke(cli, ["retention", "--storage-type", "s3", "--s3-bucket", "b", "--keep-last", "1"])
        assert result.exit_code == 1
        assert "--prefix" in result.output
