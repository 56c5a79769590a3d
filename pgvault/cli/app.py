import json
import logging
import signal
import sys
from contextlib import contextmanager
from importlib.metadata import PackageNotFoundError, version

import click
import pyfiglet

from pgvault.core.config.job_config import (
    DEFAULT_FILENAME_TEMPLATE,
    DEFAULT_PATH_TEMPLATE,
    DEFAULT_PORT,
    STORAGE_TYPES,
    AzureConfig,
    BackupConfig,
    ConflictPolicy,
    GCSConfig,
    RestoreConfig,
    RetentionJobConfig,
    RetentionPolicy,
    S3Config,
    StorageConfig,
)
from pgvault.core.errors import ConfigurationError, OperationCancelled, PgVaultError
from pgvault.core.helpers.path_template import render_prefix
from pgvault.core.services.postgres_backup_utility import PostgresDatabaseBackupManager, format_bytes
from pgvault.core.services.postgres_restore_utility import PostgresDatabaseRestoreManager
from pgvault.core.services.retention_manager import RetentionManager
from pgvault.core.storage.storage_dispatch import create_storage_client

try:
    __version__ = version("pgvault")
except PackageNotFoundError:
    __version__ = "0.1.0"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
EXIT_CANCELLED = 130


def _banner() -> None:
    art = pyfiglet.figlet_format("pgvault", font="slant")
    click.echo(click.style(art, fg="cyan", bold=True))
    click.echo(
        click.style(
            "  PostgreSQL backup · restore · retention jobs\n",
            fg="bright_white",
        )
    )


def _fail(message: str, code: int = 1) -> None:
    click.echo(click.style(f"  ✗ {message}", fg="red", bold=True))
    sys.exit(code)


@contextmanager
def _job():
    """Run a job body with SIGTERM mapped to cancellation and errors mapped to exit codes."""

    def _on_sigterm(signum, frame):
        raise OperationCancelled("received SIGTERM")

    previous = signal.signal(signal.SIGTERM, _on_sigterm)
    try:
        yield
    except OperationCancelled as exc:
        _fail(f"Cancelled: {exc}", EXIT_CANCELLED)
    except PgVaultError as exc:
        _fail(str(exc))
    except Exception as exc:
        logging.getLogger(__name__).exception("Unexpected failure")
        _fail(f"Unexpected error: {exc}")
    finally:
        signal.signal(signal.SIGTERM, previous)


def _storage_config(
    storage_type, s3_bucket, s3_region, s3_endpoint, aws_access_key_id, aws_secret_access_key,
    gcs_bucket, gcs_project, gcs_credentials,
    azure_container, azure_account, azure_connection_string, azure_account_key,
) -> StorageConfig:
    storage_type = (storage_type or "").lower()
    config = StorageConfig(storage_type=storage_type)
    if storage_type == "s3":
        config.s3 = S3Config(
            bucket=s3_bucket,
            region=s3_region or "",
            endpoint=s3_endpoint,
            access_key=aws_access_key_id,
            secret_key=aws_secret_access_key,
        )
    elif storage_type == "gcs":
        config.gcs = GCSConfig(bucket=gcs_bucket, project=gcs_project, credentials_file=gcs_credentials)
    elif storage_type == "azure":
        config.azure = AzureConfig(
            container=azure_container,
            storage_account=azure_account,
            connection_string=azure_connection_string,
            account_key=azure_account_key,
        )
    return config


STORAGE_OPTIONS = [
    click.option(
        "--storage-type", envvar="STORAGE_TYPE", required=True,
        type=click.Choice(list(STORAGE_TYPES), case_sensitive=False),
        help="Object storage backend.",
    ),
    click.option("--s3-bucket", envvar="S3_BUCKET", default=None, help="S3 bucket name."),
    click.option("--s3-region", envvar="S3_REGION", default=None, help="S3 region."),
    click.option(
        "--s3-endpoint", envvar="S3_ENDPOINT", default=None,
        help="Custom S3-compatible endpoint (MinIO, Ceph, ...).",
    ),
    click.option("--aws-access-key-id", envvar="AWS_ACCESS_KEY_ID", default=None, help="S3 access key."),
    click.option("--aws-secret-access-key", envvar="AWS_SECRET_ACCESS_KEY", default=None, help="S3 secret key."),
    click.option("--gcs-bucket", envvar="GCS_BUCKET", default=None, help="GCS bucket name."),
    click.option("--gcs-project", envvar="GCS_PROJECT", default=None, help="GCS project id."),
    click.option(
        "--gcs-credentials", envvar="GOOGLE_APPLICATION_CREDENTIALS", default=None,
        help="Service account JSON file (defaults to application default credentials).",
    ),
    click.option("--azure-container", envvar="AZURE_CONTAINER", default=None, help="Azure Blob container."),
    click.option("--azure-account", envvar="AZURE_ACCOUNT", default=None, help="Azure storage account name."),
    click.option(
        "--azure-connection-string", envvar="AZURE_STORAGE_CONNECTION_STRING", default=None,
        help="Azure Storage connection string.",
    ),
    click.option("--azure-account-key", envvar="AZURE_STORAGE_KEY", default=None, help="Azure account key."),
]

STORAGE_PARAMS = (
    "storage_type", "s3_bucket", "s3_region", "s3_endpoint", "aws_access_key_id", "aws_secret_access_key",
    "gcs_bucket", "gcs_project", "gcs_credentials",
    "azure_container", "azure_account", "azure_connection_string", "azure_account_key",
)


def storage_options(func):
    for option in reversed(STORAGE_OPTIONS):
        func = option(func)
    return func


def _pop_storage(params: dict) -> StorageConfig:
    return _storage_config(**{name: params.pop(name) for name in STORAGE_PARAMS})


def database_options(func):
    options = [
        click.option("--host", "-H", envvar="DB_HOST", required=True, help="Database host."),
        click.option("--port", envvar="DB_PORT", default=DEFAULT_PORT, show_default=True, type=int, help="Database port."),
        click.option("--database", "-D", envvar="DB_NAME", required=True, help="Database to connect to."),
        click.option("--user", "-u", envvar="DB_USER", required=True, help="Database username."),
        click.option("--password", "-p", envvar="DB_PASSWORD", default=None, help="Database password."),
        click.option("--sslmode", envvar="DB_SSLMODE", default=None, help="libpq sslmode."),
        click.option(
            "--timeout", envvar="JOB_TIMEOUT", default=None, type=float,
            help="Job deadline in seconds, shared by every step; a running pg_dump/psql is killed when it expires.",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group(invoke_without_command=True, context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "-V", "--version", prog_name="pgvault")
@click.option(
    "--log-level", envvar="LOG_LEVEL", default="INFO", show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str) -> None:
    """pgvault: PostgreSQL backup, restore and retention jobs."""
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    if ctx.invoked_subcommand is None:
        _banner()
        click.echo(ctx.get_help())


# ── backup ────────────────────────────────────────────────────────────────────

@cli.command()
@database_options
@storage_options
@click.option("--cluster-name", envvar="CLUSTER_NAME", required=True, help="Logical cluster name.")
@click.option(
    "--database-name", envvar="DATABASE_NAME", default=None,
    help="Logical database name used in keys and tags (defaults to --database).",
)
@click.option("--run-id", envvar="RUN_ID", required=True, help="Unique id of this backup run.")
@click.option("--backup-name", envvar="BACKUP_NAME", default="", help="Owning backup resource name.")
@click.option("--namespace", envvar="BACKUP_NAMESPACE", default="", help="Owning backup resource namespace.")
@click.option(
    "--path-template", envvar="PATH_TEMPLATE", default=DEFAULT_PATH_TEMPLATE, show_default=True,
    help="Directory part of the destination key.",
)
@click.option(
    "--filename-template", envvar="FILENAME_TEMPLATE", default=DEFAULT_FILENAME_TEMPLATE, show_default=True,
    help="File part of the destination key.",
)
@click.option(
    "--compression-level", envvar="COMPRESSION_LEVEL", default=9, show_default=True,
    type=click.IntRange(0, 9), help="gzip compression level.",
)
@click.option(
    "--result-file", default=None, type=click.Path(dir_okay=False, writable=True),
    help="Write the backup result as JSON to this file.",
)
def backup(**params) -> None:
    """Dump → compress → tag → upload a database."""
    _banner()
    result_file = params.pop("result_file")
    storage = _pop_storage(params)
    params["database_name"] = params["database_name"] or params["database"]
    config = BackupConfig(storage=storage, **params)

    click.echo(
        click.style(f"  [{config.database_name}] ", fg="cyan", bold=True)
        + click.style(f"Backing up '{config.database}' …", fg="bright_white")
    )
    with _job():
        result = PostgresDatabaseBackupManager(config).perform_backup_pipeline()
        click.echo(click.style("  ✓ Backup complete!", fg="green", bold=True))
        click.echo(click.style(f"  → {result.path} ({format_bytes(result.size)})", fg="bright_white"))
        if result_file:
            payload = {
                "path": result.path,
                "size": result.size,
                "uncompressed_size": result.uncompressed_size,
                "duration_seconds": result.duration.total_seconds(),
            }
            with open(result_file, "w") as fh:
                json.dump(payload, fh, indent=2)


# ── restore ───────────────────────────────────────────────────────────────────

@cli.command()
@database_options
@storage_options
@click.option("--source-path", envvar="SOURCE_PATH", required=True, help="Key of the backup to restore.")
@click.option(
    "--on-conflict", envvar="ON_CONFLICT", default=ConflictPolicy.FAIL.value, show_default=True,
    type=click.Choice([p.value for p in ConflictPolicy], case_sensitive=False),
    help="What to do when the target database already has data.",
)
def restore(**params) -> None:
    """Download a backup and replay it with psql."""
    _banner()
    storage = _pop_storage(params)
    if params["sslmode"] is None:
        params.pop("sslmode")
    params["on_conflict"] = ConflictPolicy(params["on_conflict"].lower())
    config = RestoreConfig(storage=storage, **params)

    click.echo(
        click.style(f"  [{config.database}] ", fg="cyan", bold=True)
        + click.style(f"Restoring '{config.source_path}' …", fg="bright_white")
    )
    with _job():
        PostgresDatabaseRestoreManager(config).perform_restore_pipeline()
        click.echo(click.style("  ✓ Restore complete!", fg="green", bold=True))


# ── retention ─────────────────────────────────────────────────────────────────

@cli.command()
@storage_options
@click.option("--prefix", envvar="RETENTION_PREFIX", default=None, help="Key prefix to prune.")
@click.option(
    "--path-template", envvar="PATH_TEMPLATE", default=DEFAULT_PATH_TEMPLATE, show_default=True,
    help="Used with --cluster-name/--database-name when --prefix is not given.",
)
@click.option("--cluster-name", envvar="CLUSTER_NAME", default=None, help="Logical cluster name.")
@click.option("--database-name", envvar="DATABASE_NAME", default=None, help="Logical database name.")
@click.option("--keep-last", envvar="KEEP_LAST", default=None, type=int, help="Keep the N newest backups.")
@click.option("--keep-daily", envvar="KEEP_DAILY", default=None, type=int, help="Keep one backup per day for N days.")
@click.option("--keep-weekly", envvar="KEEP_WEEKLY", default=None, type=int, help="Keep one backup per week for N weeks.")
@click.option("--keep-monthly", envvar="KEEP_MONTHLY", default=None, type=int, help="Keep one backup per month for N months.")
@click.option("--dry-run", is_flag=True, help="Only report what would be deleted.")
def retention(
    prefix, path_template, cluster_name, database_name,
    keep_last, keep_daily, keep_weekly, keep_monthly, dry_run, **storage_params,
) -> None:
    """Prune stored backups according to a retention policy."""
    _banner()
    policy = RetentionPolicy(
        keep_last=keep_last, keep_daily=keep_daily, keep_weekly=keep_weekly, keep_monthly=keep_monthly
    )
    with _job():
        if prefix is None:
            if not cluster_name or not database_name:
                raise ConfigurationError("--prefix or both --cluster-name and --database-name required")
            prefix = render_prefix(path_template, cluster_name, database_name)
        config = RetentionJobConfig(storage=_pop_storage(storage_params), prefix=prefix, policy=policy)
        config.validate()

        manager = RetentionManager(create_storage_client(config.storage))
        result = manager.enforce(config.prefix, config.policy, dry_run=dry_run)

        verb = "Would delete" if dry_run else "Deleted"
        click.echo(click.style(f"  ✓ Kept {len(result.kept)} backup(s) under '{prefix}'", fg="green", bold=True))
        click.echo(click.style(f"  → {verb} {len(result.deleted)} backup(s)", fg="bright_white"))
        for key in result.deleted:
            click.echo(f"    - {key}")
        if result.failed:
            click.echo(click.style(f"  ⚠  {len(result.failed)} deletion(s) failed", fg="yellow"))


def main() -> None:
    cli()
