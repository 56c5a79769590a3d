from pgvault.core.config.job_config import StorageConfig
from pgvault.core.errors import ConfigurationError
from pgvault.core.interfaces.storage_client_interface import StorageClient


def create_storage_client(config: StorageConfig) -> StorageClient:
    """Route to the configured backend. Used by every runner."""
    config.validate()
    provider = config.storage_type.lower()

    if provider == "s3":
        from pgvault.core.storage.s3_storage_client import S3StorageClient

        return S3StorageClient(config.s3)

    elif provider == "gcs":
        from pgvault.core.storage.gcs_storage_client import GCSStorageClient

        return GCSStorageClient(config.gcs)

    elif provider == "azure":
        from pgvault.core.storage.azure_storage_client import AzureStorageClient

        return AzureStorageClient(config.azure)

    raise ConfigurationError(
        f"Unsupported storage type: '{config.storage_type}'. Use 's3', 'gcs' or 'azure'."
    )
