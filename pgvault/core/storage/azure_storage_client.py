"""Azure Blob Storage backend."""

import logging
import tempfile
from datetime import timezone
from typing import BinaryIO, Dict, List, Optional

from azure.core.exceptions import (
    AzureError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.storage.blob import BlobServiceClient, ContentSettings

from pgvault.core.config.job_config import AzureConfig
from pgvault.core.errors import ObjectNotFoundError, StorageError
from pgvault.core.interfaces.storage_client_interface import (
    ACCESS_DENIED_MARKERS,
    ObjectTags,
    StorageClient,
    StorageObject,
    transient_retry,
)

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (ServiceRequestError, ServiceResponseError)


def azure_metadata(tags: ObjectTags) -> Dict[str, str]:
    # Metadata names must be valid C# identifiers, so no hyphens.
    return {key.replace("-", ""): value for key, value in tags.as_dict().items()}


class AzureStorageClient(StorageClient):
    name = "azure"
    access_denied_markers = ACCESS_DENIED_MARKERS + ("AuthorizationPermissionMismatch",)

    def __init__(self, config: AzureConfig) -> None:
        self.container = config.container
        if config.connection_string:
            service = BlobServiceClient.from_connection_string(config.connection_string)
        else:
            account_url = f"https://{config.storage_account}.blob.core.windows.net"
            if config.account_key:
                credential = config.account_key
            else:
                # Environment credentials, workload/managed identity, then Azure CLI.
                from azure.identity import DefaultAzureCredential

                credential = DefaultAzureCredential()
            service = BlobServiceClient(account_url=account_url, credential=credential)
        self.container_client = service.get_container_client(self.container)

    def _put(self, key: str, payload: bytes, tags: Optional[ObjectTags]) -> None:
        self.container_client.upload_blob(
            name=key,
            data=payload,
            overwrite=True,
            metadata=azure_metadata(tags) if tags is not None else None,
            content_settings=ContentSettings(content_type="application/gzip"),
        )
        logger.info(f"Uploaded to azure://{self.container}/{key}")

    @transient_retry(*_TRANSIENT_ERRORS)
    def download(self, key: str) -> BinaryIO:
        buffer = tempfile.SpooledTemporaryFile(max_size=64 * 1024 * 1024)
        try:
            self.container_client.download_blob(key).readinto(buffer)
        except ResourceNotFoundError:
            buffer.close()
            raise ObjectNotFoundError(key)
        except _TRANSIENT_ERRORS:
            buffer.close()
            raise
        except AzureError as e:
            buffer.close()
            raise StorageError(f"failed to download {key} from azure: {e}")
        buffer.seek(0)
        return buffer

    @transient_retry(*_TRANSIENT_ERRORS)
    def exists(self, key: str) -> bool:
        try:
            return self.container_client.get_blob_client(key).exists()
        except _TRANSIENT_ERRORS:
            raise
        except AzureError as e:
            raise StorageError(f"failed to check {key} in azure: {e}")

    @transient_retry(*_TRANSIENT_ERRORS)
    def delete(self, key: str) -> None:
        try:
            self.container_client.delete_blob(key)
        except ResourceNotFoundError:
            logger.debug(f"azure://{self.container}/{key} already gone")
        except _TRANSIENT_ERRORS:
            raise
        except AzureError as e:
            raise StorageError(f"failed to delete {key} from azure: {e}")

    @transient_retry(*_TRANSIENT_ERRORS)
    def list(self, prefix: str) -> List[StorageObject]:
        objects: List[StorageObject] = []
        try:
            for blob in self.container_client.list_blobs(name_starts_with=prefix or None):
                modified = blob.last_modified
                objects.append(
                    StorageObject(
                        key=blob.name,
                        size=blob.size or 0,
                        last_modified=modified.astimezone(timezone.utc) if modified else None,
                    )
                )
        except _TRANSIENT_ERRORS:
            raise
        except AzureError as e:
            raise StorageError(f"failed to list azure://{self.container}/{prefix}: {e}")
        return objects
