"""Google Cloud Storage backend.

Without a service-account file the client uses Application Default
Credentials, which covers Workload Identity on GKE.
"""

import logging
import tempfile
from datetime import timezone
from typing import BinaryIO, List, Optional

from google.api_core import exceptions as gcs_exceptions

from pgvault.core.config.job_config import GCSConfig
from pgvault.core.errors import ObjectNotFoundError, StorageError
from pgvault.core.interfaces.storage_client_interface import (
    ObjectTags,
    StorageClient,
    StorageObject,
    transient_retry,
)

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (
    gcs_exceptions.ServiceUnavailable,
    gcs_exceptions.InternalServerError,
    gcs_exceptions.TooManyRequests,
)


class GCSStorageClient(StorageClient):
    name = "gcs"

    def __init__(self, config: GCSConfig) -> None:
        from google.cloud import storage

        self.bucket_name = config.bucket
        if config.credentials_file:
            self.client = storage.Client.from_service_account_json(
                config.credentials_file, project=config.project
            )
        elif config.project:
            self.client = storage.Client(project=config.project)
        else:
            self.client = storage.Client()
        self.bucket = self.client.bucket(self.bucket_name)

    def _put(self, key: str, payload: bytes, tags: Optional[ObjectTags]) -> None:
        blob = self.bucket.blob(key)
        if tags is not None:
            blob.metadata = tags.as_dict()
        blob.upload_from_string(payload, content_type="application/gzip")
        logger.info(f"Uploaded to gs://{self.bucket_name}/{key}")

    @transient_retry(*_TRANSIENT_ERRORS)
    def download(self, key: str) -> BinaryIO:
        buffer = tempfile.SpooledTemporaryFile(max_size=64 * 1024 * 1024)
        try:
            self.bucket.blob(key).download_to_file(buffer)
        except gcs_exceptions.NotFound:
            buffer.close()
            raise ObjectNotFoundError(key)
        except gcs_exceptions.GoogleAPICallError as e:
            buffer.close()
            if isinstance(e, _TRANSIENT_ERRORS):
                raise
            raise StorageError(f"failed to download {key} from gcs: {e}")
        buffer.seek(0)
        return buffer

    @transient_retry(*_TRANSIENT_ERRORS)
    def exists(self, key: str) -> bool:
        try:
            return self.bucket.blob(key).exists()
        except gcs_exceptions.GoogleAPICallError as e:
            if isinstance(e, _TRANSIENT_ERRORS):
                raise
            raise StorageError(f"failed to check {key} in gcs: {e}")

    @transient_retry(*_TRANSIENT_ERRORS)
    def delete(self, key: str) -> None:
        try:
            self.bucket.blob(key).delete()
        except gcs_exceptions.NotFound:
            logger.debug(f"gs://{self.bucket_name}/{key} already gone")
        except gcs_exceptions.GoogleAPICallError as e:
            if isinstance(e, _TRANSIENT_ERRORS):
                raise
            raise StorageError(f"failed to delete {key} from gcs: {e}")

    @transient_retry(*_TRANSIENT_ERRORS)
    def list(self, prefix: str) -> List[StorageObject]:
        try:
            return [
                StorageObject(
                    key=blob.name,
                    size=blob.size or 0,
                    last_modified=blob.updated.astimezone(timezone.utc) if blob.updated else None,
                )
                for blob in self.client.list_blobs(self.bucket_name, prefix=prefix or None)
            ]
        except gcs_exceptions.GoogleAPICallError as e:
            if isinstance(e, _TRANSIENT_ERRORS):
                raise
            raise StorageError(f"failed to list gs://{self.bucket_name}/{prefix}: {e}")
