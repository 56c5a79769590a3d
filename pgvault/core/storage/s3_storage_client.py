"""S3-compatible storage backend (AWS, MinIO, Wasabi)."""

import logging
from datetime import timezone
from typing import BinaryIO, List, Optional
from urllib.parse import urlencode

import boto3
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from pgvault.core.config.job_config import S3Config
from pgvault.core.errors import ObjectNotFoundError, StorageError
from pgvault.core.interfaces.storage_client_interface import (
    ObjectTags,
    StorageClient,
    StorageObject,
    transient_retry,
)

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError)
_NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound")


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class S3StorageClient(StorageClient):
    name = "s3"

    def __init__(self, config: S3Config) -> None:
        self.bucket = config.bucket
        client_kwargs = {"region_name": config.region or None}

        # Explicit keys win; otherwise boto3 walks its default chain (IRSA, pod identity, env).
        if config.access_key and config.secret_key:
            client_kwargs["aws_access_key_id"] = config.access_key
            client_kwargs["aws_secret_access_key"] = config.secret_key

        if config.endpoint:
            client_kwargs["endpoint_url"] = config.endpoint
            client_kwargs["config"] = Config(s3={"addressing_style": "path"})

        self.client = boto3.client("s3", **client_kwargs)

    def _put(self, key: str, payload: bytes, tags: Optional[ObjectTags]) -> None:
        params = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": payload,
            "ContentType": "application/gzip",
        }
        if tags is not None:
            params["Tagging"] = urlencode(tags.as_dict())
        self.client.put_object(**params)
        logger.info(f"Uploaded to s3://{self.bucket}/{key}")

    @transient_retry(*_TRANSIENT_ERRORS)
    def download(self, key: str) -> BinaryIO:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(key)
            raise StorageError(f"failed to download {key} from s3: {e}")
        return response["Body"]

    @transient_retry(*_TRANSIENT_ERRORS)
    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return False
            raise StorageError(f"failed to check {key} in s3: {e}")
        return True

    @transient_retry(*_TRANSIENT_ERRORS)
    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            raise StorageError(f"failed to delete {key} from s3: {e}")

    @transient_retry(*_TRANSIENT_ERRORS)
    def list(self, prefix: str) -> List[StorageObject]:
        objects: List[StorageObject] = []
        paginator = self.client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    modified = obj.get("LastModified")
                    objects.append(
                        StorageObject(
                            key=obj["Key"],
                            size=obj.get("Size", 0),
                            last_modified=modified.astimezone(timezone.utc) if modified else None,
                        )
                    )
        except ClientError as e:
            raise StorageError(f"failed to list s3://{self.bucket}/{prefix}: {e}")
        return objects
