"""In-memory storage backend with error injection, used by the test-suite."""

import io
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import BinaryIO, Dict, List, Optional, Set

from pgvault.core.errors import ObjectNotFoundError, StorageError
from pgvault.core.interfaces.storage_client_interface import (
    ObjectTags,
    StorageClient,
    StorageObject,
)


@dataclass
class _StoredObject:
    data: bytes
    tags: Optional[ObjectTags]
    last_modified: Optional[datetime]


class InMemoryStorageClient(StorageClient):
    name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._objects: Dict[str, _StoredObject] = {}

        self.upload_error: Optional[Exception] = None
        # Raised only for tagged uploads, the way a provider rejects PutObjectTagging.
        self.tagging_error: Optional[Exception] = None
        self.download_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self.delete_error_keys: Set[str] = set()
        self.list_error: Optional[Exception] = None
        self.exists_error: Optional[Exception] = None

        self.deleted: List[str] = []
        self.delete_attempts: List[str] = []

    def _put(self, key: str, payload: bytes, tags: Optional[ObjectTags]) -> None:
        if self.upload_error is not None:
            raise self.upload_error
        if tags is not None and self.tagging_error is not None:
            raise self.tagging_error
        with self._lock:
            self._objects[key] = _StoredObject(payload, tags, datetime.now(timezone.utc))

    def download(self, key: str) -> BinaryIO:
        if self.download_error is not None:
            raise self.download_error
        with self._lock:
            obj = self._objects.get(key)
        if obj is None:
            raise ObjectNotFoundError(key)
        return io.BytesIO(obj.data)

    def exists(self, key: str) -> bool:
        if self.exists_error is not None:
            raise self.exists_error
        with self._lock:
            return key in self._objects

    def delete(self, key: str) -> None:
        self.delete_attempts.append(key)
        if self.delete_error is not None:
            raise self.delete_error
        if key in self.delete_error_keys:
            raise StorageError(f"failed to delete {key} from memory")
        with self._lock:
            self._objects.pop(key, None)
        self.deleted.append(key)

    def list(self, prefix: str) -> List[StorageObject]:
        if self.list_error is not None:
            raise self.list_error
        with self._lock:
            return [
                StorageObject(key=key, size=len(obj.data), last_modified=obj.last_modified)
                for key, obj in self._objects.items()
                if key.startswith(prefix)
            ]

    def add_object(
        self, key: str, data: bytes = b"", last_modified: Optional[datetime] = None
    ) -> None:
        with self._lock:
            self._objects[key] = _StoredObject(data, None, last_modified)

    def get_object(self, key: str) -> Optional[bytes]:
        with self._lock:
            obj = self._objects.get(key)
        return obj.data if obj is not None else None

    def get_tags(self, key: str) -> Optional[ObjectTags]:
        with self._lock:
            obj = self._objects.get(key)
        return obj.tags if obj is not None else None

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._objects)

    def count(self) -> int:
        with self._lock:
            return len(self._objects)
