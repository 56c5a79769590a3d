from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import BinaryIO, Optional

from pgvault.core.interfaces.storage_client_interface import ObjectTags


@dataclass(frozen=True)
class BackupResult:
    path: str
    size: int
    uncompressed_size: int
    duration: timedelta

    @property
    def compression_ratio(self) -> Optional[float]:
        if not self.uncompressed_size:
            return None
        return self.size / self.uncompressed_size


class DatabaseBackupManager(ABC):

    @abstractmethod
    def dump(self) -> bytes:
        pass

    @abstractmethod
    def compress(self, data: bytes) -> bytes:
        pass

    @abstractmethod
    def upload(self, key: str, payload: bytes, tags: ObjectTags) -> None:
        pass

    @abstractmethod
    def perform_backup_pipeline(self) -> BackupResult:
        pass


class DatabaseRestoreManager(ABC):

    @abstractmethod
    def download(self) -> BinaryIO:
        pass

    @abstractmethod
    def resolve_conflict(self) -> None:
        pass

    @abstractmethod
    def restore(self, stream: BinaryIO) -> None:
        pass

    @abstractmethod
    def perform_restore_pipeline(self) -> None:
        pass
