import functools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Tuple, Type, TypeVar, Union

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from pgvault.core.errors import PgVaultError, StorageError

logger = logging.getLogger(__name__)

ACCESS_DENIED_MARKERS: Tuple[str, ...] = ("AccessDenied", "403")

Payload = Union[bytes, BinaryIO]
F = TypeVar("F", bound=Callable[..., Any])


@dataclass(frozen=True)
class StorageObject:
    key: str
    size: int
    last_modified: Optional[datetime] = None


@dataclass(frozen=True)
class ObjectTags:
    database: str = ""
    cluster: str = ""
    backup_name: str = ""
    namespace: str = ""
    timestamp: str = ""
    created_by: str = ""

    def as_dict(self) -> Dict[str, str]:
        return {
            "database": self.database,
            "cluster": self.cluster,
            "backup-name": self.backup_name,
            "namespace": self.namespace,
            "timestamp": self.timestamp,
            "created-by": self.created_by,
        }


def transient_retry(*exception_types: Type[BaseException]) -> Callable[[F], F]:
    """Retry an idempotent storage call on the given transport errors.

    Once the attempts are exhausted the last error surfaces as a StorageError.
    """

    def decorator(func: F) -> F:
        retrying = retry(
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=2, min=2, max=10),
            retry=retry_if_exception_type(exception_types),
            reraise=True,
        )(func)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return retrying(*args, **kwargs)
            except exception_types as e:
                raise StorageError(f"{func.__name__} failed after retries: {e}")

        return wrapper  # type: ignore[return-value]

    return decorator


def read_payload(stream: Payload) -> bytes:
    if isinstance(stream, (bytes, bytearray)):
        return bytes(stream)
    return stream.read()


class StorageClient(ABC):
    """Uniform object-store contract shared by every backend.

    Subclasses implement the raw provider calls; tag fallback on
    access-denied errors is handled here so all backends behave the same.
    """

    name = "storage"
    access_denied_markers: Tuple[str, ...] = ACCESS_DENIED_MARKERS

    def upload(self, key: str, stream: Payload) -> None:
        self.upload_with_tags(key, stream, None)

    def upload_with_tags(self, key: str, stream: Payload, tags: Optional[ObjectTags]) -> None:
        payload = read_payload(stream)
        try:
            self._put(key, payload, tags)
        except PgVaultError:
            raise
        except Exception as e:
            if tags is None or not self.is_access_denied(e):
                raise StorageError(f"failed to upload {key} to {self.name}: {e}")
            logger.warning(
                f"{self.name} tagging permission denied for {key}, "
                f"uploading without tags (tagging disabled)"
            )
            try:
                self._put(key, payload, None)
            except PgVaultError:
                raise
            except Exception as retry_error:
                raise StorageError(f"failed to upload {key} to {self.name}: {retry_error}")

    def is_access_denied(self, error: Exception) -> bool:
        message = str(error)
        return any(marker in message for marker in self.access_denied_markers)

    @abstractmethod
    def _put(self, key: str, payload: bytes, tags: Optional[ObjectTags]) -> None:
        pass

    @abstractmethod
    def download(self, key: str) -> BinaryIO:
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def list(self, prefix: str) -> List[StorageObject]:
        pass
