from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import BinaryIO

from app.core.errors import OperationNotSupportedError

UNKNOWN_SIZE = -1


@dataclass(slots=True)
class StoredObject:
    path: str
    size: int
    modified_at: datetime | None = None
    is_dir: bool = False
    content_type: str | None = None
    etag: str | None = None


@dataclass(slots=True)
class ObjectMetadata:
    path: str
    size: int
    modified_at: datetime | None = None
    content_type: str | None = None
    etag: str | None = None
    checksum: str | None = None
    extra: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class PresignedURL:
    url: str
    method: str = "PUT"
    headers: dict[str, str] = field(default_factory=dict)
    fields: dict[str, str] = field(default_factory=dict)
    expires_at: datetime | None = None


class StorageBackend(ABC):
    """Byte storage contract shared by every backend variant.

    All operations block; async callers must dispatch them to a worker thread.
    Missing objects raise ``ObjectNotFoundError`` and capability gaps raise
    ``OperationNotSupportedError`` so callers can tell both apart from
    transient ``StorageError`` failures.
    """

    name: str = "abstract"

    @abstractmethod
    def upload(self, path: str, stream: BinaryIO, size: int, content_type: str | None) -> None: ...

    @abstractmethod
    def upload_bytes(self, path: str, data: bytes, content_type: str | None) -> None: ...

    @abstractmethod
    def download(self, path: str) -> BinaryIO: ...

    @abstractmethod
    def delete(self, path: str) -> None: ...

    @abstractmethod
    def exists(self, path: str) -> bool: ...

    @abstractmethod
    def get_size(self, path: str) -> int: ...

    @abstractmethod
    def copy(self, src: str, dst: str) -> None: ...

    @abstractmethod
    def move(self, src: str, dst: str) -> None: ...

    @abstractmethod
    def list(self, prefix: str, recursive: bool = True) -> list[StoredObject]: ...

    @abstractmethod
    def get_metadata(self, path: str) -> ObjectMetadata: ...

    def supports_presigned_urls(self) -> bool:
        return False

    def get_presigned_upload_url(self, path: str, content_type: str | None, ttl: timedelta) -> PresignedURL:
        raise OperationNotSupportedError("get presigned upload url", path, self.name, "presigned URLs not supported")

    def get_presigned_download_url(self, path: str, ttl: timedelta) -> PresignedURL:
        raise OperationNotSupportedError("get presigned download url", path, self.name, "presigned URLs not supported")

    def get_public_url(self, path: str) -> str:
        raise OperationNotSupportedError("get public url", path, self.name, "public URLs not supported")

    def close(self) -> None:
        return None


__all__ = [
    "UNKNOWN_SIZE",
    "StoredObject",
    "ObjectMetadata",
    "PresignedURL",
    "StorageBackend",
]
