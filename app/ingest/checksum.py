from __future__ import annotations

import binascii
import hashlib
from typing import BinaryIO

from app.core.errors import UploadTooLargeError, ValidationError

CHUNK_SIZE = 1024 * 1024


def compute_checksum(stream: BinaryIO, *, chunk_size: int = CHUNK_SIZE) -> bytes:
    """Stream ``stream`` through SHA-256 and return the raw digest.

    Args:
        stream: Binary file-like object, consumed to EOF.
        chunk_size: Bytes read per iteration; bounds memory use.

    Returns:
        The 32-byte digest.
    """
    hasher = hashlib.sha256()
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        hasher.update(chunk)
    return hasher.digest()


def checksum_hex(digest: bytes) -> str:
    return digest.hex()


def parse_checksum_hex(value: str) -> bytes:
    """Decode a wire-format checksum, rejecting anything that is not hex."""
    text = (value or "").strip()
    if not text:
        raise ValidationError("invalid_checksum", "checksum must not be empty")
    try:
        return binascii.unhexlify(text)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("invalid_checksum", f"invalid checksum format: {value!r}") from exc


class HashingReader:
    """File-like wrapper that hashes and counts bytes as they are read.

    Lets a single pass over an upload stream feed both the storage backend and
    the checksum, without buffering the payload.
    """

    def __init__(self, stream: BinaryIO, *, limit: int | None = None):
        self._stream = stream
        self._hasher = hashlib.sha256()
        self._limit = limit
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self._stream.read(size)
        if chunk:
            self.bytes_read += len(chunk)
            if self._limit is not None and self.bytes_read > self._limit:
                raise UploadTooLargeError(
                    "upload_too_large",
                    f"upload exceeds maximum allowed size {self._limit}",
                )
            self._hasher.update(chunk)
        return chunk

    def readable(self) -> bool:
        return True

    def digest(self) -> bytes:
        return self._hasher.digest()

    def hexdigest(self) -> str:
        return self._hasher.hexdigest()


__all__ = [
    "CHUNK_SIZE",
    "HashingReader",
    "checksum_hex",
    "compute_checksum",
    "parse_checksum_hex",
]
