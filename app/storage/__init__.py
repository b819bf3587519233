"""Pluggable byte storage: local filesystem, S3-compatible buckets and rclone remotes."""

from .base import UNKNOWN_SIZE, ObjectMetadata, PresignedURL, StorageBackend, StoredObject
from .factory import (
    LocalConfig,
    RcloneConfig,
    S3Config,
    StorageConfig,
    build_storage_backend,
    validate_storage_config,
)
from .policy import UploadPolicy, guess_content_type

__all__ = [
    "UNKNOWN_SIZE",
    "ObjectMetadata",
    "PresignedURL",
    "StorageBackend",
    "StoredObject",
    "LocalConfig",
    "RcloneConfig",
    "S3Config",
    "StorageConfig",
    "build_storage_backend",
    "validate_storage_config",
    "UploadPolicy",
    "guess_content_type",
]
