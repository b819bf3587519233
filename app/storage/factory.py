from __future__ import annotations

from dataclasses import dataclass, field

from app.core.errors import StorageError

from .base import StorageBackend

LOCAL_ALIASES = frozenset({"local", "filesystem", "fs"})
S3_ALIASES = frozenset({"s3", "aws"})
RCLONE_ALIASES = frozenset({"rclone"})


@dataclass(slots=True)
class LocalConfig:
    root_path: str = "./uploads"
    file_mode: str = "0644"
    dir_mode: str = "0755"


@dataclass(slots=True)
class S3Config:
    endpoint: str = ""
    region: str = "us-east-1"
    bucket: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    use_ssl: bool = True
    path_prefix: str = ""
    force_path_style: bool = False
    presigned_url_expiry_s: int = 900
    direct_upload: bool = False


@dataclass(slots=True)
class RcloneConfig:
    remote: str = ""
    path: str = ""
    config_file: str | None = None
    flags: tuple[str, ...] = ()
    timeout_s: float = 30.0
    transfer_timeout_s: float = 3600.0


@dataclass(slots=True)
class StorageConfig:
    backend: str = "local"
    local: LocalConfig = field(default_factory=LocalConfig)
    s3: S3Config = field(default_factory=S3Config)
    rclone: RcloneConfig = field(default_factory=RcloneConfig)

    @property
    def normalized_backend(self) -> str:
        backend = self.backend.strip().lower()
        if backend in LOCAL_ALIASES:
            return "local"
        if backend in S3_ALIASES:
            return "s3"
        if backend in RCLONE_ALIASES:
            return "rclone"
        return backend

    @property
    def direct_upload_enabled(self) -> bool:
        return self.normalized_backend == "s3" and self.s3.direct_upload


def validate_storage_config(config: StorageConfig) -> None:
    backend = config.normalized_backend
    if backend == "local":
        if not config.local.root_path:
            raise StorageError("validate local config", "", "local", "root path is required")
        return
    if backend == "s3":
        required = {
            "bucket": config.s3.bucket,
            "access key ID": config.s3.access_key_id,
            "secret access key": config.s3.secret_access_key,
            "region": config.s3.region,
        }
        for label, value in required.items():
            if not value:
                raise StorageError("validate s3 config", "", "s3", f"{label} is required")
        return
    if backend == "rclone":
        if not config.rclone.remote:
            raise StorageError("validate rclone config", "", "rclone", "remote is required")
        return
    raise StorageError("validate config", "", config.backend, f"unsupported storage backend: {config.backend}")


def build_storage_backend(config: StorageConfig, *, verify: bool = False) -> StorageBackend:
    """Validate ``config`` and construct the selected backend variant.

    Args:
        config: Storage configuration, usually from ``Settings.storage_config()``.
        verify: Probe the remote before returning (rclone only).

    Returns:
        A ready-to-use storage backend.
    """
    validate_storage_config(config)
    backend = config.normalized_backend
    if backend == "local":
        from .local import LocalBackend

        return LocalBackend(config.local.root_path, file_mode=config.local.file_mode, dir_mode=config.local.dir_mode)
    if backend == "s3":
        from .s3 import S3Backend

        return S3Backend(
            bucket=config.s3.bucket,
            region=config.s3.region,
            endpoint=config.s3.endpoint,
            access_key_id=config.s3.access_key_id,
            secret_access_key=config.s3.secret_access_key,
            use_ssl=config.s3.use_ssl,
            path_prefix=config.s3.path_prefix,
            force_path_style=config.s3.force_path_style,
            presigned_url_expiry_s=config.s3.presigned_url_expiry_s,
        )
    from .rclone import RcloneBackend

    rclone = RcloneBackend(
        config.rclone.remote,
        path=config.rclone.path,
        config_file=config.rclone.config_file,
        flags=config.rclone.flags,
        timeout_s=config.rclone.timeout_s,
        transfer_timeout_s=config.rclone.transfer_timeout_s,
    )
    if verify:
        rclone.check_connection()
    return rclone


__all__ = [
    "LocalConfig",
    "S3Config",
    "RcloneConfig",
    "StorageConfig",
    "validate_storage_config",
    "build_storage_backend",
]
