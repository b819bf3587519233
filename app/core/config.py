from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.storage.factory import LocalConfig, RcloneConfig, S3Config, StorageConfig
from app.storage.policy import DEFAULT_ALLOWED_EXTENSIONS, DEFAULT_ALLOWED_MIME_TYPES, UploadPolicy


class Secrets(BaseSettings):
    """Secrets configuration, loaded from the environment or a secrets management service."""

    model_config = SettingsConfigDict(
        env_prefix="PICTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    jwt_secret: str = Field(default="change-me", description="Signing secret for bearer token validation.")
    s3_secret_access_key: str = Field(default="", description="Secret half of the S3 credential pair.")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "Secrets":
        return cls()


class Settings(BaseSettings):
    """Centralised runtime configuration for the Pictor API and workers."""

    model_config = SettingsConfigDict(
        env_prefix="PICTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Pictor API"
    environment: str = Field(default="development", description="Deployment environment label.")
    version: str = Field(default="0.1.0", description="API version for metadata and OpenAPI.")
    log_level: str = Field(default="info")
    json_logs: bool = Field(default=True, description="Render logs as JSON lines instead of console output.")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./pictor.db",
        description="SQLAlchemy compatible DSN.",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL for background jobs.",
    )

    storage_backend: str = Field(default="local", description="local | filesystem | fs | s3 | aws | rclone")
    local_root_path: Path = Field(default_factory=lambda: Path("uploads"), description="Root for the local backend.")
    local_file_mode: str = Field(default="0644", description="Octal permission bits for stored files.")
    local_dir_mode: str = Field(default="0755", description="Octal permission bits for created directories.")

    s3_endpoint: str = Field(default="", description="Custom endpoint host (empty targets AWS).")
    s3_region: str = Field(default="us-east-1")
    s3_bucket: str = ""
    s3_access_key_id: str = ""
    s3_use_ssl: bool = True
    s3_path_prefix: str = ""
    s3_force_path_style: bool = False
    s3_presigned_url_expiry_s: int = Field(default=15 * 60, description="Default TTL for presigned URLs.")
    s3_direct_upload: bool = Field(default=False, description="Offer presigned direct-to-bucket uploads.")

    rclone_remote: str = ""
    rclone_path: str = ""
    rclone_config_file: Optional[str] = None
    rclone_flags: tuple[str, ...] = Field(default=())
    rclone_timeout_s: float = Field(default=30.0, description="Upper bound for a single rclone metadata call.")
    rclone_transfer_timeout_s: float = Field(default=3600.0, description="Upper bound for one rclone upload or download.")

    max_upload_size_bytes: int = Field(default=104_857_600, description="Hard limit for ingest uploads.")
    allowed_extensions: tuple[str, ...] = Field(default=DEFAULT_ALLOWED_EXTENSIONS)
    allowed_mime_types: tuple[str, ...] = Field(default=DEFAULT_ALLOWED_MIME_TYPES)
    path_include_day: bool = Field(default=False, description="Add a day segment to asset storage paths.")

    trash_retention_s: int = Field(default=30 * 24 * 3600, description="Delay before trashed assets are purged.")
    ffprobe_timeout_s: float = Field(default=60.0, description="Upper bound for a single ffprobe invocation.")

    jwt_algorithm: str = Field(default="HS256", description="Algorithm used for JWT tokens.")
    jwt_issuer: Optional[str] = None
    jwt_audience: Optional[str] = None

    job_queue_backend: Literal["immediate", "inline", "rq"] = Field(
        default="immediate",
        description="Backend for async jobs (inline executes inline; rq schedules via Redis).",
    )
    job_queue_prefix: str = Field(default="pictor", description="Prefix for the per-priority queue names.")
    job_max_retries: int = Field(default=3, description="Maximum retry attempts for failed jobs.")
    job_retry_backoff_base: float = Field(default=2.0, description="Backoff multiplier between retries.")
    job_retry_initial_delay_s: float = Field(default=1.0, description="Initial delay before the first retry.")
    job_timeout_s: int = Field(default=30 * 60, description="Wall-clock limit for a single job run.")
    job_pause_recheck_s: int = Field(default=30, description="Re-schedule delay for jobs hitting a paused queue.")

    secrets: Secrets = Field(default_factory=Secrets, description="Holds sensitive configuration.")

    @property
    def environment_lower(self) -> str:
        return self.environment.lower()

    @property
    def normalized_job_backend(self) -> str:
        if self.job_queue_backend == "inline":
            return "immediate"
        return self.job_queue_backend

    @property
    def retry_intervals(self) -> list[int]:
        return [
            int(self.job_retry_initial_delay_s * self.job_retry_backoff_base**attempt)
            for attempt in range(self.job_max_retries)
        ]

    def upload_policy(self) -> UploadPolicy:
        return UploadPolicy(
            max_file_size=self.max_upload_size_bytes,
            allowed_extensions=self.allowed_extensions,
            allowed_mime_types=self.allowed_mime_types,
        )

    def storage_config(self) -> StorageConfig:
        return StorageConfig(
            backend=self.storage_backend,
            local=LocalConfig(
                root_path=str(self.local_root_path),
                file_mode=self.local_file_mode,
                dir_mode=self.local_dir_mode,
            ),
            s3=S3Config(
                endpoint=self.s3_endpoint,
                region=self.s3_region,
                bucket=self.s3_bucket,
                access_key_id=self.s3_access_key_id,
                secret_access_key=self.secrets.s3_secret_access_key,
                use_ssl=self.s3_use_ssl,
                path_prefix=self.s3_path_prefix,
                force_path_style=self.s3_force_path_style,
                presigned_url_expiry_s=self.s3_presigned_url_expiry_s,
                direct_upload=self.s3_direct_upload,
            ),
            rclone=RcloneConfig(
                remote=self.rclone_remote,
                path=self.rclone_path,
                config_file=self.rclone_config_file,
                flags=tuple(self.rclone_flags),
                timeout_s=self.rclone_timeout_s,
                transfer_timeout_s=self.rclone_transfer_timeout_s,
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    load_dotenv(".env", override=False)

    _ENV_ALIAS_MAP = {
        "PICTOR_ENV": "PICTOR_ENVIRONMENT",
        "PICTOR_DB_URL": "PICTOR_DATABASE_URL",
        "PICTOR_JOB_BACKEND": "PICTOR_JOB_QUEUE_BACKEND",
        "PICTOR_STORAGE": "PICTOR_STORAGE_BACKEND",
    }

    for source, target in _ENV_ALIAS_MAP.items():
        value = os.getenv(source)
        if value:
            os.environ[target] = value

    settings = Settings()

    secrets = Secrets.from_settings(settings)

    if settings.environment_lower == "production" and secrets.jwt_secret == "change-me":
        raise ValueError("Production environment must have a non-default JWT secret.")

    settings.secrets = secrets
    return settings


__all__ = ["Secrets", "Settings", "get_settings"]
