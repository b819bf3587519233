from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = Field(default="ok", description="Health status indicator.")
    time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EnvCheckResponse(BaseModel):
    ffprobe: bool
    rclone: bool


class UploadInitRequest(BaseModel):
    filename: str = Field(..., min_length=1, json_schema_extra={"example": "IMG_0001.jpg"})
    content_type: Optional[str] = Field(default=None, json_schema_extra={"example": "image/jpeg"})
    size: int = Field(..., json_schema_extra={"example": 2_457_600})
    checksum: Optional[str] = Field(default=None, description="Lowercase hex SHA-256 of the file.")


class UploadInitResponse(BaseModel):
    asset_id: str
    direct_upload: bool
    upload_url: Optional[str] = None
    upload_method: Optional[str] = None
    upload_headers: Dict[str, str] = Field(default_factory=dict)
    upload_fields: Dict[str, str] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None


class JobAcceptedResponse(BaseModel):
    job_id: str
    asset_id: Optional[str]
    status: str
    location: str


class AssetThumbnail(BaseModel):
    kind: str
    storage_key: str
    content_type: str
    width: int
    height: int
    size_bytes: int


class AssetMetadataModel(BaseModel):
    taken_at: Optional[datetime] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration_s: Optional[float] = None
    make: Optional[str] = None
    model: Optional[str] = None
    lens_model: Optional[str] = None
    f_number: Optional[float] = None
    focal_length: Optional[float] = None
    iso: Optional[int] = None
    exposure_time: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    description: Optional[str] = None


class AssetResponse(BaseModel):
    asset_id: str
    owner_id: str
    asset_type: str
    status: str
    storage_path: str
    original_filename: str
    content_type: str
    checksum: Optional[str]
    size_bytes: Optional[int]
    error: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    deleted_at: Optional[datetime]
    metadata: AssetMetadataModel
    thumbnails: List[AssetThumbnail]


class AssetStateResponse(BaseModel):
    asset_id: str
    status: str
    cleanup_job_id: Optional[str] = None
    removed_objects: List[str] = Field(default_factory=list)
    missing_objects: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class PresignedDownloadResponse(BaseModel):
    url: str
    headers: Dict[str, str]
    expires_at: Optional[datetime]


class ArchiveRequest(BaseModel):
    asset_ids: List[str] = Field(..., min_length=1, max_length=1000)


class ArchiveInfoResponse(BaseModel):
    asset_ids: List[str]
    asset_count: int
    total_size: int = Field(description="Sum of the original sizes in bytes, before compression.")


class BulkUploadCheckItem(BaseModel):
    id: str
    checksum: str


class BulkUploadCheckRequest(BaseModel):
    assets: List[BulkUploadCheckItem]


class BulkUploadCheckResult(BaseModel):
    id: str
    action: str = Field(description="accept | reject")
    reason: Optional[str] = None
    asset_id: Optional[str] = None


class BulkUploadCheckResponse(BaseModel):
    results: List[BulkUploadCheckResult]


class StorageUsageResponse(BaseModel):
    owner_id: str
    total_bytes: int
    object_count: int


class DuplicateMember(BaseModel):
    asset_id: str
    checksum: Optional[str]
    asset_type: str
    storage_path: str
    size_bytes: Optional[int]
    original_filename: str


class DuplicateGroup(BaseModel):
    duplicate_id: str
    assets: List[DuplicateMember]


class JobError(BaseModel):
    code: Optional[str] = None
    message: str


class JobResponse(BaseModel):
    job_id: str
    type: str
    asset_id: Optional[str]
    priority: str
    status: str
    queue_state: str
    retry_count: int
    scheduled_for: Optional[datetime]
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    result: Optional[Dict[str, Any]]
    error: Optional[JobError]


class QueueStatsResponse(BaseModel):
    name: str
    priority: str
    pending: int
    scheduled: int
    active: int
    dead: int
    paused: bool


class QueueActionResponse(BaseModel):
    name: str
    paused: bool
    cleared: Optional[int] = None


__all__ = [
    "HealthResponse",
    "EnvCheckResponse",
    "UploadInitRequest",
    "UploadInitResponse",
    "JobAcceptedResponse",
    "AssetResponse",
    "AssetStateResponse",
    "PresignedDownloadResponse",
    "ArchiveRequest",
    "ArchiveInfoResponse",
    "BulkUploadCheckRequest",
    "BulkUploadCheckResponse",
    "StorageUsageResponse",
    "DuplicateGroup",
    "DuplicateMember",
    "JobResponse",
    "QueueStatsResponse",
    "QueueActionResponse",
]
