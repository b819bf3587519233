from __future__ import annotations

import asyncio
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO, Iterable
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.errors import (
    ConflictError,
    NotFoundError,
    ObjectNotFoundError,
    PictorError,
    StorageError,
    ThumbnailError,
    ValidationError,
)
from app.core.jobs import BaseJobBackend, JobContext, get_job_backend
from app.core.logging import get_logger
from app.db.models import Asset, AssetStatus, AssetType, Job, JobPriority, JobStatus, JobType, Thumbnail
from app.domain import ensure_transition
from app.ingest.checksum import HashingReader, checksum_hex, compute_checksum, parse_checksum_hex
from app.ingest.metadata import (
    AssetMetadata,
    MetadataExtractor,
    asset_type_from_content_type,
    mime_type_for_asset_type,
)
from app.ingest.paths import build_asset_path, owner_prefix
from app.ingest.thumbnails import THUMBNAIL_KINDS, ThumbnailGenerator, can_generate, thumbnail_path
from app.services.downloads import (
    ArchiveEntry,
    archive_path_for,
    parse_byte_range,
    skip_to,
    unique_archive_paths,
    write_archive,
)
from app.storage import UNKNOWN_SIZE, StorageBackend

SPOOL_MAX_MEMORY = 8 * 1024 * 1024

ORIGINAL_DOWNLOAD_TTL = timedelta(hours=1)
THUMBNAIL_DOWNLOAD_TTL = timedelta(hours=24)
ORIGINAL_CACHE_CONTROL = "private, max-age=3600"
THUMBNAIL_CACHE_CONTROL = "public, max-age=86400"

METADATA_FIELDS = (
    "taken_at",
    "width",
    "height",
    "duration_s",
    "make",
    "model",
    "lens_model",
    "f_number",
    "focal_length",
    "iso",
    "exposure_time",
    "latitude",
    "longitude",
    "description",
)


@dataclass(slots=True)
class DownloadResult:
    """Either a presigned URL or an open stream, plus the headers to serve it with."""

    headers: dict[str, str]
    filename: str
    url: str | None = None
    expires_at: datetime | None = None
    stream: BinaryIO | None = None
    size: int | None = None
    byte_range: tuple[int, int] | None = None

    @property
    def is_redirect(self) -> bool:
        return self.url is not None


@dataclass(slots=True)
class ObjectCleanupReport:
    removed: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IngestService:
    def __init__(
        self,
        settings: Settings,
        storage: StorageBackend,
        session: AsyncSession,
        *,
        jobs: BaseJobBackend | None = None,
        extractor: MetadataExtractor | None = None,
        thumbnailer: ThumbnailGenerator | None = None,
    ):
        self.settings = settings
        self.storage = storage
        self.session = session
        self._jobs = jobs
        self.extractor = extractor or MetadataExtractor(ffprobe_timeout_s=settings.ffprobe_timeout_s)
        self.thumbnailer = thumbnailer or ThumbnailGenerator()
        self.logger = get_logger(component="ingest_service")

    @property
    def jobs(self) -> BaseJobBackend:
        if self._jobs is None:
            self._jobs = get_job_backend()
        return self._jobs

    @property
    def direct_upload_enabled(self) -> bool:
        return self.settings.storage_config().direct_upload_enabled and self.storage.supports_presigned_urls()

    async def _get_owned_asset(self, owner_id: str, asset_id: str) -> Asset:
        stmt = (
            select(Asset)
            .where(Asset.asset_id == asset_id, Asset.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
        asset = (await self.session.execute(stmt)).scalar_one_or_none()
        if asset is None:
            # another owner's asset is reported exactly like a missing one
            raise NotFoundError("asset_not_found", f"asset {asset_id} not found")
        return asset

    async def _thumbnails_for(self, asset_id: str) -> list[Thumbnail]:
        stmt = (
            select(Thumbnail)
            .where(Thumbnail.asset_id == asset_id)
            .order_by(Thumbnail.kind)
            .execution_options(populate_existing=True)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def initiate_upload(
        self,
        *,
        owner_id: str,
        filename: str,
        content_type: str | None,
        size: int,
        checksum_hex: str | None = None,
    ) -> dict[str, Any]:
        """Validate an upload request and create its asset record.

        Args:
            owner_id: Authenticated user the asset will belong to.
            filename: Client-side file name; only its final component is kept.
            content_type: Declared MIME type; guessed from the name when generic.
            size: Declared size in bytes.
            checksum_hex: Optional client-computed SHA-256, lowercase hex.

        Returns:
            The new asset id and, when direct uploads are enabled, the presigned
            upload target.
        """
        effective_type = self.settings.upload_policy().validate(filename, content_type, size)
        declared_checksum = parse_checksum_hex(checksum_hex) if checksum_hex else None

        asset_id = uuid4().hex
        storage_path = build_asset_path(
            owner_id,
            asset_id,
            filename,
            now=_utcnow(),
            include_day=self.settings.path_include_day,
        )
        asset = Asset(
            asset_id=asset_id,
            owner_id=owner_id,
            asset_type=AssetType(asset_type_from_content_type(effective_type, filename)),
            status=AssetStatus.uploading,
            storage_path=storage_path,
            original_filename=filename,
            content_type=effective_type,
            checksum=declared_checksum,
            size_bytes=size,
        )
        self.session.add(asset)
        await self.session.commit()
        self.logger.info("upload_initiated", asset_id=asset_id, owner_id=owner_id, size=size)

        response: dict[str, Any] = {"asset_id": asset_id, "direct_upload": False}
        if self.direct_upload_enabled:
            ttl = timedelta(seconds=self.settings.s3_presigned_url_expiry_s)
            presigned = await asyncio.to_thread(
                self.storage.get_presigned_upload_url, storage_path, effective_type, ttl
            )
            response.update(
                {
                    "direct_upload": True,
                    "upload_url": presigned.url,
                    "upload_method": presigned.method,
                    "upload_headers": presigned.headers,
                    "upload_fields": presigned.fields,
                    "expires_at": presigned.expires_at,
                }
            )
        return response

    async def complete_upload(self, *, owner_id: str, asset_id: str, stream: BinaryIO | None = None) -> Job:
        """Finish an upload and hand the asset to background processing.

        With ``stream`` the bytes are proxied into storage here; without it the
        client must already have uploaded them through the presigned URL.
        """
        asset = await self._claim_upload(owner_id, asset_id)
        try:
            if stream is not None:
                reader = HashingReader(stream, limit=self.settings.max_upload_size_bytes)
                await asyncio.to_thread(
                    self.storage.upload, asset.storage_path, reader, UNKNOWN_SIZE, asset.content_type
                )
                asset.checksum = reader.digest()
                asset.size_bytes = reader.bytes_read
            else:
                exists = await asyncio.to_thread(self.storage.exists, asset.storage_path)
                if not exists:
                    raise ValidationError("upload_missing", f"no uploaded object found for asset {asset_id}")
                asset.size_bytes = await asyncio.to_thread(self.storage.get_size, asset.storage_path)
                self.settings.upload_policy().check_size(asset.size_bytes)
        except Exception:
            await self._release_upload(asset_id)
            raise

        job = self._new_job(
            owner_id=owner_id,
            asset_id=asset_id,
            job_type=JobType.process_asset,
            priority=JobPriority.normal,
            payload={"asset_id": asset_id},
            idempotency_key=f"process_asset:{asset_id}",
        )
        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ConflictError("asset_not_uploading", f"asset {asset_id} already has a processing job") from exc
        self.logger.info("upload_completed", asset_id=asset_id, size=asset.size_bytes, job_id=job.job_id)

        await self.jobs.enqueue(job.job_id, job.job_type, job.priority)
        await self.session.refresh(job)
        return job

    async def _claim_upload(self, owner_id: str, asset_id: str) -> Asset:
        """Move an UPLOADING asset to PROCESSING with a conditional update.

        Only one of several concurrent completions can match the
        ``status == uploading`` filter; the others get ``ConflictError``.
        """
        asset = await self._get_owned_asset(owner_id, asset_id)
        if asset.status != AssetStatus.uploading:
            raise ConflictError("asset_not_uploading", f"asset {asset_id} is {asset.status.value}")
        ensure_transition(asset.status, AssetStatus.processing)

        stmt = (
            update(Asset)
            .where(
                Asset.asset_id == asset_id,
                Asset.owner_id == owner_id,
                Asset.status == AssetStatus.uploading,
            )
            .values(status=AssetStatus.processing, error=None)
            .execution_options(synchronize_session=False)
        )
        claimed = await self.session.execute(stmt)
        if claimed.rowcount == 0:
            await self.session.rollback()
            raise ConflictError("asset_not_uploading", f"asset {asset_id} is no longer uploading")
        await self.session.commit()
        return await self._get_owned_asset(owner_id, asset_id)

    async def _release_upload(self, asset_id: str) -> None:
        # undoes the claim; not a lifecycle transition
        await self.session.rollback()
        stmt = (
            update(Asset)
            .where(Asset.asset_id == asset_id, Asset.status == AssetStatus.processing)
            .values(status=AssetStatus.uploading)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)
        await self.session.commit()
        self.logger.info("upload_claim_released", asset_id=asset_id)

    def _new_job(
        self,
        *,
        owner_id: str,
        asset_id: str | None,
        job_type: JobType,
        priority: JobPriority,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
        scheduled_for: datetime | None = None,
    ) -> Job:
        job = Job(
            job_id=uuid4().hex,
            job_type=job_type,
            owner_id=owner_id,
            asset_id=asset_id,
            priority=priority,
            status=JobStatus.scheduled if scheduled_for else JobStatus.queued,
            payload=payload,
            idempotency_key=idempotency_key,
            scheduled_for=scheduled_for,
            retry_count=0,
        )
        self.session.add(job)
        return job

    async def enqueue_job(
        self,
        *,
        owner_id: str,
        asset_id: str | None,
        job_type: JobType,
        payload: dict[str, Any],
        priority: JobPriority = JobPriority.normal,
        idempotency_key: str | None = None,
    ) -> Job:
        if idempotency_key:
            stmt = select(Job).where(Job.owner_id == owner_id, Job.idempotency_key == idempotency_key)
            existing = (await self.session.execute(stmt)).scalar_one_or_none()
            if existing:
                if existing.payload != payload or existing.job_type != job_type:
                    raise ConflictError("idempotency_conflict", "idempotency key reused with a different job")
                return existing
        job = self._new_job(
            owner_id=owner_id,
            asset_id=asset_id,
            job_type=job_type,
            priority=priority,
            payload=payload,
            idempotency_key=idempotency_key,
        )
        await self.session.commit()
        await self.jobs.enqueue(job.job_id, job.job_type, job.priority)
        await self.session.refresh(job)
        return job

    def _spool_original(self, path: str) -> tempfile.SpooledTemporaryFile:
        spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY)
        source = self.storage.download(path)
        try:
            shutil.copyfileobj(source, spool)
        finally:
            source.close()
        spool.seek(0)
        return spool

    async def _mark_failed(self, asset: Asset, message: str) -> None:
        asset.status = AssetStatus.failed
        asset.error = message
        await self.session.commit()

    async def process_asset(self, asset_id: str, *, retries_left: int = 0) -> dict[str, Any]:
        """Run the processing pipeline for one asset.

        The original is downloaded once and spooled; the checksum, metadata and
        thumbnails are derived from that copy in order, and the asset finally
        moves to ACTIVE. Metadata and thumbnail problems are logged.

        A missing original, or a failed download with no ``retries_left``,
        leaves the asset FAILED. Other download failures are re-raised so the
        work queue retries the job.
        """
        logger = self.logger.bind(asset_id=asset_id)
        asset = await self.session.get(Asset, asset_id, populate_existing=True)
        if asset is None:
            raise NotFoundError("asset_not_found", f"asset {asset_id} not found")
        if asset.status != AssetStatus.processing:
            logger.info("asset_processing_skipped", status=asset.status.value)
            return {"asset_id": asset_id, "status": asset.status.value, "skipped": True}

        logger.info("asset_processing_started", storage_path=asset.storage_path)
        try:
            spool = await asyncio.to_thread(self._spool_original, asset.storage_path)
        except (PictorError, OSError) as exc:
            if not isinstance(exc, ObjectNotFoundError) and retries_left > 0:
                logger.warning("asset_download_retry", error=str(exc), retries_left=retries_left)
                raise
            logger.error("asset_download_failed", error=str(exc))
            await self._mark_failed(asset, f"download failed: {exc}")
            return {"asset_id": asset_id, "status": AssetStatus.failed.value}

        with spool:
            digest = await asyncio.to_thread(compute_checksum, spool)
            asset.size_bytes = spool.tell()
            asset.checksum = digest

            spool.seek(0)
            metadata = await self._extract_metadata(asset, spool, logger)
            for name in METADATA_FIELDS:
                value = getattr(metadata, name)
                if value is not None:
                    setattr(asset, name, value)

            stored_kinds: list[str] = []
            if can_generate(asset.content_type):
                spool.seek(0)
                stored_kinds = await self._store_thumbnails(asset, spool, logger)

        try:
            ensure_transition(asset.status, AssetStatus.active)
            asset.status = AssetStatus.active
            asset.error = None
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.exception("asset_activation_failed")
            asset = await self.session.get(Asset, asset_id, populate_existing=True)
            if asset is not None:
                await self._mark_failed(asset, f"state update failed: {exc}")
            return {"asset_id": asset_id, "status": AssetStatus.failed.value}

        logger.info("asset_processing_finished", thumbnails=stored_kinds, size=asset.size_bytes)
        return {
            "asset_id": asset_id,
            "status": AssetStatus.active.value,
            "checksum": checksum_hex(digest),
            "thumbnails": stored_kinds,
        }

    async def _extract_metadata(self, asset: Asset, stream: BinaryIO, logger: Any) -> AssetMetadata:
        try:
            return await asyncio.to_thread(
                self.extractor.extract,
                stream,
                asset.original_filename,
                asset.content_type,
                asset.size_bytes or 0,
                timeout_s=self.settings.ffprobe_timeout_s,
            )
        except Exception as exc:  # extraction is best-effort
            logger.warning("metadata_extraction_failed", error=str(exc))
            return AssetMetadata()

    async def _store_thumbnails(self, asset: Asset, stream: BinaryIO, logger: Any) -> list[str]:
        try:
            generated = await asyncio.to_thread(self.thumbnailer.generate, stream)
        except ThumbnailError as exc:
            logger.warning("thumbnail_generation_failed", error=str(exc))
            return []

        stored: list[str] = []
        for kind, thumb in generated.items():
            key = thumbnail_path(asset.storage_path, kind)
            try:
                await asyncio.to_thread(self.storage.upload_bytes, key, thumb.data, thumb.content_type)
            except StorageError as exc:
                logger.warning("thumbnail_kind_failed", kind=kind, error=str(exc))
                continue
            await self._upsert_thumbnail(asset.asset_id, kind, key, thumb.content_type, thumb.width, thumb.height, len(thumb.data))
            stored.append(kind)
        return stored

    async def _upsert_thumbnail(
        self,
        asset_id: str,
        kind: str,
        storage_key: str,
        content_type: str,
        width: int,
        height: int,
        size_bytes: int,
    ) -> Thumbnail:
        stmt = select(Thumbnail).where(Thumbnail.asset_id == asset_id, Thumbnail.kind == kind)
        thumb = (await self.session.execute(stmt)).scalar_one_or_none()
        if thumb is None:
            thumb = Thumbnail(asset_id=asset_id, kind=kind)
            self.session.add(thumb)
        thumb.storage_key = storage_key
        thumb.content_type = content_type
        thumb.width = width
        thumb.height = height
        thumb.size_bytes = size_bytes
        await self.session.flush()
        return thumb

    async def get_asset(self, *, owner_id: str, asset_id: str) -> dict[str, Any]:
        asset = await self._get_owned_asset(owner_id, asset_id)
        thumbs = await self._thumbnails_for(asset_id)
        return self._snapshot(asset, thumbs)

    @staticmethod
    def _snapshot(asset: Asset, thumbs: Iterable[Thumbnail]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "asset_id": asset.asset_id,
            "owner_id": asset.owner_id,
            "asset_type": asset.asset_type.value,
            "status": asset.status.value,
            "storage_path": asset.storage_path,
            "original_filename": asset.original_filename,
            "content_type": asset.content_type,
            "checksum": checksum_hex(asset.checksum) if asset.checksum else None,
            "size_bytes": asset.size_bytes,
            "error": asset.error,
            "created_at": asset.created_at,
            "updated_at": asset.updated_at,
            "deleted_at": asset.deleted_at,
            "thumbnails": [
                {
                    "kind": thumb.kind,
                    "storage_key": thumb.storage_key,
                    "content_type": thumb.content_type,
                    "width": thumb.width,
                    "height": thumb.height,
                    "size_bytes": thumb.size_bytes,
                }
                for thumb in thumbs
            ],
        }
        payload["metadata"] = {name: getattr(asset, name) for name in METADATA_FIELDS}
        return payload

    async def delete_asset(self, *, owner_id: str, asset_id: str) -> dict[str, Any]:
        """Move an asset to the trash and schedule its purge after the retention window.

        Object bytes are not removed here. The cleanup job runs only once
        ``trash_retention_s`` has elapsed so ``restore_asset`` can still bring the
        asset back; ``hard_delete_asset`` is the immediate path.
        """
        asset = await self._get_owned_asset(owner_id, asset_id)
        ensure_transition(asset.status, AssetStatus.trashed)
        now = _utcnow()
        asset.status = AssetStatus.trashed
        asset.deleted_at = now
        purge_at = now + timedelta(seconds=self.settings.trash_retention_s)
        job = self._new_job(
            owner_id=owner_id,
            asset_id=asset_id,
            job_type=JobType.cleanup,
            priority=JobPriority.low,
            payload={"asset_id": asset_id},
            scheduled_for=purge_at,
        )
        await self.session.commit()
        self.logger.info("asset_trashed", asset_id=asset_id, purge_at=purge_at.isoformat())

        try:
            await self.jobs.schedule(job.job_id, job.job_type, purge_at, job.priority)
        except Exception:  # the trash transition stands even if scheduling fails
            self.logger.exception("cleanup_schedule_failed", asset_id=asset_id, job_id=job.job_id)
        return {"asset_id": asset_id, "status": AssetStatus.trashed.value, "cleanup_job_id": job.job_id}

    async def restore_asset(self, *, owner_id: str, asset_id: str) -> dict[str, Any]:
        asset = await self._get_owned_asset(owner_id, asset_id)
        if asset.status != AssetStatus.trashed:
            raise ConflictError("asset_not_trashed", f"asset {asset_id} is {asset.status.value}")
        ensure_transition(asset.status, AssetStatus.active)
        asset.status = AssetStatus.active
        asset.deleted_at = None
        await self.session.commit()
        self.logger.info("asset_restored", asset_id=asset_id)
        return await self.get_asset(owner_id=owner_id, asset_id=asset_id)

    def _delete_objects(self, paths: Iterable[str]) -> ObjectCleanupReport:
        report = ObjectCleanupReport()
        for path in paths:
            try:
                self.storage.delete(path)
            except ObjectNotFoundError:
                report.missing.append(path)
            except StorageError as exc:
                self.logger.warning("storage_cleanup_failed", path=path, error=str(exc))
                report.errors.append(str(exc))
            else:
                report.removed.append(path)
        return report

    async def _remove_asset(self, asset: Asset, *, strict: bool) -> ObjectCleanupReport:
        thumbs = await self._thumbnails_for(asset.asset_id)
        paths = [asset.storage_path] + [thumb.storage_key for thumb in thumbs]
        report = await asyncio.to_thread(self._delete_objects, paths)
        if strict and report.errors:
            raise StorageError("purge", asset.storage_path, self.storage.name, "; ".join(report.errors))

        ensure_transition(asset.status, AssetStatus.deleted)
        await self.session.execute(delete(Thumbnail).where(Thumbnail.asset_id == asset.asset_id))
        await self.session.delete(asset)
        await self.session.commit()
        return report

    async def hard_delete_asset(self, *, owner_id: str, asset_id: str) -> dict[str, Any]:
        """Remove an asset's objects and records immediately.

        Object removal is best-effort: missing objects count as already clean,
        other storage errors are logged and reported. Record removal always
        proceeds.
        """
        asset = await self._get_owned_asset(owner_id, asset_id)
        ensure_transition(asset.status, AssetStatus.deleted)
        report = await self._remove_asset(asset, strict=False)
        self.logger.info("asset_deleted", asset_id=asset_id, removed=len(report.removed), errors=len(report.errors))
        return {
            "asset_id": asset_id,
            "status": AssetStatus.deleted.value,
            "removed_objects": report.removed,
            "missing_objects": report.missing,
            "errors": report.errors,
        }

    async def purge_trashed(self, asset_id: str) -> dict[str, Any]:
        """Purge an asset whose trash retention expired; restored assets are left alone."""
        asset = await self.session.get(Asset, asset_id, populate_existing=True)
        if asset is None:
            return {"asset_id": asset_id, "skipped": True, "reason": "missing"}
        if asset.status != AssetStatus.trashed:
            self.logger.info("cleanup_skipped", asset_id=asset_id, status=asset.status.value)
            return {"asset_id": asset_id, "skipped": True, "reason": asset.status.value}
        report = await self._remove_asset(asset, strict=True)
        self.logger.info("asset_purged", asset_id=asset_id, removed=len(report.removed))
        return {"asset_id": asset_id, "status": AssetStatus.deleted.value, "removed_objects": report.removed}

    async def download_asset(
        self,
        *,
        owner_id: str,
        asset_id: str,
        thumbnail_kind: str | None = None,
        byte_range: str | None = None,
    ) -> DownloadResult:
        """Resolve an original or thumbnail download for its owner.

        Presigned-capable storage gets a redirect URL. Otherwise the object is
        streamed, and a ``bytes=`` range narrows it to a single span.
        """
        asset = await self._get_owned_asset(owner_id, asset_id)
        if asset.status in {AssetStatus.uploading, AssetStatus.deleted}:
            raise ConflictError("asset_not_ready", f"asset {asset_id} is {asset.status.value}")

        if thumbnail_kind:
            if thumbnail_kind not in THUMBNAIL_KINDS:
                raise ValidationError("invalid_thumbnail_kind", f"unknown thumbnail kind: {thumbnail_kind}")
            stmt = select(Thumbnail).where(Thumbnail.asset_id == asset_id, Thumbnail.kind == thumbnail_kind)
            thumb = (await self.session.execute(stmt)).scalar_one_or_none()
            if thumb is None:
                raise NotFoundError("thumbnail_not_found", f"no {thumbnail_kind} thumbnail for asset {asset_id}")
            key = thumb.storage_key
            ttl = THUMBNAIL_DOWNLOAD_TTL
            headers = {"Cache-Control": THUMBNAIL_CACHE_CONTROL, "Content-Type": thumb.content_type}
            filename = key.rsplit("/", 1)[-1]
        else:
            key = asset.storage_path
            ttl = ORIGINAL_DOWNLOAD_TTL
            headers = {
                "Cache-Control": ORIGINAL_CACHE_CONTROL,
                "Content-Type": mime_type_for_asset_type(asset.asset_type.value),
            }
            filename = asset.original_filename

        if self.storage.supports_presigned_urls():
            presigned = await asyncio.to_thread(self.storage.get_presigned_download_url, key, ttl)
            return DownloadResult(headers=headers, filename=filename, url=presigned.url, expires_at=presigned.expires_at)

        size = span = None
        if byte_range:
            size = await asyncio.to_thread(self.storage.get_size, key)
            span = parse_byte_range(byte_range, size)
        stream = await asyncio.to_thread(self.storage.download, key)
        if span is not None:
            try:
                await asyncio.to_thread(skip_to, stream, span[0])
            except Exception:
                stream.close()
                raise
        return DownloadResult(headers=headers, filename=filename, stream=stream, size=size, byte_range=span)

    async def archive_entries(self, *, owner_id: str, asset_ids: Iterable[str]) -> list[ArchiveEntry]:
        """Resolve the owner's ACTIVE assets among ``asset_ids`` into archive entries.

        Unknown, foreign and unfinished assets are skipped. Entries keep the
        request order and get unique ``YYYY/MM/DD/<filename>`` names.
        """
        wanted = list(dict.fromkeys(asset_ids))
        if not wanted:
            return []
        stmt = select(Asset).where(
            Asset.asset_id.in_(wanted),
            Asset.owner_id == owner_id,
            Asset.status == AssetStatus.active,
        )
        found = {asset.asset_id: asset for asset in (await self.session.execute(stmt)).scalars()}
        assets = [found[asset_id] for asset_id in wanted if asset_id in found]
        paths = unique_archive_paths(
            archive_path_for(asset.original_filename, asset.asset_id, asset.created_at) for asset in assets
        )
        return [
            ArchiveEntry(
                asset_id=asset.asset_id,
                archive_path=path,
                storage_path=asset.storage_path,
                size=asset.size_bytes or 0,
                modified=asset.created_at,
            )
            for asset, path in zip(assets, paths)
        ]

    async def download_info(self, *, owner_id: str, asset_ids: Iterable[str]) -> dict[str, Any]:
        entries = await self.archive_entries(owner_id=owner_id, asset_ids=asset_ids)
        return {
            "asset_ids": [entry.asset_id for entry in entries],
            "asset_count": len(entries),
            "total_size": sum(entry.size for entry in entries),
        }

    async def build_archive(self, *, owner_id: str, asset_ids: Iterable[str]) -> tuple[BinaryIO, list[ArchiveEntry]]:
        """Zip the requested originals into a spooled file, rewound for streaming."""
        entries = await self.archive_entries(owner_id=owner_id, asset_ids=asset_ids)
        if not entries:
            raise NotFoundError("no_archivable_assets", "none of the requested assets can be archived")
        archive = await asyncio.to_thread(write_archive, entries, self.storage.download)
        self.logger.info("archive_built", owner_id=owner_id, asset_count=len(entries))
        return archive, entries

    async def bulk_upload_check(self, *, owner_id: str, items: list[dict[str, str]]) -> list[dict[str, Any]]:
        """Tell a client which of its files are already stored, by checksum."""
        parsed = [(item["id"], parse_checksum_hex(item["checksum"])) for item in items]
        checksums = {digest for _, digest in parsed}
        existing: dict[bytes, str] = {}
        if checksums:
            stmt = select(Asset.checksum, Asset.asset_id).where(
                Asset.owner_id == owner_id,
                Asset.checksum.in_(checksums),
                Asset.status != AssetStatus.deleted,
            )
            for digest, existing_id in (await self.session.execute(stmt)).all():
                existing.setdefault(digest, existing_id)

        results: list[dict[str, Any]] = []
        for item_id, digest in parsed:
            if digest in existing:
                results.append({"id": item_id, "action": "reject", "reason": "duplicate", "asset_id": existing[digest]})
            else:
                results.append({"id": item_id, "action": "accept", "reason": None, "asset_id": None})
        return results

    async def storage_usage(self, *, owner_id: str) -> dict[str, Any]:
        objects = await asyncio.to_thread(self.storage.list, owner_prefix(owner_id), True)
        files = [obj for obj in objects if not obj.is_dir]
        return {
            "owner_id": owner_id,
            "total_bytes": sum(max(obj.size, 0) for obj in files),
            "object_count": len(files),
        }

    async def get_job(self, job_id: str) -> Job | None:
        return await self.session.get(Job, job_id, populate_existing=True)

    async def get_owned_job(self, *, owner_id: str, job_id: str) -> Job:
        job = await self.get_job(job_id)
        if job is None or job.owner_id != owner_id:
            raise NotFoundError("job_not_found", f"job {job_id} not found")
        return job

    async def update_job_status(
        self,
        job_id: str,
        *,
        status: JobStatus,
        result: dict[str, Any] | None = None,
        error: dict[str, Any] | None = None,
        count_retry: bool = False,
    ) -> Job:
        job = await self.session.get(Job, job_id, populate_existing=True)
        if not job:
            raise NotFoundError("job_not_found", f"job {job_id} not found")
        job.status = status
        job.result = result
        job.error = error
        if count_retry:
            job.retry_count += 1
        if status == JobStatus.running:
            job.started_at = _utcnow()
        if status in {JobStatus.succeeded, JobStatus.failed, JobStatus.dead_lettered}:
            job.finished_at = _utcnow()
        await self.session.commit()
        await self.session.refresh(job)
        return job


def _job_asset_id(context: JobContext) -> str:
    payload = context.job.payload or {}
    asset_id = payload.get("asset_id") or context.job.asset_id
    if not asset_id:
        raise ValidationError("invalid_job_payload", f"job {context.job.job_id} has no asset_id")
    return asset_id


async def process_asset_job(context: JobContext) -> dict[str, Any]:
    service = IngestService(context.settings, context.storage, context.session)
    return await service.process_asset(_job_asset_id(context), retries_left=context.retries_left)


async def cleanup_job(context: JobContext) -> dict[str, Any]:
    service = IngestService(context.settings, context.storage, context.session)
    return await service.purge_trashed(_job_asset_id(context))


__all__ = [
    "DownloadResult",
    "IngestService",
    "ObjectCleanupReport",
    "cleanup_job",
    "process_asset_job",
]
