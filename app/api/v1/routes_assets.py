from __future__ import annotations

import io
import tempfile
from datetime import datetime, timezone
from typing import Iterator

from fastapi import APIRouter, Header, HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse

from app.api import deps
from app.db.models import Job
from app.ingest.checksum import CHUNK_SIZE

from . import schemas


router = APIRouter(prefix="/assets", tags=["assets"])

SPOOL_MAX_MEMORY = 8 * 1024 * 1024


def _accepted(job: Job, response: Response) -> schemas.JobAcceptedResponse:
    location = f"/v1/jobs/{job.job_id}"
    response.headers["Location"] = location
    return schemas.JobAcceptedResponse(
        job_id=job.job_id,
        asset_id=job.asset_id,
        status=job.status.value,
        location=location,
    )


@router.post("/uploads", response_model=schemas.UploadInitResponse, status_code=status.HTTP_201_CREATED)
async def initiate_upload(
    payload: schemas.UploadInitRequest,
    service: deps.AuthenticatedService,
    context: deps.AuthDependency,
) -> schemas.UploadInitResponse:
    with deps.translate_errors():
        result = await service.initiate_upload(
            owner_id=context.user_id,
            filename=payload.filename,
            content_type=payload.content_type,
            size=payload.size,
            checksum_hex=payload.checksum,
        )
    return schemas.UploadInitResponse(**result)


@router.put("/{asset_id}/content", response_model=schemas.JobAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def upload_content(
    asset_id: str,
    request: Request,
    response: Response,
    service: deps.AuthenticatedService,
    context: deps.AuthDependency,
) -> schemas.JobAcceptedResponse:
    if service.direct_upload_enabled:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="direct_upload_required")

    limit = service.settings.max_upload_size_bytes
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="upload_too_large")

    with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY) as spool:
        received = 0
        async for chunk in request.stream():
            received += len(chunk)
            if received > limit:
                raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="upload_too_large")
            await run_in_threadpool(spool.write, chunk)
        spool.seek(0)
        with deps.translate_errors():
            job = await service.complete_upload(owner_id=context.user_id, asset_id=asset_id, stream=spool)
    return _accepted(job, response)


@router.post("/{asset_id}/complete", response_model=schemas.JobAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def complete_upload(
    asset_id: str,
    response: Response,
    service: deps.AuthenticatedService,
    context: deps.AuthDependency,
) -> schemas.JobAcceptedResponse:
    with deps.translate_errors():
        job = await service.complete_upload(owner_id=context.user_id, asset_id=asset_id)
    return _accepted(job, response)


@router.post("/bulk-upload-check", response_model=schemas.BulkUploadCheckResponse)
async def bulk_upload_check(
    payload: schemas.BulkUploadCheckRequest,
    service: deps.AuthenticatedService,
    context: deps.AuthDependency,
) -> schemas.BulkUploadCheckResponse:
    with deps.translate_errors():
        results = await service.bulk_upload_check(
            owner_id=context.user_id,
            items=[item.model_dump() for item in payload.assets],
        )
    return schemas.BulkUploadCheckResponse(results=[schemas.BulkUploadCheckResult(**item) for item in results])


@router.get("/storage-usage", response_model=schemas.StorageUsageResponse)
async def storage_usage(service: deps.AuthenticatedService, context: deps.AuthDependency) -> schemas.StorageUsageResponse:
    with deps.translate_errors():
        usage = await service.storage_usage(owner_id=context.user_id)
    return schemas.StorageUsageResponse(**usage)


@router.post("/archive/info", response_model=schemas.ArchiveInfoResponse)
async def archive_info(
    payload: schemas.ArchiveRequest,
    service: deps.AuthenticatedService,
    context: deps.AuthDependency,
) -> schemas.ArchiveInfoResponse:
    with deps.translate_errors():
        info = await service.download_info(owner_id=context.user_id, asset_ids=payload.asset_ids)
    return schemas.ArchiveInfoResponse(**info)


@router.post("/archive", response_model=None)
async def download_archive(
    payload: schemas.ArchiveRequest,
    service: deps.AuthenticatedService,
    context: deps.AuthDependency,
) -> StreamingResponse:
    with deps.translate_errors():
        archive, entries = await service.build_archive(owner_id=context.user_id, asset_ids=payload.asset_ids)
    size = await run_in_threadpool(_stream_length, archive)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    headers = {
        "Content-Disposition": f'attachment; filename="pictor-{stamp}.zip"',
        "Content-Length": str(size),
        "X-Asset-Count": str(len(entries)),
    }
    return StreamingResponse(_iter_stream(archive), media_type="application/zip", headers=headers)


@router.get("/{asset_id}", response_model=schemas.AssetResponse)
async def get_asset(
    asset_id: str,
    service: deps.AuthenticatedService,
    context: deps.AuthDependency,
) -> schemas.AssetResponse:
    with deps.translate_errors():
        snapshot = await service.get_asset(owner_id=context.user_id, asset_id=asset_id)
    return schemas.AssetResponse(**snapshot)


def _stream_length(stream) -> int:
    stream.seek(0, io.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size


def _iter_stream(stream, limit: int | None = None) -> Iterator[bytes]:
    remaining = limit
    try:
        while remaining is None or remaining > 0:
            chunk = stream.read(CHUNK_SIZE if remaining is None else min(CHUNK_SIZE, remaining))
            if not chunk:
                break
            if remaining is not None:
                remaining -= len(chunk)
            yield chunk
    finally:
        stream.close()


@router.get("/{asset_id}/download", response_model=None)
async def download_asset(
    asset_id: str,
    service: deps.AuthenticatedService,
    context: deps.AuthDependency,
    thumbnail: str | None = None,
    range_header: str | None = Header(default=None, alias="range"),
) -> schemas.PresignedDownloadResponse | StreamingResponse:
    with deps.translate_errors():
        result = await service.download_asset(
            owner_id=context.user_id,
            asset_id=asset_id,
            thumbnail_kind=thumbnail,
            byte_range=range_header,
        )
    if result.is_redirect:
        return schemas.PresignedDownloadResponse(url=result.url, headers=result.headers, expires_at=result.expires_at)

    headers = {
        "Cache-Control": result.headers["Cache-Control"],
        "Content-Disposition": f'inline; filename="{result.filename}"',
        "Accept-Ranges": "bytes",
    }
    if result.byte_range is None:
        return StreamingResponse(_iter_stream(result.stream), media_type=result.headers["Content-Type"], headers=headers)

    start, end = result.byte_range
    length = end - start + 1
    headers["Content-Range"] = f"bytes {start}-{end}/{result.size}"
    headers["Content-Length"] = str(length)
    return StreamingResponse(
        _iter_stream(result.stream, length),
        status_code=status.HTTP_206_PARTIAL_CONTENT,
        media_type=result.headers["Content-Type"],
        headers=headers,
    )


@router.delete("/{asset_id}", response_model=schemas.AssetStateResponse)
async def delete_asset(
    asset_id: str,
    service: deps.AuthenticatedService,
    context: deps.AuthDependency,
) -> schemas.AssetStateResponse:
    with deps.translate_errors():
        result = await service.delete_asset(owner_id=context.user_id, asset_id=asset_id)
    return schemas.AssetStateResponse(**result)


@router.post("/{asset_id}/restore", response_model=schemas.AssetResponse)
async def restore_asset(
    asset_id: str,
    service: deps.AuthenticatedService,
    context: deps.AuthDependency,
) -> schemas.AssetResponse:
    with deps.translate_errors():
        snapshot = await service.restore_asset(owner_id=context.user_id, asset_id=asset_id)
    return schemas.AssetResponse(**snapshot)


@router.delete("/{asset_id}/permanent", response_model=schemas.AssetStateResponse)
async def hard_delete_asset(
    asset_id: str,
    service: deps.AuthenticatedService,
    context: deps.AuthDependency,
) -> schemas.AssetStateResponse:
    with deps.translate_errors():
        result = await service.hard_delete_asset(owner_id=context.user_id, asset_id=asset_id)
    return schemas.AssetStateResponse(**result)


__all__ = ["router"]
