from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.auth import AuthContext, get_auth_context, require_admin
from app.core.config import Settings, get_settings
from app.core.errors import (
    ConflictError,
    NotFoundError,
    OperationNotSupportedError,
    PictorError,
    RangeNotSatisfiableError,
    StorageError,
    UploadTooLargeError,
    ValidationError,
)
from app.core.jobs import BaseJobBackend, get_job_backend
from app.core.logging import get_logger
from app.services.duplicates import DuplicateIndex
from app.services.ingest_service import IngestService
from app.storage import StorageBackend

logger = get_logger(component="api")


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    session_factory = request.app.state.session_factory
    if not isinstance(session_factory, async_sessionmaker):  # pragma: no cover
        raise RuntimeError("session_factory_not_configured")
    async with session_factory() as session:
        yield session


def get_storage(request: Request) -> StorageBackend:
    storage: StorageBackend = request.app.state.storage
    return storage


def get_app_settings() -> Settings:
    return get_settings()


def get_jobs() -> BaseJobBackend:
    return get_job_backend()


async def get_ingest_service(
    session: AsyncSession = Depends(get_session),
    storage: StorageBackend = Depends(get_storage),
    settings: Settings = Depends(get_app_settings),
    jobs: BaseJobBackend = Depends(get_jobs),
) -> AsyncIterator[IngestService]:
    service = IngestService(settings, storage, session, jobs=jobs)
    yield service


async def get_duplicate_index(session: AsyncSession = Depends(get_session)) -> DuplicateIndex:
    return DuplicateIndex(session)


AuthenticatedService = Annotated[IngestService, Depends(get_ingest_service)]
DuplicatesDependency = Annotated[DuplicateIndex, Depends(get_duplicate_index)]
JobsDependency = Annotated[BaseJobBackend, Depends(get_jobs)]
AuthDependency = Annotated[AuthContext, Depends(get_auth_context)]
AdminDependency = Annotated[AuthContext, Depends(require_admin)]


def status_for(exc: PictorError) -> int:
    # order matters: ObjectNotFoundError is both a StorageError and a NotFoundError
    if isinstance(exc, UploadTooLargeError):
        return status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    if isinstance(exc, RangeNotSatisfiableError):
        return status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, OperationNotSupportedError):
        return status.HTTP_501_NOT_IMPLEMENTED
    if isinstance(exc, StorageError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@contextmanager
def translate_errors() -> Iterator[None]:
    """Re-raise domain errors as ``HTTPException`` with their snake_case code as detail."""
    try:
        yield
    except PictorError as exc:
        code = status_for(exc)
        if code >= 500:
            logger.error("request_failed", code=exc.code, error=str(exc))
        headers = None
        if isinstance(exc, RangeNotSatisfiableError):
            headers = {"Content-Range": f"bytes */{exc.size}", "Accept-Ranges": "bytes"}
        raise HTTPException(status_code=code, detail=exc.code, headers=headers) from exc


__all__ = [
    "get_session",
    "get_storage",
    "get_app_settings",
    "get_jobs",
    "get_ingest_service",
    "get_duplicate_index",
    "AuthenticatedService",
    "DuplicatesDependency",
    "JobsDependency",
    "AuthDependency",
    "AdminDependency",
    "status_for",
    "translate_errors",
]
