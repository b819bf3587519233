from __future__ import annotations

import asyncio

from rq import get_current_job

from app.core.config import get_settings
from app.core.db import create_engine, create_session_factory
from app.core.jobs import HandlerRegistry, JobContext, RQJobBackend, get_job_backend
from app.core.logging import configure_logging, get_logger
from app.core.storage import get_storage
from app.db.models import JobStatus, JobType
from app.services.ingest_service import IngestService, cleanup_job, process_asset_job

logger = get_logger(component="worker")


def build_handler_registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register(JobType.process_asset, process_asset_job)
    registry.register(JobType.cleanup, cleanup_job)
    return registry


def _current_rq_job_state(job_id: str) -> tuple[int, bool]:
    """Return ``(retries_left, deferred)`` for the rq job executing this call, if any."""
    current = get_current_job()
    if current is None:
        return 0, False
    backend = get_job_backend()
    if isinstance(backend, RQJobBackend) and backend.defer_if_paused(current.origin, job_id):
        return 0, True
    retries_left = getattr(current, "retries_left", None)
    return int(retries_left or 0), False


def run_job(job_id: str, retries_left: int | None = None, *, handlers: HandlerRegistry | None = None) -> None:
    """Entry-point executed by the job backend (RQ or inline).

    A handler error is recorded on the job row and re-raised so the queue can
    retry it; once no retries are left the row is marked dead-lettered.
    """

    settings = get_settings()
    configure_logging(settings.log_level, json_logs=settings.json_logs)
    bound = logger.bind(job_id=job_id)

    deferred = False
    if retries_left is None:
        retries_left, deferred = _current_rq_job_state(job_id)
    registry = handlers or build_handler_registry()
    storage = get_storage(settings)

    engine = create_engine(settings)
    session_factory = create_session_factory(engine)

    async def _runner() -> None:
        async with session_factory() as session:
            service = IngestService(settings, storage, session)
            job = await service.get_job(job_id)
            if not job:
                bound.error("job_not_found")
                return
            if deferred:
                await service.update_job_status(job_id, status=JobStatus.scheduled)
                return
            job_logger = bound.bind(job_type=job.job_type.value, asset_id=job.asset_id)
            if job.job_type not in registry:
                job_logger.error("job_handler_missing")
                await service.update_job_status(
                    job_id,
                    status=JobStatus.failed,
                    error={"code": "handler_not_registered", "message": f"no handler for {job.job_type.value}"},
                )
                return

            await service.update_job_status(job_id, status=JobStatus.running)
            context = JobContext(job=job, session=session, settings=settings, storage=storage, retries_left=retries_left)
            try:
                result = await registry.dispatch(job.job_type, context)
            except Exception as exc:
                await session.rollback()
                job_logger.exception("job_failed", retries_left=retries_left)
                terminal = retries_left <= 0
                await service.update_job_status(
                    job_id,
                    status=JobStatus.dead_lettered if terminal else JobStatus.queued,
                    error={"code": getattr(exc, "code", type(exc).__name__), "message": str(exc)},
                    count_retry=not terminal,
                )
                if terminal:
                    job_logger.error("job_dead_lettered")
                raise
            await service.update_job_status(job_id, status=JobStatus.succeeded, result=result)
            job_logger.info("job_succeeded")

    async def _main() -> None:
        try:
            await _runner()
        finally:
            await engine.dispose()

    try:
        asyncio.run(_main())
    finally:
        storage.close()


__all__ = ["build_handler_registry", "run_job"]
