from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from app.core.errors import NotFoundError
from app.core.jobs import (
    PRIORITY_ORDER,
    HandlerRegistry,
    ImmediateJobBackend,
    QueueJobState,
    build_job_backend,
    parse_queue_name,
    queue_name,
)
from app.db.models import Job, JobPriority, JobStatus, JobType
from tests.conftest import run_in_session


async def _create_job(session, job_type: JobType = JobType.process_asset, priority: JobPriority = JobPriority.normal) -> str:
    job = Job(
        job_id=uuid4().hex,
        job_type=job_type,
        owner_id="user-1",
        priority=priority,
        status=JobStatus.queued,
        payload={},
    )
    session.add(job)
    await session.commit()
    return job.job_id


async def _load(session, job_id: str) -> Job:
    return await session.get(Job, job_id, populate_existing=True)


def _registry(handler) -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register(JobType.process_asset, handler)
    return registry


def test_queue_names():
    assert queue_name(JobPriority.high) == "pictor-high"
    assert queue_name("low", "media") == "media-low"
    assert parse_queue_name("pictor-critical") == JobPriority.critical
    assert parse_queue_name("normal") == JobPriority.normal
    with pytest.raises(NotFoundError):
        parse_queue_name("pictor-urgent")
    assert PRIORITY_ORDER[0] == JobPriority.critical
    assert PRIORITY_ORDER[-1] == JobPriority.low


def test_registry_dispatch():
    registry = HandlerRegistry()

    async def handler(context):
        return {"seen": context}

    registry.register(JobType.cleanup, handler)
    assert JobType.cleanup in registry
    assert "cleanup" in registry
    assert "bogus" not in registry
    assert asyncio.run(registry.dispatch(JobType.cleanup, "ctx")) == {"seen": "ctx"}
    with pytest.raises(NotFoundError):
        asyncio.run(registry.dispatch(JobType.transcode, "ctx"))


def test_inline_backend_selected(configure_environment):
    assert isinstance(build_job_backend(configure_environment), ImmediateJobBackend)


def test_successful_job_records_result(configure_environment):
    settings = configure_environment

    async def handler(context):
        assert context.retries_left == settings.job_max_retries
        return {"ok": True}

    backend = ImmediateJobBackend(settings, _registry(handler))

    async def scenario(session):
        job_id = await _create_job(session)
        await backend.enqueue(job_id, JobType.process_asset)
        await backend.drain()
        return await _load(session, job_id), await backend.get_status(job_id)

    job, state = run_in_session(settings, scenario)
    assert job.status == JobStatus.succeeded
    assert job.result == {"ok": True}
    assert job.retry_count == 0
    assert job.started_at is not None and job.finished_at is not None
    assert state == QueueJobState.done


def test_failed_attempt_is_retried(configure_environment):
    settings = configure_environment
    attempts = {"count": 0}

    async def flaky(context):
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise RuntimeError("transient")
        return {"attempt": attempts["count"]}

    backend = ImmediateJobBackend(settings, _registry(flaky))

    async def scenario(session):
        job_id = await _create_job(session)
        await backend.enqueue(job_id, JobType.process_asset)
        await backend.drain()
        return await _load(session, job_id)

    job = run_in_session(settings, scenario)
    assert attempts["count"] == 2
    assert job.status == JobStatus.succeeded
    assert job.retry_count == 1
    assert job.result == {"attempt": 2}
    assert job.error is None


def test_exhausted_retries_dead_letter(configure_environment):
    settings = configure_environment

    async def broken(context):
        raise RuntimeError("always broken")

    backend = ImmediateJobBackend(settings, _registry(broken))

    async def scenario(session):
        job_id = await _create_job(session, priority=JobPriority.high)
        await backend.enqueue(job_id, JobType.process_asset, JobPriority.high)
        await backend.drain()
        return (
            await _load(session, job_id),
            await backend.get_status(job_id),
            await backend.dead_letters("pictor-high"),
            await backend.stats(),
        )

    job, state, dead, stats = run_in_session(settings, scenario)
    assert job.status == JobStatus.dead_lettered
    assert job.retry_count == settings.job_max_retries
    assert job.error == {"code": "RuntimeError", "message": "always broken"}
    assert state == QueueJobState.dead
    assert dead == [job.job_id]
    high = next(item for item in stats if item.priority == "high")
    assert high.dead == 1


def test_missing_handler_fails_without_retry(configure_environment):
    settings = configure_environment
    backend = ImmediateJobBackend(settings, HandlerRegistry())

    async def scenario(session):
        job_id = await _create_job(session, job_type=JobType.transcode)
        await backend.enqueue(job_id, JobType.transcode)
        await backend.drain()
        return await _load(session, job_id)

    job = run_in_session(settings, scenario)
    assert job.status == JobStatus.failed
    assert job.error["code"] == "handler_not_registered"
    assert job.retry_count == 0


def test_paused_queue_holds_jobs_until_resume(configure_environment):
    settings = configure_environment
    ran: list[str] = []

    async def handler(context):
        ran.append(context.job.job_id)
        return None

    backend = ImmediateJobBackend(settings, _registry(handler))

    async def scenario(session):
        await backend.pause("normal")
        assert await backend.is_paused("pictor-normal")
        job_id = await _create_job(session)
        await backend.enqueue(job_id, JobType.process_asset)
        assert ran == []
        assert await backend.get_status(job_id) == QueueJobState.pending
        stats = {item.priority: item for item in await backend.stats()}
        assert stats["normal"].pending == 1 and stats["normal"].paused

        # other priorities keep flowing
        urgent = await _create_job(session, priority=JobPriority.critical)
        await backend.enqueue(urgent, JobType.process_asset, JobPriority.critical)
        await backend.drain()
        assert ran == [urgent]

        await backend.resume("pictor-normal")
        await backend.drain()
        assert not await backend.is_paused("normal")
        return job_id, await _load(session, job_id)

    job_id, job = run_in_session(settings, scenario)
    assert ran[-1] == job_id
    assert job.status == JobStatus.succeeded


def test_clear_drops_held_and_scheduled_jobs(configure_environment):
    settings = configure_environment
    backend = ImmediateJobBackend(settings, _registry(lambda context: None))
    later = datetime.now(timezone.utc) + timedelta(hours=1)

    async def scenario():
        await backend.pause("low")
        await backend.enqueue("held-1", JobType.process_asset, JobPriority.low)
        await backend.schedule("later-1", JobType.cleanup, later, JobPriority.low)
        await backend.schedule("later-2", JobType.cleanup, later, JobPriority.normal)
        cleared = await backend.clear("pictor-low")
        state = await backend.get_status("held-1")
        promoted = await backend.run_due(later)
        await backend.drain()
        return cleared, state, promoted

    cleared, state, promoted = asyncio.run(scenario())
    assert cleared == 2
    assert state == QueueJobState.unknown
    assert promoted == 1


def test_scheduled_jobs_run_when_due(configure_environment):
    settings = configure_environment

    async def handler(context):
        return {"scheduled_for": context.job.scheduled_for is not None}

    backend = ImmediateJobBackend(settings, _registry(handler))
    process_at = datetime.now(timezone.utc) + timedelta(minutes=5)

    async def scenario(session):
        job_id = await _create_job(session)
        await backend.schedule(job_id, JobType.process_asset, process_at)
        assert await backend.get_status(job_id) == QueueJobState.scheduled
        assert await backend.run_due(process_at - timedelta(seconds=1)) == 0
        assert await backend.run_due(process_at) == 1
        await backend.drain()
        assert await backend.run_due(process_at) == 0
        return await _load(session, job_id), await backend.get_status(job_id)

    job, state = run_in_session(settings, scenario)
    assert job.status == JobStatus.succeeded
    assert state == QueueJobState.done


def test_unknown_queue_is_not_found(configure_environment):
    backend = ImmediateJobBackend(configure_environment, HandlerRegistry())
    with pytest.raises(NotFoundError):
        asyncio.run(backend.pause("pictor-urgent"))


def test_enqueue_returns_before_job_finishes(configure_environment):
    settings = configure_environment
    release = threading.Event()

    async def slow(context):
        release.wait(timeout=10)
        return {"ok": True}

    backend = ImmediateJobBackend(settings, _registry(slow))

    async def scenario(session):
        job_id = await _create_job(session)
        try:
            await backend.enqueue(job_id, JobType.process_asset)
            started = await backend.get_status(job_id)
        finally:
            release.set()
        await backend.drain()
        return started, await backend.get_status(job_id), await _load(session, job_id)

    started, finished, job = run_in_session(settings, scenario)
    assert started in {QueueJobState.pending, QueueJobState.active}
    assert finished == QueueJobState.done
    assert job.result == {"ok": True}
