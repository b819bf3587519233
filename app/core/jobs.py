from __future__ import annotations

import asyncio
import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from redis import Redis
from rq import Queue, Retry
from rq.exceptions import NoSuchJobError
from rq.job import Job as RQJob
from rq.registry import FailedJobRegistry, ScheduledJobRegistry, StartedJobRegistry

from app.core.errors import NotFoundError
from app.db.models import JobPriority, JobType

from .config import Settings, get_settings
from .logging import get_logger

logger = get_logger(component="jobs")

# workers drain queues in this order
PRIORITY_ORDER: Tuple[JobPriority, ...] = (
    JobPriority.critical,
    JobPriority.high,
    JobPriority.normal,
    JobPriority.low,
)

RUN_JOB_PATH = "app.workers.tasks.run_job"

Handler = Callable[[Any], Awaitable[Optional[dict]]]


@dataclass(slots=True)
class JobContext:
    """Everything a handler needs to run one job attempt."""

    job: Any
    session: Any
    settings: Settings
    storage: Any
    retries_left: int = 0


class QueueJobState(str, enum.Enum):
    pending = "pending"
    scheduled = "scheduled"
    active = "active"
    done = "done"
    failed = "failed"
    dead = "dead"
    unknown = "unknown"


@dataclass(slots=True)
class QueueStats:
    name: str
    priority: str
    pending: int = 0
    scheduled: int = 0
    active: int = 0
    dead: int = 0
    paused: bool = False


class HandlerRegistry:
    """Maps job types onto async handlers. Each backend owns its own registry."""

    def __init__(self) -> None:
        self._handlers: Dict[JobType, Handler] = {}

    def register(self, job_type: JobType, handler: Handler) -> None:
        self._handlers[JobType(job_type)] = handler

    def get(self, job_type: JobType) -> Optional[Handler]:
        return self._handlers.get(JobType(job_type))

    def __contains__(self, job_type: object) -> bool:
        try:
            return JobType(job_type) in self._handlers  # type: ignore[arg-type]
        except ValueError:
            return False

    async def dispatch(self, job_type: JobType, context: Any) -> Optional[dict]:
        handler = self.get(job_type)
        if handler is None:
            raise NotFoundError("handler_not_registered", f"no handler registered for {JobType(job_type).value}")
        return await handler(context)


def queue_name(priority: JobPriority | str, prefix: str = "pictor") -> str:
    return f"{prefix}-{JobPriority(priority).value}"


def parse_queue_name(name: str, prefix: str = "pictor") -> JobPriority:
    """Return the priority a queue name stands for, or raise ``NotFoundError``."""
    for priority in JobPriority:
        if name in {queue_name(priority, prefix), priority.value}:
            return priority
    raise NotFoundError("queue_not_found", f"unknown queue: {name}")


class BaseJobBackend(ABC):
    def __init__(self, settings: Settings, handlers: HandlerRegistry | None = None):
        self.settings = settings
        self._handlers = handlers

    @property
    def handlers(self) -> HandlerRegistry:
        if self._handlers is None:
            from app.workers.tasks import build_handler_registry

            self._handlers = build_handler_registry()
        return self._handlers

    def queue_name(self, priority: JobPriority | str) -> str:
        return queue_name(priority, self.settings.job_queue_prefix)

    def parse_queue_name(self, name: str) -> JobPriority:
        return parse_queue_name(name, self.settings.job_queue_prefix)

    @abstractmethod
    async def enqueue(self, job_id: str, job_type: JobType, priority: JobPriority = JobPriority.normal) -> None: ...

    @abstractmethod
    async def schedule(
        self,
        job_id: str,
        job_type: JobType,
        process_at: datetime,
        priority: JobPriority = JobPriority.normal,
    ) -> None: ...

    @abstractmethod
    async def get_status(self, job_id: str) -> QueueJobState: ...

    @abstractmethod
    async def pause(self, queue: str) -> None: ...

    @abstractmethod
    async def resume(self, queue: str) -> None: ...

    @abstractmethod
    async def is_paused(self, queue: str) -> bool: ...

    @abstractmethod
    async def clear(self, queue: str) -> int: ...

    @abstractmethod
    async def stats(self) -> List[QueueStats]: ...

    @abstractmethod
    async def dead_letters(self, queue: str) -> List[str]: ...

    async def drain(self) -> None:
        """Wait for work started in this process; a no-op for out-of-process workers."""


@dataclass(order=True)
class _PendingJob:
    process_at: datetime
    job_id: str = field(compare=False)
    job_type: JobType = field(compare=False)
    priority: JobPriority = field(compare=False)


class ImmediateJobBackend(BaseJobBackend):
    """Runs jobs in-process as background tasks. Used in development and tests.

    :meth:`enqueue` returns as soon as the job is started; each attempt runs
    in a worker thread. Retries happen in a loop with the configured backoff
    and jobs that exhaust their retries land in an in-memory dead-letter
    list. Scheduled jobs wait until :meth:`run_due` is called, and jobs for a
    paused queue wait until :meth:`resume`. :meth:`drain` waits for every
    started job.
    """

    def __init__(self, settings: Settings, handlers: HandlerRegistry | None = None):
        super().__init__(settings, handlers)
        self._states: Dict[str, QueueJobState] = {}
        self._paused: set[JobPriority] = set()
        self._held: Dict[JobPriority, List[_PendingJob]] = {priority: [] for priority in JobPriority}
        self._scheduled: List[_PendingJob] = []
        self._dead: Dict[JobPriority, List[str]] = {priority: [] for priority in JobPriority}
        self._tasks: set[asyncio.Task] = set()

    async def enqueue(self, job_id: str, job_type: JobType, priority: JobPriority = JobPriority.normal) -> None:
        priority = JobPriority(priority)
        self._states[job_id] = QueueJobState.pending
        if priority in self._paused:
            self._held[priority].append(_PendingJob(datetime.now(timezone.utc), job_id, JobType(job_type), priority))
            return
        self._start(job_id, JobType(job_type), priority)

    def _start(self, job_id: str, job_type: JobType, priority: JobPriority) -> None:
        task = asyncio.get_running_loop().create_task(self._execute(job_id, job_type, priority), name=f"job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("job_task_cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("job_task_crashed", task=task.get_name(), error=str(exc))

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def schedule(
        self,
        job_id: str,
        job_type: JobType,
        process_at: datetime,
        priority: JobPriority = JobPriority.normal,
    ) -> None:
        self._states[job_id] = QueueJobState.scheduled
        self._scheduled.append(_PendingJob(process_at, job_id, JobType(job_type), JobPriority(priority)))
        self._scheduled.sort()

    async def run_due(self, now: datetime | None = None) -> int:
        """Promote every scheduled job whose time has come; returns how many were promoted."""
        now = now or datetime.now(timezone.utc)
        due = [item for item in self._scheduled if item.process_at <= now]
        self._scheduled = [item for item in self._scheduled if item.process_at > now]
        for item in due:
            await self.enqueue(item.job_id, item.job_type, item.priority)
        return len(due)

    async def _execute(self, job_id: str, job_type: JobType, priority: JobPriority) -> None:
        from app.workers.tasks import run_job

        max_retries = max(self.settings.job_max_retries, 0)
        intervals = self.settings.retry_intervals
        bound = logger.bind(job_id=job_id, job_type=job_type.value)
        for attempt in range(max_retries + 1):
            retries_left = max_retries - attempt
            self._states[job_id] = QueueJobState.active
            try:
                await asyncio.to_thread(run_job, job_id, retries_left, handlers=self.handlers)
            except Exception as exc:
                if retries_left == 0:
                    self._states[job_id] = QueueJobState.dead
                    self._dead[priority].append(job_id)
                    bound.error("job_dead_lettered", attempts=attempt + 1, error=str(exc))
                    return
                delay = intervals[attempt] if attempt < len(intervals) else 0
                bound.warning("job_retry_scheduled", attempt=attempt + 1, delay_s=delay, error=str(exc))
                self._states[job_id] = QueueJobState.pending
                if delay:
                    await asyncio.sleep(delay)
                continue
            self._states[job_id] = QueueJobState.done
            return

    async def get_status(self, job_id: str) -> QueueJobState:
        return self._states.get(job_id, QueueJobState.unknown)

    async def pause(self, queue: str) -> None:
        self._paused.add(self.parse_queue_name(queue))

    async def resume(self, queue: str) -> None:
        priority = self.parse_queue_name(queue)
        self._paused.discard(priority)
        held, self._held[priority] = self._held[priority], []
        for item in held:
            self._start(item.job_id, item.job_type, item.priority)

    async def is_paused(self, queue: str) -> bool:
        return self.parse_queue_name(queue) in self._paused

    async def clear(self, queue: str) -> int:
        priority = self.parse_queue_name(queue)
        removed = [item.job_id for item in self._held[priority]]
        removed += [item.job_id for item in self._scheduled if item.priority == priority]
        self._held[priority] = []
        self._scheduled = [item for item in self._scheduled if item.priority != priority]
        for job_id in removed:
            self._states.pop(job_id, None)
        return len(removed)

    async def stats(self) -> List[QueueStats]:
        return [
            QueueStats(
                name=self.queue_name(priority),
                priority=priority.value,
                pending=len(self._held[priority]),
                scheduled=sum(1 for item in self._scheduled if item.priority == priority),
                dead=len(self._dead[priority]),
                paused=priority in self._paused,
            )
            for priority in PRIORITY_ORDER
        ]

    async def dead_letters(self, queue: str) -> List[str]:
        return list(self._dead[self.parse_queue_name(queue)])


_RQ_STATE_MAP = {
    "queued": QueueJobState.pending,
    "scheduled": QueueJobState.scheduled,
    "deferred": QueueJobState.scheduled,
    "started": QueueJobState.active,
    "finished": QueueJobState.done,
    # rq only leaves a job failed once its retries are spent
    "failed": QueueJobState.dead,
    "stopped": QueueJobState.failed,
    "canceled": QueueJobState.failed,
}


class RQJobBackend(BaseJobBackend):
    """Redis Queue backend with one rq queue per priority."""

    def __init__(self, settings: Settings, connection: Redis, handlers: HandlerRegistry | None = None):
        super().__init__(settings, handlers)
        self.connection = connection
        self.queues: Dict[JobPriority, Queue] = {
            priority: Queue(self.queue_name(priority), connection=connection) for priority in JobPriority
        }
        self.paused_key = f"{settings.job_queue_prefix}:paused-queues"

    def ordered_queues(self) -> List[Queue]:
        return [self.queues[priority] for priority in PRIORITY_ORDER]

    def _job_options(self, job_id: str) -> Dict[str, Any]:
        options: Dict[str, Any] = {"job_id": job_id, "job_timeout": self.settings.job_timeout_s}
        if self.settings.job_max_retries > 0:
            options["retry"] = Retry(max=self.settings.job_max_retries, interval=self.settings.retry_intervals)
        return options

    async def enqueue(
        self, job_id: str, job_type: JobType, priority: JobPriority = JobPriority.normal
    ) -> None:  # pragma: no cover - requires redis
        self.queues[JobPriority(priority)].enqueue(RUN_JOB_PATH, job_id, **self._job_options(job_id))

    async def schedule(
        self,
        job_id: str,
        job_type: JobType,
        process_at: datetime,
        priority: JobPriority = JobPriority.normal,
    ) -> None:  # pragma: no cover - requires redis
        self.queues[JobPriority(priority)].enqueue_at(process_at, RUN_JOB_PATH, job_id, **self._job_options(job_id))

    def defer_if_paused(self, queue: str, job_id: str) -> bool:
        """Push a job picked up from a paused queue back by the pause re-check delay."""
        if not self.connection.sismember(self.paused_key, queue):
            return False
        priority = self.parse_queue_name(queue)
        delay = timedelta(seconds=self.settings.job_pause_recheck_s)
        options = self._job_options(f"{job_id}-deferred-{int(datetime.now(timezone.utc).timestamp())}")
        self.queues[priority].enqueue_in(delay, RUN_JOB_PATH, job_id, **options)
        logger.info("job_deferred_paused_queue", job_id=job_id, queue=queue, delay_s=delay.total_seconds())
        return True

    async def get_status(self, job_id: str) -> QueueJobState:
        try:
            job = RQJob.fetch(job_id, connection=self.connection)
        except NoSuchJobError:
            return QueueJobState.unknown
        status = job.get_status(refresh=True)
        if status is None:
            return QueueJobState.unknown
        return _RQ_STATE_MAP.get(getattr(status, "value", str(status)), QueueJobState.unknown)

    async def pause(self, queue: str) -> None:
        self.connection.sadd(self.paused_key, self.queue_name(self.parse_queue_name(queue)))

    async def resume(self, queue: str) -> None:
        self.connection.srem(self.paused_key, self.queue_name(self.parse_queue_name(queue)))

    async def is_paused(self, queue: str) -> bool:
        return bool(self.connection.sismember(self.paused_key, self.queue_name(self.parse_queue_name(queue))))

    async def clear(self, queue: str) -> int:
        rq_queue = self.queues[self.parse_queue_name(queue)]
        count = rq_queue.count
        rq_queue.empty()
        return count

    async def stats(self) -> List[QueueStats]:
        paused = {member.decode() if isinstance(member, bytes) else member for member in self.connection.smembers(self.paused_key)}
        results: List[QueueStats] = []
        for priority in PRIORITY_ORDER:
            rq_queue = self.queues[priority]
            results.append(
                QueueStats(
                    name=rq_queue.name,
                    priority=priority.value,
                    pending=rq_queue.count,
                    scheduled=ScheduledJobRegistry(queue=rq_queue).count,
                    active=StartedJobRegistry(queue=rq_queue).count,
                    dead=FailedJobRegistry(queue=rq_queue).count,
                    paused=rq_queue.name in paused,
                )
            )
        return results

    async def dead_letters(self, queue: str) -> List[str]:
        rq_queue = self.queues[self.parse_queue_name(queue)]
        return list(FailedJobRegistry(queue=rq_queue).get_job_ids())


def build_job_backend(settings: Settings, handlers: HandlerRegistry | None = None) -> BaseJobBackend:
    backend = settings.normalized_job_backend
    if backend == "immediate":
        return ImmediateJobBackend(settings, handlers)
    if backend == "rq":  # pragma: no cover - requires redis
        connection = Redis.from_url(settings.redis_url)
        return RQJobBackend(settings, connection, handlers)
    raise ValueError(f"Unsupported job backend: {settings.job_queue_backend}")


@lru_cache()
def get_job_backend() -> BaseJobBackend:
    return build_job_backend(get_settings())


__all__ = [
    "BaseJobBackend",
    "HandlerRegistry",
    "ImmediateJobBackend",
    "JobContext",
    "PRIORITY_ORDER",
    "QueueJobState",
    "QueueStats",
    "RQJobBackend",
    "build_job_backend",
    "get_job_backend",
    "parse_queue_name",
    "queue_name",
]
