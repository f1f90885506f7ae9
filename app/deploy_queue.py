from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Awaitable, Callable, Deque, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from app.dependencies import get_sessionmaker
from app.errors import CommandError, EntityBusyError, ProcyardError, ValidationError
from app.logger import get_logger
from app.metrics import record_deploy_job
from app.models.service import STATUS_ONLINE, Service
from app.services import lifecycle, reconciler
from app.services.events import record_event
from app.services.supervisor import ProcessSupervisor, get_supervisor
from app.utils import utcnow

_logger = get_logger("deploy_queue")

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_RETRYING = "retrying"
JOB_SUCCEEDED = "succeeded"
JOB_FAILED = "failed"
JOB_SKIPPED = "skipped"

ACTIONS = ("start", "reload", "restart", "stop")


@dataclass
class DeployJob:
    service_id: str
    action: str
    source: str = "api"
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    status: str = JOB_QUEUED
    attempts: int = 0
    error: Optional[str] = None
    failed_step: Optional[str] = None
    enqueued_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def done(self) -> bool:
        return self.status in {JOB_SUCCEEDED, JOB_FAILED, JOB_SKIPPED}


JobRunner = Callable[[AsyncSession, DeployJob, ProcessSupervisor], Awaitable[lifecycle.LifecycleResult]]


async def run_lifecycle_action(
    session: AsyncSession,
    job: DeployJob,
    supervisor: ProcessSupervisor,
) -> lifecycle.LifecycleResult:
    operations = {
        "start": lifecycle.start,
        "reload": lifecycle.reload,
        "restart": lifecycle.restart,
        "stop": lifecycle.stop,
    }
    return await operations[job.action](session, job.service_id, supervisor=supervisor)


class DeployQueue:
    """Per-service workers for lifecycle jobs that must outlive the request that queued them.

    Jobs for one service run in submission order; different services run
    concurrently. Every outcome is kept in a bounded in-memory history and
    recorded as an event, so a webhook-triggered reload that fails is still
    visible later.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        supervisor_factory: Callable[[], ProcessSupervisor],
        *,
        runner: JobRunner = run_lifecycle_action,
        max_attempts: int = 2,
        retry_delay_seconds: float = 10.0,
        history_size: int = 200,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._supervisor_factory = supervisor_factory
        self._runner = runner
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay_seconds
        self._queues: Dict[str, asyncio.Queue[DeployJob]] = {}
        self._workers: Dict[str, asyncio.Task[None]] = {}
        self._history: Deque[DeployJob] = deque(maxlen=max(1, history_size))
        self._index: Dict[str, DeployJob] = {}
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def pending(self) -> int:
        return sum(queue.qsize() for queue in self._queues.values())

    def submit(self, service_id: str, *, action: str, source: str = "api") -> DeployJob:
        if action not in ACTIONS:
            raise ValidationError(f"Unsupported deploy action {action}")
        job = DeployJob(service_id=service_id, action=action, source=source)
        if len(self._history) == self._history.maxlen:
            evicted = self._history[0]
            self._index.pop(evicted.id, None)
        self._history.append(job)
        self._index[job.id] = job
        queue = self._queues.setdefault(service_id, asyncio.Queue())
        queue.put_nowait(job)
        if self._started:
            self._ensure_worker(service_id)
        _logger.info(
            "job.queued",
            "Queued deploy job",
            job_id=job.id,
            service_id=service_id,
            action=action,
            source=source,
            depth=queue.qsize(),
        )
        return job

    def get(self, job_id: str) -> Optional[DeployJob]:
        return self._index.get(job_id)

    def jobs(self, service_id: Optional[str] = None) -> List[DeployJob]:
        items = list(reversed(self._history))
        if service_id:
            items = [job for job in items if job.service_id == service_id]
        return items

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        for service_id in list(self._queues):
            self._ensure_worker(service_id)
        _logger.info("queue.start", "Started deploy queue", services=len(self._queues))

    async def stop(self) -> None:
        self._started = False
        workers = list(self._workers.values())
        self._workers.clear()
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        _logger.info("queue.stop", "Stopped deploy queue", workers=len(workers), pending=self.pending())

    async def join(self) -> None:
        await asyncio.gather(*(queue.join() for queue in list(self._queues.values())))

    def _ensure_worker(self, service_id: str) -> None:
        worker = self._workers.get(service_id)
        if worker is not None and not worker.done():
            return
        self._workers[service_id] = asyncio.create_task(
            self._run(self._queues[service_id]), name=f"procyard-deploy-{service_id}"
        )

    async def _run(self, queue: asyncio.Queue[DeployJob]) -> None:
        while True:
            job = await queue.get()
            try:
                await self.process(job)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                job.status = JOB_FAILED
                job.error = job.error or "worker crashed"
                job.finished_at = utcnow()
                _logger.exception(
                    "job.crash",
                    "Deploy job crashed the worker iteration",
                    job_id=job.id,
                    service_id=job.service_id,
                )
            finally:
                queue.task_done()

    async def process(self, job: DeployJob) -> DeployJob:
        with _logger.context(job_id=job.id, service_id=job.service_id):
            while not job.done:
                job.attempts += 1
                job.status = JOB_RUNNING
                retry = await self._attempt(job)
                if job.done:
                    break
                if retry and job.attempts < self._max_attempts:
                    job.status = JOB_RETRYING
                    _logger.warning(
                        "job.retry",
                        "Deploy job failed; retrying",
                        action=job.action,
                        attempt=job.attempts,
                        error=job.error,
                        delay_seconds=self._retry_delay,
                    )
                    await asyncio.sleep(self._retry_delay)
                    continue
                job.status = JOB_FAILED
            job.finished_at = utcnow()
            record_deploy_job(action=job.action, result=job.status)
            await self._record(job)
        return job

    async def _attempt(self, job: DeployJob) -> bool:
        """Run one attempt; return whether a failure is worth retrying."""
        async with self._sessionmaker() as session:
            try:
                result = await self._runner(session, job, self._supervisor_factory())
            except EntityBusyError as exc:
                job.error = exc.detail
                return True
            except CommandError as exc:
                job.error = str(exc)
                return True
            except ProcyardError as exc:
                job.error = exc.detail
                return False
        if not result.applicable:
            job.status = JOB_SKIPPED
            job.error = result.message
            return False
        if result.success:
            job.status = JOB_SUCCEEDED
            job.error = None
            job.failed_step = None
            return False
        job.error = result.message
        job.failed_step = result.failed_step
        return True

    async def _record(self, job: DeployJob) -> None:
        level = {JOB_SUCCEEDED: "INFO", JOB_SKIPPED: "WARNING"}.get(job.status, "ERROR")
        async with self._sessionmaker() as session:
            await record_event(
                session,
                category="deployments",
                name=f"deploy.{job.action}",
                level=level,
                subject_id=job.service_id,
                fields={
                    "job_id": job.id,
                    "source": job.source,
                    "status": job.status,
                    "attempts": job.attempts,
                    "error": job.error,
                    "failed_step": job.failed_step,
                },
            )
            await session.commit()
        log = _logger.info if job.status == JOB_SUCCEEDED else _logger.warning
        log(
            "job.finish",
            "Deploy job finished",
            action=job.action,
            source=job.source,
            status=job.status,
            attempts=job.attempts,
            error=job.error,
        )

    async def enqueue_autostart(self) -> List[DeployJob]:
        """Queue a start for every autostart service the supervisor is not running."""
        async with self._sessionmaker() as session:
            result = await session.execute(select(Service).where(Service.autostart.is_(True)))
            services = list(result.scalars().all())
            await reconciler.reconcile(session, services, self._supervisor_factory())
            pending = [service.id for service in services if service.status != STATUS_ONLINE]
        jobs = [self.submit(service_id, action="start", source="autostart") for service_id in pending]
        if jobs:
            _logger.info("autostart.queue", "Queued autostart services", services=len(jobs))
        return jobs


@lru_cache
def get_deploy_queue() -> DeployQueue:
    settings = get_settings()
    return DeployQueue(
        get_sessionmaker(settings.database_url),
        get_supervisor,
        max_attempts=settings.deploy_queue_max_attempts,
        retry_delay_seconds=settings.deploy_queue_retry_delay_seconds,
        history_size=settings.deploy_queue_history_size,
    )
