from __future__ import annotations

import asyncio
from typing import List

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.deploy_queue import (
    JOB_FAILED,
    JOB_QUEUED,
    JOB_RUNNING,
    JOB_SKIPPED,
    JOB_SUCCEEDED,
    DeployJob,
    DeployQueue,
)
from app.errors import CommandError, NotFoundError, ValidationError
from app.models.event import Event
from app.models.service import Service
from app.services import lifecycle
from app.services.supervisor import ProcessSupervisor
from tests.conftest import FakeSupervisor


def _result(success: bool, *, applicable: bool = True, failed_step: str | None = None):
    return lifecycle.LifecycleResult(
        success=success,
        message="ok" if success else "Reload failed at step install: yarn exited 1",
        service=Service(id="svc-1", name="shop"),
        failed_step=failed_step,
        applicable=applicable,
    )


def _queue(sessionmaker, supervisor: FakeSupervisor, outcomes: List[object]) -> DeployQueue:
    async def runner(session: AsyncSession, job: DeployJob, sup: ProcessSupervisor):
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return DeployQueue(
        sessionmaker,
        lambda: supervisor,
        runner=runner,
        max_attempts=2,
        retry_delay_seconds=0,
    )


async def _events(sessionmaker: async_sessionmaker[AsyncSession]) -> List[Event]:
    async with sessionmaker() as session:
        result = await session.execute(select(Event).where(Event.category == "deployments"))
        return list(result.scalars().all())


async def test_failed_reload_is_retried_then_recorded(sessionmaker, supervisor: FakeSupervisor) -> None:
    queue = _queue(sessionmaker, supervisor, [_result(False, failed_step="install"), _result(True)])
    job = queue.submit("svc-1", action="reload", source="webhook")

    await queue.process(job)

    assert job.status == JOB_SUCCEEDED
    assert job.attempts == 2
    events = await _events(sessionmaker)
    assert [event.fields["status"] for event in events] == [JOB_SUCCEEDED]


async def test_exhausted_retries_fail_with_step(sessionmaker, supervisor: FakeSupervisor) -> None:
    queue = _queue(
        sessionmaker,
        supervisor,
        [CommandError("pm2.list", "pm2 not running"), _result(False, failed_step="install")],
    )
    job = queue.submit("svc-1", action="reload", source="webhook")

    await queue.process(job)

    assert job.status == JOB_FAILED
    assert job.failed_step == "install"
    events = await _events(sessionmaker)
    assert events[0].level == "ERROR"
    assert events[0].fields["source"] == "webhook"


async def test_missing_service_is_not_retried(sessionmaker, supervisor: FakeSupervisor) -> None:
    queue = _queue(sessionmaker, supervisor, [NotFoundError("Service svc-1 not found")])
    job = queue.submit("svc-1", action="start")

    await queue.process(job)

    assert job.status == JOB_FAILED
    assert job.attempts == 1


async def test_reload_of_stopped_service_is_skipped(sessionmaker, supervisor: FakeSupervisor) -> None:
    queue = _queue(sessionmaker, supervisor, [_result(False, applicable=False)])
    job = queue.submit("svc-1", action="reload", source="webhook")

    await queue.process(job)

    assert job.status == JOB_SKIPPED


async def test_unknown_action_rejected(sessionmaker, supervisor: FakeSupervisor) -> None:
    queue = _queue(sessionmaker, supervisor, [])
    with pytest.raises(ValidationError):
        queue.submit("svc-1", action="rebuild")


async def test_worker_drains_queue(sessionmaker, supervisor: FakeSupervisor) -> None:
    queue = _queue(sessionmaker, supervisor, [_result(True), _result(True)])
    await queue.start()
    try:
        first = queue.submit("svc-1", action="restart")
        second = queue.submit("svc-1", action="stop")
        await queue.join()
    finally:
        await queue.stop()

    assert first.status == second.status == JOB_SUCCEEDED
    assert [job.id for job in queue.jobs("svc-1")] == [second.id, first.id]


async def test_autostart_queues_only_stopped_services(
    sessionmaker, supervisor: FakeSupervisor
) -> None:
    async with sessionmaker() as session:
        for name, autostart in (("web", True), ("worker", True), ("batch", False)):
            session.add(
                Service(
                    id=f"svc-{name}",
                    name=name,
                    repository_url="https://github.com/acme/app.git",
                    branch="main",
                    script="index.js",
                    owner="alice",
                    autostart=autostart,
                    status="stopped",
                )
            )
        await session.commit()
    queue = _queue(sessionmaker, supervisor, [])

    jobs = await queue.enqueue_autostart()

    assert sorted(job.service_id for job in jobs) == ["svc-web", "svc-worker"]
    assert {job.source for job in jobs} == {"autostart"}


async def test_slow_job_does_not_hold_up_other_services(
    sessionmaker, supervisor: FakeSupervisor
) -> None:
    release = asyncio.Event()

    async def runner(session: AsyncSession, job: DeployJob, sup: ProcessSupervisor):
        if job.service_id == "svc-a":
            await release.wait()
        return _result(True)

    queue = DeployQueue(sessionmaker, lambda: supervisor, runner=runner, retry_delay_seconds=0)
    await queue.start()
    try:
        slow = queue.submit("svc-a", action="reload", source="webhook")
        fast = queue.submit("svc-b", action="reload", source="webhook")
        follow_up = queue.submit("svc-a", action="restart")
        for _ in range(200):
            if fast.done:
                break
            await asyncio.sleep(0.01)

        assert fast.status == JOB_SUCCEEDED
        assert slow.status == JOB_RUNNING
        assert follow_up.status == JOB_QUEUED

        release.set()
        await asyncio.wait_for(queue.join(), timeout=5)
    finally:
        await queue.stop()

    assert slow.status == follow_up.status == JOB_SUCCEEDED
