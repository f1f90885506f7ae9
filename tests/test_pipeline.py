from __future__ import annotations

import asyncio

import pytest

from app.errors import CommandError, EntityBusyError
from app.locks import KeyedLocks
from app.pipeline import PipelineStep, run_pipeline


async def test_pipeline_stops_at_first_failure() -> None:
    ran: list[str] = []

    async def ok_step() -> str:
        ran.append("fetch")
        return "fetched"

    async def failing_step() -> str:
        ran.append("install")
        raise CommandError("build.install", "yarn exited 1")

    async def never() -> str:
        ran.append("build")
        return "built"

    result = await run_pipeline(
        "test",
        [PipelineStep("fetch", ok_step), PipelineStep("install", failing_step), PipelineStep("build", never)],
    )

    assert ran == ["fetch", "install"]
    assert not result.ok
    assert result.failed_step == "install"
    assert "yarn exited 1" in result.error
    assert [step["name"] for step in result.as_dict()["steps"]] == ["fetch", "install"]


async def test_pipeline_timeout_is_a_failed_step() -> None:
    async def slow() -> str:
        await asyncio.sleep(1)
        return "late"

    result = await run_pipeline("test", [PipelineStep("supervisor_start", slow, 0.01)])

    assert result.failed_step == "supervisor_start"
    assert "timed out" in result.error


async def test_pipeline_captures_unexpected_errors() -> None:
    async def broken() -> str:
        raise RuntimeError("disk full")

    result = await run_pipeline("test", [PipelineStep("env_file", broken)])

    assert result.failed_step == "env_file"
    assert result.error == "disk full"


async def test_keyed_lock_rejects_concurrent_holder() -> None:
    locks = KeyedLocks("service")
    async with locks.hold("svc-1", action="start"):
        assert locks.is_locked("svc-1")
        with pytest.raises(EntityBusyError):
            async with locks.hold("svc-1", action="reload"):
                pass
        async with locks.hold("svc-2", action="start"):
            assert locks.is_locked("svc-2")
    assert not locks.is_locked("svc-1")
