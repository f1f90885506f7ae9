from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.locks import service_locks
from app.models.service import STATUS_BUILDING, STATUS_ERRORED, STATUS_ONLINE, STATUS_STOPPED, Service
from app.services import reconciler
from app.services.supervisor import ProcessInfo, ProcessSpec
from tests.conftest import FakeSupervisor


async def _service(session: AsyncSession, *, status: str, handle: str | None) -> Service:
    service = Service(
        id=f"svc-{handle or 'none'}-{status}",
        name=f"app-{handle or 'none'}-{status}",
        repository_url="https://github.com/acme/app.git",
        branch="main",
        script="index.js",
        status=status,
        process_handle=handle,
        owner="alice",
    )
    session.add(service)
    await session.commit()
    return service


def _rows(*statuses: str) -> dict[str, list[ProcessInfo]]:
    return {"app-prod": [ProcessInfo(handle="app-prod", name="app-prod", status=s) for s in statuses]}


@pytest.mark.parametrize(
    "statuses, expected",
    [
        (("online",), (STATUS_ONLINE, "app-prod")),
        (("online", "errored"), (STATUS_ONLINE, "app-prod")),
        (("stopped", "stopped"), (STATUS_STOPPED, None)),
        (("errored",), (STATUS_ERRORED, "app-prod")),
        (("stopped", "errored"), (STATUS_ERRORED, "app-prod")),
    ],
)
def test_reconciled_status(statuses: tuple[str, ...], expected: tuple[str, str | None]) -> None:
    service = Service(process_handle="app-prod", status=STATUS_ONLINE)
    assert reconciler.reconciled_status(service, _rows(*statuses)) == expected


def test_missing_process_means_stopped() -> None:
    service = Service(process_handle="app-prod", status=STATUS_ONLINE)
    assert reconciler.reconciled_status(service, {}) == (STATUS_STOPPED, None)
    assert reconciler.reconciled_status(Service(process_handle=None), _rows("online")) == (
        STATUS_STOPPED,
        None,
    )


async def test_reconcile_updates_out_of_band_changes(
    session: AsyncSession, supervisor: FakeSupervisor
) -> None:
    await supervisor.start(ProcessSpec(name="crashy", script="index.js"))
    supervisor.set_status("crashy", "errored")
    crashed = await _service(session, status=STATUS_ONLINE, handle="crashy")
    vanished = await _service(session, status=STATUS_ONLINE, handle="ghost")
    idle = await _service(session, status=STATUS_STOPPED, handle=None)

    changed = await reconciler.reconcile(session, [crashed, vanished, idle], supervisor)

    assert changed == 2
    assert (crashed.status, crashed.process_handle) == (STATUS_ERRORED, "crashy")
    assert (vanished.status, vanished.process_handle) == (STATUS_STOPPED, None)
    assert idle.status == STATUS_STOPPED


async def test_reconcile_skips_locked_services(session: AsyncSession, supervisor: FakeSupervisor) -> None:
    building = await _service(session, status=STATUS_BUILDING, handle="ghost")

    async with service_locks.hold(building.id, action="start"):
        changed = await reconciler.reconcile(session, [building], supervisor)

    assert changed == 0
    assert building.status == STATUS_BUILDING


async def test_supervisor_outage_keeps_persisted_status(
    session: AsyncSession, supervisor: FakeSupervisor
) -> None:
    online = await _service(session, status=STATUS_ONLINE, handle="app-prod")
    supervisor.fail_on.add("list")

    assert await reconciler.reconcile(session, [online], supervisor) == 0
    assert online.status == STATUS_ONLINE
