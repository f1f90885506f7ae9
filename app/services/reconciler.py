from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import CommandError
from app.locks import service_locks
from app.logger import get_logger
from app.models.service import STATUS_ERRORED, STATUS_ONLINE, STATUS_STOPPED, Service
from app.services.supervisor import (
    SUPERVISOR_ONLINE,
    SUPERVISOR_STOPPED,
    ProcessInfo,
    ProcessSupervisor,
)

_logger = get_logger("services.reconciler")


def reconciled_status(service: Service, live: Dict[str, List[ProcessInfo]]) -> tuple[str, Optional[str]]:
    """Return the ``(status, handle)`` pair the service should hold."""
    handle = service.process_handle
    if not handle:
        return STATUS_STOPPED, None
    rows = live.get(handle)
    if not rows:
        return STATUS_STOPPED, None
    statuses = {row.status for row in rows}
    if SUPERVISOR_ONLINE in statuses:
        return STATUS_ONLINE, handle
    if statuses == {SUPERVISOR_STOPPED}:
        return STATUS_STOPPED, None
    return STATUS_ERRORED, handle


async def reconcile(
    session: AsyncSession,
    services: Sequence[Service],
    supervisor: ProcessSupervisor,
) -> int:
    """Sync persisted status with one read of the supervisor's process table.

    Services with an operation in flight are left alone. Returns how many
    rows changed.
    """
    if not services:
        return 0
    try:
        table = await supervisor.list()
    except CommandError as exc:
        _logger.warning(
            "reconcile.skip",
            "Supervisor process table unavailable; returning persisted status",
            error=exc.detail,
            services=len(services),
        )
        return 0

    live: Dict[str, List[ProcessInfo]] = defaultdict(list)
    for row in table:
        live[row.handle].append(row)

    changed = 0
    for service in services:
        if service_locks.is_locked(service.id):
            continue
        status, handle = reconciled_status(service, live)
        if status == service.status and handle == service.process_handle:
            continue
        _logger.info(
            "reconcile.update",
            "Service status changed out of band",
            service_id=service.id,
            service=service.name,
            previous=service.status,
            status=status,
            handle_cleared=handle is None and service.process_handle is not None,
        )
        service.status = status
        service.process_handle = handle
        changed += 1

    if changed:
        await session.commit()
        for service in services:
            await session.refresh(service)
    return changed
