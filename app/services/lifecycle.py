from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.errors import CommandError, NotFoundError, PreconditionError, ValidationError
from app.locks import service_locks
from app.logger import get_logger
from app.models.environment import ServiceEnvironment
from app.models.service import (
    STATUS_BUILDING,
    STATUS_ERRORED,
    STATUS_ONLINE,
    STATUS_STOPPED,
    VISIBILITY_PUBLIC,
    Service,
)
from app.pipeline import PipelineResult, PipelineStep, run_pipeline
from app.schemas.services import EnvironmentCreate, EnvironmentUpdate, ServiceCreate, ServiceUpdate
from app.services import build, credentials, domains, repository, webhooks
from app.services.auth import Actor, check_access
from app.services.events import record_event
from app.services.supervisor import ProcessInfo, ProcessSpec, ProcessSupervisor

_logger = get_logger("services.lifecycle")


@dataclass
class LifecycleResult:
    success: bool
    message: str
    service: Service
    failed_step: Optional[str] = None
    applicable: bool = True


def _require(actor: Optional[Actor], service: Service, *, write: bool) -> None:
    # System callers (deploy queue, autostart) act without an actor.
    if actor is None:
        return
    check_access(
        actor,
        owner=service.owner,
        visibility=service.visibility,
        write=write,
        subject="service",
    )


async def get_service(session: AsyncSession, service_id: str) -> Service:
    service = await session.get(Service, service_id)
    if service is None:
        raise NotFoundError(f"Service {service_id} not found")
    return service


async def get_visible_service(
    session: AsyncSession,
    actor: Actor,
    service_id: str,
    *,
    write: bool = False,
) -> Service:
    service = await get_service(session, service_id)
    _require(actor, service, write=write)
    return service


async def list_services(session: AsyncSession, actor: Actor) -> List[Service]:
    query = select(Service).order_by(Service.name)
    if not actor.is_admin:
        query = query.where(
            or_(Service.owner == actor.username, Service.visibility == VISIBILITY_PUBLIC)
        )
    result = await session.execute(query)
    return list(result.scalars().all())


async def list_environments(session: AsyncSession, service_id: str) -> List[ServiceEnvironment]:
    result = await session.execute(
        select(ServiceEnvironment)
        .where(ServiceEnvironment.service_id == service_id)
        .order_by(ServiceEnvironment.id)
    )
    return list(result.scalars().all())


async def get_environment(
    session: AsyncSession, service_id: str, name: str
) -> Optional[ServiceEnvironment]:
    result = await session.execute(
        select(ServiceEnvironment).where(
            ServiceEnvironment.service_id == service_id,
            ServiceEnvironment.name == name,
        )
    )
    return result.scalar_one_or_none()


def _validate_start_spec(service: Service) -> None:
    if service.use_package_manager:
        if not service.package_script:
            raise ValidationError("package_script is required when use_package_manager is set")
    elif not service.script:
        raise ValidationError("script is required unless use_package_manager is set")


async def _check_credential(session: AsyncSession, actor: Actor, credential_id: str) -> None:
    credential = await credentials.get_credential(session, credential_id)
    if credential is None:
        raise NotFoundError(f"Token {credential_id} not found")
    check_access(
        actor,
        owner=credential.owner,
        visibility=credential.visibility,
        write=False,
        subject="token",
    )


async def _ensure_unique_name(session: AsyncSession, name: str) -> None:
    result = await session.execute(select(Service.id).where(Service.name == name))
    if result.scalar_one_or_none() is not None:
        raise ValidationError(f"Service {name} already exists")


async def create_service(session: AsyncSession, actor: Actor, payload: ServiceCreate) -> Service:
    await _ensure_unique_name(session, payload.name)
    if payload.credential_id:
        await _check_credential(session, actor, payload.credential_id)
    await build.check_runtime_version(payload.runtime_version)
    names = [env.name.strip() for env in payload.environments]
    if len(set(names)) != len(names):
        raise ValidationError("Environment names must be unique within a service")

    service = Service(
        id=str(uuid4()),
        name=payload.name,
        repository_url=payload.repository_url.strip(),
        branch=payload.branch.strip(),
        source_directory=payload.source_directory or None,
        script=payload.script,
        args=list(payload.args),
        use_package_manager=payload.use_package_manager,
        package_script=payload.package_script,
        package_args=list(payload.package_args),
        active_environment=names[0] if names else None,
        status=STATUS_STOPPED,
        visibility=payload.visibility,
        owner=actor.username,
        credential_id=payload.credential_id,
        runtime_version=payload.runtime_version,
        cluster_instances=payload.cluster_instances,
        autostart=payload.autostart,
        webhook_enabled=False,
    )
    _validate_start_spec(service)
    session.add(service)
    for env, name in zip(payload.environments, names):
        session.add(
            ServiceEnvironment(
                service_id=service.id,
                name=name,
                description=env.description,
                variables=dict(env.variables),
            )
        )
    await record_event(
        session,
        category="services",
        name="service.create",
        subject_id=service.id,
        fields={"name": service.name, "owner": service.owner},
    )
    await session.commit()
    await session.refresh(service)
    _logger.info("service.create", "Created service", service_id=service.id, name=service.name)
    return service


async def update_service(
    session: AsyncSession,
    actor: Actor,
    service_id: str,
    payload: ServiceUpdate,
) -> Service:
    service = await get_visible_service(session, actor, service_id, write=True)
    changes = payload.model_dump(exclude_unset=True)
    new_name = changes.get("name")
    if new_name is not None:
        new_name = new_name.strip()
        if new_name != service.name:
            if service.process_handle:
                raise PreconditionError("Stop the service before renaming it")
            await _ensure_unique_name(session, new_name)
        changes["name"] = new_name
    if changes.get("credential_id"):
        await _check_credential(session, actor, changes["credential_id"])
    if changes.get("runtime_version"):
        await build.check_runtime_version(changes["runtime_version"])
    for key, value in changes.items():
        if key in {"args", "package_args"} and value is None:
            value = []
        setattr(service, key, value)
    _validate_start_spec(service)
    await record_event(
        session,
        category="services",
        name="service.update",
        subject_id=service.id,
        fields={"changed": sorted(changes)},
    )
    await session.commit()
    await session.refresh(service)
    return service


async def add_environment(
    session: AsyncSession,
    actor: Actor,
    service_id: str,
    payload: EnvironmentCreate,
) -> ServiceEnvironment:
    service = await get_visible_service(session, actor, service_id, write=True)
    name = payload.name.strip()
    if await get_environment(session, service.id, name) is not None:
        raise ValidationError(f"Environment {name} already exists")
    environment = ServiceEnvironment(
        service_id=service.id,
        name=name,
        description=payload.description,
        variables=dict(payload.variables),
    )
    session.add(environment)
    if service.active_environment is None:
        service.active_environment = name
    await session.commit()
    await session.refresh(environment)
    return environment


async def update_environment(
    session: AsyncSession,
    actor: Actor,
    service_id: str,
    name: str,
    payload: EnvironmentUpdate,
) -> ServiceEnvironment:
    service = await get_visible_service(session, actor, service_id, write=True)
    environment = await get_environment(session, service.id, name)
    if environment is None:
        raise NotFoundError(f"Environment {name} not found")
    if payload.name is not None and payload.name.strip() != name:
        new_name = payload.name.strip()
        if await get_environment(session, service.id, new_name) is not None:
            raise ValidationError(f"Environment {new_name} already exists")
        environment.name = new_name
        if service.active_environment == name:
            service.active_environment = new_name
    if payload.description is not None:
        environment.description = payload.description
    if payload.variables is not None:
        environment.variables = dict(payload.variables)
    await session.commit()
    await session.refresh(environment)
    return environment


async def delete_environment(
    session: AsyncSession,
    actor: Actor,
    service_id: str,
    name: str,
) -> Service:
    service = await get_visible_service(session, actor, service_id, write=True)
    environment = await get_environment(session, service.id, name)
    if environment is None:
        raise NotFoundError(f"Environment {name} not found")
    await session.delete(environment)
    await session.flush()
    if service.active_environment == name:
        remaining = await list_environments(session, service.id)
        service.active_environment = remaining[0].name if remaining else None
        _logger.info(
            "environment.promote",
            "Re-designated active environment",
            service_id=service.id,
            removed=name,
            active=service.active_environment or "",
        )
    await session.commit()
    await session.refresh(service)
    return service


async def set_active_environment(
    session: AsyncSession,
    actor: Actor,
    service_id: str,
    name: str,
) -> Service:
    service = await get_visible_service(session, actor, service_id, write=True)
    if await get_environment(session, service.id, name) is None:
        raise NotFoundError(f"Environment {name} not found")
    service.active_environment = name
    await session.commit()
    await session.refresh(service)
    return service


async def _require_active_environment(
    session: AsyncSession, service: Service
) -> ServiceEnvironment:
    if not service.active_environment:
        raise PreconditionError(f"Service {service.name} has no active environment")
    environment = await get_environment(session, service.id, service.active_environment)
    if environment is None:
        raise PreconditionError(
            f"Environment {service.active_environment} not found for service {service.name}"
        )
    return environment


def _needs_recreation(processes: Sequence[ProcessInfo], spec: ProcessSpec) -> bool:
    if len(processes) != spec.instances:
        return True
    return not all(row.exec_mode.startswith(spec.exec_mode) for row in processes)


@dataclass
class _Deployment:
    """State carried between the steps of one start or reload run."""

    session: AsyncSession
    service: Service
    environment: ServiceEnvironment
    supervisor: ProcessSupervisor
    cwd: str = ""
    handle: Optional[str] = None

    @property
    def process_name(self) -> str:
        return f"{self.service.name}-{self.environment.name}"

    def process_spec(self) -> ProcessSpec:
        service = self.service
        if service.use_package_manager:
            script = build.resolve_tool(get_settings().npm_command, service.runtime_version)
            args = [service.package_script or "", *(service.package_args or [])]
        else:
            script = service.script or ""
            args = list(service.args or [])
        return ProcessSpec(
            name=self.process_name,
            script=script,
            args=args,
            cwd=self.cwd,
            env=dict(self.environment.variables or {}),
            instances=service.cluster_instances or 1,
        )

    async def fetch_source(self) -> str:
        service = self.service
        token = None
        if service.credential_id:
            token = await credentials.resolve_token(
                self.session, service.credential_id, username=service.owner
            )
        if not service.repo_path:
            service.repo_path = repository.default_repository_path(
                service.repository_url, service.name
            )
        await repository.fetch(
            repo_url=service.repository_url,
            branch=service.branch,
            repo_path=service.repo_path,
            token=token,
        )
        self.cwd = repository.working_directory(service.repo_path, service.source_directory)
        return f"Fetched {service.branch} into {service.repo_path}"

    async def write_env(self) -> str:
        path = await build.write_env_file(self.cwd, self.environment.variables or {})
        return f"Wrote {path}"

    async def install_deps(self) -> str:
        await build.install_dependencies(self.cwd, self.service.runtime_version)
        return "Installed dependencies"

    async def build_project(self) -> str:
        if not self.service.use_package_manager:
            return "Skipped: service runs a direct script"
        if not await build.has_build_script(self.cwd):
            return "Skipped: no build script in package.json"
        await build.run_build(self.cwd, self.service.runtime_version)
        return "Build finished"

    async def supervisor_start(self) -> str:
        self.handle = await self.supervisor.start(self.process_spec())
        return f"Started process {self.handle}"

    async def supervisor_reload(self) -> str:
        spec = self.process_spec()
        current = self.service.process_handle
        processes = [row for row in await self.supervisor.list() if row.handle == current]
        if processes and current != spec.name:
            # The active environment changed, so the process name changes with it.
            await self.supervisor.delete(current)
            processes = []
        if not processes or _needs_recreation(processes, spec):
            self.handle = await self.supervisor.start(spec)
            return f"Recreated process {self.handle}"
        await self.supervisor.reload(current)
        self.handle = current
        return f"Reloaded process {current}"

    def steps(self, final: PipelineStep) -> List[PipelineStep]:
        settings = get_settings()
        return [
            PipelineStep("fetch", self.fetch_source, settings.fetch_timeout_seconds),
            PipelineStep("env_file", self.write_env, 30),
            PipelineStep("install", self.install_deps, settings.install_timeout_seconds),
            PipelineStep("build", self.build_project, settings.build_timeout_seconds),
            final,
        ]


async def _set_status(session: AsyncSession, service: Service, status: str) -> None:
    service.status = status
    await session.commit()


async def _finish(
    session: AsyncSession,
    service: Service,
    result: PipelineResult,
    *,
    action: str,
    handle: Optional[str],
) -> LifecycleResult:
    if result.ok:
        if handle:
            service.process_handle = handle
        service.status = STATUS_ONLINE
        message = f"Service {service.name} is online"
    else:
        service.status = STATUS_ERRORED
        message = f"{action.capitalize()} failed at step {result.failed_step}: {result.error}"
    await record_event(
        session,
        category="lifecycle",
        name=f"service.{action}",
        level="INFO" if result.ok else "ERROR",
        subject_id=service.id,
        fields=result.as_dict(),
    )
    await session.commit()
    await session.refresh(service)
    return LifecycleResult(
        success=result.ok,
        message=message,
        service=service,
        failed_step=result.failed_step,
    )


async def start(
    session: AsyncSession,
    service_id: str,
    *,
    supervisor: ProcessSupervisor,
    actor: Optional[Actor] = None,
) -> LifecycleResult:
    """Fetch, configure, install, build and hand the service to the supervisor.

    Precondition failures raise before anything runs. Failures inside the
    pipeline persist ``errored`` and come back as an unsuccessful result that
    names the failed step.
    """
    service = await get_service(session, service_id)
    _require(actor, service, write=True)
    async with service_locks.hold(service.id, action="start"):
        if service.status == STATUS_ONLINE and service.process_handle:
            raise PreconditionError(
                f"Service {service.name} is already running; use restart or reload"
            )
        environment = await _require_active_environment(session, service)
        deployment = _Deployment(session, service, environment, supervisor)
        await _set_status(session, service, STATUS_BUILDING)
        result = await run_pipeline(
            "service.start",
            deployment.steps(
                PipelineStep(
                    "supervisor_start",
                    deployment.supervisor_start,
                    get_settings().supervisor_timeout_seconds,
                )
            ),
            service_id=service.id,
            service=service.name,
            environment=environment.name,
        )
        return await _finish(session, service, result, action="start", handle=deployment.handle)


async def reload(
    session: AsyncSession,
    service_id: str,
    *,
    supervisor: ProcessSupervisor,
    actor: Optional[Actor] = None,
) -> LifecycleResult:
    """Re-run fetch and build, then reload the running process in place."""
    service = await get_service(session, service_id)
    _require(actor, service, write=True)
    if not service.process_handle:
        return LifecycleResult(
            success=False,
            message=f"Service {service.name} is not running; start it first",
            service=service,
            applicable=False,
        )
    async with service_locks.hold(service.id, action="reload"):
        environment = await _require_active_environment(session, service)
        deployment = _Deployment(session, service, environment, supervisor)
        await _set_status(session, service, STATUS_BUILDING)
        result = await run_pipeline(
            "service.reload",
            deployment.steps(
                PipelineStep(
                    "supervisor_reload",
                    deployment.supervisor_reload,
                    get_settings().supervisor_timeout_seconds,
                )
            ),
            service_id=service.id,
            service=service.name,
            environment=environment.name,
        )
        return await _finish(session, service, result, action="reload", handle=deployment.handle)


async def restart(
    session: AsyncSession,
    service_id: str,
    *,
    supervisor: ProcessSupervisor,
    actor: Optional[Actor] = None,
) -> LifecycleResult:
    service = await get_service(session, service_id)
    _require(actor, service, write=True)
    handle = service.process_handle
    if not handle:
        return LifecycleResult(
            success=False,
            message=f"Service {service.name} is not running; nothing to restart",
            service=service,
            applicable=False,
        )

    async def _restart() -> str:
        await supervisor.restart(handle)
        return f"Restarted process {handle}"

    async with service_locks.hold(service.id, action="restart"):
        result = await run_pipeline(
            "service.restart",
            [
                PipelineStep(
                    "supervisor_restart", _restart, get_settings().supervisor_timeout_seconds
                )
            ],
            service_id=service.id,
            service=service.name,
        )
        return await _finish(session, service, result, action="restart", handle=handle)


async def _process_exists(supervisor: ProcessSupervisor, handle: str) -> bool:
    return any(row.handle == handle for row in await supervisor.list())


async def stop(
    session: AsyncSession,
    service_id: str,
    *,
    supervisor: ProcessSupervisor,
    actor: Optional[Actor] = None,
) -> LifecycleResult:
    service = await get_service(session, service_id)
    _require(actor, service, write=True)
    handle = service.process_handle
    if not handle:
        return LifecycleResult(
            success=False,
            message=f"Service {service.name} is not running; nothing to stop",
            service=service,
            applicable=False,
        )
    async with service_locks.hold(service.id, action="stop"):
        async with _logger.operation(
            "service.stop", "Stopping service", service_id=service.id, handle=handle
        ) as op:
            try:
                await supervisor.stop(handle)
            except CommandError:
                if await _process_exists(supervisor, handle):
                    raise
                op.step_warning(
                    "supervisor.stop",
                    "Process already gone from supervisor",
                    handle=handle,
                )
            service.process_handle = None
            service.status = STATUS_STOPPED
            await record_event(
                session,
                category="lifecycle",
                name="service.stop",
                subject_id=service.id,
                fields={"handle": handle},
            )
            await session.commit()
            await session.refresh(service)
    return LifecycleResult(success=True, message=f"Service {service.name} stopped", service=service)


async def delete_service(
    session: AsyncSession,
    service_id: str,
    *,
    supervisor: ProcessSupervisor,
    actor: Optional[Actor] = None,
) -> List[str]:
    """Remove the live process, domains, webhook and working copy, then the rows.

    Removing the live process is mandatory; everything after it is best-effort
    and reported back as warnings.
    """
    service = await get_service(session, service_id)
    _require(actor, service, write=True)
    warnings: List[str] = []
    async with service_locks.hold(service.id, action="delete"), domains.hold_service_domains(
        session, service.id, action="delete"
    ) as service_domains:
        async with _logger.operation(
            "service.delete", "Deleting service", service_id=service.id, service=service.name
        ) as op:
            if service.process_handle and await _process_exists(supervisor, service.process_handle):
                await supervisor.delete(service.process_handle)
                op.step("supervisor.delete", "Deleted supervised process")

            warnings.extend(
                await domains.delete_all_for_service(session, service.id, records=service_domains)
            )
            if service.webhook_enabled:
                warnings.extend(await webhooks.remove_external_hook(session, service))
            try:
                if await repository.remove_working_copy(service.repo_path):
                    op.step("repository.remove", "Removed working copy")
            except OSError as exc:
                warnings.append(f"Failed to remove working copy {service.repo_path}: {exc}")

            await session.execute(
                delete(ServiceEnvironment).where(ServiceEnvironment.service_id == service.id)
            )
            await session.delete(service)
            await record_event(
                session,
                category="services",
                name="service.delete",
                level="WARNING" if warnings else "INFO",
                subject_id=service_id,
                fields={"warnings": warnings},
            )
            await session.commit()
            for warning in warnings:
                op.step_warning("cleanup", warning)
    return warnings


async def service_logs(
    session: AsyncSession,
    service_id: str,
    *,
    supervisor: ProcessSupervisor,
    actor: Actor,
    lines: int = 100,
) -> str:
    service = await get_visible_service(session, actor, service_id)
    if not service.process_handle:
        raise PreconditionError(f"Service {service.name} is not running")
    return await supervisor.logs(service.process_handle, lines=lines)


async def service_metrics(
    session: AsyncSession,
    service_id: str,
    *,
    supervisor: ProcessSupervisor,
    actor: Actor,
) -> Optional[Dict[str, Any]]:
    """Aggregate cpu, memory and restarts across every instance of the process."""
    service = await get_visible_service(session, actor, service_id)
    if not service.process_handle:
        return None
    processes = [row for row in await supervisor.list() if row.handle == service.process_handle]
    if not processes:
        return None
    uptimes = [row.uptime_ms for row in processes if row.uptime_ms]
    return {
        "cpu": sum(row.cpu for row in processes),
        "memory": sum(row.memory for row in processes),
        "uptime_ms": min(uptimes) if uptimes else 0,
        "restarts": sum(row.restarts for row in processes),
        "instances": len(processes),
        "processes": [
            {
                "pid": row.pid,
                "status": row.status,
                "cpu": row.cpu,
                "memory": row.memory,
                "uptime_ms": row.uptime_ms,
                "restarts": row.restarts,
            }
            for row in processes
        ],
    }
