from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import (
    get_current_actor,
    get_db_session,
    get_github,
    get_process_supervisor,
    raise_http_error,
)
from app.errors import ProcyardError
from app.logger import get_logger
from app.models.service import Service
from app.schemas.services import (
    EnvironmentCreate,
    EnvironmentOut,
    EnvironmentUpdate,
    LifecycleOut,
    ServiceCreate,
    ServiceLogsOut,
    ServiceMetricsOut,
    ServiceOut,
    ServiceUpdate,
    SystemMetricsOut,
    WebhookStatusOut,
)
from app.services import build, host_metrics, lifecycle, reconciler, webhooks
from app.services.auth import Actor
from app.services.github import GitHubClient
from app.services.supervisor import ProcessSupervisor

router = APIRouter(prefix="/services", tags=["services"])
_logger = get_logger("api.services")


async def _service_out(session: AsyncSession, service: Service) -> ServiceOut:
    environments = await lifecycle.list_environments(session, service.id)
    out = ServiceOut.model_validate(service)
    out.environments = [EnvironmentOut.model_validate(env) for env in environments]
    return out


async def _lifecycle_out(session: AsyncSession, result: lifecycle.LifecycleResult) -> LifecycleOut:
    return LifecycleOut(
        success=result.success,
        message=result.message,
        failed_step=result.failed_step,
        service=await _service_out(session, result.service),
    )


@router.get("", response_model=List[ServiceOut])
async def list_services(
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
    supervisor: ProcessSupervisor = Depends(get_process_supervisor),
) -> List[ServiceOut]:
    services = await lifecycle.list_services(session, actor)
    await reconciler.reconcile(session, services, supervisor)
    return [await _service_out(session, service) for service in services]


@router.get("/runtime-versions", response_model=List[str])
async def runtime_versions(actor: Actor = Depends(get_current_actor)) -> List[str]:
    return await build.list_runtime_versions()


@router.get("/metrics/system", response_model=SystemMetricsOut)
async def system_metrics(actor: Actor = Depends(get_current_actor)) -> SystemMetricsOut:
    return SystemMetricsOut.model_validate(await host_metrics.system_metrics())


@router.get("/{service_id}", response_model=ServiceOut)
async def get_service(
    service_id: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
    supervisor: ProcessSupervisor = Depends(get_process_supervisor),
) -> ServiceOut:
    try:
        service = await lifecycle.get_visible_service(session, actor, service_id)
    except ProcyardError as exc:
        raise_http_error(exc)
    await reconciler.reconcile(session, [service], supervisor)
    return await _service_out(session, service)


@router.post("", response_model=ServiceOut, status_code=status.HTTP_201_CREATED)
async def create_service(
    payload: ServiceCreate,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> ServiceOut:
    try:
        service = await lifecycle.create_service(session, actor, payload)
    except ProcyardError as exc:
        raise_http_error(exc)
    return await _service_out(session, service)


@router.patch("/{service_id}", response_model=ServiceOut)
async def update_service(
    service_id: str,
    payload: ServiceUpdate,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> ServiceOut:
    try:
        service = await lifecycle.update_service(session, actor, service_id, payload)
    except ProcyardError as exc:
        raise_http_error(exc)
    return await _service_out(session, service)


@router.delete("/{service_id}")
async def delete_service(
    service_id: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
    supervisor: ProcessSupervisor = Depends(get_process_supervisor),
) -> Dict[str, Any]:
    try:
        warnings = await lifecycle.delete_service(
            session, service_id, supervisor=supervisor, actor=actor
        )
    except ProcyardError as exc:
        raise_http_error(exc)
    return {"success": True, "warnings": warnings}


@router.get("/{service_id}/logs", response_model=ServiceLogsOut)
async def service_logs(
    service_id: str,
    lines: int = Query(default=100, ge=1, le=5000),
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
    supervisor: ProcessSupervisor = Depends(get_process_supervisor),
) -> ServiceLogsOut:
    try:
        logs = await lifecycle.service_logs(
            session, service_id, supervisor=supervisor, actor=actor, lines=lines
        )
    except ProcyardError as exc:
        raise_http_error(exc)
    return ServiceLogsOut(service_id=service_id, lines=lines, logs=logs)


@router.get("/{service_id}/metrics", response_model=ServiceMetricsOut)
async def service_metrics(
    service_id: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
    supervisor: ProcessSupervisor = Depends(get_process_supervisor),
) -> ServiceMetricsOut:
    try:
        metrics = await lifecycle.service_metrics(
            session, service_id, supervisor=supervisor, actor=actor
        )
    except ProcyardError as exc:
        raise_http_error(exc)
    if metrics is None:
        raise HTTPException(status_code=404, detail="Service is not running")
    return ServiceMetricsOut.model_validate(metrics)


@router.get("/{service_id}/environments", response_model=List[EnvironmentOut])
async def list_environments(
    service_id: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> List[EnvironmentOut]:
    try:
        service = await lifecycle.get_visible_service(session, actor, service_id)
    except ProcyardError as exc:
        raise_http_error(exc)
    environments = await lifecycle.list_environments(session, service.id)
    return [EnvironmentOut.model_validate(env) for env in environments]


@router.post(
    "/{service_id}/environments",
    response_model=EnvironmentOut,
    status_code=status.HTTP_201_CREATED,
)
async def add_environment(
    service_id: str,
    payload: EnvironmentCreate,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> EnvironmentOut:
    try:
        environment = await lifecycle.add_environment(session, actor, service_id, payload)
    except ProcyardError as exc:
        raise_http_error(exc)
    return EnvironmentOut.model_validate(environment)


@router.patch("/{service_id}/environments/{name}", response_model=EnvironmentOut)
async def update_environment(
    service_id: str,
    name: str,
    payload: EnvironmentUpdate,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> EnvironmentOut:
    try:
        environment = await lifecycle.update_environment(session, actor, service_id, name, payload)
    except ProcyardError as exc:
        raise_http_error(exc)
    return EnvironmentOut.model_validate(environment)


@router.delete("/{service_id}/environments/{name}", response_model=ServiceOut)
async def delete_environment(
    service_id: str,
    name: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> ServiceOut:
    try:
        service = await lifecycle.delete_environment(session, actor, service_id, name)
    except ProcyardError as exc:
        raise_http_error(exc)
    return await _service_out(session, service)


@router.post("/{service_id}/environments/{name}/activate", response_model=ServiceOut)
async def activate_environment(
    service_id: str,
    name: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> ServiceOut:
    try:
        service = await lifecycle.set_active_environment(session, actor, service_id, name)
    except ProcyardError as exc:
        raise_http_error(exc)
    return await _service_out(session, service)


@router.get("/{service_id}/webhook", response_model=WebhookStatusOut)
async def webhook_status(
    service_id: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> WebhookStatusOut:
    try:
        state = await webhooks.status(session, actor, service_id)
    except ProcyardError as exc:
        raise_http_error(exc)
    return WebhookStatusOut(**state)


@router.post("/{service_id}/webhook/enable", response_model=WebhookStatusOut)
async def enable_webhook(
    service_id: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
    github: GitHubClient = Depends(get_github),
) -> WebhookStatusOut:
    try:
        url = await webhooks.enable(session, actor, service_id, github=github)
    except ProcyardError as exc:
        raise_http_error(exc)
    return WebhookStatusOut(enabled=True, webhook_url=url)


@router.post("/{service_id}/webhook/disable", response_model=WebhookStatusOut)
async def disable_webhook(
    service_id: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
    github: GitHubClient = Depends(get_github),
) -> WebhookStatusOut:
    try:
        await webhooks.disable(session, actor, service_id, github=github)
    except ProcyardError as exc:
        raise_http_error(exc)
    return WebhookStatusOut(enabled=False)


@router.post("/{service_id}/{action}", response_model=LifecycleOut)
async def run_action(
    service_id: str,
    action: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
    supervisor: ProcessSupervisor = Depends(get_process_supervisor),
) -> LifecycleOut:
    operations = {
        "start": lifecycle.start,
        "stop": lifecycle.stop,
        "restart": lifecycle.restart,
        "reload": lifecycle.reload,
    }
    operation = operations.get(action)
    if operation is None:
        raise HTTPException(status_code=404, detail=f"Unknown action {action}")
    try:
        result = await operation(session, service_id, supervisor=supervisor, actor=actor)
    except ProcyardError as exc:
        raise_http_error(exc)
    _logger.info(
        "service.action",
        "Ran lifecycle action",
        service_id=service_id,
        action=action,
        success=result.success,
        failed_step=result.failed_step,
    )
    return await _lifecycle_out(session, result)
