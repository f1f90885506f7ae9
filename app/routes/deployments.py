from __future__ import annotations

from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.deploy_queue import DeployQueue, get_deploy_queue
from app.dependencies import get_current_actor, get_db_session, raise_http_error
from app.errors import ProcyardError
from app.schemas.deployments import DeployJobOut
from app.services import lifecycle
from app.services.auth import Actor

router = APIRouter(prefix="/deployments", tags=["deployments"])


class DeployJobCreate(BaseModel):
    service_id: str
    action: Literal["start", "reload", "restart", "stop"]


@router.get("/jobs", response_model=List[DeployJobOut])
async def list_jobs(
    service_id: Optional[str] = None,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
    queue: DeployQueue = Depends(get_deploy_queue),
) -> List[DeployJobOut]:
    if service_id:
        try:
            await lifecycle.get_visible_service(session, actor, service_id)
        except ProcyardError as exc:
            raise_http_error(exc)
    elif not actor.is_admin:
        raise HTTPException(status_code=403, detail="Filter by service_id to list jobs")
    return [DeployJobOut.model_validate(job) for job in queue.jobs(service_id)]


@router.get("/jobs/{job_id}", response_model=DeployJobOut)
async def get_job(
    job_id: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
    queue: DeployQueue = Depends(get_deploy_queue),
) -> DeployJobOut:
    job = queue.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    try:
        await lifecycle.get_visible_service(session, actor, job.service_id)
    except ProcyardError as exc:
        raise_http_error(exc)
    return DeployJobOut.model_validate(job)


@router.post("/jobs", response_model=DeployJobOut, status_code=status.HTTP_202_ACCEPTED)
async def submit_job(
    payload: DeployJobCreate,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
    queue: DeployQueue = Depends(get_deploy_queue),
) -> DeployJobOut:
    try:
        await lifecycle.get_visible_service(session, actor, payload.service_id, write=True)
        job = queue.submit(payload.service_id, action=payload.action, source="api")
    except ProcyardError as exc:
        raise_http_error(exc)
    return DeployJobOut.model_validate(job)
