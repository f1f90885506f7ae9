from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_current_actor, get_db_session, raise_http_error
from app.errors import ProcyardError
from app.schemas.domains import (
    ActivationOut,
    DomainCreate,
    DomainDeleteOut,
    DomainOut,
    DomainVerify,
    ServerIpOut,
    VerificationOut,
)
from app.services import domains as domain_service
from app.services.auth import Actor

router = APIRouter(prefix="/domains", tags=["domains"])


@router.get("/server-ip", response_model=ServerIpOut)
async def server_ip(actor: Actor = Depends(get_current_actor)) -> ServerIpOut:
    value = domain_service.server_ip()
    if not value:
        raise HTTPException(status_code=404, detail="SERVER_IP is not configured")
    return ServerIpOut(server_ip=value)


@router.get("/service/{service_id}", response_model=List[DomainOut])
async def list_for_service(
    service_id: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> List[DomainOut]:
    try:
        records = await domain_service.list_for_service(session, actor, service_id)
    except ProcyardError as exc:
        raise_http_error(exc)
    return [DomainOut.model_validate(record) for record in records]


@router.get("/{domain_id}", response_model=DomainOut)
async def get_domain(
    domain_id: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> DomainOut:
    try:
        record = await domain_service.get_visible_domain(session, actor, domain_id)
    except ProcyardError as exc:
        raise_http_error(exc)
    return DomainOut.model_validate(record)


@router.post("", response_model=DomainOut, status_code=status.HTTP_201_CREATED)
async def create_domain(
    payload: DomainCreate,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> DomainOut:
    try:
        record = await domain_service.create_domain(
            session,
            actor,
            service_id=payload.service_id,
            domain=payload.domain,
            port=payload.port,
        )
    except ProcyardError as exc:
        raise_http_error(exc)
    return DomainOut.model_validate(record)


@router.post("/{domain_id}/verify", response_model=VerificationOut)
async def verify_domain(
    domain_id: str,
    payload: Optional[DomainVerify] = None,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> VerificationOut:
    skip = payload.skip_verification if payload else False
    try:
        result = await domain_service.verify(
            session, domain_id, skip_verification=skip, actor=actor
        )
    except ProcyardError as exc:
        raise_http_error(exc)
    return VerificationOut(
        verified=result.verified,
        message=result.message,
        resolved_ips=result.resolved_ips,
        is_cloudflare=result.is_cloudflare,
        domain=DomainOut.model_validate(result.domain),
    )


@router.post("/{domain_id}/activate", response_model=ActivationOut)
async def activate_domain(
    domain_id: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> ActivationOut:
    try:
        result = await domain_service.activate(session, domain_id, actor=actor)
    except ProcyardError as exc:
        raise_http_error(exc)
    return ActivationOut(
        success=result.success,
        message=result.message,
        failed_step=result.failed_step,
        domain=DomainOut.model_validate(result.domain),
    )


@router.delete("/{domain_id}", response_model=DomainDeleteOut)
async def delete_domain(
    domain_id: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> DomainDeleteOut:
    try:
        warnings = await domain_service.delete_domain(session, domain_id, actor=actor)
    except ProcyardError as exc:
        raise_http_error(exc)
    return DomainDeleteOut(success=True, warnings=warnings)
