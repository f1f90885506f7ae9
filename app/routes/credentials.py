from __future__ import annotations

from typing import Dict, List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_current_actor, get_db_session, get_github, raise_http_error
from app.errors import ProcyardError
from app.schemas.credentials import BranchesOut, CredentialCreate, CredentialOut, RepositoryOut
from app.services import credentials as credential_service
from app.services.auth import Actor
from app.services.github import GitHubClient

router = APIRouter(prefix="/credentials", tags=["credentials"])


@router.get("", response_model=List[CredentialOut])
async def list_credentials(
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> List[CredentialOut]:
    records = await credential_service.list_credentials(session, actor)
    return [CredentialOut.model_validate(record) for record in records]


@router.post("", response_model=CredentialOut, status_code=status.HTTP_201_CREATED)
async def create_credential(
    payload: CredentialCreate,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> CredentialOut:
    try:
        record = await credential_service.create_credential(session, actor, payload)
    except ProcyardError as exc:
        raise_http_error(exc)
    return CredentialOut.model_validate(record)


@router.delete("/{credential_id}")
async def delete_credential(
    credential_id: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> Dict[str, bool]:
    try:
        await credential_service.delete_credential(session, actor, credential_id)
    except ProcyardError as exc:
        raise_http_error(exc)
    return {"success": True}


@router.get("/{credential_id}/repositories", response_model=List[RepositoryOut])
async def list_repositories(
    credential_id: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
    github: GitHubClient = Depends(get_github),
) -> List[RepositoryOut]:
    try:
        token = await credential_service.resolve_token(
            session, credential_id, username=actor.username
        )
        await session.commit()
        repositories = await github.list_repositories(token)
    except ProcyardError as exc:
        raise_http_error(exc)
    return [
        RepositoryOut(
            id=repo.id,
            name=repo.name,
            full_name=repo.full_name,
            url=repo.url,
            description=repo.description,
        )
        for repo in repositories
    ]


@router.get("/{credential_id}/branches", response_model=BranchesOut)
async def list_branches(
    credential_id: str,
    repository_url: str = Query(min_length=1),
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
    github: GitHubClient = Depends(get_github),
) -> BranchesOut:
    try:
        token = await credential_service.resolve_token(
            session, credential_id, username=actor.username
        )
        await session.commit()
        branches = await github.list_branches(token, repository_url)
    except ProcyardError as exc:
        raise_http_error(exc)
    return BranchesOut(repository_url=repository_url, branches=branches)


@router.post("/{credential_id}/validate")
async def validate_credential(
    credential_id: str,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
    github: GitHubClient = Depends(get_github),
) -> Dict[str, bool]:
    try:
        token = await credential_service.resolve_token(
            session, credential_id, username=actor.username
        )
        await session.commit()
        valid = await github.validate_token(token)
    except ProcyardError as exc:
        raise_http_error(exc)
    return {"valid": valid}
