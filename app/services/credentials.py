from __future__ import annotations

from typing import List, Optional
from uuid import uuid4

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.errors import NotFoundError, PermissionDeniedError, ValidationError
from app.logger import get_logger
from app.models.credential import Credential
from app.schemas.credentials import CredentialCreate
from app.security import decrypt_secret, encrypt_secret
from app.services.auth import Actor
from app.utils import utcnow

_logger = get_logger("services.credentials")


async def create_credential(
    session: AsyncSession,
    actor: Actor,
    payload: CredentialCreate,
) -> Credential:
    token = payload.token.strip()
    if not token:
        raise ValidationError("Token must not be empty")
    credential = Credential(
        id=str(uuid4()),
        name=payload.name.strip(),
        token_encrypted=encrypt_secret(token, get_settings().credential_encryption_key),
        owner=actor.username,
        visibility=payload.visibility,
    )
    session.add(credential)
    await session.commit()
    await session.refresh(credential)
    _logger.info(
        "credentials.create",
        "Stored git credential",
        credential_id=credential.id,
        owner=credential.owner,
        visibility=credential.visibility,
    )
    return credential


async def list_credentials(session: AsyncSession, actor: Actor) -> List[Credential]:
    query = select(Credential).order_by(Credential.created_at.desc())
    if not actor.is_admin:
        query = query.where(
            or_(Credential.owner == actor.username, Credential.visibility == "public")
        )
    result = await session.execute(query)
    return list(result.scalars().all())


async def get_credential(session: AsyncSession, credential_id: str) -> Optional[Credential]:
    return await session.get(Credential, credential_id)


async def delete_credential(session: AsyncSession, actor: Actor, credential_id: str) -> None:
    credential = await get_credential(session, credential_id)
    if credential is None:
        raise NotFoundError("Token not found")
    if credential.owner != actor.username and not actor.is_admin:
        raise PermissionDeniedError("Only the token owner can delete it")
    await session.delete(credential)
    await session.commit()
    _logger.info("credentials.delete", "Deleted git credential", credential_id=credential_id)


async def resolve_token(session: AsyncSession, credential_id: str, *, username: str) -> str:
    """Return the plaintext token if ``username`` owns it or it is public."""
    credential = await get_credential(session, credential_id)
    if credential is None:
        raise NotFoundError("Token not found")
    if credential.owner != username and credential.visibility != "public":
        raise PermissionDeniedError("You do not have access to this token")
    token = decrypt_secret(credential.token_encrypted, get_settings().credential_encryption_key)
    if token is None:
        raise ValidationError("Stored token cannot be decrypted; re-create the credential")
    credential.last_used_at = utcnow()
    await session.flush()
    return token
