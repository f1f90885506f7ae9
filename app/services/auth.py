from __future__ import annotations

import hmac
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import PermissionDeniedError
from app.logger import get_logger
from app.security import hash_password, password_needs_rehash, verify_password
from app.services import app_settings

AUTH_USERNAME_KEY = "auth_username"
AUTH_PASSWORD_HASH_KEY = "auth_password_hash"
AUTH_PASSWORD_UPDATED_AT_KEY = "auth_password_updated_at"
DEFAULT_ADMIN_USERNAME = "admin"
ROLE_ADMIN = "admin"
ROLE_MEMBER = "member"

_logger = get_logger("services.auth")


@dataclass(frozen=True)
class Actor:
    username: str
    role: str = ROLE_MEMBER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def generate_random_password(length: int = 28) -> str:
    alphabet = string.ascii_letters + string.digits + "-_"
    if length < 16:
        length = 16
    return "".join(secrets.choice(alphabet) for _ in range(length))


async def set_credentials(
    session: AsyncSession,
    *,
    username: str,
    password: str,
) -> None:
    normalized_username = username.strip() or DEFAULT_ADMIN_USERNAME
    await app_settings.upsert_settings(
        session,
        {
            AUTH_USERNAME_KEY: normalized_username,
            AUTH_PASSWORD_HASH_KEY: hash_password(password),
            AUTH_PASSWORD_UPDATED_AT_KEY: datetime.now(timezone.utc).isoformat(),
        },
    )
    _logger.info("auth.credentials.set", "Set admin credentials", username=normalized_username)


async def ensure_auth_defaults(session: AsyncSession) -> Tuple[str, str]:
    settings_map = await app_settings.get_settings_map(session)
    username = settings_map.get(AUTH_USERNAME_KEY, "").strip()
    password_hash = settings_map.get(AUTH_PASSWORD_HASH_KEY, "")
    updates: dict[str, str] = {}
    if not username:
        username = DEFAULT_ADMIN_USERNAME
        updates[AUTH_USERNAME_KEY] = username
        _logger.warning("auth.defaults", "Initialized missing auth username setting", username=username)
    if not password_hash:
        # Nobody can log in until an operator sets a password through the CLI.
        password_hash = hash_password(generate_random_password())
        updates[AUTH_PASSWORD_HASH_KEY] = password_hash
        updates[AUTH_PASSWORD_UPDATED_AT_KEY] = datetime.now(timezone.utc).isoformat()
        _logger.warning("auth.defaults", "Initialized missing auth password hash setting")
    if updates:
        await app_settings.upsert_settings(session, updates)
    return username, password_hash


async def verify_credentials(session: AsyncSession, username: str, password: str) -> bool:
    configured_username, configured_hash = await ensure_auth_defaults(session)

    user_ok = hmac.compare_digest(username.strip().casefold(), configured_username.casefold())
    password_ok = verify_password(password, configured_hash)
    if user_ok and password_ok and password_needs_rehash(configured_hash):
        await app_settings.upsert_settings(
            session,
            {
                AUTH_PASSWORD_HASH_KEY: hash_password(password),
                AUTH_PASSWORD_UPDATED_AT_KEY: datetime.now(timezone.utc).isoformat(),
            },
        )
        _logger.info(
            "auth.password.rehash",
            "Rehashed stored password with current algorithm parameters",
            username=configured_username,
        )
    return user_ok and password_ok


async def resolve_actor(session: AsyncSession, username: str) -> Actor:
    configured_username, _ = await ensure_auth_defaults(session)
    if hmac.compare_digest(username.strip().casefold(), configured_username.casefold()):
        return Actor(username=configured_username, role=ROLE_ADMIN)
    return Actor(username=username.strip(), role=ROLE_MEMBER)


def check_access(
    actor: Actor,
    *,
    owner: str,
    visibility: str,
    write: bool,
    subject: str,
) -> None:
    """Owners and admins may do anything; public resources are readable by all."""
    if actor.is_admin or owner == actor.username:
        return
    if not write and visibility == "public":
        return
    raise PermissionDeniedError(f"You do not have permission to access this {subject}")
