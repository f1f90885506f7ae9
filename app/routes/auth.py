from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.dependencies import get_current_actor, get_db_session
from app.logger import get_logger
from app.security import SESSION_COOKIE_NAME, LoginRateLimiter, create_session_token
from app.services import auth as auth_service
from app.services.auth import Actor

router = APIRouter(prefix="/auth", tags=["auth"])
_logger = get_logger("auth.login")
_rate_limiter = LoginRateLimiter(max_failures=5, window_seconds=60, lockout_seconds=300)


class TokenLoginRequest(BaseModel):
    username: str
    password: str


def _client_ip(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


@router.post("/token")
async def token_login(
    payload: TokenLoginRequest,
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_db_session),
) -> Dict[str, Any]:
    settings = get_settings()
    username = payload.username.strip()
    client_ip = _client_ip(request)
    ip_key = f"ip:{client_ip}"
    normalized_username = username.casefold()

    async with _logger.operation(
        "login.token",
        "Handled token login request",
        username=normalized_username,
        client_ip=client_ip,
    ) as op:
        allowed, retry_after = _rate_limiter.check(ip_key)
        op.step(
            "rate_limit.check",
            "Checked login rate limit",
            allowed=allowed,
            retry_after=retry_after,
        )
        if not allowed:
            _logger.warning(
                "login.blocked",
                "Blocked token login due to rate limit",
                username=normalized_username,
                client_ip=client_ip,
                retry_after=retry_after,
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=f"Too many login attempts. Try again in {retry_after}s.",
            )

        op.step("credentials.verify", "Verifying submitted credentials")
        is_valid = await auth_service.verify_credentials(
            session,
            username=username,
            password=payload.password,
        )
        if not is_valid:
            _rate_limiter.record_failure(ip_key)
            _logger.warning(
                "login.failed",
                "Rejected invalid token login credentials",
                username=normalized_username,
                client_ip=client_ip,
            )
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid username or password."
            )

        _rate_limiter.record_success(ip_key)
        await session.commit()
        token = create_session_token(
            username=normalized_username,
            secret_key=settings.auth_secret_key,
            ttl_seconds=settings.auth_session_ttl_seconds,
        )
        response.set_cookie(
            key=SESSION_COOKIE_NAME,
            value=token,
            max_age=settings.auth_session_ttl_seconds,
            httponly=True,
            secure=settings.auth_cookie_secure,
            samesite="lax",
            path="/",
        )
        _logger.info(
            "login.success",
            "Issued token login session",
            username=normalized_username,
            client_ip=client_ip,
            session_ttl_seconds=settings.auth_session_ttl_seconds,
        )
        return {
            "session_token": token,
            "cookie_name": SESSION_COOKIE_NAME,
            "expires_in": settings.auth_session_ttl_seconds,
        }


@router.post("/logout")
async def logout(response: Response) -> Dict[str, bool]:
    _logger.info("logout.submit", "Processed logout request")
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return {"success": True}


@router.get("/me")
async def whoami(actor: Actor = Depends(get_current_actor)) -> Dict[str, Any]:
    return {"username": actor.username, "role": actor.role, "is_admin": actor.is_admin}
